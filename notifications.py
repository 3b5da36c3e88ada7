"""Outbound notification capability: ``send(channel, recipient_ref, message)``.

Delivery failures are reported through :class:`DeliveryResult`, never raised,
so the alert or attendance record that triggered a send is never rolled back
because a guardian's phone was unreachable.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from pywebpush import WebPushException, webpush

from push_subscriptions import PushSubscriptionStore


@dataclass
class NotificationMessage:
    title: str
    body: str
    tag: Optional[str] = None
    url: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = {"title": self.title, "body": self.body[:200]}
        if self.tag:
            payload["tag"] = self.tag
        if self.url:
            payload["url"] = self.url
        if self.data:
            payload["data"] = self.data
        return payload


@dataclass
class DeliveryResult:
    ok: bool
    channel: str
    recipient_ref: str
    delivered: int = 0
    error: Optional[str] = None
    attempted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier(Protocol):
    async def send(self, channel: str, recipient_ref: str, message: NotificationMessage) -> DeliveryResult:
        ...


class NotificationChannel(Protocol):
    name: str

    async def deliver(self, recipient_ref: str, message: NotificationMessage) -> DeliveryResult:
        ...


class ConsoleChannel:
    """Prints notifications; used where no real channel is configured."""

    def __init__(self, name: str = "console"):
        self.name = name

    async def deliver(self, recipient_ref: str, message: NotificationMessage) -> DeliveryResult:
        print(f"[notify] {self.name} (console) -> {recipient_ref}: {message.title}: {message.body}")
        return DeliveryResult(ok=True, channel=self.name, recipient_ref=recipient_ref, delivered=1)


class WebPushChannel:
    """Web Push to every browser subscription registered for the recipient."""

    name = "push"

    def __init__(self, store: PushSubscriptionStore, vapid_private_key: str, vapid_subject: str):
        self.store = store
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject

    async def deliver(self, recipient_ref: str, message: NotificationMessage) -> DeliveryResult:
        subscriptions = await self.store.for_recipient(recipient_ref)
        if not subscriptions:
            return DeliveryResult(
                ok=False, channel=self.name, recipient_ref=recipient_ref, error="no subscriptions"
            )
        data = json.dumps(message.to_payload())
        sent = 0
        errors = []
        for sub in subscriptions:
            try:
                await asyncio.to_thread(
                    webpush,
                    subscription_info=sub.to_subscription_info(),
                    data=data,
                    vapid_private_key=self.vapid_private_key,
                    vapid_claims={"sub": self.vapid_subject},
                )
                sent += 1
                await self.store.record_delivery(sub, ok=True)
            except WebPushException as exc:
                status = exc.response.status_code if exc.response is not None else None
                if status in (404, 410):
                    # Browser unsubscribed
                    await self.store.remove_subscription(sub.endpoint)
                else:
                    await self.store.record_delivery(sub, ok=False)
                errors.append(f"{status or 'error'}: {exc}")
        return DeliveryResult(
            ok=sent > 0,
            channel=self.name,
            recipient_ref=recipient_ref,
            delivered=sent,
            error="; ".join(errors) or None,
        )


class NotificationRouter:
    """Dispatches ``send`` calls to the named channel."""

    def __init__(self, channels: Optional[Dict[str, NotificationChannel]] = None):
        self.channels: Dict[str, NotificationChannel] = dict(channels or {})

    def register(self, channel: NotificationChannel) -> None:
        self.channels[channel.name] = channel

    async def send(self, channel: str, recipient_ref: str, message: NotificationMessage) -> DeliveryResult:
        target = self.channels.get(channel)
        if target is None:
            result = DeliveryResult(
                ok=False, channel=channel, recipient_ref=recipient_ref, error=f"unknown channel {channel!r}"
            )
        else:
            try:
                result = await target.deliver(recipient_ref, message)
            except Exception as exc:
                result = DeliveryResult(ok=False, channel=channel, recipient_ref=recipient_ref, error=str(exc))
        if not result.ok:
            print(f"[notify] delivery failed channel={channel} recipient={recipient_ref}: {result.error}")
        return result


__all__ = [
    "ConsoleChannel",
    "DeliveryResult",
    "NotificationChannel",
    "NotificationMessage",
    "NotificationRouter",
    "Notifier",
    "WebPushChannel",
]
