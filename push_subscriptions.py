"""Guardian Web Push subscriptions.

A guardian may register several browsers; each registration is one record,
keyed by a hash of its endpoint, stored through the engine's ``Repository``.
Delivery outcomes are counted per endpoint so a browser that keeps failing is
dropped even when the push service never answers 404/410 for it.
"""
from __future__ import annotations

import hashlib
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from repository import Repository


PUSH_SUBSCRIPTION_KIND = "push_subscription"
PUSH_MAX_CONSECUTIVE_FAILURES = int(os.getenv("PUSH_MAX_CONSECUTIVE_FAILURES", "5"))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def endpoint_key(endpoint: str) -> str:
    return hashlib.sha256(endpoint.encode("utf-8")).hexdigest()[:32]


@dataclass
class PushSubscription:
    recipient_ref: str
    endpoint: str
    p256dh: str
    auth: str
    created_at: str
    user_agent: Optional[str] = None
    last_success_at: Optional[str] = None
    consecutive_failures: int = 0

    def to_subscription_info(self) -> dict:
        """Return dict in the format expected by pywebpush."""
        return {
            "endpoint": self.endpoint,
            "keys": {
                "p256dh": self.p256dh,
                "auth": self.auth,
            },
        }

    def to_record(self) -> Dict[str, Any]:
        return {**asdict(self), "id": endpoint_key(self.endpoint)}

    @classmethod
    def from_record(cls, raw: Dict[str, Any]) -> Optional["PushSubscription"]:
        fields = ("recipient_ref", "endpoint", "p256dh", "auth")
        if not all(raw.get(name) for name in fields):
            return None
        try:
            failures = int(raw.get("consecutive_failures") or 0)
        except (TypeError, ValueError):
            failures = 0
        return cls(
            recipient_ref=str(raw["recipient_ref"]),
            endpoint=str(raw["endpoint"]),
            p256dh=str(raw["p256dh"]),
            auth=str(raw["auth"]),
            created_at=str(raw.get("created_at") or _now_iso()),
            user_agent=raw.get("user_agent"),
            last_success_at=raw.get("last_success_at"),
            consecutive_failures=failures,
        )


class PushSubscriptionStore:
    def __init__(
        self,
        repository: Repository,
        *,
        max_consecutive_failures: int = PUSH_MAX_CONSECUTIVE_FAILURES,
    ) -> None:
        self._repository = repository
        self.max_consecutive_failures = max_consecutive_failures

    async def add_subscription(
        self,
        recipient_ref: str,
        endpoint: str,
        keys: dict,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Register or refresh a browser. Returns True if the endpoint is new.

        Re-registering an endpoint moves it to ``recipient_ref`` and resets its
        failure count; browsers rotate keys, so the latest keys win.
        """
        p256dh = keys.get("p256dh", "")
        auth = keys.get("auth", "")
        if not recipient_ref or not endpoint or not p256dh or not auth:
            return False
        existing = await self._repository.get(PUSH_SUBSCRIPTION_KIND, endpoint_key(endpoint))
        sub = PushSubscription(
            recipient_ref=recipient_ref,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            created_at=(existing or {}).get("created_at") or _now_iso(),
            user_agent=user_agent,
        )
        await self._repository.save(PUSH_SUBSCRIPTION_KIND, sub.to_record())
        return existing is None

    async def remove_subscription(self, endpoint: str) -> bool:
        return await self._repository.destroy(PUSH_SUBSCRIPTION_KIND, endpoint_key(endpoint))

    async def for_recipient(self, recipient_ref: str) -> List[PushSubscription]:
        subs = []
        for raw in await self._repository.list(PUSH_SUBSCRIPTION_KIND):
            sub = PushSubscription.from_record(raw)
            if sub is not None and sub.recipient_ref == recipient_ref:
                subs.append(sub)
        subs.sort(key=lambda s: s.created_at)
        return subs

    async def record_delivery(self, sub: PushSubscription, ok: bool) -> bool:
        """Count one delivery outcome. Returns False if the subscription was dropped."""
        if ok:
            sub.consecutive_failures = 0
            sub.last_success_at = _now_iso()
        else:
            sub.consecutive_failures += 1
            if sub.consecutive_failures >= self.max_consecutive_failures:
                print(
                    f"[push] dropping subscription for {sub.recipient_ref} after "
                    f"{sub.consecutive_failures} failed deliveries"
                )
                await self.remove_subscription(sub.endpoint)
                return False
        await self._repository.save(PUSH_SUBSCRIPTION_KIND, sub.to_record())
        return True

    async def count(self) -> int:
        return len(await self._repository.list(PUSH_SUBSCRIPTION_KIND))


__all__ = ["PushSubscription", "PushSubscriptionStore", "endpoint_key"]
