"""Server-side reconciliation of the live vehicle map.

Tracking events flow through a :class:`TrackingEventBus`. Each open map view
owns one :class:`LiveMapReconciler`, which turns those events into the minimal
set of view mutations (add / update / remove marker, replace polyline).
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple, Union

from position_ingest import PositionSample, isoformat_z, valid_coordinates


LatLng = Tuple[float, float]

STATUS_IN_TRANSIT = "in_transit"
STATUS_TRACKING_UNAVAILABLE = "tracking_unavailable"

EVENT_QUEUE_SIZE = 100
VIEW_QUEUE_SIZE = 100


# ---------------------------
# Events
# ---------------------------

@dataclass(frozen=True)
class VehicleEvent:
    vehicle_id: str
    lat: float
    lng: float
    status: str = STATUS_IN_TRANSIT
    popup_content: str = ""

    @classmethod
    def from_sample(cls, sample: PositionSample, *, status: str = STATUS_IN_TRANSIT, popup_content: str = "") -> "VehicleEvent":
        return cls(sample.vehicle_id, sample.latitude, sample.longitude, status, popup_content)


@dataclass(frozen=True)
class RouteEvent:
    route_id: str
    stop_coordinates: Tuple[LatLng, ...]


@dataclass(frozen=True)
class RemoveEvent:
    vehicle_id: str


TrackingEvent = Union[VehicleEvent, RouteEvent, RemoveEvent]


class Subscription:
    """One consumer's pending events on the bus. ``close`` detaches it.

    Position events are last-value-wins, so a full subscription coalesces a
    vehicle's queued position with its newer one. Remove and route events are
    never coalesced away; when nothing can be coalesced the pending events are
    discarded and the next ``get`` returns ``None``, telling the consumer to
    reload :meth:`TrackingEventBus.snapshot`.
    """

    def __init__(self, bus: "TrackingEventBus", maxsize: int = EVENT_QUEUE_SIZE):
        self._bus = bus
        self.maxsize = maxsize
        self.pending: Deque[TrackingEvent] = deque()
        self.needs_resync = False
        self.closed = False
        self._ready = asyncio.Event()

    def offer(self, event: TrackingEvent) -> None:
        if self.needs_resync:
            return  # the snapshot reload will cover it
        if len(self.pending) < self.maxsize:
            self.pending.append(event)
        elif not self._coalesce(event):
            print(f"[live_map] subscriber fell behind ({len(self.pending)} pending); resyncing from snapshot")
            self.pending.clear()
            self.needs_resync = True
        self._ready.set()

    def _coalesce(self, event: TrackingEvent) -> bool:
        if not isinstance(event, VehicleEvent):
            return False
        # Only the vehicle's latest pending event may be replaced
        for index in range(len(self.pending) - 1, -1, -1):
            queued = self.pending[index]
            if getattr(queued, "vehicle_id", None) != event.vehicle_id:
                continue
            if isinstance(queued, VehicleEvent):
                self.pending[index] = event
                return True
            return False
        return False

    async def get(self) -> Optional[TrackingEvent]:
        """Next event, or ``None`` when the consumer must reload the snapshot."""
        while not self.pending and not self.needs_resync:
            self._ready.clear()
            await self._ready.wait()
        if self.needs_resync:
            self.needs_resync = False
            return None
        return self.pending.popleft()

    def snapshot(self) -> Tuple[List[VehicleEvent], List[RouteEvent]]:
        return self._bus.snapshot()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._subscribers.discard(self)


class TrackingEventBus:
    """Fan-out of tracking events plus the current snapshot for late joiners."""

    def __init__(self) -> None:
        self._subscribers: Set[Subscription] = set()
        self._vehicles: Dict[str, VehicleEvent] = {}
        self._routes: Dict[str, RouteEvent] = {}

    def subscribe(self, maxsize: int = EVENT_QUEUE_SIZE) -> Subscription:
        sub = Subscription(self, maxsize=maxsize)
        self._subscribers.add(sub)
        return sub

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: TrackingEvent) -> None:
        if isinstance(event, VehicleEvent):
            self._vehicles[event.vehicle_id] = event
        elif isinstance(event, RemoveEvent):
            self._vehicles.pop(event.vehicle_id, None)
        elif isinstance(event, RouteEvent):
            self._routes[event.route_id] = event
        else:
            raise TypeError(f"unsupported tracking event {type(event).__name__}")
        for sub in list(self._subscribers):
            sub.offer(event)

    def snapshot(self) -> Tuple[List[VehicleEvent], List[RouteEvent]]:
        return list(self._vehicles.values()), list(self._routes.values())


# ---------------------------
# View
# ---------------------------

class MapView(Protocol):
    def add_marker(self, vehicle_id: str, lat_lng: LatLng, popup_content: str, status: str) -> None:
        ...

    def update_marker(
        self,
        vehicle_id: str,
        *,
        lat_lng: Optional[LatLng] = None,
        popup_content: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        ...

    def remove_marker(self, vehicle_id: str) -> None:
        ...

    def set_polyline(self, route_id: str, coordinates: Sequence[LatLng]) -> None:
        ...

    def remove_polyline(self, route_id: str) -> None:
        ...

    def fit_bounds(self, south_west: LatLng, north_east: LatLng) -> None:
        ...


class QueueMapView:
    """MapView that encodes every mutation as an SSE ``data:`` frame on a queue.

    Frames are deltas, so once one is dropped the client can no longer follow
    along: the view stops emitting and flags ``overflowed`` so the stream can
    close and the client reconnect for a fresh snapshot.
    """

    def __init__(self, maxsize: int = VIEW_QUEUE_SIZE):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.overflowed = False

    def _emit(self, op: str, **payload: Any) -> None:
        item = {"ts": int(time.time() * 1000), "op": op, **payload}
        encoded = f"data: {json.dumps(item)}\n\n"
        if self.overflowed:
            self.dropped += 1
            return
        try:
            self.queue.put_nowait(encoded)
        except asyncio.QueueFull:
            self.dropped += 1
            self.overflowed = True
            print(f"[live_map] map view fell behind ({self.queue.qsize()} frames queued); closing stream")

    def add_marker(self, vehicle_id, lat_lng, popup_content, status):
        self._emit("add_marker", vehicle_id=vehicle_id, lat_lng=list(lat_lng), popup=popup_content, status=status)

    def update_marker(self, vehicle_id, *, lat_lng=None, popup_content=None, status=None):
        changes: Dict[str, Any] = {}
        if lat_lng is not None:
            changes["lat_lng"] = list(lat_lng)
        if popup_content is not None:
            changes["popup"] = popup_content
        if status is not None:
            changes["status"] = status
        self._emit("update_marker", vehicle_id=vehicle_id, **changes)

    def remove_marker(self, vehicle_id):
        self._emit("remove_marker", vehicle_id=vehicle_id)

    def set_polyline(self, route_id, coordinates):
        self._emit("set_polyline", route_id=route_id, coordinates=[list(c) for c in coordinates])

    def remove_polyline(self, route_id):
        self._emit("remove_polyline", route_id=route_id)

    def fit_bounds(self, south_west, north_east):
        self._emit("fit_bounds", south_west=list(south_west), north_east=list(north_east))


# ---------------------------
# Reconciler
# ---------------------------

def _popup_hash(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MapMarkerState:
    vehicle_id: str
    last_lat_lng: LatLng
    last_popup_hash: str
    last_moved_at: datetime
    status: str = STATUS_IN_TRANSIT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "lat_lng": list(self.last_lat_lng),
            "status": self.status,
            "last_moved_at": isoformat_z(self.last_moved_at),
        }


class ReconcilerUnmounted(RuntimeError):
    pass


class LiveMapReconciler:
    """
    One marker per vehicle, updated in place.

    - ``upsert`` is idempotent: replaying the same event makes no view call.
    - Markers only go away through ``remove`` (or ``unmount``), never by age;
      a vehicle that stops reporting is shown as tracking unavailable instead.
    - Polylines are keyed by route id and replaced wholesale.
    - ``fit_bounds`` happens once, on the first batch load.
    """

    def __init__(self, view: MapView, *, clock: Callable[[], datetime] = _utcnow):
        self.view = view
        self._clock = clock
        self._markers: Dict[str, MapMarkerState] = {}
        self._polylines: Dict[str, Tuple[LatLng, ...]] = {}
        self._fitted = False
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self.unmounted = False

    @property
    def markers(self) -> Dict[str, MapMarkerState]:
        return dict(self._markers)

    @property
    def polylines(self) -> Dict[str, Tuple[LatLng, ...]]:
        return dict(self._polylines)

    def _ensure_mounted(self) -> None:
        if self.unmounted:
            raise ReconcilerUnmounted("map view has been unmounted")

    def upsert(self, event: VehicleEvent) -> bool:
        """Apply a vehicle event. Returns True if the view was touched."""
        self._ensure_mounted()
        if not valid_coordinates(event.lat, event.lng):
            print(f"[live_map] ignoring event with invalid coordinates for {event.vehicle_id}")
            return False
        lat_lng = (event.lat, event.lng)
        popup_hash = _popup_hash(event.popup_content)
        state = self._markers.get(event.vehicle_id)
        if state is None:
            self.view.add_marker(event.vehicle_id, lat_lng, event.popup_content, event.status)
            self._markers[event.vehicle_id] = MapMarkerState(
                vehicle_id=event.vehicle_id,
                last_lat_lng=lat_lng,
                last_popup_hash=popup_hash,
                last_moved_at=self._clock(),
                status=event.status,
            )
            return True

        moved = state.last_lat_lng != lat_lng
        popup_changed = state.last_popup_hash != popup_hash
        status_changed = state.status != event.status
        if not (moved or popup_changed or status_changed):
            return False
        self.view.update_marker(
            event.vehicle_id,
            lat_lng=lat_lng if moved else None,
            popup_content=event.popup_content if popup_changed else None,
            status=event.status if status_changed else None,
        )
        if moved:
            state.last_lat_lng = lat_lng
            state.last_moved_at = self._clock()
        state.last_popup_hash = popup_hash
        state.status = event.status
        return True

    def remove(self, vehicle_id: str) -> bool:
        self._ensure_mounted()
        if self._markers.pop(vehicle_id, None) is None:
            return False
        self.view.remove_marker(vehicle_id)
        return True

    def mark_tracking_unavailable(self, vehicle_id: str) -> bool:
        self._ensure_mounted()
        state = self._markers.get(vehicle_id)
        if state is None or state.status == STATUS_TRACKING_UNAVAILABLE:
            return False
        self.view.update_marker(vehicle_id, status=STATUS_TRACKING_UNAVAILABLE)
        state.status = STATUS_TRACKING_UNAVAILABLE
        return True

    def draw_route(self, route_id: str, stop_coordinates: Iterable[LatLng]) -> bool:
        self._ensure_mounted()
        coords = tuple((float(lat), float(lng)) for lat, lng in stop_coordinates)
        if not coords:
            if self._polylines.pop(route_id, None) is None:
                return False
            self.view.remove_polyline(route_id)
            return True
        if self._polylines.get(route_id) == coords:
            return False
        if route_id in self._polylines:
            self.view.remove_polyline(route_id)
        self.view.set_polyline(route_id, coords)
        self._polylines[route_id] = coords
        return True

    def load_batch(self, events: Iterable[VehicleEvent]) -> int:
        touched = sum(1 for event in events if self.upsert(event))
        if not self._fitted and self._markers:
            lats = [s.last_lat_lng[0] for s in self._markers.values()]
            lngs = [s.last_lat_lng[1] for s in self._markers.values()]
            self.view.fit_bounds((min(lats), min(lngs)), (max(lats), max(lngs)))
            self._fitted = True
        return touched

    def apply(self, event: TrackingEvent) -> bool:
        if isinstance(event, VehicleEvent):
            return self.upsert(event)
        if isinstance(event, RemoveEvent):
            return self.remove(event.vehicle_id)
        if isinstance(event, RouteEvent):
            return self.draw_route(event.route_id, event.stop_coordinates)
        raise TypeError(f"unsupported tracking event {type(event).__name__}")

    # Subscription ---------------------------------------------------
    def subscribe(self, bus: TrackingEventBus) -> asyncio.Task:
        """Load the bus snapshot, then keep applying its events in a task."""
        self._ensure_mounted()
        if self._task is not None:
            raise RuntimeError("reconciler is already subscribed")
        vehicles, routes = bus.snapshot()
        for route in routes:
            self.draw_route(route.route_id, route.stop_coordinates)
        self.load_batch(vehicles)
        self._subscription = bus.subscribe()
        self._task = asyncio.create_task(self._consume(self._subscription))
        return self._task

    def reload(self, vehicles: Sequence[VehicleEvent], routes: Sequence[RouteEvent]) -> None:
        """Bring the view in line with a full snapshot after the subscription lost events."""
        self._ensure_mounted()
        live = {v.vehicle_id for v in vehicles}
        for vehicle_id in [vid for vid in self._markers if vid not in live]:
            self.remove(vehicle_id)
        for route in routes:
            self.draw_route(route.route_id, route.stop_coordinates)
        for vehicle in vehicles:
            self.upsert(vehicle)

    async def _consume(self, subscription: Subscription) -> None:
        while True:
            event = await subscription.get()
            if self.unmounted:
                return
            try:
                if event is None:
                    self.reload(*subscription.snapshot())
                else:
                    self.apply(event)
            except Exception as exc:
                print(f"[live_map] failed to apply {type(event).__name__ if event else 'snapshot'}: {exc}")

    def unmount(self) -> None:
        """Stop the subscription and release every marker and polyline."""
        if self.unmounted:
            return
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        markers = len(self._markers)
        polylines = len(self._polylines)
        for vehicle_id in list(self._markers):
            self.view.remove_marker(vehicle_id)
        for route_id in list(self._polylines):
            self.view.remove_polyline(route_id)
        self._markers.clear()
        self._polylines.clear()
        self.unmounted = True
        print(f"[live_map] unmounted: released {markers} markers, {polylines} polylines")


__all__ = [
    "LiveMapReconciler",
    "MapMarkerState",
    "MapView",
    "QueueMapView",
    "ReconcilerUnmounted",
    "RemoveEvent",
    "RouteEvent",
    "STATUS_IN_TRANSIT",
    "STATUS_TRACKING_UNAVAILABLE",
    "Subscription",
    "TrackingEventBus",
    "VehicleEvent",
]
