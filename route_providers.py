"""Route-computation providers used for ETA estimation.

Every provider exposes ``name`` and an async ``compute_route(origin, destination,
options)`` returning a :class:`RouteEstimate`. Origins and destinations are
``(lat, lng)`` tuples. Providers raise :class:`RouteProviderError` when they
cannot answer; the ETA estimator maps that onto ``ProviderUnavailable``.
"""
from __future__ import annotations

import asyncio
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx


LatLng = Tuple[float, float]

OSRM_BASE = os.getenv("OSRM_BASE", "https://router.project-osrm.org").rstrip("/")
OSRM_HTTP_TIMEOUT_S = float(os.getenv("OSRM_HTTP_TIMEOUT_S", "10"))
ORS_KEY = (os.getenv("ORS_KEY") or "").strip()
ORS_DIRECTIONS_URL = os.getenv(
    "ORS_DIRECTIONS_URL", "https://api.openrouteservice.org/v2/directions/driving-car"
).strip()
ORS_HTTP_TIMEOUT_S = float(os.getenv("ORS_HTTP_TIMEOUT_S", "10"))

# Budget for the primary provider inside the ETA timeout, leaving room for the fallback
PRIMARY_ROUTE_TIMEOUT_S = float(os.getenv("PRIMARY_ROUTE_TIMEOUT_S", "6"))

# Average urban school-bus speed used when no road network answer is available
FALLBACK_SPEED_KMH = float(os.getenv("FALLBACK_SPEED_KMH", "30"))

EARTH_RADIUS_KM = 6371.0


class RouteProviderError(RuntimeError):
    """A provider could not compute a route."""


@dataclass
class RouteEstimate:
    distance_km: float
    duration_minutes: float
    provider_name: str
    legs: List[Dict[str, Any]] = field(default_factory=list)
    polyline: Optional[List[LatLng]] = None


class RouteProvider(Protocol):
    name: str

    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        options: Optional[Dict[str, Any]] = None,
    ) -> RouteEstimate:
        ...


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def _geojson_to_latlngs(coords: Any) -> Optional[List[LatLng]]:
    if not isinstance(coords, list):
        return None
    latlngs: List[LatLng] = []
    for point in coords:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        try:
            latlngs.append((float(point[1]), float(point[0])))
        except (TypeError, ValueError):
            continue
    return latlngs or None


class HaversineRouteProvider:
    """Straight-line estimate at a fixed average speed. Always available."""

    name = "haversine_fallback"

    def __init__(self, speed_kmh: float = FALLBACK_SPEED_KMH) -> None:
        self.speed_kmh = speed_kmh

    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        options: Optional[Dict[str, Any]] = None,
    ) -> RouteEstimate:
        distance_km = haversine_km(origin[0], origin[1], destination[0], destination[1])
        duration_minutes = distance_km / self.speed_kmh * 60.0
        return RouteEstimate(
            distance_km=round(distance_km, 2),
            duration_minutes=round(duration_minutes, 1),
            provider_name=self.name,
            polyline=[origin, destination],
        )


class OSRMRouteProvider:
    """OSRM ``/route/v1/driving`` over HTTP."""

    name = "osrm"

    def __init__(
        self,
        base_url: str = OSRM_BASE,
        *,
        timeout_s: float = OSRM_HTTP_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client

    async def _get(self, url: str, params: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, params=params)
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            return await client.get(url, params=params)

    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        options: Optional[Dict[str, Any]] = None,
    ) -> RouteEstimate:
        coords = f"{origin[1]},{origin[0]};{destination[1]},{destination[0]}"
        params = {"overview": "full", "geometries": "geojson", "steps": "false"}
        if options:
            params.update({k: v for k, v in options.items() if isinstance(v, (str, int, float))})
        try:
            response = await self._get(f"{self.base_url}/route/v1/driving/{coords}", params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RouteProviderError(f"osrm request failed: {exc}") from exc

        routes = data.get("routes") if isinstance(data, dict) else None
        if not routes:
            code = data.get("code") if isinstance(data, dict) else None
            raise RouteProviderError(f"no route found with osrm (code={code})")
        route = routes[0]
        distance_m = float(route.get("distance") or 0.0)
        duration_s = float(route.get("duration") or 0.0)
        legs = [
            {
                "distance_km": round(float(leg.get("distance") or 0.0) / 1000.0, 3),
                "duration_minutes": round(float(leg.get("duration") or 0.0) / 60.0, 2),
            }
            for leg in route.get("legs") or []
            if isinstance(leg, dict)
        ]
        geometry = route.get("geometry") or {}
        return RouteEstimate(
            distance_km=round(distance_m / 1000.0, 2),
            duration_minutes=round(duration_s / 60.0, 1),
            provider_name=self.name,
            legs=legs,
            polyline=_geojson_to_latlngs(geometry.get("coordinates")) if isinstance(geometry, dict) else None,
        )


class OpenRouteServiceProvider:
    """OpenRouteService directions (driving-car profile)."""

    name = "openrouteservice"

    def __init__(
        self,
        api_key: str = ORS_KEY,
        directions_url: str = ORS_DIRECTIONS_URL,
        *,
        timeout_s: float = ORS_HTTP_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.directions_url = directions_url
        self.timeout_s = timeout_s
        self._client = client

    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        options: Optional[Dict[str, Any]] = None,
    ) -> RouteEstimate:
        if not self.api_key:
            raise RouteProviderError("ORS_KEY is not configured")

        params = {
            "start": f"{origin[1]},{origin[0]}",
            "end": f"{destination[1]},{destination[0]}",
        }
        headers = {"Authorization": self.api_key}
        try:
            if self._client is not None:
                response = await self._client.get(self.directions_url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.get(self.directions_url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RouteProviderError(f"openrouteservice request failed: {exc}") from exc

        features = data.get("features") if isinstance(data, dict) else None
        if not features:
            raise RouteProviderError("no route found with openrouteservice")
        feature = features[0]
        props = feature.get("properties") or {}
        summary = props.get("summary") or {}
        legs = [
            {
                "distance_km": round(float(seg.get("distance") or 0.0) / 1000.0, 3),
                "duration_minutes": round(float(seg.get("duration") or 0.0) / 60.0, 2),
            }
            for seg in props.get("segments") or []
            if isinstance(seg, dict)
        ]
        geometry = feature.get("geometry") or {}
        return RouteEstimate(
            distance_km=round(float(summary.get("distance") or 0.0) / 1000.0, 2),
            duration_minutes=round(float(summary.get("duration") or 0.0) / 60.0, 1),
            provider_name=self.name,
            legs=legs,
            polyline=_geojson_to_latlngs(geometry.get("coordinates")),
        )


class FallbackRouteProvider:
    """Try ``primary`` first; on a provider error or timeout answer with ``fallback``.

    The estimate keeps the name of whichever provider produced it.
    """

    def __init__(
        self,
        primary: RouteProvider,
        fallback: RouteProvider,
        *,
        primary_timeout_s: float = PRIMARY_ROUTE_TIMEOUT_S,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.primary_timeout_s = primary_timeout_s
        self.name = primary.name

    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        options: Optional[Dict[str, Any]] = None,
    ) -> RouteEstimate:
        try:
            return await asyncio.wait_for(
                self.primary.compute_route(origin, destination, options),
                timeout=self.primary_timeout_s,
            )
        except asyncio.TimeoutError:
            print(f"[eta] {self.primary.name} timed out after {self.primary_timeout_s}s; falling back to {self.fallback.name}")
        except RouteProviderError as exc:
            print(f"[eta] {self.primary.name} failed ({exc}); falling back to {self.fallback.name}")
        return await self.fallback.compute_route(origin, destination, options)


SUPPORTED_PROVIDERS = ("osrm", "ors", "osm", "haversine")


def build_route_provider(name: Optional[str] = None, *, with_fallback: bool = True) -> RouteProvider:
    """Construct the configured provider, wrapped with the haversine fallback."""
    key = (name or os.getenv("ETA_PROVIDER", "osrm")).strip().lower()
    if key not in SUPPORTED_PROVIDERS:
        print(f"[eta] unsupported provider {key!r}, falling back to osrm")
        key = "osrm"

    provider: RouteProvider
    if key == "haversine":
        return HaversineRouteProvider()
    if key == "ors":
        provider = OpenRouteServiceProvider()
    elif key == "osm":
        # osmnx is heavy; only import it when the local graph is requested.
        from osm_router import LocalOSMRouteProvider

        provider = LocalOSMRouteProvider()
    else:
        provider = OSRMRouteProvider()

    if with_fallback:
        return FallbackRouteProvider(provider, HaversineRouteProvider())
    return provider


__all__ = [
    "FallbackRouteProvider",
    "HaversineRouteProvider",
    "LatLng",
    "OSRMRouteProvider",
    "OpenRouteServiceProvider",
    "RouteEstimate",
    "RouteProvider",
    "RouteProviderError",
    "SUPPORTED_PROVIDERS",
    "build_route_provider",
    "haversine_km",
]
