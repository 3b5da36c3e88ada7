"""Route provider backed by a local OSMnx drive graph of the district.

The graph covers a configured bounding box and is cached as GraphML under the
data directory, so only the first start talks to the Overpass/OSM APIs.
Travel times come from OSMnx edge speeds scaled down for school buses.
"""
from __future__ import annotations

import asyncio
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import networkx as nx
import osmnx as ox

from route_providers import LatLng, RouteEstimate, RouteProviderError

# ---------------------------
# Configuration
# ---------------------------
# Service-area bounds; set these per district.
BBOX_NORTH = float(os.getenv("OSM_ROUTER_BBOX_NORTH", "38.12"))
BBOX_SOUTH = float(os.getenv("OSM_ROUTER_BBOX_SOUTH", "37.99"))
BBOX_EAST = float(os.getenv("OSM_ROUTER_BBOX_EAST", "-78.43"))
BBOX_WEST = float(os.getenv("OSM_ROUTER_BBOX_WEST", "-78.60"))

DATA_DIR = Path(os.getenv("OSM_ROUTER_DATA_DIR", os.getenv("DATA_DIRS", "/data").split(":")[0]))
GRAPH_PATH = DATA_DIR / os.getenv("OSM_ROUTER_GRAPH_FILENAME", "osmnx_drive.graphml")

# Buses run below car free-flow speed; 0.8 means 80% of the edge speed.
BUS_SPEED_FACTOR = float(os.getenv("OSM_ROUTER_BUS_SPEED_FACTOR", "0.8"))
# A point farther than this from any road node is outside the service area.
MAX_SNAP_DISTANCE_M = float(os.getenv("OSM_ROUTER_MAX_SNAP_M", "750"))


def _best_edge(graph: nx.MultiDiGraph, u: int, v: int) -> Dict[str, Any]:
    parallel = graph.get_edge_data(u, v) or {}
    if not parallel:
        return {}
    return min(parallel.values(), key=lambda d: float(d.get("travel_time") or float("inf")))


def _edge_points(graph: nx.MultiDiGraph, u: int, v: int, edge: Dict[str, Any]) -> List[LatLng]:
    geometry = edge.get("geometry")
    if geometry is not None:
        return [(lat, lng) for lng, lat in geometry.coords]
    start, end = graph.nodes[u], graph.nodes[v]
    return [(start["y"], start["x"]), (end["y"], end["x"])]


def _walk(graph: nx.MultiDiGraph, path: Sequence[int]) -> Iterator[Tuple[Dict[str, Any], List[LatLng]]]:
    for u, v in zip(path, path[1:]):
        edge = _best_edge(graph, u, v)
        yield edge, _edge_points(graph, u, v, edge)


class LocalOSMRouteProvider:
    name = "osm_local"

    def __init__(
        self,
        graph_path: Path = GRAPH_PATH,
        *,
        speed_factor: float = BUS_SPEED_FACTOR,
        max_snap_distance_m: float = MAX_SNAP_DISTANCE_M,
    ) -> None:
        self.graph_path = graph_path
        self.speed_factor = speed_factor if speed_factor > 0 else 1.0
        self.max_snap_distance_m = max_snap_distance_m
        self.graph: Optional[nx.MultiDiGraph] = None
        # Route calls run in worker threads; the first ones must not all download.
        self._graph_lock = threading.Lock()

    def ensure_graph(self) -> nx.MultiDiGraph:
        with self._graph_lock:
            if self.graph is None:
                if self.graph_path.exists():
                    print(f"[osm] loading cached graph {self.graph_path}")
                    self.graph = ox.load_graphml(self.graph_path)
                else:
                    print("[osm] downloading drive graph for the service area")
                    graph = ox.graph_from_bbox(
                        (BBOX_WEST, BBOX_SOUTH, BBOX_EAST, BBOX_NORTH),
                        network_type="drive",
                    )
                    graph = ox.add_edge_travel_times(ox.add_edge_speeds(graph))
                    self.graph_path.parent.mkdir(parents=True, exist_ok=True)
                    ox.save_graphml(graph, self.graph_path)
                    self.graph = graph
            return self.graph

    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        options: Optional[Dict[str, Any]] = None,
    ) -> RouteEstimate:
        return await asyncio.to_thread(self.route, origin, destination)

    def route(self, origin: LatLng, destination: LatLng) -> RouteEstimate:
        try:
            graph = self.ensure_graph()
        except Exception as exc:
            raise RouteProviderError(f"routing graph unavailable: {exc}") from exc

        try:
            nodes, snap_dists = ox.distance.nearest_nodes(
                graph,
                X=[origin[1], destination[1]],
                Y=[origin[0], destination[0]],
                return_dist=True,
            )
        except Exception as exc:
            raise RouteProviderError(f"failed to snap to road network: {exc}") from exc
        if max(snap_dists) > self.max_snap_distance_m:
            raise RouteProviderError(
                f"point is {max(snap_dists):.0f} m from the nearest road; outside the service area"
            )

        try:
            path = nx.shortest_path(graph, nodes[0], nodes[1], weight="travel_time")
        except (nx.NetworkXNoPath, nx.NodeNotFound) as exc:
            raise RouteProviderError(f"no route found: {exc}") from exc

        distance_m = 0.0
        travel_s = 0.0
        polyline: List[LatLng] = [origin]
        for edge, points in _walk(graph, path):
            distance_m += float(edge.get("length") or 0.0)
            travel_s += float(edge.get("travel_time") or 0.0)
            polyline.extend(points[1:] if len(polyline) > 1 else points)
        polyline.append(destination)

        return RouteEstimate(
            distance_km=round(distance_m / 1000.0, 2),
            duration_minutes=round(travel_s / self.speed_factor / 60.0, 1),
            provider_name=self.name,
            polyline=polyline,
        )


__all__ = ["GRAPH_PATH", "LocalOSMRouteProvider"]
