import asyncio
import sys
from pathlib import Path

import networkx as nx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import osm_router  # noqa: E402
from osm_router import LocalOSMRouteProvider  # noqa: E402
from route_providers import RouteProviderError  # noqa: E402


ORIGIN = (38.0301, -78.5001)
DESTINATION = (38.0301, -78.4799)


def _graph() -> nx.MultiDiGraph:
    graph = nx.MultiDiGraph(crs="epsg:4326")
    graph.add_node(1, x=-78.50, y=38.03)
    graph.add_node(2, x=-78.49, y=38.03)
    graph.add_node(3, x=-78.48, y=38.03)
    graph.add_node(4, x=-78.40, y=38.10)
    graph.add_edge(1, 2, length=900.0, travel_time=60.0)
    graph.add_edge(1, 2, length=800.0, travel_time=90.0)
    graph.add_edge(2, 3, length=900.0, travel_time=60.0)
    return graph


def _provider(tmp_path, monkeypatch, nodes, dists) -> LocalOSMRouteProvider:
    def fake_nearest(graph, X, Y, return_dist=False):
        return nodes, dists

    monkeypatch.setattr(osm_router.ox.distance, "nearest_nodes", fake_nearest)
    provider = LocalOSMRouteProvider(tmp_path / "drive.graphml", speed_factor=0.8)
    provider.graph = _graph()
    return provider


def test_route_uses_fastest_parallel_edge_and_bus_speed(tmp_path, monkeypatch):
    provider = _provider(tmp_path, monkeypatch, [1, 3], [12.0, 15.0])
    estimate = asyncio.run(provider.compute_route(ORIGIN, DESTINATION))
    assert estimate.provider_name == "osm_local"
    assert estimate.distance_km == 1.8
    assert estimate.duration_minutes == 2.5
    assert estimate.polyline[0] == ORIGIN and estimate.polyline[-1] == DESTINATION
    assert estimate.polyline[1:-1] == [(38.03, -78.50), (38.03, -78.49), (38.03, -78.48)]


def test_point_far_from_roads_is_outside_service_area(tmp_path, monkeypatch):
    provider = _provider(tmp_path, monkeypatch, [1, 3], [12.0, 2400.0])
    with pytest.raises(RouteProviderError, match="outside the service area"):
        provider.route(ORIGIN, DESTINATION)


def test_disconnected_nodes_have_no_route(tmp_path, monkeypatch):
    provider = _provider(tmp_path, monkeypatch, [1, 4], [12.0, 15.0])
    with pytest.raises(RouteProviderError, match="no route found"):
        provider.route(ORIGIN, DESTINATION)
