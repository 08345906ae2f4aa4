"""
Route resolution tests.

Providers are served by httpx.MockTransport so every tier of the fallback
chain can be forced deterministically.
"""

import httpx
import pytest

from backend.app.models.dispatch_enums import RouteSource, TravelMode
from backend.app.schemas.position import Coordinate
from backend.app.services.geo_math import distance_km
from backend.app.services.route_resolver import build_route_resolver
from backend.app.services.routing_providers import GraphHopperProvider, OsrmProvider, RouteErr, RouteOk

ORIGIN = Coordinate(latitude=0.0, longitude=0.0)
DESTINATION = Coordinate(latitude=0.0, longitude=0.01)

GRAPHHOPPER_OK = {
    "paths": [{
        "distance": 1250.0,
        "time": 150000,
        "points": {"coordinates": [[0.0, 0.0], [0.005, 0.0], [0.01, 0.0]]},
        "instructions": [
            {"text": "Head east", "distance": 1250.0, "time": 150000},
            {"text": "Arrive at destination", "distance": 0, "time": 0},
        ],
    }]
}

OSRM_OK = {
    "code": "Ok",
    "routes": [{
        "distance": 1300.0,
        "duration": 160.0,
        "geometry": "??_ibE",
        "legs": [{"steps": [
            {"maneuver": {"type": "depart"}, "name": "Coast Road", "distance": 1300.0, "duration": 160.0},
        ]}],
    }],
}


class Upstream:
    """Scripted provider responses keyed by host."""

    def __init__(self, graphhopper=None, osrm=None):
        self.responses = {"graphhopper.com": graphhopper, "router.project-osrm.org": osrm}
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.calls.append(host)
        response = self.responses.get(host)
        if response is None:
            raise httpx.ConnectError("unreachable", request=request)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, int):
            return httpx.Response(response)
        return httpx.Response(200, json=response)


def make_resolver(upstream, clock, redis=None, online=True):
    state = {"online": online}
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    resolver = build_route_resolver(client, redis_client=redis, connectivity=lambda: state["online"], clock=clock)
    return resolver, state


@pytest.mark.asyncio
async def test_straight_line_when_everything_fails_offline(clock, mock_redis):
    resolver, _ = make_resolver(Upstream(), clock, redis=mock_redis, online=False)

    estimate = await resolver.resolve(ORIGIN, DESTINATION)

    assert estimate.source == RouteSource.STRAIGHT_LINE
    expected = distance_km(ORIGIN, DESTINATION)
    assert estimate.distance_km == pytest.approx(expected, rel=0.001)
    assert estimate.duration_minutes == pytest.approx(expected / 50 * 60)
    # Straight lines are never cached
    assert mock_redis.store == {}


@pytest.mark.asyncio
async def test_straight_line_speed_follows_travel_mode(clock):
    resolver, _ = make_resolver(Upstream(), clock, online=False)
    expected = distance_km(ORIGIN, DESTINATION)

    emergency = await resolver.resolve(ORIGIN, DESTINATION, TravelMode.EMERGENCY)
    walking = resolver.straight_line(ORIGIN, DESTINATION, TravelMode.WALKING)

    assert emergency.source == RouteSource.STRAIGHT_LINE
    assert emergency.duration_minutes == pytest.approx(expected / 80 * 60)
    assert walking.duration_minutes == pytest.approx(expected / 5 * 60)


@pytest.mark.asyncio
async def test_provider_a_answer_is_tagged_and_cached(clock, mock_redis):
    upstream = Upstream(graphhopper=GRAPHHOPPER_OK, osrm=OSRM_OK)
    resolver, _ = make_resolver(upstream, clock, redis=mock_redis)

    first = await resolver.resolve(ORIGIN, DESTINATION)
    assert first.source == RouteSource.PROVIDER_A
    assert first.distance_km == pytest.approx(1.25)
    assert first.duration_minutes == pytest.approx(2.5)
    assert first.polyline.startswith("0.0,0.0;")
    assert [s.instruction for s in first.steps] == ["Head east", "Arrive at destination"]

    clock.advance(5)
    second = await resolver.resolve(ORIGIN, DESTINATION)
    assert second.source == RouteSource.CACHE
    assert second.distance_km == pytest.approx(1.25)
    assert upstream.calls == ["graphhopper.com"]


@pytest.mark.asyncio
async def test_falls_through_to_provider_b_on_server_error(clock):
    upstream = Upstream(graphhopper=503, osrm=OSRM_OK)
    resolver, _ = make_resolver(upstream, clock)

    estimate = await resolver.resolve(ORIGIN, DESTINATION)

    assert estimate.source == RouteSource.PROVIDER_B
    assert estimate.distance_km == pytest.approx(1.3)
    assert estimate.steps[0].instruction == "depart Coast Road"
    # No retry of the failed provider within one resolution
    assert upstream.calls == ["graphhopper.com", "router.project-osrm.org"]


@pytest.mark.asyncio
async def test_malformed_payload_falls_through(clock):
    upstream = Upstream(graphhopper={"paths": []}, osrm=OSRM_OK)
    resolver, _ = make_resolver(upstream, clock)

    estimate = await resolver.resolve(ORIGIN, DESTINATION)
    assert estimate.source == RouteSource.PROVIDER_B


@pytest.mark.asyncio
async def test_provider_timeout_falls_through(clock):
    upstream = Upstream(graphhopper=httpx.ReadTimeout("slow"), osrm=OSRM_OK)
    resolver, _ = make_resolver(upstream, clock)

    estimate = await resolver.resolve(ORIGIN, DESTINATION)
    assert estimate.source == RouteSource.PROVIDER_B


@pytest.mark.asyncio
async def test_offline_uses_last_known_route(clock, mock_redis):
    upstream = Upstream(graphhopper=GRAPHHOPPER_OK)
    resolver, state = make_resolver(upstream, clock, redis=mock_redis)
    await resolver.resolve(ORIGIN, DESTINATION)

    # Past the freshness TTL, providers unreachable
    clock.advance(600)
    upstream.responses["graphhopper.com"] = None
    state["online"] = False

    estimate = await resolver.resolve(ORIGIN, DESTINATION)
    assert estimate.source == RouteSource.CACHE
    assert estimate.distance_km == pytest.approx(1.25)


@pytest.mark.asyncio
async def test_online_with_stale_cache_goes_straight_line(clock, mock_redis):
    upstream = Upstream(graphhopper=GRAPHHOPPER_OK)
    resolver, _ = make_resolver(upstream, clock, redis=mock_redis)
    await resolver.resolve(ORIGIN, DESTINATION)

    clock.advance(600)
    upstream.responses["graphhopper.com"] = None

    estimate = await resolver.resolve(ORIGIN, DESTINATION)
    assert estimate.source == RouteSource.STRAIGHT_LINE


@pytest.mark.asyncio
async def test_nearby_pair_shares_cache_entry(clock, mock_redis):
    upstream = Upstream(graphhopper=GRAPHHOPPER_OK)
    resolver, _ = make_resolver(upstream, clock, redis=mock_redis)
    await resolver.resolve(ORIGIN, DESTINATION)

    nearby = Coordinate(latitude=0.0001, longitude=0.0001)
    estimate = await resolver.resolve(nearby, DESTINATION)
    assert estimate.source == RouteSource.CACHE
    assert estimate.origin == nearby


@pytest.mark.asyncio
async def test_open_circuit_skips_provider(clock):
    upstream = Upstream(graphhopper=500, osrm=OSRM_OK)
    resolver, _ = make_resolver(upstream, clock)

    for _ in range(3):
        await resolver.resolve(ORIGIN, DESTINATION)
    assert upstream.calls.count("graphhopper.com") == 3

    upstream.calls.clear()
    estimate = await resolver.resolve(ORIGIN, DESTINATION)
    assert estimate.source == RouteSource.PROVIDER_B
    assert upstream.calls == ["router.project-osrm.org"]

    # After the reset timeout one trial request goes through again
    clock.advance(31)
    upstream.responses["graphhopper.com"] = GRAPHHOPPER_OK
    estimate = await resolver.resolve(Coordinate(latitude=1, longitude=1), DESTINATION)
    assert estimate.source == RouteSource.PROVIDER_A


@pytest.mark.asyncio
async def test_provider_results_are_tagged():
    upstream = Upstream(graphhopper=GRAPHHOPPER_OK, osrm={"code": "NoRoute", "routes": []})
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        graphhopper = GraphHopperProvider(client, "https://graphhopper.com/api/1/route", timeout_seconds=1)
        osrm = OsrmProvider(client, "https://router.project-osrm.org/route/v1/driving", timeout_seconds=1)

        ok = await graphhopper.fetch(ORIGIN, DESTINATION)
        err = await osrm.fetch(ORIGIN, DESTINATION)

    assert isinstance(ok, RouteOk)
    assert ok.route.distance_meters == 1250.0
    assert isinstance(err, RouteErr)
    assert err.reason == "malformed_payload"


@pytest.mark.asyncio
async def test_cache_outage_is_a_miss(clock, mocker, mock_redis):
    mocker.patch.object(mock_redis, "get", side_effect=ConnectionError("redis down"))
    mocker.patch.object(mock_redis, "set", side_effect=ConnectionError("redis down"))
    resolver, _ = make_resolver(Upstream(graphhopper=GRAPHHOPPER_OK), clock, redis=mock_redis)

    estimate = await resolver.resolve(ORIGIN, DESTINATION)
    assert estimate.source == RouteSource.PROVIDER_A
