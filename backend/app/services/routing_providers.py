"""
Routing provider clients.

Each provider turns an origin/destination pair into a tagged result:
RouteOk with a normalized ProviderRoute, or RouteErr with the reason it
failed. Providers never raise for upstream problems and never retry; the
resolver decides what to try next.
"""

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from backend.app.core.reliability import CircuitBreaker
from backend.app.models.dispatch_enums import RouteSource
from backend.app.schemas.route import ProviderRoute, RouteStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteOk:
    route: ProviderRoute


@dataclass(frozen=True)
class RouteErr:
    reason: str  # timeout, transport_error, http_<status>, malformed_payload, circuit_open
    detail: str = ""


RouteResult = Union[RouteOk, RouteErr]


class RoutingProvider(abc.ABC):
    """Base class handling timeouts, status codes, parsing and the circuit breaker."""

    name = "provider"
    source = RouteSource.PROVIDER_A

    def __init__(self, client: httpx.AsyncClient, timeout_seconds: float,
                 breaker: Optional[CircuitBreaker] = None):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker(name=self.name)

    async def fetch(self, origin, destination) -> RouteResult:
        if not self.breaker.allow():
            return RouteErr("circuit_open")

        try:
            response = await asyncio.wait_for(
                self._request(origin, destination), timeout=self.timeout_seconds
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            return self._fail("timeout", exc)
        except httpx.HTTPError as exc:
            return self._fail("transport_error", exc)

        if not response.is_success:
            return self._fail(f"http_{response.status_code}")

        try:
            route = self.parse(response.json())
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            # pydantic.ValidationError and json errors are ValueErrors
            return self._fail("malformed_payload", exc)

        self.breaker.record_success()
        return RouteOk(route)

    def _fail(self, reason: str, exc: Exception = None) -> RouteErr:
        self.breaker.record_failure()
        return RouteErr(reason, repr(exc) if exc is not None else "")

    @abc.abstractmethod
    async def _request(self, origin, destination) -> httpx.Response:
        ...

    @abc.abstractmethod
    def parse(self, payload: dict) -> ProviderRoute:
        ...


class GraphHopperProvider(RoutingProvider):
    """Turn-by-turn routing; rich but rate limited on the free tier."""

    name = "graphhopper"
    source = RouteSource.PROVIDER_A

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout_seconds: float,
                 api_key: str = None, breaker: CircuitBreaker = None):
        super().__init__(client, timeout_seconds, breaker)
        self.base_url = base_url
        self.api_key = api_key

    async def _request(self, origin, destination) -> httpx.Response:
        params = [
            ("point", f"{origin.latitude},{origin.longitude}"),
            ("point", f"{destination.latitude},{destination.longitude}"),
            ("vehicle", "car"),
            ("locale", "en"),
            ("instructions", "true"),
            ("calc_points", "true"),
            ("points_encoded", "false"),
        ]
        if self.api_key:
            params.append(("key", self.api_key))
        return await self.client.get(self.base_url, params=params, timeout=self.timeout_seconds)

    def parse(self, payload: dict) -> ProviderRoute:
        path = payload["paths"][0]
        coordinates = path["points"]["coordinates"]
        return ProviderRoute(
            distance_meters=float(path["distance"]),
            duration_seconds=float(path["time"]) / 1000,
            polyline=";".join(f"{c[1]},{c[0]}" for c in coordinates),
            steps=[
                RouteStep(
                    instruction=step.get("text", ""),
                    distance_meters=float(step["distance"]),
                    duration_seconds=float(step["time"]) / 1000,
                )
                for step in path.get("instructions", [])
            ],
        )


class OsrmProvider(RoutingProvider):
    """OSRM demo server; coarser instructions but widely available."""

    name = "osrm"
    source = RouteSource.PROVIDER_B

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout_seconds: float,
                 breaker: CircuitBreaker = None):
        super().__init__(client, timeout_seconds, breaker)
        self.base_url = base_url.rstrip("/")

    async def _request(self, origin, destination) -> httpx.Response:
        url = (
            f"{self.base_url}/{origin.longitude},{origin.latitude};"
            f"{destination.longitude},{destination.latitude}"
        )
        params = {"overview": "full", "geometries": "polyline", "steps": "true"}
        return await self.client.get(url, params=params, timeout=self.timeout_seconds)

    def parse(self, payload: dict) -> ProviderRoute:
        if payload.get("code", "Ok") != "Ok":
            raise ValueError(f"OSRM error code {payload.get('code')}")
        route = payload["routes"][0]
        legs = route.get("legs") or [{}]
        return ProviderRoute(
            distance_meters=float(route["distance"]),
            duration_seconds=float(route["duration"]),
            polyline=route.get("geometry") or "",
            steps=[
                RouteStep(
                    instruction=" ".join(
                        part for part in (step["maneuver"]["type"], step.get("name")) if part
                    ),
                    distance_meters=float(step["distance"]),
                    duration_seconds=float(step["duration"]),
                )
                for step in legs[0].get("steps", [])
            ],
        )
