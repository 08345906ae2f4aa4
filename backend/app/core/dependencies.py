"""
Service wiring and FastAPI dependencies.

The application holds one ServiceContainer on app.state. Endpoints reach
services through the get_container dependency, which tests override with a
container built around in-memory collaborators.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx
from starlette.requests import HTTPConnection

from backend.app.core.clock import SystemClock
from backend.app.core.config import settings
from backend.app.core.events import EventBus
from backend.app.core.redis_client import get_redis, ping_redis
from backend.app.services.datastore import Datastore, InMemoryDatastore
from backend.app.services.dead_letter import DeadLetterRecorder
from backend.app.services.dispatch_state_machine import DispatchStateMachine
from backend.app.services.geofence_evaluator import GeofenceEvaluator
from backend.app.services.presence_broadcaster import TrackingRegistry
from backend.app.services.presence_directory import PresenceDirectory
from backend.app.services.route_resolver import RouteResolver, build_route_resolver
from backend.app.services.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class Connectivity:
    """Process-wide view of whether upstream networks are reachable."""
    online: bool = True

    def __call__(self) -> bool:
        return self.online


@dataclass
class ServiceContainer:
    clock: object
    events: EventBus
    datastore: Datastore
    resolver: RouteResolver
    dispatch: DispatchStateMachine
    geofences: GeofenceEvaluator
    tracking: TrackingRegistry
    directory: PresenceDirectory
    scheduler: Scheduler
    connectivity: Connectivity = field(default_factory=Connectivity)
    http_client: Optional[httpx.AsyncClient] = None
    redis_client: object = None
    dead_letters: Optional[DeadLetterRecorder] = None

    async def start(self) -> None:
        await self.directory.start()
        self.scheduler.every(settings.geofence_interval_seconds, "geofence_evaluation", self.geofences.evaluate)
        self.scheduler.every(settings.stale_sweep_interval_seconds, "stale_call_sweep",
                             self.dispatch.sweep_stale_calls)
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.tracking.stop_all()
        await self.directory.stop()
        if self.http_client is not None:
            await self.http_client.aclose()


def assemble_container(
    datastore: Datastore,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client=None,
    clock=None,
    events: EventBus = None,
    dead_letters: DeadLetterRecorder = None,
) -> ServiceContainer:
    """Build the service graph around the given collaborators."""
    clock = clock or SystemClock()
    events = events or EventBus()
    connectivity = Connectivity()
    http_client = http_client or httpx.AsyncClient()
    resolver = build_route_resolver(http_client, redis_client=redis_client, connectivity=connectivity, clock=clock)
    if dead_letters is not None:
        events.add_listener(dead_letters)

    return ServiceContainer(
        clock=clock,
        events=events,
        datastore=datastore,
        resolver=resolver,
        dispatch=DispatchStateMachine(datastore, resolver, events=events, clock=clock),
        geofences=GeofenceEvaluator(datastore, events=events, clock=clock),
        tracking=TrackingRegistry(datastore, events=events, clock=clock),
        directory=PresenceDirectory(datastore, clock=clock),
        scheduler=Scheduler(clock=clock),
        connectivity=connectivity,
        http_client=http_client,
        redis_client=redis_client,
        dead_letters=dead_letters,
    )


async def build_container() -> ServiceContainer:
    """Build the container from settings."""
    redis_client = get_redis()
    if not await ping_redis(redis_client):
        logger.warning("Redis unreachable, route cache disabled", extra={"redis_url": settings.redis_url})
        redis_client = None

    dead_letters = None
    if settings.datastore_backend == "sql":
        from backend.app.db.session import create_tables, get_session_factory
        from backend.app.services.redis_change_feed import RedisChangeFeed
        from backend.app.services.sql_datastore import SqlDatastore

        await create_tables()
        feed = RedisChangeFeed(redis_client) if redis_client is not None else None
        datastore = SqlDatastore(get_session_factory(), feed=feed)
        dead_letters = DeadLetterRecorder(get_session_factory())
    else:
        datastore = InMemoryDatastore()

    logger.info("Datastore ready", extra={"backend": settings.datastore_backend})
    return assemble_container(datastore, redis_client=redis_client, dead_letters=dead_letters)


def get_container(connection: HTTPConnection) -> ServiceContainer:
    """FastAPI dependency returning the application's services."""
    return connection.app.state.container
