"""
Presence broadcasting and directory tests.
"""

import asyncio

import pytest

from backend.app.core.exceptions import DataInvalidError
from backend.app.models.dispatch_enums import ActorRole
from backend.app.schemas.events import EventKind
from backend.app.schemas.position import Position
from backend.app.schemas.sync import SyncState
from backend.app.services.datastore import PRESENCE_TABLE, ChangeEvent, ChangeType, InMemoryDatastore
from backend.app.services.position_stabilizer import DecisionReason
from backend.app.services.presence_broadcaster import PresenceBroadcaster, TrackingRegistry
from backend.app.services.presence_directory import PresenceDirectory

METER = 1 / 111_195


async def eventually(predicate, attempts: int = 100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


def fix(clock, actor_id="amb-1", north_m=0.0, accuracy=5.0):
    return Position(actor_id=actor_id, latitude=north_m * METER, longitude=0.0, accuracy=accuracy,
                    captured_at_ms=clock.now_ms())


class FailingDatastore(InMemoryDatastore):
    """In-memory datastore whose writes can be switched off."""

    def __init__(self):
        super().__init__()
        self.down = False
        self.upserts = []

    async def upsert(self, table, key, row):
        if self.down:
            raise ConnectionError("datastore unreachable")
        self.upserts.append(row)
        await super().upsert(table, key, row)


@pytest.fixture
def broadcaster(datastore, events, clock):
    return PresenceBroadcaster("amb-1", ActorRole.VEHICLE, "Ambulance 1", datastore,
                               events=events, clock=clock, watch_others=False)


@pytest.mark.asyncio
async def test_jitter_refreshes_liveness_only(broadcaster, datastore, clock):
    first = await broadcaster.publish(fix(clock))
    assert first.reason == DecisionReason.FIRST_FIX

    clock.advance(1)
    second = await broadcaster.publish(fix(clock, north_m=3))
    assert not second.accept

    row = await datastore.get(PRESENCE_TABLE, "amb-1")
    assert row["position"]["latitude"] == 0.0
    assert row["last_seen_ms"] == clock.now_ms()

    clock.advance(1)
    third = await broadcaster.publish(fix(clock, north_m=15))
    assert third.reason == DecisionReason.MOVED
    row = await datastore.get(PRESENCE_TABLE, "amb-1")
    assert row["position"]["latitude"] == pytest.approx(15 * METER)


@pytest.mark.asyncio
async def test_foreign_fix_is_rejected(broadcaster, clock):
    with pytest.raises(DataInvalidError):
        await broadcaster.publish(fix(clock, actor_id="amb-2"))


@pytest.mark.asyncio
async def test_offline_writes_replay_in_order(events, clock):
    datastore = FailingDatastore()
    broadcaster = PresenceBroadcaster("amb-1", ActorRole.VEHICLE, "Ambulance 1", datastore,
                                      events=events, clock=clock, watch_others=False)

    await broadcaster.set_online(False)
    for step in range(1, 6):
        clock.advance(2)
        await broadcaster.publish(fix(clock, north_m=20 * step))
    assert datastore.upserts == []
    assert broadcaster.queue.pending == 5

    await broadcaster.set_online(True)
    latitudes = [row["position"]["latitude"] for row in datastore.upserts]
    assert latitudes == pytest.approx([20 * step * METER for step in range(1, 6)])
    assert broadcaster.queue.state == SyncState.CONNECTED


@pytest.mark.asyncio
async def test_datastore_outage_is_queued_then_drained(events, clock):
    datastore = FailingDatastore()
    broadcaster = PresenceBroadcaster("amb-1", ActorRole.VEHICLE, "Ambulance 1", datastore,
                                      events=events, clock=clock, watch_others=False)

    datastore.down = True
    await broadcaster.publish(fix(clock))
    assert broadcaster.queue.state == SyncState.QUEUING

    datastore.down = False
    clock.advance(2)
    await broadcaster.publish(fix(clock, north_m=50))

    assert len(datastore.upserts) == 2
    assert datastore.upserts[0]["position"]["latitude"] == 0.0
    assert events.of_kind(EventKind.WRITE_FAILED) == []


@pytest.mark.asyncio
async def test_tracking_loop_and_stop(broadcaster, datastore, clock):
    await broadcaster.start()
    assert broadcaster.running

    broadcaster.feed(fix(clock))
    await broadcaster.stop()

    assert not broadcaster.running
    # Presence removed on stop
    assert await datastore.get(PRESENCE_TABLE, "amb-1") is None
    decision = await broadcaster.publish(fix(clock, north_m=100))
    assert decision.reason == DecisionReason.STOPPED
    assert await datastore.get(PRESENCE_TABLE, "amb-1") is None


@pytest.mark.asyncio
async def test_stop_finishes_pending_fixes(broadcaster, datastore, clock):
    await broadcaster.start()
    broadcaster.feed(fix(clock))
    await broadcaster.stop(remove_presence=False)

    row = await datastore.get(PRESENCE_TABLE, "amb-1")
    assert row is not None
    assert row["role"] == "vehicle"


@pytest.mark.asyncio
async def test_stop_while_offline_surfaces_unsynced_writes(broadcaster, datastore, events, clock):
    await broadcaster.publish(fix(clock))
    await broadcaster.set_online(False)
    clock.advance(1)
    await broadcaster.publish(fix(clock, north_m=100))

    await broadcaster.stop()

    failed = events.of_kind(EventKind.WRITE_FAILED, "amb-1")
    assert [e.detail["operation"] for e in failed] == ["upsert", "delete"]
    assert failed[0].detail["payload"]["row"]["position"]["latitude"] == pytest.approx(100 * METER)
    assert broadcaster.queue.pending == 0
    # The datastore still holds the last synced fix until the failures are replayed
    assert (await datastore.get(PRESENCE_TABLE, "amb-1"))["position"]["latitude"] == 0.0


@pytest.mark.asyncio
async def test_broadcasters_see_each_other(datastore, events, clock):
    amb = PresenceBroadcaster("amb-1", ActorRole.VEHICLE, "Ambulance 1", datastore, events=events, clock=clock)
    desk = PresenceBroadcaster("desk-1", ActorRole.DISPATCHER, "Desk", datastore, events=events, clock=clock)
    await amb.start()
    await desk.start()

    await amb.publish(fix(clock))
    await desk.publish(fix(clock, actor_id="desk-1", north_m=500))

    assert await eventually(lambda: "amb-1" in desk.directory.records)
    assert await eventually(lambda: "desk-1" in amb.directory.records)
    # Own presence is not mirrored
    assert "amb-1" not in amb.directory.records
    assert [r.actor_id for r in desk.directory.live(ActorRole.VEHICLE)] == ["amb-1"]

    await amb.stop()
    assert await eventually(lambda: "amb-1" not in desk.directory.records)
    await desk.stop()


@pytest.mark.asyncio
async def test_directory_ignores_older_updates(datastore, clock):
    directory = PresenceDirectory(datastore, clock=clock)
    newer = {
        "actor_id": "amb-1", "role": "vehicle", "display_name": "A1", "last_seen_ms": 2000,
        "position": {"actor_id": "amb-1", "latitude": 1.0, "longitude": 1.0, "accuracy": 5,
                     "captured_at_ms": 2000},
    }
    older = dict(newer, last_seen_ms=1000,
                 position=dict(newer["position"], latitude=0.5, captured_at_ms=1000))

    assert directory.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.UPDATE, key="amb-1", row=newer))
    assert not directory.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.UPDATE, key="amb-1", row=older))
    assert directory.records["amb-1"].position.latitude == 1.0

    assert not directory.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.UPDATE, key="bad",
                                           row={"actor_id": "bad"}))
    assert directory.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.DELETE, key="amb-1"))
    assert directory.records == {}

    # A late or redelivered update does not bring the actor back
    assert not directory.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.UPDATE, key="amb-1", row=newer))
    assert not directory.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.UPDATE, key="amb-1", row=older))
    assert directory.records == {}

    # Tracking again later does
    returned = dict(newer, last_seen_ms=3000, position=dict(newer["position"], captured_at_ms=3000))
    assert directory.apply(ChangeEvent(table=PRESENCE_TABLE, type=ChangeType.UPDATE, key="amb-1", row=returned))
    assert directory.records["amb-1"].last_seen_ms == 3000


@pytest.mark.asyncio
async def test_directory_watchers_receive_changes(datastore, clock):
    directory = PresenceDirectory(datastore, clock=clock)
    await directory.start()
    queue = directory.watch()

    broadcaster = PresenceBroadcaster("amb-1", ActorRole.VEHICLE, "A1", datastore, clock=clock,
                                      watch_others=False)
    await broadcaster.publish(fix(clock))

    event = await asyncio.wait_for(queue.get(), timeout=1)
    assert event.key == "amb-1"
    assert event.type == ChangeType.INSERT

    directory.unwatch(queue)
    await directory.stop()


@pytest.mark.asyncio
async def test_registry_reuses_and_stops_broadcasters(datastore, clock):
    registry = TrackingRegistry(datastore, clock=clock)
    first = await registry.get_or_start("amb-1", ActorRole.VEHICLE, "A1")
    again = await registry.get_or_start("amb-1", ActorRole.VEHICLE, "A1")
    assert first is again
    assert registry.get("amb-1") is first

    assert await registry.stop("amb-1")
    assert not await registry.stop("amb-1")
    assert registry.get("amb-1") is None
    await registry.stop_all()
