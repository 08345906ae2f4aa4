"""
Offline sync queue tests.

Replay order, bounded retries and overflow behaviour.
"""

import asyncio

import pytest

from backend.app.schemas.events import EventKind
from backend.app.schemas.sync import SyncState, WriteOperation, WritePayload
from backend.app.services.offline_sync_queue import OfflineSyncQueue


class FlakyWriter:
    """Records successful writes; fails keys listed in failures as many times as given."""

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.written = []
        self.attempts = []

    async def __call__(self, payload: WritePayload) -> None:
        self.attempts.append(payload.key)
        remaining = self.failures.get(payload.key, 0)
        if remaining:
            self.failures[payload.key] = remaining - 1
            raise ConnectionError(f"write of {payload.key} failed")
        self.written.append(payload.key)


def write(key: str, critical: bool = False) -> WritePayload:
    return WritePayload(operation=WriteOperation.UPSERT, table="presence_records", key=key,
                        row={"actor_id": key}, critical=critical)


@pytest.mark.asyncio
async def test_connected_write_goes_straight_through(clock):
    writer = FlakyWriter()
    queue = OfflineSyncQueue("amb-1", writer, clock=clock)

    assert await queue.submit(write("W1")) is True
    assert writer.written == ["W1"]
    assert queue.pending == 0
    assert queue.state == SyncState.CONNECTED


@pytest.mark.asyncio
async def test_replay_preserves_order_when_one_write_fails_once(clock):
    writer = FlakyWriter(failures={"W3": 1})
    queue = OfflineSyncQueue("amb-1", writer, clock=clock)

    await queue.set_online(False)
    for key in ["W1", "W2", "W3", "W4", "W5"]:
        assert await queue.submit(write(key)) is False
    assert queue.state == SyncState.QUEUING
    assert writer.attempts == []

    replayed = await queue.set_online(True)
    assert replayed == 2
    assert queue.state == SyncState.QUEUING
    assert [w.payload.key for w in queue.snapshot()] == ["W3", "W4", "W5"]

    assert await queue.drain() == 3
    assert writer.written == ["W1", "W2", "W3", "W4", "W5"]
    assert queue.state == SyncState.CONNECTED


@pytest.mark.asyncio
async def test_failed_write_switches_to_queuing(clock):
    writer = FlakyWriter(failures={"W1": 1})
    queue = OfflineSyncQueue("amb-1", writer, clock=clock)

    assert await queue.submit(write("W1")) is False
    assert queue.state == SyncState.QUEUING
    # Later writes queue behind the failed one
    assert await queue.submit(write("W2")) is False
    assert [w.attempt for w in queue.snapshot()] == [1, 0]

    assert await queue.drain() == 2
    assert writer.written == ["W1", "W2"]


@pytest.mark.asyncio
async def test_write_surfaced_after_max_attempts(clock, events):
    writer = FlakyWriter(failures={"W1": 10})
    queue = OfflineSyncQueue("amb-1", writer, events=events, clock=clock, max_attempts=3)

    await queue.set_online(False)
    await queue.submit(write("W1"))
    await queue.submit(write("W2"))
    await queue.set_online(True)  # attempt 1
    await queue.drain()  # attempt 2
    await queue.drain()  # attempt 3, gives up on W1

    failed = events.of_kind(EventKind.WRITE_FAILED, "amb-1")
    assert len(failed) == 1
    assert failed[0].subject_id == "W1"
    assert failed[0].detail["attempt"] == 3
    assert failed[0].detail["payload"]["key"] == "W1"

    assert await queue.drain() == 1
    assert writer.written == ["W2"]


@pytest.mark.asyncio
async def test_overflow_evicts_oldest_non_critical(clock, events):
    queue = OfflineSyncQueue("amb-1", FlakyWriter(), events=events, clock=clock, capacity=3)
    await queue.set_online(False)

    await queue.submit(write("stop", critical=True))
    await queue.submit(write("W1"))
    await queue.submit(write("W2"))
    await queue.submit(write("W3"))

    assert [w.payload.key for w in queue.snapshot()] == ["stop", "W2", "W3"]
    overflow = events.of_kind(EventKind.QUEUE_OVERFLOW)
    assert [e.subject_id for e in overflow] == ["W1"]


@pytest.mark.asyncio
async def test_write_timeout_is_queued_not_retried_inline(clock):
    started = []

    async def hanging_writer(payload):
        started.append(payload.key)
        await asyncio.sleep(10)

    queue = OfflineSyncQueue("amb-1", hanging_writer, clock=clock, write_timeout_seconds=0.01)

    assert await queue.submit(write("W1")) is False
    assert started == ["W1"]
    assert queue.pending == 1
    assert "TimeoutError" in queue.snapshot()[0].last_error


@pytest.mark.asyncio
async def test_closed_queue_starts_no_new_writes(clock):
    writer = FlakyWriter()
    queue = OfflineSyncQueue("amb-1", writer, clock=clock)
    await queue.close()

    assert await queue.submit(write("W1")) is False
    assert writer.attempts == []


class BlockingWriter(FlakyWriter):
    """Holds the first write open until released."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, payload: WritePayload) -> None:
        if not self.written:
            self.started.set()
            await self.release.wait()
        await super().__call__(payload)


@pytest.mark.asyncio
async def test_overflow_during_replay_spares_the_in_flight_write(clock, events):
    writer = BlockingWriter()
    queue = OfflineSyncQueue("amb-1", writer, events=events, clock=clock, capacity=2)
    await queue.set_online(False)
    await queue.submit(write("W1"))
    await queue.submit(write("W2"))

    draining = asyncio.create_task(queue.set_online(True))
    await writer.started.wait()
    await queue.submit(write("W3"))
    writer.release.set()
    await draining
    await queue.drain()

    overflow = events.of_kind(EventKind.QUEUE_OVERFLOW)
    assert [e.subject_id for e in overflow] == ["W2"]
    assert writer.written == ["W1", "W3"]
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_close_surfaces_unsynced_writes(clock, events):
    writer = FlakyWriter()
    queue = OfflineSyncQueue("amb-1", writer, events=events, clock=clock)
    await queue.set_online(False)
    await queue.submit(write("W1"))
    await queue.submit(write("W2"))

    await queue.close()

    failed = events.of_kind(EventKind.WRITE_FAILED, "amb-1")
    assert [e.subject_id for e in failed] == ["W1", "W2"]
    assert "closed" in failed[0].detail["error"]
    assert queue.pending == 0
    assert writer.attempts == []
