"""
Position stabilizer tests.
"""

import pytest

from backend.app.core.exceptions import DataInvalidError
from backend.app.schemas.position import Position
from backend.app.services.position_stabilizer import DecisionReason, PositionStabilizer

# One meter of latitude, in degrees
METER = 1 / 111_195

T0 = 1_700_000_000_000


def fix(lat_m: float = 0.0, at_ms: int = T0, accuracy: float = 5.0, actor_id: str = "amb-1") -> Position:
    return Position(actor_id=actor_id, latitude=lat_m * METER, longitude=0.0, accuracy=accuracy,
                    captured_at_ms=at_ms)


def accepted_count(stabilizer, fixes):
    previous = None
    count = 0
    for candidate in fixes:
        decision = stabilizer.evaluate(candidate, previous)
        if decision.accept:
            previous = candidate
            count += 1
    return count


def test_three_meter_jitter_yields_one_update():
    stabilizer = PositionStabilizer(min_distance_km=0.01, max_staleness_seconds=60)
    assert accepted_count(stabilizer, [fix(0), fix(3, T0 + 1000)]) == 1


def test_fifteen_meter_move_yields_two_updates():
    stabilizer = PositionStabilizer(min_distance_km=0.01, max_staleness_seconds=60)
    assert accepted_count(stabilizer, [fix(0), fix(15, T0 + 1000)]) == 2


def test_stale_refresh_accepts_stationary_fix():
    stabilizer = PositionStabilizer(min_distance_km=0.01, max_staleness_seconds=60)
    first = fix(0)

    assert stabilizer.evaluate(fix(1, T0 + 30_000), first).reason == DecisionReason.JITTER
    decision = stabilizer.evaluate(fix(1, T0 + 61_000), first)
    assert decision.accept
    assert decision.reason == DecisionReason.STALE_REFRESH


def test_out_of_order_fix_is_rejected():
    stabilizer = PositionStabilizer()
    previous = fix(0, T0 + 5000)
    decision = stabilizer.evaluate(fix(100, T0), previous)
    assert not decision.accept
    assert decision.reason == DecisionReason.OUT_OF_ORDER


def test_low_accuracy_fix_dropped_after_recent_precise_fix():
    stabilizer = PositionStabilizer(low_accuracy_threshold_m=100, low_accuracy_window_seconds=15)
    precise = fix(0, T0, accuracy=10)
    assert stabilizer.evaluate(precise, None).reason == DecisionReason.FIRST_FIX

    decision = stabilizer.evaluate(fix(500, T0 + 5000, accuracy=800), precise)
    assert not decision.accept
    assert decision.reason == DecisionReason.LOW_ACCURACY


def test_low_accuracy_fix_used_when_nothing_better():
    stabilizer = PositionStabilizer(low_accuracy_threshold_m=100, low_accuracy_window_seconds=15)
    assert stabilizer.evaluate(fix(0, T0, accuracy=800), None).accept

    precise = fix(0, T0, accuracy=10)
    stabilizer.evaluate(precise, None)
    # Window has passed: a coarse fix is better than none
    assert stabilizer.evaluate(fix(500, T0 + 20_000, accuracy=800), precise).accept


def test_forget_clears_accuracy_history():
    stabilizer = PositionStabilizer(low_accuracy_threshold_m=100, low_accuracy_window_seconds=15)
    stabilizer.evaluate(fix(0, T0, accuracy=10), None)
    stabilizer.forget("amb-1")
    assert stabilizer.evaluate(fix(500, T0 + 1000, accuracy=800), None).accept


def test_out_of_range_fix_is_data_invalid():
    with pytest.raises(DataInvalidError) as exc_info:
        Position.from_fix(actor_id="amb-1", latitude=91.0, longitude=0.0, captured_at_ms=T0)
    assert exc_info.value.status_code == 422
