"""
Position stabilization service.

Filters raw GPS fixes so only material movement reaches the datastore.
A rejected fix still counts as liveness: the caller refreshes the presence
timestamp without moving the coordinates.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Optional

from backend.app.core.config import settings
from backend.app.schemas.position import Position
from backend.app.services.geo_math import distance_km


class DecisionReason(str, enum.Enum):
    FIRST_FIX = "first_fix"
    MOVED = "moved"
    STALE_REFRESH = "stale_refresh"
    JITTER = "jitter"
    LOW_ACCURACY = "low_accuracy"
    OUT_OF_ORDER = "out_of_order"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StabilizerDecision:
    accept: bool
    reason: DecisionReason


class PositionStabilizer:
    """
    Decides whether a fix is material.

    Accepts when there is no previous accepted fix, when the actor moved at
    least ``min_distance_km``, or when ``max_staleness_seconds`` passed since
    the previous accepted fix. Fixes worse than ``low_accuracy_threshold_m``
    are dropped only if a precise fix arrived within ``low_accuracy_window_seconds``.
    """

    def __init__(
        self,
        min_distance_km: float = None,
        max_staleness_seconds: float = None,
        low_accuracy_threshold_m: float = None,
        low_accuracy_window_seconds: float = None,
    ):
        self.min_distance_km = (
            settings.stabilization_distance_km if min_distance_km is None else min_distance_km
        )
        self.max_staleness_ms = int(1000 * (
            settings.max_staleness_seconds if max_staleness_seconds is None else max_staleness_seconds
        ))
        self.low_accuracy_threshold_m = (
            settings.low_accuracy_threshold_m if low_accuracy_threshold_m is None else low_accuracy_threshold_m
        )
        self.low_accuracy_window_ms = int(1000 * (
            settings.low_accuracy_window_seconds if low_accuracy_window_seconds is None
            else low_accuracy_window_seconds
        ))
        # actor_id -> capture time of the latest fix within the accuracy threshold
        self._last_precise_at_ms: Dict[str, int] = {}

    def evaluate(self, candidate: Position, previous: Optional[Position]) -> StabilizerDecision:
        if candidate.accuracy > self.low_accuracy_threshold_m:
            precise_at = self._last_precise_at_ms.get(candidate.actor_id)
            if precise_at is not None and 0 <= candidate.captured_at_ms - precise_at <= self.low_accuracy_window_ms:
                return StabilizerDecision(False, DecisionReason.LOW_ACCURACY)
        else:
            known = self._last_precise_at_ms.get(candidate.actor_id, 0)
            self._last_precise_at_ms[candidate.actor_id] = max(known, candidate.captured_at_ms)

        if previous is None:
            return StabilizerDecision(True, DecisionReason.FIRST_FIX)

        if candidate.captured_at_ms < previous.captured_at_ms:
            return StabilizerDecision(False, DecisionReason.OUT_OF_ORDER)

        if distance_km(previous, candidate) >= self.min_distance_km:
            return StabilizerDecision(True, DecisionReason.MOVED)

        if candidate.captured_at_ms - previous.captured_at_ms > self.max_staleness_ms:
            return StabilizerDecision(True, DecisionReason.STALE_REFRESH)

        return StabilizerDecision(False, DecisionReason.JITTER)

    def forget(self, actor_id: str) -> None:
        self._last_precise_at_ms.pop(actor_id, None)
