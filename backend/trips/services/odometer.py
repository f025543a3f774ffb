from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Hashable, Iterable, List, Optional

from .exceptions import InvalidInputError
from .records import TripRecord


class DecisionLevel(str, enum.Enum):
    OK = "OK"
    WARN = "WARN"
    BLOCK = "BLOCK"


@dataclass(frozen=True)
class Decision:
    level: DecisionLevel
    message: str = ""

    @property
    def blocking(self) -> bool:
        return self.level is DecisionLevel.BLOCK


OK = Decision(DecisionLevel.OK)


@dataclass(frozen=True)
class CoherenceWarning:
    trip_id: Optional[Hashable]
    previous_trip_id: Optional[Hashable]
    reading: float
    previous_reading: float
    message: str


def as_reading(value: Any, field: str = "odometer") -> float:
    """Coerce a kilometre reading to float, rejecting bools, non-numerics and NaN/inf."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidInputError(f"{field} must be a number")
    reading = float(value)
    if not math.isfinite(reading):
        raise InvalidInputError(f"{field} must be a finite number")
    return reading


class OdometerPolicy:
    """Kilometre reading rules.

    Coherence is soft everywhere (corrections, rollovers and meter swaps are
    legitimate) except end-below-start, which is physically impossible.
    """

    def validate_start(self, candidate: Any, reference_last: Any = None) -> Decision:
        reading = as_reading(candidate, "start_odometer")
        if reading <= 0:
            raise InvalidInputError("start_odometer must be greater than zero")
        if reference_last is None:
            return OK
        reference = as_reading(reference_last, "reference_last_odometer")
        if reference > 0 and reading < reference:
            return Decision(DecisionLevel.WARN, "candidate below last known reading")
        return OK

    def validate_end(self, candidate: Any, start: Any) -> Decision:
        reading = as_reading(candidate, "end_odometer")
        if reading <= 0:
            raise InvalidInputError("end_odometer must be greater than zero")
        if reading < as_reading(start, "start_odometer"):
            return Decision(DecisionLevel.BLOCK, "end below start")
        return OK

    def audit_history(self, trips: Iterable[TripRecord]) -> List[CoherenceWarning]:
        """Warn where a trip starts below the highest reading seen before it."""
        ordered = sorted(trips, key=lambda t: t.started_at)
        warnings: List[CoherenceWarning] = []
        # Trip holding the highest reading so far, and that reading.
        previous: Optional[TripRecord] = None
        previous_reading = 0.0
        for trip in ordered:
            if previous is not None and trip.start_odometer < previous_reading:
                warnings.append(
                    CoherenceWarning(
                        trip_id=trip.id,
                        previous_trip_id=previous.id,
                        reading=trip.start_odometer,
                        previous_reading=previous_reading,
                        message=(
                            f"start reading {trip.start_odometer:g} is below "
                            f"{previous_reading:g} recorded by trip {previous.id}"
                        ),
                    )
                )
            reading = max(trip.start_odometer, trip.end_odometer or 0.0)
            if previous is None or reading > previous_reading:
                previous, previous_reading = trip, reading
        return warnings
