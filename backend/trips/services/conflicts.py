from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Optional

from .records import TripRecord
from .store import TripStore


def override_note(overridden_trip_id: Hashable) -> str:
    return (
        f"[Override] Vehicle already had open trip {overridden_trip_id}; "
        "opened anyway by explicit decision."
    )


@dataclass(frozen=True)
class ConflictResult:
    conflict: bool
    existing_trip: Optional[TripRecord] = None
    overridden: bool = False

    def audit_note(self) -> str:
        if not (self.conflict and self.overridden and self.existing_trip is not None):
            return ""
        return override_note(self.existing_trip.id)


class ConflictGuard:
    """Detects a second concurrent open trip for a vehicle.

    The check is advisory: the store's uniqueness rule is the actual safety
    net, since check-then-act is not atomic on its own.
    """

    def __init__(self, store: TripStore) -> None:
        self.store = store

    def check_before_open(self, vehicle_id: Hashable, allow_override: bool = False) -> ConflictResult:
        existing = self.store.find_open_by_vehicle(vehicle_id)
        if existing is None:
            return ConflictResult(conflict=False)
        return ConflictResult(conflict=True, existing_trip=existing, overridden=bool(allow_override))
