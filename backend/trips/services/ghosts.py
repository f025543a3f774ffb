"""Administrative removal of "ghost" trips (fantasmas).

What counts as a ghost is operational policy and keeps changing with the
data-entry surface, so the sweeper takes any ``GhostPredicate`` and the
shipped predicates are small composable building blocks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Hashable, List, Sequence

from .records import TripRecord
from .store import TripStore

logger = logging.getLogger(__name__)

# (trip, full history snapshot of the same vehicle) -> is ghost
GhostPredicate = Callable[[TripRecord, Sequence[TripRecord]], bool]


def missing_driver(trip: TripRecord, siblings: Sequence[TripRecord]) -> bool:
    return trip.driver_id is None


def exact_duplicate(trip: TripRecord, siblings: Sequence[TripRecord]) -> bool:
    # The lowest id of a duplicate group is the original and survives.
    return any(
        other.id != trip.id
        and other.started_at == trip.started_at
        and other.start_odometer == trip.start_odometer
        and other.id < trip.id
        for other in siblings
    )


class NotesMarker:
    """Matches trips whose notes carry a marker written by an automatic process."""

    def __init__(self, marker: str) -> None:
        if not marker:
            raise ValueError("marker must be a non-empty string")
        self.marker = marker.casefold()

    def __call__(self, trip: TripRecord, siblings: Sequence[TripRecord]) -> bool:
        return self.marker in (trip.notes or "").casefold()

    def __repr__(self) -> str:
        return f"NotesMarker({self.marker!r})"


def any_of(*predicates: GhostPredicate) -> GhostPredicate:
    def predicate(trip: TripRecord, siblings: Sequence[TripRecord]) -> bool:
        return any(p(trip, siblings) for p in predicates)

    return predicate


@dataclass(frozen=True)
class SweepResult:
    vehicle_id: Hashable
    removed_count: int
    removed_ids: List[Hashable] = field(default_factory=list)


class GhostSweeper:
    def __init__(self, store: TripStore, predicate: GhostPredicate) -> None:
        self.store = store
        self.predicate = predicate

    def find(self, vehicle_id: Hashable) -> List[TripRecord]:
        history = self.store.list_by_filter(vehicle_id=vehicle_id)
        return [trip for trip in history if self.predicate(trip, history)]

    def sweep(self, vehicle_id: Hashable) -> SweepResult:
        """Delete every ghost of one vehicle. Irreversible; callers confirm with a human first."""
        with self.store.lock_vehicles(vehicle_id):
            ghosts = self.find(vehicle_id)
            for trip in ghosts:
                self.store.delete(trip.id)
        removed = [trip.id for trip in ghosts]
        logger.info("Swept %d ghost trip(s) from vehicle %s: %s", len(removed), vehicle_id, removed)
        return SweepResult(vehicle_id=vehicle_id, removed_count=len(removed), removed_ids=removed)
