from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from datetime import date
from typing import Any, Dict, Hashable, Iterator, List, Mapping, Optional

from .exceptions import ConflictError, InvalidInputError, InvalidOdometerError, NotFoundError
from .records import TripRecord


class TripStore(ABC):
    """Persistence contract consumed by the lifecycle, conflict guard and sweeper."""

    @abstractmethod
    def create(self, trip: TripRecord) -> TripRecord: ...

    @abstractmethod
    def get(self, trip_id: Hashable) -> TripRecord: ...

    @abstractmethod
    def find_open_by_vehicle(self, vehicle_id: Hashable) -> Optional[TripRecord]: ...

    @abstractmethod
    def list_open(self, driver_id: Optional[Hashable] = None) -> List[TripRecord]: ...

    @abstractmethod
    def list_by_filter(
        self,
        vehicle_id: Optional[Hashable] = None,
        driver_id: Optional[Hashable] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[TripRecord]: ...

    @abstractmethod
    def update(self, trip_id: Hashable, patch: Mapping[str, Any]) -> TripRecord: ...

    @abstractmethod
    def delete(self, trip_id: Hashable) -> None: ...

    @abstractmethod
    def lock_vehicles(self, *vehicle_ids: Hashable):
        """Context manager serialising mutations for the given vehicles."""


def pick_open_trip(open_trips: List[TripRecord]) -> Optional[TripRecord]:
    """The regular open trip wins over override trips; otherwise the oldest one."""
    if not open_trips:
        return None
    regular = [t for t in open_trips if t.override_of is None]
    candidates = regular or open_trips
    return min(candidates, key=lambda t: t.started_at)


def _lock_order(vehicle_id: Hashable) -> tuple:
    return (type(vehicle_id).__name__, str(vehicle_id))


class VehicleLocks:
    """Process-local registry of one re-entrant lock per vehicle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def _lock_for(self, vehicle_id: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(vehicle_id)
            if lock is None:
                lock = self._locks[vehicle_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, *vehicle_ids: Hashable) -> Iterator[None]:
        # Sorted acquisition keeps two-vehicle amendments deadlock free.
        unique = sorted({v for v in vehicle_ids if v is not None}, key=_lock_order)
        with ExitStack() as stack:
            for vehicle_id in unique:
                stack.enter_context(self._lock_for(vehicle_id))
            yield


class InMemoryTripStore(TripStore):
    """Dictionary-backed store enforcing the same integrity rules as the database schema."""

    def __init__(self) -> None:
        self._trips: Dict[Hashable, TripRecord] = {}
        self._ids = itertools.count(1)
        self._mutex = threading.RLock()
        self._locks = VehicleLocks()

    def lock_vehicles(self, *vehicle_ids: Hashable):
        return self._locks.hold(*vehicle_ids)

    def _open_for(self, vehicle_id: Hashable, exclude: Optional[Hashable] = None) -> List[TripRecord]:
        return [
            t
            for t in self._trips.values()
            if t.vehicle_id == vehicle_id and t.is_open and t.id != exclude
        ]

    def _check_integrity(self, trip: TripRecord) -> None:
        if trip.ended_at is not None:
            if trip.end_odometer is None:
                raise InvalidInputError("closed trip requires end_odometer", trip_id=trip.id)
            if trip.end_odometer < trip.start_odometer:
                raise InvalidOdometerError("end below start", trip_id=trip.id)
        elif trip.end_odometer is not None:
            raise InvalidInputError("end_odometer requires ended_at", trip_id=trip.id)
        if trip.is_open and trip.override_of is None:
            existing = [t for t in self._open_for(trip.vehicle_id, exclude=trip.id) if t.override_of is None]
            if existing:
                raise ConflictError(
                    "vehicle already has an open trip",
                    existing_trip=existing[0],
                    vehicle_id=trip.vehicle_id,
                )

    def create(self, trip: TripRecord) -> TripRecord:
        with self._mutex:
            stored = trip.with_changes(id=next(self._ids))
            self._check_integrity(stored)
            self._trips[stored.id] = stored
            return stored

    def get(self, trip_id: Hashable) -> TripRecord:
        with self._mutex:
            try:
                return self._trips[trip_id]
            except KeyError:
                raise NotFoundError("Trip not found", trip_id=trip_id) from None

    def find_open_by_vehicle(self, vehicle_id: Hashable) -> Optional[TripRecord]:
        with self._mutex:
            return pick_open_trip(self._open_for(vehicle_id))

    def list_open(self, driver_id: Optional[Hashable] = None) -> List[TripRecord]:
        with self._mutex:
            trips = [t for t in self._trips.values() if t.is_open]
        if driver_id is not None:
            trips = [t for t in trips if t.driver_id == driver_id]
        return sorted(trips, key=lambda t: (t.started_at, t.id), reverse=True)

    def list_by_filter(
        self,
        vehicle_id: Optional[Hashable] = None,
        driver_id: Optional[Hashable] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[TripRecord]:
        with self._mutex:
            trips = list(self._trips.values())
        if vehicle_id is not None:
            trips = [t for t in trips if t.vehicle_id == vehicle_id]
        if driver_id is not None:
            trips = [t for t in trips if t.driver_id == driver_id]
        if date_from is not None:
            trips = [t for t in trips if t.started_at.date() >= date_from]
        if date_to is not None:
            trips = [t for t in trips if t.started_at.date() <= date_to]
        return sorted(trips, key=lambda t: (t.started_at, t.id), reverse=True)

    def update(self, trip_id: Hashable, patch: Mapping[str, Any]) -> TripRecord:
        with self._mutex:
            current = self.get(trip_id)
            updated = current.with_changes(**dict(patch))
            self._check_integrity(updated)
            self._trips[trip_id] = updated
            return updated

    def delete(self, trip_id: Hashable) -> None:
        with self._mutex:
            if self._trips.pop(trip_id, None) is None:
                raise NotFoundError("Trip not found", trip_id=trip_id)
