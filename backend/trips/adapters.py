"""Django ORM implementations of the engine's storage contracts, plus default wiring."""

import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Hashable, Iterator, List, Mapping, Optional

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from django.utils.module_loading import import_string

from vehicles.models import Vehicle

from .models import Trip
from .services import (
    ConflictError,
    GhostSweeper,
    NotesMarker,
    NotFoundError,
    StorageError,
    TripLifecycle,
    TripRecord,
    TripStore,
    VehicleDirectory,
    any_of,
)
from .services.ghosts import GhostPredicate
from .services.lifecycle import DEFAULT_FORCE_CLOSE_REASON
from .services.store import VehicleLocks

logger = logging.getLogger(__name__)

DEFAULT_GHOST_PREDICATES = [
    "trips.services.ghosts.missing_driver",
    "trips.services.ghosts.exact_duplicate",
]

# Record attribute -> model field name, where they differ.
_FK_FIELDS = {"vehicle_id": "vehicle", "driver_id": "driver", "supervisor_id": "supervisor"}

# Shared by every store instance so threads of one process serialise per vehicle.
_vehicle_locks = VehicleLocks()


def to_record(trip: Trip) -> TripRecord:
    return TripRecord(
        id=trip.pk,
        vehicle_id=trip.vehicle_id,
        driver_id=trip.driver_id,
        supervisor_id=trip.supervisor_id,
        started_at=trip.started_at,
        ended_at=trip.ended_at,
        start_odometer=trip.start_odometer,
        end_odometer=trip.end_odometer,
        start_evidence_url=trip.start_evidence_url,
        end_evidence_url=trip.end_evidence_url,
        notes=trip.notes or "",
        override_of=trip.override_of,
    )


@contextmanager
def _storage_errors(action: str, **context: Any) -> Iterator[None]:
    try:
        yield
    except DatabaseError as exc:
        logger.exception("Trip storage failed to %s", action)
        raise StorageError(f"Storage failure while trying to {action}", **context) from exc


class DjangoTripStore(TripStore):
    def lock_vehicles(self, *vehicle_ids: Hashable):
        return self._lock(*vehicle_ids)

    @contextmanager
    def _lock(self, *vehicle_ids: Hashable) -> Iterator[None]:
        ids = sorted({v for v in vehicle_ids if v is not None})
        with _vehicle_locks.hold(*ids), _storage_errors("lock vehicles"), transaction.atomic():
            # No-op on backends without row locks (SQLite serialises writers anyway).
            list(Vehicle.objects.select_for_update().filter(pk__in=ids).order_by("pk").values_list("pk", flat=True))
            yield

    def _conflict_or_storage_error(self, exc: IntegrityError, trip: TripRecord) -> Exception:
        if trip.is_open and trip.override_of is None:
            existing = self.find_open_by_vehicle(trip.vehicle_id)
            if existing is not None and existing.id != trip.id:
                return ConflictError(
                    f"Vehicle already has an open trip ({existing.id})",
                    existing_trip=existing,
                    vehicle_id=trip.vehicle_id,
                )
        logger.error("Trip %s violates a storage constraint: %s", trip.id, exc)
        return StorageError(
            "Trip violates a storage constraint", trip_id=trip.id, vehicle_id=trip.vehicle_id
        )

    def create(self, trip: TripRecord) -> TripRecord:
        values = trip.as_dict()
        values.pop("id")
        try:
            with transaction.atomic():
                obj = Trip.objects.create(**values)
        except IntegrityError as exc:
            raise self._conflict_or_storage_error(exc, trip) from exc
        except DatabaseError as exc:
            logger.exception("Trip storage failed to create a trip")
            raise StorageError("Storage failure while creating trip", vehicle_id=trip.vehicle_id) from exc
        return to_record(obj)

    def get(self, trip_id: Hashable) -> TripRecord:
        with _storage_errors("load trip", trip_id=trip_id):
            try:
                return to_record(Trip.objects.get(pk=trip_id))
            except Trip.DoesNotExist:
                raise NotFoundError("Trip not found", trip_id=trip_id) from None

    def find_open_by_vehicle(self, vehicle_id: Hashable) -> Optional[TripRecord]:
        with _storage_errors("look up open trip", vehicle_id=vehicle_id):
            trip = (
                Trip.objects.filter(vehicle_id=vehicle_id, ended_at__isnull=True)
                .order_by(F("override_of").asc(nulls_first=True), "started_at", "id")
                .first()
            )
        return to_record(trip) if trip is not None else None

    def list_open(self, driver_id: Optional[Hashable] = None) -> List[TripRecord]:
        queryset = Trip.objects.filter(ended_at__isnull=True)
        if driver_id is not None:
            queryset = queryset.filter(driver_id=driver_id)
        with _storage_errors("list open trips"):
            return [to_record(t) for t in queryset.order_by("-started_at", "-id")]

    def list_by_filter(
        self,
        vehicle_id: Optional[Hashable] = None,
        driver_id: Optional[Hashable] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[TripRecord]:
        queryset = Trip.objects.all()
        if vehicle_id is not None:
            queryset = queryset.filter(vehicle_id=vehicle_id)
        if driver_id is not None:
            queryset = queryset.filter(driver_id=driver_id)
        if date_from is not None:
            queryset = queryset.filter(started_at__date__gte=date_from)
        if date_to is not None:
            queryset = queryset.filter(started_at__date__lte=date_to)
        with _storage_errors("list trips", vehicle_id=vehicle_id):
            return [to_record(t) for t in queryset.order_by("-started_at", "-id")]

    def update(self, trip_id: Hashable, patch: Mapping[str, Any]) -> TripRecord:
        with _storage_errors("load trip", trip_id=trip_id):
            try:
                obj = Trip.objects.get(pk=trip_id)
            except Trip.DoesNotExist:
                raise NotFoundError("Trip not found", trip_id=trip_id) from None
        for attr, value in patch.items():
            setattr(obj, attr, value)
        update_fields = [_FK_FIELDS.get(attr, attr) for attr in patch] + ["updated_at"]
        try:
            with transaction.atomic():
                obj.save(update_fields=update_fields)
        except IntegrityError as exc:
            raise self._conflict_or_storage_error(exc, to_record(obj)) from exc
        except DatabaseError as exc:
            logger.exception("Trip storage failed to update trip %s", trip_id)
            raise StorageError("Storage failure while updating trip", trip_id=trip_id) from exc
        return to_record(obj)

    def delete(self, trip_id: Hashable) -> None:
        with _storage_errors("delete trip", trip_id=trip_id):
            deleted, _ = Trip.objects.filter(pk=trip_id).delete()
        if not deleted:
            raise NotFoundError("Trip not found", trip_id=trip_id)


class DjangoVehicleDirectory(VehicleDirectory):
    def last_known_odometer(self, vehicle_id: Hashable) -> float:
        with _storage_errors("read vehicle odometer", vehicle_id=vehicle_id):
            reading = (
                Vehicle.objects.filter(pk=vehicle_id)
                .values_list("last_known_odometer", flat=True)
                .first()
            )
        if reading is None:
            raise NotFoundError("Vehicle not found", vehicle_id=vehicle_id)
        return reading

    def record_odometer(self, vehicle_id: Hashable, reading: float) -> None:
        with _storage_errors("update vehicle odometer", vehicle_id=vehicle_id):
            Vehicle.objects.filter(pk=vehicle_id).update(
                last_known_odometer=reading, updated_at=timezone.now()
            )


def ghost_predicate_from_settings() -> GhostPredicate:
    paths = getattr(settings, "FLEET_GHOST_PREDICATES", DEFAULT_GHOST_PREDICATES)
    predicates: List[GhostPredicate] = [import_string(path) for path in paths]
    predicates += [NotesMarker(marker) for marker in getattr(settings, "FLEET_GHOST_NOTE_MARKERS", [])]
    return any_of(*predicates)


def build_lifecycle() -> TripLifecycle:
    return TripLifecycle(
        DjangoTripStore(),
        DjangoVehicleDirectory(),
        clock=timezone.now,
        force_close_reason=getattr(settings, "FLEET_FORCE_CLOSE_NOTE", DEFAULT_FORCE_CLOSE_REASON),
    )


def build_sweeper() -> GhostSweeper:
    return GhostSweeper(DjangoTripStore(), ghost_predicate_from_settings())
