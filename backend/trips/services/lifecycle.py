from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Hashable, Iterator, List, Mapping, Optional

from .conflicts import ConflictGuard, ConflictResult, override_note
from .exceptions import (
    AlreadyClosedError,
    ConflictError,
    InvalidInputError,
    InvalidOdometerError,
    StorageError,
)
from .odometer import CoherenceWarning, Decision, DecisionLevel, OdometerPolicy, as_reading
from .records import AMENDABLE_FIELDS, TripRecord, append_note
from .store import TripStore
from .vehicles import VehicleDirectory

logger = logging.getLogger(__name__)

DEFAULT_FORCE_CLOSE_REASON = "[Finalizado manualmente pelo Encarregado]"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OpenOutcome:
    trip: TripRecord
    odometer: Decision
    conflict: ConflictResult

    @property
    def warnings(self) -> List[str]:
        messages = []
        if self.odometer.level is DecisionLevel.WARN:
            messages.append(self.odometer.message)
        if self.conflict.overridden:
            messages.append(self.conflict.audit_note())
        return messages


class TripLifecycle:
    """OPEN -> CLOSED state machine for trips.

    There is no CLOSED -> OPEN transition; a closed trip may only be amended.
    """

    def __init__(
        self,
        store: TripStore,
        vehicles: Optional[VehicleDirectory] = None,
        policy: Optional[OdometerPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        force_close_reason: str = DEFAULT_FORCE_CLOSE_REASON,
    ) -> None:
        self.store = store
        self.vehicles = vehicles
        self.policy = policy or OdometerPolicy()
        self.guard = ConflictGuard(store)
        self.clock = clock
        self.force_close_reason = force_close_reason

    @contextmanager
    def _locked_trip(self, trip_id: Hashable, *extra_vehicle_ids: Hashable) -> Iterator[TripRecord]:
        # The trip's vehicle can change under us (amend), so re-read it once the lock is held.
        for _ in range(3):
            trip = self.store.get(trip_id)
            with self.store.lock_vehicles(trip.vehicle_id, *extra_vehicle_ids):
                current = self.store.get(trip_id)
                if current.vehicle_id == trip.vehicle_id:
                    yield current
                    return
        raise StorageError("Trip kept moving between vehicles while locking", trip_id=trip_id)

    def open(
        self,
        vehicle_id: Hashable,
        driver_id: Hashable,
        supervisor_id: Optional[Hashable],
        start_odometer: Any,
        reference_last_odometer: Any = None,
        allow_override: bool = False,
        start_evidence_url: Optional[str] = None,
        notes: str = "",
    ) -> OpenOutcome:
        if vehicle_id is None:
            raise InvalidInputError("vehicle_id is required")
        if driver_id is None:
            raise InvalidInputError("driver_id is required", vehicle_id=vehicle_id)

        with self.store.lock_vehicles(vehicle_id):
            conflict = self.guard.check_before_open(vehicle_id, allow_override)
            if conflict.conflict and not conflict.overridden:
                existing = conflict.existing_trip
                raise ConflictError(
                    f"Vehicle already has an open trip ({existing.id})",
                    existing_trip=existing,
                    vehicle_id=vehicle_id,
                )

            if reference_last_odometer is None and self.vehicles is not None:
                reference_last_odometer = self.vehicles.last_known_odometer(vehicle_id)
            decision = self.policy.validate_start(start_odometer, reference_last_odometer)

            trip = TripRecord(
                vehicle_id=vehicle_id,
                driver_id=driver_id,
                supervisor_id=supervisor_id,
                started_at=self.clock(),
                start_odometer=as_reading(start_odometer, "start_odometer"),
                start_evidence_url=start_evidence_url,
                notes=append_note(notes, conflict.audit_note()),
                override_of=conflict.existing_trip.id if conflict.overridden else None,
            )
            stored = self.store.create(trip)

        if conflict.overridden:
            logger.warning(
                "Trip %s opened on vehicle %s overriding open trip %s",
                stored.id,
                vehicle_id,
                conflict.existing_trip.id,
            )
        if decision.level is DecisionLevel.WARN:
            logger.warning(
                "Trip %s start odometer %s below last known %s",
                stored.id,
                stored.start_odometer,
                reference_last_odometer,
            )
        logger.info("Trip %s opened on vehicle %s by driver %s", stored.id, vehicle_id, driver_id)
        return OpenOutcome(trip=stored, odometer=decision, conflict=conflict)

    def _close(
        self,
        trip_id: Hashable,
        end_odometer: Any,
        end_evidence_url: Optional[str],
        notes: Optional[str],
    ) -> TripRecord:
        with self._locked_trip(trip_id) as trip:
            if not trip.is_open:
                raise AlreadyClosedError(
                    "Trip is already closed", trip_id=trip.id, vehicle_id=trip.vehicle_id
                )
            decision = self.policy.validate_end(end_odometer, trip.start_odometer)
            if decision.blocking:
                raise InvalidOdometerError(
                    f"end_odometer ({end_odometer}) cannot be below start_odometer "
                    f"({trip.start_odometer})",
                    trip_id=trip.id,
                    vehicle_id=trip.vehicle_id,
                )
            patch: dict[str, Any] = {
                "ended_at": self.clock(),
                "end_odometer": as_reading(end_odometer, "end_odometer"),
                "notes": append_note(trip.notes, notes),
            }
            if end_evidence_url is not None:
                patch["end_evidence_url"] = end_evidence_url
            closed = self.store.update(trip.id, patch)
            if self.vehicles is not None:
                self.vehicles.record_odometer(closed.vehicle_id, closed.end_odometer)
        return closed

    def close(
        self,
        trip_id: Hashable,
        end_odometer: Any,
        end_evidence_url: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TripRecord:
        closed = self._close(trip_id, end_odometer, end_evidence_url, notes)
        logger.info(
            "Trip %s closed on vehicle %s at %s km", closed.id, closed.vehicle_id, closed.end_odometer
        )
        return closed

    def force_close(self, trip_id: Hashable, end_odometer: Any, reason: Optional[str] = None) -> TripRecord:
        closed = self._close(trip_id, end_odometer, None, reason or self.force_close_reason)
        logger.info(
            "Trip %s force-closed on vehicle %s at %s km",
            closed.id,
            closed.vehicle_id,
            closed.end_odometer,
        )
        return closed

    def _normalise_patch(self, patch: Mapping[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(patch) - AMENDABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Fields cannot be amended: {', '.join(unknown)}")
        changes = dict(patch)
        for field in ("vehicle_id", "driver_id", "started_at", "start_odometer"):
            if field in changes and changes[field] is None:
                raise InvalidInputError(f"{field} cannot be cleared")
        if "start_odometer" in changes:
            changes["start_odometer"] = as_reading(changes["start_odometer"], "start_odometer")
            if changes["start_odometer"] <= 0:
                raise InvalidInputError("start_odometer must be greater than zero")
        if changes.get("end_odometer") is not None:
            changes["end_odometer"] = as_reading(changes["end_odometer"], "end_odometer")
        if "notes" in changes:
            changes["notes"] = changes["notes"] or ""
        return changes

    def amend(self, trip_id: Hashable, patch: Mapping[str, Any]) -> TripRecord:
        """Correct a trip in place, in either state.

        Override trips keep their override line in the notes. Moving an open
        trip requires the target vehicle to be free; an override trip moved
        that way becomes the regular open trip there. Closing through amend
        refreshes the vehicle's last known odometer like `close` does.
        """
        changes = self._normalise_patch(patch)
        target_vehicle = changes.get("vehicle_id")

        with self._locked_trip(trip_id, *([target_vehicle] if target_vehicle is not None else [])) as current:
            if "notes" in changes and current.override_of is not None:
                note = override_note(current.override_of)
                if note not in changes["notes"]:
                    changes["notes"] = append_note(changes["notes"], note)
            merged = current.with_changes(**changes)

            if not current.is_open and merged.is_open:
                raise InvalidInputError(
                    "A closed trip cannot be reopened; open a new trip instead",
                    trip_id=current.id,
                    vehicle_id=current.vehicle_id,
                )
            if merged.ended_at is not None and merged.end_odometer is None:
                raise InvalidInputError(
                    "end_odometer is required when ended_at is set",
                    trip_id=current.id,
                    vehicle_id=current.vehicle_id,
                )
            if merged.ended_at is None and merged.end_odometer is not None:
                raise InvalidInputError(
                    "end_odometer requires ended_at", trip_id=current.id, vehicle_id=current.vehicle_id
                )
            if merged.ended_at is not None and merged.ended_at < merged.started_at:
                raise InvalidInputError(
                    "ended_at cannot be before started_at",
                    trip_id=current.id,
                    vehicle_id=current.vehicle_id,
                )
            if merged.end_odometer is not None:
                decision = self.policy.validate_end(merged.end_odometer, merged.start_odometer)
                if decision.blocking:
                    raise InvalidOdometerError(
                        f"end_odometer ({merged.end_odometer}) cannot be below start_odometer "
                        f"({merged.start_odometer})",
                        trip_id=current.id,
                        vehicle_id=merged.vehicle_id,
                    )
            if merged.is_open and merged.vehicle_id != current.vehicle_id:
                existing = self.store.find_open_by_vehicle(merged.vehicle_id)
                if existing is not None:
                    raise ConflictError(
                        f"Vehicle already has an open trip ({existing.id})",
                        existing_trip=existing,
                        vehicle_id=merged.vehicle_id,
                    )
                # The overridden trip stays behind on the old vehicle.
                if merged.override_of is not None:
                    changes["override_of"] = None

            effective = {k: v for k, v in changes.items() if getattr(current, k) != v}
            if not effective:
                return current
            amended = self.store.update(current.id, effective)
            if current.is_open and not amended.is_open and self.vehicles is not None:
                self.vehicles.record_odometer(amended.vehicle_id, amended.end_odometer)

        logger.info("Trip %s amended: %s", amended.id, ", ".join(sorted(effective)))
        return amended

    def delete(self, trip_id: Hashable) -> None:
        with self._locked_trip(trip_id) as trip:
            self.store.delete(trip.id)
        logger.info("Trip %s deleted from vehicle %s", trip.id, trip.vehicle_id)

    def audit_coherence(self, vehicle_id: Hashable) -> List[CoherenceWarning]:
        return self.policy.audit_history(self.store.list_by_filter(vehicle_id=vehicle_id))
