from __future__ import annotations

from typing import Any, Hashable, Optional


class TripEngineError(Exception):
    """Base class for every failure raised by the trip engine.

    Carries enough structure (code + offending trip/vehicle) for the caller to
    render a specific message instead of a generic failure.
    """

    code = "trip_error"

    def __init__(
        self,
        detail: str,
        *,
        trip_id: Optional[Hashable] = None,
        vehicle_id: Optional[Hashable] = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.trip_id = trip_id
        self.vehicle_id = vehicle_id

    def as_dict(self) -> dict[str, Any]:
        return {
            "detail": self.detail,
            "code": self.code,
            "trip_id": self.trip_id,
            "vehicle_id": self.vehicle_id,
        }


class InvalidInputError(TripEngineError):
    code = "invalid_input"


class ConflictError(TripEngineError):
    """Opening (or moving) a trip would create a second open trip for a vehicle."""

    code = "conflict"

    def __init__(self, detail: str, *, existing_trip: Any, vehicle_id: Optional[Hashable] = None):
        super().__init__(
            detail,
            trip_id=getattr(existing_trip, "id", None),
            vehicle_id=vehicle_id if vehicle_id is not None else getattr(existing_trip, "vehicle_id", None),
        )
        self.existing_trip = existing_trip


class InvalidOdometerError(TripEngineError):
    code = "invalid_odometer"


class AlreadyClosedError(TripEngineError):
    code = "already_closed"


class NotFoundError(TripEngineError):
    code = "not_found"


class StorageError(TripEngineError):
    code = "storage_error"
