from .conflicts import ConflictGuard, ConflictResult
from .exceptions import (
    AlreadyClosedError,
    ConflictError,
    InvalidInputError,
    InvalidOdometerError,
    NotFoundError,
    StorageError,
    TripEngineError,
)
from .ghosts import GhostSweeper, NotesMarker, SweepResult, any_of, exact_duplicate, missing_driver
from .lifecycle import OpenOutcome, TripLifecycle
from .odometer import CoherenceWarning, Decision, DecisionLevel, OdometerPolicy
from .records import TripRecord
from .store import InMemoryTripStore, TripStore
from .vehicles import InMemoryVehicleDirectory, VehicleDirectory

__all__ = [
    "AlreadyClosedError",
    "CoherenceWarning",
    "ConflictError",
    "ConflictGuard",
    "ConflictResult",
    "Decision",
    "DecisionLevel",
    "GhostSweeper",
    "InMemoryTripStore",
    "InMemoryVehicleDirectory",
    "InvalidInputError",
    "InvalidOdometerError",
    "NotFoundError",
    "NotesMarker",
    "OdometerPolicy",
    "OpenOutcome",
    "StorageError",
    "SweepResult",
    "TripEngineError",
    "TripLifecycle",
    "TripRecord",
    "TripStore",
    "VehicleDirectory",
    "any_of",
    "exact_duplicate",
    "missing_driver",
]
