from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Hashable, Optional


class VehicleDirectory(ABC):
    """Access to the vehicle's cached last known odometer, which the engine reads but does not own."""

    @abstractmethod
    def last_known_odometer(self, vehicle_id: Hashable) -> float: ...

    @abstractmethod
    def record_odometer(self, vehicle_id: Hashable, reading: float) -> None: ...


class InMemoryVehicleDirectory(VehicleDirectory):
    def __init__(self, readings: Optional[Dict[Hashable, float]] = None) -> None:
        self._readings: Dict[Hashable, float] = dict(readings or {})
        self._guard = threading.Lock()

    def last_known_odometer(self, vehicle_id: Hashable) -> float:
        with self._guard:
            return self._readings.get(vehicle_id, 0.0)

    def record_odometer(self, vehicle_id: Hashable, reading: float) -> None:
        with self._guard:
            self._readings[vehicle_id] = reading
