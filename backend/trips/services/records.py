from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Hashable, Optional

# Fields a caller may correct after the fact; id and override_of are fixed at creation.
AMENDABLE_FIELDS = frozenset(
    {
        "started_at",
        "ended_at",
        "start_odometer",
        "end_odometer",
        "vehicle_id",
        "driver_id",
        "supervisor_id",
        "start_evidence_url",
        "end_evidence_url",
        "notes",
    }
)


@dataclass(frozen=True)
class TripRecord:
    vehicle_id: Hashable
    driver_id: Optional[Hashable]
    started_at: datetime
    start_odometer: float
    supervisor_id: Optional[Hashable] = None
    ended_at: Optional[datetime] = None
    end_odometer: Optional[float] = None
    start_evidence_url: Optional[str] = None
    end_evidence_url: Optional[str] = None
    notes: str = ""
    override_of: Optional[Hashable] = None
    id: Optional[Hashable] = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def distance(self) -> Optional[float]:
        if self.ended_at is None or self.end_odometer is None:
            return None
        return self.end_odometer - self.start_odometer

    def with_changes(self, **changes: Any) -> "TripRecord":
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def append_note(existing: Optional[str], addition: Optional[str]) -> str:
    existing = (existing or "").strip()
    addition = (addition or "").strip()
    if not addition:
        return existing
    if not existing:
        return addition
    return f"{existing}\n{addition}"
