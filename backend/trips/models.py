from django.conf import settings
from django.db import models
from django.db.models import F, Q


class Trip(models.Model):
    """A vehicle-use episode (jornada) from check-out to check-in. Open while ended_at is null."""

    vehicle = models.ForeignKey("vehicles.Vehicle", on_delete=models.CASCADE, related_name="trips")
    # SET_NULL leaves orphaned trips behind when a user is removed; the sweeper treats them as ghosts.
    driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="trips",
    )
    supervisor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="supervised_trips",
    )
    started_at = models.DateTimeField()
    ended_at = models.DateTimeField(null=True, blank=True)
    start_odometer = models.FloatField()
    end_odometer = models.FloatField(null=True, blank=True)
    # Opaque references owned by the photo-upload service.
    start_evidence_url = models.CharField(max_length=500, null=True, blank=True)
    end_evidence_url = models.CharField(max_length=500, null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    # Id of the trip that was already open when this one was opened under an explicit override.
    override_of = models.PositiveBigIntegerField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-started_at", "-id"]
        indexes = [
            models.Index(fields=["vehicle", "started_at"], name="trip_vehicle_started_idx"),
            models.Index(fields=["driver", "started_at"], name="trip_driver_started_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["vehicle"],
                condition=Q(ended_at__isnull=True, override_of__isnull=True),
                name="unique_open_trip_per_vehicle",
            ),
            models.CheckConstraint(
                condition=Q(ended_at__isnull=True, end_odometer__isnull=True)
                | Q(
                    ended_at__isnull=False,
                    end_odometer__isnull=False,
                    end_odometer__gte=F("start_odometer"),
                ),
                name="closed_trip_end_not_below_start",
            ),
        ]

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def __str__(self) -> str:  # type: ignore[override]
        state = "open" if self.is_open else "closed"
        return f"Trip {self.id} on vehicle {self.vehicle_id} ({state})"
