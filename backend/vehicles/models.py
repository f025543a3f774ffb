from django.db import models


class Vehicle(models.Model):
    plate = models.CharField(max_length=10, unique=True)
    model = models.CharField(max_length=100)
    # Reference value offered when a trip is opened; refreshed whenever a trip closes.
    last_known_odometer = models.FloatField(default=0)
    active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["plate"]

    def __str__(self) -> str:  # type: ignore[override]
        return f"{self.plate} ({self.model})"
