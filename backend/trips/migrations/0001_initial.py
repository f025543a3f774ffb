import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("vehicles", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Trip",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("started_at", models.DateTimeField()),
                ("ended_at", models.DateTimeField(blank=True, null=True)),
                ("start_odometer", models.FloatField()),
                ("end_odometer", models.FloatField(blank=True, null=True)),
                (
                    "start_evidence_url",
                    models.CharField(blank=True, max_length=500, null=True),
                ),
                (
                    "end_evidence_url",
                    models.CharField(blank=True, max_length=500, null=True),
                ),
                ("notes", models.TextField(blank=True, default="")),
                ("override_of", models.PositiveBigIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "driver",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="trips",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "supervisor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="supervised_trips",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "vehicle",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="trips",
                        to="vehicles.vehicle",
                    ),
                ),
            ],
            options={"ordering": ["-started_at", "-id"]},
        ),
        migrations.AddIndex(
            model_name="trip",
            index=models.Index(fields=["vehicle", "started_at"], name="trip_vehicle_started_idx"),
        ),
        migrations.AddIndex(
            model_name="trip",
            index=models.Index(fields=["driver", "started_at"], name="trip_driver_started_idx"),
        ),
        migrations.AddConstraint(
            model_name="trip",
            constraint=models.UniqueConstraint(
                condition=models.Q(("ended_at__isnull", True), ("override_of__isnull", True)),
                fields=("vehicle",),
                name="unique_open_trip_per_vehicle",
            ),
        ),
        migrations.AddConstraint(
            model_name="trip",
            constraint=models.CheckConstraint(
                condition=models.Q(
                    models.Q(("end_odometer__isnull", True), ("ended_at__isnull", True)),
                    models.Q(
                        ("end_odometer__gte", models.F("start_odometer")),
                        ("end_odometer__isnull", False),
                        ("ended_at__isnull", False),
                    ),
                    _connector="OR",
                ),
                name="closed_trip_end_not_below_start",
            ),
        ),
    ]
