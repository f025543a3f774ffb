from rest_framework import serializers

from drivers.models import Driver
from vehicles.models import Vehicle


class TripSerializer(serializers.Serializer):
    """Read representation of an engine ``TripRecord``."""

    id = serializers.IntegerField(read_only=True)
    vehicle_id = serializers.IntegerField(read_only=True)
    driver_id = serializers.IntegerField(read_only=True, allow_null=True)
    supervisor_id = serializers.IntegerField(read_only=True, allow_null=True)
    started_at = serializers.DateTimeField(read_only=True)
    ended_at = serializers.DateTimeField(read_only=True, allow_null=True)
    start_odometer = serializers.FloatField(read_only=True)
    end_odometer = serializers.FloatField(read_only=True, allow_null=True)
    distance = serializers.FloatField(read_only=True, allow_null=True)
    start_evidence_url = serializers.CharField(read_only=True, allow_null=True)
    end_evidence_url = serializers.CharField(read_only=True, allow_null=True)
    notes = serializers.CharField(read_only=True)
    override_of = serializers.IntegerField(read_only=True, allow_null=True)
    is_open = serializers.BooleanField(read_only=True)


def _vehicle_field(**kwargs):
    return serializers.PrimaryKeyRelatedField(queryset=Vehicle.objects.all(), **kwargs)


def _user_field(**kwargs):
    return serializers.PrimaryKeyRelatedField(queryset=Driver.objects.all(), **kwargs)


class OpenTripSerializer(serializers.Serializer):
    vehicle_id = _vehicle_field()
    driver_id = _user_field(required=False)
    supervisor_id = _user_field(required=False, allow_null=True)
    start_odometer = serializers.FloatField()
    reference_last_odometer = serializers.FloatField(required=False, allow_null=True)
    allow_override = serializers.BooleanField(required=False, default=False)
    start_evidence_url = serializers.CharField(
        max_length=500, required=False, allow_null=True, allow_blank=True
    )
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_supervisor_id(self, value):
        if value is not None and not value.is_supervisor:
            raise serializers.ValidationError("Selected user is not an encarregado.")
        return value


class CloseTripSerializer(serializers.Serializer):
    end_odometer = serializers.FloatField()
    end_evidence_url = serializers.CharField(
        max_length=500, required=False, allow_null=True, allow_blank=True
    )
    notes = serializers.CharField(required=False, allow_blank=True)


class ForceCloseTripSerializer(serializers.Serializer):
    end_odometer = serializers.FloatField()
    reason = serializers.CharField(required=False, allow_blank=True)


class AmendTripSerializer(serializers.Serializer):
    started_at = serializers.DateTimeField(required=False)
    ended_at = serializers.DateTimeField(required=False, allow_null=True)
    start_odometer = serializers.FloatField(required=False)
    end_odometer = serializers.FloatField(required=False, allow_null=True)
    vehicle_id = _vehicle_field(required=False)
    driver_id = _user_field(required=False)
    supervisor_id = _user_field(required=False, allow_null=True)
    start_evidence_url = serializers.CharField(
        max_length=500, required=False, allow_null=True, allow_blank=True
    )
    end_evidence_url = serializers.CharField(
        max_length=500, required=False, allow_null=True, allow_blank=True
    )
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide at least one field to amend.")
        return attrs

    def to_patch(self) -> dict:
        patch = dict(self.validated_data)
        for key in ("vehicle_id", "driver_id", "supervisor_id"):
            if patch.get(key) is not None:
                patch[key] = patch[key].pk
        return patch


class TripFilterSerializer(serializers.Serializer):
    vehicle_id = serializers.IntegerField(required=False)
    driver_id = serializers.IntegerField(required=False)
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)

    def validate(self, attrs):
        date_from, date_to = attrs.get("date_from"), attrs.get("date_to")
        if date_from and date_to and date_from > date_to:
            raise serializers.ValidationError("date_from must be on or before date_to.")
        return attrs
