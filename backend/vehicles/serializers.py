from rest_framework import serializers

from .models import Vehicle


class VehicleSerializer(serializers.ModelSerializer):
    class Meta:
        model = Vehicle
        fields = ("id", "plate", "model", "last_known_odometer", "active", "created_at", "updated_at")
        read_only_fields = fields
