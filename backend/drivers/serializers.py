from rest_framework import serializers
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from .models import Driver


class DriverSerializer(serializers.ModelSerializer):
    is_supervisor = serializers.BooleanField(read_only=True)

    class Meta:
        model = Driver
        fields = (
            "id",
            "name",
            "email",
            "role",
            "license_no",
            "is_supervisor",
            "date_joined",
        )
        read_only_fields = fields


class EmailTokenObtainPairSerializer(TokenObtainPairSerializer):
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["email"] = user.email
        token["name"] = user.name
        token["role"] = user.role
        return token
