import logging

from django.shortcuts import get_object_or_404
from rest_framework import permissions, status
from rest_framework.exceptions import PermissionDenied
from rest_framework.response import Response
from rest_framework.views import APIView

from drivers.permissions import IsSupervisor
from vehicles.models import Vehicle

from .adapters import build_lifecycle, build_sweeper
from .serializers import (
    AmendTripSerializer,
    CloseTripSerializer,
    ForceCloseTripSerializer,
    OpenTripSerializer,
    TripFilterSerializer,
    TripSerializer,
)
from .services import (
    AlreadyClosedError,
    ConflictError,
    InvalidInputError,
    InvalidOdometerError,
    NotFoundError,
    StorageError,
    TripEngineError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (InvalidOdometerError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConflictError, status.HTTP_409_CONFLICT),
    (AlreadyClosedError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
)


def engine_error_response(exc: TripEngineError) -> Response:
    """Surface the engine's own message and context so the dispatcher sees the real reason."""
    body = exc.as_dict()
    if isinstance(exc, ConflictError) and exc.existing_trip is not None:
        body["existing_trip"] = TripSerializer(exc.existing_trip).data
    code = next(
        (code for cls, code in ERROR_STATUS if isinstance(exc, cls)), status.HTTP_400_BAD_REQUEST
    )
    if code >= 500:
        logger.error("Trip engine storage failure: %s", exc.detail)
    return Response(body, status=code)


def _is_supervisor(user) -> bool:
    return bool(getattr(user, "is_supervisor", False))


class TripEngineView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def handle_exception(self, exc):  # type: ignore[override]
        if isinstance(exc, TripEngineError):
            return engine_error_response(exc)
        return super().handle_exception(exc)

    def get_own_trip(self, request, pk):
        trip = build_lifecycle().store.get(pk)
        if not _is_supervisor(request.user) and trip.driver_id != request.user.pk:
            raise NotFoundError("Trip not found", trip_id=pk)
        return trip


class TripListView(TripEngineView):
    """Trip history, newest first. Operators only ever see their own trips."""

    def get(self, request, *args, **kwargs):  # type: ignore[override]
        ser = TripFilterSerializer(data=request.query_params)
        ser.is_valid(raise_exception=True)
        filters = dict(ser.validated_data)
        if not _is_supervisor(request.user):
            filters["driver_id"] = request.user.pk
        trips = build_lifecycle().store.list_by_filter(**filters)
        return Response(TripSerializer(trips, many=True).data)


class ActiveTripListView(TripEngineView):
    def get(self, request, *args, **kwargs):  # type: ignore[override]
        driver_id = request.query_params.get("driver_id")
        if not _is_supervisor(request.user):
            driver_id = request.user.pk
        elif driver_id is not None:
            if not driver_id.isdigit():
                return Response(
                    {"detail": "driver_id must be an integer"}, status=status.HTTP_400_BAD_REQUEST
                )
            driver_id = int(driver_id)
        trips = build_lifecycle().store.list_open(driver_id=driver_id)
        return Response(TripSerializer(trips, many=True).data)


class TripOpenView(TripEngineView):
    def post(self, request, *args, **kwargs):  # type: ignore[override]
        ser = OpenTripSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        driver = data.get("driver_id") or request.user
        if driver.pk != request.user.pk and not _is_supervisor(request.user):
            raise PermissionDenied("Only an encarregado can open a trip for another driver.")
        supervisor = data.get("supervisor_id")

        outcome = build_lifecycle().open(
            vehicle_id=data["vehicle_id"].pk,
            driver_id=driver.pk,
            supervisor_id=supervisor.pk if supervisor is not None else None,
            start_odometer=data["start_odometer"],
            reference_last_odometer=data.get("reference_last_odometer"),
            allow_override=data["allow_override"],
            start_evidence_url=data.get("start_evidence_url") or None,
            notes=data.get("notes", ""),
        )
        conflict = outcome.conflict
        return Response(
            {
                "trip": TripSerializer(outcome.trip).data,
                "odometer": {
                    "level": outcome.odometer.level.value,
                    "message": outcome.odometer.message,
                },
                "conflict": {
                    "conflict": conflict.conflict,
                    "overridden": conflict.overridden,
                    "existing_trip_id": conflict.existing_trip.id if conflict.existing_trip else None,
                },
                "warnings": outcome.warnings,
            },
            status=status.HTTP_201_CREATED,
        )


class TripDetailView(TripEngineView):
    def get_permissions(self):
        if self.request.method == "DELETE":
            return [IsSupervisor()]
        return super().get_permissions()

    def get(self, request, pk, *args, **kwargs):  # type: ignore[override]
        return Response(TripSerializer(self.get_own_trip(request, pk)).data)

    def delete(self, request, pk, *args, **kwargs):  # type: ignore[override]
        build_lifecycle().delete(pk)
        return Response(status=status.HTTP_204_NO_CONTENT)


class TripCloseView(TripEngineView):
    def post(self, request, pk, *args, **kwargs):  # type: ignore[override]
        self.get_own_trip(request, pk)
        ser = CloseTripSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        trip = build_lifecycle().close(
            pk,
            ser.validated_data["end_odometer"],
            end_evidence_url=ser.validated_data.get("end_evidence_url") or None,
            notes=ser.validated_data.get("notes"),
        )
        return Response(TripSerializer(trip).data)


class TripForceCloseView(TripEngineView):
    permission_classes = [IsSupervisor]

    def post(self, request, pk, *args, **kwargs):  # type: ignore[override]
        ser = ForceCloseTripSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        trip = build_lifecycle().force_close(
            pk, ser.validated_data["end_odometer"], reason=ser.validated_data.get("reason") or None
        )
        return Response(TripSerializer(trip).data)


class TripAmendView(TripEngineView):
    permission_classes = [IsSupervisor]

    def post(self, request, pk, *args, **kwargs):  # type: ignore[override]
        ser = AmendTripSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        trip = build_lifecycle().amend(pk, ser.to_patch())
        return Response(TripSerializer(trip).data)


class SweepGhostsView(TripEngineView):
    permission_classes = [IsSupervisor]

    def post(self, request, vehicle_id, *args, **kwargs):  # type: ignore[override]
        get_object_or_404(Vehicle, pk=vehicle_id)
        result = build_sweeper().sweep(vehicle_id)
        return Response(
            {
                "vehicle_id": result.vehicle_id,
                "removed_count": result.removed_count,
                "removed_ids": result.removed_ids,
            }
        )


class CoherenceView(TripEngineView):
    def get(self, request, vehicle_id, *args, **kwargs):  # type: ignore[override]
        get_object_or_404(Vehicle, pk=vehicle_id)
        warnings = build_lifecycle().audit_coherence(vehicle_id)
        return Response({"vehicle_id": vehicle_id, "warnings": [vars(w) for w in warnings]})
