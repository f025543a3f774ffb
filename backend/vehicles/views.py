from rest_framework import generics, permissions

from .models import Vehicle
from .serializers import VehicleSerializer


class VehicleListView(generics.ListAPIView):
    permission_classes = [permissions.IsAuthenticated]
    serializer_class = VehicleSerializer

    def get_queryset(self):
        queryset = Vehicle.objects.all()
        if self.request.query_params.get("active") in ("1", "true"):
            queryset = queryset.filter(active=True)
        return queryset


class VehicleDetailView(generics.RetrieveAPIView):
    permission_classes = [permissions.IsAuthenticated]
    serializer_class = VehicleSerializer
    queryset = Vehicle.objects.all()
