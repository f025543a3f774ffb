from django.urls import path

from .views import (
    ActiveTripListView,
    CoherenceView,
    SweepGhostsView,
    TripAmendView,
    TripCloseView,
    TripDetailView,
    TripForceCloseView,
    TripListView,
    TripOpenView,
)

app_name = "trips"

urlpatterns = [
    path("", TripListView.as_view(), name="list"),
    path("active/", ActiveTripListView.as_view(), name="active"),
    path("open/", TripOpenView.as_view(), name="open"),
    path("<int:pk>/", TripDetailView.as_view(), name="detail"),
    path("<int:pk>/close/", TripCloseView.as_view(), name="close"),
    path("<int:pk>/force-close/", TripForceCloseView.as_view(), name="force-close"),
    path("<int:pk>/amend/", TripAmendView.as_view(), name="amend"),
    path(
        "vehicles/<int:vehicle_id>/sweep-ghosts/",
        SweepGhostsView.as_view(),
        name="sweep-ghosts",
    ),
    path(
        "vehicles/<int:vehicle_id>/coherence/",
        CoherenceView.as_view(),
        name="coherence",
    ),
]
