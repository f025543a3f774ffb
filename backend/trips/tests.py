from datetime import timedelta

from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from drivers.models import Driver
from vehicles.models import Vehicle

from .adapters import DjangoTripStore, DjangoVehicleDirectory, ghost_predicate_from_settings
from .models import Trip
from .services import ConflictError, NotFoundError, StorageError, TripRecord
from .services.lifecycle import DEFAULT_FORCE_CLOSE_REASON


class TripsApiTests(APITestCase):
    def setUp(self):
        self.operator = Driver.objects.create_user(
            email="bob@example.com", password="Password123!", name="Bob", license_no="LIC999"
        )
        self.other = Driver.objects.create_user(
            email="carol@example.com", password="Password123!", name="Carol"
        )
        self.supervisor = Driver.objects.create_user(
            email="enc@example.com",
            password="Password123!",
            name="Encarregado",
            role=Driver.Role.ENCARREGADO,
        )
        self.vehicle = Vehicle.objects.create(plate="ABC1234", model="Strada")
        self.truck = Vehicle.objects.create(plate="XYZ9876", model="Accelo", last_known_odometer=500)
        self.login("bob@example.com")

    def login(self, email):
        resp = self.client.post(
            reverse("drivers:login"),
            {"email": email, "password": "Password123!"},
            format="json",
        )
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {resp.data['access']}")

    def open_trip(self, vehicle=None, **payload):
        payload.setdefault("vehicle_id", (vehicle or self.vehicle).pk)
        payload.setdefault("start_odometer", 50000)
        return self.client.post(reverse("trips:open"), payload, format="json")

    def test_open_close_and_list_trip(self):
        resp = self.open_trip(start_evidence_url="https://photos.example.com/start.jpg")
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        trip = resp.data["trip"]
        self.assertTrue(trip["is_open"])
        self.assertEqual(trip["driver_id"], self.operator.pk)
        self.assertEqual(trip["start_evidence_url"], "https://photos.example.com/start.jpg")
        self.assertEqual(resp.data["odometer"]["level"], "OK")
        self.assertFalse(resp.data["conflict"]["conflict"])
        self.assertEqual(resp.data["warnings"], [])

        resp = self.client.get(reverse("trips:active"))
        self.assertEqual([t["id"] for t in resp.data], [trip["id"]])

        resp = self.client.post(
            reverse("trips:close", args=[trip["id"]]), {"end_odometer": 50120}, format="json"
        )
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertFalse(resp.data["is_open"])
        self.assertEqual(resp.data["distance"], 120)

        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.last_known_odometer, 50120)

        resp = self.client.get(reverse("trips:list"))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(len(resp.data), 1)
        self.assertEqual(self.client.get(reverse("trips:active")).data, [])

    def test_second_open_conflicts_until_overridden(self):
        first = self.open_trip().data["trip"]

        self.login("carol@example.com")
        resp = self.open_trip(start_odometer=50010)
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(resp.data["code"], "conflict")
        self.assertEqual(resp.data["trip_id"], first["id"])
        self.assertEqual(resp.data["existing_trip"]["id"], first["id"])

        resp = self.open_trip(start_odometer=50010, allow_override=True)
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertTrue(resp.data["conflict"]["overridden"])
        self.assertEqual(resp.data["conflict"]["existing_trip_id"], first["id"])
        self.assertIn(str(first["id"]), resp.data["trip"]["notes"])
        self.assertEqual(resp.data["trip"]["override_of"], first["id"])
        self.assertEqual(Trip.objects.filter(vehicle=self.vehicle, ended_at__isnull=True).count(), 2)

    def test_open_below_last_known_reading_warns(self):
        resp = self.open_trip(vehicle=self.truck, start_odometer=100)
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data["odometer"]["level"], "WARN")
        self.assertEqual(resp.data["warnings"], ["candidate below last known reading"])

    def test_open_rejects_non_positive_reading(self):
        resp = self.open_trip(start_odometer=0)
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(resp.data["code"], "invalid_input")
        self.assertFalse(Trip.objects.exists())

    def test_open_unknown_vehicle(self):
        resp = self.open_trip(vehicle_id=9999)
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("vehicle_id", resp.data)

    def test_operator_cannot_open_for_someone_else(self):
        resp = self.open_trip(driver_id=self.other.pk)
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)

    def test_supervisor_opens_for_operator(self):
        self.login("enc@example.com")
        resp = self.open_trip(driver_id=self.operator.pk, supervisor_id=self.supervisor.pk)
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data["trip"]["driver_id"], self.operator.pk)
        self.assertEqual(resp.data["trip"]["supervisor_id"], self.supervisor.pk)

    def test_supervisor_must_have_supervisor_role(self):
        resp = self.open_trip(supervisor_id=self.other.pk)
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("supervisor_id", resp.data)

    def test_close_below_start_is_unprocessable(self):
        trip = self.open_trip(start_odometer=100).data["trip"]
        resp = self.client.post(
            reverse("trips:close", args=[trip["id"]]), {"end_odometer": 50}, format="json"
        )
        self.assertEqual(resp.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(resp.data["code"], "invalid_odometer")
        self.assertIsNone(Trip.objects.get(pk=trip["id"]).ended_at)

    def test_double_close_conflicts(self):
        trip = self.open_trip(start_odometer=100).data["trip"]
        url = reverse("trips:close", args=[trip["id"]])
        self.assertEqual(self.client.post(url, {"end_odometer": 150}, format="json").status_code, 200)
        resp = self.client.post(url, {"end_odometer": 200}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(resp.data["code"], "already_closed")
        self.assertEqual(Trip.objects.get(pk=trip["id"]).end_odometer, 150)

    def test_operator_only_sees_own_trips(self):
        trip = self.open_trip().data["trip"]

        self.login("carol@example.com")
        self.assertEqual(
            self.client.get(reverse("trips:detail", args=[trip["id"]])).status_code,
            status.HTTP_404_NOT_FOUND,
        )
        resp = self.client.post(
            reverse("trips:close", args=[trip["id"]]), {"end_odometer": 50100}, format="json"
        )
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(self.client.get(reverse("trips:list")).data, [])

        self.login("enc@example.com")
        resp = self.client.get(reverse("trips:active"), {"driver_id": self.operator.pk})
        self.assertEqual([t["id"] for t in resp.data], [trip["id"]])

    def test_force_close_requires_supervisor(self):
        trip = self.open_trip(start_odometer=100).data["trip"]
        url = reverse("trips:force-close", args=[trip["id"]])
        self.assertEqual(
            self.client.post(url, {"end_odometer": 110}, format="json").status_code,
            status.HTTP_403_FORBIDDEN,
        )

        self.login("enc@example.com")
        resp = self.client.post(url, {"end_odometer": 110}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertIn(DEFAULT_FORCE_CLOSE_REASON, resp.data["notes"])

    def test_amend_by_supervisor(self):
        trip = self.open_trip(start_odometer=100).data["trip"]
        self.client.post(reverse("trips:close", args=[trip["id"]]), {"end_odometer": 180}, format="json")
        url = reverse("trips:amend", args=[trip["id"]])
        self.assertEqual(
            self.client.post(url, {"start_odometer": 120}, format="json").status_code,
            status.HTTP_403_FORBIDDEN,
        )

        self.login("enc@example.com")
        resp = self.client.post(url, {"start_odometer": 120}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["start_odometer"], 120)
        self.assertEqual(resp.data["end_odometer"], 180)

        resp = self.client.post(url, {"end_odometer": 90}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(Trip.objects.get(pk=trip["id"]).end_odometer, 180)

        self.assertEqual(self.client.post(url, {}, format="json").status_code, 400)

    def test_amend_moving_override_trip(self):
        first = self.open_trip().data["trip"]
        override = self.open_trip(start_odometer=50010, allow_override=True).data["trip"]
        busy = self.open_trip(vehicle=self.truck, start_odometer=600).data["trip"]
        url = reverse("trips:amend", args=[override["id"]])

        self.login("enc@example.com")
        resp = self.client.post(url, {"vehicle_id": self.truck.pk}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(resp.data["existing_trip"]["id"], busy["id"])

        self.client.post(reverse("trips:close", args=[busy["id"]]), {"end_odometer": 650}, format="json")
        resp = self.client.post(
            url, {"vehicle_id": self.truck.pk, "notes": "wrong vehicle"}, format="json"
        )
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertIsNone(resp.data["override_of"])
        self.assertIn("wrong vehicle", resp.data["notes"])
        self.assertIn(f"open trip {first['id']}", resp.data["notes"])
        self.assertEqual(
            Trip.objects.filter(vehicle=self.truck, ended_at__isnull=True).count(), 1
        )

    def test_delete_by_supervisor(self):
        trip = self.open_trip().data["trip"]
        url = reverse("trips:detail", args=[trip["id"]])
        self.assertEqual(self.client.delete(url).status_code, status.HTTP_403_FORBIDDEN)

        self.login("enc@example.com")
        self.assertEqual(self.client.delete(url).status_code, status.HTTP_204_NO_CONTENT)
        resp = self.client.delete(url)
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(resp.data["code"], "not_found")

    def test_sweep_ghosts_of_deleted_operator(self):
        keep = self.open_trip().data["trip"]
        self.client.post(reverse("trips:close", args=[keep["id"]]), {"end_odometer": 50100}, format="json")
        ghost = Trip.objects.create(
            vehicle=self.vehicle, driver=self.other, started_at=timezone.now(), start_odometer=50100
        )
        self.other.delete()

        self.login("enc@example.com")
        resp = self.client.post(reverse("trips:sweep-ghosts", args=[self.vehicle.pk]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["removed_count"], 1)
        self.assertEqual(resp.data["removed_ids"], [ghost.pk])

        resp = self.client.get(reverse("trips:list"), {"vehicle_id": self.vehicle.pk})
        self.assertEqual([t["id"] for t in resp.data], [keep["id"]])

    def test_sweep_requires_supervisor_and_known_vehicle(self):
        url = reverse("trips:sweep-ghosts", args=[self.vehicle.pk])
        self.assertEqual(self.client.post(url).status_code, status.HTTP_403_FORBIDDEN)
        self.login("enc@example.com")
        self.assertEqual(
            self.client.post(reverse("trips:sweep-ghosts", args=[9999])).status_code,
            status.HTTP_404_NOT_FOUND,
        )

    def test_coherence_reports_backwards_reading(self):
        first = self.open_trip(start_odometer=100).data["trip"]
        self.client.post(reverse("trips:close", args=[first["id"]]), {"end_odometer": 200}, format="json")
        second = self.open_trip(start_odometer=150).data["trip"]

        resp = self.client.get(reverse("trips:coherence", args=[self.vehicle.pk]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(len(resp.data["warnings"]), 1)
        self.assertEqual(resp.data["warnings"][0]["trip_id"], second["id"])
        self.assertEqual(resp.data["warnings"][0]["previous_trip_id"], first["id"])

    def test_list_filter_validation(self):
        resp = self.client.get(
            reverse("trips:list"), {"date_from": "2024-03-05", "date_to": "2024-03-01"}
        )
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_requires_authentication(self):
        self.client.credentials()
        self.assertEqual(self.client.get(reverse("trips:list")).status_code, status.HTTP_401_UNAUTHORIZED)


class DjangoTripStoreTests(TestCase):
    def setUp(self):
        self.store = DjangoTripStore()
        self.driver = Driver.objects.create_user(
            email="dan@example.com", password="Password123!", name="Dan"
        )
        self.vehicle = Vehicle.objects.create(plate="DEF5678", model="Hilux")

    def _record(self, **kwargs):
        values = dict(
            vehicle_id=self.vehicle.pk,
            driver_id=self.driver.pk,
            started_at=timezone.now(),
            start_odometer=100.0,
        )
        values.update(kwargs)
        return TripRecord(**values)

    def test_unique_open_trip_enforced_by_database(self):
        first = self.store.create(self._record())
        with self.assertRaises(ConflictError) as ctx:
            self.store.create(self._record())
        self.assertEqual(ctx.exception.existing_trip.id, first.id)
        self.store.create(self._record(override_of=first.id))
        self.assertEqual(self.store.find_open_by_vehicle(self.vehicle.pk).id, first.id)

    def test_check_constraint_rejects_end_below_start(self):
        trip = self.store.create(self._record())
        with self.assertRaises(StorageError):
            self.store.update(trip.id, {"ended_at": timezone.now(), "end_odometer": 10.0})
        self.assertIsNone(Trip.objects.get(pk=trip.id).end_odometer)

    def test_list_by_filter_dates(self):
        now = timezone.now()
        old = self.store.create(
            self._record(started_at=now - timedelta(days=3), ended_at=now - timedelta(days=3),
                         end_odometer=120.0)
        )
        new = self.store.create(self._record(started_at=now))
        self.assertEqual([t.id for t in self.store.list_by_filter()], [new.id, old.id])
        self.assertEqual(
            [t.id for t in self.store.list_by_filter(date_to=(now - timedelta(days=2)).date())],
            [old.id],
        )
        self.assertEqual([t.id for t in self.store.list_open(driver_id=self.driver.pk)], [new.id])

    def test_update_moves_vehicle(self):
        truck = Vehicle.objects.create(plate="GHI0001", model="Atego")
        trip = self.store.create(self._record())
        moved = self.store.update(trip.id, {"vehicle_id": truck.pk, "notes": "wrong plate"})
        self.assertEqual(moved.vehicle_id, truck.pk)
        self.assertEqual(Trip.objects.get(pk=trip.id).vehicle_id, truck.pk)

    def test_missing_trip(self):
        with self.assertRaises(NotFoundError):
            self.store.get(12345)
        with self.assertRaises(NotFoundError):
            self.store.delete(12345)

    def test_vehicle_directory(self):
        directory = DjangoVehicleDirectory()
        self.assertEqual(directory.last_known_odometer(self.vehicle.pk), 0)
        directory.record_odometer(self.vehicle.pk, 321.5)
        self.assertEqual(directory.last_known_odometer(self.vehicle.pk), 321.5)
        with self.assertRaises(NotFoundError):
            directory.last_known_odometer(9999)

    def test_ghost_predicate_from_settings(self):
        with self.settings(
            FLEET_GHOST_PREDICATES=["trips.services.ghosts.missing_driver"],
            FLEET_GHOST_NOTE_MARKERS=["[import]"],
        ):
            predicate = ghost_predicate_from_settings()
        self.assertTrue(predicate(self._record(driver_id=None), []))
        self.assertTrue(predicate(self._record(notes="[IMPORT] batch 4"), []))
        self.assertFalse(predicate(self._record(), []))
