from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from drivers.models import Driver

from .models import Vehicle


class VehicleApiTests(APITestCase):
    def setUp(self):
        self.driver = Driver.objects.create_user(
            email="op@example.com", password="Password123!", name="Op"
        )
        self.client.force_authenticate(self.driver)
        self.active = Vehicle.objects.create(plate="ABC1234", model="Strada", last_known_odometer=812)
        self.retired = Vehicle.objects.create(plate="AAA0001", model="Uno", active=False)

    def test_list_vehicles(self):
        resp = self.client.get(reverse("vehicles:list"))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual([v["plate"] for v in resp.data], ["AAA0001", "ABC1234"])

        resp = self.client.get(reverse("vehicles:list"), {"active": "true"})
        self.assertEqual([v["plate"] for v in resp.data], ["ABC1234"])

    def test_detail_exposes_last_known_odometer(self):
        resp = self.client.get(reverse("vehicles:detail", args=[self.active.pk]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["last_known_odometer"], 812)

    def test_vehicles_are_read_only(self):
        resp = self.client.post(reverse("vehicles:list"), {"plate": "NEW0001", "model": "Gol"})
        self.assertEqual(resp.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)

    def test_requires_authentication(self):
        self.client.force_authenticate(None)
        resp = self.client.get(reverse("vehicles:list"))
        self.assertEqual(resp.status_code, status.HTTP_401_UNAUTHORIZED)
