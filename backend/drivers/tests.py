from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from .models import Driver


class AuthFlowTests(APITestCase):
    def setUp(self):
        self.user = Driver.objects.create_user(
            email="alice@example.com",
            password="Password123!@#",
            name="Alice",
            role=Driver.Role.ENCARREGADO,
        )

    def test_login_me_logout(self):
        login_url = reverse("drivers:login")
        logout_url = reverse("drivers:logout")
        me_url = reverse("drivers:me")

        resp = self.client.post(
            login_url,
            {"email": "alice@example.com", "password": "Password123!@#"},
            format="json",
        )
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        access = resp.data["access"]
        refresh = resp.data["refresh"]

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {access}")
        resp = self.client.get(me_url)
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["email"], "alice@example.com")
        self.assertEqual(resp.data["role"], "ENCARREGADO")
        self.assertTrue(resp.data["is_supervisor"])

        resp = self.client.post(logout_url, {"refresh": refresh}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_205_RESET_CONTENT)

    def test_logout_requires_refresh_token(self):
        self.client.force_authenticate(self.user)
        resp = self.client.post(reverse("drivers:logout"), {}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_wrong_password_rejected(self):
        resp = self.client.post(
            reverse("drivers:login"),
            {"email": "alice@example.com", "password": "nope"},
            format="json",
        )
        self.assertEqual(resp.status_code, status.HTTP_401_UNAUTHORIZED)


class RoleTests(APITestCase):
    def test_supervisor_flag_follows_role(self):
        operador = Driver.objects.create_user(email="op@example.com", password="x" * 10, name="Op")
        encarregado = Driver.objects.create_user(
            email="enc@example.com", password="x" * 10, name="Enc", role=Driver.Role.ENCARREGADO
        )
        staff = Driver.objects.create_user(
            email="staff@example.com", password="x" * 10, name="Staff", is_staff=True
        )
        self.assertFalse(operador.is_supervisor)
        self.assertTrue(encarregado.is_supervisor)
        self.assertTrue(staff.is_supervisor)

    def test_superuser_defaults_to_admin_role(self):
        admin = Driver.objects.create_superuser(
            email="root@example.com", password="Password123!", name="Root"
        )
        self.assertEqual(admin.role, Driver.Role.ADMIN)
