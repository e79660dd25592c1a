from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import TestCase
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from core.models import AuditLog


class RolePermissionCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.clerk = self.user_model.objects.create_user(username="clerk-core", password="pass1234", role="clerk")
        self.admin = self.user_model.objects.create_user(username="admin-core", password="pass1234", role="admin")

    def test_clerk_cannot_manage_customers_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.clerk)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/customers/", {"name": "Clerk Customer"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_can_manage_customers(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post("/api/v1/customers/", {"name": "Admin Customer"}, format="json")
        self.assertEqual(response.status_code, 201)

    def test_anonymous_request_gets_error_envelope(self):
        response = self.client.get("/api/v1/customers/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")
        self.assertEqual(response.json()["status"], 401)


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="token-user", password="pass1234", role="accountant")

    def test_token_carries_role_claim(self):
        response = self.client.post("/api/v1/token/", {"username": "token-user", "password": "pass1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], "accountant")
        self.assertFalse(token["is_superuser"])

    def test_bearer_token_authenticates_api_calls(self):
        access = self.client.post("/api/v1/token/", {"username": "token-user", "password": "pass1234"}, format="json").json()["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {access}")

        response = self.client.get("/api/v1/invoices/")
        self.assertEqual(response.status_code, 200)


class UserEmailTests(TestCase):
    def test_email_is_normalized_on_save(self):
        user = get_user_model().objects.create_user(username="mixed", email="  Mixed@Example.COM ", password="pass1234")
        user.refresh_from_db()
        self.assertEqual(user.email, "mixed@example.com")

    def test_email_is_unique_case_insensitively(self):
        user_model = get_user_model()
        user_model.objects.create_user(username="first", email="same@example.com", password="pass1234")
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                user_model.objects.create(username="second", email="SAME@example.com")

    def test_blank_emails_do_not_collide(self):
        user_model = get_user_model()
        user_model.objects.create_user(username="blank-a", password="pass1234")
        user_model.objects.create_user(username="blank-b", password="pass1234")
        self.assertEqual(user_model.objects.filter(email="").count(), 2)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.accountant = self.user_model.objects.create_user(username="audit-acct", password="pass1234", role="accountant")

    def test_customer_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.post(
            "/api/v1/customers/",
            {"name": "Audited Customer"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        log = AuditLog.objects.get(action="customer.create", entity="customer", request_id="req-123")
        self.assertEqual(str(log.entity_id), res.json()["id"])
        self.assertEqual(log.actor, self.admin)
        self.assertEqual(log.after_snapshot["name"], "Audited Customer")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_only_admins_can_read_audit_logs(self):
        AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        self.client.force_authenticate(user=self.accountant)
        self.assertEqual(self.client.get("/api/v1/admin/audit-logs/").status_code, 403)

        self.client.force_authenticate(user=self.admin)
        response = self.client.get("/api/v1/admin/audit-logs/", {"action": "test.action"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)

    def test_audit_log_filters_validate_ids_and_accept_plain_dates(self):
        AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)
        self.client.force_authenticate(user=self.admin)

        bad = self.client.get("/api/v1/admin/audit-logs/", {"actor_id": "not-a-uuid"})
        self.assertEqual(bad.status_code, 400)

        res = self.client.get("/api/v1/admin/audit-logs/", {"start_date": "2000-01-01", "actor_id": str(self.admin.id)})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["count"], 1)

    def test_audit_log_export_is_csv(self):
        AuditLog.objects.create(action="invoice.create", entity="invoice", actor=self.admin, request_id="req-csv")
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        body = response.content.decode()
        self.assertIn("invoice.create", body)
        self.assertIn("req-csv", body)


class HealthTests(TestCase):
    def test_healthz_echoes_request_id(self):
        response = APIClient().get("/api/v1/healthz/", HTTP_X_REQUEST_ID="health-1")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "request_id": "health-1"})
        self.assertEqual(response["X-Request-ID"], "health-1")

    def test_readyz_checks_database(self):
        response = APIClient().get("/api/v1/readyz/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")
