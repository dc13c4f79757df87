from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from rest_framework.request import Request
from rest_framework.test import APIClient, APIRequestFactory
from rest_framework_simplejwt.exceptions import InvalidToken
from rest_framework_simplejwt.tokens import AccessToken

from common.authentication import QueryStringJWTAuthentication
from common.permissions import user_has_capability
from core.models import AuditLog, Vessel
from procurement.models import PurchaseRequest


class VesselScopedCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.vessel_a = Vessel.objects.create(name="MV Ocean Star", imo="IMO2000001")
        self.vessel_b = Vessel.objects.create(name="MV Atlantic Wave", imo="IMO2000002")
        Vessel.objects.create(name="MV Laid Up", imo="IMO2000003", is_active=False)

        self.captain = self.user_model.objects.create_user(
            username="core-captain",
            password="pass1234",
            role=self.user_model.Role.CAPITAINE,
            vessel=self.vessel_a,
        )
        self.ops = self.user_model.objects.create_user(
            username="core-ops",
            password="pass1234",
            role=self.user_model.Role.OPS,
        )
        self.unassigned = self.user_model.objects.create_user(
            username="core-second",
            password="pass1234",
            role=self.user_model.Role.SECOND,
        )

    def test_crew_only_sees_own_vessel(self):
        self.client.force_authenticate(user=self.captain)

        response = self.client.get("/api/v1/vessels/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "data", "next", "previous", "success"])
        self.assertEqual([item["id"] for item in payload["data"]], [str(self.vessel_a.id)])

    def test_shore_staff_see_every_active_vessel(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.get("/api/v1/vessels/")

        self.assertEqual(response.status_code, 200)
        names = [item["name"] for item in response.json()["data"]]
        self.assertEqual(names, ["MV Atlantic Wave", "MV Ocean Star"])

    def test_crew_without_vessel_sees_nothing(self):
        self.client.force_authenticate(user=self.unassigned)

        response = self.client.get("/api/v1/vessels/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"], [])

    def test_other_vessel_detail_is_not_found(self):
        self.client.force_authenticate(user=self.captain)

        response = self.client.get(f"/api/v1/vessels/{self.vessel_b.id}/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_current_user_profile(self):
        self.client.force_authenticate(user=self.captain)

        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["username"], "core-captain")
        self.assertEqual(data["role"], "CAPITAINE")
        self.assertEqual(data["vessel"], str(self.vessel_a.id))
        self.assertEqual(data["vessel_name"], "MV Ocean Star")

    def test_anonymous_requests_are_rejected(self):
        response = self.client.get("/api/v1/vessels/")

        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["code"], "not_authenticated")


class RolePermissionCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.vessel = Vessel.objects.create(name="MV Role Check", imo="IMO3000001")
        self.chief_engineer = self.user_model.objects.create_user(
            username="chief-engineer",
            password="pass1234",
            role=self.user_model.Role.CHEF_MECANICIEN,
            vessel=self.vessel,
        )
        self.finance = self.user_model.objects.create_user(
            username="finance",
            password="pass1234",
            role=self.user_model.Role.FINANCE,
        )

    def test_capability_matrix(self):
        self.assertTrue(user_has_capability(self.chief_engineer, "purchase_request.create"))
        self.assertFalse(user_has_capability(self.chief_engineer, "purchase_request.approve"))
        self.assertFalse(user_has_capability(self.chief_engineer, "purchase_order.manage"))
        self.assertTrue(user_has_capability(self.finance, "purchase_request.quote"))
        self.assertTrue(user_has_capability(self.finance, "purchase_order.manage"))
        self.assertFalse(user_has_capability(self.finance, "purchase_request.create"))
        self.assertFalse(user_has_capability(self.finance, "unknown.capability"))

    def test_denied_request_is_logged(self):
        self.client.force_authenticate(user=self.chief_engineer)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))


class TokenAuthenticationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.vessel = Vessel.objects.create(name="MV Token", imo="IMO4000001")
        self.user = self.user_model.objects.create_user(
            username="token-captain",
            email="Captain@Example.com",
            password="pass1234",
            role=self.user_model.Role.CAPITAINE,
            vessel=self.vessel,
        )

    def test_login_with_email_returns_role_claims(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "captain@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], "CAPITAINE")
        self.assertEqual(token["vessel_id"], str(self.vessel.id))
        self.assertFalse(token["is_superuser"])

    def test_login_with_wrong_password_is_rejected(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-captain", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")

    def test_access_token_query_parameter(self):
        factory = APIRequestFactory()
        token = AccessToken.for_user(self.user)
        authentication = QueryStringJWTAuthentication()

        user, validated = authentication.authenticate(Request(factory.get("/", {"access_token": str(token)})))
        missing = authentication.authenticate(Request(factory.get("/")))

        self.assertEqual(user, self.user)
        self.assertEqual(str(validated["user_id"]), str(self.user.id))
        self.assertIsNone(missing)
        with self.assertRaises(InvalidToken):
            authentication.authenticate(Request(factory.get("/", {"access_token": "garbage"})))

    def test_authorization_header_wins_over_query_parameter(self):
        factory = APIRequestFactory()
        token = AccessToken.for_user(self.user)
        request = factory.get("/", {"access_token": "garbage"}, HTTP_AUTHORIZATION=f"Bearer {token}")

        user, _ = QueryStringJWTAuthentication().authenticate(Request(request))

        self.assertEqual(user, self.user)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.vessel = Vessel.objects.create(name="MV Audit", imo="IMO5000001")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            role=self.user_model.Role.ADMIN,
        )
        self.captain = self.user_model.objects.create_user(
            username="audit-captain",
            password="pass1234",
            role=self.user_model.Role.CAPITAINE,
            vessel=self.vessel,
        )

    def test_request_create_writes_audit_log_with_request_id(self):
        self.client.force_authenticate(user=self.captain)
        res = self.client.post(
            "/api/v1/purchase-requests/",
            {"category": "TOOLS", "products": [{"name": "Torque wrench", "quantity": 1, "unit": "pcs"}]},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        log = AuditLog.objects.get(action="purchase_request.create", request_id="req-123")
        self.assertEqual(log.actor, self.captain)
        self.assertEqual(log.vessel, self.vessel)
        self.assertEqual(log.after_snapshot["category"], "TOOLS")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", vessel=self.vessel, actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_and_export(self):
        AuditLog.objects.create(action="purchase_request.approve", entity="purchase_request", vessel=self.vessel, actor=self.captain)
        AuditLog.objects.create(action="purchase_order.create", entity="purchase_order", actor=self.admin)
        self.client.force_authenticate(user=self.admin)

        filtered = self.client.get("/api/v1/admin/audit-logs/", {"entity": "purchase_request"})
        export = self.client.get("/api/v1/admin/audit-logs/export/", {"action": "purchase_order.create"})

        self.assertEqual([item["action"] for item in filtered.json()["data"]], ["purchase_request.approve"])
        self.assertEqual(export.status_code, 200)
        self.assertEqual(export["Content-Type"], "text/csv")
        rows = export.content.decode().strip().splitlines()
        self.assertEqual(len(rows), 2)
        self.assertIn("purchase_order.create", rows[1])

    def test_crew_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.captain)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)


class HealthCheckTests(TestCase):
    def test_healthz_and_readyz(self):
        client = APIClient()

        health = client.get("/healthz/", HTTP_X_REQUEST_ID="health-1")
        ready = client.get("/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json(), {"status": "ok", "request_id": "health-1"})
        self.assertEqual(health["X-Request-ID"], "health-1")
        self.assertEqual(ready.status_code, 200)
        self.assertEqual(ready.json()["status"], "ready")


class SeedDemoDataCommandTests(TestCase):
    def test_seed_is_idempotent(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        user_model = get_user_model()
        self.assertEqual(Vessel.objects.count(), 3)
        self.assertEqual(PurchaseRequest.objects.count(), 1)
        captain = user_model.objects.get(username="captain")
        self.assertEqual(captain.role, user_model.Role.CAPITAINE)
        self.assertTrue(captain.check_password("captain1234"))
        pr = PurchaseRequest.objects.get()
        self.assertEqual(pr.created_by, captain)
        self.assertEqual(pr.products.count(), 3)
