"""Tests for the auth blueprint and operator access control.

Covers:
- GET /auth/login returns a CSRF token
- Login with valid credentials (JSON and form bodies)
- Login with invalid credentials / deactivated account
- Logout
- Admin sessions reach operator routes; non-admin sessions do not
- Bearer API key accepted / rejected
- Login creates audit event
"""

from codledger.extensions import db
from codledger.models.audit import AuditEvent
from codledger.models.user import User


def _login(client, email="ops@codledger.local", password="admin123"):
    return client.post("/auth/login", json={"email": email, "password": password})


class TestLogin:
    """Tests for the /auth/login route."""

    def test_get_returns_csrf_token(self, client):
        resp = client.get("/auth/login")
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert "csrf_token" in data
        assert "user" not in data

    def test_login_success(self, client, seed_data):
        resp = _login(client)
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["email"] == "ops@codledger.local"
        assert data["is_admin"] is True
        assert data["last_login_at"] is not None

        # Session now identifies the operator
        me = client.get("/auth/login").get_json()["data"]
        assert me["user"]["id"] == seed_data["admin_id"]

    def test_login_with_form_body(self, client, seed_data):
        resp = client.post(
            "/auth/login",
            data={"email": "OPS@codledger.local ", "password": "admin123"},
        )
        assert resp.status_code == 200

    def test_login_creates_audit_event(self, client, seed_data):
        _login(client)
        audit = AuditEvent.query.filter_by(action="operator.login").one()
        assert audit.actor_id == seed_data["admin_id"]

    def test_login_wrong_password(self, client, seed_data):
        resp = _login(client, password="wrong")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "unauthorized"

    def test_login_unknown_email(self, client, seed_data):
        resp = _login(client, email="nobody@codledger.local")
        assert resp.status_code == 401

    def test_login_missing_fields(self, client):
        resp = client.post("/auth/login", json={"email": "ops@codledger.local"})
        assert resp.status_code == 400

    def test_login_deactivated_account(self, client, seed_data):
        user = db.session.get(User, seed_data["viewer_id"])
        user.is_active = False
        db.session.commit()

        resp = _login(client, email="viewer@codledger.local", password="viewer123")
        assert resp.status_code == 403

    def test_logout(self, client, seed_data):
        _login(client)
        resp = client.post("/auth/logout")
        assert resp.status_code == 200
        assert "user" not in client.get("/auth/login").get_json()["data"]


class TestOperatorAccess:
    """operator_required on the /cod, /tasks and /webhooks/events routes."""

    def test_admin_session_allowed(self, client, seed_data):
        _login(client)
        resp = client.get("/cod/queue/D1")
        assert resp.status_code == 200

    def test_admin_session_is_audit_actor(self, client, seed_data):
        _login(client)
        resp = client.post(
            "/cod/queue",
            json={"driverId": "D1", "amount": 12, "merchantId": "M1"},
        )
        assert resp.status_code == 201
        audit = AuditEvent.query.filter_by(action="cod.manual_entry_created").one()
        assert audit.actor_id == seed_data["admin_id"]

    def test_non_admin_session_rejected(self, client, seed_data):
        _login(client, email="viewer@codledger.local", password="viewer123")
        resp = client.get("/cod/queue/D1")
        assert resp.status_code == 401

    def test_anonymous_rejected(self, client):
        for path in ("/cod/queue/D1", "/tasks/conflicts", "/webhooks/events"):
            assert client.get(path).status_code == 401

    def test_bearer_key_allowed(self, client, auth_headers):
        assert client.get("/tasks/conflicts", headers=auth_headers).status_code == 200

    def test_wrong_bearer_key_rejected(self, client, seed_data):
        # A bad key is rejected even alongside a valid admin session
        _login(client)
        resp = client.get("/cod/queue/D1", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 401
        assert resp.get_json()["message"] == "Invalid API key"

    def test_non_ascii_bearer_key_rejected(self, client):
        resp = client.get("/cod/queue/D1", headers={"Authorization": "Bearer café"})
        assert resp.status_code == 401
        assert resp.get_json()["message"] == "Invalid API key"

    def test_unset_api_key_rejects_bearer(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "OPERATOR_API_KEY", None)
        resp = client.get("/cod/queue/D1", headers={"Authorization": "Bearer "})
        assert resp.status_code == 401
