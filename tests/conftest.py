"""Shared test fixtures for the codledger test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: an admin operator and a non-admin user
- auth_headers: Bearer header for the operator API key
- task_payload: builder for upstream webhook bodies
- store_event: persist a webhook event directly (bypassing ingress)
"""

import pytest
from werkzeug.security import generate_password_hash

from codledger import create_app
from codledger.extensions import db as _db
from codledger.models.user import User
from codledger.services import event_store


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    return {"Authorization": f"Bearer {app.config['OPERATOR_API_KEY']}"}


@pytest.fixture
def seed_data(app, db_session):
    """Seed an admin operator and a plain (non-admin) user."""
    admin = User(
        email="ops@codledger.local",
        password_hash=generate_password_hash("admin123"),
        full_name="Ops Admin",
        is_admin=True,
    )
    viewer = User(
        email="viewer@codledger.local",
        password_hash=generate_password_hash("viewer123"),
        full_name="Read Only",
        is_admin=False,
    )
    _db.session.add_all([admin, viewer])
    _db.session.commit()

    return {
        "admin": admin,
        "admin_id": admin.id,
        "viewer": viewer,
        "viewer_id": viewer.id,
    }


@pytest.fixture
def task_payload():
    """Build an upstream webhook body. Keyword args override defaults."""

    def _build(job_id="777", job_status=1, **overrides):
        payload = {
            "event_type": "task_updated",
            "job_id": job_id,
            "job_status": job_status,
            "fleet_id": "D1",
            "vendor_id": "M1",
        }
        payload.update(overrides)
        return {k: v for k, v in payload.items() if v is not None}

    return _build


@pytest.fixture
def store_event():
    """Persist a pending webhook event for a payload, as the ingress would."""
    from codledger.services.payloads import TaskEvent

    def _store(payload):
        parsed = TaskEvent.from_payload(payload)
        return event_store.create_event(parsed.event_type, parsed.external_task_id, payload)

    return _store

