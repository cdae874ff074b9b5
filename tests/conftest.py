"""
Service Sphere test configuration - pytest fixtures

Every test gets its own app built by create_app() around a fresh mongomock
database and a LocalMediaStorage rooted in tmp_path, so no MongoDB server or
bucket is needed.

RUNNING TESTS:
pytest tests/ -v
"""

import os
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone

# Must be set before main is imported; it builds a default app at import time
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="service-sphere-uploads-"))

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import load_settings
from main import create_app
from storage import LocalMediaStorage

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class Actor:
    """A signed-up user plus the bearer header to act as them."""

    def __init__(self, user, token):
        self.user = user
        self.token = token
        self.id = user["id"]
        self.headers = {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings(tmp_path):
    return replace(load_settings(), jwt_secret="test-secret", bcrypt_rounds=4, upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["service_sphere_test"]


@pytest.fixture
def storage(settings):
    return LocalMediaStorage(settings.upload_dir)


@pytest.fixture
def app(settings, db, storage):
    return create_app(settings, db=db, storage=storage)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def signup(client):
    counter = {"n": 0}

    def _signup(role="customer", **extra):
        counter["n"] += 1
        payload = {
            "name": f"{role.title()} {counter['n']}",
            "email": f"{role}{counter['n']}@example.com",
            "password": "secret123",
            "role": role,
        }
        payload.update(extra)
        response = client.post("/auth/signup", json=payload)
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        return Actor(data["user"], data["token"])

    return _signup


@pytest.fixture
def customer(signup):
    return signup("customer")


@pytest.fixture
def provider(signup):
    return signup("provider", address={"street": "12 Elm St", "city": "Springfield", "state": "IL", "zip_code": "62701"})


@pytest.fixture
def service_payload():
    return {
        "title": "cleaning",
        "description": "Deep home cleaning",
        "price": 80,
        "category": "Home",
        "duration": 120,
    }


@pytest.fixture
def create_service(client, service_payload):
    def _create(actor, **overrides):
        response = client.post("/services", json={**service_payload, **overrides}, headers=actor.headers)
        assert response.status_code == 201, response.text
        return response.json()["data"]

    return _create


@pytest.fixture
def service(create_service, provider):
    return create_service(provider)


def future(days=2):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


@pytest.fixture
def booking_payload(service, provider):
    return {
        "service_id": service["id"],
        "provider_id": provider.id,
        "scheduled_date": future(),
        "notes": "Please bring ladders",
        "customer_address": {"street": "1 Main St", "city": "Springfield", "state": "IL", "zip_code": "62704"},
        "contact_phone": "+15551234567",
    }


@pytest.fixture
def booking(client, customer, booking_payload):
    response = client.post("/bookings", json=booking_payload, headers=customer.headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture
def move(client):
    def _move(booking_id, actor, status):
        return client.put(f"/bookings/{booking_id}/status", json={"status": status}, headers=actor.headers)

    return _move


@pytest.fixture
def completed_booking(booking, provider, move):
    for status in ("accepted", "in-progress", "completed"):
        response = move(booking["id"], provider, status)
        assert response.status_code == 200, response.text
    return response.json()["data"]
