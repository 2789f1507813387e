import os

# must be set before config is imported
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("DATABASE_URL", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import make_engine
from main import create_app
from mongo_storage import MongoStorage
from sql_storage import SqlStorage

PASSWORD = "secret123"


@pytest.fixture
def sql_storage():
    storage = SqlStorage(make_engine("sqlite://"))
    storage.create_tables()
    return storage


@pytest.fixture
def mongo_storage():
    storage = MongoStorage(mongomock.MongoClient()["manandvan_test"])
    storage.ensure_indexes()
    return storage


@pytest.fixture(params=["sql_storage", "mongo_storage"])
def storage(request):
    return request.getfixturevalue(request.param)


@pytest.fixture
def app(storage):
    return create_app(storage)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def new_client(app):
    """Extra clients on the same app, each with its own cookie jar."""
    clients = []

    def factory():
        c = TestClient(app)
        clients.append(c)
        return c

    yield factory
    for c in clients:
        c.close()


@pytest.fixture
def register():
    def _register(client, username, van_owner=False):
        payload = {
            "username": username,
            "email": f"{username}@example.com",
            "password": PASSWORD,
            "full_name": f"{username.title()} Tester",
            "phone": "+44 7000 000000",
            "is_van_owner": van_owner,
        }
        r = client.post("/api/register", json=payload)
        assert r.status_code == 201, r.text
        return r.json()
    return _register


@pytest.fixture
def listing_payload():
    return {
        "title": "Reliable North London Van",
        "description": "Large van with two helpers for house moves.",
        "van_size": "large",
        "hourly_rate": 25,
        "location": "North London, N1",
        "postcode": "N1 9AB",
        "helpers_count": 2,
        "is_available_today": True,
        "services": ["furniture", "house moves"],
    }


@pytest.fixture
def booking_payload():
    def _payload(listing_id, duration=3, total_price=75):
        return {
            "van_listing_id": listing_id,
            "booking_date": "2026-11-02T09:00:00Z",
            "duration": duration,
            "from_location": "12 Upper Street, N1",
            "to_location": "4 Clapham Road, SW4",
            "total_price": total_price,
        }
    return _payload
