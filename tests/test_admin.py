from contextlib import nullcontext
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import config
import routes
from main import create_app
from migration import migrate_storage
from routes import get_migration_stores
from schemas import Booking, Review, User, VanListing
from storage import StorageError


@pytest.fixture
def admin(client, storage, register):
    user = register(client, "root")
    storage.set_admin_status(user["id"], True)
    return user


def test_admin_only(client, new_client, register, admin):
    regular = new_client()
    register(regular, "bob")
    r = regular.get("/api/admin/users")
    assert r.status_code == 403
    assert r.json() == {"message": "Access denied. Admin privileges required."}

    users = client.get("/api/admin/users").json()
    assert {u["username"] for u in users} == {"root", "bob"}
    assert all("password_hash" not in u for u in users)


def test_role_changes(client, new_client, register, admin):
    bob = register(new_client(), "bob")
    url = f"/api/admin/users/{bob['id']}"

    r = client.patch(f"{url}/van-owner-status", json={"is_van_owner": True})
    assert r.status_code == 200
    assert r.json()["is_van_owner"] is True
    assert client.patch(f"{url}/van-owner-status", json={"is_van_owner": "yes"}).status_code == 400

    assert client.patch(f"{url}/admin-status", json={"is_admin": True}).json()["is_admin"] is True
    assert client.patch("/api/admin/users/999999/admin-status", json={"is_admin": True}).status_code == 404

    r = client.patch(f"/api/admin/users/{admin['id']}/admin-status", json={"is_admin": False})
    assert r.status_code == 400


def test_delete_user(client, new_client, register, admin):
    bob_client = new_client()
    bob = register(bob_client, "bob")

    assert client.delete(f"/api/admin/users/{admin['id']}").status_code == 400
    r = client.delete(f"/api/admin/users/{bob['id']}")
    assert r.status_code == 200
    assert client.delete(f"/api/admin/users/{bob['id']}").status_code == 404
    # the deleted user's session no longer resolves
    assert bob_client.get("/api/me").status_code == 401


def test_migrate_requires_secret(client, admin):
    r = client.post("/api/admin/migrate", json={"migration_secret": "wrong"})
    assert r.status_code == 401


def test_migrate_without_document_store(client, app, admin):
    app.dependency_overrides[get_migration_stores] = lambda: (lambda: nullcontext((None, None)))
    r = client.post("/api/admin/migrate", json={"migration_secret": config.MIGRATION_SECRET})
    assert r.status_code == 500


def test_migrate_copies_relational_data(sql_storage, mongo_storage, register, listing_payload, booking_payload):
    app = create_app(sql_storage)
    app.dependency_overrides[get_migration_stores] = lambda: (lambda: nullcontext((sql_storage, mongo_storage)))
    with TestClient(app) as admin_client, TestClient(app) as customer:
        owner = register(admin_client, "root", van_owner=True)
        sql_storage.set_admin_status(owner["id"], True)
        register(customer, "bob")
        listing = admin_client.post("/api/van-listings", json=listing_payload).json()
        booking = customer.post("/api/bookings", json=booking_payload(listing["id"])).json()
        customer.post("/api/reviews", json={"van_listing_id": listing["id"], "rating": 4})
        customer.post(f"/api/bookings/{booking['id']}/messages", json={"content": "Hello"})

        r = admin_client.post("/api/admin/migrate", json={"migration_secret": config.MIGRATION_SECRET})
        assert r.status_code == 200
        assert r.json()["migrated"] == {"users": 2, "van_listings": 1, "services": 2,
                                        "bookings": 1, "reviews": 1, "messages": 1}

    [copied] = mongo_storage.get_van_listings()
    assert copied.user.full_name == "Root Tester"
    assert copied.average_rating == 4
    [copied_booking] = mongo_storage.get_all_bookings()
    assert mongo_storage.get_user(copied_booking.user_id).username == "bob"
    assert [m.content for m in mongo_storage.get_messages_by_booking(copied_booking.id)] == ["Hello"]


def equivalent_id(entity_id):
    """Another spelling of the same id: a zero-padded integer key or an upper-case ObjectId."""
    return "0" + entity_id if entity_id.isdigit() else entity_id.upper()


def test_self_protection_uses_resolved_id(client, storage, admin):
    alias = equivalent_id(admin["id"])
    assert storage.get_user(alias).id == admin["id"]

    r = client.patch(f"/api/admin/users/{alias}/admin-status", json={"is_admin": False})
    assert r.status_code == 400
    assert client.delete(f"/api/admin/users/{alias}").status_code == 400
    assert storage.get_user(admin["id"]).is_admin is True


def test_migration_skips_entities_that_fail(sql_storage, mongo_storage, monkeypatch):
    owner = sql_storage.create_user(User(username="alice", email="alice@example.com",
                                         password_hash="x", full_name="Alice Tester"))
    customer = sql_storage.create_user(User(username="bob", email="bob@example.com",
                                            password_hash="x", full_name="Bob Tester"))
    listing = sql_storage.create_van_listing(VanListing(
        user_id=owner.id, title="Reliable North London Van", description="Large van with two helpers.",
        van_size="large", hourly_rate=25, location="North London, N1", postcode="N1 9AB",
    ))
    sql_storage.create_booking(Booking(
        van_listing_id=listing.id, user_id=customer.id, booking_date=datetime(2026, 11, 2, 9, tzinfo=timezone.utc),
        duration=3, from_location="12 Upper Street", to_location="4 Clapham Road", total_price=75,
    ))
    sql_storage.create_review(Review(van_listing_id=listing.id, user_id=customer.id, rating=5))

    def broken(data):
        raise StorageError("create_booking")

    monkeypatch.setattr(mongo_storage, "create_booking", broken)
    counts = migrate_storage(sql_storage, mongo_storage)

    assert counts["users"] == 2
    assert counts["van_listings"] == 1
    assert counts["bookings"] == 0
    assert counts["reviews"] == 1
    assert mongo_storage.get_all_bookings() == []


def test_open_migration_stores_releases_connections(monkeypatch):
    released = []

    class FakeEngine:
        def dispose(self):
            released.append("engine")

    class FakeSqlStorage:
        def __init__(self):
            self.engine = FakeEngine()

        def create_tables(self):
            pass

    class FakeClient:
        def close(self):
            released.append("client")

    class FakeDatabase:
        client = FakeClient()

    monkeypatch.setattr(routes, "SqlStorage", FakeSqlStorage)
    monkeypatch.setattr(routes, "get_mongo_database", lambda: FakeDatabase())
    monkeypatch.setattr(routes, "is_connected", lambda db: False)

    with routes.open_migration_stores() as (source, target):
        assert target is None
        assert released == []
    assert released == ["engine", "client"]


def test_session_sweeper_stops_on_shutdown(storage):
    app = create_app(storage)
    with TestClient(app):
        assert not app.state.sweeper.done()
    assert app.state.sweeper.cancelled()
