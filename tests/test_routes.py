import pytest

from storage import StorageError


@pytest.fixture
def marketplace(new_client, register, listing_payload, booking_payload):
    """An owner with one listing and a customer holding a pending booking on it."""
    owner, customer = new_client(), new_client()
    owner_user = register(owner, "alice", van_owner=True)
    customer_user = register(customer, "bob")
    listing = owner.post("/api/van-listings", json=listing_payload).json()
    booking = customer.post("/api/bookings", json=booking_payload(listing["id"])).json()
    return {
        "owner": owner, "owner_user": owner_user,
        "customer": customer, "customer_user": customer_user,
        "listing": listing, "booking": booking,
    }


def test_booking_scenario(new_client, register, listing_payload, booking_payload):
    a, b = new_client(), new_client()
    register(a, "alice", van_owner=True)
    register(b, "bob")

    r = a.post("/api/van-listings", json=listing_payload)
    assert r.status_code == 201
    listing = r.json()
    assert listing["hourly_rate"] == 25

    r = b.post("/api/bookings", json=booking_payload(listing["id"], duration=3, total_price=3 * 25))
    assert r.status_code == 201
    booking = r.json()
    assert booking["status"] == "pending"
    assert booking["total_price"] == 75

    for _ in range(2):
        r = a.patch(f"/api/bookings/{booking['id']}/status", json={"status": "confirmed"})
        assert r.status_code == 200
        assert r.json()["status"] == "confirmed"

    found = b.get("/api/van-listings/search", params={"location": "N1"}).json()
    assert listing["id"] in [l["id"] for l in found]

    r = b.post("/api/reviews", json={"van_listing_id": listing["id"], "rating": 6})
    assert r.status_code == 400

    r = b.delete(f"/api/van-listings/{listing['id']}")
    assert r.status_code == 403
    assert a.get(f"/api/van-listings/{listing['id']}").status_code == 200


def test_listing_crud(new_client, register, listing_payload):
    owner = new_client()
    register(owner, "alice", van_owner=True)
    listing = owner.post("/api/van-listings", json=listing_payload).json()

    details = owner.get(f"/api/van-listings/{listing['id']}").json()
    assert details["user"] == {"full_name": "Alice Tester"}
    assert sorted(s["service_name"] for s in details["services"]) == ["furniture", "house moves"]
    assert details["average_rating"] == 0
    assert details["reviews"] == []

    r = owner.patch(f"/api/van-listings/{listing['id']}", json={"hourly_rate": 40, "is_available_today": False})
    assert r.status_code == 200
    assert r.json()["hourly_rate"] == 40
    assert r.json()["is_available_today"] is False
    assert r.json()["title"] == listing_payload["title"]

    assert [l["id"] for l in owner.get("/api/my-listings").json()] == [listing["id"]]
    assert len(owner.get("/api/van-listings").json()) == 1

    r = owner.delete(f"/api/van-listings/{listing['id']}")
    assert r.status_code == 204
    assert owner.get(f"/api/van-listings/{listing['id']}").status_code == 404
    assert owner.get("/api/van-listings").json() == []


def test_listing_validation_and_permissions(new_client, register, listing_payload):
    owner, customer = new_client(), new_client()
    register(owner, "alice", van_owner=True)
    register(customer, "bob")

    bad = dict(listing_payload, van_size="huge", hourly_rate=0)
    r = owner.post("/api/van-listings", json=bad)
    assert r.status_code == 400

    r = customer.post("/api/van-listings", json=listing_payload)
    assert r.status_code == 403

    listing = owner.post("/api/van-listings", json=listing_payload).json()
    r = customer.patch(f"/api/van-listings/{listing['id']}", json={"hourly_rate": 1})
    assert r.status_code == 403
    assert owner.patch(f"/api/van-listings/{listing['id']}", json={"title": "x"}).status_code == 400


@pytest.mark.parametrize("listing_id", ["999999", "not-an-id", "5f1d7c0e9b1e8a3d4c2b1a00"])
def test_unknown_listing_is_404(client, listing_id):
    r = client.get(f"/api/van-listings/{listing_id}")
    assert r.status_code == 404
    assert r.json() == {"message": "Van listing not found"}


def test_search_requires_location(client):
    r = client.get("/api/van-listings/search")
    assert r.status_code == 400
    assert r.json() == {"message": "Location is required"}


def test_search_filters_by_size(new_client, register, listing_payload):
    owner = new_client()
    register(owner, "alice", van_owner=True)
    owner.post("/api/van-listings", json=listing_payload)
    assert len(owner.get("/api/van-listings/search", params={"location": "n1", "van_size": "large"}).json()) == 1
    assert owner.get("/api/van-listings/search", params={"location": "n1", "van_size": "small"}).json() == []
    assert len(owner.get("/api/van-listings/search", params={"location": "9ab", "van_size": "any"}).json()) == 1


def test_search_accepts_camel_case_size(new_client, register, listing_payload):
    owner = new_client()
    register(owner, "alice", van_owner=True)
    owner.post("/api/van-listings", json=listing_payload)
    assert owner.get("/api/van-listings/search", params={"location": "n1", "vanSize": "small"}).json() == []
    assert len(owner.get("/api/van-listings/search", params={"location": "n1", "vanSize": "large"}).json()) == 1


def test_listing_image_can_be_cleared(new_client, register, listing_payload):
    owner = new_client()
    register(owner, "alice", van_owner=True)
    listing = owner.post("/api/van-listings",
                         json=dict(listing_payload, image_url="https://example.com/van.jpg")).json()
    assert listing["image_url"] == "https://example.com/van.jpg"

    r = owner.patch(f"/api/van-listings/{listing['id']}", json={"image_url": None, "title": None})
    assert r.status_code == 200
    assert r.json()["image_url"] is None
    assert r.json()["title"] == listing_payload["title"]


def test_booking_views(marketplace):
    customer, owner = marketplace["customer"], marketplace["owner"]

    [mine] = customer.get("/api/my-bookings").json()
    assert mine["van_listing"]["title"] == marketplace["listing"]["title"]
    assert mine["van_listing"]["user"]["full_name"] == "Alice Tester"

    [incoming] = owner.get("/api/my-van-bookings").json()
    assert incoming["id"] == marketplace["booking"]["id"]
    assert incoming["user"] == {"full_name": "Bob Tester", "email": "bob@example.com"}
    assert owner.get("/api/my-bookings").json() == []


def test_booking_requires_existing_listing(client, register, booking_payload):
    register(client, "bob")
    r = client.post("/api/bookings", json=booking_payload("999999"))
    assert r.status_code == 404
    r = client.post("/api/bookings", json=dict(booking_payload("999999"), duration=0))
    assert r.status_code == 400


def test_booking_status_permissions(marketplace, new_client, register):
    stranger = new_client()
    register(stranger, "eve")
    url = f"/api/bookings/{marketplace['booking']['id']}/status"

    assert stranger.patch(url, json={"status": "cancelled"}).status_code == 403
    assert marketplace["owner"].patch(url, json={"status": "lost"}).status_code == 400
    r = marketplace["customer"].patch(url, json={"status": "cancelled"})
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert marketplace["owner"].patch("/api/bookings/999999/status", json={"status": "confirmed"}).status_code == 404


def test_reviews_update_rating(marketplace, new_client, register):
    listing_id = marketplace["listing"]["id"]
    carol = new_client()
    register(carol, "carol")

    r = marketplace["customer"].post("/api/reviews", json={"van_listing_id": listing_id, "rating": 5,
                                                           "comment": "Great"})
    assert r.status_code == 201
    carol.post("/api/reviews", json={"van_listing_id": listing_id, "rating": 4})

    details = carol.get(f"/api/van-listings/{listing_id}").json()
    assert details["average_rating"] == 4.5
    assert details["review_count"] == 2
    assert [r["user"]["full_name"] for r in details["reviews"]] == ["Carol Tester", "Bob Tester"]

    assert carol.post("/api/reviews", json={"van_listing_id": "999999", "rating": 4}).status_code == 404
    assert carol.post("/api/reviews", json={"van_listing_id": listing_id, "rating": 0}).status_code == 400


def test_storage_failure_is_503(client, storage, monkeypatch):
    def broken():
        raise StorageError("get_van_listings")

    monkeypatch.setattr(storage, "get_van_listings", broken)
    r = client.get("/api/van-listings")
    assert r.status_code == 503
    assert "message" in r.json()


def test_diagnostics(client, storage):
    assert client.get("/").json()["message"].endswith("API is running")
    r = client.get("/test").json()
    assert r["backend"] == "✅ Running"
    assert r["connection_status"] == "Connected"
    assert storage.name in r["storage"]
