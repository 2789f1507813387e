import mongomock

import storage_factory
from database import get_mongo_database, is_connected, make_engine
from mongo_storage import MongoStorage
from seed import create_admin, initialize_test_data
from sql_storage import SqlStorage


def test_falls_back_to_sql_without_mongo():
    assert get_mongo_database(url="", name="") is None
    assert is_connected(None) is False
    storage = storage_factory.select_storage(engine=make_engine("sqlite://"))
    assert isinstance(storage, SqlStorage)
    # tables exist
    assert storage.get_all_users() == []


def test_prefers_mongo_when_reachable(monkeypatch):
    monkeypatch.setattr(storage_factory, "is_connected", lambda db: True)
    db = mongomock.MongoClient()["manandvan_factory"]
    storage = storage_factory.select_storage(mongo_db=db)
    assert isinstance(storage, MongoStorage)
    assert storage.db is db


def test_seed_demo_data(storage):
    assert initialize_test_data(storage) is True
    assert initialize_test_data(storage) is False

    listings = storage.get_van_listings()
    assert len(listings) == 3
    james = next(l for l in listings if l.title == "James's Moving Service")
    assert james.review_count == 5
    assert james.average_rating == 5
    assert storage.search_van_listings("N1")[0].id == james.id


def test_create_admin_is_idempotent(storage):
    admin_id = create_admin(storage, "admin-pass")
    assert storage.get_user(admin_id).is_admin is True
    storage.set_admin_status(admin_id, False)
    assert create_admin(storage) == admin_id
    assert storage.get_user(admin_id).is_admin is True
