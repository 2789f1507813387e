import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_documents
from schemas import (
    EntityId, User, UserRecord, VanListing, VanListingRecord, VanListingWithServices,
    Service, ServiceRecord, Booking, BookingRecord, BookingWithListing,
    Review, ReviewRecord, Message, MessageRecord, Position, VanTrackingRecord,
)
from storage import StorageInterface, DuplicateError, LISTING_FIELDS, guard, as_utc, round_rating

logger = logging.getLogger(__name__)

mongo_guard = guard(PyMongoError)

USERS = "user"
LISTINGS = "vanlisting"
SERVICES = "service"
BOOKINGS = "booking"
REVIEWS = "review"
MESSAGES = "message"
TRACKING = "vantracking"


def to_oid(entity_id: Any) -> Optional[ObjectId]:
    if isinstance(entity_id, ObjectId):
        return entity_id
    if entity_id is None:
        # ObjectId(None) would mint a new id
        return None
    try:
        return ObjectId(entity_id)
    except (InvalidId, TypeError):
        return None


def to_plain(doc: Dict[str, Any]) -> Dict[str, Any]:
    d = dict(doc)
    d["id"] = str(d.pop("_id"))
    for k, v in d.items():
        if k.endswith("_id") and isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def to_document(data) -> Dict[str, Any]:
    doc = data.model_dump()
    for k, v in doc.items():
        if k.endswith("_id") and v is not None:
            doc[k] = ObjectId(v)
    return doc


class MongoStorage(StorageInterface):
    """Document adapter: ObjectIds behind string ids, references stored as ObjectIds."""

    name = "mongodb"

    def __init__(self, db: Database):
        self.db = db

    def ensure_indexes(self) -> None:
        self.db[USERS].create_index("email", unique=True)
        self.db[USERS].create_index("username", unique=True)
        self.db[LISTINGS].create_index("user_id")
        self.db[SERVICES].create_index("van_listing_id")
        self.db[BOOKINGS].create_index("van_listing_id")
        self.db[BOOKINGS].create_index("user_id")
        self.db[REVIEWS].create_index("van_listing_id")
        self.db[MESSAGES].create_index("booking_id")
        self.db[TRACKING].create_index([("booking_id", ASCENDING), ("timestamp", ASCENDING)])

    def _insert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        inserted_id = create_document(self.db, collection, doc)
        return to_plain(self.db[collection].find_one({"_id": ObjectId(inserted_id)}))

    def _find_one(self, collection: str, entity_id: EntityId) -> Optional[Dict[str, Any]]:
        oid = to_oid(entity_id)
        if oid is None:
            return None
        doc = self.db[collection].find_one({"_id": oid})
        return to_plain(doc) if doc else None

    def _find(self, collection: str, filter_dict: Dict[str, Any], sort=None) -> List[Dict[str, Any]]:
        return [to_plain(d) for d in get_documents(self.db, collection, filter_dict, sort=sort or [("_id", ASCENDING)])]

    # Users
    @mongo_guard
    def get_user(self, user_id: EntityId) -> Optional[UserRecord]:
        doc = self._find_one(USERS, user_id)
        return UserRecord(**doc) if doc else None

    @mongo_guard
    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        doc = self.db[USERS].find_one({"email": email})
        return UserRecord(**to_plain(doc)) if doc else None

    @mongo_guard
    def create_user(self, data: User) -> UserRecord:
        try:
            return UserRecord(**self._insert(USERS, data.model_dump()))
        except DuplicateKeyError as e:
            raise DuplicateError("Username or email already in use") from e

    @mongo_guard
    def get_all_users(self) -> List[UserRecord]:
        docs = self._find(USERS, {}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
        return [UserRecord(**d) for d in docs]

    @mongo_guard
    def delete_user(self, user_id: EntityId) -> bool:
        oid = to_oid(user_id)
        if oid is None or self.db[USERS].find_one({"_id": oid}) is None:
            return False
        for listing_id in self.db[LISTINGS].distinct("_id", {"user_id": oid}):
            self._delete_listing_tree(listing_id)
        booking_ids = self.db[BOOKINGS].distinct("_id", {"user_id": oid})
        self._delete_bookings(booking_ids)
        self.db[REVIEWS].delete_many({"user_id": oid})
        self.db[MESSAGES].delete_many({"sender_id": oid})
        self.db[USERS].delete_one({"_id": oid})
        return True

    def _set_user_fields(self, user_id: EntityId, **values) -> Optional[UserRecord]:
        oid = to_oid(user_id)
        if oid is None:
            return None
        values["updated_at"] = datetime.now(timezone.utc)
        result = self.db[USERS].update_one({"_id": oid}, {"$set": values})
        if result.matched_count == 0:
            return None
        return self.get_user(oid)

    @mongo_guard
    def set_van_owner_status(self, user_id: EntityId, is_van_owner: bool) -> Optional[UserRecord]:
        return self._set_user_fields(user_id, is_van_owner=is_van_owner)

    @mongo_guard
    def set_admin_status(self, user_id: EntityId, is_admin: bool) -> Optional[UserRecord]:
        return self._set_user_fields(user_id, is_admin=is_admin)

    # Password reset
    @mongo_guard
    def store_password_reset_token(self, user_id: EntityId, token: str, expires: datetime) -> bool:
        return self._set_user_fields(user_id, reset_password_token=token, reset_password_expires=expires) is not None

    @mongo_guard
    def get_user_by_reset_token(self, token: str) -> Optional[UserRecord]:
        if not token:
            return None
        doc = self.db[USERS].find_one({"reset_password_token": token})
        if doc is None or doc.get("reset_password_expires") is None:
            return None
        if as_utc(doc["reset_password_expires"]) <= datetime.now(timezone.utc):
            return None
        return UserRecord(**to_plain(doc))

    @mongo_guard
    def update_user_password(self, user_id: EntityId, password_hash: str) -> bool:
        return self._set_user_fields(user_id, password_hash=password_hash) is not None

    @mongo_guard
    def clear_password_reset_token(self, user_id: EntityId) -> bool:
        return self._set_user_fields(user_id, reset_password_token=None, reset_password_expires=None) is not None

    # Van listings
    @mongo_guard
    def _find_listing(self, listing_id: EntityId) -> Optional[VanListingRecord]:
        doc = self._find_one(LISTINGS, listing_id)
        return VanListingRecord(**doc) if doc else None

    def _listings(self, filter_dict: Dict[str, Any]) -> List[VanListingWithServices]:
        return [self._with_services(VanListingRecord(**d)) for d in self._find(LISTINGS, filter_dict)]

    @mongo_guard
    def get_van_listings(self) -> List[VanListingWithServices]:
        return self._listings({})

    @mongo_guard
    def get_van_listings_by_user(self, user_id: EntityId) -> List[VanListingWithServices]:
        oid = to_oid(user_id)
        if oid is None:
            return []
        return self._listings({"user_id": oid})

    @mongo_guard
    def search_van_listings(self, location: str, date: Optional[str] = None,
                            van_size: Optional[str] = None) -> List[VanListingWithServices]:
        query: Dict[str, Any] = {}
        if location:
            pattern = {"$regex": re.escape(location), "$options": "i"}
            query["$or"] = [{"location": pattern}, {"postcode": pattern}]
        if van_size and van_size != "any":
            query["van_size"] = van_size
        return self._listings(query)

    @mongo_guard
    def create_van_listing(self, data: VanListing) -> VanListingRecord:
        return VanListingRecord(**self._insert(LISTINGS, to_document(data)))

    @mongo_guard
    def update_van_listing(self, listing_id: EntityId, patch: Dict[str, Any]) -> Optional[VanListingRecord]:
        oid = to_oid(listing_id)
        if oid is None:
            return None
        update = {k: v for k, v in patch.items() if k in LISTING_FIELDS}
        update["updated_at"] = datetime.now(timezone.utc)
        result = self.db[LISTINGS].update_one({"_id": oid}, {"$set": update})
        if result.matched_count == 0:
            return None
        return self._find_listing(oid)

    @mongo_guard
    def delete_van_listing(self, listing_id: EntityId) -> bool:
        oid = to_oid(listing_id)
        if oid is None or self.db[LISTINGS].find_one({"_id": oid}) is None:
            return False
        self._delete_listing_tree(oid)
        return True

    def _delete_listing_tree(self, listing_oid: ObjectId) -> None:
        self.db[SERVICES].delete_many({"van_listing_id": listing_oid})
        self.db[REVIEWS].delete_many({"van_listing_id": listing_oid})
        self._delete_bookings(self.db[BOOKINGS].distinct("_id", {"van_listing_id": listing_oid}))
        self.db[LISTINGS].delete_one({"_id": listing_oid})

    def _delete_bookings(self, booking_ids: List[ObjectId]) -> None:
        if not booking_ids:
            return
        self.db[MESSAGES].delete_many({"booking_id": {"$in": booking_ids}})
        self.db[TRACKING].delete_many({"booking_id": {"$in": booking_ids}})
        self.db[BOOKINGS].delete_many({"_id": {"$in": booking_ids}})

    # Services
    @mongo_guard
    def add_service(self, data: Service) -> ServiceRecord:
        return ServiceRecord(**self._insert(SERVICES, to_document(data)))

    @mongo_guard
    def get_services_by_van_listing(self, listing_id: EntityId) -> List[ServiceRecord]:
        oid = to_oid(listing_id)
        if oid is None:
            return []
        return [ServiceRecord(**d) for d in self._find(SERVICES, {"van_listing_id": oid})]

    # Bookings
    @mongo_guard
    def create_booking(self, data: Booking) -> BookingRecord:
        return BookingRecord(**self._insert(BOOKINGS, to_document(data)))

    @mongo_guard
    def get_booking(self, booking_id: EntityId) -> Optional[BookingRecord]:
        doc = self._find_one(BOOKINGS, booking_id)
        return BookingRecord(**doc) if doc else None

    @mongo_guard
    def get_bookings_by_user(self, user_id: EntityId) -> List[BookingWithListing]:
        oid = to_oid(user_id)
        if oid is None:
            return []
        return [self._with_listing(BookingRecord(**d)) for d in self._find(BOOKINGS, {"user_id": oid})]

    @mongo_guard
    def get_bookings_by_van_listing(self, listing_id: EntityId) -> List[BookingRecord]:
        oid = to_oid(listing_id)
        if oid is None:
            return []
        return [BookingRecord(**d) for d in self._find(BOOKINGS, {"van_listing_id": oid})]

    @mongo_guard
    def get_all_bookings(self) -> List[BookingRecord]:
        return [BookingRecord(**d) for d in self._find(BOOKINGS, {})]

    @mongo_guard
    def update_booking_status(self, booking_id: EntityId, status: str) -> Optional[BookingRecord]:
        oid = to_oid(booking_id)
        if oid is None:
            return None
        result = self.db[BOOKINGS].update_one(
            {"_id": oid}, {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}}
        )
        if result.matched_count == 0:
            return None
        return self.get_booking(oid)

    # Reviews
    @mongo_guard
    def create_review(self, data: Review) -> ReviewRecord:
        return ReviewRecord(**self._insert(REVIEWS, to_document(data)))

    @mongo_guard
    def get_reviews_by_van_listing(self, listing_id: EntityId) -> List[ReviewRecord]:
        oid = to_oid(listing_id)
        if oid is None:
            return []
        docs = self._find(REVIEWS, {"van_listing_id": oid}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
        return [ReviewRecord(**d) for d in docs]

    @mongo_guard
    def get_all_reviews(self) -> List[ReviewRecord]:
        return [ReviewRecord(**d) for d in self._find(REVIEWS, {})]

    @mongo_guard
    def get_average_rating_for_van_listing(self, listing_id: EntityId) -> float:
        oid = to_oid(listing_id)
        if oid is None:
            return 0
        result = list(self.db[REVIEWS].aggregate([
            {"$match": {"van_listing_id": oid}},
            {"$group": {"_id": None, "average_rating": {"$avg": "$rating"}}},
        ]))
        return round_rating(result[0]["average_rating"]) if result else 0

    # Messages
    @mongo_guard
    def create_message(self, data: Message) -> MessageRecord:
        return MessageRecord(**self._insert(MESSAGES, to_document(data)))

    @mongo_guard
    def _messages_for_booking(self, booking_id: EntityId) -> List[MessageRecord]:
        oid = to_oid(booking_id)
        if oid is None:
            return []
        docs = self._find(MESSAGES, {"booking_id": oid}, sort=[("created_at", ASCENDING), ("_id", ASCENDING)])
        return [MessageRecord(**d) for d in docs]

    @mongo_guard
    def get_unread_message_count_for_user(self, user_id: EntityId) -> int:
        oid = to_oid(user_id)
        if oid is None:
            return 0
        listing_ids = self.db[LISTINGS].distinct("_id", {"user_id": oid})
        booking_ids = self.db[BOOKINGS].distinct(
            "_id", {"$or": [{"user_id": oid}, {"van_listing_id": {"$in": listing_ids}}]}
        )
        if not booking_ids:
            return 0
        return self.db[MESSAGES].count_documents({
            "booking_id": {"$in": booking_ids},
            "sender_id": {"$ne": oid},
            "is_read": False,
        })

    @mongo_guard
    def mark_messages_as_read(self, booking_id: EntityId, user_id: EntityId) -> None:
        booking_oid, user_oid = to_oid(booking_id), to_oid(user_id)
        if booking_oid is None or user_oid is None:
            return
        self.db[MESSAGES].update_many(
            {"booking_id": booking_oid, "sender_id": {"$ne": user_oid}, "is_read": False},
            {"$set": {"is_read": True}},
        )

    # Van tracking
    @mongo_guard
    def update_van_position(self, booking_id: EntityId, position: Position) -> VanTrackingRecord:
        doc = {
            "booking_id": ObjectId(booking_id),
            "lat": position.lat,
            "lng": position.lng,
            "timestamp": datetime.now(timezone.utc),
        }
        return VanTrackingRecord(**self._insert(TRACKING, doc))

    @mongo_guard
    def get_van_tracking_history(self, booking_id: EntityId) -> List[VanTrackingRecord]:
        oid = to_oid(booking_id)
        if oid is None:
            return []
        docs = self._find(TRACKING, {"booking_id": oid}, sort=[("timestamp", ASCENDING), ("_id", ASCENDING)])
        return [VanTrackingRecord(**d) for d in docs]

    @mongo_guard
    def get_van_position(self, booking_id: EntityId) -> Optional[Position]:
        oid = to_oid(booking_id)
        if oid is None:
            return None
        docs = get_documents(self.db, TRACKING, {"booking_id": oid},
                             sort=[("timestamp", DESCENDING), ("_id", DESCENDING)], limit=1)
        return Position(lat=docs[0]["lat"], lng=docs[0]["lng"]) if docs else None

    @mongo_guard
    def describe(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "database_name": self.db.name,
            "collections": self.db.list_collection_names()[:10],
        }
