import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, update, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import Base, make_engine, make_session_factory
from models import UserRow, VanListingRow, ServiceRow, BookingRow, ReviewRow, MessageRow, VanTrackingRow
from schemas import (
    EntityId, User, UserRecord, VanListing, VanListingRecord, VanListingWithServices,
    Service, ServiceRecord, Booking, BookingRecord, BookingWithListing,
    Review, ReviewRecord, Message, MessageRecord, Position, VanTrackingRecord,
)
from storage import StorageInterface, DuplicateError, LISTING_FIELDS, guard, as_utc, round_rating

logger = logging.getLogger(__name__)

sql_guard = guard(SQLAlchemyError)


def to_key(entity_id: Any) -> Optional[int]:
    """Integer primary key for an opaque id, or None if it cannot be one."""
    try:
        return int(entity_id)
    except (TypeError, ValueError):
        return None


def to_plain(row) -> Dict[str, Any]:
    d = {c.name: getattr(row, c.name) for c in row.__table__.columns}
    for k, v in d.items():
        if (k == "id" or k.endswith("_id")) and v is not None:
            d[k] = str(v)
    return d


def to_row_values(data) -> Dict[str, Any]:
    values = data.model_dump()
    for k, v in values.items():
        if k.endswith("_id"):
            values[k] = to_key(v)
    return values


class SqlStorage(StorageInterface):
    """Relational adapter: integer surrogate keys behind string ids."""

    name = "sql"

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or make_engine()
        self.Session = make_session_factory(self.engine)

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    def _insert(self, row):
        with self.Session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return to_plain(row)

    # Users
    @sql_guard
    def get_user(self, user_id: EntityId) -> Optional[UserRecord]:
        key = to_key(user_id)
        if key is None:
            return None
        with self.Session() as session:
            row = session.get(UserRow, key)
            return UserRecord(**to_plain(row)) if row else None

    @sql_guard
    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.scalars(select(UserRow).where(UserRow.email == email)).first()
            return UserRecord(**to_plain(row)) if row else None

    @sql_guard
    def create_user(self, data: User) -> UserRecord:
        try:
            return UserRecord(**self._insert(UserRow(**data.model_dump())))
        except IntegrityError as e:
            raise DuplicateError("Username or email already in use") from e

    @sql_guard
    def get_all_users(self) -> List[UserRecord]:
        with self.Session() as session:
            rows = session.scalars(select(UserRow).order_by(UserRow.created_at.desc(), UserRow.id.desc()))
            return [UserRecord(**to_plain(r)) for r in rows]

    @sql_guard
    def delete_user(self, user_id: EntityId) -> bool:
        key = to_key(user_id)
        if key is None:
            return False
        with self.Session() as session:
            if session.get(UserRow, key) is None:
                return False
            listing_ids = session.scalars(select(VanListingRow.id).where(VanListingRow.user_id == key)).all()
            for listing_id in listing_ids:
                self._delete_listing_tree(session, listing_id)
            booking_ids = session.scalars(select(BookingRow.id).where(BookingRow.user_id == key)).all()
            self._delete_bookings(session, booking_ids)
            session.execute(delete(ReviewRow).where(ReviewRow.user_id == key))
            session.execute(delete(MessageRow).where(MessageRow.sender_id == key))
            session.execute(delete(UserRow).where(UserRow.id == key))
            session.commit()
            return True

    def _set_user_fields(self, user_id: EntityId, **values) -> Optional[UserRecord]:
        key = to_key(user_id)
        if key is None:
            return None
        with self.Session() as session:
            row = session.get(UserRow, key)
            if row is None:
                return None
            for k, v in values.items():
                setattr(row, k, v)
            session.commit()
            session.refresh(row)
            return UserRecord(**to_plain(row))

    @sql_guard
    def set_van_owner_status(self, user_id: EntityId, is_van_owner: bool) -> Optional[UserRecord]:
        return self._set_user_fields(user_id, is_van_owner=is_van_owner)

    @sql_guard
    def set_admin_status(self, user_id: EntityId, is_admin: bool) -> Optional[UserRecord]:
        return self._set_user_fields(user_id, is_admin=is_admin)

    # Password reset
    @sql_guard
    def store_password_reset_token(self, user_id: EntityId, token: str, expires: datetime) -> bool:
        return self._set_user_fields(user_id, reset_password_token=token, reset_password_expires=expires) is not None

    @sql_guard
    def get_user_by_reset_token(self, token: str) -> Optional[UserRecord]:
        if not token:
            return None
        with self.Session() as session:
            row = session.scalars(select(UserRow).where(UserRow.reset_password_token == token)).first()
            if row is None or row.reset_password_expires is None:
                return None
            if as_utc(row.reset_password_expires) <= datetime.now(timezone.utc):
                return None
            return UserRecord(**to_plain(row))

    @sql_guard
    def update_user_password(self, user_id: EntityId, password_hash: str) -> bool:
        return self._set_user_fields(user_id, password_hash=password_hash) is not None

    @sql_guard
    def clear_password_reset_token(self, user_id: EntityId) -> bool:
        return self._set_user_fields(user_id, reset_password_token=None, reset_password_expires=None) is not None

    # Van listings
    @sql_guard
    def _find_listing(self, listing_id: EntityId) -> Optional[VanListingRecord]:
        key = to_key(listing_id)
        if key is None:
            return None
        with self.Session() as session:
            row = session.get(VanListingRow, key)
            return VanListingRecord(**to_plain(row)) if row else None

    def _listings(self, *criteria) -> List[VanListingRecord]:
        with self.Session() as session:
            rows = session.scalars(select(VanListingRow).where(*criteria).order_by(VanListingRow.id))
            return [VanListingRecord(**to_plain(r)) for r in rows]

    @sql_guard
    def get_van_listings(self) -> List[VanListingWithServices]:
        return [self._with_services(listing) for listing in self._listings()]

    @sql_guard
    def get_van_listings_by_user(self, user_id: EntityId) -> List[VanListingWithServices]:
        key = to_key(user_id)
        if key is None:
            return []
        return [self._with_services(listing) for listing in self._listings(VanListingRow.user_id == key)]

    @sql_guard
    def search_van_listings(self, location: str, date: Optional[str] = None,
                            van_size: Optional[str] = None) -> List[VanListingWithServices]:
        criteria = []
        if location:
            # autoescape keeps % and _ literal
            needle = location.lower()
            criteria.append(or_(
                func.lower(VanListingRow.location).contains(needle, autoescape=True),
                func.lower(VanListingRow.postcode).contains(needle, autoescape=True),
            ))
        if van_size and van_size != "any":
            criteria.append(VanListingRow.van_size == van_size)
        return [self._with_services(listing) for listing in self._listings(*criteria)]

    @sql_guard
    def create_van_listing(self, data: VanListing) -> VanListingRecord:
        return VanListingRecord(**self._insert(VanListingRow(**to_row_values(data))))

    @sql_guard
    def update_van_listing(self, listing_id: EntityId, patch: Dict[str, Any]) -> Optional[VanListingRecord]:
        key = to_key(listing_id)
        if key is None:
            return None
        with self.Session() as session:
            row = session.get(VanListingRow, key)
            if row is None:
                return None
            for k, v in patch.items():
                if k in LISTING_FIELDS:
                    setattr(row, k, v)
            session.commit()
            session.refresh(row)
            return VanListingRecord(**to_plain(row))

    @sql_guard
    def delete_van_listing(self, listing_id: EntityId) -> bool:
        key = to_key(listing_id)
        if key is None:
            return False
        with self.Session() as session:
            if session.get(VanListingRow, key) is None:
                return False
            self._delete_listing_tree(session, key)
            session.commit()
            return True

    def _delete_listing_tree(self, session, listing_key: int) -> None:
        session.execute(delete(ServiceRow).where(ServiceRow.van_listing_id == listing_key))
        session.execute(delete(ReviewRow).where(ReviewRow.van_listing_id == listing_key))
        booking_ids = session.scalars(select(BookingRow.id).where(BookingRow.van_listing_id == listing_key)).all()
        self._delete_bookings(session, booking_ids)
        session.execute(delete(VanListingRow).where(VanListingRow.id == listing_key))

    def _delete_bookings(self, session, booking_ids) -> None:
        if not booking_ids:
            return
        session.execute(delete(MessageRow).where(MessageRow.booking_id.in_(booking_ids)))
        session.execute(delete(VanTrackingRow).where(VanTrackingRow.booking_id.in_(booking_ids)))
        session.execute(delete(BookingRow).where(BookingRow.id.in_(booking_ids)))

    # Services
    @sql_guard
    def add_service(self, data: Service) -> ServiceRecord:
        return ServiceRecord(**self._insert(ServiceRow(**to_row_values(data))))

    @sql_guard
    def get_services_by_van_listing(self, listing_id: EntityId) -> List[ServiceRecord]:
        key = to_key(listing_id)
        if key is None:
            return []
        with self.Session() as session:
            rows = session.scalars(select(ServiceRow).where(ServiceRow.van_listing_id == key).order_by(ServiceRow.id))
            return [ServiceRecord(**to_plain(r)) for r in rows]

    # Bookings
    @sql_guard
    def create_booking(self, data: Booking) -> BookingRecord:
        return BookingRecord(**self._insert(BookingRow(**to_row_values(data))))

    @sql_guard
    def get_booking(self, booking_id: EntityId) -> Optional[BookingRecord]:
        key = to_key(booking_id)
        if key is None:
            return None
        with self.Session() as session:
            row = session.get(BookingRow, key)
            return BookingRecord(**to_plain(row)) if row else None

    def _bookings(self, *criteria) -> List[BookingRecord]:
        with self.Session() as session:
            rows = session.scalars(select(BookingRow).where(*criteria).order_by(BookingRow.id))
            return [BookingRecord(**to_plain(r)) for r in rows]

    @sql_guard
    def get_bookings_by_user(self, user_id: EntityId) -> List[BookingWithListing]:
        key = to_key(user_id)
        if key is None:
            return []
        return [self._with_listing(b) for b in self._bookings(BookingRow.user_id == key)]

    @sql_guard
    def get_bookings_by_van_listing(self, listing_id: EntityId) -> List[BookingRecord]:
        key = to_key(listing_id)
        if key is None:
            return []
        return self._bookings(BookingRow.van_listing_id == key)

    @sql_guard
    def get_all_bookings(self) -> List[BookingRecord]:
        return self._bookings()

    @sql_guard
    def update_booking_status(self, booking_id: EntityId, status: str) -> Optional[BookingRecord]:
        key = to_key(booking_id)
        if key is None:
            return None
        with self.Session() as session:
            row = session.get(BookingRow, key)
            if row is None:
                return None
            row.status = status
            session.commit()
            session.refresh(row)
            return BookingRecord(**to_plain(row))

    # Reviews
    @sql_guard
    def create_review(self, data: Review) -> ReviewRecord:
        return ReviewRecord(**self._insert(ReviewRow(**to_row_values(data))))

    def _reviews(self, *criteria, newest_first=True) -> List[ReviewRecord]:
        if newest_first:
            order = (ReviewRow.created_at.desc(), ReviewRow.id.desc())
        else:
            order = (ReviewRow.id,)
        with self.Session() as session:
            rows = session.scalars(select(ReviewRow).where(*criteria).order_by(*order))
            return [ReviewRecord(**to_plain(r)) for r in rows]

    @sql_guard
    def get_reviews_by_van_listing(self, listing_id: EntityId) -> List[ReviewRecord]:
        key = to_key(listing_id)
        if key is None:
            return []
        return self._reviews(ReviewRow.van_listing_id == key)

    @sql_guard
    def get_all_reviews(self) -> List[ReviewRecord]:
        return self._reviews(newest_first=False)

    @sql_guard
    def get_average_rating_for_van_listing(self, listing_id: EntityId) -> float:
        key = to_key(listing_id)
        if key is None:
            return 0
        with self.Session() as session:
            avg = session.scalar(select(func.avg(ReviewRow.rating)).where(ReviewRow.van_listing_id == key))
            return round_rating(avg)

    # Messages
    @sql_guard
    def create_message(self, data: Message) -> MessageRecord:
        return MessageRecord(**self._insert(MessageRow(**to_row_values(data))))

    @sql_guard
    def _messages_for_booking(self, booking_id: EntityId) -> List[MessageRecord]:
        key = to_key(booking_id)
        if key is None:
            return []
        with self.Session() as session:
            rows = session.scalars(
                select(MessageRow).where(MessageRow.booking_id == key).order_by(MessageRow.created_at, MessageRow.id)
            )
            return [MessageRecord(**to_plain(r)) for r in rows]

    @sql_guard
    def get_unread_message_count_for_user(self, user_id: EntityId) -> int:
        key = to_key(user_id)
        if key is None:
            return 0
        owned_listings = select(VanListingRow.id).where(VanListingRow.user_id == key)
        booking_ids = select(BookingRow.id).where(
            or_(BookingRow.user_id == key, BookingRow.van_listing_id.in_(owned_listings))
        )
        with self.Session() as session:
            count = session.scalar(
                select(func.count(MessageRow.id)).where(
                    MessageRow.booking_id.in_(booking_ids),
                    MessageRow.sender_id != key,
                    MessageRow.is_read.is_(False),
                )
            )
            return int(count or 0)

    @sql_guard
    def mark_messages_as_read(self, booking_id: EntityId, user_id: EntityId) -> None:
        booking_key, user_key = to_key(booking_id), to_key(user_id)
        if booking_key is None or user_key is None:
            return
        with self.Session() as session:
            session.execute(
                update(MessageRow)
                .where(MessageRow.booking_id == booking_key, MessageRow.sender_id != user_key)
                .values(is_read=True)
            )
            session.commit()

    # Van tracking
    @sql_guard
    def update_van_position(self, booking_id: EntityId, position: Position) -> VanTrackingRecord:
        row = VanTrackingRow(booking_id=to_key(booking_id), lat=position.lat, lng=position.lng,
                             timestamp=datetime.now(timezone.utc))
        return VanTrackingRecord(**self._insert(row))

    @sql_guard
    def get_van_tracking_history(self, booking_id: EntityId) -> List[VanTrackingRecord]:
        key = to_key(booking_id)
        if key is None:
            return []
        with self.Session() as session:
            rows = session.scalars(
                select(VanTrackingRow).where(VanTrackingRow.booking_id == key)
                .order_by(VanTrackingRow.timestamp, VanTrackingRow.id)
            )
            return [VanTrackingRecord(**to_plain(r)) for r in rows]

    @sql_guard
    def get_van_position(self, booking_id: EntityId) -> Optional[Position]:
        key = to_key(booking_id)
        if key is None:
            return None
        with self.Session() as session:
            row = session.scalars(
                select(VanTrackingRow).where(VanTrackingRow.booking_id == key)
                .order_by(VanTrackingRow.timestamp.desc(), VanTrackingRow.id.desc())
            ).first()
            return Position(lat=row.lat, lng=row.lng) if row else None

    @sql_guard
    def describe(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "database_url": self.engine.url.render_as_string(hide_password=True),
            "collections": sorted(Base.metadata.tables.keys()),
        }
