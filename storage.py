"""
Storage interface shared by the relational and the document backends.

Lookups never raise for a missing entity: they return ``None``, an empty list
or ``False``. Driver failures are logged by the adapter and surface as
``StorageError`` so callers can tell "absent" from "unavailable".
"""
import functools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from schemas import (
    EntityId,
    User, UserRecord,
    VanListing, VanListingRecord, VanListingWithServices, VanListingWithDetails,
    Service, ServiceRecord,
    Booking, BookingRecord, BookingWithListing, ListingSummary,
    Review, ReviewRecord, ReviewWithUser,
    Message, MessageRecord, MessageWithSender, SenderSummary,
    Position, VanTrackingRecord, UserSummary,
)

logger = logging.getLogger(__name__)

# Fields a listing owner may patch.
LISTING_FIELDS = (
    "title", "description", "van_size", "hourly_rate", "location", "postcode",
    "image_url", "helpers_count", "is_available_today",
)


class StorageError(Exception):
    """The backing store failed; the request may succeed later."""


class DuplicateError(Exception):
    """A unique field (email, username) is already taken."""


def guard(*driver_errors):
    """Log driver exceptions raised by an adapter method and re-raise them as StorageError."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except driver_errors as e:
                logger.error("Error in %s.%s: %s", type(self).__name__, fn.__name__, e)
                raise StorageError(fn.__name__) from e
        return wrapper
    return decorator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # drivers hand back naive datetimes that are already UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def round_rating(value: Optional[float]) -> float:
    if value is None:
        return 0
    return round(float(value), 1)


class StorageInterface(ABC):
    name = "abstract"

    # Users
    @abstractmethod
    def get_user(self, user_id: EntityId) -> Optional[UserRecord]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    @abstractmethod
    def create_user(self, data: User) -> UserRecord: ...

    @abstractmethod
    def get_all_users(self) -> List[UserRecord]: ...

    @abstractmethod
    def delete_user(self, user_id: EntityId) -> bool:
        """Remove the user together with everything that hangs off them."""

    @abstractmethod
    def set_van_owner_status(self, user_id: EntityId, is_van_owner: bool) -> Optional[UserRecord]: ...

    @abstractmethod
    def set_admin_status(self, user_id: EntityId, is_admin: bool) -> Optional[UserRecord]: ...

    # Password reset
    @abstractmethod
    def store_password_reset_token(self, user_id: EntityId, token: str, expires: datetime) -> bool: ...

    @abstractmethod
    def get_user_by_reset_token(self, token: str) -> Optional[UserRecord]:
        """Only returns a user whose token has not expired yet."""

    @abstractmethod
    def update_user_password(self, user_id: EntityId, password_hash: str) -> bool: ...

    @abstractmethod
    def clear_password_reset_token(self, user_id: EntityId) -> bool: ...

    def verify_password_reset_token(self, token: str) -> bool:
        return self.get_user_by_reset_token(token) is not None

    # Van listings
    @abstractmethod
    def _find_listing(self, listing_id: EntityId) -> Optional[VanListingRecord]:
        """The bare listing row/document, without any aggregation."""

    def get_van_listing(self, listing_id: EntityId) -> Optional[VanListingWithDetails]:
        listing = self._find_listing(listing_id)
        if listing is None:
            return None
        summary = self._with_services(listing)
        reviews = []
        for review in self.get_reviews_by_van_listing(listing.id):
            reviewer = self.get_user(review.user_id)
            reviews.append(ReviewWithUser(
                **review.model_dump(),
                user=UserSummary(full_name=reviewer.full_name if reviewer else "Anonymous"),
            ))
        return VanListingWithDetails(**summary.model_dump(), reviews=reviews)

    @abstractmethod
    def get_van_listings(self) -> List[VanListingWithServices]: ...

    @abstractmethod
    def get_van_listings_by_user(self, user_id: EntityId) -> List[VanListingWithServices]: ...

    @abstractmethod
    def search_van_listings(self, location: str, date: Optional[str] = None,
                            van_size: Optional[str] = None) -> List[VanListingWithServices]:
        """Substring match on location or postcode, equality on van size.

        ``date`` is accepted for API compatibility and not used as a filter.
        """

    @abstractmethod
    def create_van_listing(self, data: VanListing) -> VanListingRecord: ...

    @abstractmethod
    def update_van_listing(self, listing_id: EntityId, patch: Dict[str, Any]) -> Optional[VanListingRecord]: ...

    @abstractmethod
    def delete_van_listing(self, listing_id: EntityId) -> bool: ...

    # Services
    @abstractmethod
    def add_service(self, data: Service) -> ServiceRecord: ...

    @abstractmethod
    def get_services_by_van_listing(self, listing_id: EntityId) -> List[ServiceRecord]: ...

    # Bookings
    @abstractmethod
    def create_booking(self, data: Booking) -> BookingRecord: ...

    @abstractmethod
    def get_booking(self, booking_id: EntityId) -> Optional[BookingRecord]: ...

    @abstractmethod
    def get_bookings_by_user(self, user_id: EntityId) -> List[BookingWithListing]: ...

    @abstractmethod
    def get_bookings_by_van_listing(self, listing_id: EntityId) -> List[BookingRecord]: ...

    @abstractmethod
    def get_all_bookings(self) -> List[BookingRecord]: ...

    @abstractmethod
    def update_booking_status(self, booking_id: EntityId, status: str) -> Optional[BookingRecord]: ...

    # Reviews
    @abstractmethod
    def create_review(self, data: Review) -> ReviewRecord: ...

    @abstractmethod
    def get_reviews_by_van_listing(self, listing_id: EntityId) -> List[ReviewRecord]:
        """Newest first."""

    @abstractmethod
    def get_all_reviews(self) -> List[ReviewRecord]: ...

    @abstractmethod
    def get_average_rating_for_van_listing(self, listing_id: EntityId) -> float:
        """Mean rating to one decimal, 0 when the listing has no reviews."""

    # Messages
    @abstractmethod
    def create_message(self, data: Message) -> MessageRecord: ...

    @abstractmethod
    def _messages_for_booking(self, booking_id: EntityId) -> List[MessageRecord]:
        """Oldest first."""

    def get_messages_by_booking(self, booking_id: EntityId) -> List[MessageWithSender]:
        result = []
        for message in self._messages_for_booking(booking_id):
            sender = self.get_user(message.sender_id)
            if sender is not None:
                summary = SenderSummary(id=sender.id, full_name=sender.full_name, is_van_owner=sender.is_van_owner)
            else:
                summary = SenderSummary(id=message.sender_id, full_name="Unknown User")
            result.append(MessageWithSender(**message.model_dump(), sender=summary))
        return result

    @abstractmethod
    def get_unread_message_count_for_user(self, user_id: EntityId) -> int: ...

    @abstractmethod
    def mark_messages_as_read(self, booking_id: EntityId, user_id: EntityId) -> None: ...

    # Van tracking
    @abstractmethod
    def update_van_position(self, booking_id: EntityId, position: Position) -> VanTrackingRecord: ...

    @abstractmethod
    def get_van_tracking_history(self, booking_id: EntityId) -> List[VanTrackingRecord]:
        """Oldest first."""

    @abstractmethod
    def get_van_position(self, booking_id: EntityId) -> Optional[Position]: ...

    # Diagnostics
    @abstractmethod
    def describe(self) -> Dict[str, Any]: ...

    # Shared read-side assembly. Sequential lookups per listing: fine at this
    # scale, a known limit beyond it.
    def _with_services(self, listing: VanListingRecord) -> VanListingWithServices:
        owner = self.get_user(listing.user_id)
        return VanListingWithServices(
            **listing.model_dump(),
            services=self.get_services_by_van_listing(listing.id),
            user=UserSummary(full_name=owner.full_name if owner else "Unknown"),
            average_rating=self.get_average_rating_for_van_listing(listing.id),
            review_count=len(self.get_reviews_by_van_listing(listing.id)),
        )

    def _with_listing(self, booking: BookingRecord) -> BookingWithListing:
        listing = self._find_listing(booking.van_listing_id)
        if listing is None:
            return BookingWithListing(**booking.model_dump())
        owner = self.get_user(listing.user_id)
        return BookingWithListing(
            **booking.model_dump(),
            van_listing=ListingSummary(
                id=listing.id,
                title=listing.title,
                van_size=listing.van_size,
                hourly_rate=listing.hourly_rate,
                user=UserSummary(full_name=owner.full_name if owner else "Unknown Owner"),
            ),
        )
