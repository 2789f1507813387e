"""
Man and Van Database Schemas

Each collection model corresponds to a MongoDB collection (lowercased class
name) and to a relational table of the same shape. The ``*Record`` models are
what the storage layer hands back: the collection model plus an opaque string
``id`` and the creation timestamp, whichever backend produced them.
"""
from typing import Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime

# A single identifier type for every entity: integer keys and ObjectIds are
# both converted to strings at the storage boundary.
EntityId = str

VanSize = Literal["small", "medium", "large", "xl"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]


# Users
class User(BaseModel):
    username: str
    email: str
    password_hash: str
    full_name: str
    phone: Optional[str] = None
    is_van_owner: bool = False
    is_admin: bool = False


class UserRecord(User):
    id: EntityId
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    created_at: Optional[datetime] = None


class UserPublic(BaseModel):
    """What leaves the API: no password hash, no reset token."""
    id: EntityId
    username: str
    email: str
    full_name: str
    phone: Optional[str] = None
    is_van_owner: bool = False
    is_admin: bool = False
    created_at: Optional[datetime] = None


# Marketplace domain
class VanListing(BaseModel):
    user_id: EntityId
    title: str
    description: str
    van_size: str  # small, medium, large, xl
    hourly_rate: float
    location: str
    postcode: str
    image_url: Optional[str] = None
    helpers_count: int = 1
    is_available_today: bool = True


class VanListingRecord(VanListing):
    id: EntityId
    created_at: Optional[datetime] = None


class Service(BaseModel):
    van_listing_id: EntityId
    service_name: str  # furniture, house moves, office relocation, single item


class ServiceRecord(Service):
    id: EntityId


class Booking(BaseModel):
    van_listing_id: EntityId
    user_id: EntityId
    booking_date: datetime
    duration: int  # hours
    status: str = "pending"
    from_location: str
    to_location: str
    total_price: float


class BookingRecord(Booking):
    id: EntityId
    created_at: Optional[datetime] = None


class Review(BaseModel):
    van_listing_id: EntityId
    user_id: EntityId
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class ReviewRecord(Review):
    id: EntityId
    created_at: Optional[datetime] = None


class Message(BaseModel):
    booking_id: EntityId
    sender_id: EntityId
    content: str
    is_read: bool = False


class MessageRecord(Message):
    id: EntityId
    created_at: Optional[datetime] = None


class Position(BaseModel):
    lat: float
    lng: float


class VanTracking(BaseModel):
    booking_id: EntityId
    lat: float
    lng: float
    timestamp: datetime


class VanTrackingRecord(VanTracking):
    id: EntityId


# Read-side aggregates
class UserSummary(BaseModel):
    full_name: str


class ReviewWithUser(ReviewRecord):
    user: UserSummary


class VanListingWithServices(VanListingRecord):
    services: List[ServiceRecord] = []
    user: UserSummary
    average_rating: float = 0
    review_count: int = 0


class VanListingWithDetails(VanListingWithServices):
    reviews: List[ReviewWithUser] = []


class ListingSummary(BaseModel):
    id: EntityId
    title: str
    van_size: str
    hourly_rate: float
    user: Optional[UserSummary] = None


class BookingWithListing(BookingRecord):
    van_listing: Optional[ListingSummary] = None


class CustomerSummary(BaseModel):
    full_name: str
    email: str


class VanBooking(BookingWithListing):
    user: Optional[CustomerSummary] = None


class SenderSummary(BaseModel):
    id: EntityId
    full_name: str
    is_van_owner: bool = False


class MessageWithSender(MessageRecord):
    sender: SenderSummary
