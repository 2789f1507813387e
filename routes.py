import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, Iterator, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictBool

import config
from auth import (
    SessionStore, get_optional_user, get_sessions, get_storage, hash_password, login_user, logout_user,
    public_user, require_admin, require_user, verify_password,
)
from database import get_mongo_database, is_connected
from migration import migrate_storage
from mongo_storage import MongoStorage
from schemas import (
    BookingStatus, VanSize, User, UserPublic, UserRecord, VanListing, VanListingRecord, VanListingWithServices,
    VanListingWithDetails, Service, Booking, BookingRecord, BookingWithListing, VanBooking, ListingSummary,
    CustomerSummary, Review, ReviewRecord, Message, MessageWithSender, SenderSummary, Position, VanTrackingRecord,
)
from sql_storage import SqlStorage
from storage import DuplicateError, StorageInterface

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def register_routes(app: FastAPI, storage: Optional[StorageInterface]) -> None:
    """Attach the API to ``app``, bound to the storage chosen at startup."""
    app.state.storage = storage
    app.state.sessions = SessionStore()
    app.include_router(router)


# Auth
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., min_length=2)
    phone: Optional[str] = None
    is_van_owner: bool = False


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


@router.post("/register", status_code=201, response_model=UserPublic)
def register(payload: RegisterRequest, response: Response, storage: StorageInterface = Depends(get_storage),
             sessions: SessionStore = Depends(get_sessions)):
    if storage.get_user_by_email(payload.email):
        raise HTTPException(status_code=400, detail="Email already in use")
    user = User(
        username=payload.username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        full_name=payload.full_name,
        phone=payload.phone,
        is_van_owner=payload.is_van_owner,
    )
    try:
        created = storage.create_user(user)
    except DuplicateError:
        raise HTTPException(status_code=400, detail="Username already in use")
    login_user(response, sessions, created)
    return public_user(created)


@router.post("/login", response_model=UserPublic)
def login(payload: LoginRequest, response: Response, storage: StorageInterface = Depends(get_storage),
          sessions: SessionStore = Depends(get_sessions)):
    user = storage.get_user_by_email(payload.email)
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    login_user(response, sessions, user)
    return public_user(user)


@router.post("/logout")
def logout(request: Request, response: Response, sessions: SessionStore = Depends(get_sessions)):
    logout_user(request, response, sessions)
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=UserPublic)
def me(user: Optional[UserRecord] = Depends(get_optional_user)):
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return public_user(user)


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, storage: StorageInterface = Depends(get_storage)):
    user = storage.get_user_by_email(payload.email)
    if user:
        token = secrets.token_urlsafe(32)
        expires = datetime.now(timezone.utc) + timedelta(hours=config.RESET_TOKEN_TTL_HOURS)
        storage.store_password_reset_token(user.id, token, expires)
        # no mail transport: the link goes to the log
        logger.info("Password reset link: %s/reset-password?token=%s", config.APP_URL, token)
    # identical response whether or not the account exists
    return {"message": "If an account with that email exists, a password reset link has been sent."}


@router.get("/verify-reset-token")
def verify_reset_token(token: Optional[str] = Query(None), storage: StorageInterface = Depends(get_storage)):
    if not token:
        raise HTTPException(status_code=400, detail="Token is required")
    if not storage.verify_password_reset_token(token):
        return JSONResponse(status_code=400, content={"message": "Invalid or expired token", "valid": False})
    return {"valid": True}


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, storage: StorageInterface = Depends(get_storage)):
    user = storage.get_user_by_reset_token(payload.token)
    if user is None:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    storage.update_user_password(user.id, hash_password(payload.password))
    storage.clear_password_reset_token(user.id)
    return {"message": "Password has been reset successfully"}


# Van listings
class VanListingCreate(BaseModel):
    title: str = Field(..., min_length=5)
    description: str = Field(..., min_length=10)
    van_size: VanSize
    hourly_rate: float = Field(..., gt=0)
    location: str = Field(..., min_length=2)
    postcode: str = Field(..., min_length=5)
    image_url: Optional[str] = None
    helpers_count: int = Field(1, ge=0)
    is_available_today: bool = True
    services: List[str] = []


class VanListingUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=5)
    description: Optional[str] = Field(None, min_length=10)
    van_size: Optional[VanSize] = None
    hourly_rate: Optional[float] = Field(None, gt=0)
    location: Optional[str] = Field(None, min_length=2)
    postcode: Optional[str] = Field(None, min_length=5)
    image_url: Optional[str] = None
    helpers_count: Optional[int] = Field(None, ge=0)
    is_available_today: Optional[bool] = None


NULLABLE_LISTING_FIELDS = {"image_url"}


def get_listing_or_404(storage: StorageInterface, listing_id: str) -> VanListingWithDetails:
    listing = storage.get_van_listing(listing_id)
    if listing is None:
        raise HTTPException(status_code=404, detail="Van listing not found")
    return listing


@router.get("/van-listings", response_model=List[VanListingWithServices])
def list_van_listings(storage: StorageInterface = Depends(get_storage)):
    return storage.get_van_listings()


@router.get("/van-listings/search", response_model=List[VanListingWithServices])
def search_van_listings(location: Optional[str] = None, date: Optional[str] = None,
                        van_size: Optional[str] = Query(None, alias="vanSize"),
                        van_size_snake: Optional[str] = Query(None, alias="van_size"),
                        storage: StorageInterface = Depends(get_storage)):
    if not location:
        raise HTTPException(status_code=400, detail="Location is required")
    return storage.search_van_listings(location, date, van_size or van_size_snake)


@router.get("/van-listings/{listing_id}", response_model=VanListingWithDetails)
def get_van_listing(listing_id: str, storage: StorageInterface = Depends(get_storage)):
    return get_listing_or_404(storage, listing_id)


@router.post("/van-listings", status_code=201, response_model=VanListingRecord)
def create_van_listing(payload: VanListingCreate, user: UserRecord = Depends(require_user),
                       storage: StorageInterface = Depends(get_storage)):
    if not (user.is_van_owner or user.is_admin):
        raise HTTPException(status_code=403, detail="Only van owners can create listings")
    data = payload.model_dump(exclude={"services"})
    listing = storage.create_van_listing(VanListing(**data, user_id=user.id))
    for service_name in payload.services:
        storage.add_service(Service(van_listing_id=listing.id, service_name=service_name))
    return listing


@router.patch("/van-listings/{listing_id}", response_model=VanListingRecord)
def update_van_listing(listing_id: str, payload: VanListingUpdate, user: UserRecord = Depends(require_user),
                       storage: StorageInterface = Depends(get_storage)):
    listing = get_listing_or_404(storage, listing_id)
    if listing.user_id != user.id:
        raise HTTPException(status_code=403, detail="You don't have permission to update this listing")
    # only image_url may be cleared; null for any other field means "leave as is"
    patch = {k: v for k, v in payload.model_dump(exclude_unset=True).items()
             if v is not None or k in NULLABLE_LISTING_FIELDS}
    updated = storage.update_van_listing(listing_id, patch)
    if updated is None:
        raise HTTPException(status_code=404, detail="Van listing not found")
    return updated


@router.delete("/van-listings/{listing_id}", status_code=204)
def delete_van_listing(listing_id: str, user: UserRecord = Depends(require_user),
                       storage: StorageInterface = Depends(get_storage)):
    listing = get_listing_or_404(storage, listing_id)
    if listing.user_id != user.id:
        raise HTTPException(status_code=403, detail="You don't have permission to delete this listing")
    storage.delete_van_listing(listing_id)
    return Response(status_code=204)


@router.get("/my-listings", response_model=List[VanListingWithServices])
def my_listings(user: UserRecord = Depends(require_user), storage: StorageInterface = Depends(get_storage)):
    return storage.get_van_listings_by_user(user.id)


# Bookings
class BookingCreate(BaseModel):
    van_listing_id: str
    booking_date: datetime
    duration: int = Field(..., gt=0)
    from_location: str = Field(..., min_length=5)
    to_location: str = Field(..., min_length=5)
    total_price: float = Field(..., gt=0)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


def get_booking_party(storage: StorageInterface, booking_id: str, user: UserRecord, action: str):
    """Booking and listing, provided ``user`` is the customer or the van owner."""
    booking = storage.get_booking(booking_id)
    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    listing = storage.get_van_listing(booking.van_listing_id)
    if listing is None:
        raise HTTPException(status_code=404, detail="Van listing not found")
    if user.id not in (booking.user_id, listing.user_id):
        raise HTTPException(status_code=403, detail=f"You don't have permission to {action}")
    return booking, listing


@router.post("/bookings", status_code=201, response_model=BookingRecord)
def create_booking(payload: BookingCreate, user: UserRecord = Depends(require_user),
                   storage: StorageInterface = Depends(get_storage)):
    get_listing_or_404(storage, payload.van_listing_id)
    # total_price is taken as submitted by the client
    return storage.create_booking(Booking(**payload.model_dump(), user_id=user.id, status="pending"))


@router.get("/my-bookings", response_model=List[BookingWithListing])
def my_bookings(user: UserRecord = Depends(require_user), storage: StorageInterface = Depends(get_storage)):
    return storage.get_bookings_by_user(user.id)


@router.get("/my-van-bookings", response_model=List[VanBooking])
def my_van_bookings(user: UserRecord = Depends(require_user), storage: StorageInterface = Depends(get_storage)):
    result = []
    for listing in storage.get_van_listings_by_user(user.id):
        summary = ListingSummary(id=listing.id, title=listing.title, van_size=listing.van_size,
                                 hourly_rate=listing.hourly_rate)
        for booking in storage.get_bookings_by_van_listing(listing.id):
            customer = storage.get_user(booking.user_id)
            result.append(VanBooking(
                **booking.model_dump(),
                van_listing=summary,
                user=CustomerSummary(full_name=customer.full_name, email=customer.email) if customer else None,
            ))
    return result


@router.patch("/bookings/{booking_id}/status", response_model=BookingRecord)
def update_booking_status(booking_id: str, payload: BookingStatusUpdate, user: UserRecord = Depends(require_user),
                          storage: StorageInterface = Depends(get_storage)):
    get_booking_party(storage, booking_id, user, "update this booking")
    updated = storage.update_booking_status(booking_id, payload.status)
    if updated is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return updated


# Reviews
class ReviewCreate(BaseModel):
    van_listing_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


@router.post("/reviews", status_code=201, response_model=ReviewRecord)
def create_review(payload: ReviewCreate, user: UserRecord = Depends(require_user),
                  storage: StorageInterface = Depends(get_storage)):
    get_listing_or_404(storage, payload.van_listing_id)
    return storage.create_review(Review(**payload.model_dump(), user_id=user.id))


# Messages
class MessageCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    content: str = Field(..., min_length=1)


@router.get("/bookings/{booking_id}/messages", response_model=List[MessageWithSender])
def list_messages(booking_id: str, user: UserRecord = Depends(require_user),
                  storage: StorageInterface = Depends(get_storage)):
    booking, _ = get_booking_party(storage, booking_id, user, "view these messages")
    messages = storage.get_messages_by_booking(booking.id)
    storage.mark_messages_as_read(booking.id, user.id)
    return messages


@router.post("/bookings/{booking_id}/messages", status_code=201, response_model=MessageWithSender)
def send_message(booking_id: str, payload: MessageCreate, user: UserRecord = Depends(require_user),
                 storage: StorageInterface = Depends(get_storage)):
    booking, _ = get_booking_party(storage, booking_id, user, "send messages for this booking")
    message = storage.create_message(Message(booking_id=booking.id, sender_id=user.id, content=payload.content))
    sender = SenderSummary(id=user.id, full_name=user.full_name, is_van_owner=user.is_van_owner)
    return MessageWithSender(**message.model_dump(), sender=sender)


@router.get("/messages/unread-count")
def unread_count(user: UserRecord = Depends(require_user), storage: StorageInterface = Depends(get_storage)):
    return {"count": storage.get_unread_message_count_for_user(user.id)}


# Van tracking
class PositionIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class TrackingUpdate(BaseModel):
    booking_id: str
    position: PositionIn


@router.post("/van-tracking/update", status_code=201, response_model=VanTrackingRecord)
def update_van_position(payload: TrackingUpdate, user: UserRecord = Depends(require_user),
                        storage: StorageInterface = Depends(get_storage)):
    booking = storage.get_booking(payload.booking_id)
    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    listing = storage.get_van_listing(booking.van_listing_id)
    if listing is None or listing.user_id != user.id:
        raise HTTPException(status_code=403, detail="Only the van owner can update the position")
    return storage.update_van_position(booking.id, Position(**payload.position.model_dump()))


@router.get("/van-tracking/{booking_id}/current", response_model=Position)
def current_van_position(booking_id: str, user: UserRecord = Depends(require_user),
                         storage: StorageInterface = Depends(get_storage)):
    booking, _ = get_booking_party(storage, booking_id, user, "view this tracking data")
    position = storage.get_van_position(booking.id)
    if position is None:
        raise HTTPException(status_code=404, detail="No tracking data found for this booking")
    return position


@router.get("/van-tracking/{booking_id}/history", response_model=List[VanTrackingRecord])
def van_tracking_history(booking_id: str, user: UserRecord = Depends(require_user),
                         storage: StorageInterface = Depends(get_storage)):
    booking, _ = get_booking_party(storage, booking_id, user, "view tracking history")
    return storage.get_van_tracking_history(booking.id)


# Admin
class VanOwnerStatusUpdate(BaseModel):
    is_van_owner: StrictBool


class AdminStatusUpdate(BaseModel):
    is_admin: StrictBool


class MigrationRequest(BaseModel):
    migration_secret: str


@contextmanager
def open_migration_stores() -> Iterator[Tuple[StorageInterface, Optional[StorageInterface]]]:
    """Relational source and, when MongoDB answers, the document target.

    Both connections are released when the block exits.
    """
    source = SqlStorage()
    mongo_db = get_mongo_database()
    try:
        source.create_tables()
        target = None
        if is_connected(mongo_db):
            target = MongoStorage(mongo_db)
            target.ensure_indexes()
        yield source, target
    finally:
        source.engine.dispose()
        if mongo_db is not None:
            mongo_db.client.close()


def get_migration_stores() -> Callable[[], ContextManager[Tuple[StorageInterface, Optional[StorageInterface]]]]:
    return open_migration_stores


def get_user_or_404(storage: StorageInterface, user_id: str) -> UserRecord:
    user = storage.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/admin/users", response_model=List[UserPublic])
def admin_users(admin: UserRecord = Depends(require_admin), storage: StorageInterface = Depends(get_storage)):
    return [public_user(u) for u in storage.get_all_users()]


@router.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin: UserRecord = Depends(require_admin),
                      storage: StorageInterface = Depends(get_storage)):
    target = get_user_or_404(storage, user_id)
    if target.id == admin.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if not storage.delete_user(target.id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "User and all associated data deleted successfully"}


@router.patch("/admin/users/{user_id}/van-owner-status", response_model=UserPublic)
def admin_set_van_owner(user_id: str, payload: VanOwnerStatusUpdate, admin: UserRecord = Depends(require_admin),
                        storage: StorageInterface = Depends(get_storage)):
    updated = storage.set_van_owner_status(user_id, payload.is_van_owner)
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(updated)


@router.patch("/admin/users/{user_id}/admin-status", response_model=UserPublic)
def admin_set_admin(user_id: str, payload: AdminStatusUpdate, admin: UserRecord = Depends(require_admin),
                    storage: StorageInterface = Depends(get_storage)):
    target = get_user_or_404(storage, user_id)
    if target.id == admin.id and not payload.is_admin:
        raise HTTPException(status_code=400, detail="You cannot remove your own admin privileges")
    updated = storage.set_admin_status(target.id, payload.is_admin)
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(updated)


@router.post("/admin/migrate")
def admin_migrate(payload: MigrationRequest, admin: UserRecord = Depends(require_admin),
                  open_stores=Depends(get_migration_stores)):
    if not secrets.compare_digest(payload.migration_secret.encode(), config.MIGRATION_SECRET.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
    with open_stores() as (source, target):
        if target is None:
            raise HTTPException(status_code=500, detail="MongoDB is not connected. Cannot perform migration.")
        counts = migrate_storage(source, target)
    return {"message": "Migration completed successfully!", "migrated": counts}
