from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, Float, ForeignKey, DateTime, Text

from database import Base


def _now():
    return datetime.now(timezone.utc)


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    is_van_owner = Column(Boolean, nullable=False, default=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    reset_password_token = Column(String, nullable=True, index=True)
    reset_password_expires = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class VanListingRow(Base):
    __tablename__ = "van_listings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    van_size = Column(String, nullable=False)  # small, medium, large, xl
    hourly_rate = Column(Float, nullable=False)
    location = Column(String, nullable=False)
    postcode = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    helpers_count = Column(Integer, default=1)
    is_available_today = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class ServiceRow(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    van_listing_id = Column(Integer, ForeignKey("van_listings.id"), nullable=False, index=True)
    service_name = Column(String, nullable=False)


class BookingRow(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    van_listing_id = Column(Integer, ForeignKey("van_listings.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_date = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=False)  # hours
    status = Column(String, nullable=False, default="pending")  # pending/confirmed/completed/cancelled
    from_location = Column(String, nullable=False)
    to_location = Column(String, nullable=False)
    total_price = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class ReviewRow(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    van_listing_id = Column(Integer, ForeignKey("van_listings.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)  # 1..5
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class MessageRow(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class VanTrackingRow(Base):
    __tablename__ = "van_tracking"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_now)
