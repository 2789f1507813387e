"""
Copy the marketplace from one storage backend into another.

Used to move a relational deployment onto MongoDB. Users are matched by
email so re-running does not duplicate accounts; every other entity is
copied with its references rewritten to the ids the target assigned.
"""
import logging
from typing import Dict

from schemas import User, VanListing, Service, Booking, Review, Message
from storage import DuplicateError, StorageError, StorageInterface

logger = logging.getLogger(__name__)


def migrate_storage(source: StorageInterface, target: StorageInterface) -> Dict[str, int]:
    counts = {"users": 0, "van_listings": 0, "services": 0, "bookings": 0, "reviews": 0, "messages": 0}
    logger.info("Starting migration from %s to %s", source.name, target.name)

    user_ids = {}
    for user in source.get_all_users():
        existing = target.get_user_by_email(user.email)
        if existing:
            user_ids[user.id] = existing.id
            logger.info("User %s already exists, skipping", user.email)
            continue
        try:
            created = target.create_user(User(**user.model_dump(include=set(User.model_fields))))
            if user.reset_password_token and user.reset_password_expires:
                target.store_password_reset_token(created.id, user.reset_password_token,
                                                  user.reset_password_expires)
        except (DuplicateError, StorageError) as e:
            logger.error("Could not migrate user %s: %s", user.email, e)
            continue
        user_ids[user.id] = created.id
        counts["users"] += 1

    listing_ids = {}
    for listing in source.get_van_listings():
        owner_id = user_ids.get(listing.user_id)
        if owner_id is None:
            logger.warning("Listing %s has no migrated owner, skipping", listing.id)
            continue
        data = listing.model_dump(include=set(VanListing.model_fields))
        data["user_id"] = owner_id
        try:
            created = target.create_van_listing(VanListing(**data))
        except StorageError as e:
            logger.error("Could not migrate listing %s: %s", listing.id, e)
            continue
        listing_ids[listing.id] = created.id
        counts["van_listings"] += 1
        for service in listing.services:
            try:
                target.add_service(Service(van_listing_id=created.id, service_name=service.service_name))
            except StorageError as e:
                logger.error("Could not migrate service %s: %s", service.id, e)
                continue
            counts["services"] += 1

    booking_ids = {}
    for booking in source.get_all_bookings():
        customer_id = user_ids.get(booking.user_id)
        listing_id = listing_ids.get(booking.van_listing_id)
        if customer_id is None or listing_id is None:
            logger.warning("Booking %s references unmigrated data, skipping", booking.id)
            continue
        data = booking.model_dump(include=set(Booking.model_fields))
        data.update(user_id=customer_id, van_listing_id=listing_id)
        try:
            booking_ids[booking.id] = target.create_booking(Booking(**data)).id
        except StorageError as e:
            logger.error("Could not migrate booking %s: %s", booking.id, e)
            continue
        counts["bookings"] += 1

    for review in source.get_all_reviews():
        author_id = user_ids.get(review.user_id)
        listing_id = listing_ids.get(review.van_listing_id)
        if author_id is None or listing_id is None:
            logger.warning("Review %s references unmigrated data, skipping", review.id)
            continue
        try:
            target.create_review(Review(van_listing_id=listing_id, user_id=author_id,
                                        rating=review.rating, comment=review.comment))
        except StorageError as e:
            logger.error("Could not migrate review %s: %s", review.id, e)
            continue
        counts["reviews"] += 1

    for old_id, new_id in booking_ids.items():
        for message in source.get_messages_by_booking(old_id):
            sender_id = user_ids.get(message.sender_id)
            if sender_id is None:
                continue
            try:
                target.create_message(Message(booking_id=new_id, sender_id=sender_id,
                                              content=message.content, is_read=message.is_read))
            except StorageError as e:
                logger.error("Could not migrate message %s: %s", message.id, e)
                continue
            counts["messages"] += 1

    logger.info("Migration finished: %s", counts)
    return counts
