"""
Seed a fresh deployment.

    python seed.py admin [--password ...]   create or promote the admin account
    python seed.py demo                     load demo owners, listings and reviews
"""
import argparse
import logging

from auth import hash_password
from schemas import User, VanListing, Service, Review
from storage import StorageInterface
from storage_factory import select_storage

logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@example.com"
DEMO_PASSWORD = "password123"

DEMO_OWNERS = [
    {
        "user": dict(username="james_moving", email="james@example.com", full_name="James Smith",
                     phone="+44 7123 456789"),
        "listing": dict(title="James's Moving Service",
                        description="Professional moving service with experienced handlers and a large van "
                                    "suitable for house moves.",
                        van_size="large", hourly_rate=25, location="North London, N1", postcode="N1 9AB",
                        image_url="https://images.unsplash.com/photo-1605152276897-4f618f831968",
                        helpers_count=2, is_available_today=True),
        "services": ["Furniture", "House Moves"],
        "review": (5, "Excellent service, very professional!"),
    },
    {
        "user": dict(username="dave_transport", email="dave@example.com", full_name="Dave Johnson",
                     phone="+44 7234 567890"),
        "listing": dict(title="Dave's Reliable Transport",
                        description="Reliable and affordable transport service for medium-sized moves around "
                                    "South London.",
                        van_size="medium", hourly_rate=22, location="South London, SW4", postcode="SW4 7BC",
                        image_url="https://images.unsplash.com/photo-1566576721346-d4a3b4eaeb55",
                        helpers_count=1, is_available_today=False),
        "services": ["House Moves", "Single Item"],
        "review": (4, "Good service, would use again."),
    },
    {
        "user": dict(username="sarah_movers", email="sarah@example.com", full_name="Sarah Wilson",
                     phone="+44 7345 678901"),
        "listing": dict(title="Sarah's Quick Movers",
                        description="Efficient office relocation service with professional handlers and a "
                                    "large van.",
                        van_size="large", hourly_rate=30, location="East London, E14", postcode="E14 5AB",
                        helpers_count=3, is_available_today=True),
        "services": ["Office Moves", "Furniture"],
        "review": (5, "Amazing service, highly recommend!"),
    },
]

REVIEWS_PER_LISTING = 5


def create_admin(storage: StorageInterface, password: str = "admin123") -> str:
    existing = storage.get_user_by_email(ADMIN_EMAIL)
    if existing:
        if not existing.is_admin:
            storage.set_admin_status(existing.id, True)
            logger.info("Promoted %s to admin", ADMIN_EMAIL)
        else:
            logger.info("Admin %s already exists", ADMIN_EMAIL)
        return existing.id
    admin = storage.create_user(User(
        username="admin",
        email=ADMIN_EMAIL,
        password_hash=hash_password(password),
        full_name="System Administrator",
        is_van_owner=True,
        is_admin=True,
    ))
    logger.info("Created admin %s", ADMIN_EMAIL)
    return admin.id


def initialize_test_data(storage: StorageInterface) -> bool:
    """Load the demo marketplace. Does nothing if any user exists already."""
    if storage.get_all_users():
        logger.info("Store already has users, skipping demo data")
        return False

    password_hash = hash_password(DEMO_PASSWORD)
    listings = []
    for owner in DEMO_OWNERS:
        user = storage.create_user(User(**owner["user"], password_hash=password_hash, is_van_owner=True))
        listing = storage.create_van_listing(VanListing(**owner["listing"], user_id=user.id))
        for name in owner["services"]:
            storage.add_service(Service(van_listing_id=listing.id, service_name=name))
        listings.append((listing, owner["review"]))

    n = 0
    for _ in range(REVIEWS_PER_LISTING):
        for listing, (rating, comment) in listings:
            n += 1
            reviewer = storage.create_user(User(
                username=f"user{n}",
                email=f"user{n}@example.com",
                password_hash=password_hash,
                full_name=f"User {n}",
            ))
            storage.create_review(Review(van_listing_id=listing.id, user_id=reviewer.id,
                                         rating=rating, comment=comment))
    logger.info("Loaded demo data: %d listings, %d reviewers", len(listings), n)
    return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Seed the Man and Van store")
    sub = parser.add_subparsers(dest="command", required=True)
    admin_parser = sub.add_parser("admin", help="create or promote the admin account")
    admin_parser.add_argument("--password", default="admin123")
    sub.add_parser("demo", help="load demo owners, listings and reviews")
    args = parser.parse_args()

    store = select_storage()
    if args.command == "admin":
        create_admin(store, args.password)
    else:
        initialize_test_data(store)
