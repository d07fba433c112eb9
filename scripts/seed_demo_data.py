from decimal import Decimal

from sqlalchemy import select

from src.infrastructure.db.models import Base, Profile, UserAccount
from src.infrastructure.db.session import engine, get_db_session


DEMO_USERS = [
    {
        "id": "11111111-1111-4111-8111-111111111111",
        "email": "founder@example.com",
        "first_name": "Dana",
        "last_name": "Okafor",
        "role": "user",
        "profile": {
            "id": "aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa",
            "display_name": "Dana Okafor",
            "headline": "Founder, early-stage logistics startup",
        },
    },
    {
        "id": "22222222-2222-4222-8222-222222222222",
        "email": "advisor@example.com",
        "first_name": "Walter",
        "last_name": "Brandt",
        "role": "user",
        "profile": {
            "id": "bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb",
            "display_name": "Walter Brandt",
            "headline": "Retired COO, 30 years in supply chain operations",
            "average_rating": Decimal("4.50"),
            "total_reviews": 2,
        },
    },
    {
        "id": "33333333-3333-4333-8333-333333333333",
        "email": "ops@example.com",
        "first_name": "Marketplace",
        "last_name": "Admin",
        "role": "admin",
        "profile": None,
    },
]


def seed_users(db) -> None:
    for item in DEMO_USERS:
        user = db.execute(
            select(UserAccount).where(UserAccount.id == item["id"])
        ).scalar_one_or_none()
        if user is None:
            user = UserAccount(id=item["id"], email=item["email"])
            db.add(user)

        user.first_name = item["first_name"]
        user.last_name = item["last_name"]
        user.role = item["role"]
        user.status = "active"
        user.email_verified = True
        db.flush()

        profile_data = item["profile"]
        if profile_data is None:
            continue

        profile = db.execute(
            select(Profile).where(Profile.id == profile_data["id"])
        ).scalar_one_or_none()
        if profile is None:
            profile = Profile(id=profile_data["id"], user_id=item["id"])
            db.add(profile)

        profile.display_name = profile_data["display_name"]
        profile.headline = profile_data["headline"]
        profile.availability_status = "available"
        profile.average_rating = profile_data.get("average_rating", Decimal("0.00"))
        profile.total_reviews = profile_data.get("total_reviews", 0)


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        seed_users(db)
    print("Seed complete: demo client, retiree and admin accounts added.")


if __name__ == "__main__":
    main()
