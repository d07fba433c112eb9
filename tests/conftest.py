import os

# Must be set before anything under src is imported: the engine binds at import time.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"

from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from src.infrastructure.db.models import Base, Profile, UserAccount
from src.infrastructure.db.session import SessionLocal, engine


@pytest.fixture(autouse=True)
def reset_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def people():
    """Identity and profile records every booking scenario needs."""
    ids = SimpleNamespace(
        client="user-client",
        retiree="user-retiree",
        outsider="user-outsider",
        admin="user-admin",
        inactive="user-inactive",
        unverified="user-unverified",
        client_profile="profile-client",
        retiree_profile="profile-retiree",
        unavailable_profile="profile-retiree-away",
    )

    users = [
        UserAccount(id=ids.client, email="client@example.com", first_name="Dana",
                    last_name="Okafor", status="active", email_verified=True),
        UserAccount(id=ids.retiree, email="retiree@example.com", first_name="Walter",
                    last_name="Brandt", status="active", email_verified=True),
        UserAccount(id=ids.outsider, email="outsider@example.com", first_name="Sam",
                    last_name="Reyes", status="active", email_verified=True),
        UserAccount(id=ids.admin, email="admin@example.com", first_name="Ops",
                    last_name="Admin", status="active", email_verified=True, role="admin"),
        UserAccount(id=ids.inactive, email="inactive@example.com", status="suspended",
                    email_verified=True),
        UserAccount(id=ids.unverified, email="unverified@example.com", status="active",
                    email_verified=False),
    ]
    profiles = [
        Profile(id=ids.client_profile, user_id=ids.client, display_name="Dana Okafor",
                headline="Founder"),
        Profile(id=ids.retiree_profile, user_id=ids.retiree, display_name="Walter Brandt",
                headline="Retired COO", average_rating=Decimal("4.50"), total_reviews=2),
        Profile(id=ids.unavailable_profile, user_id=ids.retiree,
                display_name="Walter Brandt (on leave)", availability_status="unavailable"),
    ]

    session = SessionLocal()
    try:
        session.add_all(users)
        session.flush()
        session.add_all(profiles)
        session.commit()
    finally:
        session.close()

    return ids


@pytest.fixture()
def client():
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client
