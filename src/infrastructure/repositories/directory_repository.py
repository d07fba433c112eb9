# src/infrastructure/repositories/directory_repository.py

from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.infrastructure.db.models import Profile, UserAccount


class UserDirectory:
    """Read-only view over the identity directory."""

    def __init__(self, db: Session):
        self.db = db

    def find_user_by_id(
        self,
        user_id: str,
    ) -> UserAccount | None:

        if not user_id:
            return None
        stmt = select(UserAccount).where(UserAccount.id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()


class ProfileDirectory:

    _UPDATABLE = frozenset({"average_rating", "total_reviews", "availability_status"})

    def __init__(self, db: Session):
        self.db = db

    def find_profile_by_id(
        self,
        profile_id: str,
    ) -> Profile | None:

        if not profile_id:
            return None
        stmt = select(Profile).where(Profile.id == profile_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def update_profile(
        self,
        profile_id: str,
        patch: Mapping[str, Any],
    ) -> Profile | None:
        profile = self.db.execute(
            select(Profile).where(Profile.id == profile_id).with_for_update()
        ).scalar_one_or_none()
        if profile is None:
            return None

        for key, value in patch.items():
            if key not in self._UPDATABLE:
                raise ValueError(f"Profile field {key} is not writable here")
            setattr(profile, key, value)

        self.db.flush()
        return profile
