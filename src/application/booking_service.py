import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.application.notifications import OutboxNotifier
from src.domain.exceptions import BookingServiceError, ErrorCode, MarketplaceError
from src.domain.state_machine import BookingStateMachine, BookingStatus, UserRole
from src.infrastructure.db.models import Booking
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.directory_repository import (
    ProfileDirectory,
    UserDirectory,
)

logger = logging.getLogger(__name__)

_IN_PROGRESS_STATES = [
    BookingStatus.ACCEPTED,
    BookingStatus.ACTIVE,
    BookingStatus.DELIVERED,
]


class BookingService:
    """
    Application service coordinating the booking workflow.

    Every public operation resolves the actor's role on the booking, applies
    the business rules that sit above the state machine, delegates the write
    to the repository and returns the booking enriched with counterpart
    summaries. Errors leave as ``BookingServiceError`` with a stable code.
    """

    def __init__(
        self,
        db: Session,
        users: Optional[UserDirectory] = None,
        profiles: Optional[ProfileDirectory] = None,
        notifier: Optional[OutboxNotifier] = None,
    ):
        self.db = db
        self.booking_repository = BookingRepository(db)
        self.users = users or UserDirectory(db)
        self.profiles = profiles or ProfileDirectory(db)
        self.notifier = notifier or OutboxNotifier(db)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def create_booking(self, data: Mapping[str, Any], actor_id: str) -> dict:
        with self._service_errors("create booking"):
            client_id = data.get("client_id")
            retiree_id = data.get("retiree_id")

            if not client_id:
                raise BookingServiceError("Client ID is required", ErrorCode.MISSING_CLIENT_ID)
            if client_id != actor_id:
                raise BookingServiceError(
                    "Only clients can create booking requests",
                    ErrorCode.UNAUTHORIZED_CREATION,
                )
            if not retiree_id:
                raise BookingServiceError("Retiree ID is required", ErrorCode.MISSING_RETIREE_ID)
            if client_id == retiree_id:
                raise BookingServiceError(
                    "Client and retiree cannot be the same user",
                    ErrorCode.INVALID_USER_ASSIGNMENT,
                )

            self._check_party(client_id, "Client", ErrorCode.CLIENT_NOT_FOUND,
                              ErrorCode.CLIENT_INACTIVE, ErrorCode.CLIENT_EMAIL_NOT_VERIFIED)
            self._check_party(retiree_id, "Retiree", ErrorCode.RETIREE_NOT_FOUND,
                              ErrorCode.RETIREE_INACTIVE, ErrorCode.RETIREE_EMAIL_NOT_VERIFIED)

            if data.get("client_profile_id"):
                profile = self.profiles.find_profile_by_id(data["client_profile_id"])
                if profile is None or profile.user_id != client_id:
                    raise BookingServiceError(
                        "Invalid client profile",
                        ErrorCode.INVALID_CLIENT_PROFILE,
                    )

            if data.get("retiree_profile_id"):
                profile = self.profiles.find_profile_by_id(data["retiree_profile_id"])
                if profile is None or profile.user_id != retiree_id:
                    raise BookingServiceError(
                        "Invalid retiree profile",
                        ErrorCode.INVALID_RETIREE_PROFILE,
                    )
                if profile.availability_status == "unavailable":
                    raise BookingServiceError(
                        "Retiree is currently unavailable for bookings",
                        ErrorCode.RETIREE_UNAVAILABLE,
                    )

            booking = self.booking_repository.create(data, actor_id)
            self._notify(booking, "booking.created", booking.retiree_id)

        logger.info("Booking %s created by %s", booking.id, actor_id)
        return self._enrich(booking)

    def accept_booking(
        self,
        booking_id: str,
        actor_id: str,
        acceptance: Optional[Mapping[str, Any]] = None,
    ) -> dict:
        acceptance = acceptance or {}
        with self._service_errors("accept booking", booking_id):
            booking = self._load_booking(booking_id)
            if booking.retiree_id != actor_id:
                raise BookingServiceError(
                    "Not authorized to accept this booking",
                    ErrorCode.UNAUTHORIZED_ACCEPTANCE,
                )

            update_data = {
                "retiree_response": acceptance.get("response") or "Booking accepted",
                "agreed_rate": acceptance.get("agreed_rate"),
                "agreed_rate_type": acceptance.get("agreed_rate_type"),
                "terms": acceptance.get("terms"),
            }
            booking = self._transition(
                booking,
                BookingStatus.ACCEPTED,
                actor_id,
                {key: value for key, value in update_data.items() if value is not None},
                "booking.accepted",
            )
        return self._enrich(booking)

    def reject_booking(self, booking_id: str, actor_id: str, reason: Optional[str]) -> dict:
        with self._service_errors("reject booking", booking_id):
            booking = self._load_booking(booking_id)
            if booking.retiree_id != actor_id:
                raise BookingServiceError(
                    "Not authorized to reject this booking",
                    ErrorCode.UNAUTHORIZED_REJECTION,
                )
            if _is_blank(reason):
                raise BookingServiceError(
                    "Rejection reason is required",
                    ErrorCode.MISSING_REJECTION_REASON,
                )

            booking = self._transition(
                booking,
                BookingStatus.REJECTED,
                actor_id,
                {"rejection_reason": reason},
                "booking.rejected",
            )
        return self._enrich(booking)

    def start_booking(self, booking_id: str, actor_id: str) -> dict:
        with self._service_errors("start booking", booking_id):
            booking = self._load_booking(booking_id)
            if self._role_for(booking, actor_id) == UserRole.UNKNOWN:
                raise BookingServiceError(
                    "Not authorized to start this booking",
                    ErrorCode.UNAUTHORIZED_START,
                )

            booking = self._transition(booking, BookingStatus.ACTIVE, actor_id, {}, "booking.started")
        return self._enrich(booking)

    def deliver_booking(
        self,
        booking_id: str,
        actor_id: str,
        delivery: Optional[Mapping[str, Any]] = None,
    ) -> dict:
        delivery = delivery or {}
        with self._service_errors("deliver booking", booking_id):
            booking = self._load_booking(booking_id)
            if booking.retiree_id != actor_id:
                raise BookingServiceError(
                    "Only the retiree can mark booking as delivered",
                    ErrorCode.UNAUTHORIZED_DELIVERY,
                )

            update_data = {
                "delivery_notes": delivery.get("notes") or "",
                "deliverables": delivery.get("deliverables"),
                "next_steps": delivery.get("next_steps"),
            }
            booking = self._transition(
                booking,
                BookingStatus.DELIVERED,
                actor_id,
                {key: value for key, value in update_data.items() if value is not None},
                "booking.delivered",
            )
        return self._enrich(booking)

    def complete_booking(
        self,
        booking_id: str,
        actor_id: str,
        completion: Optional[Mapping[str, Any]] = None,
    ) -> dict:
        completion = completion or {}
        with self._service_errors("complete booking", booking_id):
            booking = self._load_booking(booking_id)
            if booking.client_id != actor_id:
                raise BookingServiceError(
                    "Only the client can complete the booking",
                    ErrorCode.UNAUTHORIZED_COMPLETION,
                )

            fields = (
                "client_rating",
                "retiree_rating",
                "client_feedback",
                "retiree_feedback",
                "final_notes",
            )
            booking = self._transition(
                booking,
                BookingStatus.COMPLETED,
                actor_id,
                {key: completion[key] for key in fields if completion.get(key) is not None},
                "booking.completed",
            )

        if booking.retiree_rating is not None and booking.retiree_profile_id:
            self._update_profile_rating(booking.retiree_profile_id, booking.retiree_rating)
        return self._enrich(booking)

    def cancel_booking(self, booking_id: str, actor_id: str, reason: Optional[str]) -> dict:
        with self._service_errors("cancel booking", booking_id):
            booking = self._load_booking(booking_id)
            if self._role_for(booking, actor_id) == UserRole.UNKNOWN:
                raise BookingServiceError(
                    "Not authorized to cancel this booking",
                    ErrorCode.UNAUTHORIZED_CANCELLATION,
                )
            if _is_blank(reason):
                raise BookingServiceError(
                    "Cancellation reason is required",
                    ErrorCode.MISSING_CANCELLATION_REASON,
                )
            if not BookingStateMachine.can_be_cancelled(booking.status):
                raise BookingServiceError(
                    f"Booking cannot be cancelled once {booking.status.value}",
                    ErrorCode.CANCELLATION_NOT_ALLOWED,
                )

            booking = self._transition(
                booking,
                BookingStatus.CANCELLED,
                actor_id,
                {"cancellation_reason": reason},
                "booking.cancelled",
            )
        return self._enrich(booking)

    def update_booking(self, booking_id: str, patch: Mapping[str, Any], actor_id: str) -> dict:
        with self._service_errors("update booking", booking_id):
            booking = self._load_booking(booking_id)
            if self._role_for(booking, actor_id) == UserRole.UNKNOWN:
                raise BookingServiceError(
                    "Not authorized to update this booking",
                    ErrorCode.UNAUTHORIZED_UPDATE,
                )

            booking = self.booking_repository.update(booking_id, patch, actor_id)
            self._notify(booking, "booking.updated", self._counterpart(booking, actor_id))

        logger.info("Booking %s updated by %s", booking_id, actor_id)
        return self._enrich(booking)

    def delete_booking(self, booking_id: str, actor_id: str) -> dict:
        with self._service_errors("delete booking", booking_id):
            booking = self._load_booking(booking_id)
            actor = self.users.find_user_by_id(actor_id)
            is_admin = actor is not None and actor.role == "admin"

            self.booking_repository.delete(booking_id, actor_id, is_admin=is_admin)
            self._notify(booking, "booking.deleted", self._counterpart(booking, actor_id))

        logger.info("Booking %s deleted by %s", booking_id, actor_id)
        return {"booking_id": booking_id, "deleted": True}

    # -----------------------------
    # Queries
    # -----------------------------
    def get_booking_details(self, booking_id: str, actor_id: str) -> dict:
        with self._service_errors("get booking details", booking_id):
            booking = self._load_booking(booking_id)
            role = self._role_for(booking, actor_id)
            if role == UserRole.UNKNOWN:
                raise BookingServiceError(
                    "Not authorized to view this booking",
                    ErrorCode.UNAUTHORIZED_VIEW,
                )

            requirements = self.booking_repository.get_requirements(booking_id)
            history = self.booking_repository.get_history(booking_id, sort_order="asc")

        return {
            "booking": self._enrich(booking),
            "requirements": [item.to_dict() for item in requirements],
            "history": [entry.to_dict() for entry in history],
            "user_role": role.value,
            "next_possible_states": [
                state.value
                for state in BookingStateMachine.get_next_states_for_role(booking.status, role)
            ],
        }

    def get_booking_history(
        self,
        booking_id: str,
        actor_id: str,
        limit: Optional[int] = 50,
        sort_order: str = "desc",
    ) -> List[dict]:
        with self._service_errors("get booking history", booking_id):
            booking = self._load_booking(booking_id)
            self._require_party(booking, actor_id, ErrorCode.UNAUTHORIZED_VIEW)
            history = self.booking_repository.get_history(booking_id, limit, sort_order)
        return [entry.to_dict() for entry in history]

    def get_available_transitions(self, booking_id: str, actor_id: str) -> dict:
        with self._service_errors("get available transitions", booking_id):
            booking = self._load_booking(booking_id)
            role = self._require_party(booking, actor_id, ErrorCode.UNAUTHORIZED_VIEW)

        status = booking.status
        return {
            "booking_id": booking.id,
            "current_state": status.value,
            "state_description": BookingStateMachine.get_state_description(status),
            "user_role": role.value,
            "available_transitions": [
                {
                    "state": state.value,
                    "description": BookingStateMachine.get_state_description(state),
                }
                for state in BookingStateMachine.get_next_states_for_role(status, role)
            ],
            "is_final_state": BookingStateMachine.is_final_state(status),
            "can_be_cancelled": BookingStateMachine.can_be_cancelled(status),
        }

    def search_bookings(
        self,
        criteria: Optional[Mapping[str, Any]],
        options: Optional[Mapping[str, Any]],
        actor_id: str,
    ) -> dict:
        criteria = {key: value for key, value in (criteria or {}).items() if value not in (None, "", [])}
        with self._service_errors("search bookings"):
            user = self.users.find_user_by_id(actor_id)
            if user is None:
                raise BookingServiceError("User not found", ErrorCode.USER_NOT_FOUND)

            if user.role != "admin":
                for key in ("client_id", "retiree_id", "party_id"):
                    if criteria.get(key) and criteria[key] != actor_id:
                        raise BookingServiceError(
                            "Cannot access other users' bookings",
                            ErrorCode.UNAUTHORIZED_SEARCH,
                        )
                if not criteria.get("client_id") and not criteria.get("retiree_id"):
                    criteria["party_id"] = actor_id

            results = self.booking_repository.find_by_criteria(criteria, options)

        bookings = [self._enrich(booking) for booking in results["bookings"]]
        return {
            "bookings": bookings,
            "pagination": results["pagination"],
            "summary": summarize_bookings(bookings),
        }

    def get_user_booking_stats(self, actor_id: str) -> dict:
        with self._service_errors("get booking stats"):
            user = self.users.find_user_by_id(actor_id)
            if user is None:
                raise BookingServiceError("User not found", ErrorCode.USER_NOT_FOUND)

            return {
                "as_client": self.booking_repository.get_stats({"client_id": actor_id}),
                "as_retiree": self.booking_repository.get_stats({"retiree_id": actor_id}),
                "combined": self.booking_repository.get_stats({"party_id": actor_id}),
            }

    def get_dashboard(self, actor_id: str) -> dict:
        stats = self.get_user_booking_stats(actor_id)
        with self._service_errors("get dashboard"):
            recent = self.booking_repository.find_by_criteria(
                {"party_id": actor_id},
                {"limit": 10, "sort_by": "updated_at", "sort_order": "desc"},
            )
            upcoming = self.booking_repository.find_by_criteria(
                {"party_id": actor_id, "status": _IN_PROGRESS_STATES},
                {"limit": 5, "sort_by": "start_date", "sort_order": "asc"},
            )

        recent_bookings = [self._enrich(booking) for booking in recent["bookings"]]
        return {
            "stats": stats,
            "recent_bookings": recent_bookings,
            "upcoming_bookings": [self._enrich(booking) for booking in upcoming["bookings"]],
            "summary": summarize_bookings(recent_bookings),
        }

    # -----------------------------
    # Requirements
    # -----------------------------
    def add_requirement(self, booking_id: str, actor_id: str, data: Mapping[str, Any]) -> dict:
        with self._service_errors("add requirement", booking_id):
            booking = self._load_booking(booking_id)
            self._require_party(booking, actor_id, ErrorCode.UNAUTHORIZED_UPDATE)
            requirement = self.booking_repository.add_requirement(booking_id, data)
        return requirement.to_dict()

    def get_requirements(self, booking_id: str, actor_id: str) -> List[dict]:
        with self._service_errors("get requirements", booking_id):
            booking = self._load_booking(booking_id)
            self._require_party(booking, actor_id, ErrorCode.UNAUTHORIZED_VIEW)
            requirements = self.booking_repository.get_requirements(booking_id)
        return [item.to_dict() for item in requirements]

    def mark_requirement_met(
        self,
        booking_id: str,
        requirement_id: str,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> dict:
        with self._service_errors("verify requirement", booking_id):
            booking = self._load_booking(booking_id)
            if booking.client_id != actor_id:
                raise BookingServiceError(
                    "Only the client can verify requirements",
                    ErrorCode.UNAUTHORIZED_UPDATE,
                )
            requirement = self.booking_repository.get_requirement(requirement_id)
            if requirement is None or requirement.booking_id != booking_id:
                raise BookingServiceError(
                    "Requirement not found",
                    ErrorCode.REQUIREMENT_NOT_FOUND,
                )
            requirement = self.booking_repository.mark_requirement_met(
                requirement_id,
                actor_id,
                notes,
            )
        return requirement.to_dict()

    # -----------------------------
    # Internals
    # -----------------------------
    @contextmanager
    def _service_errors(self, operation: str, booking_id: Optional[str] = None):
        try:
            yield
        except MarketplaceError as exc:
            logger.warning(
                "Could not %s (booking=%s): [%s] %s",
                operation,
                booking_id,
                exc.code.value,
                exc.message,
            )
            if isinstance(exc, BookingServiceError):
                raise
            raise BookingServiceError.wrap(exc) from exc
        except SQLAlchemyError as exc:
            logger.exception("Storage failure during %s (booking=%s)", operation, booking_id)
            raise BookingServiceError(
                f"Failed to {operation}",
                ErrorCode.STORAGE_FAILURE,
            ) from exc

    def _load_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.find_by_id(booking_id)
        if booking is None:
            raise BookingServiceError("Booking not found", ErrorCode.BOOKING_NOT_FOUND)
        return booking

    def _transition(
        self,
        booking: Booking,
        to_status: BookingStatus,
        actor_id: str,
        update_data: Dict[str, Any],
        event_type: str,
    ) -> Booking:
        previous = booking.status
        booking = self.booking_repository.update_status(
            booking.id,
            to_status,
            actor_id,
            update_data,
            expected_status=previous,
        )
        self._notify(booking, event_type, self._counterpart(booking, actor_id))
        logger.info(
            "Booking %s moved %s -> %s by %s",
            booking.id,
            previous.value,
            booking.status.value,
            actor_id,
        )
        return booking

    def _check_party(
        self,
        user_id: str,
        label: str,
        not_found: ErrorCode,
        inactive: ErrorCode,
        unverified: ErrorCode,
    ) -> None:
        user = self.users.find_user_by_id(user_id)
        if user is None:
            raise BookingServiceError(f"{label} not found", not_found)
        if user.status != "active":
            raise BookingServiceError(f"{label} account is not active", inactive)
        if not user.email_verified:
            raise BookingServiceError(f"{label} email must be verified", unverified)

    @staticmethod
    def _role_for(booking: Booking, actor_id: str) -> UserRole:
        return BookingStateMachine.get_user_role_for_booking(booking, actor_id)

    def _require_party(self, booking: Booking, actor_id: str, code: ErrorCode) -> UserRole:
        role = self._role_for(booking, actor_id)
        if role == UserRole.UNKNOWN:
            raise BookingServiceError("Not a party to this booking", code)
        return role

    @staticmethod
    def _counterpart(booking: Booking, actor_id: str) -> Optional[str]:
        if actor_id == booking.client_id:
            return booking.retiree_id
        if actor_id == booking.retiree_id:
            return booking.client_id
        return None

    def _notify(self, booking: Booking, event_type: str, recipient_id: Optional[str]) -> None:
        # A failed outbox write rolls back to this savepoint only.
        try:
            with self.db.begin_nested():
                self.notifier.notify(booking, event_type, recipient_id)
                self.db.flush()
        except Exception:
            logger.exception("Failed to queue %s for booking %s", event_type, booking.id)

    def _update_profile_rating(self, profile_id: str, rating: int) -> None:
        try:
            with self.db.begin_nested():
                profile = self.profiles.find_profile_by_id(profile_id)
                if profile is None:
                    logger.warning("Profile %s not found; rating not recorded", profile_id)
                    return

                current_rating = Decimal(profile.average_rating or 0)
                current_reviews = profile.total_reviews or 0
                total_reviews = current_reviews + 1
                average = (current_rating * current_reviews + rating) / total_reviews

                self.profiles.update_profile(
                    profile_id,
                    {
                        "average_rating": average.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
                        "total_reviews": total_reviews,
                    },
                )
        except Exception:
            logger.exception("Error updating rating for profile %s", profile_id)

    def _enrich(self, booking: Booking) -> dict:
        data = booking.to_dict()
        data["state_description"] = BookingStateMachine.get_state_description(booking.status)
        data["is_final_state"] = BookingStateMachine.is_final_state(booking.status)
        data["can_be_cancelled"] = BookingStateMachine.can_be_cancelled(booking.status)

        try:
            data["client"] = _user_summary(self.users.find_user_by_id(booking.client_id))
            data["retiree"] = _user_summary(self.users.find_user_by_id(booking.retiree_id))
            data["client_profile"] = _profile_summary(
                self.profiles.find_profile_by_id(booking.client_profile_id)
            )
            retiree_profile = self.profiles.find_profile_by_id(booking.retiree_profile_id)
            data["retiree_profile"] = _profile_summary(retiree_profile)
            if retiree_profile is not None:
                data["retiree_profile"]["average_rating"] = retiree_profile.average_rating
                data["retiree_profile"]["total_reviews"] = retiree_profile.total_reviews
        except Exception:
            logger.exception("Error enriching booking %s", booking.id)
        return data


def summarize_bookings(bookings: List[dict]) -> dict:
    """Aggregate view over an already-fetched page of enriched bookings."""
    summary = {
        "total": len(bookings),
        "by_status": {},
        "by_engagement_type": {},
        "upcoming": 0,
        "overdue": 0,
        "total_value": Decimal("0"),
    }
    now = datetime.now(timezone.utc)
    closed = {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value}

    for booking in bookings:
        status = booking["status"]
        summary["by_status"][status] = summary["by_status"].get(status, 0) + 1
        engagement_type = booking["engagement_type"]
        summary["by_engagement_type"][engagement_type] = (
            summary["by_engagement_type"].get(engagement_type, 0) + 1
        )

        start_date = booking.get("start_date")
        if start_date and start_date > now and status not in closed:
            summary["upcoming"] += 1

        end_date = booking.get("end_date")
        if end_date and end_date < now and status == BookingStatus.ACTIVE.value:
            summary["overdue"] += 1

        if booking.get("agreed_rate") is not None and booking.get("estimated_hours"):
            summary["total_value"] += Decimal(booking["agreed_rate"]) * booking["estimated_hours"]

    return summary


def _user_summary(user) -> Optional[dict]:
    if user is None:
        return None
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "email_verified": user.email_verified,
    }


def _profile_summary(profile) -> Optional[dict]:
    if profile is None:
        return None
    return {
        "id": profile.id,
        "display_name": profile.display_name,
        "headline": profile.headline,
        "profile_photo_url": profile.profile_photo_url,
    }


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()
