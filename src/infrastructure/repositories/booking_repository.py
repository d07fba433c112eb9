# src/infrastructure/repositories/booking_repository.py

import os
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
from uuid import uuid4

from pydantic_core import to_jsonable_python
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.domain.exceptions import BookingError, ErrorCode
from src.domain.state_machine import BookingStateMachine, BookingStatus, UserRole
from src.infrastructure.db.models import (
    Booking,
    BookingHistory,
    BookingRequirement,
    as_utc,
    utc_now,
)


SEARCH_DEFAULT_LIMIT = int(os.getenv("BOOKING_SEARCH_DEFAULT_LIMIT", "20"))
SEARCH_MAX_LIMIT = int(os.getenv("BOOKING_SEARCH_MAX_LIMIT", "100"))
HISTORY_MAX_LIMIT = int(os.getenv("BOOKING_HISTORY_MAX_LIMIT", "100"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

ENGAGEMENT_TYPES = frozenset({"freelance", "consulting", "project", "keynote", "mentoring"})
URGENCY_LEVELS = frozenset({"low", "normal", "high", "urgent"})
RATE_TYPES = frozenset({"hourly", "project", "daily", "weekly"})
REQUIREMENT_TYPES = frozenset(
    {"skill", "experience", "certification", "tool", "deliverable", "other"}
)
HISTORY_EVENT_TYPES = frozenset({"status_change", "booking_update", "booking_deleted"})

TITLE_LENGTH = (5, 200)
DESCRIPTION_LENGTH = (10, 5000)

_CLIENT_FIELDS = frozenset(
    {
        "title",
        "description",
        "client_message",
        "proposed_rate",
        "proposed_rate_type",
        "start_date",
        "end_date",
        "estimated_hours",
        "urgency_level",
    }
)
_RETIREE_FIELDS = frozenset({"retiree_response"})
_SHARED_FIELDS = frozenset({"location", "remote_work", "flexible_timing"})

# Non-status fields each role may patch. Agreed rate is only written by
# acceptance and feedback only by completion.
UPDATABLE_FIELDS: Dict[UserRole, FrozenSet[str]] = {
    UserRole.CLIENT: _CLIENT_FIELDS | _SHARED_FIELDS,
    UserRole.RETIREE: _RETIREE_FIELDS | _SHARED_FIELDS,
    UserRole.ADMIN: frozenset(),
    UserRole.SYSTEM: frozenset(),
    UserRole.UNKNOWN: frozenset(),
}

SORTABLE_COLUMNS = {
    "created_at": Booking.created_at,
    "updated_at": Booking.updated_at,
    "start_date": Booking.start_date,
    "end_date": Booking.end_date,
    "status_changed_at": Booking.status_changed_at,
    "title": Booking.title,
    "status": Booking.status,
    "urgency_level": Booking.urgency_level,
    "proposed_rate": Booking.proposed_rate,
    "agreed_rate": Booking.agreed_rate,
}

_DELETABLE_STATES = frozenset({BookingStatus.REQUEST, BookingStatus.PENDING})
_CENT = Decimal("0.01")


class BookingRepository:
    """
    Persistence for bookings, their requirements and the append-only
    history log. Callers own the transaction; every write here is flushed
    so the status change and its history row commit or roll back together.
    """

    def __init__(self, db: Session):
        self.db = db

    # -----------------------------
    # Reads
    # -----------------------------
    def find_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(
            Booking.id == booking_id,
            Booking.deleted_at.is_(None),
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def find_by_criteria(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> dict:
        criteria = criteria or {}
        options = options or {}

        sort_by = options.get("sort_by") or "created_at"
        sort_order = (options.get("sort_order") or "desc").lower()
        if sort_by not in SORTABLE_COLUMNS:
            raise BookingError(
                f"Cannot sort bookings by {sort_by}",
                ErrorCode.INVALID_SEARCH_OPTIONS,
            )
        if sort_order not in ("asc", "desc"):
            raise BookingError(
                f"Invalid sort order {sort_order}",
                ErrorCode.INVALID_SEARCH_OPTIONS,
            )

        limit = _bounded_int(options.get("limit"), SEARCH_DEFAULT_LIMIT, 1, SEARCH_MAX_LIMIT)
        offset = _bounded_int(options.get("offset"), 0, 0, None)

        conditions = _criteria_conditions(criteria)

        total = self.db.execute(
            select(func.count()).select_from(Booking).where(*conditions)
        ).scalar_one()

        column = SORTABLE_COLUMNS[sort_by]
        ordering = (
            (column.asc(), Booking.id.asc())
            if sort_order == "asc"
            else (column.desc(), Booking.id.desc())
        )
        stmt = (
            select(Booking)
            .where(*conditions)
            .order_by(*ordering)
            .offset(offset)
            .limit(limit)
        )
        bookings = list(self.db.execute(stmt).scalars().all())

        return {
            "bookings": bookings,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + limit < total,
            },
        }

    def get_stats(self, criteria: Optional[Mapping[str, Any]] = None) -> dict:
        """
        Counts by status and engagement type. Value and average rate only
        consider bookings that carry an agreed rate.
        """
        conditions = _criteria_conditions(criteria or {})

        by_status = {
            status.value: count
            for status, count in self.db.execute(
                select(Booking.status, func.count())
                .where(*conditions)
                .group_by(Booking.status)
            ).all()
        }
        by_engagement_type = dict(
            self.db.execute(
                select(Booking.engagement_type, func.count())
                .where(*conditions)
                .group_by(Booking.engagement_type)
            ).all()
        )

        rated = self.db.execute(
            select(Booking.agreed_rate, Booking.estimated_hours).where(
                *conditions,
                Booking.agreed_rate.is_not(None),
            )
        ).all()

        total_value = Decimal("0")
        rate_sum = Decimal("0")
        for rate, hours in rated:
            rate = Decimal(rate)
            rate_sum += rate
            total_value += rate * hours if hours else rate

        average_rate = rate_sum / len(rated) if rated else Decimal("0")

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_engagement_type": by_engagement_type,
            "total_value": total_value.quantize(_CENT, rounding=ROUND_HALF_UP),
            "average_rate": average_rate.quantize(_CENT, rounding=ROUND_HALF_UP),
        }

    # -----------------------------
    # Writes
    # -----------------------------
    def create(self, data: Mapping[str, Any], actor_id: str) -> Booking:
        client_id = data.get("client_id")
        retiree_id = data.get("retiree_id")
        title = _clean_text(data.get("title"))
        description = _clean_text(data.get("description"))

        if not client_id:
            raise BookingError("Client ID is required", ErrorCode.MISSING_CLIENT_ID)
        if not retiree_id:
            raise BookingError("Retiree ID is required", ErrorCode.MISSING_RETIREE_ID)
        if not title:
            raise BookingError("Title is required", ErrorCode.MISSING_TITLE)
        if not description:
            raise BookingError("Description is required", ErrorCode.MISSING_DESCRIPTION)
        if client_id == retiree_id:
            raise BookingError(
                "Client and retiree cannot be the same user",
                ErrorCode.INVALID_USER_ASSIGNMENT,
            )

        _check_length(title, TITLE_LENGTH, "Title", ErrorCode.INVALID_TITLE_LENGTH)
        _check_length(
            description,
            DESCRIPTION_LENGTH,
            "Description",
            ErrorCode.INVALID_DESCRIPTION_LENGTH,
        )

        engagement_type = data.get("engagement_type") or "freelance"
        if engagement_type not in ENGAGEMENT_TYPES:
            raise BookingError("Invalid engagement type", ErrorCode.INVALID_ENGAGEMENT_TYPE)

        start_date = _parse_date(data.get("start_date"))
        end_date = _parse_date(data.get("end_date"))
        _check_date_range(start_date, end_date)

        requirements = [
            _requirement_fields(item) for item in (data.get("requirements") or [])
        ]

        initial_state = BookingStateMachine.get_initial_state()
        now = utc_now()
        booking = Booking(
            id=str(uuid4()),
            client_id=client_id,
            retiree_id=retiree_id,
            client_profile_id=data.get("client_profile_id"),
            retiree_profile_id=data.get("retiree_profile_id"),
            title=title,
            description=description,
            service_category=_clean_text(data.get("service_category")),
            engagement_type=engagement_type,
            status=initial_state,
            status_changed_at=now,
            status_changed_by=actor_id,
            proposed_rate=_parse_rate(data.get("proposed_rate")),
            proposed_rate_type=_parse_rate_type(data.get("proposed_rate_type")) or "hourly",
            currency=(data.get("currency") or DEFAULT_CURRENCY).upper(),
            start_date=start_date,
            end_date=end_date,
            estimated_hours=_parse_int(data.get("estimated_hours")),
            flexible_timing=bool(data.get("flexible_timing", False)),
            timezone=data.get("timezone") or "UTC",
            client_message=_clean_text(data.get("client_message")),
            urgency_level=_urgency_level(data.get("urgency_level")),
            remote_work=data.get("remote_work") is not False,
            location=_clean_text(data.get("location")),
            payment_status="pending",
        )
        self.db.add(booking)
        # Parent row first; child tables reference it.
        self.db.flush()

        self._append_history(
            booking,
            event_type="status_change",
            from_status=None,
            to_status=initial_state.value,
            event_title="Booking created",
            event_description=BookingStateMachine.get_state_description(initial_state),
            actor_id=actor_id,
            actor_role=BookingStateMachine.get_user_role_for_booking(booking, actor_id),
        )

        for fields in requirements:
            self.db.add(BookingRequirement(booking_id=booking.id, **fields))

        self.db.flush()
        return booking

    def update(
        self,
        booking_id: str,
        patch: Mapping[str, Any],
        actor_id: str,
    ) -> Booking:
        booking = self._get_for_update(booking_id)

        role = BookingStateMachine.get_user_role_for_booking(booking, actor_id)
        if role == UserRole.UNKNOWN:
            raise BookingError("User not authorized for this booking", ErrorCode.UNAUTHORIZED)

        allowed = UPDATABLE_FIELDS[role]
        filtered = {key: value for key, value in patch.items() if key in allowed}
        if not filtered:
            raise BookingError("No valid fields to update", ErrorCode.NO_VALID_UPDATES)

        changes = _validate_update(filtered)

        if "title" in changes:
            _check_length(changes["title"], TITLE_LENGTH, "Title", ErrorCode.INVALID_TITLE_LENGTH)
        if "description" in changes:
            _check_length(
                changes["description"],
                DESCRIPTION_LENGTH,
                "Description",
                ErrorCode.INVALID_DESCRIPTION_LENGTH,
            )
        _check_date_range(
            changes.get("start_date", as_utc(booking.start_date)),
            changes.get("end_date", as_utc(booking.end_date)),
        )

        for key, value in changes.items():
            setattr(booking, key, value)

        updated_fields = sorted(changes)
        self._append_history(
            booking,
            event_type="booking_update",
            event_title="Booking details updated",
            event_description=f"Updated fields: {', '.join(updated_fields)}",
            actor_id=actor_id,
            actor_role=role,
            metadata={"updated_fields": updated_fields, "changes": changes},
        )
        self._flush()
        return booking

    def update_status(
        self,
        booking_id: str,
        new_status: BookingStatus,
        actor_id: str,
        update_data: Optional[Mapping[str, Any]] = None,
        expected_status: Optional[BookingStatus] = None,
    ) -> Booking:
        """
        The only path that changes ``status``. Re-validates the move against
        the freshly locked row and appends exactly one history entry. Nothing
        is written when validation fails.
        """
        update_data = dict(update_data or {})
        booking = self._get_for_update(booking_id)

        if expected_status is not None and booking.status != expected_status:
            raise BookingError(
                f"Booking moved to {booking.status.value} while "
                f"{expected_status.value} was expected",
                ErrorCode.CONCURRENT_MODIFICATION,
            )

        role = BookingStateMachine.get_user_role_for_booking(booking, actor_id)
        validation = BookingStateMachine.validate_transition(
            booking.status,
            new_status,
            role,
            {**booking.to_dict(), **update_data},
        )
        if not validation.success:
            raise BookingError(validation.error, validation.code)

        new_status = BookingStatus(new_status)
        changes = _status_changes(booking, new_status, update_data)

        previous_status = booking.status
        now = utc_now()
        for key, value in changes.items():
            setattr(booking, key, value)
        booking.status = new_status
        booking.status_changed_at = now
        booking.status_changed_by = actor_id

        self._append_history(
            booking,
            event_type="status_change",
            from_status=previous_status.value,
            to_status=new_status.value,
            event_title=f"Booking {new_status.value}",
            event_description=validation.description,
            actor_id=actor_id,
            actor_role=role,
            metadata=update_data,
        )
        self._flush()
        return booking

    def delete(
        self,
        booking_id: str,
        actor_id: str,
        is_admin: bool = False,
    ) -> bool:
        booking = self._get_for_update(booking_id)

        role = (
            UserRole.ADMIN
            if is_admin
            else BookingStateMachine.get_user_role_for_booking(booking, actor_id)
        )
        if role not in (UserRole.ADMIN, UserRole.CLIENT):
            raise BookingError(
                "Only the client or an administrator may delete a booking",
                ErrorCode.UNAUTHORIZED_DELETION,
            )
        if role == UserRole.CLIENT and booking.status not in _DELETABLE_STATES:
            raise BookingError(
                f"Cannot delete booking in {booking.status.value} state",
                ErrorCode.DELETION_NOT_ALLOWED,
            )

        now = utc_now()
        booking.deleted_at = now
        requirements = self.db.execute(
            select(BookingRequirement).where(
                BookingRequirement.booking_id == booking.id,
                BookingRequirement.deleted_at.is_(None),
            )
        ).scalars()
        for requirement in requirements:
            requirement.deleted_at = now

        self._append_history(
            booking,
            event_type="booking_deleted",
            event_title="Booking deleted",
            event_description="Booking was deleted",
            actor_id=actor_id,
            actor_role=role,
        )
        self._flush()
        return True

    # -----------------------------
    # Requirements
    # -----------------------------
    def add_requirement(
        self,
        booking_id: str,
        data: Mapping[str, Any],
    ) -> BookingRequirement:
        booking = self.find_by_id(booking_id)
        if booking is None:
            raise BookingError("Booking not found", ErrorCode.BOOKING_NOT_FOUND)

        requirement = BookingRequirement(booking_id=booking.id, **_requirement_fields(data))
        self.db.add(requirement)
        self.db.flush()
        return requirement

    def get_requirements(self, booking_id: str) -> List[BookingRequirement]:
        stmt = (
            select(BookingRequirement)
            .where(
                BookingRequirement.booking_id == booking_id,
                BookingRequirement.deleted_at.is_(None),
            )
            .order_by(
                BookingRequirement.priority.asc(),
                BookingRequirement.created_at.asc(),
                BookingRequirement.id.asc(),
            )
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_requirement(self, requirement_id: str) -> BookingRequirement | None:
        stmt = (
            select(BookingRequirement)
            .join(Booking, Booking.id == BookingRequirement.booking_id)
            .where(
                BookingRequirement.id == requirement_id,
                BookingRequirement.deleted_at.is_(None),
                Booking.deleted_at.is_(None),
            )
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def mark_requirement_met(
        self,
        requirement_id: str,
        verifier_id: str,
        notes: Optional[str] = None,
    ) -> BookingRequirement:
        requirement = self.get_requirement(requirement_id)
        if requirement is None:
            raise BookingError("Requirement not found", ErrorCode.REQUIREMENT_NOT_FOUND)

        requirement.is_met = True
        requirement.met_at = utc_now()
        requirement.verified_by = verifier_id
        requirement.verification_notes = _clean_text(notes)
        self.db.flush()
        return requirement

    # -----------------------------
    # History
    # -----------------------------
    def add_history_entry(
        self,
        booking_id: str,
        event_type: str,
        event_title: str,
        actor_id: Optional[str],
        actor_role: UserRole = UserRole.UNKNOWN,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        event_description: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> BookingHistory:
        booking = self.find_by_id(booking_id)
        if booking is None:
            raise BookingError("Booking not found", ErrorCode.BOOKING_NOT_FOUND)

        entry = self._append_history(
            booking,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            event_title=event_title,
            event_description=event_description,
            actor_id=actor_id,
            actor_role=actor_role,
            metadata=metadata,
        )
        self.db.flush()
        return entry

    def get_history(
        self,
        booking_id: str,
        limit: Optional[int] = None,
        sort_order: str = "desc",
    ) -> List[BookingHistory]:
        sort_order = (sort_order or "desc").lower()
        if sort_order not in ("asc", "desc"):
            raise BookingError(
                f"Invalid sort order {sort_order}",
                ErrorCode.INVALID_SEARCH_OPTIONS,
            )

        if sort_order == "asc":
            ordering = (BookingHistory.created_at.asc(), BookingHistory.id.asc())
        else:
            ordering = (BookingHistory.created_at.desc(), BookingHistory.id.desc())

        stmt = (
            select(BookingHistory)
            .where(BookingHistory.booking_id == booking_id)
            .order_by(*ordering)
        )
        if limit is not None:
            stmt = stmt.limit(_bounded_int(limit, HISTORY_MAX_LIMIT, 1, HISTORY_MAX_LIMIT))
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Internals
    # -----------------------------
    def _get_for_update(self, booking_id: str) -> Booking:
        stmt = (
            select(Booking)
            .where(
                Booking.id == booking_id,
                Booking.deleted_at.is_(None),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = self.db.execute(stmt).scalar_one_or_none()
        if booking is None:
            raise BookingError("Booking not found", ErrorCode.BOOKING_NOT_FOUND)
        return booking

    def _append_history(
        self,
        booking: Booking,
        event_type: str,
        event_title: str,
        actor_id: Optional[str],
        actor_role: UserRole,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        event_description: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> BookingHistory:
        if event_type not in HISTORY_EVENT_TYPES:
            raise BookingError(
                f"Unknown history event type {event_type}",
                ErrorCode.MISSING_REQUIRED_FIELDS,
            )

        entry = BookingHistory(
            booking_id=booking.id,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            event_title=event_title,
            event_description=event_description or "",
            actor_id=actor_id,
            actor_role=UserRole(actor_role).value,
            event_metadata=to_jsonable_python(dict(metadata or {})),
            created_at=utc_now(),
        )
        self.db.add(entry)
        return entry

    def _flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as exc:
            raise BookingError(
                "Booking was modified by another request",
                ErrorCode.CONCURRENT_MODIFICATION,
            ) from exc


# -----------------------------
# Validation helpers
# -----------------------------
def _criteria_conditions(criteria: Mapping[str, Any]) -> list:
    conditions = [Booking.deleted_at.is_(None)]

    if criteria.get("client_id"):
        conditions.append(Booking.client_id == criteria["client_id"])
    if criteria.get("retiree_id"):
        conditions.append(Booking.retiree_id == criteria["retiree_id"])
    if criteria.get("party_id"):
        party_id = criteria["party_id"]
        conditions.append(
            or_(Booking.client_id == party_id, Booking.retiree_id == party_id)
        )

    statuses = criteria.get("status")
    if statuses:
        if isinstance(statuses, (str, BookingStatus)):
            statuses = [statuses]
        conditions.append(Booking.status.in_(_parse_statuses(statuses)))

    if criteria.get("engagement_type"):
        conditions.append(Booking.engagement_type == criteria["engagement_type"])
    if criteria.get("service_category"):
        conditions.append(Booking.service_category == criteria["service_category"])

    start_date = _parse_date(criteria.get("start_date"))
    if start_date is not None:
        conditions.append(Booking.start_date >= start_date)
    end_date = _parse_date(criteria.get("end_date"))
    if end_date is not None:
        conditions.append(Booking.end_date <= end_date)

    return conditions


def _parse_statuses(values: Iterable[Any]) -> List[BookingStatus]:
    parsed = []
    for value in values:
        try:
            parsed.append(BookingStatus(value))
        except ValueError as exc:
            raise BookingError(
                f"Unknown booking status {value}",
                ErrorCode.INVALID_SEARCH_OPTIONS,
            ) from exc
    return parsed


def _bounded_int(
    value: Any,
    default: int,
    lower: int,
    upper: Optional[int],
) -> int:
    if value is None or value == "":
        number = default
    else:
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise BookingError(
                f"Expected an integer, got {value!r}",
                ErrorCode.INVALID_SEARCH_OPTIONS,
            ) from exc
    number = max(lower, number)
    if upper is not None:
        number = min(upper, number)
    return number


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return value.strip()


def _check_length(value: str, bounds: tuple, label: str, code: ErrorCode) -> None:
    lower, upper = bounds
    if not lower <= len(value) <= upper:
        raise BookingError(
            f"{label} must be between {lower} and {upper} characters",
            code,
        )


def _parse_rate(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise BookingError("Invalid rate value", ErrorCode.INVALID_RATE)
    try:
        rate = Decimal(str(value))
    except InvalidOperation as exc:
        raise BookingError("Invalid rate value", ErrorCode.INVALID_RATE) from exc
    if not rate.is_finite() or rate < 0:
        raise BookingError("Invalid rate value", ErrorCode.INVALID_RATE)
    return rate.quantize(_CENT, rounding=ROUND_HALF_UP)


def _parse_rate_type(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if value not in RATE_TYPES:
        raise BookingError(f"Invalid rate type {value}", ErrorCode.INVALID_RATE_TYPE)
    return value


def _parse_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError as exc:
            raise BookingError("Invalid date format", ErrorCode.INVALID_DATE) from exc
    raise BookingError("Invalid date format", ErrorCode.INVALID_DATE)


def _check_date_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and start > end:
        raise BookingError("Start date cannot be after end date", ErrorCode.INVALID_DATE_RANGE)


def _urgency_level(value: Any) -> str:
    return value if value in URGENCY_LEVELS else "normal"


def _parse_rating(value: Any, label: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise BookingError(f"{label} must be an integer from 1 to 5", ErrorCode.INVALID_RATING)
    try:
        rating = Decimal(str(value))
    except InvalidOperation as exc:
        raise BookingError(
            f"{label} must be an integer from 1 to 5",
            ErrorCode.INVALID_RATING,
        ) from exc
    if rating != rating.to_integral_value() or not 1 <= rating <= 5:
        raise BookingError(f"{label} must be an integer from 1 to 5", ErrorCode.INVALID_RATING)
    return int(rating)


def _validate_update(fields: Mapping[str, Any]) -> Dict[str, Any]:
    validated: Dict[str, Any] = {}
    for key, value in fields.items():
        if key in ("title", "description"):
            text = _clean_text(value)
            if not text:
                code = ErrorCode.MISSING_TITLE if key == "title" else ErrorCode.MISSING_DESCRIPTION
                raise BookingError(f"{key.capitalize()} is required", code)
            validated[key] = text
        elif key in ("client_message", "retiree_response", "location"):
            validated[key] = _clean_text(value)
        elif key == "proposed_rate":
            validated[key] = _parse_rate(value)
        elif key == "proposed_rate_type":
            validated[key] = _parse_rate_type(value) or "hourly"
        elif key == "estimated_hours":
            validated[key] = _parse_int(value)
        elif key in ("start_date", "end_date"):
            validated[key] = _parse_date(value)
        elif key == "urgency_level":
            validated[key] = _urgency_level(value)
        elif key in ("remote_work", "flexible_timing"):
            validated[key] = bool(value)
        else:
            validated[key] = value
    return validated


def _status_changes(
    booking: Booking,
    new_status: BookingStatus,
    data: Mapping[str, Any],
) -> Dict[str, Any]:
    """Field stamps that accompany entering ``new_status``, validated up front."""
    now = utc_now()
    changes: Dict[str, Any] = {}

    if new_status == BookingStatus.ACCEPTED:
        agreed_rate = _parse_rate(data.get("agreed_rate"))
        agreed_rate_type = _parse_rate_type(data.get("agreed_rate_type"))
        if agreed_rate is not None:
            changes["agreed_rate"] = agreed_rate
            changes["agreed_rate_type"] = agreed_rate_type or booking.proposed_rate_type
        elif agreed_rate_type is not None:
            changes["agreed_rate_type"] = agreed_rate_type
        if data.get("retiree_response") is not None:
            changes["retiree_response"] = _clean_text(data["retiree_response"])
        if data.get("terms") is not None:
            changes["terms"] = _clean_text(data["terms"])

    elif new_status == BookingStatus.REJECTED:
        changes["rejection_reason"] = _clean_text(data.get("rejection_reason"))

    elif new_status == BookingStatus.ACTIVE:
        if booking.start_date is None:
            changes["start_date"] = _parse_date(data.get("start_date")) or now

    elif new_status == BookingStatus.DELIVERED:
        changes["delivery_date"] = now
        if data.get("delivery_notes") is not None:
            changes["delivery_notes"] = _clean_text(data["delivery_notes"])
        if data.get("deliverables") is not None:
            deliverables = data["deliverables"]
            if isinstance(deliverables, (str, bytes)) or not isinstance(deliverables, Iterable):
                deliverables = [deliverables]
            changes["deliverables"] = to_jsonable_python(list(deliverables))
        if data.get("next_steps") is not None:
            changes["next_steps"] = _clean_text(data["next_steps"])

    elif new_status == BookingStatus.COMPLETED:
        changes["completion_date"] = now
        for key, label in (("client_rating", "Client rating"), ("retiree_rating", "Retiree rating")):
            rating = _parse_rating(data.get(key), label)
            if rating is not None:
                changes[key] = rating
        for key in ("client_feedback", "retiree_feedback", "final_notes"):
            if data.get(key) is not None:
                changes[key] = _clean_text(data[key])

    elif new_status == BookingStatus.CANCELLED:
        changes["cancellation_reason"] = _clean_text(data.get("cancellation_reason"))

    return changes


def _requirement_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    title = _clean_text(data.get("title"))
    if not title:
        raise BookingError("Requirement title is required", ErrorCode.INVALID_REQUIREMENT)

    requirement_type = data.get("requirement_type") or "other"
    if requirement_type not in REQUIREMENT_TYPES:
        raise BookingError(
            f"Invalid requirement type {requirement_type}",
            ErrorCode.INVALID_REQUIREMENT,
        )

    expected_quantity = _parse_int(data.get("expected_quantity"), 1)
    if expected_quantity < 1:
        raise BookingError(
            "Expected quantity must be positive",
            ErrorCode.INVALID_REQUIREMENT,
        )

    return {
        "requirement_type": requirement_type,
        "title": title,
        "description": _clean_text(data.get("description")),
        "is_mandatory": data.get("is_mandatory") is not False,
        "priority": _parse_int(data.get("priority"), 0),
        "skill_id": data.get("skill_id"),
        "required_proficiency": data.get("required_proficiency"),
        "min_years_experience": _parse_int(data.get("min_years_experience")),
        "deliverable_format": data.get("deliverable_format"),
        "expected_quantity": expected_quantity,
    }
