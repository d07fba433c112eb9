# tests/unit/test_booking_service.py

import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from src.application.booking_service import BookingService, summarize_bookings
from src.application.notifications import OutboxNotifier
from src.domain.exceptions import BookingServiceError, ErrorCode
from src.infrastructure.db.models import Booking, OutboxEvent, Profile
from src.infrastructure.repositories.directory_repository import ProfileDirectory


class BrokenProfileDirectory(ProfileDirectory):
    def update_profile(self, profile_id, patch):
        raise RuntimeError("profile store offline")


class BrokenNotifier:
    def notify(self, booking, event_type, recipient_id, payload=None):
        raise RuntimeError("outbox unavailable")


class CollidingNotifier(OutboxNotifier):
    """Writes every event under one dedupe key without checking for it first."""

    DEDUPE_KEY = "booking:shared"

    def notify(self, booking, event_type, recipient_id, payload=None):
        event = OutboxEvent(
            aggregate_type=self.AGGREGATE_TYPE,
            aggregate_id=booking.id,
            event_type=event_type,
            recipient_id=recipient_id,
            payload="{}",
            dedupe_key=self.DEDUPE_KEY,
        )
        self.db.add(event)
        return event


@pytest.fixture()
def service(db_session):
    return BookingService(db_session)


def _request(people, **overrides):
    data = {
        "client_id": people.client,
        "retiree_id": people.retiree,
        "retiree_profile_id": people.retiree_profile,
        "title": "Strategic Consulting Session",
        "description": "Need help with business strategy and planning for my startup.",
        "engagement_type": "consulting",
        "proposed_rate": 150,
        "estimated_hours": 10,
    }
    data.update(overrides)
    return data


def _create(service, people, **overrides):
    return service.create_booking(_request(people, **overrides), people.client)


def _expect_error(code, func, *args, **kwargs):
    with pytest.raises(BookingServiceError) as exc_info:
        func(*args, **kwargs)
    assert exc_info.value.code == code
    return exc_info.value


# ---------------------
# LIFECYCLE
# ---------------------

def test_full_lifecycle_updates_retiree_rating(service, people, db_session):
    booking = _create(service, people)
    booking_id = booking["id"]

    assert booking["status"] == "request"
    assert booking["client"]["first_name"] == "Dana"
    assert booking["retiree_profile"]["display_name"] == "Walter Brandt"

    service.accept_booking(booking_id, people.retiree, {"agreed_rate": 150})
    service.start_booking(booking_id, people.client)
    service.deliver_booking(
        booking_id,
        people.retiree,
        {"notes": "Plan attached", "deliverables": ["strategy.pdf"]},
    )
    completed = service.complete_booking(
        booking_id,
        people.client,
        {"retiree_rating": 4, "client_feedback": "Sharp and practical"},
    )

    assert completed["status"] == "completed"
    assert completed["is_final_state"] is True
    assert completed["can_be_cancelled"] is False
    assert completed["retiree_rating"] == 4
    assert completed["deliverables"] == ["strategy.pdf"]

    profile = ProfileDirectory(db_session).find_profile_by_id(people.retiree_profile)
    assert Decimal(profile.average_rating) == Decimal("4.33")
    assert profile.total_reviews == 3

    history = service.get_booking_history(booking_id, people.client, sort_order="asc")
    assert [entry["to_status"] for entry in history] == [
        "request",
        "accepted",
        "active",
        "delivered",
        "completed",
    ]


def test_rejected_booking_is_closed(service, people):
    booking_id = _create(service, people)["id"]

    rejected = service.reject_booking(booking_id, people.retiree, "Fully booked this quarter")
    assert rejected["status"] == "rejected"
    assert rejected["rejection_reason"] == "Fully booked this quarter"

    _expect_error(
        ErrorCode.INVALID_TRANSITION,
        service.accept_booking, booking_id, people.retiree,
    )
    _expect_error(
        ErrorCode.CANCELLATION_NOT_ALLOWED,
        service.cancel_booking, booking_id, people.client, "Changed my mind",
    )


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_cancellation_requires_reason(service, people, reason):
    booking_id = _create(service, people)["id"]

    _expect_error(
        ErrorCode.MISSING_CANCELLATION_REASON,
        service.cancel_booking, booking_id, people.client, reason,
    )

    details = service.get_booking_details(booking_id, people.client)
    assert details["booking"]["status"] == "request"
    assert len(details["history"]) == 1


def test_rejection_requires_reason(service, people):
    booking_id = _create(service, people)["id"]

    _expect_error(
        ErrorCode.MISSING_REJECTION_REASON,
        service.reject_booking, booking_id, people.retiree, " ",
    )


def test_either_party_may_cancel_active_booking(service, people):
    booking_id = _create(service, people)["id"]
    service.accept_booking(booking_id, people.retiree)
    service.start_booking(booking_id, people.retiree)

    cancelled = service.cancel_booking(booking_id, people.retiree, "Family emergency")

    assert cancelled["status"] == "cancelled"
    assert cancelled["cancellation_reason"] == "Family emergency"


def test_second_accept_is_rejected(service, people):
    booking_id = _create(service, people)["id"]
    service.accept_booking(booking_id, people.retiree, {"agreed_rate": 130})

    _expect_error(
        ErrorCode.INVALID_TRANSITION,
        service.accept_booking, booking_id, people.retiree, {"agreed_rate": 200},
    )

    details = service.get_booking_details(booking_id, people.retiree)
    assert details["booking"]["status"] == "accepted"
    assert details["booking"]["agreed_rate"] == Decimal("130.00")
    assert len(details["history"]) == 2


def test_role_specific_actions(service, people):
    booking_id = _create(service, people)["id"]

    _expect_error(
        ErrorCode.UNAUTHORIZED_ACCEPTANCE,
        service.accept_booking, booking_id, people.client,
    )
    _expect_error(
        ErrorCode.UNAUTHORIZED_REJECTION,
        service.reject_booking, booking_id, people.client, "No",
    )

    service.accept_booking(booking_id, people.retiree)
    _expect_error(
        ErrorCode.UNAUTHORIZED_START,
        service.start_booking, booking_id, people.outsider,
    )

    service.start_booking(booking_id, people.client)
    _expect_error(
        ErrorCode.UNAUTHORIZED_DELIVERY,
        service.deliver_booking, booking_id, people.client,
    )

    service.deliver_booking(booking_id, people.retiree)
    _expect_error(
        ErrorCode.UNAUTHORIZED_COMPLETION,
        service.complete_booking, booking_id, people.retiree,
    )


def test_outsider_is_kept_out(service, people):
    booking_id = _create(service, people)["id"]

    _expect_error(
        ErrorCode.UNAUTHORIZED_VIEW,
        service.get_booking_details, booking_id, people.outsider,
    )
    _expect_error(
        ErrorCode.UNAUTHORIZED_CANCELLATION,
        service.cancel_booking, booking_id, people.outsider, "Not mine",
    )
    _expect_error(
        ErrorCode.UNAUTHORIZED_UPDATE,
        service.update_booking, booking_id, {"location": "Lisbon"}, people.outsider,
    )


def test_unknown_booking(service, people):
    _expect_error(
        ErrorCode.BOOKING_NOT_FOUND,
        service.get_booking_details, "no-such-booking", people.client,
    )


def test_invalid_rating_on_completion(service, people):
    booking_id = _create(service, people)["id"]
    service.accept_booking(booking_id, people.retiree)
    service.start_booking(booking_id, people.client)
    service.deliver_booking(booking_id, people.retiree)

    _expect_error(
        ErrorCode.INVALID_RATING,
        service.complete_booking, booking_id, people.client, {"retiree_rating": 0},
    )


def test_failures_are_logged_with_code(service, people, caplog):
    booking_id = _create(service, people)["id"]

    with caplog.at_level(logging.WARNING, logger="src.application.booking_service"):
        _expect_error(
            ErrorCode.UNAUTHORIZED_ACCEPTANCE,
            service.accept_booking, booking_id, people.client,
        )

    assert "UNAUTHORIZED_ACCEPTANCE" in caplog.text


# ---------------------
# CREATION RULES
# ---------------------

def test_only_the_client_can_create(service, people):
    _expect_error(
        ErrorCode.UNAUTHORIZED_CREATION,
        service.create_booking, _request(people), people.retiree,
    )


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"retiree_id": "user-missing", "retiree_profile_id": None}, ErrorCode.RETIREE_NOT_FOUND),
        ({"retiree_id": "user-inactive", "retiree_profile_id": None}, ErrorCode.RETIREE_INACTIVE),
        (
            {"retiree_id": "user-unverified", "retiree_profile_id": None},
            ErrorCode.RETIREE_EMAIL_NOT_VERIFIED,
        ),
        ({"retiree_profile_id": "profile-client"}, ErrorCode.INVALID_RETIREE_PROFILE),
        ({"retiree_profile_id": "profile-retiree-away"}, ErrorCode.RETIREE_UNAVAILABLE),
        ({"client_profile_id": "profile-retiree"}, ErrorCode.INVALID_CLIENT_PROFILE),
        ({"retiree_id": "user-client"}, ErrorCode.INVALID_USER_ASSIGNMENT),
        ({"title": "Hi"}, ErrorCode.INVALID_TITLE_LENGTH),
    ],
)
def test_creation_rules(service, people, overrides, code):
    _expect_error(code, service.create_booking, _request(people, **overrides), people.client)


# ---------------------
# UPDATE & DELETE
# ---------------------

def test_client_updates_details(service, people):
    booking_id = _create(service, people)["id"]

    updated = service.update_booking(
        booking_id,
        {"title": "Go-to-market Strategy Review", "urgency_level": "high"},
        people.client,
    )

    assert updated["title"] == "Go-to-market Strategy Review"
    assert updated["urgency_level"] == "high"


def test_delete_rules(service, people):
    booking_id = _create(service, people)["id"]

    _expect_error(
        ErrorCode.UNAUTHORIZED_DELETION,
        service.delete_booking, booking_id, people.retiree,
    )

    service.accept_booking(booking_id, people.retiree)
    _expect_error(
        ErrorCode.DELETION_NOT_ALLOWED,
        service.delete_booking, booking_id, people.client,
    )

    assert service.delete_booking(booking_id, people.admin) == {
        "booking_id": booking_id,
        "deleted": True,
    }
    _expect_error(
        ErrorCode.BOOKING_NOT_FOUND,
        service.get_booking_details, booking_id, people.client,
    )


# ---------------------
# QUERIES
# ---------------------

def test_details_and_transitions(service, people):
    booking_id = _create(
        service,
        people,
        requirements=[{"title": "Retail operations background", "requirement_type": "experience"}],
    )["id"]

    details = service.get_booking_details(booking_id, people.retiree)
    transitions = service.get_available_transitions(booking_id, people.retiree)

    assert details["user_role"] == "retiree"
    assert details["booking"]["id"] == booking_id
    assert [item["title"] for item in details["requirements"]] == ["Retail operations background"]
    assert set(details["next_possible_states"]) == {"accepted", "rejected", "cancelled"}
    assert transitions["current_state"] == "request"
    assert transitions["state_description"] == "Booking request created"
    assert {item["state"] for item in transitions["available_transitions"]} == {
        "accepted",
        "rejected",
        "cancelled",
    }


def test_search_is_scoped_to_the_caller(service, people):
    _create(service, people)
    _create(service, people, title="Operations Deep Dive")

    own = service.search_bookings({}, {}, people.client)
    as_retiree = service.search_bookings({}, {}, people.retiree)
    outsider = service.search_bookings({}, {}, people.outsider)
    admin = service.search_bookings({}, {}, people.admin)

    assert own["pagination"]["total"] == 2
    assert own["summary"]["by_status"] == {"request": 2}
    assert as_retiree["pagination"]["total"] == 2
    assert outsider["pagination"]["total"] == 0
    assert admin["pagination"]["total"] == 2


def test_search_for_someone_else_is_refused(service, people):
    _expect_error(
        ErrorCode.UNAUTHORIZED_SEARCH,
        service.search_bookings, {"client_id": people.client}, {}, people.outsider,
    )
    _expect_error(
        ErrorCode.USER_NOT_FOUND,
        service.search_bookings, {}, {}, "ghost",
    )


def test_search_filters_by_status(service, people):
    first = _create(service, people)["id"]
    _create(service, people)
    service.accept_booking(first, people.retiree)

    result = service.search_bookings({"status": ["accepted"]}, {}, people.client)

    assert [booking["id"] for booking in result["bookings"]] == [first]


def test_booking_stats_and_dashboard(service, people):
    first = _create(service, people)["id"]
    _create(service, people)
    service.accept_booking(first, people.retiree, {"agreed_rate": 100})

    stats = service.get_user_booking_stats(people.client)
    dashboard = service.get_dashboard(people.retiree)

    assert stats["as_client"]["total"] == 2
    assert stats["as_retiree"]["total"] == 0
    assert stats["combined"]["total"] == 2
    assert stats["as_client"]["total_value"] == Decimal("1000.00")
    assert dashboard["stats"]["as_retiree"]["total"] == 2
    assert len(dashboard["recent_bookings"]) == 2
    assert [booking["id"] for booking in dashboard["upcoming_bookings"]] == [first]


def test_summarize_bookings():
    now = datetime.now(timezone.utc)
    bookings = [
        {
            "status": "accepted",
            "engagement_type": "consulting",
            "start_date": now + timedelta(days=3),
            "end_date": None,
            "agreed_rate": Decimal("80.00"),
            "estimated_hours": 5,
        },
        {
            "status": "active",
            "engagement_type": "project",
            "start_date": now - timedelta(days=10),
            "end_date": now - timedelta(days=1),
            "agreed_rate": None,
            "estimated_hours": None,
        },
    ]

    summary = summarize_bookings(bookings)

    assert summary["total"] == 2
    assert summary["upcoming"] == 1
    assert summary["overdue"] == 1
    assert summary["total_value"] == Decimal("400.00")
    assert summary["by_engagement_type"] == {"consulting": 1, "project": 1}


# ---------------------
# REQUIREMENTS
# ---------------------

def test_requirement_verification(service, people):
    booking_id = _create(service, people)["id"]
    other_id = _create(service, people)["id"]
    requirement = service.add_requirement(
        booking_id,
        people.client,
        {"title": "Final report", "requirement_type": "deliverable"},
    )

    _expect_error(
        ErrorCode.UNAUTHORIZED_UPDATE,
        service.mark_requirement_met, booking_id, requirement["id"], people.retiree,
    )
    _expect_error(
        ErrorCode.REQUIREMENT_NOT_FOUND,
        service.mark_requirement_met, other_id, requirement["id"], people.client,
    )

    verified = service.mark_requirement_met(booking_id, requirement["id"], people.client, "Received")

    assert verified["is_met"] is True
    assert service.get_requirements(booking_id, people.retiree)[0]["verified_by"] == people.client


# ---------------------
# SIDE EFFECTS
# ---------------------

def test_outbox_events_are_recorded(service, people, db_session):
    booking_id = _create(service, people)["id"]
    service.accept_booking(booking_id, people.retiree)
    db_session.flush()

    events = db_session.execute(
        select(OutboxEvent).where(OutboxEvent.aggregate_id == booking_id)
    ).scalars().all()
    by_type = {event.event_type: event for event in events}

    assert set(by_type) == {"booking.created", "booking.accepted"}
    assert by_type["booking.created"].recipient_id == people.retiree
    assert by_type["booking.accepted"].recipient_id == people.client
    assert json.loads(by_type["booking.accepted"].payload)["status"] == "accepted"


def test_notification_failure_does_not_fail_the_operation(db_session, people):
    service = BookingService(db_session, notifier=BrokenNotifier())

    booking = _create(service, people)
    accepted = service.accept_booking(booking["id"], people.retiree)

    assert accepted["status"] == "accepted"


def test_rating_failure_does_not_fail_completion(db_session, people):
    service = BookingService(db_session, profiles=BrokenProfileDirectory(db_session))
    booking_id = _create(service, people)["id"]
    service.accept_booking(booking_id, people.retiree)
    service.start_booking(booking_id, people.client)
    service.deliver_booking(booking_id, people.retiree)

    completed = service.complete_booking(booking_id, people.client, {"retiree_rating": 5})

    assert completed["status"] == "completed"
    profile = ProfileDirectory(db_session).find_profile_by_id(people.retiree_profile)
    assert profile.total_reviews == 2


def _set_retiree_rating(db_session, people, average_rating, total_reviews):
    profile = db_session.get(Profile, people.retiree_profile)
    profile.average_rating = average_rating
    profile.total_reviews = total_reviews
    db_session.commit()


def test_rating_write_rejected_by_database_keeps_completion(service, people, db_session, caplog):
    booking_id = _create(service, people)["id"]
    service.accept_booking(booking_id, people.retiree)
    service.start_booking(booking_id, people.client)
    service.deliver_booking(booking_id, people.retiree)
    # A corrupt review count pushes the recomputed average past the rating range check.
    _set_retiree_rating(db_session, people, Decimal("5.00"), -2)

    with caplog.at_level(logging.ERROR):
        completed = service.complete_booking(booking_id, people.client, {"retiree_rating": 1})

    assert completed["status"] == "completed"
    assert "Error updating rating for profile" in caplog.text
    db_session.commit()

    db_session.expire_all()
    assert db_session.get(Booking, booking_id).status.value == "completed"
    profile = db_session.get(Profile, people.retiree_profile)
    assert profile.total_reviews == -2
    assert Decimal(profile.average_rating) == Decimal("5.00")
    events = db_session.execute(
        select(OutboxEvent.event_type).where(OutboxEvent.aggregate_id == booking_id)
    ).scalars().all()
    assert "booking.completed" in events


def test_outbox_write_rejected_by_database_keeps_the_operation(db_session, people, caplog):
    service = BookingService(db_session, notifier=CollidingNotifier(db_session))
    db_session.add(
        OutboxEvent(
            aggregate_type="booking",
            aggregate_id="elsewhere",
            event_type="booking.created",
            payload="{}",
            dedupe_key=CollidingNotifier.DEDUPE_KEY,
        )
    )
    db_session.commit()

    with caplog.at_level(logging.ERROR):
        booking_id = _create(service, people)["id"]
        accepted = service.accept_booking(booking_id, people.retiree)

    assert accepted["status"] == "accepted"
    assert "Failed to queue booking.accepted" in caplog.text
    db_session.commit()

    db_session.expire_all()
    assert db_session.get(Booking, booking_id).status.value == "accepted"
    assert len(service.get_booking_history(booking_id, people.client)) == 2
    events = db_session.execute(select(OutboxEvent)).scalars().all()
    assert [event.aggregate_id for event in events] == ["elsewhere"]
