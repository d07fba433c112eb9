from decimal import Decimal

from src.infrastructure.db.models import Profile
from src.infrastructure.db.session import SessionLocal


def _headers(user_id):
    return {"X-User-Id": user_id}


def _create_booking(client, people, **overrides):
    payload = {
        "client_id": people.client,
        "retiree_id": people.retiree,
        "retiree_profile_id": people.retiree_profile,
        "title": "Strategic Consulting Session",
        "description": "Need help with business strategy and planning for my startup.",
        "engagement_type": "consulting",
        "proposed_rate": 150,
        "estimated_hours": 8,
        "requirements": [
            {"title": "Go-to-market plan", "requirement_type": "deliverable", "priority": 1},
        ],
    }
    payload.update(overrides)

    response = client.post("/bookings", json=payload, headers=_headers(people.client))
    assert response.status_code == 201
    return response.json()


def test_booking_flow(client, people):
    booking = _create_booking(client, people)
    booking_id = booking["id"]
    assert booking["status"] == "request"
    assert booking["retiree"]["last_name"] == "Brandt"

    accept_response = client.post(
        f"/bookings/{booking_id}/accept",
        json={"agreed_rate": 140, "response": "Looking forward to it"},
        headers=_headers(people.retiree),
    )
    assert accept_response.status_code == 200
    assert accept_response.json()["status"] == "accepted"
    assert accept_response.json()["agreed_rate"] == 140.0

    start_response = client.post(f"/bookings/{booking_id}/start", headers=_headers(people.client))
    assert start_response.status_code == 200
    assert start_response.json()["status"] == "active"

    deliver_response = client.post(
        f"/bookings/{booking_id}/deliver",
        json={"notes": "Plan delivered", "deliverables": ["gtm-plan.pdf"]},
        headers=_headers(people.retiree),
    )
    assert deliver_response.status_code == 200
    assert deliver_response.json()["delivery_notes"] == "Plan delivered"

    complete_response = client.post(
        f"/bookings/{booking_id}/complete",
        json={"retiree_rating": 5, "client_feedback": "Excellent"},
        headers=_headers(people.client),
    )
    assert complete_response.status_code == 200
    completed = complete_response.json()
    assert completed["status"] == "completed"
    assert completed["is_final_state"] is True
    assert completed["retiree_profile"]["total_reviews"] == 3

    details = client.get(f"/bookings/{booking_id}", headers=_headers(people.client)).json()
    assert [entry["to_status"] for entry in details["history"]] == [
        "request",
        "accepted",
        "active",
        "delivered",
        "completed",
    ]
    assert details["next_possible_states"] == []
    assert details["requirements"][0]["title"] == "Go-to-market plan"


def test_completion_survives_a_rejected_rating_write(client, people):
    booking_id = _create_booking(client, people)["id"]
    client.post(f"/bookings/{booking_id}/accept", headers=_headers(people.retiree))
    client.post(f"/bookings/{booking_id}/start", headers=_headers(people.client))
    client.post(f"/bookings/{booking_id}/deliver", headers=_headers(people.retiree))

    with SessionLocal() as db:
        profile = db.get(Profile, people.retiree_profile)
        profile.average_rating = Decimal("5.00")
        profile.total_reviews = -2
        db.commit()

    response = client.post(
        f"/bookings/{booking_id}/complete",
        json={"retiree_rating": 1},
        headers=_headers(people.client),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    details = client.get(f"/bookings/{booking_id}", headers=_headers(people.client)).json()
    assert details["booking"]["status"] == "completed"
    assert details["booking"]["retiree_profile"]["total_reviews"] == -2


def test_missing_actor_header(client, people):
    response = client.get("/bookings")

    assert response.status_code == 401


def test_outsider_cannot_view(client, people):
    booking_id = _create_booking(client, people)["id"]

    response = client.get(f"/bookings/{booking_id}", headers=_headers(people.outsider))

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "UNAUTHORIZED_VIEW"


def test_illegal_transition_is_a_conflict(client, people):
    booking_id = _create_booking(client, people)["id"]

    reject_response = client.post(
        f"/bookings/{booking_id}/reject",
        json={"reason": "Not my area"},
        headers=_headers(people.retiree),
    )
    assert reject_response.status_code == 200

    response = client.post(f"/bookings/{booking_id}/accept", headers=_headers(people.retiree))

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "INVALID_TRANSITION"


def test_cancel_without_reason(client, people):
    booking_id = _create_booking(client, people)["id"]

    response = client.post(
        f"/bookings/{booking_id}/cancel",
        json={"reason": "  "},
        headers=_headers(people.client),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == {
        "code": "MISSING_CANCELLATION_REASON",
        "message": "Cancellation reason is required",
    }

    booking = client.get(f"/bookings/{booking_id}", headers=_headers(people.client)).json()
    assert booking["booking"]["status"] == "request"


def test_unknown_booking(client, people):
    response = client.get("/bookings/does-not-exist", headers=_headers(people.client))

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "BOOKING_NOT_FOUND"


def test_search_and_stats(client, people):
    first = _create_booking(client, people)["id"]
    _create_booking(client, people, title="Operations Deep Dive")
    client.post(f"/bookings/{first}/accept", headers=_headers(people.retiree))

    own = client.get("/bookings", headers=_headers(people.client))
    accepted = client.get("/bookings?status=accepted", headers=_headers(people.retiree))
    outsider = client.get("/bookings", headers=_headers(people.outsider))
    foreign = client.get(
        f"/bookings?client_id={people.client}",
        headers=_headers(people.outsider),
    )
    stats = client.get("/bookings/stats", headers=_headers(people.client))

    assert own.status_code == 200
    assert own.json()["pagination"]["total"] == 2
    assert [item["id"] for item in accepted.json()["bookings"]] == [first]
    assert outsider.json()["pagination"]["total"] == 0
    assert foreign.status_code == 403
    assert foreign.json()["detail"]["code"] == "UNAUTHORIZED_SEARCH"
    assert stats.json()["as_client"]["by_status"] == {"accepted": 1, "request": 1}


def test_update_and_delete(client, people):
    booking_id = _create_booking(client, people)["id"]

    update_response = client.put(
        f"/bookings/{booking_id}",
        json={"location": "Remote, CET hours"},
        headers=_headers(people.client),
    )
    assert update_response.status_code == 200
    assert update_response.json()["location"] == "Remote, CET hours"

    denied = client.delete(f"/bookings/{booking_id}", headers=_headers(people.retiree))
    assert denied.status_code == 403

    deleted = client.delete(f"/bookings/{booking_id}", headers=_headers(people.client))
    assert deleted.status_code == 200
    assert deleted.json() == {"booking_id": booking_id, "deleted": True}

    gone = client.get(f"/bookings/{booking_id}", headers=_headers(people.client))
    assert gone.status_code == 404


def test_transitions_and_requirements(client, people):
    booking_id = _create_booking(client, people)["id"]

    transitions = client.get(
        f"/bookings/{booking_id}/transitions",
        headers=_headers(people.client),
    ).json()
    assert transitions["user_role"] == "client"
    assert [item["state"] for item in transitions["available_transitions"]] == ["cancelled"]

    added = client.post(
        f"/bookings/{booking_id}/requirements",
        json={"title": "Pricing review", "requirement_type": "deliverable", "priority": 0},
        headers=_headers(people.client),
    )
    assert added.status_code == 201

    requirements = client.get(
        f"/bookings/{booking_id}/requirements",
        headers=_headers(people.retiree),
    ).json()
    assert [item["title"] for item in requirements] == ["Pricing review", "Go-to-market plan"]

    verified = client.post(
        f"/bookings/{booking_id}/requirements/{added.json()['id']}/verify",
        json={"notes": "Reviewed"},
        headers=_headers(people.client),
    )
    assert verified.status_code == 200
    assert verified.json()["is_met"] is True


def test_outbox_lists_notifications(client, people):
    booking_id = _create_booking(client, people)["id"]
    client.post(f"/bookings/{booking_id}/accept", headers=_headers(people.retiree))

    response = client.get(f"/outbox/events?recipient_id={people.client}")

    assert response.status_code == 200
    events = response.json()
    assert [event["event_type"] for event in events] == ["booking.accepted"]

    published = client.post(f"/outbox/events/{events[0]['id']}/mark-published")
    assert published.status_code == 200
    assert published.json()["status"] == "PUBLISHED"
