from datetime import datetime, timezone
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.infrastructure.db.session import SessionLocal
from src.application.booking_service import BookingService
from src.api.schemas.schemas import (
    AcceptBookingRequest,
    AvailableTransitionsResponse,
    BookingCreateRequest,
    BookingDetailsResponse,
    BookingResponse,
    BookingSearchResponse,
    BookingUpdateRequest,
    CompleteBookingRequest,
    DashboardResponse,
    DeleteBookingResponse,
    DeliverBookingRequest,
    HistoryEntryResponse,
    OutboxEventResponse,
    ReasonRequest,
    RequirementCreateRequest,
    RequirementResponse,
    UserBookingStatsResponse,
    VerifyRequirementRequest,
)
from src.domain.exceptions import (
    ERROR_KINDS,
    BookingServiceError,
    ErrorCode,
    ErrorKind,
)
from src.infrastructure.db.models import OutboxEvent


router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorKind.STATE: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

ERROR_STATUS_CODES: Dict[ErrorCode, int] = {
    code: _STATUS_BY_KIND[ERROR_KINDS[code]] for code in ErrorCode
}


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_actor_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()


def _http_error(exc: BookingServiceError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS_CODES[exc.code],
        detail=exc.to_dict(),
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        recipient_id=item.recipient_id,
        payload=item.payload,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Booking lifecycle service is running"}


# -----------------------------
# Outbox (read by the external dispatcher)
# -----------------------------
@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    recipient_id: str | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    stmt = select(OutboxEvent).where(OutboxEvent.status == status_filter)
    if recipient_id:
        stmt = stmt.where(OutboxEvent.recipient_id == recipient_id)
    stmt = stmt.order_by(OutboxEvent.created_at).limit(safe_limit)

    events = list(db.execute(stmt).scalars().all())
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    item = db.execute(select(OutboxEvent).where(OutboxEvent.id == event_id)).scalar_one_or_none()
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    item.status = "PUBLISHED"
    item.published_at = datetime.now(timezone.utc)
    item.attempts += 1
    logger.info("Outbox event %s marked published", event_id)
    return _outbox_response(item)


# -----------------------------
# Bookings
# -----------------------------
@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingCreateRequest,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.create_booking(request.model_dump(), actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/bookings", response_model=BookingSearchResponse)
def search_bookings(
    client_id: str | None = None,
    retiree_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    engagement_type: str | None = None,
    service_category: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int | None = None,
    offset: int = 0,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    criteria = {
        "client_id": client_id,
        "retiree_id": retiree_id,
        "status": [item.strip() for item in status_filter.split(",") if item.strip()]
        if status_filter
        else None,
        "engagement_type": engagement_type,
        "service_category": service_category,
        "start_date": start_date,
        "end_date": end_date,
    }
    options = {
        "limit": limit,
        "offset": offset,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }

    service = BookingService(db)

    try:
        return service.search_bookings(criteria, options, actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/bookings/stats", response_model=UserBookingStatsResponse)
def get_booking_stats(
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.get_user_booking_stats(actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/bookings/dashboard", response_model=DashboardResponse)
def get_dashboard(
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.get_dashboard(actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/bookings/{booking_id}", response_model=BookingDetailsResponse)
def get_booking(
    booking_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.get_booking_details(booking_id, actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.put("/bookings/{booking_id}", response_model=BookingResponse)
def update_booking(
    booking_id: str,
    request: BookingUpdateRequest,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.update_booking(
            booking_id,
            request.model_dump(exclude_unset=True),
            actor_id,
        )
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.delete("/bookings/{booking_id}", response_model=DeleteBookingResponse)
def delete_booking(
    booking_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.delete_booking(booking_id, actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
def accept_booking(
    booking_id: str,
    request: AcceptBookingRequest | None = None,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)
    acceptance = request.model_dump(exclude_none=True) if request else {}

    try:
        return service.accept_booking(booking_id, actor_id, acceptance)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
def reject_booking(
    booking_id: str,
    request: ReasonRequest,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.reject_booking(booking_id, actor_id, request.reason)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
def start_booking(
    booking_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.start_booking(booking_id, actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/bookings/{booking_id}/deliver", response_model=BookingResponse)
def deliver_booking(
    booking_id: str,
    request: DeliverBookingRequest | None = None,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)
    delivery = request.model_dump(exclude_none=True) if request else {}

    try:
        return service.deliver_booking(booking_id, actor_id, delivery)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
def complete_booking(
    booking_id: str,
    request: CompleteBookingRequest | None = None,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)
    completion = request.model_dump(exclude_none=True) if request else {}

    try:
        return service.complete_booking(booking_id, actor_id, completion)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: ReasonRequest,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.cancel_booking(booking_id, actor_id, request.reason)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/bookings/{booking_id}/history", response_model=list[HistoryEntryResponse])
def get_booking_history(
    booking_id: str,
    limit: int = 50,
    sort_order: str = "desc",
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.get_booking_history(booking_id, actor_id, limit, sort_order)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/bookings/{booking_id}/transitions", response_model=AvailableTransitionsResponse)
def get_available_transitions(
    booking_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.get_available_transitions(booking_id, actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/bookings/{booking_id}/requirements",
    response_model=RequirementResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_requirement(
    booking_id: str,
    request: RequirementCreateRequest,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.add_requirement(booking_id, actor_id, request.model_dump())
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/bookings/{booking_id}/requirements", response_model=list[RequirementResponse])
def get_requirements(
    booking_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.get_requirements(booking_id, actor_id)
    except BookingServiceError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/bookings/{booking_id}/requirements/{requirement_id}/verify",
    response_model=RequirementResponse,
)
def verify_requirement(
    booking_id: str,
    requirement_id: str,
    request: VerifyRequirementRequest | None = None,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    service = BookingService(db)

    try:
        return service.mark_requirement_met(
            booking_id,
            requirement_id,
            actor_id,
            request.notes if request else None,
        )
    except BookingServiceError as exc:
        raise _http_error(exc) from exc
