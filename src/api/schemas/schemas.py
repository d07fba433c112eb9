from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


RateType = Literal["hourly", "project", "daily", "weekly"]


class RequirementCreateRequest(BaseModel):
    title: str
    requirement_type: str = "other"
    description: str | None = None
    is_mandatory: bool = True
    priority: int = 0
    skill_id: str | None = None
    required_proficiency: str | None = None
    min_years_experience: int | None = Field(default=None, ge=0)
    deliverable_format: str | None = None
    expected_quantity: int = 1


class BookingCreateRequest(BaseModel):
    client_id: str
    retiree_id: str
    client_profile_id: str | None = None
    retiree_profile_id: str | None = None
    title: str
    description: str
    service_category: str | None = None
    engagement_type: str = "freelance"
    proposed_rate: Decimal | None = None
    proposed_rate_type: str | None = None
    currency: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    estimated_hours: int | None = None
    flexible_timing: bool = False
    timezone: str | None = None
    client_message: str | None = None
    urgency_level: str | None = None
    remote_work: bool = True
    location: str | None = None
    requirements: list[RequirementCreateRequest] = Field(default_factory=list)


class BookingUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    client_message: str | None = None
    proposed_rate: Decimal | None = None
    proposed_rate_type: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    estimated_hours: int | None = None
    urgency_level: str | None = None
    retiree_response: str | None = None
    location: str | None = None
    remote_work: bool | None = None
    flexible_timing: bool | None = None


class AcceptBookingRequest(BaseModel):
    response: str | None = None
    agreed_rate: Decimal | None = None
    agreed_rate_type: RateType | None = None
    terms: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class DeliverBookingRequest(BaseModel):
    notes: str | None = None
    deliverables: list[str] | None = None
    next_steps: str | None = None


class CompleteBookingRequest(BaseModel):
    client_rating: int | None = None
    retiree_rating: int | None = None
    client_feedback: str | None = None
    retiree_feedback: str | None = None
    final_notes: str | None = None


class VerifyRequirementRequest(BaseModel):
    notes: str | None = None


class PartySummary(BaseModel):
    id: str
    first_name: str | None = None
    last_name: str | None = None
    email: str
    email_verified: bool


class ProfileSummary(BaseModel):
    id: str
    display_name: str | None = None
    headline: str | None = None
    profile_photo_url: str | None = None
    average_rating: float | None = None
    total_reviews: int | None = None


class BookingResponse(BaseModel):
    id: str
    client_id: str
    retiree_id: str
    client_profile_id: str | None = None
    retiree_profile_id: str | None = None
    title: str
    description: str
    service_category: str | None = None
    engagement_type: str
    status: str
    status_changed_at: datetime
    status_changed_by: str | None = None
    proposed_rate: float | None = None
    proposed_rate_type: str
    agreed_rate: float | None = None
    agreed_rate_type: str | None = None
    currency: str
    start_date: datetime | None = None
    end_date: datetime | None = None
    estimated_hours: int | None = None
    flexible_timing: bool
    timezone: str
    delivery_date: datetime | None = None
    completion_date: datetime | None = None
    client_message: str | None = None
    retiree_response: str | None = None
    terms: str | None = None
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    delivery_notes: str | None = None
    deliverables: list | None = None
    next_steps: str | None = None
    final_notes: str | None = None
    urgency_level: str
    remote_work: bool
    location: str | None = None
    client_rating: int | None = None
    retiree_rating: int | None = None
    client_feedback: str | None = None
    retiree_feedback: str | None = None
    payment_status: str
    version: int
    created_at: datetime
    updated_at: datetime
    state_description: str
    is_final_state: bool
    can_be_cancelled: bool
    client: PartySummary | None = None
    retiree: PartySummary | None = None
    client_profile: ProfileSummary | None = None
    retiree_profile: ProfileSummary | None = None


class RequirementResponse(BaseModel):
    id: str
    booking_id: str
    requirement_type: str
    title: str
    description: str | None = None
    is_mandatory: bool
    priority: int
    skill_id: str | None = None
    required_proficiency: str | None = None
    min_years_experience: int | None = None
    deliverable_format: str | None = None
    expected_quantity: int
    is_met: bool
    met_at: datetime | None = None
    verified_by: str | None = None
    verification_notes: str | None = None
    created_at: datetime


class HistoryEntryResponse(BaseModel):
    id: int
    booking_id: str
    event_type: str
    from_status: str | None = None
    to_status: str | None = None
    event_title: str
    event_description: str | None = None
    actor_id: str | None = None
    actor_role: str
    metadata: dict
    created_at: datetime


class BookingDetailsResponse(BaseModel):
    booking: BookingResponse
    requirements: list[RequirementResponse]
    history: list[HistoryEntryResponse]
    user_role: str
    next_possible_states: list[str]


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class BookingSummary(BaseModel):
    total: int
    by_status: dict[str, int]
    by_engagement_type: dict[str, int]
    upcoming: int
    overdue: int
    total_value: float


class BookingSearchResponse(BaseModel):
    bookings: list[BookingResponse]
    pagination: Pagination
    summary: BookingSummary


class BookingStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_engagement_type: dict[str, int]
    total_value: float
    average_rate: float


class UserBookingStatsResponse(BaseModel):
    as_client: BookingStats
    as_retiree: BookingStats
    combined: BookingStats


class DashboardResponse(BaseModel):
    stats: UserBookingStatsResponse
    recent_bookings: list[BookingResponse]
    upcoming_bookings: list[BookingResponse]
    summary: BookingSummary


class TransitionOption(BaseModel):
    state: str
    description: str


class AvailableTransitionsResponse(BaseModel):
    booking_id: str
    current_state: str
    state_description: str
    user_role: str
    available_transitions: list[TransitionOption]
    is_final_state: bool
    can_be_cancelled: bool


class DeleteBookingResponse(BaseModel):
    booking_id: str
    deleted: bool


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    recipient_id: str | None = None
    payload: str
    status: str
    attempts: int
    created_at: str
