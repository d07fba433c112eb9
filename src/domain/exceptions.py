# src/domain/exceptions.py

from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    STATE = "state"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    # Validation
    MISSING_CLIENT_ID = "MISSING_CLIENT_ID"
    MISSING_RETIREE_ID = "MISSING_RETIREE_ID"
    MISSING_TITLE = "MISSING_TITLE"
    MISSING_DESCRIPTION = "MISSING_DESCRIPTION"
    INVALID_USER_ASSIGNMENT = "INVALID_USER_ASSIGNMENT"
    INVALID_TITLE_LENGTH = "INVALID_TITLE_LENGTH"
    INVALID_DESCRIPTION_LENGTH = "INVALID_DESCRIPTION_LENGTH"
    INVALID_ENGAGEMENT_TYPE = "INVALID_ENGAGEMENT_TYPE"
    INVALID_RATE = "INVALID_RATE"
    INVALID_RATE_TYPE = "INVALID_RATE_TYPE"
    INVALID_DATE = "INVALID_DATE"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
    INVALID_RATING = "INVALID_RATING"
    INVALID_REQUIREMENT = "INVALID_REQUIREMENT"
    NO_VALID_UPDATES = "NO_VALID_UPDATES"
    MISSING_REJECTION_REASON = "MISSING_REJECTION_REASON"
    MISSING_CANCELLATION_REASON = "MISSING_CANCELLATION_REASON"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    INVALID_CLIENT_PROFILE = "INVALID_CLIENT_PROFILE"
    INVALID_RETIREE_PROFILE = "INVALID_RETIREE_PROFILE"
    CLIENT_INACTIVE = "CLIENT_INACTIVE"
    RETIREE_INACTIVE = "RETIREE_INACTIVE"
    CLIENT_EMAIL_NOT_VERIFIED = "CLIENT_EMAIL_NOT_VERIFIED"
    RETIREE_EMAIL_NOT_VERIFIED = "RETIREE_EMAIL_NOT_VERIFIED"
    RETIREE_UNAVAILABLE = "RETIREE_UNAVAILABLE"
    INVALID_SEARCH_OPTIONS = "INVALID_SEARCH_OPTIONS"

    # Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    UNAUTHORIZED_CREATION = "UNAUTHORIZED_CREATION"
    UNAUTHORIZED_ACCEPTANCE = "UNAUTHORIZED_ACCEPTANCE"
    UNAUTHORIZED_REJECTION = "UNAUTHORIZED_REJECTION"
    UNAUTHORIZED_START = "UNAUTHORIZED_START"
    UNAUTHORIZED_DELIVERY = "UNAUTHORIZED_DELIVERY"
    UNAUTHORIZED_COMPLETION = "UNAUTHORIZED_COMPLETION"
    UNAUTHORIZED_CANCELLATION = "UNAUTHORIZED_CANCELLATION"
    UNAUTHORIZED_VIEW = "UNAUTHORIZED_VIEW"
    UNAUTHORIZED_UPDATE = "UNAUTHORIZED_UPDATE"
    UNAUTHORIZED_SEARCH = "UNAUTHORIZED_SEARCH"
    UNAUTHORIZED_DELETION = "UNAUTHORIZED_DELETION"

    # State
    INVALID_FROM_STATE = "INVALID_FROM_STATE"
    INVALID_TO_STATE = "INVALID_TO_STATE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CANCELLATION_NOT_ALLOWED = "CANCELLATION_NOT_ALLOWED"
    DELETION_NOT_ALLOWED = "DELETION_NOT_ALLOWED"

    # Not found
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    CLIENT_NOT_FOUND = "CLIENT_NOT_FOUND"
    RETIREE_NOT_FOUND = "RETIREE_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    REQUIREMENT_NOT_FOUND = "REQUIREMENT_NOT_FOUND"

    # Conflict
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    # Internal
    STORAGE_FAILURE = "STORAGE_FAILURE"


_VALIDATION_CODES = {
    ErrorCode.MISSING_CLIENT_ID,
    ErrorCode.MISSING_RETIREE_ID,
    ErrorCode.MISSING_TITLE,
    ErrorCode.MISSING_DESCRIPTION,
    ErrorCode.INVALID_USER_ASSIGNMENT,
    ErrorCode.INVALID_TITLE_LENGTH,
    ErrorCode.INVALID_DESCRIPTION_LENGTH,
    ErrorCode.INVALID_ENGAGEMENT_TYPE,
    ErrorCode.INVALID_RATE,
    ErrorCode.INVALID_RATE_TYPE,
    ErrorCode.INVALID_DATE,
    ErrorCode.INVALID_DATE_RANGE,
    ErrorCode.INVALID_RATING,
    ErrorCode.INVALID_REQUIREMENT,
    ErrorCode.NO_VALID_UPDATES,
    ErrorCode.MISSING_REJECTION_REASON,
    ErrorCode.MISSING_CANCELLATION_REASON,
    ErrorCode.MISSING_REQUIRED_FIELDS,
    ErrorCode.INVALID_CLIENT_PROFILE,
    ErrorCode.INVALID_RETIREE_PROFILE,
    ErrorCode.CLIENT_INACTIVE,
    ErrorCode.RETIREE_INACTIVE,
    ErrorCode.CLIENT_EMAIL_NOT_VERIFIED,
    ErrorCode.RETIREE_EMAIL_NOT_VERIFIED,
    ErrorCode.RETIREE_UNAVAILABLE,
    ErrorCode.INVALID_SEARCH_OPTIONS,
}

_AUTHORIZATION_CODES = {
    ErrorCode.UNAUTHORIZED,
    ErrorCode.INSUFFICIENT_PERMISSIONS,
    ErrorCode.UNAUTHORIZED_CREATION,
    ErrorCode.UNAUTHORIZED_ACCEPTANCE,
    ErrorCode.UNAUTHORIZED_REJECTION,
    ErrorCode.UNAUTHORIZED_START,
    ErrorCode.UNAUTHORIZED_DELIVERY,
    ErrorCode.UNAUTHORIZED_COMPLETION,
    ErrorCode.UNAUTHORIZED_CANCELLATION,
    ErrorCode.UNAUTHORIZED_VIEW,
    ErrorCode.UNAUTHORIZED_UPDATE,
    ErrorCode.UNAUTHORIZED_SEARCH,
    ErrorCode.UNAUTHORIZED_DELETION,
}

_STATE_CODES = {
    ErrorCode.INVALID_FROM_STATE,
    ErrorCode.INVALID_TO_STATE,
    ErrorCode.INVALID_TRANSITION,
    ErrorCode.CANCELLATION_NOT_ALLOWED,
    ErrorCode.DELETION_NOT_ALLOWED,
}

_NOT_FOUND_CODES = {
    ErrorCode.BOOKING_NOT_FOUND,
    ErrorCode.CLIENT_NOT_FOUND,
    ErrorCode.RETIREE_NOT_FOUND,
    ErrorCode.USER_NOT_FOUND,
    ErrorCode.REQUIREMENT_NOT_FOUND,
}


ERROR_KINDS: Dict[ErrorCode, ErrorKind] = {
    **{code: ErrorKind.VALIDATION for code in _VALIDATION_CODES},
    **{code: ErrorKind.AUTHORIZATION for code in _AUTHORIZATION_CODES},
    **{code: ErrorKind.STATE for code in _STATE_CODES},
    **{code: ErrorKind.NOT_FOUND for code in _NOT_FOUND_CODES},
    ErrorCode.CONCURRENT_MODIFICATION: ErrorKind.CONFLICT,
    ErrorCode.STORAGE_FAILURE: ErrorKind.INTERNAL,
}


class MarketplaceError(Exception):
    """
    Base exception for all domain-level errors
    inside the booking marketplace core.
    Every error carries a stable machine-readable code.
    """

    def __init__(self, message: str, code: ErrorCode):
        self.message = message
        self.code = code
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:
        return ERROR_KINDS[self.code]

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class InvalidStateTransitionError(MarketplaceError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(
        self,
        from_state: str,
        to_state: str,
        code: ErrorCode = ErrorCode.INVALID_TRANSITION,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state

        if message is None:
            message = (
                f"Illegal state transition attempted: "
                f"{from_state} -> {to_state}"
            )
        super().__init__(message, code)


class BookingError(MarketplaceError):
    """Raised by the booking repository."""


class BookingServiceError(MarketplaceError):
    """Raised by the orchestration layer; the only error the API maps."""

    @classmethod
    def wrap(cls, exc: MarketplaceError) -> "BookingServiceError":
        if isinstance(exc, cls):
            return exc
        return cls(exc.message, exc.code)
