# src/domain/state_machine.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from src.domain.exceptions import ErrorCode, InvalidStateTransitionError


class BookingStatus(str, Enum):
    REQUEST = "request"
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ACTIVE = "active"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class UserRole(str, Enum):
    CLIENT = "client"
    RETIREE = "retiree"
    ADMIN = "admin"
    SYSTEM = "system"
    UNKNOWN = "unknown"


STATE_DESCRIPTIONS: Dict[BookingStatus, str] = {
    BookingStatus.REQUEST: "Booking request created",
    BookingStatus.PENDING: "Awaiting retiree response",
    BookingStatus.ACCEPTED: "Booking accepted by retiree",
    BookingStatus.REJECTED: "Booking declined by retiree",
    BookingStatus.ACTIVE: "Work in progress",
    BookingStatus.DELIVERED: "Work completed, awaiting approval",
    BookingStatus.COMPLETED: "Booking successfully completed",
    BookingStatus.CANCELLED: "Booking cancelled",
}


@dataclass(frozen=True)
class TransitionValidation:
    success: bool
    error: Optional[str] = None
    code: Optional[ErrorCode] = None
    description: Optional[str] = None
    missing_fields: Tuple[str, ...] = field(default_factory=tuple)


_BOTH_PARTIES: FrozenSet[UserRole] = frozenset({UserRole.CLIENT, UserRole.RETIREE})
_RETIREE_ONLY: FrozenSet[UserRole] = frozenset({UserRole.RETIREE})
_CLIENT_ONLY: FrozenSet[UserRole] = frozenset({UserRole.CLIENT})


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions and which party may trigger each.

    ``pending`` is a synonym of ``request``: it shares the same outgoing
    edges and nothing ever transitions into it.
    """

    _TRANSITION_PERMISSIONS: Dict[BookingStatus, Dict[BookingStatus, FrozenSet[UserRole]]] = {
        BookingStatus.REQUEST: {
            BookingStatus.ACCEPTED: _RETIREE_ONLY,
            BookingStatus.REJECTED: _RETIREE_ONLY,
            BookingStatus.CANCELLED: _BOTH_PARTIES,
        },
        BookingStatus.PENDING: {
            BookingStatus.ACCEPTED: _RETIREE_ONLY,
            BookingStatus.REJECTED: _RETIREE_ONLY,
            BookingStatus.CANCELLED: _BOTH_PARTIES,
        },
        BookingStatus.ACCEPTED: {
            BookingStatus.ACTIVE: _BOTH_PARTIES,
            BookingStatus.CANCELLED: _BOTH_PARTIES,
        },
        BookingStatus.ACTIVE: {
            BookingStatus.DELIVERED: _RETIREE_ONLY,
            BookingStatus.CANCELLED: _BOTH_PARTIES,
        },
        BookingStatus.DELIVERED: {
            BookingStatus.COMPLETED: _CLIENT_ONLY,
            BookingStatus.CANCELLED: _BOTH_PARTIES,
        },
        BookingStatus.REJECTED: {},
        BookingStatus.COMPLETED: {},
        BookingStatus.CANCELLED: {},
    }

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        status: set(targets) for status, targets in _TRANSITION_PERMISSIONS.items()
    }

    # Context fields that must be non-blank when entering a state.
    _STATE_REQUIREMENTS: Dict[BookingStatus, Tuple[str, ...]] = {
        BookingStatus.REJECTED: ("rejection_reason",),
        BookingStatus.CANCELLED: ("cancellation_reason",),
    }

    _INITIAL_STATE = BookingStatus.REQUEST

    @classmethod
    def is_valid_state(cls, status: Any) -> bool:
        return cls._parse_status(status) is not None

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if the edge exists, regardless of who asks.
        """
        from_state = cls._parse_status(from_status)
        to_state = cls._parse_status(to_status)
        if from_state is None or to_state is None:
            return False

        return to_state in cls._ALLOWED_TRANSITIONS[from_state]

    @classmethod
    def can_user_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
        role: UserRole,
    ) -> bool:
        if not cls.can_transition(from_status, to_status):
            return False

        user_role = cls._parse_role(role)
        if user_role is None:
            return False

        allowed_roles = cls._TRANSITION_PERMISSIONS[cls._parse_status(from_status)][
            cls._parse_status(to_status)
        ]
        return user_role in allowed_roles

    @classmethod
    def get_next_states(cls, status: BookingStatus) -> List[BookingStatus]:
        """
        Returns allowed next states from current state, in declaration order.
        """
        current = cls._parse_status(status)
        if current is None:
            return []
        return list(cls._TRANSITION_PERMISSIONS[current].keys())

    @classmethod
    def get_next_states_for_role(
        cls,
        status: BookingStatus,
        role: UserRole,
    ) -> List[BookingStatus]:
        return [
            next_state
            for next_state in cls.get_next_states(status)
            if cls.can_user_transition(status, next_state, role)
        ]

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
        role: UserRole,
        context: Optional[Mapping[str, Any]] = None,
    ) -> TransitionValidation:
        """
        Checks, in order: the role is known, both states are valid, the edge
        exists, the role may use the edge, and (only when a context is given)
        the fields the target state needs are present and non-blank.

        On success the returned description is the audit text for the move.
        """
        user_role = cls._parse_role(role)
        if user_role is None or user_role == UserRole.UNKNOWN:
            return TransitionValidation(
                success=False,
                error="User has no role on this booking",
                code=ErrorCode.UNAUTHORIZED,
            )

        from_state = cls._parse_status(from_status)
        if from_state is None:
            return TransitionValidation(
                success=False,
                error="Invalid current state",
                code=ErrorCode.INVALID_FROM_STATE,
            )

        to_state = cls._parse_status(to_status)
        if to_state is None:
            return TransitionValidation(
                success=False,
                error="Invalid target state",
                code=ErrorCode.INVALID_TO_STATE,
            )

        if to_state not in cls._ALLOWED_TRANSITIONS[from_state]:
            return TransitionValidation(
                success=False,
                error=f"Cannot transition from {from_state.value} to {to_state.value}",
                code=ErrorCode.INVALID_TRANSITION,
            )

        if user_role not in cls._TRANSITION_PERMISSIONS[from_state][to_state]:
            return TransitionValidation(
                success=False,
                error=(
                    f"Role {user_role.value} cannot perform transition "
                    f"from {from_state.value} to {to_state.value}"
                ),
                code=ErrorCode.INSUFFICIENT_PERMISSIONS,
            )

        if context is not None:
            missing = tuple(
                name
                for name in cls._STATE_REQUIREMENTS.get(to_state, ())
                if _is_blank(context.get(name))
            )
            if missing:
                return TransitionValidation(
                    success=False,
                    error=(
                        f"Missing required fields for {to_state.value} state: "
                        f"{', '.join(missing)}"
                    ),
                    code=ErrorCode.MISSING_REQUIRED_FIELDS,
                    missing_fields=missing,
                )

        return TransitionValidation(
            success=True,
            description=STATE_DESCRIPTIONS[to_state],
        )

    @classmethod
    def ensure_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
        role: UserRole,
        context: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Raises InvalidStateTransitionError if transition is illegal,
        otherwise returns the transition description.
        """
        result = cls.validate_transition(from_status, to_status, role, context)
        if not result.success:
            raise InvalidStateTransitionError(
                from_state=_value_of(from_status),
                to_state=_value_of(to_status),
                code=result.code,
                message=result.error,
            )
        return result.description

    @classmethod
    def is_final_state(cls, status: BookingStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        current = cls._parse_status(status)
        if current is None:
            return False
        return len(cls._ALLOWED_TRANSITIONS[current]) == 0

    @classmethod
    def can_be_cancelled(cls, status: BookingStatus) -> bool:
        return BookingStatus.CANCELLED in cls.get_next_states(status)

    @classmethod
    def get_state_description(cls, status: BookingStatus) -> str:
        current = cls._parse_status(status)
        if current is None:
            return "Unknown state"
        return STATE_DESCRIPTIONS[current]

    @classmethod
    def get_initial_state(cls) -> BookingStatus:
        return cls._INITIAL_STATE

    @classmethod
    def get_all_states(cls) -> List[BookingStatus]:
        return list(BookingStatus)

    @staticmethod
    def get_user_role_for_booking(booking: Any, user_id: Optional[str]) -> UserRole:
        if booking is None or not user_id:
            return UserRole.UNKNOWN

        if isinstance(booking, Mapping):
            client_id = booking.get("client_id")
            retiree_id = booking.get("retiree_id")
        else:
            client_id = getattr(booking, "client_id", None)
            retiree_id = getattr(booking, "retiree_id", None)

        if client_id == user_id:
            return UserRole.CLIENT
        if retiree_id == user_id:
            return UserRole.RETIREE
        return UserRole.UNKNOWN

    @classmethod
    def get_transition_summary(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
        **extra: Any,
    ) -> Dict[str, Any]:
        return {
            "from": {
                "state": _value_of(from_status),
                "description": cls.get_state_description(from_status),
            },
            "to": {
                "state": _value_of(to_status),
                "description": cls.get_state_description(to_status),
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **extra,
        }

    @staticmethod
    def _parse_status(status: Any) -> Optional[BookingStatus]:
        """
        Accepts enum members or their string values. Anything else that is
        not a string is a programming error.
        """
        if isinstance(status, BookingStatus):
            return status
        if isinstance(status, str):
            try:
                return BookingStatus(status)
            except ValueError:
                return None
        raise TypeError(f"Expected BookingStatus, got {type(status)}")

    @staticmethod
    def _parse_role(role: Any) -> Optional[UserRole]:
        if isinstance(role, UserRole):
            return role
        if isinstance(role, str):
            try:
                return UserRole(role)
            except ValueError:
                return None
        return None


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def _value_of(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)
