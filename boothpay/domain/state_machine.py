# boothpay/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from boothpay.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REVIEW = "REVIEW"
    CANCELLED = "CANCELLED"


class ReviewReason(str, Enum):
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    AMOUNT_MISSING = "AMOUNT_MISSING"
    SOLD_OUT = "SOLD_OUT"
    QUOTA_RACE = "QUOTA_RACE"


class BookingStateMachine:
    """
    Central lifecycle controller for booth booking transitions.

    Self-transitions are listed where re-applying the same gateway outcome
    must be a harmless no-op (duplicate notifications).
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.PAID,
            BookingStatus.FAILED,
            BookingStatus.REVIEW,
            BookingStatus.CANCELLED,
        },
        BookingStatus.REVIEW: {
            BookingStatus.REVIEW,
            BookingStatus.FAILED,
        },
        BookingStatus.FAILED: {
            BookingStatus.FAILED,
        },
        BookingStatus.PAID: set(),
        BookingStatus.CANCELLED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if no transition leads anywhere but back to the same state.
        """
        cls._ensure_valid_status(status)
        return not (cls._ALLOWED_TRANSITIONS.get(status, set()) - {status})

    @classmethod
    def get_allowed_transitions(
        cls, status: BookingStatus
    ) -> Set[BookingStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return set(cls._ALLOWED_TRANSITIONS.get(status, set()))

    @classmethod
    def sources_for(cls, to_status: BookingStatus) -> Set[BookingStatus]:
        """
        Returns every state that may move to ``to_status``.
        Used as the predicate of guarded status updates.
        """
        cls._ensure_valid_status(to_status)
        return {
            from_status
            for from_status, targets in cls._ALLOWED_TRANSITIONS.items()
            if to_status in targets
        }

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
