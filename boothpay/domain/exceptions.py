

class BoothPaymentError(Exception):
    """
    Base exception for all domain-level errors
    inside the booth payment engine.
    """

    code = "BOOTH_PAYMENT_ERROR"

    def __init__(self, message: str | None = None):
        self.message = message or self.__doc__.strip().splitlines()[0]
        super().__init__(self.message)


class InvalidStateTransitionError(BoothPaymentError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


# -----------------------------
# Charge preconditions
# -----------------------------
class BookingNotFoundError(BoothPaymentError):
    """Booking not found."""

    code = "NOT_FOUND"


class BookingAlreadyPaidError(BoothPaymentError):
    """Booking has already been paid."""

    code = "ALREADY_PAID"


class BookingCancelledError(BoothPaymentError):
    """Booking was cancelled. Create a new booking to pay."""

    code = "BOOKING_CANCELLED"


class BookingFailedError(BoothPaymentError):
    """Booking payment failed. Create a new booking to pay."""

    code = "BOOKING_FAILED"


class BookingUnderReviewError(BoothPaymentError):
    """Booking is awaiting manual payment review."""

    code = "BOOKING_UNDER_REVIEW"


class EventNotPublishedError(BoothPaymentError):
    """Event is not published."""

    code = "EVENT_NOT_PUBLISHED"


class SoldOutError(BoothPaymentError):
    """Booth quota is exhausted."""

    code = "SOLD_OUT"


class UnknownPaymentChannelError(BoothPaymentError):
    """Unknown payment channel."""

    code = "UNKNOWN_CHANNEL"


class InvalidBookingAmountError(BoothPaymentError):
    """Booking amount must be greater than zero."""

    code = "INVALID_AMOUNT"


# -----------------------------
# Gateway conflict, reclassified
# -----------------------------
class OrderPendingError(BoothPaymentError):
    """A transaction for this order id is already pending at the gateway."""

    code = "ORDER_PENDING"


class OrderAlreadyPaidError(BoothPaymentError):
    """The gateway already settled this order. Awaiting reconciliation."""

    code = "ALREADY_PAID"


class OrderNotPayableError(BoothPaymentError):
    """The gateway cannot process this order (expired, cancelled or denied)."""

    code = "ORDER_NOT_PAYABLE"


class GatewayConflictError(BoothPaymentError):
    """Order id was already used at the gateway; cannot create a new transaction."""

    code = "GATEWAY_CONFLICT"


# -----------------------------
# Settlement
# -----------------------------
class SettlementConflictError(BoothPaymentError):
    """Settlement kept conflicting with concurrent writers; booking left untouched."""

    code = "SETTLEMENT_CONFLICT"
