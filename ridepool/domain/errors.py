"""Domain error codes for the booking engine."""

from enum import Enum


class ErrorCode(str, Enum):
    """Domain error codes."""

    SEATS_UNAVAILABLE = "SEATS_UNAVAILABLE"
    DUPLICATE_BOOKING = "DUPLICATE_BOOKING"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    INVALID_STATE = "INVALID_STATE"
    TERMINAL_STATE = "TERMINAL_STATE"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    STORE_CONFLICT = "STORE_CONFLICT"


class EngineError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.INVALID_STATE
    http_status: int = 409

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class SeatsUnavailableError(EngineError):
    code = ErrorCode.SEATS_UNAVAILABLE
    http_status = 409

    def __init__(self, requested: int, available: int) -> None:
        super().__init__("Seats unavailable, please retry")
        self.requested = requested
        self.available = available


class DuplicateBookingError(EngineError):
    code = ErrorCode.DUPLICATE_BOOKING
    http_status = 409

    def __init__(self, ride_id: str, user_id: str) -> None:
        super().__init__("You already have an open booking on this ride")
        self.ride_id = ride_id
        self.user_id = user_id


class NotAuthorizedError(EngineError):
    code = ErrorCode.NOT_AUTHORIZED
    http_status = 403


class InvalidStateError(EngineError):
    code = ErrorCode.INVALID_STATE
    http_status = 409


class TerminalStateError(EngineError):
    code = ErrorCode.TERMINAL_STATE
    http_status = 409

    def __init__(self, ride_id: str, status: str) -> None:
        super().__init__(f"Ride is already {status}")
        self.ride_id = ride_id
        self.status = status


class PaymentRequiredError(EngineError):
    code = ErrorCode.PAYMENT_REQUIRED
    http_status = 402

    def __init__(self, ride_id: str) -> None:
        super().__init__(
            "Cannot start the ride: at least one confirmed passenger must have paid"
        )
        self.ride_id = ride_id


class NotFoundError(EngineError):
    code = ErrorCode.NOT_FOUND
    http_status = 404

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.key = key


class InvalidRequestError(EngineError):
    code = ErrorCode.INVALID_REQUEST
    http_status = 400


class IdempotencyKeyInUseError(InvalidRequestError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Idempotency-Key {key} was already used for another payment")
        self.key = key


class StoreConflictError(EngineError):
    """Raised when a conditional write kept losing its race after all retries."""

    code = ErrorCode.STORE_CONFLICT
    http_status = 503

    def __init__(self, operation: str) -> None:
        super().__init__("The request could not be completed, please retry")
        self.operation = operation


class TransientStoreConflict(Exception):
    """A compare-and-set lost against a concurrent writer.

    Raised by stores, retried by services, never shown to callers.
    """
