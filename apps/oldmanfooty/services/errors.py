"""
Domain error taxonomy.

Every error the engine reports carries an ``ErrorKind``. The classes also
inherit from the closest built-in family (ValueError, PermissionError,
LookupError) so generic handlers keep working.
"""

import enum


class ErrorKind(str, enum.Enum):
    VALIDATION = "Validation"
    NOT_AUTHORIZED = "NotAuthorized"
    NOT_FOUND = "NotFound"
    DUPLICATE_ACTIVE_REGISTRATION = "DuplicateActiveRegistration"
    DUPLICATE_EMAIL = "DuplicateEmail"
    INVALID_CREDENTIALS = "InvalidCredentials"
    INVALID_OR_EXPIRED_TOKEN = "InvalidOrExpiredToken"
    ILLEGAL_TRANSITION = "IllegalTransition"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    REGISTRATION_CLOSED = "RegistrationClosed"
    PAID_CANNOT_WITHDRAW = "PaidCannotWithdraw"
    ALREADY_CLAIMED = "AlreadyClaimed"


class EngineError(Exception):
    """Base class for all domain errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    default_message = "Request could not be completed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(EngineError, ValueError):
    """Malformed or constraint-violating input."""

    kind = ErrorKind.VALIDATION
    default_message = "Invalid input"


class NotAuthorizedError(EngineError, PermissionError):
    """Actor lacks the required role or ownership."""

    kind = ErrorKind.NOT_AUTHORIZED
    default_message = "You are not authorised to perform this action"


class NotFoundError(EngineError, LookupError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Not found"


class DuplicateActiveRegistrationError(EngineError):
    kind = ErrorKind.DUPLICATE_ACTIVE_REGISTRATION
    default_message = "This club is already registered for this carnival"


class DuplicateEmailError(EngineError):
    kind = ErrorKind.DUPLICATE_EMAIL
    default_message = "An account with this email already exists"


class InvalidCredentialsError(EngineError):
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid email or password"


class InvalidOrExpiredTokenError(EngineError):
    kind = ErrorKind.INVALID_OR_EXPIRED_TOKEN
    default_message = "Invalid or expired invitation link"


class IllegalTransitionError(EngineError):
    """A state-machine guard failed."""

    kind = ErrorKind.ILLEGAL_TRANSITION
    default_message = "This action is not allowed in the current state"


class CapacityExceededError(EngineError):
    kind = ErrorKind.CAPACITY_EXCEEDED
    default_message = "This carnival has reached its maximum number of teams"


class RegistrationClosedError(EngineError):
    kind = ErrorKind.REGISTRATION_CLOSED
    default_message = "Registration for this carnival is closed"


class PaidCannotWithdrawError(EngineError):
    kind = ErrorKind.PAID_CANNOT_WITHDRAW
    default_message = "Paid registrations cannot be withdrawn. Please contact the carnival organiser."


class AlreadyClaimedError(EngineError):
    kind = ErrorKind.ALREADY_CLAIMED
    default_message = "This carnival already has an owner"
