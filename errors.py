"""Exceptions raised by the matching and confirmation engine."""


class TravelMatchError(Exception):
    """Base class; status_code is what the HTTP layer answers with."""
    status_code = 400


class ValidationError(TravelMatchError):
    """Raised for malformed criteria: missing location, bad date window, negative seats or radius."""
    status_code = 400


class ForbiddenError(TravelMatchError):
    """Raised when the acting user is not allowed to perform the transition."""
    status_code = 403


class NotFoundError(TravelMatchError):
    """Raised when a listing, request or confirmation cannot be found."""
    status_code = 404


class StateError(TravelMatchError):
    """Raised when a transition is not legal from the current state."""
    status_code = 409


class CapacityError(TravelMatchError):
    """Raised when a seat reservation loses to another booking."""
    status_code = 409


class TransportError(TravelMatchError):
    """Raised by push transports when delivery fails."""
    status_code = 502
