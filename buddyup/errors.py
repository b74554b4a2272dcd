"""Error taxonomy for the trip lifecycle service.

Services raise these; the API server maps them to HTTP responses in one place.
"""

GENERIC_FAILURE_MESSAGE = "Could not complete action, please try again"


class TripServiceError(Exception):
    """Base class for every error the trip lifecycle service raises on purpose."""

    code = "error"
    status_code = 400
    # Whether the caller sees the specific message or the generic one
    user_visible = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    @property
    def public_message(self) -> str:
        return self.message if self.user_visible else GENERIC_FAILURE_MESSAGE


class ValidationError(TripServiceError):
    """Malformed input: rejected synchronously, never retried."""

    code = "validation_error"
    status_code = 422
    user_visible = True


class NotFoundError(TripServiceError):
    """Referenced trip, participant, message or notification does not exist."""

    code = "not_found"
    status_code = 404
    user_visible = True


class PermissionDenied(TripServiceError):
    """Caller is not allowed to perform a creator-only or member-only action."""

    code = "permission_denied"
    status_code = 403
    user_visible = True


class CapacityExceeded(TripServiceError):
    """Accepting the request would oversubscribe the trip's seats."""

    code = "capacity_exceeded"
    status_code = 409


class ConflictError(TripServiceError):
    """State changed underneath the caller (participant no longer pending, trip no longer active)."""

    code = "conflict"
    status_code = 409


class TransientStoreError(TripServiceError):
    """Store unreachable. Safe to retry only for idempotent operations."""

    code = "transient_store_error"
    status_code = 503
