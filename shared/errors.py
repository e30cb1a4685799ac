"""Error taxonomy shared by the engine and the HTTP layer."""
from typing import Optional


class GameError(Exception):
    """Base class for every error the lifecycle engine surfaces to callers."""

    status_code = 400
    code = "GAME_ERROR"

    def __init__(self, message: str = None, code: str = None):
        self.message = message or self.__class__.__doc__ or "Request failed"
        if code:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(GameError):
    """Invalid input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class CapacityReductionError(ValidationError):
    """Maximum players cannot drop below the confirmed count."""

    code = "CAPACITY_REDUCTION"


class UnbalancedTeams(ValidationError):
    """Teams differ by more than one player."""

    code = "UNBALANCED_TEAMS"


class IncompleteAssignment(ValidationError):
    """Every active registration must be assigned exactly once."""

    code = "INCOMPLETE_ASSIGNMENT"


class NotFoundError(GameError):
    """Resource not found."""

    status_code = 404
    code = "NOT_FOUND"


class ConflictError(GameError):
    """Conflicting request."""

    status_code = 409
    code = "CONFLICT"


class DuplicateRegistration(ConflictError):
    """A registration with this phone number or name already exists."""

    code = "DUPLICATE_REGISTRATION"


class StateError(GameError):
    """Action not allowed in the current game status."""

    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, message: str = None, current_status: Optional[str] = None, code: str = None):
        self.current_status = current_status
        super().__init__(message, code)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status"] = self.current_status
        return data


class RegistrationClosed(StateError):
    """Registrations are closed for this game."""

    code = "REGISTRATION_CLOSED"


class CancellationNotAllowed(StateError):
    """This registration can no longer be cancelled."""

    code = "CANCELLATION_NOT_ALLOWED"


class AuthorizationError(GameError):
    """Not permitted."""

    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = None):
        # Never echo details about the target resource.
        super().__init__("Not permitted")


class RateLimitExceeded(GameError):
    """Too many requests, try again later."""

    status_code = 429
    code = "RATE_LIMITED"


class StorageUnavailable(GameError):
    """Storage is temporarily unavailable."""

    status_code = 503
    code = "STORAGE_UNAVAILABLE"
