"""Error kinds raised by coach services and mapped to HTTP responses in main."""


class CoachError(Exception):
    """Base class for expected, caller-facing failures."""
    code = "COACH_ERROR"


class ValidationError(CoachError):
    """Input is malformed or breaks a business rule."""
    code = "VALIDATION_ERROR"


class NotFoundError(ValidationError):
    """A referenced row does not exist."""
    code = "NOT_FOUND"


class ConflictError(ValidationError):
    """The write collides with an existing row (e.g. second feedback)."""
    code = "CONFLICT"


class ForbiddenError(CoachError):
    """The actor's scope does not cover the requested branch, owner or record."""
    code = "AUTH_FORBIDDEN"

    def __init__(self, message: str = "You do not have access to this resource"):
        super().__init__(message)


class AuthRequiredError(CoachError):
    """No valid session or service token."""
    code = "AUTH_REQUIRED"

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)
