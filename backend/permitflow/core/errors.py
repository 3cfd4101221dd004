"""
Domain error taxonomy.

Services raise these; the API layer maps them to HTTP status codes
(see ``register_exception_handlers`` in ``permitflow.main``).
"""

from pymongo.errors import DuplicateKeyError


class PermitEngineError(Exception):
    """Base class for all per-request domain errors"""
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(PermitEngineError):
    """Malformed or out-of-range input"""
    status_code = 400


class AuthorizationError(PermitEngineError):
    """Ownership, role or module-permission failure"""
    status_code = 403

    def __init__(self, message: str = "You do not have permission to perform this action", **details):
        super().__init__(message, **details)


class NotFoundError(PermitEngineError):
    status_code = 404


class ConflictError(PermitEngineError):
    """Duplicate of something that must be unique"""
    status_code = 400


class StateError(PermitEngineError):
    """Operation not valid for the entity's current status"""
    status_code = 400


def conflict_from_duplicate(error: DuplicateKeyError, what: str) -> ConflictError:
    """Translate a Mongo unique-index violation into a readable ConflictError"""
    return ConflictError(f"{what} already exists", key=str(getattr(error, "details", None) or ""))
