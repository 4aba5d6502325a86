"""
Error taxonomy shared by services and blueprints.

Services raise these; blueprints translate them into flash messages,
redirects or error pages. None of them is fatal to the process.
"""
from __future__ import annotations


class BreakageError(Exception):
    """Base class for application errors scoped to a single user action."""

    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BreakageError):
    """Missing or invalid input. Carries one message per problem."""

    status_code = 400

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class AuthorizationError(BreakageError):
    """The access policy denied the operation."""

    status_code = 403

    def __init__(self, message: str = "Access denied.") -> None:
        super().__init__(message)


class ConflictError(BreakageError):
    """State already transitioned, duplicate key, or a blocking reference."""

    status_code = 409


class NotFoundError(BreakageError):
    status_code = 404

    def __init__(self, entity: str, entity_id: int | str | None = None) -> None:
        if entity_id is not None:
            message = f"{entity} {entity_id} not found."
        else:
            message = f"{entity} not found."
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id
