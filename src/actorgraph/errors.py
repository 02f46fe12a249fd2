from __future__ import annotations


class ActorGraphError(RuntimeError):
    pass


class OracleUnavailable(ActorGraphError):
    """The extraction backend could not be reached or answered with an error."""


class OracleParseError(ActorGraphError):
    """The extraction backend answered, but nothing usable could be parsed."""


class StoreUnavailable(ActorGraphError):
    """The SQLite store failed; the current operation was rolled back."""


class ValidationError(ActorGraphError, ValueError):
    """A required identifier is missing or invalid. Nothing was written."""


class InvalidTransition(ValidationError):
    pass


def require_id(value, what: str) -> int:
    """Return ``value`` as a positive int or raise ValidationError."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{what} is required")
    try:
        ident = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{what} must be an integer id, got {value!r}") from e
    if ident <= 0:
        raise ValidationError(f"{what} must be positive, got {ident}")
    return ident
