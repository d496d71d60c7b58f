"""Exception types shared across the defense engine."""


class NkShieldError(Exception):
    """Base class for all nkshield errors."""

    pass


class StoreUnavailableError(NkShieldError):
    """Raised when the backing KV store cannot be reached."""

    pass


class ValidationError(NkShieldError):
    """Raised for malformed or attacker-supplied input (HTTP 400)."""

    pass


class AuthorizationError(NkShieldError):
    """Raised when an admin session is missing or invalid (HTTP 403)."""

    pass
