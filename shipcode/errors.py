"""Exception types raised by the ShipCode data layer."""


class ShipcodeError(Exception):
    """Base class for all ShipCode errors."""


class BackendError(ShipcodeError):
    """A backend collaborator rejected or failed a request."""


class AuthenticationError(BackendError):
    """The credential exchange was refused."""


class ProfileNotFoundError(BackendError):
    """A backend session exists but no profile resolves it to an Identity."""


class PermissionDeniedError(ShipcodeError):
    """The current identity lacks the capability an operation requires."""

    def __init__(self, capability: str, action: str | None = None) -> None:
        self.capability = capability
        self.action = action
        message = f"Missing capability {capability}"
        if action:
            message += f" for {action}"
        super().__init__(message)


class InvalidTransitionError(ShipcodeError):
    """A status change violates an ordering rule."""


class ValidationError(ShipcodeError):
    """A draft entity is malformed."""
