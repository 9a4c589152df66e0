from __future__ import annotations


class DMSyncError(Exception):
    pass


class ValidationError(DMSyncError, ValueError):
    """Input rejected locally, before any substrate round trip."""


class TransportError(DMSyncError):
    """A substrate call failed or was rejected."""


class ConstraintViolation(TransportError):
    pass


class UniqueViolation(ConstraintViolation):
    """An insert collided with an existing row under a uniqueness constraint."""


class SubscriptionError(TransportError):
    pass


class PresenceWriteError(TransportError):
    pass
