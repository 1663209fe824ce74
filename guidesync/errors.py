"""
Error types raised inside guidesync.

Remote errors never reach presentation code: the sync coordinator turns them
into sync status changes. Local persistence errors stop at the store.
"""


class GuideSyncError(Exception):
    """Base class for all guidesync errors."""


class LocalPersistenceError(GuideSyncError):
    """The local progress file could not be read or written."""


class RemoteError(GuideSyncError):
    """Base class for failures talking to the remote progress service."""


class NotFoundError(RemoteError):
    """No progress row exists yet for the user."""


class TransportError(RemoteError):
    """Network failure, auth rejection or service-side error."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class AuthError(GuideSyncError):
    """Sign-in, refresh or sign-out was rejected."""


class ImportValidationError(GuideSyncError):
    """An imported progress snapshot had an invalid field."""
