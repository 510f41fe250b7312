# mirror/errors.py


class MirrorError(Exception):
    """Base class for every error the mirror raises to its callers."""


class NetworkUnavailable(MirrorError):
    """No connectivity at call time; callers should defer rather than retry."""


class NoCachedData(NetworkUnavailable):
    """Nothing is stored locally and the remote cannot be reached."""

    def __init__(self, what: str = "catalog"):
        super().__init__(
            f"No cached {what} data is available; a network connection is required."
        )
        self.what = what


class RemoteError(MirrorError):
    """The remote answered with a failure status or an unusable payload."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class EmptyRemoteResponse(RemoteError):
    """The remote answered successfully but returned no records."""


class StorageExhausted(MirrorError):
    """The local database could not be written because the disk is full."""


class CloudUnavailable(MirrorError):
    """The cloud replica is unreachable or not configured."""
