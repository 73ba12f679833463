import errno
from typing import Optional


class SharingError(Exception):
    """Base class for every failure raised by packshare."""

    def __init__(self, message: str, operation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation_id = operation_id

    def __str__(self) -> str:
        if self.operation_id:
            return f'[{self.operation_id}] {self.message}'
        return self.message


# Export-time

class SourceUnavailable(SharingError):
    pass


class DiskFull(SharingError):
    pass


class PermissionDenied(SharingError):
    pass


# Tunnel layer. Transient; callers may retry with backoff.

class TunnelError(SharingError):
    pass


class TunnelUnavailable(TunnelError):
    pass


class NetworkError(TunnelError):
    pass


class RateLimited(TunnelError):
    pass


# Import-time integrity

class ManifestInvalid(SharingError):
    pass


class MalformedManifest(ManifestInvalid):
    """Raised by manifest validation when a header breaks the schema."""


class ChecksumMismatch(SharingError):
    pass


class ConnectionLost(SharingError):
    pass


# Caller misuse

class AlreadySeeding(SharingError):
    pass


class UnknownExport(SharingError):
    pass


def translate_os_error(exc: OSError, operation_id: Optional[str] = None) -> SharingError:
    """Map a filesystem error onto the export-time taxonomy."""
    if exc.errno in (errno.ENOSPC, errno.EDQUOT):
        return DiskFull(f'Not enough disk space: {exc}', operation_id)
    if exc.errno in (errno.EACCES, errno.EPERM) or isinstance(exc, PermissionError):
        return PermissionDenied(f'Permission denied: {exc}', operation_id)
    return SourceUnavailable(f'Source unavailable: {exc}', operation_id)
