"""
ocipkg error classes.

Provides a clear taxonomy of errors that can occur while building, storing
and transferring OCI images. Registry HTTP status codes and transport
exceptions are mapped onto these classes so callers see one consistent
error interface regardless of which component failed.
"""
from __future__ import annotations


class OciError(Exception):
    """Base class for all ocipkg errors."""
    pass


class InvalidName(OciError, ValueError):
    """
    Malformed image name, tag or digest reference.

    Raised when:
    - Repository components violate the registry path grammar
    - Tag is empty, too long or contains forbidden characters
    - Digest is not ``algorithm:hex`` with a supported algorithm
    """
    pass


class AlreadyExists(OciError, FileExistsError):
    """Output path collision (pack refuses to overwrite)."""
    pass


class IoError(OciError, OSError):
    """
    Filesystem failure.

    Raised when an input path is missing or unreadable, or when the local
    store cannot be written.
    """
    pass


class DigestMismatch(OciError):
    """
    Content digest validation failed.

    Raised when:
    - A blob in an archive does not hash to its file name
    - A downloaded blob or manifest does not hash to the requested digest
    - The registry reports a digest different from the local computation

    Always fatal to the operation in progress.
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NotFound(OciError):
    """
    Resource not found.

    Raised when:
    - An image name is not present in the local store
    - HTTP 404 for a manifest or blob
    - A manifest references a blob that is missing
    """
    pass


class AuthFailure(OciError):
    """
    Authentication or authorization error.

    Raised when:
    - The token endpoint rejects the credentials
    - The registry still answers 401/403 after the auth exchange
    """
    pass


class ProtocolError(OciError):
    """
    Malformed or unexpected registry response.

    Raised for any non-2xx status that is not auth or not-found, and for
    responses missing required headers or carrying unparsable bodies.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(OciError):
    """
    Transient transport failure (connection reset, timeout).

    The only error class retried by the distribution client, and only for
    idempotent requests.
    """
    pass


__all__ = [
    "OciError",
    "InvalidName",
    "AlreadyExists",
    "IoError",
    "DigestMismatch",
    "NotFound",
    "AuthFailure",
    "ProtocolError",
    "NetworkError",
]
