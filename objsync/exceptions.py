"""Application-level exception types.

Convention:
- ``NotFoundError``: unknown backend, filter, file or sync config (404).
- ``InvalidPathError`` / ``ValidationError``: the caller sent something
  malformed; the message names the offending segment or token so it can be
  corrected (400). Never retried.
- ``ConflictError``: a concurrent or duplicate modification was detected (409).
- ``StorageError``: a physical backend was unreachable or rejected a request
  (502). ``transient`` marks failures worth retrying.
- ``PersistenceError``: the metadata store is unavailable or a transaction
  failed (503). Never retried transparently.
- ``InternalServerError``: for errors whose details must never reach clients
  (credential decryption failures and the like). The global handler logs the
  full message at ERROR and returns a generic "Internal server error" (500).
"""

from __future__ import annotations


class ObjSyncError(Exception):
    """Base class for all domain errors."""

    status_code = 500


class NotFoundError(ObjSyncError):
    """Raised when a backend, filter, file or sync config does not exist."""

    status_code = 404


class InvalidPathError(ObjSyncError):
    """Raised for malformed virtual paths and illegal backend identifiers."""

    status_code = 400

    def __init__(self, message: str, segment: str | None = None) -> None:
        super().__init__(message)
        self.segment = segment


class ValidationError(ObjSyncError):
    """Raised for malformed filter queries and invalid configuration values.

    ``position`` is the zero-based character offset of the offending token
    when the error comes from the query parser.
    """

    status_code = 400

    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__(message)
        self.position = position

    def __str__(self) -> str:
        message = super().__str__()
        if self.position is None:
            return message
        return f"{message} (at position {self.position})"


class ConflictError(ObjSyncError):
    """Raised when a concurrent or duplicate modification is detected."""

    status_code = 409


class StorageError(ObjSyncError):
    """Raised when a physical storage backend fails a request."""

    status_code = 502

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class PersistenceError(ObjSyncError):
    """Raised when the metadata store is unavailable or a transaction fails."""

    status_code = 503


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``objsync/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """
