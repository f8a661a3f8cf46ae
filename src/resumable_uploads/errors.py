"""
Upload error classes.

Provides a clear taxonomy of failures that can occur while moving a file to
object storage. Every error carries enough structured context (session,
chunk index, HTTP status, backend error code) for the retry/reset
coordinator to classify it without inspecting raw transport exceptions.
"""
from __future__ import annotations

from typing import Optional


class UploadError(Exception):
    """
    Base class for all upload errors.
    
    Attributes:
        session_id: Session the failure belongs to (if known)
        chunk_index: 0-based chunk index, None for session-level operations
        status_code: HTTP status returned by the remote party, if any
        code: Backend error code parsed from the response body, if any
    """
    
    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.session_id = session_id
        self.chunk_index = chunk_index
        self.status_code = status_code
        self.code = code


class TransportError(UploadError):
    """
    Network level failure: connect error, timeout, dropped connection.
    
    Always retryable up to the configured attempt limit.
    """
    
    def __init__(self, message: str, *, timeout: bool = False, **context):
        super().__init__(message, **context)
        self.timeout = timeout


class AuthorizationError(UploadError):
    """
    The local signing server failed or refused to authorize a request.
    
    Raised when:
    - the signature server answers with a non-success status
    - the response is empty or lacks a signature
    - the server explicitly flags the request as invalid
    """
    pass


class BackendRejection(UploadError):
    """
    Structured error returned by the storage service.
    
    The `chunked` flag records whether the rejected call belonged to a
    multi-part transaction; the coordinator uses it together with `code`
    and `status_code` to choose between a chunk retry and a full reset.
    """
    
    def __init__(self, message: str, *, chunked: bool = False, **context):
        super().__init__(message, **context)
        self.chunked = chunked


class ProtocolMismatchError(UploadError):
    """
    Response looked successful but echoed identifiers do not match the request.
    
    Raised when:
    - combine response names a different bucket/container or key
    - combine response omits the bucket or key entirely
    - a capability URI addresses a different resource than requested
    """
    
    def __init__(self, message: str, *, expected: Optional[str] = None, actual: Optional[str] = None, **context):
        super().__init__(message, **context)
        self.expected = expected
        self.actual = actual


class UploadCanceled(UploadError):
    """Cancellation was requested; not a failure, no retry is attempted."""
    pass


class KeyResolutionError(UploadError):
    """The key-naming collaborator could not produce an object key."""
    pass


class FinalizeError(UploadError):
    """Finalize was requested before every planned chunk was acknowledged."""
    pass


class InvalidTransition(UploadError):
    """A session was asked to move to a state its current state cannot reach."""
    pass


__all__ = [
    "UploadError",
    "TransportError",
    "AuthorizationError",
    "BackendRejection",
    "ProtocolMismatchError",
    "UploadCanceled",
    "KeyResolutionError",
    "FinalizeError",
    "InvalidTransition",
]
