"""
Transport executor.

Issues the actual storage requests with httpx, streams request bodies while
reporting progress, and turns every outcome into either a response with the
expected status or a structured UploadError. Cancellation is cooperative:
the session's tasks are cancelled, which aborts the underlying network call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

import httpx

from .errors import BackendRejection, TransportError, UploadCanceled
from .models import ProgressEvent
from .session import UploadSession

__all__ = ["TransportRequest", "TransportExecutor", "ErrorParser", "ProgressCallback"]

logger = logging.getLogger(__name__)

# Parses (code, message) out of an error response body
ErrorParser = Callable[[httpx.Response], Tuple[Optional[str], Optional[str]]]

ProgressCallback = Callable[[ProgressEvent], None]

PROGRESS_STEP = 64 * 1024


def _no_error_details(response: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
    return None, None


@dataclass(frozen=True)
class TransportRequest:
    """
    One storage request, fully authorized.

    Attributes:
        operation: Short name used in logs and errors ("upload_part", ...)
        method: HTTP verb
        url: Target URL, including any signature query parameters
        headers: Headers to send, including authorization headers
        body: Request payload
        expected_status: The single status code that means success
        chunked: True for calls belonging to a multi-part transaction
    """
    operation: str
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    expected_status: int = 200
    chunked: bool = False


class TransportExecutor:
    """Sends TransportRequests on behalf of upload sessions."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_s: float = 60.0,
        on_progress: Optional[ProgressCallback] = None,
        progress_step: int = PROGRESS_STEP,
    ) -> None:
        self._client = client
        self.timeout_s = timeout_s
        self.on_progress = on_progress
        self.progress_step = progress_step

    async def send(
        self,
        request: TransportRequest,
        *,
        session: UploadSession,
        chunk_index: Optional[int] = None,
        error_parser: ErrorParser = _no_error_details,
        track_progress: bool = False,
        cleanup: bool = False,
    ) -> httpx.Response:
        """
        Send one request and check its status.

        Cleanup requests (abort, delete) are sent even when the session is
        already canceled.

        Returns:
            The response, whose status equals request.expected_status

        Raises:
            UploadCanceled: If the session was canceled before or during the call
            TransportError: For connection failures and timeouts
            BackendRejection: For any other status, with parsed code/message
        """
        context = {"session_id": session.session_id, "chunk_index": chunk_index}
        if session.canceled and not cleanup:
            raise UploadCanceled(f"Upload of {session.session_id} canceled before {request.operation}", **context)

        headers = dict(request.headers)
        if track_progress:
            # Explicit length keeps httpx from switching to chunked transfer encoding
            headers["Content-Length"] = str(len(request.body))
            content = self._stream(request.body, session, chunk_index)
        else:
            content = request.body

        url_for_log = request.url.split("?", 1)[0]
        logger.debug(f"{request.operation}: {request.method} {url_for_log} ({len(request.body)} bytes) for {session.session_id}")

        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=headers,
                content=content,
                timeout=self.timeout_s,
            )
        except asyncio.CancelledError:
            if session.canceled and not cleanup:
                raise UploadCanceled(f"Upload of {session.session_id} canceled during {request.operation}", **context) from None
            raise
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout during {request.operation}: {e}", timeout=True, **context) from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error during {request.operation}: {e}", **context) from e

        logger.debug(f"{request.operation}: received status {response.status_code} for {session.session_id}")

        if response.status_code != request.expected_status:
            code, message = error_parser(response)
            detail = f"{code}: {message}" if code else f"status {response.status_code}"
            logger.error(f"{request.operation} failed for {session.session_id} (chunk {chunk_index}): {detail}")
            raise BackendRejection(
                f"{request.operation} rejected by storage service ({detail})",
                chunked=request.chunked,
                status_code=response.status_code,
                code=code,
                **context,
            )
        return response

    async def _stream(
        self,
        body: bytes,
        session: UploadSession,
        chunk_index: Optional[int],
    ) -> AsyncIterator[bytes]:
        total = len(body)
        loaded = 0
        for offset in range(0, total, self.progress_step):
            piece = body[offset:offset + self.progress_step]
            yield piece
            loaded += len(piece)
            self._emit(session, chunk_index, loaded, total)
        if total == 0:
            self._emit(session, chunk_index, 0, 0)

    def _emit(self, session: UploadSession, chunk_index: Optional[int], loaded: int, total: int) -> None:
        session.record_progress(chunk_index, loaded)
        if self.on_progress is not None:
            self.on_progress(ProgressEvent(session.session_id, chunk_index, loaded, total))
