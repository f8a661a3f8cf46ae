"""
Tests for the transport executor.
"""
from __future__ import annotations

import asyncio

import httpx
import pytest

from resumable_uploads.errors import BackendRejection, TransportError, UploadCanceled
from resumable_uploads.planner import plan_chunks
from resumable_uploads.session import UploadSession
from resumable_uploads.sources import BytesSource
from resumable_uploads.transport import TransportExecutor, TransportRequest

URL = "https://storage.example.com/bucket/key"


def make_session():
    plan = plan_chunks(3000, chunk_size=1000, min_file_size_for_chunking=0)
    return UploadSession("s-1", BytesSource(b"x" * 3000), plan, bucket="bucket")


def parse_code(response):
    return response.headers.get("x-error-code"), "details"


class TestSend:
    """Test status checking and error mapping."""

    @pytest.mark.asyncio
    async def test_expected_status_returns_response(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            executor = TransportExecutor(client)
            response = await executor.send(
                TransportRequest("put_block", "PUT", URL, headers={"X-Test": "1"}, body=b"abc", expected_status=201),
                session=make_session(),
            )

        assert response.status_code == 201
        assert seen[0].content == b"abc"
        assert seen[0].headers["x-test"] == "1"

    @pytest.mark.asyncio
    async def test_unexpected_status_is_rejection(self):
        """Any status other than the expected one is a rejection, even another 2xx."""
        def handler(request):
            return httpx.Response(200, headers={"x-error-code": "Odd"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            executor = TransportExecutor(client)
            with pytest.raises(BackendRejection) as exc_info:
                await executor.send(
                    TransportRequest("put_block", "PUT", URL, expected_status=201, chunked=True),
                    session=make_session(),
                    chunk_index=2,
                    error_parser=parse_code,
                )

        error = exc_info.value
        assert error.status_code == 200
        assert error.code == "Odd"
        assert error.chunked is True
        assert error.chunk_index == 2
        assert error.session_id == "s-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exception,timeout", [
        (httpx.ConnectError, False),
        (httpx.ReadTimeout, True),
    ])
    async def test_network_failures(self, exception, timeout):
        def handler(request):
            raise exception("boom", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TransportError) as exc_info:
                await TransportExecutor(client).send(TransportRequest("op", "GET", URL), session=make_session())

        assert exc_info.value.timeout is timeout


class TestCancellation:
    @pytest.mark.asyncio
    async def test_canceled_session_sends_nothing(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        session = make_session()
        session.request_cancel()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UploadCanceled):
                await TransportExecutor(client).send(TransportRequest("op", "PUT", URL), session=session)

        assert calls == []

    @pytest.mark.asyncio
    async def test_cleanup_requests_bypass_cancel(self):
        def handler(request):
            return httpx.Response(204)

        session = make_session()
        session.request_cancel()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await TransportExecutor(client).send(
                TransportRequest("abort", "DELETE", URL, expected_status=204),
                session=session,
                cleanup=True,
            )
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_cancel_during_call(self):
        """Cancelling the tracked task aborts the request with UploadCanceled."""
        started = asyncio.Event()

        async def handler(request):
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        session = make_session()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            executor = TransportExecutor(client)
            task = session.track(asyncio.ensure_future(
                executor.send(TransportRequest("op", "PUT", URL), session=session)
            ))
            await started.wait()
            session.request_cancel()
            with pytest.raises(UploadCanceled):
                await task


class TestProgress:
    """Test progress reporting while streaming a body."""

    @pytest.mark.asyncio
    async def test_progress_events_reach_total(self):
        events = []

        def handler(request):
            return httpx.Response(200)

        session = make_session()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            executor = TransportExecutor(client, on_progress=events.append, progress_step=400)
            await executor.send(
                TransportRequest("upload_part", "PUT", URL, body=b"y" * 1000),
                session=session,
                chunk_index=1,
                track_progress=True,
            )

        assert [event.loaded for event in events] == [400, 800, 1000]
        assert all(event.total == 1000 and event.chunk_index == 1 for event in events)
        assert session.bytes_sent == 1000
