"""
Upload orchestration engine.

The Uploader drives every submitted session through its lifecycle:

    PENDING -> KEY_RESOLVING -> [INITIATING] -> TRANSFERRING -> [FINALIZING] -> COMPLETE

Chunk transfers run as independent tasks behind a per-session admission
gate; the finalize step starts only after every chunk task has settled.
Failures are classified by the RetryResetCoordinator and the attempt loop is
driven by a tenacity retry policy built from Settings.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from functools import partial
from typing import Dict, List, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .backends.base import ChunkedUploadBackend
from .coordinator import RETRYABLE_ACTIONS, Action, RetryResetCoordinator
from .errors import KeyResolutionError, UploadCanceled, UploadError
from .finalizer import Finalizer
from .keys import KeyResolver, UuidKeyResolver
from .models import ChunkDescriptor, FinalizeResult, UploadStatus
from .persistence import InMemoryPersistence, PersistenceAdapter
from .planner import plan_chunks
from .session import SessionStore, UploadSession
from .settings import Settings
from .sources import UploadSource

__all__ = ["Uploader"]

logger = logging.getLogger(__name__)

S = UploadStatus

# Upper bound for the exponential backoff between attempts
MAX_BACKOFF_S = 30.0


class Uploader:
    """
    Engine façade owning the session store, backend, coordinator and
    persistence adapter.

    Example:
        >>> uploader = Uploader(settings=settings, backend=backend)
        >>> session = uploader.submit(FileSource("model.bin"))
        >>> result = await uploader.upload(session.session_id)
    """

    def __init__(
        self,
        *,
        settings: Settings,
        backend: ChunkedUploadBackend,
        key_resolver: Optional[KeyResolver] = None,
        persistence: Optional[PersistenceAdapter] = None,
        coordinator: Optional[RetryResetCoordinator] = None,
        store: Optional[SessionStore] = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.key_resolver = key_resolver or UuidKeyResolver()
        self.persistence = persistence if persistence is not None else InMemoryPersistence()
        self.coordinator = coordinator or RetryResetCoordinator(max_auth_failures=settings.max_auth_failures)
        self.store = store if store is not None else SessionStore()
        self.finalizer = Finalizer(backend)
        self._actions: Dict[str, Action] = {}

    # Session management

    def submit(self, source: UploadSource, session_id: Optional[str] = None) -> UploadSession:
        """
        Plan a file and register its session.

        When the persistence adapter holds progress for the same session id
        and the same plan, the session resumes from it.
        """
        session_id = session_id or uuid.uuid4().hex
        plan = plan_chunks(
            source.size,
            chunk_size=self.settings.chunk_size,
            min_file_size_for_chunking=self.settings.min_file_size_for_chunking,
        )
        session = UploadSession(session_id, source, plan, bucket=self.settings.bucket_name)

        if plan.chunked:
            record_id = self.backend.record_id(session_id)
            state = self.persistence.load(record_id)
            if state is not None and not session.restore(state):
                self.persistence.clear(record_id)

        self.store.add(session)
        logger.info(
            f"Submitted {source.name} as {session_id}: {source.size} bytes, "
            f"{len(plan)} chunk(s){'' if plan.chunked else ' (whole file)'}"
        )
        return session

    def get(self, session_id: str) -> UploadSession:
        return self.store.get(session_id)

    async def cancel(self, session_id: str) -> None:
        """
        Request cancellation of a session.

        A running upload observes the flag, aborts its in-flight requests and
        performs cleanup itself; an idle session is canceled and cleaned up
        here.
        """
        session = self.store.get(session_id)
        if session.terminal:
            return
        logger.info(f"Cancel requested for {session_id}")
        session.request_cancel()
        if not session.running:
            session.transition(S.CANCELED)
            await self._cleanup(session)

    async def expunge(self, session_id: str) -> None:
        """
        Destroy a session.

        Unfinished sessions are canceled first. Unlike a plain cancel, an
        open transaction is released even when no chunk was acknowledged.
        """
        session = self.store.get(session_id)
        if session.status is not S.COMPLETE:
            session.request_cancel()
            if not session.running:
                if not session.terminal:
                    session.transition(S.CANCELED)
                await self._cleanup(session, release_transaction=True)
        self.persistence.clear(self.backend.record_id(session_id))
        self.coordinator.forget(session_id)
        self._actions.pop(session_id, None)
        self.store.remove(session_id)
        logger.info(f"Expunged session {session_id}")

    async def abort_persisted(self, session_id: str) -> bool:
        """
        Release a transaction left behind by an earlier process.

        Returns:
            True if a persisted record existed
        """
        state = self.persistence.load(self.backend.record_id(session_id))
        if state is None:
            return False
        session = UploadSession.from_persisted(state, bucket=self.settings.bucket_name)
        self.store.add(session)
        await self.expunge(session_id)
        return True

    # Upload

    async def upload(self, session_id: str) -> FinalizeResult:
        """
        Run a session to completion.

        Attempts are retried according to Settings (max_attempts,
        retry_backoff_s) for as long as the coordinator classifies the
        failure as RETRY, REAUTHORIZE or RESET.

        Raises:
            UploadError: The structured failure of the last attempt; the
                session is left FAILED, CANCELED or RESET_REQUIRED
        """
        session = self.store.get(session_id)
        if session.source is None:
            raise UploadError(f"Session {session_id} has no source and can only be aborted", session_id=session_id)
        if session.terminal:
            raise UploadError(f"Session {session_id} is already {session.status.value}", session_id=session_id)
        if session.running:
            raise UploadError(f"Session {session_id} is already uploading", session_id=session_id)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_s, max=MAX_BACKOFF_S),
            retry=retry_if_exception(partial(self._should_retry, session)),
            before_sleep=partial(self._log_retry, session),
            sleep=partial(self._backoff, session),
            reraise=True,
        )

        session.running = True
        try:
            result = await retrying(self._run_attempt, session)
        except UploadError as e:
            session.error = e
            if not session.terminal and session.status is not S.RESET_REQUIRED:
                session.transition(S.FAILED)
            logger.error(f"Upload {session_id} ended {session.status.value} after {session.attempts} attempt(s): {e}")
            raise
        finally:
            session.running = False

        self.persistence.clear(self.backend.record_id(session_id))
        self.coordinator.forget(session_id)
        return result

    def _should_retry(self, session: UploadSession, error: BaseException) -> bool:
        return isinstance(error, UploadError) and self._actions.get(session.session_id) in RETRYABLE_ACTIONS

    def _log_retry(self, session: UploadSession, retry_state) -> None:
        action = self._actions.get(session.session_id)
        logger.warning(
            f"Attempt {retry_state.attempt_number} of {session.session_id} failed "
            f"({action.value if action else 'unknown'}): {retry_state.outcome.exception()}"
        )

    async def _backoff(self, session: UploadSession, seconds: float) -> None:
        """Wait between attempts; a cancel request ends the wait early."""
        try:
            await session.track(asyncio.ensure_future(asyncio.sleep(seconds)))
        except asyncio.CancelledError:
            if not session.canceled:
                raise

    async def _run_attempt(self, session: UploadSession) -> FinalizeResult:
        self._actions.pop(session.session_id, None)
        session.attempts += 1
        try:
            if session.canceled:
                raise UploadCanceled(f"Upload of {session.session_id} canceled", session_id=session.session_id)
            if session.status is S.RESET_REQUIRED:
                session.transition(S.PENDING)
            result = await self._attempt(session, session.attempts)
        except UploadError as error:
            action = self.coordinator.classify(error, session_id=session.session_id)
            self._actions[session.session_id] = action
            await self._apply(session, action, error)
            raise
        self.coordinator.record_success(session.session_id)
        return result

    async def _apply(self, session: UploadSession, action: Action, error: UploadError) -> None:
        session.error = error
        if action is Action.CANCEL:
            if not session.terminal:
                session.transition(S.CANCELED)
            await self._cleanup(session)
        elif action is Action.RESET:
            logger.warning(f"Session {session.session_id} requires a full reset: {error}")
            session.transition(S.RESET_REQUIRED)
            session.reset()
            self.persistence.clear(self.backend.record_id(session.session_id))
        elif action is Action.FAIL:
            if not session.terminal:
                session.transition(S.FAILED)

    async def _attempt(self, session: UploadSession, attempt: int) -> FinalizeResult:
        if session.status is S.PENDING:
            session.transition(S.KEY_RESOLVING)

        if session.status is S.KEY_RESOLVING:
            await self._resolve_key(session)
            if session.plan.chunked and self.backend.requires_initiate and session.remote_handle is None:
                session.transition(S.INITIATING)
            else:
                session.transition(S.TRANSFERRING)

        if not session.plan.chunked:
            return await self._upload_whole(session, attempt)

        if session.status in (S.INITIATING, S.TRANSFERRING):
            await self._transfer_chunks(session, attempt)

        return await self._tracked(session, self.finalizer.finalize(session, attempt))

    async def _resolve_key(self, session: UploadSession) -> None:
        if session.object_key:
            return
        try:
            key = await self.key_resolver.resolve_key(session.session_id, session.source.name)
        except Exception as e:
            raise KeyResolutionError(f"Key resolution failed for {session.session_id}: {e}", session_id=session.session_id) from e
        if not key:
            raise KeyResolutionError(f"Key resolver returned an empty key for {session.session_id}", session_id=session.session_id)
        session.object_key = key
        logger.info(f"Session {session.session_id}: object key is {key}")

    async def _tracked(self, session: UploadSession, coro):
        """Run a session-level request as a task that cancellation can abort."""
        task = session.track(asyncio.ensure_future(coro))
        try:
            return await task
        except asyncio.CancelledError:
            if session.canceled:
                raise UploadCanceled(f"Upload of {session.session_id} canceled", session_id=session.session_id) from None
            raise

    async def _upload_whole(self, session: UploadSession, attempt: int) -> FinalizeResult:
        async def send() -> FinalizeResult:
            data = await asyncio.to_thread(session.source.read_range, 0, session.plan.file_size)
            return await self.backend.upload_whole(session, data, attempt)

        result = await self._tracked(session, send())
        session.transition(S.COMPLETE)
        logger.info(f"Upload {session.session_id} complete: {result.bucket}/{result.key}")
        return result

    async def _initiate(self, session: UploadSession, attempt: int) -> str:
        return await self.backend.initiate(session, attempt)

    async def _transfer_chunks(self, session: UploadSession, attempt: int) -> None:
        pending = session.pending_descriptors()
        logger.info(f"Session {session.session_id}: transferring {len(pending)} of {len(session.plan)} chunks (attempt {attempt})")

        gate = asyncio.Semaphore(self.settings.max_connections)
        abandoned = asyncio.Event()
        tasks = [
            session.track(asyncio.ensure_future(self._send_chunk(session, descriptor, attempt, gate, abandoned)))
            for descriptor in pending
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        errors: List[BaseException] = []
        for outcome in outcomes:
            if isinstance(outcome, asyncio.CancelledError):
                if not session.canceled:
                    raise outcome
                errors.append(UploadCanceled(f"Upload of {session.session_id} canceled", session_id=session.session_id))
            elif isinstance(outcome, UploadError):
                errors.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome

        if errors:
            raise self.coordinator.most_severe(errors)
        if session.status is S.INITIATING:
            session.transition(S.TRANSFERRING)

    async def _send_chunk(
        self,
        session: UploadSession,
        descriptor: ChunkDescriptor,
        attempt: int,
        gate: asyncio.Semaphore,
        abandoned: asyncio.Event,
    ) -> None:
        async with gate:
            # No new chunk starts after cancellation or a failure that dooms the attempt
            if session.canceled:
                raise UploadCanceled(
                    f"Upload of {session.session_id} canceled",
                    session_id=session.session_id,
                    chunk_index=descriptor.index,
                )
            if abandoned.is_set():
                return

            if self.backend.requires_initiate:
                try:
                    await session.ensure_remote_handle(partial(self._initiate, session, attempt))
                except UploadError:
                    abandoned.set()
                    raise
                if session.status is S.INITIATING:
                    session.transition(S.TRANSFERRING)
                    self._persist(session)

            try:
                data = await asyncio.to_thread(session.source.read_range, descriptor.start, descriptor.end)
                receipt = await self.backend.upload_chunk(session, descriptor, data, attempt)
            except UploadError as e:
                if self.coordinator.peek(e) in (Action.RESET, Action.FAIL):
                    abandoned.set()
                raise

        session.add_receipt(receipt)
        self._persist(session)
        logger.debug(f"Session {session.session_id}: chunk {descriptor.index} acknowledged ({len(session.receipts)}/{len(session.plan)})")

    # Persistence and cleanup

    def _persist(self, session: UploadSession) -> None:
        if session.plan.chunked:
            self.persistence.save(self.backend.record_id(session.session_id), session.to_persisted())

    async def _cleanup(self, session: UploadSession, *, release_transaction: bool = False) -> None:
        """
        Best-effort release of server-side resources; aborts at most once.

        A canceled upload is aborted only once a chunk was acknowledged;
        release_transaction also aborts an open transaction without parts.
        """
        if session.cleanup_done:
            return

        if session.receipts or (release_transaction and session.remote_handle):
            session.cleanup_done = True
            try:
                await self.backend.abort(session)
                logger.info(f"Released server-side resources for {session.session_id}")
            except UploadError as e:
                logger.warning(f"Cleanup request for {session.session_id} failed: {e}")
        self.persistence.clear(self.backend.record_id(session.session_id))
