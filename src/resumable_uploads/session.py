"""
Session state store and lifecycle state machine.

Each submitted file gets one UploadSession holding everything the engine
knows about it: the chunk plan, the cached object key, the remote
multi-part handle, the receipts collected so far and the cancellation flag.
Sessions are addressed through a SessionStore by their opaque id.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, FrozenSet, Iterator, List, Optional, Set, Union

from .errors import InvalidTransition, UploadError
from .models import (
    TERMINAL_STATUSES,
    ChunkDescriptor,
    ChunkPlan,
    ChunkReceipt,
    PersistedState,
    ReceiptStatus,
    UploadStatus,
)
from .planner import plan_chunks
from .sources import UploadSource

__all__ = ["UploadSession", "SessionStore", "ALLOWED_TRANSITIONS"]

logger = logging.getLogger(__name__)

S = UploadStatus

# Forward transitions; CANCELED and FAILED are reachable from every
# non-terminal state and are added in UploadSession.transition()
ALLOWED_TRANSITIONS: Dict[UploadStatus, FrozenSet[UploadStatus]] = {
    S.PENDING: frozenset({S.KEY_RESOLVING}),
    S.KEY_RESOLVING: frozenset({S.INITIATING, S.TRANSFERRING}),
    S.INITIATING: frozenset({S.TRANSFERRING, S.RESET_REQUIRED}),
    S.TRANSFERRING: frozenset({S.FINALIZING, S.COMPLETE, S.RESET_REQUIRED}),
    S.FINALIZING: frozenset({S.COMPLETE, S.RESET_REQUIRED}),
    S.RESET_REQUIRED: frozenset({S.PENDING}),
    S.COMPLETE: frozenset(),
    S.CANCELED: frozenset(),
    S.FAILED: frozenset(),
}


class UploadSession:
    """
    Mutable per-file upload state.

    The remote handle slot moves Not-present -> pending future -> concrete
    value exactly once per session lifetime; only reset() returns it to
    Not-present. Receipts are appended in arrival order and never reordered.
    """

    def __init__(self, session_id: str, source: Optional[UploadSource], plan: ChunkPlan, *, bucket: str) -> None:
        if not session_id:
            raise ValueError("session_id must not be empty")
        self.session_id = session_id
        self.source = source
        self.plan = plan
        self.bucket = bucket
        self.status = UploadStatus.PENDING
        self.object_key: Optional[str] = None
        self.error: Optional[UploadError] = None
        self.attempts = 0
        self.running = False
        self.cleanup_done = False
        self._handle: Union[None, "asyncio.Future[str]", str] = None
        self._receipts: List[ChunkReceipt] = []
        self._canceled = False
        self._in_flight: Set["asyncio.Future"] = set()
        self._progress: Dict[Optional[int], int] = {}

    def __repr__(self) -> str:
        return (
            f"UploadSession(id={self.session_id!r}, status={self.status.value}, "
            f"receipts={len(self._receipts)}/{len(self.plan)})"
        )

    # Lifecycle

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: UploadStatus) -> None:
        """
        Move to new_status.

        Raises:
            InvalidTransition: If the current state cannot reach new_status
        """
        if new_status is self.status:
            return
        allowed = ALLOWED_TRANSITIONS[self.status]
        if not self.terminal and new_status in (S.CANCELED, S.FAILED):
            allowed = allowed | {new_status}
        if new_status not in allowed:
            raise InvalidTransition(
                f"Cannot move session {self.session_id} from {self.status.value} to {new_status.value}",
                session_id=self.session_id,
            )
        logger.debug(f"Session {self.session_id}: {self.status.value} -> {new_status.value}")
        self.status = new_status

    # Remote handle

    @property
    def remote_handle(self) -> Optional[str]:
        """Concrete multi-part transaction id, or None while absent or pending."""
        return self._handle if isinstance(self._handle, str) else None

    @property
    def handle_pending(self) -> bool:
        return isinstance(self._handle, asyncio.Future)

    async def ensure_remote_handle(self, initiate: Callable[[], Awaitable[str]]) -> str:
        """
        Return the remote handle, initiating the transaction at most once.

        Concurrent callers arriving while the initiate call is in flight all
        await the same future. A failed initiate clears the slot so a later
        attempt may initiate again.
        """
        if isinstance(self._handle, str):
            return self._handle
        if self._handle is None:
            self._handle = asyncio.ensure_future(self._initiate_once(initiate))
        # Shielded so one waiter being cancelled does not cancel the shared call
        return await asyncio.shield(self._handle)

    async def _initiate_once(self, initiate: Callable[[], Awaitable[str]]) -> str:
        me = asyncio.current_task()
        try:
            handle = await initiate()
        except BaseException:
            if self._handle is me:
                self._handle = None
            raise
        if self._handle is me:
            self._handle = handle
        return handle

    def set_remote_handle(self, handle: str) -> None:
        """Install a concrete handle restored from persisted state."""
        if self._handle is not None:
            raise UploadError(f"Session {self.session_id} already has a remote handle", session_id=self.session_id)
        self._handle = handle

    # Receipts

    @property
    def receipts(self) -> List[ChunkReceipt]:
        """Receipts in arrival order (copy)."""
        return list(self._receipts)

    def sorted_receipts(self) -> List[ChunkReceipt]:
        return sorted(self._receipts, key=lambda receipt: receipt.index)

    def add_receipt(self, receipt: ChunkReceipt) -> None:
        """
        Record an acknowledged chunk.

        Raises:
            ValueError: If the index is not part of the plan or already acknowledged
        """
        if not 0 <= receipt.index < len(self.plan):
            raise ValueError(f"Receipt index {receipt.index} outside plan of {len(self.plan)} chunks")
        if any(existing.index == receipt.index for existing in self._receipts):
            raise ValueError(f"Chunk {receipt.index} of session {self.session_id} already acknowledged")
        self._receipts.append(receipt)

    def acked_indexes(self) -> Set[int]:
        return {receipt.index for receipt in self._receipts if receipt.status is ReceiptStatus.ACKED}

    def pending_descriptors(self) -> List[ChunkDescriptor]:
        """Descriptors without an acknowledged receipt, in plan order."""
        acked = self.acked_indexes()
        return [descriptor for descriptor in self.plan if descriptor.index not in acked]

    @property
    def all_acked(self) -> bool:
        return len(self.acked_indexes()) == len(self.plan)

    # Reset / cancel

    def reset(self) -> None:
        """Discard the remote handle and every receipt; the next attempt starts over."""
        if isinstance(self._handle, asyncio.Future) and not self._handle.done():
            self._handle.cancel()
        self._handle = None
        self._receipts.clear()
        self._progress.clear()
        logger.warning(f"Session {self.session_id}: discarded remote handle and all receipts")

    @property
    def canceled(self) -> bool:
        return self._canceled

    def request_cancel(self) -> None:
        """
        Flag the session as canceled and abort in-flight work.

        No new chunk starts once the flag is set; tracked tasks (chunk
        transfers, a pending initiate) are cancelled, which aborts their
        network calls.
        """
        if self._canceled:
            return
        self._canceled = True
        for task in list(self._in_flight):
            task.cancel()
        if isinstance(self._handle, asyncio.Future) and not self._handle.done():
            self._handle.cancel()

    def track(self, task: "asyncio.Future") -> "asyncio.Future":
        """Register a task to be cancelled if the session is canceled."""
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        if self._canceled:
            task.cancel()
        return task

    # Progress

    def record_progress(self, chunk_index: Optional[int], loaded: int) -> None:
        self._progress[chunk_index] = loaded

    @property
    def bytes_sent(self) -> int:
        """Bytes sent across all requests, counting acknowledged chunks in full."""
        acked = self.acked_indexes()
        total = sum(self.plan[index].size for index in acked)
        total += sum(loaded for index, loaded in self._progress.items() if index not in acked)
        return min(total, self.plan.file_size)

    # Persistence

    def to_persisted(self) -> PersistedState:
        return PersistedState(
            session_id=self.session_id,
            file_size=self.plan.file_size,
            chunk_size=self.plan.chunk_size,
            object_key=self.object_key,
            remote_handle=self.remote_handle,
            receipts=self.sorted_receipts(),
        )

    def restore(self, state: PersistedState) -> bool:
        """
        Adopt persisted progress if it belongs to the same plan.

        Returns:
            True if the state was adopted, False if it was discarded
        """
        if state.file_size != self.plan.file_size or state.chunk_size != self.plan.chunk_size:
            logger.warning(
                f"Session {self.session_id}: persisted state does not match current plan "
                f"(size {state.file_size}/{self.plan.file_size}, chunk {state.chunk_size}/{self.plan.chunk_size}); starting fresh"
            )
            return False
        self.object_key = state.object_key
        if state.remote_handle:
            self.set_remote_handle(state.remote_handle)
        for receipt in state.sorted_receipts():
            self.add_receipt(receipt)
        logger.info(f"Session {self.session_id}: resuming with {len(self._receipts)}/{len(self.plan)} chunks acknowledged")
        return True

    @classmethod
    def from_persisted(cls, state: PersistedState, *, bucket: str) -> "UploadSession":
        """
        Rebuild a sourceless session from persisted state.

        Used for cleanup of transactions left behind by an earlier process;
        such a session can be aborted but not transferred.
        """
        plan = plan_chunks(state.file_size, chunk_size=state.chunk_size, min_file_size_for_chunking=0)
        session = cls(state.session_id, None, plan, bucket=bucket)
        session.restore(state)
        return session


class SessionStore:
    """Owns every live UploadSession, keyed by session id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, UploadSession] = {}

    def add(self, session: UploadSession) -> UploadSession:
        if session.session_id in self._sessions:
            raise ValueError(f"Session already exists: {session.session_id}")
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> UploadSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown upload session: {session_id}") from None

    def remove(self, session_id: str) -> Optional[UploadSession]:
        return self._sessions.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[UploadSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
