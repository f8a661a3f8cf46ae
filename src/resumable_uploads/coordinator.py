"""
Retry/reset coordinator.

Classifies every failure of an upload attempt into the action the engine
must take next. The coordinator only classifies; how many attempts are made
and how long to wait between them is decided by the retry policy that
drives the engine.

Policy:

| Failure                                         | Action      |
|-------------------------------------------------|-------------|
| TransportError (timeout, connection)            | RETRY       |
| AuthorizationError                              | REAUTHORIZE |
| AuthorizationError, max_auth_failures reached   | FAIL        |
| BackendRejection with a reset code              | RESET       |
| BackendRejection 403 on a chunked call          | RESET       |
| BackendRejection, anything else                 | RETRY       |
| UploadCanceled                                  | CANCEL      |
| Key resolution, protocol mismatch, other errors | FAIL        |

New reset conditions must be added to RESET_CODES explicitly; they are never
inferred from HTTP status alone.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from .errors import (
    AuthorizationError,
    BackendRejection,
    TransportError,
    UploadCanceled,
)

__all__ = ["Action", "RetryResetCoordinator", "RESET_CODES", "RETRYABLE_ACTIONS"]

logger = logging.getLogger(__name__)

# Backend codes meaning the multi-part transaction cannot be continued
RESET_CODES: FrozenSet[str] = frozenset({
    "EntityTooSmall",
    "InvalidPart",
    "InvalidPartOrder",
    "NoSuchUpload",
})

FORBIDDEN = 403


class Action(str, Enum):
    """What the engine does after a failed attempt."""
    RETRY = "retry"
    REAUTHORIZE = "reauthorize"
    RESET = "reset"
    FAIL = "fail"
    CANCEL = "cancel"


RETRYABLE_ACTIONS: FrozenSet[Action] = frozenset({Action.RETRY, Action.REAUTHORIZE, Action.RESET})

# Highest first; used to pick the governing failure among concurrent chunk failures
_SEVERITY = {
    Action.CANCEL: 4,
    Action.FAIL: 3,
    Action.RESET: 2,
    Action.REAUTHORIZE: 1,
    Action.RETRY: 0,
}


class RetryResetCoordinator:
    """
    Stateful classifier.

    Tracks consecutive authorization failures per session so that repeated
    signing refusals escalate from REAUTHORIZE to FAIL.
    """

    def __init__(self, *, reset_codes: Iterable[str] = RESET_CODES, max_auth_failures: int = 3) -> None:
        if max_auth_failures < 1:
            raise ValueError(f"max_auth_failures must be at least 1, got {max_auth_failures}")
        self.reset_codes = frozenset(reset_codes)
        self.max_auth_failures = max_auth_failures
        self._auth_failures: Dict[str, int] = {}

    def peek(self, error: BaseException) -> Action:
        """Classify without recording anything."""
        if isinstance(error, UploadCanceled):
            return Action.CANCEL
        if isinstance(error, AuthorizationError):
            return Action.REAUTHORIZE
        if isinstance(error, BackendRejection):
            if error.code in self.reset_codes:
                return Action.RESET
            if error.status_code == FORBIDDEN and error.chunked:
                return Action.RESET
            return Action.RETRY
        if isinstance(error, TransportError):
            return Action.RETRY
        return Action.FAIL

    def classify(self, error: BaseException, *, session_id: str) -> Action:
        """
        Classify a failure and record it against the session.

        Args:
            error: Failure raised by an attempt
            session_id: Session the attempt belonged to

        Returns:
            Action the engine must take
        """
        action = self.peek(error)
        if action is Action.REAUTHORIZE:
            failures = self._auth_failures.get(session_id, 0) + 1
            self._auth_failures[session_id] = failures
            if failures >= self.max_auth_failures:
                logger.error(f"Session {session_id}: {failures} authorization failures, giving up")
                action = Action.FAIL
        logger.debug(f"Session {session_id}: {type(error).__name__} classified as {action.value}")
        return action

    def most_severe(self, errors: Iterable[BaseException]) -> Optional[BaseException]:
        """The failure that governs an attempt in which several chunks failed."""
        governing = None
        governing_rank = -1
        for error in errors:
            rank = _SEVERITY[self.peek(error)]
            if rank > governing_rank:
                governing, governing_rank = error, rank
        return governing

    def record_success(self, session_id: str) -> None:
        """A successful authorized call clears the failure streak."""
        self._auth_failures.pop(session_id, None)

    def auth_failures(self, session_id: str) -> int:
        return self._auth_failures.get(session_id, 0)

    def forget(self, session_id: str) -> None:
        self._auth_failures.pop(session_id, None)
