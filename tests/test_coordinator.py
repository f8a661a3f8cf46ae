"""
Tests for failure classification.
"""
from __future__ import annotations

import pytest

from resumable_uploads.coordinator import Action, RetryResetCoordinator
from resumable_uploads.errors import (
    AuthorizationError,
    BackendRejection,
    KeyResolutionError,
    ProtocolMismatchError,
    TransportError,
    UploadCanceled,
)


@pytest.fixture
def coordinator():
    return RetryResetCoordinator(max_auth_failures=3)


class TestClassification:
    """Test the failure to action table."""

    @pytest.mark.parametrize("error,action", [
        (TransportError("timeout", timeout=True), Action.RETRY),
        (TransportError("reset"), Action.RETRY),
        (BackendRejection("busy", status_code=503, chunked=True), Action.RETRY),
        (BackendRejection("bad", status_code=400, code="InvalidPartOrder", chunked=True), Action.RESET),
        (BackendRejection("gone", status_code=404, code="NoSuchUpload", chunked=True), Action.RESET),
        (BackendRejection("small", status_code=400, code="EntityTooSmall", chunked=True), Action.RESET),
        (BackendRejection("part", status_code=400, code="InvalidPart", chunked=True), Action.RESET),
        (BackendRejection("forbidden", status_code=403, chunked=True), Action.RESET),
        (BackendRejection("forbidden", status_code=403, chunked=False), Action.RETRY),
        (UploadCanceled("stop"), Action.CANCEL),
        (KeyResolutionError("no key"), Action.FAIL),
        (ProtocolMismatchError("bucket"), Action.FAIL),
        (RuntimeError("bug"), Action.FAIL),
    ])
    def test_table(self, coordinator, error, action):
        assert coordinator.classify(error, session_id="s") is action

    def test_reset_codes_are_configurable(self):
        coordinator = RetryResetCoordinator(reset_codes={"Custom"})
        assert coordinator.peek(BackendRejection("x", code="Custom")) is Action.RESET
        assert coordinator.peek(BackendRejection("x", code="InvalidPartOrder")) is Action.RETRY


class TestAuthorizationEscalation:
    """Test that repeated signing failures eventually fail the session."""

    def test_escalates_after_max_failures(self, coordinator):
        error = AuthorizationError("refused")
        assert coordinator.classify(error, session_id="s") is Action.REAUTHORIZE
        assert coordinator.classify(error, session_id="s") is Action.REAUTHORIZE
        assert coordinator.classify(error, session_id="s") is Action.FAIL

    def test_streak_is_per_session(self, coordinator):
        error = AuthorizationError("refused")
        coordinator.classify(error, session_id="a")
        coordinator.classify(error, session_id="a")
        assert coordinator.classify(error, session_id="b") is Action.REAUTHORIZE
        assert coordinator.auth_failures("a") == 2

    def test_success_clears_streak(self, coordinator):
        error = AuthorizationError("refused")
        coordinator.classify(error, session_id="s")
        coordinator.classify(error, session_id="s")
        coordinator.record_success("s")
        assert coordinator.classify(error, session_id="s") is Action.REAUTHORIZE

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            RetryResetCoordinator(max_auth_failures=0)


class TestMostSevere:
    def test_picks_governing_failure(self, coordinator):
        retry = TransportError("timeout")
        reset = BackendRejection("order", code="InvalidPartOrder", chunked=True)
        fail = ProtocolMismatchError("bucket")

        assert coordinator.most_severe([retry, reset]) is reset
        assert coordinator.most_severe([retry, fail, reset]) is fail
        assert coordinator.most_severe([]) is None
