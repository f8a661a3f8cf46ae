"""Root pytest configuration for resumable-uploads tests."""
import pytest

from resumable_uploads.settings import MIB, Settings
from tests.fakes.cloud import FakeCloud
from tests.fakes.fake_blob import BLOB_ENDPOINT
from tests.fakes.fake_s3 import S3_ENDPOINT
from tests.fakes.fake_signer import SAS_URL, SIGN_URL


# Keep settings loaded from the environment deterministic
@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Automatically clear UPLOADS_* variables inherited from the shell."""
    import os
    for name in list(os.environ):
        if name.startswith("UPLOADS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cloud():
    """Fake signing server, S3 bucket and blob container behind one MockTransport."""
    return FakeCloud()


@pytest.fixture
def s3_settings():
    """S3 settings: 5 MiB chunks, no backoff between attempts."""
    return Settings(
        backend="s3",
        endpoint=S3_ENDPOINT,
        signature_endpoint=SIGN_URL,
        access_key="AKIDEXAMPLE",
        chunk_size=5 * MIB,
        min_file_size_for_chunking=5 * MIB,
        retry_backoff_s=0,
    )


@pytest.fixture
def azure_settings():
    """Block-blob settings with 1 KiB blocks so tests can use many small chunks."""
    return Settings(
        backend="azure",
        endpoint=BLOB_ENDPOINT,
        signature_endpoint=SAS_URL,
        chunk_size=1024,
        min_file_size_for_chunking=1024,
        retry_backoff_s=0,
    )


def payload(size: int) -> bytes:
    """Deterministic, non-repeating-per-chunk test data."""
    pattern = bytes(range(251))
    return (pattern * (size // len(pattern) + 1))[:size]


@pytest.fixture
def make_payload():
    return payload
