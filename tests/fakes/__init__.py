# Fake services for testing

from .cloud import FakeCloud
from .fake_blob import FakeBlobService
from .fake_s3 import FakeS3Service
from .fake_signer import FakeSigningServer

__all__ = ["FakeCloud", "FakeBlobService", "FakeS3Service", "FakeSigningServer"]
