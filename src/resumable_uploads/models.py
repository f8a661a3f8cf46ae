"""
Data models for resumable chunked uploads.

Frozen dataclasses describe values computed locally (chunk plans, grants,
results). Pydantic models describe data that crosses a persistence boundary
and therefore needs validation on the way back in.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class UploadStatus(str, Enum):
    """Lifecycle states of an upload session."""
    PENDING = "pending"
    KEY_RESOLVING = "key_resolving"
    INITIATING = "initiating"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    CANCELED = "canceled"
    FAILED = "failed"
    RESET_REQUIRED = "reset_required"


TERMINAL_STATUSES = frozenset({UploadStatus.COMPLETE, UploadStatus.CANCELED, UploadStatus.FAILED})


@dataclass(frozen=True)
class ChunkDescriptor:
    """
    One contiguous byte range of a file.

    Invariants:
    - index is 0-based and contiguous across a plan
    - start < end except for the single descriptor of an empty file
    """
    index: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def part_number(self) -> int:
        """1-based part number used on the wire."""
        return self.index + 1


@dataclass(frozen=True)
class ChunkPlan:
    """
    Ordered chunk descriptors for one file.

    A plan with `chunked=False` always holds exactly one descriptor covering
    the whole file and is sent as a single whole-object request.
    """
    file_size: int
    chunk_size: int
    chunked: bool
    descriptors: Tuple[ChunkDescriptor, ...]

    def __len__(self) -> int:
        return len(self.descriptors)

    def __iter__(self):
        return iter(self.descriptors)

    def __getitem__(self, index: int) -> ChunkDescriptor:
        return self.descriptors[index]


class ReceiptStatus(str, Enum):
    PENDING = "pending"
    ACKED = "acked"


class ChunkReceipt(BaseModel):
    """Proof from the storage service that a chunk was stored."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="0-based chunk index")
    token: str = Field(..., min_length=1, description="ETag or block id returned by the service")
    status: ReceiptStatus = Field(default=ReceiptStatus.ACKED, description="Receipt status")


class PersistedState(BaseModel):
    """
    Subset of an upload session needed to resume after a restart.

    The chunk plan itself is never persisted; it is recomputed from
    file_size and chunk_size, which must match for the record to be reused.
    """
    session_id: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=0)
    chunk_size: int = Field(..., gt=0)
    object_key: Optional[str] = Field(default=None, description="Resolved object key")
    remote_handle: Optional[str] = Field(default=None, description="Multi-part transaction id")
    receipts: List[ChunkReceipt] = Field(default_factory=list)

    def sorted_receipts(self) -> List[ChunkReceipt]:
        return sorted(self.receipts, key=lambda receipt: receipt.index)


@dataclass(frozen=True)
class AuthorizationGrant:
    """
    Authorization for exactly one outbound storage request.

    Never cached beyond the request it was issued for, since the signature or
    capability URI is bound to the exact verb, target and content.
    """
    verb: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    content_sha256: Optional[str] = None


@dataclass(frozen=True)
class ManifestEntry:
    """One (chunk index, completion token) pair of a combine manifest."""
    index: int
    token: str

    @property
    def part_number(self) -> int:
        return self.index + 1


@dataclass(frozen=True)
class FinalizeResult:
    """Outcome of a successful upload."""
    session_id: str
    bucket: str
    key: str
    parts: int
    etag: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    """
    Bytes sent so far for one request body.

    chunk_index is None for whole-object uploads.
    """
    session_id: str
    chunk_index: Optional[int]
    loaded: int
    total: int


__all__ = [
    "UploadStatus",
    "TERMINAL_STATUSES",
    "ChunkDescriptor",
    "ChunkPlan",
    "ReceiptStatus",
    "ChunkReceipt",
    "PersistedState",
    "AuthorizationGrant",
    "ManifestEntry",
    "FinalizeResult",
    "ProgressEvent",
]
