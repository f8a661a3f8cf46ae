"""
Fake block-blob service.

Accepts only SAS-authorized requests (sig= in the query string) and keeps
uncommitted blocks per blob until a block list commits them.
"""
from __future__ import annotations

import base64
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from .faults import FaultPlan

__all__ = ["FakeBlobService", "BLOB_HOST", "BLOB_ENDPOINT", "BlobCall"]

BLOB_HOST = "account.blob.core.windows.net"
BLOB_ENDPOINT = f"https://{BLOB_HOST}/container"


@dataclass
class BlobCall:
    operation: str
    blob: str
    block_id: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def _error(status: int, code: str) -> httpx.Response:
    body = f"<?xml version=\"1.0\" encoding=\"utf-8\"?><Error><Code>{code}</Code><Message>{code}</Message></Error>"
    return httpx.Response(status, text=body)


class FakeBlobService:
    """
    In-memory blob container for testing.

    This is a test double; not for production use.
    """

    def __init__(self, container: str = "container") -> None:
        self.container = container
        self.faults = FaultPlan()
        self.calls: List[BlobCall] = []
        self.blobs: Dict[str, bytes] = {}
        self.uncommitted: Dict[str, Dict[str, bytes]] = {}
        self.deleted: List[str] = []

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call.operation == operation)

    def calls_for(self, operation: str) -> List[BlobCall]:
        return [call for call in self.calls if call.operation == operation]

    @staticmethod
    def _operation(request: httpx.Request) -> str:
        comp = request.url.params.get("comp")
        if request.method == "PUT" and comp == "block":
            return "put_block"
        if request.method == "PUT" and comp == "blocklist":
            return "put_block_list"
        if request.method == "PUT":
            return "put_blob"
        if request.method == "DELETE":
            return "delete_blob"
        return "unknown"

    async def handle(self, request: httpx.Request) -> httpx.Response:
        operation = self._operation(request)
        path = request.url.path
        prefix = f"/{self.container}/"
        blob = path[len(prefix):] if path.startswith(prefix) else path
        block_id = request.url.params.get("blockid")
        chunk_index = int(base64.b64decode(block_id)) if block_id else None

        self.calls.append(BlobCall(
            operation=operation,
            blob=blob,
            block_id=block_id,
            headers=dict(request.headers),
            body=request.content,
        ))

        fault = await self.faults.before(request, operation, chunk_index)
        if fault is not None:
            return _error(fault.status, fault.code or "InternalError")

        if "sig" not in request.url.params:
            return _error(403, "AuthenticationFailed")
        if not path.startswith(prefix):
            return _error(404, "ContainerNotFound")

        if operation == "put_block":
            self.uncommitted.setdefault(blob, {})[block_id] = request.content
            return httpx.Response(201)
        if operation == "put_block_list":
            blocks = self.uncommitted.get(blob, {})
            ids = [element.text for element in ET.fromstring(request.content).iter("Latest")]
            if any(block not in blocks for block in ids):
                return _error(400, "InvalidBlockList")
            self.blobs[blob] = b"".join(blocks[block] for block in ids)
            self.uncommitted.pop(blob, None)
            return httpx.Response(201, headers={"ETag": '"0x8D0000000000001"'})
        if operation == "put_blob":
            if request.headers.get("x-ms-blob-type") != "BlockBlob":
                return _error(400, "MissingRequiredHeader")
            self.blobs[blob] = request.content
            return httpx.Response(201, headers={"ETag": '"0x8D0000000000002"'})
        if operation == "delete_blob":
            self.uncommitted.pop(blob, None)
            self.blobs.pop(blob, None)
            self.deleted.append(blob)
            return httpx.Response(202)
        return _error(400, "InvalidOperation")
