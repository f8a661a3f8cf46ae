"""
Fake S3 multipart service.

Implements the subset of the S3 REST API the uploader speaks, backed by
dictionaries, and validates requests the way the real service does (signed
requests only, ascending part order, matching ETags, known upload ids).
"""
from __future__ import annotations

import hashlib
import itertools
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx

from .faults import FaultPlan

__all__ = ["FakeS3Service", "S3_HOST", "S3_ENDPOINT", "S3Call"]

S3_HOST = "uploads.s3.amazonaws.com"
S3_ENDPOINT = f"https://{S3_HOST}"


@dataclass
class S3Call:
    operation: str
    key: str
    upload_id: Optional[str] = None
    part_number: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class _Upload:
    key: str
    parts: Dict[int, Tuple[str, bytes]] = field(default_factory=dict)


def _error(status: int, code: str, message: str = "") -> httpx.Response:
    body = f"<?xml version=\"1.0\" encoding=\"UTF-8\"?><Error><Code>{code}</Code><Message>{message}</Message></Error>"
    return httpx.Response(status, text=body, headers={"Content-Type": "application/xml"})


class FakeS3Service:
    """
    In-memory S3 bucket for testing.

    This is a test double; not for production use.
    """

    def __init__(self, bucket: str = "uploads") -> None:
        self.bucket = bucket
        self.echo_bucket: Optional[str] = None
        self.faults = FaultPlan()
        self.calls: List[S3Call] = []
        self.objects: Dict[str, bytes] = {}
        self.uploads: Dict[str, _Upload] = {}
        self.aborted: List[str] = []
        self._ids = itertools.count(1)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call.operation == operation)

    def calls_for(self, operation: str) -> List[S3Call]:
        return [call for call in self.calls if call.operation == operation]

    @staticmethod
    def _operation(request: httpx.Request) -> str:
        params = request.url.params
        if request.method == "POST" and "uploads" in params:
            return "initiate"
        if request.method == "PUT" and "partNumber" in params:
            return "upload_part"
        if request.method == "POST" and "uploadId" in params:
            return "complete"
        if request.method == "DELETE" and "uploadId" in params:
            return "abort"
        if request.method == "PUT":
            return "put_object"
        return "unknown"

    async def handle(self, request: httpx.Request) -> httpx.Response:
        operation = self._operation(request)
        params = request.url.params
        key = request.url.path.lstrip("/")
        upload_id = params.get("uploadId")
        part_number = int(params["partNumber"]) if "partNumber" in params else None
        chunk_index = part_number - 1 if part_number is not None else None

        self.calls.append(S3Call(
            operation=operation,
            key=key,
            upload_id=upload_id,
            part_number=part_number,
            headers=dict(request.headers),
            body=request.content,
        ))

        fault = await self.faults.before(request, operation, chunk_index)
        if fault is not None:
            return _error(fault.status, fault.code or "InternalError", "injected failure")

        authorization = request.headers.get("Authorization", "")
        if not authorization.startswith("AWS4-HMAC-SHA256 ") or "Signature=" not in authorization:
            return _error(403, "AccessDenied", "request is not signed")
        if request.headers.get("x-amz-content-sha256") != hashlib.sha256(request.content).hexdigest():
            return _error(400, "XAmzContentSHA256Mismatch")

        if operation == "initiate":
            return self._initiate(key)
        if operation == "upload_part":
            return self._upload_part(key, upload_id, part_number, request.content)
        if operation == "complete":
            return self._complete(key, upload_id, request.content)
        if operation == "abort":
            return self._abort(upload_id)
        if operation == "put_object":
            self.objects[key] = request.content
            return httpx.Response(200, headers={"ETag": f'"{hashlib.md5(request.content).hexdigest()}"'})
        return _error(400, "InvalidRequest")

    def _initiate(self, key: str) -> httpx.Response:
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = _Upload(key=key)
        body = (
            "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
            "<InitiateMultipartUploadResult xmlns=\"http://s3.amazonaws.com/doc/2006-03-01/\">"
            f"<Bucket>{self.bucket}</Bucket><Key>{key}</Key><UploadId>{upload_id}</UploadId>"
            "</InitiateMultipartUploadResult>"
        )
        return httpx.Response(200, text=body)

    def _upload_part(self, key: str, upload_id: Optional[str], part_number: Optional[int], data: bytes) -> httpx.Response:
        upload = self.uploads.get(upload_id)
        if upload is None or upload.key != key:
            return _error(404, "NoSuchUpload")
        etag = f'"{hashlib.md5(data).hexdigest()}"'
        upload.parts[part_number] = (etag, data)
        return httpx.Response(200, headers={"ETag": etag})

    def _complete(self, key: str, upload_id: Optional[str], body: bytes) -> httpx.Response:
        upload = self.uploads.get(upload_id)
        if upload is None or upload.key != key:
            return _error(404, "NoSuchUpload")

        manifest = []
        for part in ET.fromstring(body).iter("Part"):
            manifest.append((int(part.findtext("PartNumber")), part.findtext("ETag")))

        numbers = [number for number, _ in manifest]
        if numbers != sorted(numbers) or len(set(numbers)) != len(numbers):
            return _error(400, "InvalidPartOrder")
        for number, etag in manifest:
            if number not in upload.parts or upload.parts[number][0] != etag:
                return _error(400, "InvalidPart")

        self.objects[key] = b"".join(upload.parts[number][1] for number in numbers)
        del self.uploads[upload_id]
        result = (
            "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
            "<CompleteMultipartUploadResult xmlns=\"http://s3.amazonaws.com/doc/2006-03-01/\">"
            f"<Location>https://{S3_HOST}/{key}</Location>"
            f"<Bucket>{self.echo_bucket or self.bucket}</Bucket><Key>{key}</Key>"
            "<ETag>\"combined-etag\"</ETag>"
            "</CompleteMultipartUploadResult>"
        )
        return httpx.Response(200, text=result)

    def _abort(self, upload_id: Optional[str]) -> httpx.Response:
        if upload_id not in self.uploads:
            return _error(404, "NoSuchUpload")
        del self.uploads[upload_id]
        self.aborted.append(upload_id)
        return httpx.Response(204)
