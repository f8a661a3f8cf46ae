"""
S3 multipart upload backend (transaction based).

Wire protocol:
- Initiate: POST /{key}?uploads                       -> 200, <UploadId>
- Part:     PUT  /{key}?partNumber=N&uploadId=ID      -> 200, ETag header
- Complete: POST /{key}?uploadId=ID  <CompleteMultipartUpload> -> 200, echoes <Bucket>/<Key>
- Abort:    DELETE /{key}?uploadId=ID                 -> 204
- Whole:    PUT  /{key}                               -> 200

Every request is signed through S3RequestSigner.
"""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Dict, Sequence, Tuple
from urllib.parse import unquote

from ..errors import BackendRejection, ProtocolMismatchError, UploadError
from ..keys import uri_escape_path
from ..models import ChunkDescriptor, ChunkReceipt, FinalizeResult, ManifestEntry
from ..session import UploadSession
from ..settings import Settings
from ..signing import EMPTY_SHA256, CanonicalTarget, S3RequestSigner, request_id_for, sha256_hex
from ..sources import DEFAULT_CONTENT_TYPE
from ..transport import TransportExecutor, TransportRequest
from .base import TransactionalUploadBackend, find_xml_text, metadata_headers, parse_xml_error, record_id_for

__all__ = ["S3MultipartBackend", "build_complete_body"]

logger = logging.getLogger(__name__)

METADATA_PREFIX = "x-amz-meta-"

REDUCED_REDUNDANCY_HEADER = ("x-amz-storage-class", "REDUCED_REDUNDANCY")

# Metadata names sent as standard object headers instead of x-amz-meta-*
UNPREFIXED_METADATA = ("Cache-Control", "Content-Disposition", "Content-Encoding")

# Expected success status per operation
EXPECTED_STATUS: Dict[str, int] = {
    "initiate": 200,
    "upload_part": 200,
    "complete": 200,
    "abort": 204,
    "put_object": 200,
}


def build_complete_body(manifest: Sequence[ManifestEntry]) -> bytes:
    """
    XML body of a Complete Multipart Upload request.

    Parts are written sorted by part number, as the service requires.
    """
    root = ET.Element("CompleteMultipartUpload")
    for entry in sorted(manifest, key=lambda item: item.index):
        part = ET.SubElement(root, "Part")
        ET.SubElement(part, "PartNumber").text = str(entry.part_number)
        ET.SubElement(part, "ETag").text = entry.token
    return ET.tostring(root, encoding="utf-8")


class S3MultipartBackend(TransactionalUploadBackend):
    """Direct-to-bucket uploads through the S3 REST API."""

    name = "s3"
    requires_initiate = True

    def __init__(self, *, settings: Settings, signer: S3RequestSigner, transport: TransportExecutor) -> None:
        self._settings = settings
        self._signer = signer
        self._transport = transport
        self.bucket = settings.bucket_name

    def record_id(self, session_id: str) -> str:
        return record_id_for(session_id, self.bucket)

    def _require_key(self, session: UploadSession) -> str:
        if not session.object_key:
            raise UploadError(f"Session {session.session_id} has no object key", session_id=session.session_id)
        return session.object_key

    def _target(self, session: UploadSession, *, query: Tuple[Tuple[str, str], ...] = (), headers=None) -> CanonicalTarget:
        key = self._require_key(session)
        return CanonicalTarget(
            base_url=self._settings.endpoint,
            path="/" + uri_escape_path(key),
            query=query,
            headers=headers or {},
        )

    def _require_handle(self, session: UploadSession) -> str:
        handle = session.remote_handle
        if not handle:
            raise UploadError(
                f"Session {session.session_id} has no multipart upload id",
                session_id=session.session_id,
            )
        return handle

    def _object_headers(self, session: UploadSession) -> Dict[str, str]:
        """ACL, storage class, content type and metadata of the new object."""
        source = session.source
        headers = {
            "x-amz-acl": self._settings.acl,
            "Content-Type": source.content_type if source else DEFAULT_CONTENT_TYPE,
        }
        if self._settings.reduced_redundancy:
            name, value = REDUCED_REDUNDANCY_HEADER
            headers[name] = value
        headers.update(metadata_headers(
            METADATA_PREFIX,
            self._settings.metadata,
            file_name=source.name if source else None,
            unprefixed=UNPREFIXED_METADATA,
        ))
        return headers

    async def initiate(self, session: UploadSession, attempt: int) -> str:
        target = self._target(session, query=(("uploads", ""),), headers=self._object_headers(session))
        grant = await self._signer.authorize(
            request_id_for(session.session_id, "initiate", attempt=attempt), "POST", target, EMPTY_SHA256
        )

        logger.info(f"Submitting S3 initiate multipart upload request for {session.session_id}")
        response = await self._transport.send(
            TransportRequest(
                operation="initiate",
                method="POST",
                url=grant.url,
                headers=grant.headers,
                expected_status=EXPECTED_STATUS["initiate"],
                chunked=True,
            ),
            session=session,
            error_parser=parse_xml_error,
        )

        (upload_id,) = find_xml_text(response.text, "UploadId")
        if not upload_id:
            raise BackendRejection(
                "Upload ID missing from initiate response",
                chunked=True,
                session_id=session.session_id,
                status_code=response.status_code,
            )
        logger.info(f"Initiate multipart upload request successful for {session.session_id}. Upload ID is {upload_id}")
        return upload_id

    async def upload_chunk(
        self,
        session: UploadSession,
        descriptor: ChunkDescriptor,
        data: bytes,
        attempt: int,
    ) -> ChunkReceipt:
        handle = self._require_handle(session)
        target = self._target(
            session,
            query=(("partNumber", str(descriptor.part_number)), ("uploadId", handle)),
        )
        grant = await self._signer.authorize(
            request_id_for(session.session_id, "part", descriptor.index, attempt), "PUT", target, sha256_hex(data)
        )

        response = await self._transport.send(
            TransportRequest(
                operation="upload_part",
                method="PUT",
                url=grant.url,
                headers=grant.headers,
                body=data,
                expected_status=EXPECTED_STATUS["upload_part"],
                chunked=True,
            ),
            session=session,
            chunk_index=descriptor.index,
            error_parser=parse_xml_error,
            track_progress=True,
        )

        etag = response.headers.get("ETag")
        if not etag:
            raise BackendRejection(
                f"ETag missing from response for part {descriptor.part_number}",
                chunked=True,
                session_id=session.session_id,
                chunk_index=descriptor.index,
                status_code=response.status_code,
            )
        return ChunkReceipt(index=descriptor.index, token=etag)

    async def combine(self, session: UploadSession, manifest: Sequence[ManifestEntry], attempt: int) -> FinalizeResult:
        handle = self._require_handle(session)
        key = self._require_key(session)
        body = build_complete_body(manifest)
        target = self._target(
            session,
            query=(("uploadId", handle),),
            headers={"Content-Type": "application/xml; charset=UTF-8"},
        )
        grant = await self._signer.authorize(
            request_id_for(session.session_id, "complete", attempt=attempt), "POST", target, sha256_hex(body)
        )

        logger.info(f"Submitting S3 complete multipart upload request for {session.session_id}")
        response = await self._transport.send(
            TransportRequest(
                operation="complete",
                method="POST",
                url=grant.url,
                headers=grant.headers,
                body=body,
                expected_status=EXPECTED_STATUS["complete"],
                chunked=True,
            ),
            session=session,
            error_parser=parse_xml_error,
        )

        # Complete can fail after a 200 status; the error is then in the body
        error_code, error_message = parse_xml_error(response)
        if error_code:
            raise BackendRejection(
                f"complete rejected by storage service ({error_code}: {error_message})",
                chunked=True,
                session_id=session.session_id,
                status_code=response.status_code,
                code=error_code,
            )

        echoed_bucket, echoed_key, etag = find_xml_text(response.text, "Bucket", "Key", "ETag")
        if not echoed_bucket or not echoed_key:
            raise ProtocolMismatchError(
                f"Missing bucket and/or key in complete response for {session.session_id}",
                session_id=session.session_id,
                status_code=response.status_code,
            )
        if echoed_bucket != self.bucket:
            raise ProtocolMismatchError(
                f"Wrong bucket in complete response for {session.session_id}",
                expected=self.bucket,
                actual=echoed_bucket,
                session_id=session.session_id,
                status_code=response.status_code,
            )
        if unquote(echoed_key) != unquote(key):
            raise ProtocolMismatchError(
                f"Wrong key in complete response for {session.session_id}",
                expected=key,
                actual=echoed_key,
                session_id=session.session_id,
                status_code=response.status_code,
            )

        return FinalizeResult(
            session_id=session.session_id,
            bucket=echoed_bucket,
            key=key,
            parts=len(manifest),
            etag=etag or None,
        )

    async def upload_whole(self, session: UploadSession, data: bytes, attempt: int) -> FinalizeResult:
        target = self._target(session, headers=self._object_headers(session))
        grant = await self._signer.authorize(
            request_id_for(session.session_id, "put", attempt=attempt), "PUT", target, sha256_hex(data)
        )

        logger.info(f"Sending upload request for {session.session_id}")
        response = await self._transport.send(
            TransportRequest(
                operation="put_object",
                method="PUT",
                url=grant.url,
                headers=grant.headers,
                body=data,
                expected_status=EXPECTED_STATUS["put_object"],
            ),
            session=session,
            error_parser=parse_xml_error,
            track_progress=True,
        )
        return FinalizeResult(
            session_id=session.session_id,
            bucket=self.bucket,
            key=self._require_key(session),
            parts=1,
            etag=response.headers.get("ETag"),
        )

    async def abort(self, session: UploadSession) -> None:
        handle = self._require_handle(session)
        target = self._target(session, query=(("uploadId", handle),))
        grant = await self._signer.authorize(
            request_id_for(session.session_id, "abort", attempt=session.attempts), "DELETE", target, EMPTY_SHA256
        )

        logger.info(f"Submitting S3 abort multipart upload request for {session.session_id}")
        await self._transport.send(
            TransportRequest(
                operation="abort",
                method="DELETE",
                url=grant.url,
                headers=grant.headers,
                expected_status=EXPECTED_STATUS["abort"],
                chunked=True,
            ),
            session=session,
            error_parser=parse_xml_error,
            cleanup=True,
        )
