"""
Block-blob upload backend (capability-URI based).

Wire protocol, every call against a SAS URI obtained from the local server:
- Put Block:      PUT {sas}&comp=block&blockid=ID       -> 201
- Put Block List: PUT {sas}&comp=blocklist <BlockList>  -> 201
- Put Blob:       PUT {sas}  x-ms-blob-type: BlockBlob  -> 201
- Delete Blob:    DELETE {sas}                          -> 202

There is no initiate step: uncommitted blocks are addressed by the blob URL
itself and become visible only once the block list is committed.
"""
from __future__ import annotations

import base64
import logging
import xml.etree.ElementTree as ET
from typing import Dict, Mapping, Sequence
from urllib.parse import unquote, urlencode, urlparse

from ..errors import ProtocolMismatchError, UploadError
from ..keys import uri_escape_path
from ..models import ChunkDescriptor, ChunkReceipt, FinalizeResult, ManifestEntry
from ..session import UploadSession
from ..settings import Settings
from ..signing import CanonicalTarget, SasBroker, request_id_for
from ..sources import DEFAULT_CONTENT_TYPE
from ..transport import TransportExecutor, TransportRequest
from .base import ChunkedUploadBackend, metadata_headers, parse_xml_error, record_id_for

__all__ = ["BlockBlobBackend", "block_id_for", "build_block_list"]

logger = logging.getLogger(__name__)

METADATA_PREFIX = "x-ms-meta-"

EXPECTED_STATUS: Dict[str, int] = {
    "put_block": 201,
    "put_block_list": 201,
    "put_blob": 201,
    "delete_blob": 202,
}


def block_id_for(index: int) -> str:
    """
    Block id for a chunk: base64 of the 5-digit zero-padded index.

    All ids of one blob must have the same length, hence the padding.

    Examples:
        >>> block_id_for(0)
        'MDAwMDA='
    """
    return base64.b64encode(f"{index:05d}".encode("ascii")).decode("ascii")


def build_block_list(manifest: Sequence[ManifestEntry]) -> bytes:
    """XML body of a Put Block List request, blocks ordered by chunk index."""
    root = ET.Element("BlockList")
    for entry in sorted(manifest, key=lambda item: item.index):
        ET.SubElement(root, "Latest").text = entry.token
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def _with_query(url: str, params: Mapping[str, str]) -> str:
    """Append parameters to a SAS URI that may already carry a query string."""
    separator = "&" if "?" in url else "?"
    return url + separator + urlencode(params)


class BlockBlobBackend(ChunkedUploadBackend):
    """Direct-to-container uploads through the Blob service REST API."""

    name = "azure"
    requires_initiate = False

    def __init__(self, *, settings: Settings, broker: SasBroker, transport: TransportExecutor) -> None:
        self._settings = settings
        self._broker = broker
        self._transport = transport
        self.container = settings.bucket_name

    def record_id(self, session_id: str) -> str:
        return record_id_for(session_id, self.container)

    def _target(self, session: UploadSession, headers=None) -> CanonicalTarget:
        if not session.object_key:
            raise UploadError(f"Session {session.session_id} has no object key", session_id=session.session_id)
        return CanonicalTarget(
            base_url=self._settings.endpoint,
            path="/" + uri_escape_path(session.object_key),
            headers=headers or {},
        )

    def _blob_headers(self, session: UploadSession) -> Dict[str, str]:
        """Properties and metadata of the committed blob."""
        source = session.source
        headers = {"x-ms-blob-content-type": source.content_type if source else DEFAULT_CONTENT_TYPE}
        headers.update(metadata_headers(METADATA_PREFIX, self._settings.metadata, file_name=source.name if source else None))
        return headers

    async def upload_chunk(
        self,
        session: UploadSession,
        descriptor: ChunkDescriptor,
        data: bytes,
        attempt: int,
    ) -> ChunkReceipt:
        block_id = block_id_for(descriptor.index)
        grant = await self._broker.authorize(
            request_id_for(session.session_id, "block", descriptor.index, attempt), "PUT", self._target(session)
        )

        await self._transport.send(
            TransportRequest(
                operation="put_block",
                method="PUT",
                url=_with_query(grant.url, {"comp": "block", "blockid": block_id}),
                headers=grant.headers,
                body=data,
                expected_status=EXPECTED_STATUS["put_block"],
                chunked=True,
            ),
            session=session,
            chunk_index=descriptor.index,
            error_parser=parse_xml_error,
            track_progress=True,
        )
        return ChunkReceipt(index=descriptor.index, token=block_id)

    def _check_capability_target(self, session: UploadSession, target: CanonicalTarget, sas_uri: str) -> None:
        expected = urlparse(target.url)
        actual = urlparse(sas_uri)
        if actual.netloc != expected.netloc or unquote(actual.path) != unquote(expected.path):
            raise ProtocolMismatchError(
                f"Capability URI for {session.session_id} addresses a different blob",
                expected=f"{expected.netloc}{expected.path}",
                actual=f"{actual.netloc}{actual.path}",
                session_id=session.session_id,
            )

    async def combine(self, session: UploadSession, manifest: Sequence[ManifestEntry], attempt: int) -> FinalizeResult:
        target = self._target(session, headers=self._blob_headers(session))
        grant = await self._broker.authorize(
            request_id_for(session.session_id, "blocklist", attempt=attempt), "PUT", target
        )
        self._check_capability_target(session, target, grant.url)

        body = build_block_list(manifest)
        headers = dict(grant.headers)
        headers["Content-Type"] = "application/xml"

        logger.info(f"Submitting Put Block List request for {session.session_id} ({len(manifest)} blocks)")
        response = await self._transport.send(
            TransportRequest(
                operation="put_block_list",
                method="PUT",
                url=_with_query(grant.url, {"comp": "blocklist"}),
                headers=headers,
                body=body,
                expected_status=EXPECTED_STATUS["put_block_list"],
                chunked=True,
            ),
            session=session,
            error_parser=parse_xml_error,
        )
        return FinalizeResult(
            session_id=session.session_id,
            bucket=self.container,
            key=session.object_key,
            parts=len(manifest),
            etag=response.headers.get("ETag"),
        )

    async def upload_whole(self, session: UploadSession, data: bytes, attempt: int) -> FinalizeResult:
        headers = self._blob_headers(session)
        headers["x-ms-blob-type"] = "BlockBlob"
        target = self._target(session, headers=headers)
        grant = await self._broker.authorize(
            request_id_for(session.session_id, "blob", attempt=attempt), "PUT", target
        )
        self._check_capability_target(session, target, grant.url)

        logger.info(f"Sending Put Blob request for {session.session_id}")
        response = await self._transport.send(
            TransportRequest(
                operation="put_blob",
                method="PUT",
                url=grant.url,
                headers=grant.headers,
                body=data,
                expected_status=EXPECTED_STATUS["put_blob"],
            ),
            session=session,
            error_parser=parse_xml_error,
            track_progress=True,
        )
        return FinalizeResult(
            session_id=session.session_id,
            bucket=self.container,
            key=session.object_key,
            parts=1,
            etag=response.headers.get("ETag"),
        )

    async def abort(self, session: UploadSession) -> None:
        grant = await self._broker.authorize(
            request_id_for(session.session_id, "delete", attempt=session.attempts), "DELETE", self._target(session)
        )

        logger.info(f"Deleting uncommitted blocks for {session.session_id}")
        await self._transport.send(
            TransportRequest(
                operation="delete_blob",
                method="DELETE",
                url=grant.url,
                headers=grant.headers,
                expected_status=EXPECTED_STATUS["delete_blob"],
                chunked=True,
            ),
            session=session,
            error_parser=parse_xml_error,
            cleanup=True,
        )
