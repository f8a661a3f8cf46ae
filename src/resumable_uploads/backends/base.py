"""
Chunked upload backend interface.

The engine depends only on these protocols. Every storage flavor implements
the chunk, combine, whole-object and abort operations on top of the shared
signature broker and transport executor; transaction-based flavors also
implement initiate.
"""
from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable
from urllib.parse import quote

import httpx

from ..models import ChunkDescriptor, ChunkReceipt, FinalizeResult, ManifestEntry
from ..session import UploadSession

__all__ = ["ChunkedUploadBackend", "TransactionalUploadBackend", "parse_xml_error", "find_xml_text", "record_id_for", "metadata_headers"]


def record_id_for(session_id: str, bucket: str) -> str:
    """
    Persistence record id for a session.

    Scoped to the bucket/container so the same session id used against
    another target never resumes the wrong transaction.
    """
    return f"{session_id}-{bucket}"


def metadata_headers(
    prefix: str,
    metadata: Mapping[str, str],
    *,
    file_name: Optional[str] = None,
    unprefixed: Iterable[str] = (),
) -> Dict[str, str]:
    """
    User metadata as request headers.

    Names are lowercased and prefixed (x-amz-meta-, x-ms-meta-) and values are
    percent-encoded. Standard headers named in `unprefixed` are passed through
    as given. The file name, when known, is always sent as <prefix>filename.

    Examples:
        >>> metadata_headers("x-amz-meta-", {"Owner": "a b"}, file_name="x.bin")
        {'x-amz-meta-owner': 'a%20b', 'x-amz-meta-filename': 'x.bin'}
    """
    passthrough = {name.lower() for name in unprefixed}
    headers: Dict[str, str] = {}
    for name, value in metadata.items():
        if name.lower() in passthrough:
            headers[name] = value
        else:
            headers[prefix + name.lower()] = quote(value, safe="")
    if file_name is not None:
        headers[prefix + "filename"] = quote(file_name, safe="")
    return headers


@runtime_checkable
class ChunkedUploadBackend(Protocol):
    """
    Protocol for storage backends.

    Attributes:
        name: Backend identifier ("s3", "azure")
        requires_initiate: True if a multi-part transaction must be opened
            before the first chunk is sent
    """

    name: str
    requires_initiate: bool

    def record_id(self, session_id: str) -> str:
        """Persistence record id for a session, scoped to this backend's target."""
        ...

    async def upload_chunk(
        self,
        session: UploadSession,
        descriptor: ChunkDescriptor,
        data: bytes,
        attempt: int,
    ) -> ChunkReceipt:
        """Send one chunk and return the receipt carrying the completion token."""
        ...

    async def combine(self, session: UploadSession, manifest: Sequence[ManifestEntry], attempt: int) -> FinalizeResult:
        """
        Commit the acknowledged chunks as one object.

        The manifest is already sorted ascending by chunk index. Must raise
        ProtocolMismatchError if the service addresses a different
        bucket/container or key than requested.
        """
        ...

    async def upload_whole(self, session: UploadSession, data: bytes, attempt: int) -> FinalizeResult:
        """Send a non-chunked file in a single request."""
        ...

    async def abort(self, session: UploadSession) -> None:
        """Release server-side resources held by a canceled or abandoned upload."""
        ...


@runtime_checkable
class TransactionalUploadBackend(ChunkedUploadBackend, Protocol):
    """
    Backend whose chunks belong to an explicitly opened transaction.

    Implementations set requires_initiate = True.
    """

    async def initiate(self, session: UploadSession, attempt: int) -> str:
        """
        Open a multi-part transaction and return its id.

        Called at most once per session lifetime between resets.
        """
        ...


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def find_xml_text(document: str, *tags: str) -> List[Optional[str]]:
    """
    Text of the first element with each local tag name, ignoring namespaces.

    Returns None for tags that are absent or when the document is not XML.
    """
    found = {tag: None for tag in tags}
    if not document:
        return [None for _ in tags]
    try:
        root = ET.fromstring(document)
    except ET.ParseError:
        return [None for _ in tags]
    for element in root.iter():
        name = _local_name(element.tag)
        if name in found and found[name] is None:
            found[name] = (element.text or "").strip()
    return [found[tag] for tag in tags]


def parse_xml_error(response: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
    """
    Extract (code, message) from an <Error><Code/><Message/></Error> body.

    Both S3-style and blob-style services use this shape.
    """
    text = response.text
    if "<Error" not in text:
        return None, None
    code, message = find_xml_text(text, "Code", "Message")
    return code or None, message or None
