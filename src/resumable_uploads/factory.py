"""
Uploader factory with backend switching.

Builds the signature broker, transport executor and backend that match
Settings.backend (S3 requests are signed locally when a secret key is
configured), so call sites only ever deal with an Uploader.
"""
from __future__ import annotations

from typing import Optional

import httpx

from .backends.azure import BlockBlobBackend
from .backends.base import ChunkedUploadBackend
from .backends.s3 import S3MultipartBackend
from .engine import Uploader
from .keys import KeyResolver
from .persistence import FilePersistence, InMemoryPersistence, PersistenceAdapter
from .settings import Settings
from .signing import LocalCredentialsSigner, SasBroker, S3RequestSigner
from .transport import ProgressCallback, TransportExecutor


def make_backend(
    settings: Settings,
    client: httpx.AsyncClient,
    *,
    on_progress: Optional[ProgressCallback] = None,
) -> ChunkedUploadBackend:
    """
    Create the storage backend selected by settings.backend.

    Args:
        settings: Upload configuration
        client: HTTP client shared by the broker and the transport
        on_progress: Optional progress callback for request bodies

    Returns:
        Backend implementation

    Raises:
        ValueError: If settings.backend names an unknown backend
    """
    transport = TransportExecutor(client, timeout_s=settings.http_timeout_s, on_progress=on_progress)

    if settings.backend == "s3":
        if settings.signs_locally:
            signer = LocalCredentialsSigner(
                access_key=settings.access_key,
                secret_key=settings.secret_key,
                region=settings.region,
                session_token=settings.session_token,
            )
        else:
            signer = S3RequestSigner(
                client,
                settings.signature_endpoint,
                access_key=settings.access_key,
                region=settings.region,
                session_token=settings.session_token,
                custom_headers=settings.signature_headers,
                timeout_s=settings.signature_timeout_s,
            )
        return S3MultipartBackend(settings=settings, signer=signer, transport=transport)
    elif settings.backend == "azure":
        broker = SasBroker(
            client,
            settings.signature_endpoint,
            custom_headers=settings.signature_headers,
            timeout_s=settings.signature_timeout_s,
        )
        return BlockBlobBackend(settings=settings, broker=broker, transport=transport)
    else:
        raise ValueError(f"Unknown backend: {settings.backend}. Supported values: s3, azure")


def make_persistence(settings: Settings) -> PersistenceAdapter:
    """File-backed persistence when settings.state_dir is set, in-memory otherwise."""
    if settings.state_dir:
        return FilePersistence(settings.state_dir)
    return InMemoryPersistence()


def create_uploader(
    settings: Settings,
    client: httpx.AsyncClient,
    *,
    key_resolver: Optional[KeyResolver] = None,
    persistence: Optional[PersistenceAdapter] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> Uploader:
    """
    Create a fully wired Uploader.

    Examples:
        >>> async with httpx.AsyncClient() as client:
        ...     uploader = create_uploader(settings, client)
        ...     session = uploader.submit(FileSource("data.bin"))
        ...     await uploader.upload(session.session_id)
    """
    return Uploader(
        settings=settings,
        backend=make_backend(settings, client, on_progress=on_progress),
        key_resolver=key_resolver,
        persistence=persistence if persistence is not None else make_persistence(settings),
    )


__all__ = ["make_backend", "make_persistence", "create_uploader"]
