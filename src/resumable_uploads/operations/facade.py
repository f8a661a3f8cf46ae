"""
Operations Facade - Application service layer.

Provides a synchronous interface between the CLI and the async upload
engine, centralizing client construction and configuration policy while
keeping CLI commands thin and testable.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import httpx

from ..backends.base import record_id_for
from ..factory import create_uploader, make_persistence
from ..keys import FixedKeyResolver
from ..models import ChunkPlan, FinalizeResult, PersistedState
from ..planner import plan_chunks
from ..settings import MIB, Settings
from ..sources import FileSource
from ..transport import ProgressCallback


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Centralizes output policy so CLI commands stay declarative.
    """
    ci: bool = False              # Running in CI environment (no progress bars)


def plan_file(path: str, *, chunk_size: int = 5 * MIB, min_file_size_for_chunking: int = 5 * MIB) -> ChunkPlan:
    """
    Chunk plan for a file on disk; no settings or network access required.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the sizes are invalid
    """
    size = Path(path).stat().st_size
    return plan_chunks(size, chunk_size=chunk_size, min_file_size_for_chunking=min_file_size_for_chunking)


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. Each call opens its own HTTP client and event
    loop; exceptions bubble up for central mapping to exit codes.
    """

    def __init__(
        self,
        config: OpsConfig,
        settings: Optional[Settings] = None,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Operations facade.

        Args:
            config: Configuration settings
            settings: Optional settings (if None, loaded from environment)
            http_transport: Optional httpx transport, used by tests to route
                requests to in-memory fakes
        """
        self.cfg = config
        if settings is None:
            from ..settings import create_settings_from_env
            settings = create_settings_from_env()
        self.settings = settings
        self.http_transport = http_transport
        self.persistence = make_persistence(settings)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.http_transport)

    def upload(
        self,
        path: str,
        *,
        session_id: Optional[str] = None,
        key: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Tuple[str, FinalizeResult]:
        """
        Upload a file, resuming persisted progress for a reused session id.

        Returns:
            (session_id, FinalizeResult)
        """
        source = FileSource(path)

        async def _run() -> Tuple[str, FinalizeResult]:
            async with self._client() as client:
                uploader = create_uploader(
                    self.settings,
                    client,
                    key_resolver=FixedKeyResolver(key) if key else None,
                    persistence=self.persistence,
                    on_progress=on_progress,
                )
                session = uploader.submit(source, session_id=session_id)
                return session.session_id, await uploader.upload(session.session_id)

        return asyncio.run(_run())

    def status(self, session_id: str) -> Tuple[str, Optional[PersistedState]]:
        """
        Persisted state of a session.

        Returns:
            (record_id, state or None when nothing is persisted)
        """
        record_id = self._record_id(session_id)
        return record_id, self.persistence.load(record_id)

    def abort(self, session_id: str) -> bool:
        """
        Release a persisted session's server-side transaction and clear its state.

        Returns:
            True if a persisted session was found
        """
        async def _run() -> bool:
            async with self._client() as client:
                uploader = create_uploader(self.settings, client, persistence=self.persistence)
                return await uploader.abort_persisted(session_id)

        return asyncio.run(_run())

    def _record_id(self, session_id: str) -> str:
        return record_id_for(session_id, self.settings.bucket_name)
