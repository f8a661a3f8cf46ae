"""
Persistence adapters for resume-after-restart.

Adapters store the PersistedState of a session under a record id chosen by
the engine (the backend scopes it, e.g. by bucket, so the same session id
against another bucket never resumes the wrong transaction).
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol, Union, runtime_checkable

from pydantic import ValidationError

from .models import PersistedState

__all__ = ["PersistenceAdapter", "InMemoryPersistence", "FilePersistence"]

logger = logging.getLogger(__name__)


@runtime_checkable
class PersistenceAdapter(Protocol):
    """Protocol for storing resumable session state."""

    def save(self, record_id: str, state: PersistedState) -> None:
        ...

    def load(self, record_id: str) -> Optional[PersistedState]:
        """Return the stored state, or None when nothing usable is stored."""
        ...

    def clear(self, record_id: str) -> None:
        """Remove the stored state; clearing a missing record is not an error."""
        ...


class InMemoryPersistence(PersistenceAdapter):
    """Keeps state for the lifetime of the process only."""

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}

    def save(self, record_id: str, state: PersistedState) -> None:
        # Stored serialized so callers never share mutable state with the store
        self._records[record_id] = state.model_dump_json()

    def load(self, record_id: str) -> Optional[PersistedState]:
        raw = self._records.get(record_id)
        if raw is None:
            return None
        return PersistedState.model_validate_json(raw)

    def clear(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class FilePersistence(PersistenceAdapter):
    """
    One JSON document per record inside a state directory.

    Writes are atomic (temp file + rename) so a crash mid-write leaves either
    the previous record or the new one, never a truncated file.
    """

    SUFFIX = ".upload.json"

    def __init__(self, state_dir: Union[str, Path]) -> None:
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, record_id: str) -> Path:
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", record_id)
        if not safe_name.strip("."):
            raise ValueError(f"Invalid record id: {record_id!r}")
        return self.state_dir / f"{safe_name}{self.SUFFIX}"

    def save(self, record_id: str, state: PersistedState) -> None:
        target = self._path_for(record_id)
        payload = state.model_dump_json(indent=2).encode("utf-8")

        fd, temp_path = tempfile.mkstemp(prefix=".uploads.tmp.", dir=self.state_dir)
        temp_path = Path(temp_path)
        try:
            with os.fdopen(fd, "wb") as out:
                out.write(payload)
                out.flush()
                os.fsync(out.fileno())
            os.replace(temp_path, target)
        except Exception:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            raise

    def load(self, record_id: str) -> Optional[PersistedState]:
        path = self._path_for(record_id)
        if not path.exists():
            return None
        try:
            return PersistedState.model_validate_json(path.read_bytes())
        except ValidationError as e:
            logger.warning(f"Discarding unreadable upload state {path.name}: {e}")
            return None

    def clear(self, record_id: str) -> None:
        try:
            self._path_for(record_id).unlink()
        except FileNotFoundError:
            pass

    def record_ids(self) -> Iterator[str]:
        """Record ids (as stored on disk) of every persisted session."""
        for path in sorted(self.state_dir.glob(f"*{self.SUFFIX}")):
            yield path.name[: -len(self.SUFFIX)]
