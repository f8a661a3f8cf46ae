"""
Upload sources.

An upload source is anything that can report its size and hand out an exact
byte range on demand. Chunks are read lazily, one range at a time, so large
files never have to be held in memory.
"""
from __future__ import annotations

import mimetypes
import os
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

__all__ = ["UploadSource", "FileSource", "BytesSource", "DEFAULT_CONTENT_TYPE"]

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@runtime_checkable
class UploadSource(Protocol):
    """Protocol for data handed to the upload engine."""

    @property
    def name(self) -> str:
        """Original file name, used for key naming and object metadata."""
        ...

    @property
    def size(self) -> int:
        ...

    @property
    def content_type(self) -> str:
        ...

    def read_range(self, start: int, end: int) -> bytes:
        """
        Read bytes [start, end).

        Raises:
            ValueError: If the range falls outside the source
            OSError: For I/O errors
        """
        ...


def _check_range(start: int, end: int, size: int) -> None:
    if start < 0 or end < start or end > size:
        raise ValueError(f"Invalid byte range [{start}, {end}) for source of size {size}")


class FileSource(UploadSource):
    """File on local disk."""

    def __init__(self, path: Union[str, Path], *, content_type: Optional[str] = None) -> None:
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"Upload source not found: {self.path}")
        self._size = os.path.getsize(self.path)
        guessed, _ = mimetypes.guess_type(self.path.name)
        self._content_type = content_type or guessed or DEFAULT_CONTENT_TYPE

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size(self) -> int:
        return self._size

    @property
    def content_type(self) -> str:
        return self._content_type

    def read_range(self, start: int, end: int) -> bytes:
        _check_range(start, end, self._size)
        with open(self.path, "rb") as f:
            f.seek(start)
            data = f.read(end - start)
        if len(data) != end - start:
            raise OSError(f"Short read from {self.path}: expected {end - start} bytes, got {len(data)}")
        return data


class BytesSource(UploadSource):
    """In-memory payload."""

    def __init__(self, data: bytes, *, name: str = "blob", content_type: str = DEFAULT_CONTENT_TYPE) -> None:
        self._data = bytes(data)
        self._name = name
        self._content_type = content_type

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def content_type(self) -> str:
        return self._content_type

    def read_range(self, start: int, end: int) -> bytes:
        _check_range(start, end, len(self._data))
        return self._data[start:end]
