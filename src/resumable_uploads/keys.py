"""
Object key naming.

The key-naming collaborator decides where an upload lands inside the bucket
or container. The engine asks for a key once per session and caches it.
"""
from __future__ import annotations

import os
import uuid
from typing import Protocol, runtime_checkable
from urllib.parse import quote

__all__ = ["KeyResolver", "UuidKeyResolver", "FixedKeyResolver", "uri_escape_path"]


@runtime_checkable
class KeyResolver(Protocol):
    """Protocol for resolving an object key for a session."""

    async def resolve_key(self, session_id: str, file_name: str) -> str:
        """
        Return the object key for an upload.

        Raises:
            Any exception; the engine wraps it in KeyResolutionError
        """
        ...


class UuidKeyResolver(KeyResolver):
    """
    Default naming: a random UUID plus the original extension.

    "report.final.pdf" becomes "<uuid4 hex>.pdf"; names without an extension
    get the bare UUID.
    """

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    async def resolve_key(self, session_id: str, file_name: str) -> str:
        _, extension = os.path.splitext(file_name)
        return f"{self.prefix}{uuid.uuid4().hex}{extension.lower()}"


class FixedKeyResolver(KeyResolver):
    """Always returns the key it was constructed with."""

    def __init__(self, key: str) -> None:
        if not key:
            raise ValueError("key must not be empty")
        self.key = key

    async def resolve_key(self, session_id: str, file_name: str) -> str:
        return self.key


def uri_escape_path(key: str) -> str:
    """
    Percent-encode an object key for use in a request path.

    Slashes separate path segments and are kept as-is; everything outside the
    RFC 3986 unreserved set is encoded.
    """
    return quote(key, safe="/~")
