"""
Settings and configuration for resumable uploads.

Centralizes configuration values and provides validation with fail-fast behavior.
Loads settings from environment variables at construction time.
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlparse

__all__ = ["Settings", "create_settings_from_env", "MIB", "S3_MIN_PART_SIZE", "METADATA_NAME_PATTERN"]

MIB = 1024 * 1024

# S3 rejects every part but the last one below this size (EntityTooSmall)
S3_MIN_PART_SIZE = 5 * MIB

# Largest block accepted by a single Put Block call
AZURE_MAX_BLOCK_SIZE = 4000 * MIB

SUPPORTED_BACKENDS = ("s3", "azure")

# Header-safe metadata names; block-blob names must also be identifiers
METADATA_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"
AZURE_METADATA_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for the upload engine.

    Storage Settings:
        backend: "s3" (transaction based) or "azure" (capability-URI based)
        endpoint: Bucket or container URL, e.g. https://bucket.s3.amazonaws.com
        bucket: Bucket/container name; derived from endpoint when omitted
        region: Signing region for the S3 backend
        access_key: Public access key id placed in the S3 Authorization header
        secret_key: Secret access key; when set, S3 requests are signed locally
            and no signing server is needed
        session_token: Optional temporary-credentials token (S3)
        acl: Canned ACL applied to new S3 objects
        reduced_redundancy: Store new S3 objects with the REDUCED_REDUNDANCY class
        metadata: User metadata sent with every new object (x-amz-meta-*, x-ms-meta-*)

    Signing Settings:
        signature_endpoint: URL of the local trusted signing server (optional for
            s3 with secret_key)
        signature_headers: Extra headers sent with every signing request
        signature_timeout_s: Timeout for signing requests

    Chunking Settings:
        chunk_size: Bytes per chunk
        min_file_size_for_chunking: Files below this size are sent whole
        max_connections: Maximum concurrent chunk transfers per session

    Retry Settings:
        http_timeout_s: Timeout for storage requests
        max_attempts: Upload attempts before a session is failed
        max_auth_failures: Consecutive signing failures tolerated per session
        retry_backoff_s: Base delay for exponential backoff between attempts

    Persistence Settings:
        state_dir: Directory for resume records; None keeps state in memory
    """
    endpoint: str
    signature_endpoint: str = ""
    backend: str = "s3"
    bucket: Optional[str] = None
    region: str = "us-east-1"
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    session_token: Optional[str] = None
    acl: str = "private"
    reduced_redundancy: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)
    signature_headers: Dict[str, str] = field(default_factory=dict)
    signature_timeout_s: float = 15.0
    chunk_size: int = 5 * MIB
    min_file_size_for_chunking: int = 5 * MIB
    max_connections: int = 3
    http_timeout_s: float = 60.0
    max_attempts: int = 3
    max_auth_failures: int = 3
    retry_backoff_s: float = 1.0
    state_dir: Optional[str] = None

    def __post_init__(self):
        """Validate settings on construction."""
        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(f"Unsupported backend: {self.backend}. Expected one of: {', '.join(SUPPORTED_BACKENDS)}")

        url_pattern = r"^https?://[a-zA-Z0-9.-]+(?::[0-9]+)?(?:/.*)?$"
        if not self.endpoint:
            raise ValueError("endpoint is required")
        if not re.match(url_pattern, self.endpoint):
            raise ValueError(f"Invalid endpoint format: {self.endpoint}")

        if not self.signature_endpoint:
            if not self.signs_locally:
                raise ValueError("signature_endpoint is required unless secret_key is set for the s3 backend")
        elif not re.match(url_pattern, self.signature_endpoint):
            raise ValueError(f"Invalid signature_endpoint format: {self.signature_endpoint}")

        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.backend == "s3" and self.chunk_size < S3_MIN_PART_SIZE:
            raise ValueError(f"chunk_size must be at least {S3_MIN_PART_SIZE} bytes for the s3 backend, got {self.chunk_size}")
        if self.backend == "azure" and self.chunk_size > AZURE_MAX_BLOCK_SIZE:
            raise ValueError(f"chunk_size must be at most {AZURE_MAX_BLOCK_SIZE} bytes for the azure backend, got {self.chunk_size}")

        if self.min_file_size_for_chunking < 0:
            raise ValueError(f"min_file_size_for_chunking must be non-negative, got {self.min_file_size_for_chunking}")

        if not 1 <= self.max_connections <= 6:
            raise ValueError(f"max_connections must be between 1 and 6, got {self.max_connections}")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")
        if self.signature_timeout_s <= 0:
            raise ValueError(f"signature_timeout_s must be positive, got {self.signature_timeout_s}")

        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.max_auth_failures < 1:
            raise ValueError(f"max_auth_failures must be at least 1, got {self.max_auth_failures}")
        if self.retry_backoff_s < 0:
            raise ValueError(f"retry_backoff_s must be non-negative, got {self.retry_backoff_s}")

        if self.backend == "s3" and not self.access_key:
            raise ValueError("access_key is required for the s3 backend")
        if self.backend == "azure" and self.reduced_redundancy:
            raise ValueError("reduced_redundancy is only supported by the s3 backend")

        name_pattern = AZURE_METADATA_NAME_PATTERN if self.backend == "azure" else METADATA_NAME_PATTERN
        for name in self.metadata:
            if not re.match(name_pattern, name):
                raise ValueError(f"Invalid metadata name for the {self.backend} backend: {name!r}")

        if not self.bucket_name:
            raise ValueError(f"Cannot determine bucket/container name from endpoint {self.endpoint}; set bucket explicitly")

    @property
    def signs_locally(self) -> bool:
        """True when S3 requests are signed with locally held credentials."""
        return self.backend == "s3" and bool(self.secret_key)

    @property
    def bucket_name(self) -> str:
        """
        Bucket or container name.

        S3 virtual-hosted endpoints carry the bucket as the first host label
        (bucket.s3.amazonaws.com); path-style and container URLs carry it as
        the last path segment.
        """
        if self.bucket:
            return self.bucket

        parsed = urlparse(self.endpoint)
        segments = [segment for segment in parsed.path.split("/") if segment]
        if segments:
            return segments[-1]

        host = parsed.hostname or ""
        if self.backend == "s3" and ".s3" in host:
            return host.split(".s3", 1)[0]
        return ""


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - UPLOADS_ENDPOINT (required)
        - UPLOADS_SIGNATURE_ENDPOINT (required unless UPLOADS_SECRET_KEY is set for s3)
        - UPLOADS_BACKEND (default: s3)
        - UPLOADS_BUCKET (optional)
        - UPLOADS_REGION (default: us-east-1)
        - UPLOADS_ACCESS_KEY (required for s3)
        - UPLOADS_SECRET_KEY (optional, s3 only)
        - UPLOADS_SESSION_TOKEN (optional)
        - UPLOADS_ACL (default: private)
        - UPLOADS_REDUCED_REDUNDANCY (default: false)
        - UPLOADS_METADATA (optional, JSON object)
        - UPLOADS_SIGNATURE_HEADERS (optional, JSON object)
        - UPLOADS_SIGNATURE_TIMEOUT (default: 15.0)
        - UPLOADS_CHUNK_SIZE (default: 5 MiB)
        - UPLOADS_MIN_CHUNKING_SIZE (default: 5 MiB)
        - UPLOADS_MAX_CONNECTIONS (default: 3)
        - UPLOADS_HTTP_TIMEOUT (default: 60.0)
        - UPLOADS_MAX_ATTEMPTS (default: 3)
        - UPLOADS_MAX_AUTH_FAILURES (default: 3)
        - UPLOADS_RETRY_BACKOFF (default: 1.0)
        - UPLOADS_STATE_DIR (optional)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid or required values missing

    Note:
        Creates a fresh Settings instance every time (no caching).
    """
    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    def str_to_bool(value: str) -> bool:
        return value.lower() in ("true", "1", "yes", "on")

    def get_json_object(key: str) -> Dict[str, str]:
        raw = os.getenv(key)
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"{key} must be a JSON object: {e}") from e
        if not isinstance(value, dict):
            raise ValueError(f"{key} must be a JSON object")
        return {str(name): str(item) for name, item in value.items()}

    endpoint = os.getenv("UPLOADS_ENDPOINT")
    signature_endpoint = os.getenv("UPLOADS_SIGNATURE_ENDPOINT", "")
    secret_key = os.getenv("UPLOADS_SECRET_KEY") or None

    if not endpoint:
        raise ValueError("UPLOADS_ENDPOINT environment variable is required")
    if not signature_endpoint and not secret_key:
        raise ValueError("UPLOADS_SIGNATURE_ENDPOINT environment variable is required")

    return Settings(
        endpoint=endpoint,
        signature_endpoint=signature_endpoint,
        backend=os.getenv("UPLOADS_BACKEND", "s3").lower(),
        bucket=os.getenv("UPLOADS_BUCKET") or None,
        region=os.getenv("UPLOADS_REGION", "us-east-1"),
        access_key=os.getenv("UPLOADS_ACCESS_KEY") or None,
        secret_key=secret_key,
        session_token=os.getenv("UPLOADS_SESSION_TOKEN") or None,
        acl=os.getenv("UPLOADS_ACL", "private"),
        reduced_redundancy=str_to_bool(os.getenv("UPLOADS_REDUCED_REDUNDANCY", "false")),
        metadata=get_json_object("UPLOADS_METADATA"),
        signature_headers=get_json_object("UPLOADS_SIGNATURE_HEADERS"),
        signature_timeout_s=get_float("UPLOADS_SIGNATURE_TIMEOUT", 15.0),
        chunk_size=get_int("UPLOADS_CHUNK_SIZE", 5 * MIB),
        min_file_size_for_chunking=get_int("UPLOADS_MIN_CHUNKING_SIZE", 5 * MIB),
        max_connections=get_int("UPLOADS_MAX_CONNECTIONS", 3),
        http_timeout_s=get_float("UPLOADS_HTTP_TIMEOUT", 60.0),
        max_attempts=get_int("UPLOADS_MAX_ATTEMPTS", 3),
        max_auth_failures=get_int("UPLOADS_MAX_AUTH_FAILURES", 3),
        retry_backoff_s=get_float("UPLOADS_RETRY_BACKOFF", 1.0),
        state_dir=os.getenv("UPLOADS_STATE_DIR") or None,
    )
