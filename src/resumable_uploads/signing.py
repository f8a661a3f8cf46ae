"""
Signature broker.

Every outbound storage request must be authorized by the local trusted
server before it is sent. Two flavors exist:

- S3RequestSigner: builds the AWS Signature Version 4 string-to-sign locally,
  asks the server to sign it and composes the Authorization header.
- LocalCredentialsSigner: same string-to-sign, but signs it with a locally
  held secret key (no signing server).
- SasBroker: asks the server for a time-limited capability URI (SAS) for one
  blob and one verb.

Both share a pending-request table keyed by correlation id. Concurrent
requests with the same id share one call; callers must use distinct ids
for distinct outbound calls (see request_id_for).
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlparse

import httpx

from .errors import AuthorizationError
from .models import AuthorizationGrant

__all__ = [
    "CanonicalTarget",
    "SignatureBroker",
    "S3RequestSigner",
    "LocalCredentialsSigner",
    "SasBroker",
    "request_id_for",
    "EMPTY_SHA256",
    "sha256_hex",
]

logger = logging.getLogger(__name__)

EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()

SIGV4_ALGORITHM = "AWS4-HMAC-SHA256"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def request_id_for(session_id: str, operation: str, chunk_index: Optional[int] = None, attempt: int = 0) -> str:
    """
    Correlation id for one authorization request.

    Two chunks of the same file, or the same chunk on two attempts, always
    get different ids so they never share a pending entry.

    Examples:
        >>> request_id_for("f1", "part", 3, attempt=2)
        'f1.part.3.2'
        >>> request_id_for("f1", "combine", attempt=1)
        'f1.combine.1'
    """
    if chunk_index is None:
        return f"{session_id}.{operation}.{attempt}"
    return f"{session_id}.{operation}.{chunk_index}.{attempt}"


def _strip_query(url: str) -> str:
    """URL without its query string, safe for logs."""
    return url.split("?", 1)[0]


@dataclass(frozen=True)
class CanonicalTarget:
    """
    The exact resource an outbound request addresses.

    Attributes:
        base_url: Scheme and authority (plus any fixed path prefix)
        path: Already-escaped path of the object, starting with "/"
        query: Query parameters in request order; values may be empty
        headers: Headers that must be covered by the authorization
    """
    base_url: str
    path: str
    query: Tuple[Tuple[str, str], ...] = ()
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        url = self.base_url.rstrip("/") + self.path
        if self.query:
            url += "?" + canonical_query_string(self.query)
        return url

    @property
    def host(self) -> str:
        return urlparse(self.base_url).netloc

    @property
    def full_path(self) -> str:
        """Path as seen by the server, including any prefix in base_url."""
        prefix = urlparse(self.base_url).path.rstrip("/")
        return prefix + self.path


def _uri_encode(value: str) -> str:
    return quote(value, safe="-_.~")


def canonical_query_string(query: Tuple[Tuple[str, str], ...]) -> str:
    """Query parameters sorted by name and strictly encoded (SigV4 rules)."""
    pairs = sorted((_uri_encode(name), _uri_encode(value)) for name, value in query)
    return "&".join(f"{name}={value}" for name, value in pairs)


class SignatureBroker(ABC):
    """
    Base broker with the shared pending-request table.

    Subclasses implement _authorize() for one backend flavor.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient],
        endpoint: str,
        *,
        custom_headers: Optional[Mapping[str, str]] = None,
        timeout_s: float = 15.0,
    ) -> None:
        self._client = client
        self.endpoint = endpoint
        self.custom_headers = dict(custom_headers or {})
        self.timeout_s = timeout_s
        self._pending: Dict[str, "asyncio.Future[AuthorizationGrant]"] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def authorize(
        self,
        request_id: str,
        verb: str,
        target: CanonicalTarget,
        content_sha256: Optional[str] = None,
    ) -> AuthorizationGrant:
        """
        Authorize one outbound request.

        Args:
            request_id: Correlation id, unique per distinct outbound call
            verb: HTTP method of the storage request
            target: Resource and headers the request will carry
            content_sha256: Hex SHA-256 of the request body, if the flavor signs it

        Returns:
            AuthorizationGrant for exactly this request

        Raises:
            AuthorizationError: If the local server fails or refuses
        """
        pending = self._pending.get(request_id)
        if pending is None:
            pending = asyncio.ensure_future(self._authorize_logged(request_id, verb, target, content_sha256))
            self._pending[request_id] = pending
            pending.add_done_callback(partial(self._forget, request_id))
        return await asyncio.shield(pending)

    def _forget(self, request_id: str, future: "asyncio.Future[AuthorizationGrant]") -> None:
        if self._pending.get(request_id) is future:
            del self._pending[request_id]
        # Mark the outcome retrieved; every waiter re-raises it through shield()
        if not future.cancelled():
            future.exception()

    async def _authorize_logged(
        self,
        request_id: str,
        verb: str,
        target: CanonicalTarget,
        content_sha256: Optional[str],
    ) -> AuthorizationGrant:
        logger.debug(f"Requesting authorization {request_id} for {verb} {_strip_query(target.url)}")
        try:
            return await self._authorize(verb, target, content_sha256)
        except AuthorizationError:
            logger.error(f"Authorization {request_id} failed for {verb} {_strip_query(target.url)}")
            raise
        except httpx.RequestError as e:
            logger.error(f"Authorization {request_id}: cannot reach signing server: {e}")
            raise AuthorizationError(f"Problem communicating with local server: {e}") from e

    @abstractmethod
    async def _authorize(
        self,
        verb: str,
        target: CanonicalTarget,
        content_sha256: Optional[str],
    ) -> AuthorizationGrant:
        ...


class S3RequestSigner(SignatureBroker):
    """
    Signature Version 4 broker for S3-style REST requests.

    The secret key never leaves the local server: the client sends the
    string-to-sign as {"headers": "..."} and expects {"signature": "<hex>"}.
    A response containing "invalid": true is a refusal.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient],
        endpoint: str,
        *,
        access_key: str,
        region: str = "us-east-1",
        session_token: Optional[str] = None,
        custom_headers: Optional[Mapping[str, str]] = None,
        timeout_s: float = 15.0,
        clock=None,
    ) -> None:
        super().__init__(client, endpoint, custom_headers=custom_headers, timeout_s=timeout_s)
        if not access_key:
            raise ValueError("access_key is required for S3 request signing")
        self.access_key = access_key
        self.region = region
        self.session_token = session_token
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_string_to_sign(
        self,
        verb: str,
        target: CanonicalTarget,
        content_sha256: str,
        amz_date: str,
    ) -> Tuple[str, str, Dict[str, str]]:
        """
        Build the SigV4 string-to-sign.

        Returns:
            (string_to_sign, signed_headers, headers_to_send)
        """
        headers: Dict[str, str] = {name: str(value) for name, value in target.headers.items()}
        headers["x-amz-date"] = amz_date
        headers["x-amz-content-sha256"] = content_sha256
        if self.session_token:
            headers["x-amz-security-token"] = self.session_token

        canonical = {"host": target.host}
        for name, value in headers.items():
            canonical[name.lower()] = " ".join(value.strip().split())

        signed_headers = ";".join(sorted(canonical))
        canonical_headers = "".join(f"{name}:{canonical[name]}\n" for name in sorted(canonical))

        canonical_request = "\n".join([
            verb.upper(),
            target.full_path or "/",
            canonical_query_string(target.query),
            canonical_headers,
            signed_headers,
            content_sha256,
        ])

        scope = f"{amz_date[:8]}/{self.region}/s3/aws4_request"
        string_to_sign = "\n".join([
            SIGV4_ALGORITHM,
            amz_date,
            scope,
            sha256_hex(canonical_request.encode("utf-8")),
        ])
        return string_to_sign, signed_headers, headers

    async def _authorize(
        self,
        verb: str,
        target: CanonicalTarget,
        content_sha256: Optional[str],
    ) -> AuthorizationGrant:
        payload_hash = content_sha256 or EMPTY_SHA256
        amz_date = self._clock().strftime("%Y%m%dT%H%M%SZ")
        string_to_sign, signed_headers, headers = self.build_string_to_sign(verb, target, payload_hash, amz_date)
        signature = await self._sign(string_to_sign, amz_date)

        scope = f"{amz_date[:8]}/{self.region}/s3/aws4_request"
        headers["Authorization"] = (
            f"{SIGV4_ALGORITHM} Credential={self.access_key}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return AuthorizationGrant(verb=verb.upper(), url=target.url, headers=headers, content_sha256=payload_hash)

    async def _sign(self, string_to_sign: str, amz_date: str) -> str:
        response = await self._client.post(
            self.endpoint,
            json={"headers": string_to_sign},
            headers=self.custom_headers,
            timeout=self.timeout_s,
        )
        return self._parse_signature(response)

    @staticmethod
    def _parse_signature(response: httpx.Response) -> str:
        if response.status_code != 200:
            raise AuthorizationError(
                f"Signature request failed with status {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise AuthorizationError(f"Signature response is not valid JSON: {e}", status_code=response.status_code) from e

        if not isinstance(body, dict) or body.get("invalid"):
            raise AuthorizationError("Signing server refused to sign the request", status_code=response.status_code)

        signature = body.get("signature")
        if not signature:
            raise AuthorizationError("Signature response did not include a signature", status_code=response.status_code)
        return str(signature)


class LocalCredentialsSigner(S3RequestSigner):
    """
    Signature Version 4 signer that holds the secret key itself.

    For trusted processes where no separate signing server exists. The
    string-to-sign is built exactly as for S3RequestSigner; only the final
    HMAC step runs locally.
    """

    def __init__(
        self,
        *,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        session_token: Optional[str] = None,
        clock=None,
    ) -> None:
        super().__init__(None, "", access_key=access_key, region=region, session_token=session_token, clock=clock)
        if not secret_key:
            raise ValueError("secret_key is required for local request signing")
        self._secret_key = secret_key

    def signing_key(self, date_stamp: str) -> bytes:
        """Derived key for one day, region and service (kSigning)."""
        key = ("AWS4" + self._secret_key).encode("utf-8")
        for part in (date_stamp, self.region, "s3", "aws4_request"):
            key = hmac.new(key, part.encode("utf-8"), hashlib.sha256).digest()
        return key

    async def _sign(self, string_to_sign: str, amz_date: str) -> str:
        return hmac.new(self.signing_key(amz_date[:8]), string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


class SasBroker(SignatureBroker):
    """
    Capability-URI broker for block-blob storage.

    Sends GET {endpoint}?bloburi=<blob url>&_method=<VERB>; the response body
    is the SAS URI to use for exactly that verb on that blob.
    """

    async def _authorize(
        self,
        verb: str,
        target: CanonicalTarget,
        content_sha256: Optional[str],
    ) -> AuthorizationGrant:
        response = await self._client.get(
            self.endpoint,
            params={"bloburi": target.url, "_method": verb.upper()},
            headers=self.custom_headers,
            timeout=self.timeout_s,
        )
        if response.status_code != 200:
            raise AuthorizationError(
                f"SAS request failed with status {response.status_code}",
                status_code=response.status_code,
            )

        sas_uri = response.text.strip()
        if not sas_uri:
            raise AuthorizationError("SAS request returned an empty response", status_code=response.status_code)

        logger.debug(f"SAS request for {verb.upper()} {_strip_query(target.url)} succeeded")
        return AuthorizationGrant(verb=verb.upper(), url=sas_uri, headers=dict(target.headers), content_sha256=content_sha256)
