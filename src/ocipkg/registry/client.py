"""
Registry HTTP client for the OCI Distribution API.

RegistrySession owns everything shared between requests: the httpx connection
pool, credentials, per-host discovery results and the token cache. A
RegistryClient speaks to one repository through a session.

Every request goes through the same steps:

1. Discover: `GET /v2/` once per host. A 401 records the host's challenge.
2. Authenticate: with a recorded challenge, obtain a token scoped to
   `repository:{name}:{action}` before the request is sent.
3. Send: a 401 on an unauthenticated request triggers authentication and one
   resend; a 401 after a token was presented is AuthorizationDenied.
"""
from __future__ import annotations

import base64
import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..digest import Digest, digest_of, verify
from ..errors import (
    AuthorizationDenied,
    DigestMismatch,
    NotFound,
    RegistryError,
    TransientRegistryError,
    UnsupportedManifestType,
    UploadOffsetMismatch,
)
from ..image_name import ImageName
from ..media_types import ACCEPTED_MANIFEST_TYPES
from ..settings import Settings
from .auth import PULL, PUSH, AuthState, Challenge, CredentialStore, TokenCache, parse_challenge

__all__ = ["RegistrySession", "RegistryClient"]

logger = logging.getLogger(__name__)

USER_AGENT = "ocipkg/0.1.0"

_RANGE_RE = re.compile(r"^(?:bytes=)?(\d+)-(\d+)$")
_MAX_BACKOFF_S = 30.0


class RegistrySession:
    """
    Process-local context shared by registry clients.

    Thread-safe: clients of the same session may be used from worker threads
    concurrently.
    """

    def __init__(self, settings: Settings, credentials: Optional[CredentialStore] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Args:
            settings: Timeouts, retry budget and chunking parameters
            credentials: Credential lookup (defaults to settings + auth files)
            transport: Custom httpx transport, e.g. httpx.MockTransport in tests
        """
        self.settings = settings
        self.credentials = credentials or CredentialStore.from_settings(settings)
        self.tokens = TokenCache()
        self.client = httpx.Client(
            timeout=httpx.Timeout(settings.http_timeout_s),
            follow_redirects=True,
            verify=not settings.registry_insecure,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )
        self._lock = threading.Lock()
        self._auth_lock = threading.Lock()
        # host -> challenge recorded by discovery (None: no auth required)
        self._discovered: Dict[str, Optional[Challenge]] = {}

    def client_for(self, name: ImageName) -> RegistryClient:
        return RegistryClient(name, self)

    def retrying(self) -> Retrying:
        """Retry policy for idempotent requests."""
        return Retrying(
            stop=stop_after_attempt(self.settings.http_retry + 1),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_s, max=_MAX_BACKOFF_S),
            retry=retry_if_exception_type(TransientRegistryError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )

    def auth_state(self, host: str, repository: str, action: str) -> AuthState:
        return self.tokens.state((host, repository, action))

    def discover(self, host: str, base_url: str) -> Optional[Challenge]:
        """
        Probe `GET /v2/` once per host and remember the auth challenge.

        Raises:
            TransientRegistryError: If the registry cannot be reached
            RegistryError: If the endpoint answers with an unexpected status
        """
        with self._lock:
            if host in self._discovered:
                return self._discovered[host]

        url = f"{base_url}/v2/"
        response = self.retrying()(self._get, url)
        challenge: Optional[Challenge] = None
        if response.status_code == 401:
            challenge = parse_challenge(response.headers.get("WWW-Authenticate", ""))
            logger.debug(f"Registry {host} requires {challenge.scheme if challenge else 'unknown'} auth")
        elif response.status_code >= 500:
            raise TransientRegistryError(f"GET {url} returned {response.status_code}",
                                         status_code=response.status_code)
        elif not response.is_success and response.status_code != 404:
            raise RegistryError(f"GET {url} returned {response.status_code}",
                                status_code=response.status_code)
        else:
            logger.debug(f"Registry {host} allows anonymous access")

        with self._lock:
            self._discovered[host] = challenge
        return challenge

    def authorization(self, host: str, repository: str, action: str,
                      challenge: Optional[Challenge]) -> Optional[str]:
        """
        Authorization header value for a scope, authenticating if needed.

        Returns:
            Header value, or None when no challenge applies

        Raises:
            AuthorizationDenied: If the token endpoint rejects the request
        """
        if challenge is None:
            return None
        key = (host, repository, action)
        cached = self.tokens.get(key)
        if cached is not None:
            return cached

        with self._auth_lock:
            # Another thread may have finished authenticating meanwhile
            cached = self.tokens.get(key)
            if cached is not None:
                return cached
            self.tokens.set_state(key, AuthState.AUTHENTICATING)
            try:
                header, expires_in = self._authenticate(host, repository, action, challenge)
            except BaseException:
                self.tokens.set_state(key, AuthState.FAILED)
                raise
            self.tokens.put(key, header, expires_in)
            return header

    def verify_credentials(self, host: str, base_url: str) -> None:
        """
        Check that the registry accepts this session's credentials for `host`.

        Uses the challenge announced by `GET /v2/` as is; a registry that
        allows anonymous access accepts any credentials.

        Raises:
            AuthorizationDenied: If the registry or its token endpoint refuses them
        """
        challenge = self.discover(host, base_url)
        if challenge is None:
            return
        creds = self.credentials.get_credentials(host)
        if creds is None:
            raise AuthorizationDenied(f"No credentials for {host}")

        if challenge.scheme == "bearer" and challenge.realm:
            url = challenge.realm
            params = {k: v for k, v in (("service", challenge.service), ("scope", challenge.scope)) if v}
        else:
            url, params = f"{base_url}/v2/", {}

        def get() -> httpx.Response:
            try:
                resp = self.client.get(url, params=params, auth=creds)
            except httpx.TransportError as e:
                raise TransientRegistryError(f"GET {url} failed: {e}") from e
            if resp.status_code >= 500:
                raise TransientRegistryError(f"GET {url} returned {resp.status_code}",
                                             status_code=resp.status_code)
            return resp

        response = self.retrying()(get)
        if response.status_code in (401, 403):
            raise AuthorizationDenied(f"Registry {host} rejected the credentials")
        if not response.is_success:
            raise RegistryError(f"GET {url} returned {response.status_code}",
                                status_code=response.status_code)
        logger.debug(f"Credentials for {host} accepted")

    def reject(self, host: str, repository: str, action: str) -> None:
        """Mark a scope whose token was refused."""
        self.tokens.set_state((host, repository, action), AuthState.FAILED)

    def _authenticate(self, host: str, repository: str, action: str,
                      challenge: Challenge) -> Tuple[str, Optional[float]]:
        creds = self.credentials.get_credentials(host)

        if challenge.scheme == "basic":
            if creds is None:
                raise AuthorizationDenied(f"Registry {host} requires credentials (Basic auth)")
            encoded = base64.b64encode(f"{creds[0]}:{creds[1]}".encode()).decode()
            return f"Basic {encoded}", None

        if not challenge.realm:
            raise AuthorizationDenied(f"Bearer challenge from {host} has no realm")

        params = {"scope": f"repository:{repository}:{action}"}
        if challenge.service:
            params["service"] = challenge.service

        logger.debug(f"Fetching token for repository:{repository}:{action} from {challenge.realm}")

        def fetch() -> httpx.Response:
            try:
                resp = self.client.get(challenge.realm, params=params, auth=creds)
            except httpx.TransportError as e:
                raise TransientRegistryError(f"Token request to {challenge.realm} failed: {e}") from e
            if resp.status_code >= 500:
                raise TransientRegistryError(f"Token endpoint {challenge.realm} returned {resp.status_code}",
                                             status_code=resp.status_code)
            return resp

        response = self.retrying()(fetch)
        if response.status_code in (401, 403):
            raise AuthorizationDenied(
                f"Token endpoint {challenge.realm} rejected request for repository:{repository}:{action}"
            )
        if not response.is_success:
            raise RegistryError(f"Token endpoint {challenge.realm} returned {response.status_code}",
                                status_code=response.status_code)
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise AuthorizationDenied(f"Token endpoint {challenge.realm} returned invalid JSON: {e}") from e

        token = data.get("token") or data.get("access_token")
        if not token:
            raise AuthorizationDenied(f"Token endpoint {challenge.realm} returned no token")
        return f"Bearer {token}", data.get("expires_in")

    def _get(self, url: str) -> httpx.Response:
        try:
            return self.client.get(url)
        except httpx.TransportError as e:
            raise TransientRegistryError(f"GET {url} failed: {e}") from e

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


@dataclass
class _UploadSession:
    url: str
    min_chunk: Optional[int] = None


class RegistryClient:
    """
    Distribution API operations on one repository.

    Reads (HEAD/GET) are retried on transient failures. Uploads restart from a
    fresh upload session (monolithic) or resume after re-querying the upload
    status (chunked).
    """

    def __init__(self, name: ImageName, session: RegistrySession):
        self.name = name
        self.session = session
        self.settings = session.settings
        self.base_url = name.registry_url(insecure=self.settings.registry_insecure)

    @property
    def repository(self) -> str:
        return self.name.name

    def _url(self, path: str) -> str:
        return f"{self.base_url}/v2/{self.repository}/{path}"

    # Discovery

    def ping(self) -> None:
        """Discover the registry's auth requirements."""
        self.session.discover(self.name.host, self.base_url)

    # Blobs

    def blob_exists(self, digest: Digest) -> bool:
        """HEAD the blob: True for 200, False for 404."""
        url = self._url(f"blobs/{digest}")

        def head() -> bool:
            response = self._send("HEAD", url)
            if response.status_code == 404:
                return False
            self._raise_for_status(response, f"HEAD blob {digest}")
            return True

        return self.session.retrying()(head)

    def get_blob(self, digest: Digest) -> bytes:
        """
        Download a blob and verify it.

        Raises:
            NotFound: If the blob does not exist
            DigestMismatch: If the content does not hash to `digest`
        """
        url = self._url(f"blobs/{digest}")

        def get() -> bytes:
            response = self._send("GET", url)
            self._raise_for_status(response, f"GET blob {digest}")
            return response.content

        data = self.session.retrying()(get)
        verify(data, digest, context=f"blob from {self.name.repository}")
        return data

    def push_blob(self, data: bytes, digest: Optional[Digest] = None) -> Digest:
        """
        Upload a blob.

        Blobs at or above the chunked threshold are sent as a PATCH sequence;
        smaller blobs in a single PUT.

        Returns:
            Digest of the uploaded content
        """
        digest = digest or digest_of(data)
        if len(data) >= self.settings.chunked_threshold:
            self._upload_chunked(data, digest)
        else:
            self._upload_monolithic(data, digest)
        logger.debug(f"Uploaded blob {digest.short()} ({len(data)} bytes) to {self.name.repository}")
        return digest

    def upload_status(self, url: str, confirmed: int = 0) -> Tuple[str, int]:
        """
        Query an upload session.

        `Range: 0-0` reads as an empty session and as one byte held alike;
        it is taken as empty only while `confirmed` (bytes the registry has
        already acknowledged) is 0.

        Returns:
            (upload URL to continue with, number of bytes the registry holds)
        """
        response = self._send("GET", url, action=PUSH)
        self._raise_for_status(response, "GET upload status")
        offset = _range_end(response.headers.get("Range"), allow_empty=confirmed == 0)
        return self._location(response, url), offset

    def _start_upload(self) -> _UploadSession:
        response = self._send("POST", self._url("blobs/uploads/"), action=PUSH,
                              content=b"", headers={"Content-Length": "0"})
        self._raise_for_status(response, "POST blob upload")
        location = response.headers.get("Location")
        if not location:
            raise RegistryError(f"Registry did not return Location for upload to {self.name.repository}",
                                status_code=response.status_code)
        min_chunk = response.headers.get("OCI-Chunk-Min-Length")
        return _UploadSession(
            url=urljoin(self.base_url + "/", location),
            min_chunk=int(min_chunk) if min_chunk and min_chunk.isdigit() else None,
        )

    def _upload_monolithic(self, data: bytes, digest: Digest) -> None:
        def attempt() -> None:
            upload = self._start_upload()
            response = self._send(
                "PUT", _with_digest(upload.url, digest), action=PUSH, content=data,
                headers={"Content-Type": "application/octet-stream", "Content-Length": str(len(data))},
            )
            self._raise_for_status(response, f"PUT blob {digest}")
            self._check_content_digest(response, digest, "blob upload")

        self.session.retrying()(attempt)

    def _upload_chunked(self, data: bytes, digest: Digest) -> None:
        upload = self.session.retrying()(self._start_upload)
        chunk_size = max(self.settings.chunk_size, upload.min_chunk or 0)
        url = upload.url
        total = len(data)
        offset = 0
        logger.debug(f"Chunked upload of {digest.short()}: {total} bytes in chunks of {chunk_size}")

        while offset < total:
            for attempt in self.session.retrying():
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        url, offset = self.upload_status(url, confirmed=offset)
                        logger.debug(f"Resuming upload of {digest.short()} at offset {offset}")
                    if offset < total:
                        end = min(offset + chunk_size, total)
                        url = self._patch_chunk(url, data, offset, end)
                        offset = end

        response = self._send("PUT", _with_digest(url, digest), action=PUSH, content=b"",
                              headers={"Content-Length": "0"})
        self._raise_for_status(response, f"PUT blob {digest}")
        self._check_content_digest(response, digest, "blob upload")

    def _patch_chunk(self, url: str, data: bytes, start: int, end: int) -> str:
        chunk = data[start:end]
        response = self._send(
            "PATCH", url, action=PUSH, content=chunk,
            headers={
                "Content-Type": "application/octet-stream",
                "Content-Range": f"{start}-{end - 1}",
                "Content-Length": str(len(chunk)),
            },
        )
        self._raise_for_status(response, f"PATCH upload chunk {start}-{end - 1}")
        reported = _range_end(response.headers.get("Range"))
        if reported != end:
            raise UploadOffsetMismatch(
                f"Registry reports {reported} bytes received after sending {end} to {url}",
                expected=end,
                actual=reported,
            )
        logger.debug(f"Chunk {start}-{end - 1} accepted")
        return self._location(response, url)

    # Manifests

    def head_manifest(self, reference: Optional[str] = None) -> Digest:
        """
        Resolve a tag or digest to the manifest digest without downloading it.

        Falls back to GET when the registry omits Docker-Content-Digest.
        """
        reference = reference or self.name.reference
        url = self._url(f"manifests/{reference}")

        def head() -> Optional[str]:
            response = self._send("HEAD", url, headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)})
            self._raise_for_status(response, f"HEAD manifest {self.name.repository}:{reference}")
            return response.headers.get("Docker-Content-Digest")

        header = self.session.retrying()(head)
        if header:
            return Digest.parse(header)
        digest, _, _ = self.get_manifest(reference)
        return digest

    def get_manifest(self, reference: Optional[str] = None) -> Tuple[Digest, bytes, str]:
        """
        Fetch a manifest or index.

        Returns:
            (digest of the exact bytes, bytes, media type)

        Raises:
            NotFound: If the reference does not exist
            UnsupportedManifestType: If the media type is not accepted
            DigestMismatch: If the bytes disagree with the digest reference or
                the registry's Docker-Content-Digest header
        """
        reference = reference or self.name.reference
        url = self._url(f"manifests/{reference}")

        def get() -> httpx.Response:
            response = self._send("GET", url, headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)})
            self._raise_for_status(response, f"GET manifest {self.name.repository}:{reference}")
            return response

        response = self.session.retrying()(get)
        payload = response.content
        media_type = _manifest_media_type(payload, response.headers.get("Content-Type", ""))
        if media_type not in ACCEPTED_MANIFEST_TYPES:
            raise UnsupportedManifestType(
                f"Unsupported manifest media type: {media_type}. "
                f"Expected one of: {', '.join(ACCEPTED_MANIFEST_TYPES)}"
            )

        digest = digest_of(payload)
        if ":" in reference:
            verify(payload, reference, context=f"manifest {self.name.repository}")
            digest = Digest.parse(reference)
        self._check_content_digest(response, digest, "manifest pull")
        return digest, payload, media_type

    def push_manifest(self, payload: bytes, media_type: str, reference: Optional[str] = None) -> Digest:
        """
        Upload a manifest under a tag or digest.

        Raises:
            DigestMismatch: If the registry computes a different digest
        """
        reference = reference or self.name.reference
        url = self._url(f"manifests/{reference}")
        digest = digest_of(payload)

        def put() -> httpx.Response:
            response = self._send("PUT", url, action=PUSH, content=payload,
                                  headers={"Content-Type": media_type})
            self._raise_for_status(response, f"PUT manifest {self.name.repository}:{reference}")
            return response

        response = self.session.retrying()(put)
        self._check_content_digest(response, digest, "manifest push")
        logger.debug(f"Pushed manifest {digest.short()} as {self.name.repository}:{reference}")
        return digest

    # Tags

    def get_tags(self) -> List[str]:
        """List tags, following `Link: rel="next"` pagination."""
        tags: List[str] = []
        url: Optional[str] = self._url("tags/list")

        while url:
            def get(page_url: str = url) -> httpx.Response:
                response = self._send("GET", page_url)
                self._raise_for_status(response, f"GET tags of {self.name.repository}")
                return response

            response = self.session.retrying()(get)
            try:
                data = response.json()
            except json.JSONDecodeError as e:
                raise RegistryError(f"Invalid tag list from {self.name.repository}: {e}") from e
            tags.extend(data.get("tags") or [])
            next_link = response.links.get("next", {}).get("url")
            url = urljoin(self.base_url + "/", next_link) if next_link else None
        return tags

    # Plumbing

    def _send(self, method: str, url: str, *, action: str = PULL,
              headers: Optional[Dict[str, str]] = None, content: Optional[bytes] = None) -> httpx.Response:
        host = self.name.host
        challenge = self.session.discover(host, self.base_url)
        request_headers = dict(headers or {})
        auth = self.session.authorization(host, self.repository, action, challenge)
        if auth is not None:
            request_headers["Authorization"] = auth

        response = self._request(method, url, request_headers, content)
        if response.status_code != 401:
            return response

        if auth is not None:
            self.session.reject(host, self.repository, action)
            raise AuthorizationDenied(f"{method} {url}: credentials rejected for {self.repository} ({action})")

        # Challenged although discovery saw none: authenticate with this one
        challenge = parse_challenge(response.headers.get("WWW-Authenticate", ""))
        if challenge is None:
            raise AuthorizationDenied(f"{method} {url}: unauthorized and no usable challenge")
        request_headers["Authorization"] = self.session.authorization(host, self.repository, action, challenge)
        response = self._request(method, url, request_headers, content)
        if response.status_code == 401:
            self.session.reject(host, self.repository, action)
            raise AuthorizationDenied(f"{method} {url}: credentials rejected for {self.repository} ({action})")
        return response

    def _request(self, method: str, url: str, headers: Dict[str, str],
                 content: Optional[bytes]) -> httpx.Response:
        try:
            return self.session.client.request(method, url, headers=headers, content=content)
        except httpx.TransportError as e:
            raise TransientRegistryError(f"{method} {url} failed: {e}") from e

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if response.is_success:
            return
        codes, detail = _error_codes(response)
        message = f"{operation} at {self.name.host} returned {status}{detail}"
        if status in (401, 403):
            raise AuthorizationDenied(message)
        if status == 404:
            raise NotFound(message)
        if status == 416:
            raise UploadOffsetMismatch(message)
        if status == 429 or status >= 500:
            raise TransientRegistryError(message, status_code=status, codes=codes)
        raise RegistryError(message, status_code=status, codes=codes)

    def _check_content_digest(self, response: httpx.Response, digest: Digest, operation: str) -> None:
        header = response.headers.get("Docker-Content-Digest")
        if header and header != str(digest):
            raise DigestMismatch(
                f"Digest mismatch ({operation} {self.name.repository}): expected {digest}, registry says {header}",
                expected=str(digest),
                actual=header,
            )

    def _location(self, response: httpx.Response, current: str) -> str:
        location = response.headers.get("Location")
        return urljoin(self.base_url + "/", location) if location else current


def _with_digest(url: str, digest: Digest) -> str:
    return str(httpx.URL(url).copy_merge_params({"digest": str(digest)}))


def _range_end(header: Optional[str], allow_empty: bool = False) -> int:
    """
    Bytes held by the registry according to a `Range: 0-{last}` header.

    With `allow_empty`, a missing header or `0-0` means nothing uploaded yet.
    Otherwise `0-0` is one byte. A lost response to a first chunk of exactly
    one byte (chunk_size 1) is therefore misread as an empty session.
    """
    if header is None:
        if allow_empty:
            return 0
        raise RegistryError("Registry did not report an upload Range")
    match = _RANGE_RE.match(header.strip())
    if not match:
        raise RegistryError(f"Invalid upload Range header: {header!r}")
    start, last = int(match.group(1)), int(match.group(2))
    if allow_empty and start == 0 and last == 0:
        return 0
    return last + 1


def _manifest_media_type(payload: bytes, content_type: str) -> str:
    try:
        document = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        document = None
    if isinstance(document, dict) and document.get("mediaType"):
        return document["mediaType"]
    return content_type.split(";", 1)[0].strip()


def _error_codes(response: httpx.Response) -> Tuple[List[str], str]:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return [], ""
    errors = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list):
        return [], ""
    codes = [str(e.get("code")) for e in errors if isinstance(e, dict) and e.get("code")]
    messages = [str(e.get("message")) for e in errors if isinstance(e, dict) and e.get("message")]
    detail = f" ({', '.join(codes)}: {'; '.join(messages)})" if codes else ""
    return codes, detail
