"""
Fake OCI registry for testing.

Implements the subset of the Distribution API that ocipkg speaks, in memory,
as an httpx.MockTransport handler. Knobs on the instance inject the failure
modes the client has to cope with: bearer auth, transient 5xx responses,
corrupted blobs, lying upload offsets and paginated tag lists.
"""
from __future__ import annotations

import base64
import hashlib
import json
import re
import threading
import uuid
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import quote

import httpx

__all__ = ["FakeRegistry", "TOKEN_REALM"]

TOKEN_REALM = "https://auth.fake.test/token"
SERVICE = "fake-registry"

_UPLOAD_RE = re.compile(r"^/v2/(?P<name>.+?)/blobs/uploads/(?P<uuid>[^/]*)$")
_BLOB_RE = re.compile(r"^/v2/(?P<name>.+?)/blobs/(?P<digest>[^/]+)$")
_MANIFEST_RE = re.compile(r"^/v2/(?P<name>.+?)/manifests/(?P<ref>[^/]+)$")
_TAGS_RE = re.compile(r"^/v2/(?P<name>.+?)/tags/list$")

_PUSH_METHODS = {"POST", "PATCH", "PUT"}


def _sha256(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def _error(status: int, code: str, message: str = "") -> httpx.Response:
    return httpx.Response(status, json={"errors": [{"code": code, "message": message or code}]})


class FakeRegistry:
    """
    In-memory OCI registry.

    This is a test double; not for production use. Pass `transport` to a
    RegistrySession to route all of its requests here.
    """

    def __init__(self, require_auth: bool = False,
                 credentials: Optional[Tuple[str, str]] = None):
        """
        Args:
            require_auth: Answer unauthenticated requests with a Bearer challenge
            credentials: If set, the token endpoint requires these basic credentials
        """
        self.require_auth = require_auth
        self.credentials = credentials

        self.blobs: Dict[str, Dict[str, bytes]] = {}          # repo -> {digest: bytes}
        self.manifests: Dict[str, Dict[str, Tuple[str, bytes]]] = {}  # repo -> {digest: (media type, bytes)}
        self.tags: Dict[str, Dict[str, str]] = {}             # repo -> {tag: digest}
        self.uploads: Dict[str, bytearray] = {}

        # Failure injection
        self.reject_tokens = False
        self.corrupt_blobs: Set[str] = set()
        self.offset_skew = 0
        self.chunk_min_length: Optional[int] = None
        self.tag_page_size: Optional[int] = None
        self.omit_manifest_digest = False
        self._failures: List[List] = []          # [method, path fragment, remaining, pass-through]
        self._lost_patch_responses = 0

        self.requests: List[Tuple[str, str]] = []
        self.token_requests: List[httpx.Request] = []
        self._issued: Dict[str, str] = {}          # token -> scope
        self._lock = threading.Lock()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # Test utilities

    def put_blob(self, repo: str, data: bytes) -> str:
        digest = _sha256(data)
        self.blobs.setdefault(repo, {})[digest] = data
        return digest

    def put_manifest(self, repo: str, ref: str, payload: bytes,
                     media_type: str = "application/vnd.oci.image.manifest.v1+json") -> str:
        digest = _sha256(payload)
        self.manifests.setdefault(repo, {})[digest] = (media_type, payload)
        if not ref.startswith("sha256:"):
            self.tags.setdefault(repo, {})[ref] = digest
        return digest

    def fail(self, method: str, count: int = 1, path_contains: str = "", after: int = 0) -> None:
        """Let `after` matching requests through, then answer the next `count` with 503."""
        self._failures.append([method, path_contains, count, after])

    def lose_patch_responses(self, count: int = 1) -> None:
        """Apply the next `count` PATCH chunks but answer 503."""
        self._lost_patch_responses = count

    def count(self, method: str, path_contains: str = "") -> int:
        return sum(1 for m, p in self.requests if m == method and path_contains in p)

    # Transport

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            if request.url.host == "auth.fake.test":
                return self._token(request)

            path = request.url.path
            method = request.method
            self.requests.append((method, path))

            if path == "/v2/":
                if self.require_auth and not self._authorized(request, None, method):
                    return self._challenge(None, method)
                return httpx.Response(200, json={})

            repo = self._repository(path)
            if self.require_auth and not self._authorized(request, repo, method):
                return self._challenge(repo, method)

            injected = self._injected_failure(method, path)
            if injected is not None:
                return injected

            match = _UPLOAD_RE.match(path)
            if match:
                return self._upload(request, match.group("name"), match.group("uuid"))
            match = _BLOB_RE.match(path)
            if match:
                return self._blob(request, match.group("name"), match.group("digest"))
            match = _MANIFEST_RE.match(path)
            if match:
                return self._manifest(request, match.group("name"), match.group("ref"))
            match = _TAGS_RE.match(path)
            if match and method == "GET":
                return self._tag_list(request, match.group("name"))
            return _error(404, "NAME_UNKNOWN", path)

    # Auth

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests.append(request)
        if self.credentials is not None:
            user, password = self.credentials
            expected = "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()
            if request.headers.get("Authorization") != expected:
                return _error(401, "UNAUTHORIZED", "bad credentials")
        scope = request.url.params.get("scope", "")
        token = f"token-{len(self._issued)}"
        self._issued[token] = scope
        return httpx.Response(200, json={"token": token, "expires_in": 300})

    def _authorized(self, request: httpx.Request, repo: Optional[str], method: str) -> bool:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return False
        if self.reject_tokens:
            return False
        scope = self._issued.get(header[len("Bearer "):])
        if scope is None:
            return False
        if repo is None:
            return True
        _, _, rest = scope.partition(":")
        name, _, actions = rest.rpartition(":")
        if name != repo:
            return False
        return "push" in actions.split(",") if method in _PUSH_METHODS else True

    def _challenge(self, repo: Optional[str], method: str) -> httpx.Response:
        params = f'realm="{TOKEN_REALM}",service="{SERVICE}"'
        if repo is not None:
            action = "pull,push" if method in _PUSH_METHODS else "pull"
            params += f',scope="repository:{repo}:{action}"'
        response = _error(401, "UNAUTHORIZED", "authentication required")
        response.headers["WWW-Authenticate"] = f"Bearer {params}"
        return response

    @staticmethod
    def _repository(path: str) -> Optional[str]:
        for pattern in (_UPLOAD_RE, _BLOB_RE, _MANIFEST_RE, _TAGS_RE):
            match = pattern.match(path)
            if match:
                return match.group("name")
        return None

    def _injected_failure(self, method: str, path: str) -> Optional[httpx.Response]:
        for failure in self._failures:
            if failure[0] == method and failure[1] in path and failure[2] > 0:
                if failure[3] > 0:
                    failure[3] -= 1
                    continue
                failure[2] -= 1
                return _error(503, "UNAVAILABLE", "injected failure")
        return None

    # Blobs

    def _blob(self, request: httpx.Request, repo: str, digest: str) -> httpx.Response:
        data = self.blobs.get(repo, {}).get(digest)
        if data is None:
            if request.method == "HEAD":
                return httpx.Response(404)
            return _error(404, "BLOB_UNKNOWN", digest)
        if digest in self.corrupt_blobs:
            data = bytes([data[0] ^ 0xFF]) + data[1:] if data else b"x"
        headers = {"Docker-Content-Digest": digest, "Content-Type": "application/octet-stream"}
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=data)

    def _upload(self, request: httpx.Request, repo: str, upload_id: str) -> httpx.Response:
        method = request.method
        if method == "POST" and upload_id == "":
            upload_id = uuid.uuid4().hex
            self.uploads[upload_id] = bytearray()
            headers = {"Location": f"/v2/{repo}/blobs/uploads/{upload_id}", "Range": "0-0"}
            if self.chunk_min_length is not None:
                headers["OCI-Chunk-Min-Length"] = str(self.chunk_min_length)
            return httpx.Response(202, headers=headers)

        buffer = self.uploads.get(upload_id)
        if buffer is None:
            return _error(404, "BLOB_UPLOAD_UNKNOWN", upload_id)
        location = f"/v2/{repo}/blobs/uploads/{upload_id}"

        if method == "GET":
            return httpx.Response(204, headers={"Location": location, "Range": f"0-{max(len(buffer) - 1, 0)}"})

        if method == "PATCH":
            start = int(request.headers.get("Content-Range", "0-0").split("-")[0])
            if start != len(buffer):
                return _error(416, "BLOB_UPLOAD_INVALID", f"expected offset {len(buffer)}")
            buffer.extend(request.content)
            if self._lost_patch_responses > 0:
                self._lost_patch_responses -= 1
                return _error(503, "UNAVAILABLE", "response lost")
            end = len(buffer) - 1 + self.offset_skew
            return httpx.Response(202, headers={"Location": location, "Range": f"0-{end}"})

        if method == "PUT":
            buffer.extend(request.content)
            digest = request.url.params.get("digest", "")
            if _sha256(bytes(buffer)) != digest:
                return _error(400, "DIGEST_INVALID", digest)
            self.blobs.setdefault(repo, {})[digest] = bytes(buffer)
            del self.uploads[upload_id]
            return httpx.Response(201, headers={"Location": f"/v2/{repo}/blobs/{digest}",
                                                "Docker-Content-Digest": digest})

        return _error(405, "UNSUPPORTED", method)

    # Manifests and tags

    def _manifest(self, request: httpx.Request, repo: str, ref: str) -> httpx.Response:
        if request.method == "PUT":
            media_type = request.headers.get("Content-Type", "")
            digest = self.put_manifest(repo, ref, request.content, media_type)
            return httpx.Response(201, headers={"Docker-Content-Digest": digest,
                                                "Location": f"/v2/{repo}/manifests/{digest}"})

        digest = ref if ref.startswith("sha256:") else self.tags.get(repo, {}).get(ref)
        entry = self.manifests.get(repo, {}).get(digest) if digest else None
        if entry is None:
            if request.method == "HEAD":
                return httpx.Response(404)
            return _error(404, "MANIFEST_UNKNOWN", ref)
        media_type, payload = entry
        headers = {"Content-Type": media_type}
        if not self.omit_manifest_digest:
            headers["Docker-Content-Digest"] = digest
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=payload)

    def _tag_list(self, request: httpx.Request, repo: str) -> httpx.Response:
        if repo not in self.tags and repo not in self.manifests:
            return _error(404, "NAME_UNKNOWN", repo)
        tags = sorted(self.tags.get(repo, {}))
        last = request.url.params.get("last")
        if last is not None:
            tags = [t for t in tags if t > last]
        headers = {}
        page_size = self.tag_page_size
        if page_size is not None and len(tags) > page_size:
            tags = tags[:page_size]
            headers["Link"] = f'</v2/{repo}/tags/list?n={page_size}&last={quote(tags[-1])}>; rel="next"'
        return httpx.Response(200, headers=headers, content=json.dumps({"name": repo, "tags": tags}).encode())
