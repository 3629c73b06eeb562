"""
Error classes for ocipkg.

Provides a clear taxonomy of errors that can occur while building, moving and
caching OCI images. Low-level HTTP, codec and filesystem failures are mapped
onto these classes with enough context (digest, URL, operation) to diagnose
the problem without a debugger.
"""
from __future__ import annotations

from typing import List, Optional


class OciError(Exception):
    """
    Base class for all ocipkg errors.
    """
    pass


class FormatError(OciError):
    """
    Malformed input: an oci-archive, a manifest, a digest or an image name.

    Raised when:
    - index.json or the oci-layout marker is missing from an archive
    - a manifest or index is not valid JSON of the expected shape
    - a tar member path is unsafe
    """
    pass


class InvalidDigest(FormatError):
    """Digest string does not follow the `algorithm:encoded` grammar."""
    pass


class InvalidImageName(FormatError):
    """Image name, repository name or tag fails validation."""
    pass


class IncompleteLayout(FormatError):
    """
    Layout references a digest that is not among its blobs.

    A layout in this state is never exported, pushed or published.
    """

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class DigestMismatch(OciError):
    """
    Content digest validation failed.

    Raised when:
    - a downloaded blob or manifest does not hash to the requested digest
    - a blob inside an oci-archive does not match its path
    - push_manifest: server digest != locally computed digest

    Never retried with the same bytes.
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class CodecError(OciError):
    """Compression or tar decoding failed."""
    pass


class AuthorizationDenied(OciError):
    """
    Authentication or authorization error.

    Raised when:
    - HTTP 401 after a valid token was presented
    - HTTP 403 Forbidden
    - the token endpoint rejects the credentials
    """
    pass


class UploadOffsetMismatch(OciError):
    """
    The registry reported an upload offset different from the bytes sent.

    This is a protocol violation by the remote and is not retried.
    """

    def __init__(self, message: str, expected: int | None = None, actual: int | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class UnsupportedManifestType(OciError):
    """Manifest media type not supported by the client."""
    pass


class NotFound(OciError):
    """
    Resource not found in registry.

    Raised when:
    - HTTP 404 Not Found (manifest, blob, or repository doesn't exist)
    """
    pass


class RegistryError(OciError):
    """
    Registry answered with an error status that is not covered above.

    `codes` holds the error codes from the registry's JSON error body, if any.
    """

    def __init__(self, message: str, status_code: int | None = None,
                 codes: Optional[List[str]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.codes = codes or []


class TransientRegistryError(RegistryError):
    """
    Timeout, connection reset or 5xx response.

    Retried with bounded backoff on idempotent requests; surfaced after the
    retry budget is exhausted.
    """
    pass


class StoreError(OciError):
    """Local package store could not publish or read an entry."""
    pass


__all__ = [
    "OciError",
    "FormatError",
    "InvalidDigest",
    "InvalidImageName",
    "IncompleteLayout",
    "DigestMismatch",
    "CodecError",
    "AuthorizationDenied",
    "UploadOffsetMismatch",
    "UnsupportedManifestType",
    "NotFound",
    "RegistryError",
    "TransientRegistryError",
    "StoreError",
]
