"""
Content digests and blob codec.

Digests follow the OCI image format grammar:

    digest     ::= algorithm ":" encoded
    algorithm  ::= component (separator component)*
    component  ::= [a-z0-9]+
    separator  ::= [+._-]
    encoded    ::= [a-zA-Z0-9=_-]+

Blobs are computed with sha256; sha512 is accepted when verifying content
produced elsewhere.
"""
from __future__ import annotations

import gzip
import hashlib
import re
import zlib
from dataclasses import dataclass
from typing import Optional

import zstandard as zstd

from .errors import CodecError, DigestMismatch, InvalidDigest
from .media_types import GZIP_LAYER_TYPES, ZSTD_LAYER_TYPES

__all__ = ["Digest", "digest_of", "verify", "compress", "decompress", "DEFAULT_ALGORITHM"]

DEFAULT_ALGORITHM = "sha256"

_ALGORITHM_RE = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*$")
_ENCODED_RE = re.compile(r"^[a-zA-Z0-9=_-]+$")

# Hex lengths of the algorithms we can compute
_HEX_LENGTHS = {"sha256": 64, "sha512": 128}

_GZIP_MAGIC = b"\x1f\x8b"
_ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


@dataclass(frozen=True, order=True)
class Digest:
    """
    Content identifier `{algorithm}:{encoded}`.

    Two blobs with equal digest are byte-identical; everything in ocipkg is
    keyed by this value.
    """
    algorithm: str
    encoded: str

    @classmethod
    def parse(cls, text: str) -> Digest:
        """
        Parse a digest string.

        Raises:
            InvalidDigest: If `text` does not follow the grammar, or uses a
                known algorithm with the wrong encoded length
        """
        if not isinstance(text, str) or text.count(":") != 1:
            raise InvalidDigest(f"Invalid digest: {text!r}")
        algorithm, encoded = text.split(":", 1)
        if not _ALGORITHM_RE.match(algorithm) or not _ENCODED_RE.match(encoded):
            raise InvalidDigest(f"Invalid digest: {text!r}")
        expected_len = _HEX_LENGTHS.get(algorithm)
        if expected_len is not None:
            if len(encoded) != expected_len or not re.match(r"^[a-f0-9]+$", encoded):
                raise InvalidDigest(f"Invalid {algorithm} digest: {text!r}")
        return cls(algorithm=algorithm, encoded=encoded)

    @classmethod
    def from_path_parts(cls, algorithm: str, encoded: str) -> Digest:
        """Build a digest from a `blobs/{algorithm}/{encoded}` path."""
        return cls.parse(f"{algorithm}:{encoded}")

    def as_path(self) -> str:
        """Archive path of the blob: `blobs/{algorithm}/{encoded}`."""
        return f"blobs/{self.algorithm}/{self.encoded}"

    def short(self) -> str:
        return f"{self.algorithm}:{self.encoded[:12]}"

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.encoded}"


def digest_of(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> Digest:
    """Compute the digest of `data`. Deterministic and side-effect free."""
    if algorithm not in _HEX_LENGTHS:
        raise InvalidDigest(f"Unsupported digest algorithm: {algorithm}")
    return Digest(algorithm=algorithm, encoded=hashlib.new(algorithm, data).hexdigest())


def verify(data: bytes, expected: Digest | str, *, context: str = "") -> None:
    """
    Recompute the digest of `data` and compare against `expected`.

    Args:
        data: Content bytes
        expected: Digest the content claims to have
        context: Where the content came from, included in the error message

    Raises:
        DigestMismatch: If the content does not hash to `expected`
        InvalidDigest: If `expected` is malformed or uses an unknown algorithm
    """
    if isinstance(expected, str):
        expected = Digest.parse(expected)
    actual = digest_of(data, expected.algorithm)
    if actual != expected:
        where = f" ({context})" if context else ""
        raise DigestMismatch(
            f"Digest mismatch{where}: expected {expected}, got {actual}",
            expected=str(expected),
            actual=str(actual),
        )


def compress(data: bytes) -> bytes:
    """
    Gzip-compress `data`.

    The gzip header timestamp is fixed so identical input always yields
    identical output.
    """
    return gzip.compress(data, mtime=0)


def decompress(data: bytes, media_type: Optional[str] = None) -> bytes:
    """
    Decompress blob content.

    The codec is chosen from `media_type` when given, otherwise sniffed from
    the magic bytes. Uncompressed content is returned as-is.

    Raises:
        CodecError: If the content cannot be decoded
    """
    if media_type in GZIP_LAYER_TYPES or (media_type is None and data[:2] == _GZIP_MAGIC):
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise CodecError(f"Failed to decompress gzip content: {e}") from e
    if media_type in ZSTD_LAYER_TYPES or (media_type is None and data[:4] == _ZSTD_MAGIC):
        try:
            return zstd.ZstdDecompressor().decompressobj().decompress(data)
        except zstd.ZstdError as e:
            raise CodecError(f"Failed to decompress zstd content: {e}") from e
    return data
