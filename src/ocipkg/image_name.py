"""
Image name parsing.

An image name is `{registry-host}[:{port}]/{repository}:{tag}` or
`{registry-host}[:{port}]/{repository}@{digest}`. Parsing follows the docker
conventions so that short names such as `alpine` resolve the same way they do
for container tooling.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, replace
from typing import Optional

from .digest import Digest
from .errors import InvalidDigest, InvalidImageName

__all__ = ["ImageName", "DEFAULT_DOMAIN", "DEFAULT_LOCAL_DOMAIN", "DEFAULT_TAG"]

DEFAULT_DOMAIN = "docker.io"
DEFAULT_TAG = "latest"
DEFAULT_LOCAL_DOMAIN = "localhost"

# docker.io is an alias; the distribution API is served from this host
_DOCKER_HUB_API_HOST = "registry-1.docker.io"
_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

_NAME_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[a-zA-Z0-9_][a-zA-Z0-9._-]{0,127}$")
_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9.-]*[a-zA-Z0-9])?$")


@dataclass(frozen=True)
class ImageName:
    """
    Fully qualified image name.

    Attributes:
        domain: Registry hostname without port (e.g. "ghcr.io", "localhost")
        port: Registry port, if given explicitly
        name: Repository name (e.g. "termoshtt/ocipkg/testing")
        reference: Tag or digest string
    """
    domain: str
    port: Optional[int]
    name: str
    reference: str = DEFAULT_TAG

    @classmethod
    def parse(cls, text: str) -> ImageName:
        """
        Parse an image name.

        Examples:
            >>> ImageName.parse("ghcr.io/termoshtt/ocipkg/testing:latest")
            ImageName(domain='ghcr.io', port=None, name='termoshtt/ocipkg/testing', reference='latest')

            >>> ImageName.parse("localhost:5000/test_repo:tag1")
            ImageName(domain='localhost', port=5000, name='test_repo', reference='tag1')

            >>> str(ImageName.parse("alpine"))
            'docker.io/library/alpine:latest'

        Raises:
            InvalidImageName: If any component is malformed
        """
        if not text or text != text.strip():
            raise InvalidImageName(f"Invalid image name: {text!r}")

        digest: Optional[str] = None
        base = text
        if "@" in text:
            base, digest = text.rsplit("@", 1)
            try:
                Digest.parse(digest)
            except InvalidDigest as e:
                raise InvalidImageName(f"Invalid digest in image name {text!r}: {e}") from e

        first, sep, rest = base.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            host, remainder = first, rest
        else:
            host, remainder = DEFAULT_DOMAIN, base

        tag: Optional[str] = None
        last_slash = remainder.rfind("/")
        if ":" in remainder[last_slash + 1:]:
            remainder, tag = remainder.rsplit(":", 1)

        domain, port = _split_host(host, text)
        if domain in _DOCKER_HUB_ALIASES:
            domain = DEFAULT_DOMAIN
            if "/" not in remainder:
                remainder = f"library/{remainder}"

        if not _NAME_RE.match(remainder):
            raise InvalidImageName(f"Invalid repository name {remainder!r} in {text!r}")

        if digest is not None:
            reference = digest
        else:
            reference = tag if tag is not None else DEFAULT_TAG
            if not _TAG_RE.match(reference):
                raise InvalidImageName(f"Invalid tag {reference!r} in {text!r}")

        return cls(domain=domain, port=port, name=remainder, reference=reference)

    @classmethod
    def default(cls) -> ImageName:
        """
        Random name for images packed without one: `localhost/{uuid4}:latest`.

        Archives always carry a name this way, so they can be loaded into the
        local store.
        """
        return cls(domain=DEFAULT_LOCAL_DOMAIN, port=None, name=str(uuid.uuid4()))

    @property
    def host(self) -> str:
        """Registry host including port, as written in image names."""
        return f"{self.domain}:{self.port}" if self.port is not None else self.domain

    @property
    def is_digest(self) -> bool:
        return ":" in self.reference

    @property
    def digest(self) -> Optional[Digest]:
        return Digest.parse(self.reference) if self.is_digest else None

    @property
    def tag(self) -> Optional[str]:
        return None if self.is_digest else self.reference

    @property
    def repository(self) -> str:
        """Name without reference: `{host}/{name}`."""
        return f"{self.host}/{self.name}"

    def with_reference(self, reference: str | Digest) -> ImageName:
        """Return the same repository with another tag or digest."""
        reference = str(reference)
        if ":" in reference:
            Digest.parse(reference)
        elif not _TAG_RE.match(reference):
            raise InvalidImageName(f"Invalid tag {reference!r}")
        return replace(self, reference=reference)

    def registry_url(self, insecure: bool = False) -> str:
        """
        Base URL of the distribution API endpoint.

        Local registries are spoken to over plain HTTP; everything else uses
        HTTPS unless `insecure` is set.
        """
        domain = _DOCKER_HUB_API_HOST if self.domain == DEFAULT_DOMAIN else self.domain
        hostname = f"{domain}:{self.port}" if self.port is not None else domain
        scheme = "http" if insecure or self.domain in _LOCAL_HOSTS else "https"
        return f"{scheme}://{hostname}"

    def __str__(self) -> str:
        sep = "@" if self.is_digest else ":"
        return f"{self.repository}{sep}{self.reference}"


def _split_host(host: str, original: str) -> tuple[str, Optional[int]]:
    """Split `host[:port]` and validate both parts."""
    domain, sep, port_text = host.partition(":")
    port: Optional[int] = None
    if sep:
        if not port_text.isdigit() or not 0 < int(port_text) < 65536:
            raise InvalidImageName(f"Invalid port {port_text!r} in {original!r}")
        port = int(port_text)
    if not _DOMAIN_RE.match(domain):
        raise InvalidImageName(f"Invalid registry host {domain!r} in {original!r}")
    return domain.lower(), port
