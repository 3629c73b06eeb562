"""
OCI image data models.

These Pydantic models mirror the JSON documents of the OCI image format:
descriptors, image manifests, image indexes and image configurations.
Field names are snake_case in Python and camelCase on the wire.
"""
from __future__ import annotations

import json
import platform
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .digest import Digest
from .errors import FormatError, InvalidDigest
from .media_types import (
    ANNOTATION_REF_NAME,
    OCI_IMAGE_INDEX,
    OCI_IMAGE_MANIFEST,
    SCHEMA_VERSION,
)

__all__ = [
    "Platform",
    "Descriptor",
    "ImageManifest",
    "ImageIndex",
    "RootFS",
    "ImageConfiguration",
    "canonical_json",
    "host_platform",
]

# platform.machine() values mapped to GOARCH names used by OCI platforms
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


class _OciModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_json_bytes(self) -> bytes:
        """Serialize as canonical JSON (sorted keys, compact separators)."""
        return canonical_json(self.model_dump(by_alias=True, exclude_none=True))

    @classmethod
    def from_json_bytes(cls, data: bytes):
        """
        Parse a JSON document.

        Raises:
            FormatError: If the document is not valid JSON of this shape
        """
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise FormatError(f"Invalid {cls.__name__} document: {e}") from e


class Platform(_OciModel):
    architecture: str
    os: str
    variant: Optional[str] = None


class Descriptor(_OciModel):
    """Reference to content: media type, digest and size."""
    media_type: str = Field(..., alias="mediaType")
    digest: str
    size: int = Field(..., ge=0)
    annotations: Optional[Dict[str, str]] = None
    platform: Optional[Platform] = None

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v):
        try:
            Digest.parse(v)
        except InvalidDigest as e:
            raise ValueError(str(e)) from e
        return v

    @property
    def content_digest(self) -> Digest:
        return Digest.parse(self.digest)

    @property
    def ref_name(self) -> Optional[str]:
        """Image name bound to this descriptor in an index, if any."""
        return (self.annotations or {}).get(ANNOTATION_REF_NAME)


class ImageManifest(_OciModel):
    """Image manifest: one config descriptor and ordered layer descriptors."""
    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    media_type: Optional[str] = Field(default=OCI_IMAGE_MANIFEST, alias="mediaType")
    artifact_type: Optional[str] = Field(default=None, alias="artifactType")
    config: Descriptor
    layers: List[Descriptor] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None

    def referenced_digests(self) -> List[Digest]:
        """Config and layer digests, config first."""
        return [self.config.content_digest] + [layer.content_digest for layer in self.layers]


class ImageIndex(_OciModel):
    """Image index: list of manifest descriptors."""
    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    media_type: Optional[str] = Field(default=OCI_IMAGE_INDEX, alias="mediaType")
    manifests: List[Descriptor] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None


class RootFS(_OciModel):
    type: str = "layers"
    diff_ids: List[str] = Field(default_factory=list)


class ImageConfiguration(_OciModel):
    """Minimal OCI image configuration for packaged binaries."""
    architecture: str
    os: str
    rootfs: RootFS = Field(default_factory=RootFS)

    @classmethod
    def for_host(cls, diff_ids: List[str]) -> ImageConfiguration:
        host = host_platform()
        return cls(architecture=host.architecture, os=host.os, rootfs=RootFS(diff_ids=diff_ids))


def canonical_json(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def host_platform() -> Platform:
    """OCI platform of the running interpreter."""
    machine = platform.machine().lower()
    return Platform(
        architecture=_ARCH_ALIASES.get(machine, machine),
        os=platform.system().lower(),
    )
