"""
OCI image layout model.

A Layout is the full content of an OCI image layout: an index listing
manifests (optionally bound to image names through the ref-name annotation)
and every blob reachable from them. Layouts are built from filesystem inputs
with pack/compose/pack_dir, and converted to and from the oci-archive tar
format.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .digest import Digest, compress, decompress, digest_of, verify
from .errors import FormatError, IncompleteLayout, UnsupportedManifestType
from .image_name import ImageName
from .media_types import (
    ANNOTATION_REF_NAME,
    IMAGE_MANIFEST_TYPES,
    INDEX_FILE,
    INDEX_TYPES,
    LAYER_TYPES,
    OCI_IMAGE_CONFIG,
    OCI_IMAGE_MANIFEST,
    OCI_LAYER_TAR_GZIP,
    OCI_LAYOUT_FILE,
    OCI_LAYOUT_VERSION,
)
from .models import Descriptor, ImageConfiguration, ImageIndex, ImageManifest, canonical_json
from .tarball import extract_tar, list_members, read_members, tar_directory, tar_files, tar_members

__all__ = [
    "Layout",
    "pack",
    "compose",
    "pack_dir",
    "read_archive",
    "write_archive",
    "read_archive_file",
    "write_archive_file",
]

logger = logging.getLogger(__name__)


@dataclass
class Layout:
    """
    In-memory OCI image layout.

    Invariants:
    - every blob is stored under the digest of its exact bytes
    - a layout is complete when every digest referenced by the index or any
      manifest is among `blobs`; only complete layouts are exported
    """
    index: ImageIndex = field(default_factory=ImageIndex)
    blobs: Dict[Digest, bytes] = field(default_factory=dict)

    def add_blob(self, media_type: str, data: bytes) -> Descriptor:
        """Store `data` and return its descriptor."""
        digest = digest_of(data)
        self.blobs[digest] = data
        return Descriptor(media_type=media_type, digest=str(digest), size=len(data))

    def get_blob(self, digest: Digest | str) -> bytes:
        """
        Return the bytes stored under `digest`, verified.

        Raises:
            IncompleteLayout: If the blob is absent
            DigestMismatch: If the stored bytes do not hash to `digest`
        """
        if isinstance(digest, str):
            digest = Digest.parse(digest)
        try:
            data = self.blobs[digest]
        except KeyError:
            raise IncompleteLayout(f"Blob not found in layout: {digest}", missing=[str(digest)])
        verify(data, digest, context="layout blob")
        return data

    def add_manifest(self, manifest: ImageManifest, name: Optional[ImageName] = None) -> Descriptor:
        """Serialize `manifest`, store it and list it in the index."""
        return self.add_manifest_bytes(
            manifest.media_type or OCI_IMAGE_MANIFEST, manifest.to_json_bytes(), name
        )

    def add_manifest_bytes(self, media_type: str, payload: bytes,
                           name: Optional[ImageName] = None) -> Descriptor:
        """
        Store already-serialized manifest bytes and list them in the index.

        Used for manifests pulled from a registry, whose digest is defined by
        the registry's exact bytes.
        """
        desc = self.add_blob(media_type, payload)
        if name is not None:
            desc = desc.model_copy(update={"annotations": {ANNOTATION_REF_NAME: str(name)}})
        self.index = self.index.model_copy(update={"manifests": list(self.index.manifests) + [desc]})
        return desc

    def get_manifest(self, desc: Descriptor) -> ImageManifest:
        """
        Parse the image manifest behind `desc`.

        Raises:
            UnsupportedManifestType: If `desc` is not an image manifest
        """
        if desc.media_type not in IMAGE_MANIFEST_TYPES:
            raise UnsupportedManifestType(f"Unsupported manifest media type: {desc.media_type}")
        return ImageManifest.from_json_bytes(self.get_blob(desc.digest))

    def manifests(self) -> List[Tuple[Descriptor, ImageManifest]]:
        """Image manifests listed in the index, in index order."""
        return [(desc, self.get_manifest(desc)) for desc in self.index.manifests
                if desc.media_type in IMAGE_MANIFEST_TYPES]

    def references(self) -> List[ImageName]:
        """Image names bound to manifests in the index."""
        return [ImageName.parse(desc.ref_name) for desc in self.index.manifests if desc.ref_name]

    def validate(self) -> None:
        """
        Check that no digest is dangling.

        Raises:
            IncompleteLayout: If a referenced blob is absent
            FormatError: If a descriptor size disagrees with its blob
        """
        missing: List[str] = []
        self._check_descriptors(self.index.manifests, missing)
        if missing:
            raise IncompleteLayout(
                f"Layout references {len(missing)} missing blob(s): {', '.join(missing)}",
                missing=missing,
            )

    def _check_descriptors(self, descriptors: Sequence[Descriptor], missing: List[str]) -> None:
        for desc in descriptors:
            data = self.blobs.get(desc.content_digest)
            if data is None:
                missing.append(desc.digest)
                continue
            if len(data) != desc.size:
                raise FormatError(f"Size mismatch for {desc.digest}: descriptor says {desc.size}, blob has {len(data)}")
            if desc.media_type in IMAGE_MANIFEST_TYPES:
                manifest = ImageManifest.from_json_bytes(data)
                self._check_descriptors([manifest.config] + list(manifest.layers), missing)
            elif desc.media_type in INDEX_TYPES:
                nested = ImageIndex.from_json_bytes(data)
                self._check_descriptors(nested.manifests, missing)

    def extract(self, desc: Descriptor, dest: Path) -> None:
        """
        Unpack the layers of the manifest behind `desc` into `dest`, in order.

        Raises:
            FormatError: If a layer has an unsupported media type or unsafe paths
            CodecError: If a layer cannot be decompressed
        """
        manifest = self.get_manifest(desc)
        for layer in manifest.layers:
            if layer.media_type not in LAYER_TYPES:
                raise FormatError(f"Unsupported layer media type {layer.media_type} ({layer.digest})")
            data = decompress(self.get_blob(layer.digest), layer.media_type)
            logger.debug(f"Extracting layer {layer.content_digest.short()} into {dest}")
            extract_tar(data, dest)

    def files(self, desc: Descriptor) -> List[str]:
        """Member paths of every layer of the manifest behind `desc`, layer by layer."""
        names: List[str] = []
        for layer in self.get_manifest(desc).layers:
            if layer.media_type not in LAYER_TYPES:
                raise FormatError(f"Unsupported layer media type {layer.media_type} ({layer.digest})")
            names.extend(list_members(decompress(self.get_blob(layer.digest), layer.media_type)))
        return names


def pack(paths: Sequence[Path | str], name: Optional[ImageName | str] = None) -> Layout:
    """
    Build a single-layer image from a flat set of files.

    Each file is stored under its base name. Identical input bytes and names
    always give identical digests. Without a name the manifest is bound to
    a random `ImageName.default()`, so only the index differs between runs.

    Args:
        paths: Files to package
        name: Image name to bind the manifest to

    Returns:
        Complete Layout with one layer, one config and one manifest
    """
    return _single_layer_layout(tar_files(paths), _name_or_default(name))


def compose(paths: Sequence[Path | str], name: ImageName | str) -> Layout:
    """Like pack, binding the manifest to `name` for direct export."""
    return pack(paths, _as_name(name))


def pack_dir(directory: Path | str, name: Optional[ImageName | str] = None) -> Layout:
    """Build a single-layer image holding a directory tree, named like `pack`."""
    return _single_layer_layout(tar_directory(directory), _name_or_default(name))


def _single_layer_layout(layer_tar: bytes, name: ImageName) -> Layout:
    layout = Layout()
    layer = layout.add_blob(OCI_LAYER_TAR_GZIP, compress(layer_tar))
    config = ImageConfiguration.for_host([str(digest_of(layer_tar))])
    config_desc = layout.add_blob(OCI_IMAGE_CONFIG, config.to_json_bytes())
    manifest = ImageManifest(config=config_desc, layers=[layer])
    desc = layout.add_manifest(manifest, name)
    logger.debug(f"Packed manifest {desc.content_digest.short()} (layer {layer.size} bytes)")
    return layout


def _as_name(name: Optional[ImageName | str]) -> Optional[ImageName]:
    if name is None or isinstance(name, ImageName):
        return name
    return ImageName.parse(name)


def _name_or_default(name: Optional[ImageName | str]) -> ImageName:
    return ImageName.default() if name is None else _as_name(name)


def write_archive(layout: Layout) -> bytes:
    """
    Serialize a layout to oci-archive bytes.

    Entries are written in a fixed order (oci-layout, index.json, blobs by
    path) with canonical headers, so equal layouts give equal bytes.

    Raises:
        IncompleteLayout: If the layout has dangling references
    """
    layout.validate()
    members = [
        (OCI_LAYOUT_FILE, canonical_json({"imageLayoutVersion": OCI_LAYOUT_VERSION})),
        (INDEX_FILE, layout.index.to_json_bytes()),
    ]
    for digest in sorted(layout.blobs, key=lambda d: d.as_path()):
        members.append((digest.as_path(), layout.blobs[digest]))
    return tar_members(members)


def read_archive(data: bytes) -> Layout:
    """
    Parse oci-archive bytes into a layout.

    Every blob is verified against the digest in its path, and the layout
    must be complete.

    Raises:
        FormatError: If the archive lacks oci-layout or index.json
        DigestMismatch: If a blob does not match its path
        IncompleteLayout: If a referenced blob is absent
    """
    members = read_members(data)

    if OCI_LAYOUT_FILE not in members:
        raise FormatError("oci-layout marker not found in oci-archive")
    try:
        marker = json.loads(members[OCI_LAYOUT_FILE])
    except json.JSONDecodeError as e:
        raise FormatError(f"Invalid oci-layout marker: {e}") from e
    if not isinstance(marker, dict) or "imageLayoutVersion" not in marker:
        raise FormatError("oci-layout marker lacks imageLayoutVersion")

    if INDEX_FILE not in members:
        raise FormatError("index.json not found in oci-archive")
    index = ImageIndex.from_json_bytes(members[INDEX_FILE])

    blobs: Dict[Digest, bytes] = {}
    for name, content in members.items():
        parts = name.split("/")
        if len(parts) != 3 or parts[0] != "blobs":
            continue
        digest = Digest.from_path_parts(parts[1], parts[2])
        verify(content, digest, context=f"oci-archive member {name}")
        blobs[digest] = content

    layout = Layout(index=index, blobs=blobs)
    layout.validate()
    return layout


def read_archive_file(path: Path | str) -> Layout:
    """Read an oci-archive file."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"oci-archive not found: {path}")
    return read_archive(path.read_bytes())


def write_archive_file(layout: Layout, out_path: Path | str) -> Path:
    """
    Write a layout to an oci-archive file atomically (temp file + rename).

    Returns:
        Resolved output path
    """
    data = write_archive(layout)
    out_path = Path(out_path).resolve()

    temp_fd, temp_path = tempfile.mkstemp(suffix=".tmp", dir=out_path.parent, prefix=out_path.name + ".")
    try:
        with os.fdopen(temp_fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, out_path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise
    return out_path
