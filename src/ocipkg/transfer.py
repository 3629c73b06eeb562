"""
Push and pull of whole images.

Blob transfers of one manifest run on a thread pool; the manifest is always
pulled first and pushed last, so a registry never sees a manifest whose blobs
are missing.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .digest import Digest
from .errors import FormatError, NotFound, UnsupportedManifestType
from .image_name import ImageName
from .layout import Layout, read_archive_file
from .media_types import IMAGE_MANIFEST_TYPES, INDEX_TYPES
from .models import Descriptor, ImageIndex, ImageManifest, host_platform
from .registry import RegistryClient, RegistrySession
from .settings import Settings, create_settings_from_env

__all__ = ["push", "push_archive", "pull"]

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@contextmanager
def session_scope(session: Optional[RegistrySession] = None,
                  settings: Optional[Settings] = None) -> Iterator[RegistrySession]:
    """Use `session` if given, else open a short-lived one from settings."""
    if session is not None:
        yield session
        return
    with RegistrySession(settings or create_settings_from_env()) as owned:
        yield owned


def push(layout: Layout, target: Optional[ImageName | str] = None, *,
         session: Optional[RegistrySession] = None,
         settings: Optional[Settings] = None) -> List[Tuple[ImageName, Digest]]:
    """
    Push every named manifest of a layout to its registry.

    Config and layer blobs are uploaded first (skipping those the registry
    already has); any blob failure aborts before the manifest is pushed.

    Args:
        layout: Complete layout to push
        target: Push the layout's single manifest under this name instead of
            the names recorded in the layout
        session: Registry session (defaults to a new one from settings)

    Returns:
        (image name, manifest digest) per pushed manifest

    Raises:
        IncompleteLayout: If the layout has dangling references
        FormatError: If a manifest has no name and no target is given, or a
            target is given for a layout with several manifests
    """
    layout.validate()
    entries = _push_entries(layout, target)

    with session_scope(session, settings) as active:
        results = []
        for name, desc in entries:
            client = active.client_for(name)
            manifest = layout.get_manifest(desc)
            blobs = _unique(manifest.config, manifest.layers)
            _run_parallel(lambda d: _push_blob(client, layout, d), blobs, active.settings.max_workers)
            digest = client.push_manifest(layout.get_blob(desc.digest), desc.media_type, name.reference)
            logger.info(f"Pushed {name} ({digest.short()})")
            results.append((name, digest))
        return results


def push_archive(path: Path | str, target: Optional[ImageName | str] = None, *,
                 session: Optional[RegistrySession] = None,
                 settings: Optional[Settings] = None) -> List[Tuple[ImageName, Digest]]:
    """Read an oci-archive file and push it."""
    return push(read_archive_file(path), target, session=session, settings=settings)


def pull(name: ImageName | str, *, session: Optional[RegistrySession] = None,
         settings: Optional[Settings] = None) -> Tuple[Digest, Layout]:
    """
    Download an image into a single-manifest layout.

    The manifest is fetched first, then config and layers in parallel, each
    verified against its digest. An image index is resolved to the manifest
    for the running platform.

    Returns:
        (digest the reference resolved to, layout bound to `name`)

    Raises:
        NotFound: If the image, or a manifest for this platform, does not exist
        UnsupportedManifestType: If the manifest media type is not supported
        DigestMismatch: If any downloaded content fails verification
    """
    if isinstance(name, str):
        name = ImageName.parse(name)

    with session_scope(session, settings) as active:
        client = active.client_for(name)
        resolved, payload, media_type = client.get_manifest()

        if media_type in INDEX_TYPES:
            desc = _select_platform(ImageIndex.from_json_bytes(payload), name)
            _, payload, media_type = client.get_manifest(desc.digest)
        if media_type not in IMAGE_MANIFEST_TYPES:
            raise UnsupportedManifestType(f"Unsupported manifest media type {media_type} for {name}")

        manifest = ImageManifest.from_json_bytes(payload)
        blobs = _unique(manifest.config, manifest.layers)
        contents = _run_parallel(lambda d: client.get_blob(d.content_digest), blobs,
                                 active.settings.max_workers)

    layout = Layout()
    for desc, data in zip(blobs, contents):
        layout.blobs[desc.content_digest] = data
    layout.add_manifest_bytes(media_type, payload, name)
    logger.info(f"Pulled {name} ({resolved.short()}, {len(blobs)} blobs)")
    return resolved, layout


def _push_entries(layout: Layout, target: Optional[ImageName | str]) -> List[Tuple[ImageName, Descriptor]]:
    manifests = layout.index.manifests
    if target is not None:
        if isinstance(target, str):
            target = ImageName.parse(target)
        if len(manifests) != 1:
            raise FormatError(f"Cannot push {len(manifests)} manifests under a single target {target}")
        return [(target, manifests[0])]

    entries = []
    for desc in manifests:
        if not desc.ref_name:
            raise FormatError(f"Manifest {desc.digest} has no image name; give a target to push it")
        entries.append((ImageName.parse(desc.ref_name), desc))
    return entries


def _push_blob(client: RegistryClient, layout: Layout, desc: Descriptor) -> None:
    digest = desc.content_digest
    if client.blob_exists(digest):
        logger.debug(f"Blob {digest.short()} already present in {client.name.repository}, skipping")
        return
    client.push_blob(layout.get_blob(digest), digest)


def _select_platform(index: ImageIndex, name: ImageName) -> Descriptor:
    host = host_platform()
    candidates = [d for d in index.manifests if d.media_type in IMAGE_MANIFEST_TYPES]
    for desc in candidates:
        if desc.platform and desc.platform.os == host.os and desc.platform.architecture == host.architecture:
            return desc
    generic = [d for d in candidates if d.platform is None]
    if generic:
        return generic[0]
    raise NotFound(f"No manifest for platform {host.os}/{host.architecture} in {name}")


def _unique(config: Descriptor, layers: Sequence[Descriptor]) -> List[Descriptor]:
    seen = set()
    result = []
    for desc in [config] + list(layers):
        if desc.digest not in seen:
            seen.add(desc.digest)
            result.append(desc)
    return result


def _run_parallel(fn: Callable[[T], R], items: Sequence[T], max_workers: int) -> List[R]:
    """Apply `fn` to `items` on a thread pool; the first failure propagates."""
    if len(items) <= 1 or max_workers == 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ocipkg-transfer") as executor:
        futures = [executor.submit(fn, item) for item in items]
        try:
            return [future.result() for future in futures]
        except BaseException:
            for future in futures:
                future.cancel()
            raise
