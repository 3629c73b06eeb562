"""
Local package store.

Images are unpacked into directories keyed by manifest digest; tags are
secondary pointers to those directories:

    {base}/{host}[__{port}]/{repository}/@{algorithm}-{hex}/   unpacked layers
    {base}/{host}[__{port}]/{repository}/__{tag}              tag pointer (JSON)

Entries are built in a temporary directory next to their final location and
renamed into place, so a reader never observes a partially populated entry.
Concurrent writers of the same digest race on the rename; the loser discards
its copy and adopts the winner's. No locks are taken.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .digest import Digest
from .errors import InvalidDigest, InvalidImageName, StoreError
from .image_name import ImageName
from .layout import Layout, read_archive, read_archive_file
from .models import Descriptor, canonical_json
from .registry import RegistrySession
from .settings import Settings, create_settings_from_env
from .transfer import pull, session_scope

__all__ = ["LocalStore", "PROVENANCE_DIR", "PROVENANCE_FILE"]

logger = logging.getLogger(__name__)

PROVENANCE_DIR = ".ocipkg"
PROVENANCE_FILE = "manifest.json"

_ENTRY_PREFIX = "@"
_TAG_PREFIX = "__"
_TMP_PREFIX = ".tmp-"
_PORT_SEP = "__"
_ENTRY_RE = re.compile(r"^@([a-z0-9]+(?:[+._-][a-z0-9]+)*)-([a-zA-Z0-9=_-]+)$")


class LocalStore:
    """
    Content-addressed cache of unpacked images.

    Reads (`resolve`, `list`, `image_dir`) never touch the network. `get`
    talks to the registry only when the requested image is not cached or a
    refresh is asked for.
    """

    def __init__(self, base_dir: Optional[Path | str] = None, *,
                 settings: Optional[Settings] = None,
                 session: Optional[RegistrySession] = None):
        """
        Args:
            base_dir: Store root (defaults to settings.data_dir)
            settings: Settings (defaults to loading from environment)
            session: Registry session shared across calls (defaults to a
                short-lived session per `get`)
        """
        self.settings = settings or create_settings_from_env()
        self.base_dir = Path(base_dir) if base_dir is not None else self.settings.data_dir
        self._session = session

    # Paths

    def repository_dir(self, name: ImageName) -> Path:
        host = name.domain if name.port is None else f"{name.domain}{_PORT_SEP}{name.port}"
        return self.base_dir / host / name.name

    def image_dir(self, name: ImageName | str, digest: Digest | str) -> Path:
        """Directory holding the entry for `digest` in `name`'s repository."""
        name = _as_name(name)
        if isinstance(digest, str):
            digest = Digest.parse(digest)
        return self.repository_dir(name) / f"{_ENTRY_PREFIX}{digest.algorithm}-{digest.encoded}"

    def tag_path(self, name: ImageName) -> Path:
        if name.tag is None:
            raise InvalidImageName(f"Image name has no tag: {name}")
        return self.repository_dir(name) / f"{_TAG_PREFIX}{name.tag}"

    # Lookup

    def resolve(self, name: ImageName | str) -> Optional[Path]:
        """
        Local path of an image, or None if it is not in the store.

        A tag resolves through its pointer; a digest reference directly.
        """
        name = _as_name(name)
        digest = name.digest if name.is_digest else self._read_tag(name)
        if digest is None:
            return None
        path = self.image_dir(name, digest)
        return path if path.is_dir() else None

    def list(self) -> Iterator[Tuple[ImageName, Path]]:
        """
        Iterate over stored images, reading the disk lazily.

        Each tag yields `(name:tag, path)`; entries no tag points to yield
        `(name@digest, path)`.
        """
        if not self.base_dir.is_dir():
            return
        for host_dir in sorted(p for p in self.base_dir.iterdir() if p.is_dir()):
            host = host_dir.name.replace(_PORT_SEP, ":", 1)
            for repo_dir, entries in _walk_repositories(host_dir):
                repository = repo_dir.relative_to(host_dir).as_posix()
                yield from self._list_repository(f"{host}/{repository}", repo_dir, entries)

    def _list_repository(self, repository: str, repo_dir: Path,
                         entries: List[Path]) -> Iterator[Tuple[ImageName, Path]]:
        try:
            base = ImageName.parse(repository)
        except InvalidImageName:
            logger.warning(f"Ignoring unrecognized store directory {repo_dir}")
            return

        tagged = set()
        for pointer in sorted(repo_dir.glob(f"{_TAG_PREFIX}*")):
            if not pointer.is_file():
                continue
            name = base.with_reference(pointer.name[len(_TAG_PREFIX):])
            digest = self._read_tag(name)
            path = self.image_dir(name, digest) if digest else None
            if path is not None and path.is_dir():
                tagged.add(path.name)
                yield name, path

        for entry in entries:
            if entry.name in tagged:
                continue
            match = _ENTRY_RE.match(entry.name)
            yield base.with_reference(f"{match.group(1)}:{match.group(2)}"), entry

    # Fetch and import

    def get(self, name: ImageName | str, refresh: bool = False) -> Path:
        """
        Ensure an image is in the store and return its directory.

        A tag that already points at an existing entry is returned without
        network access unless `refresh` is set. Otherwise the tag is resolved
        to a manifest digest; an entry for that digest is adopted, else the
        image is pulled, unpacked and published.

        Raises:
            NotFound: If the image does not exist in the registry
            DigestMismatch: If downloaded content fails verification (nothing
                is published)
            StoreError: If the entry cannot be written
        """
        name = _as_name(name)
        if not refresh:
            existing = self.resolve(name)
            if existing is not None:
                logger.debug(f"{name} found in store at {existing}")
                return existing

        with session_scope(self._session, self.settings) as session:
            digest = name.digest if name.is_digest else session.client_for(name).head_manifest()
            path = self.image_dir(name, digest)
            if path.is_dir():
                logger.debug(f"Entry {digest.short()} already stored, adopting for {name}")
            else:
                resolved, layout = pull(name.with_reference(digest), session=session)
                path = self._publish(name, resolved, layout, layout.index.manifests[0])

        if not name.is_digest:
            self._write_tag(name, digest)
        return path

    def load(self, archive: bytes | Path | str) -> Path:
        """
        Import an oci-archive without network access.

        Every named manifest of the archive is published; the directory of
        the first is returned.

        Raises:
            StoreError: If the archive holds no manifest or an unnamed one
            FormatError, DigestMismatch, IncompleteLayout: If the archive is invalid
        """
        layout = read_archive(archive) if isinstance(archive, bytes) else read_archive_file(archive)
        manifests = layout.index.manifests
        if not manifests:
            raise StoreError("oci-archive holds no manifest")

        paths = []
        for desc in manifests:
            if not desc.ref_name:
                raise StoreError(f"Manifest {desc.digest} in oci-archive has no image name")
            name = ImageName.parse(desc.ref_name)
            digest = desc.content_digest
            paths.append(self._publish(name, digest, layout, desc))
            if not name.is_digest:
                self._write_tag(name, digest)
            logger.info(f"Loaded {name} ({digest.short()})")
        return paths[0]

    def _publish(self, name: ImageName, digest: Digest, layout: Layout, desc: Descriptor) -> Path:
        """Unpack `desc` into a temporary directory and rename it into place."""
        target = self.image_dir(name, digest)
        if target.is_dir():
            logger.debug(f"Entry {digest.short()} already stored")
            return target

        repo_dir = target.parent
        try:
            repo_dir.mkdir(parents=True, exist_ok=True)
            tmp = Path(tempfile.mkdtemp(prefix=_TMP_PREFIX, dir=repo_dir))
        except OSError as e:
            raise StoreError(f"Cannot create store directory {repo_dir}: {e}") from e

        try:
            layout.extract(desc, tmp)
            _write_provenance(tmp, name, digest, desc, layout)
            try:
                os.rename(tmp, target)
            except OSError as e:
                if not target.is_dir():
                    raise StoreError(f"Cannot publish {name} to {target}: {e}") from e
                logger.debug(f"Entry {digest.short()} published concurrently, adopting it")
                shutil.rmtree(tmp)
                return target
        except BaseException:
            if tmp.exists():
                shutil.rmtree(tmp)
            raise

        logger.debug(f"Published {name} at {target}")
        return target

    # Tag pointers

    def _read_tag(self, name: ImageName) -> Optional[Digest]:
        pointer = self.tag_path(name)
        if not pointer.is_file():
            return None
        try:
            data = json.loads(pointer.read_text(encoding="utf-8"))
            return Digest.parse(data["digest"])
        except (OSError, json.JSONDecodeError, KeyError, TypeError, InvalidDigest) as e:
            raise StoreError(f"Corrupt tag pointer {pointer}: {e}") from e

    def _write_tag(self, name: ImageName, digest: Digest) -> None:
        pointer = self.tag_path(name)
        pointer.parent.mkdir(parents=True, exist_ok=True)
        payload = canonical_json({"name": str(name), "digest": str(digest)})
        fd, tmp = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=pointer.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, pointer)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug(f"Tag {name} -> {digest.short()}")


def _as_name(name: ImageName | str) -> ImageName:
    return ImageName.parse(name) if isinstance(name, str) else name


def _walk_repositories(host_dir: Path) -> Iterator[Tuple[Path, List[Path]]]:
    """Yield (repository dir, entry dirs) for every directory holding entries."""
    for root, dirs, _ in os.walk(host_dir):
        entries = [Path(root) / d for d in sorted(dirs) if _ENTRY_RE.match(d)]
        # Entries and temporary directories are leaves
        dirs[:] = sorted(d for d in dirs if not d.startswith((_ENTRY_PREFIX, _TMP_PREFIX)))
        if entries:
            yield Path(root), entries


def _write_provenance(entry_dir: Path, name: ImageName, digest: Digest,
                      desc: Descriptor, layout: Layout) -> None:
    """
    Record where an entry came from.

    Creates .ocipkg/manifest.json with the image name, the digest the entry
    is keyed by, and the manifest it was unpacked from.
    """
    meta_dir = entry_dir / PROVENANCE_DIR
    meta_dir.mkdir(parents=True, exist_ok=True)
    manifest = layout.get_manifest(desc)
    payload = {
        "name": str(name),
        "digest": str(digest),
        "manifest_digest": desc.digest,
        "media_type": desc.media_type,
        "layers": [layer.digest for layer in manifest.layers],
    }
    (meta_dir / PROVENANCE_FILE).write_bytes(canonical_json(payload))
