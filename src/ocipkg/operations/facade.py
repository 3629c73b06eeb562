"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the library, one method per
CLI verb, while keeping CLI commands thin and testable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..digest import Digest
from ..errors import NotFound
from ..image_name import ImageName
from ..layout import Layout, pack, pack_dir, read_archive_file, write_archive_file
from ..link import link_flags
from ..registry import CredentialStore, RegistrySession
from ..settings import Settings
from ..store import LocalStore
from ..transfer import push_archive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpsConfig:
    """Output policy for the CLI."""
    verbose: bool = False         # Show detailed output


class Operations:
    """
    Application service facade for CLI operations.

    Exceptions bubble up unchanged for central exit-code mapping.
    """

    def __init__(self, config: OpsConfig, settings: Settings,
                 session: Optional[RegistrySession] = None,
                 store: Optional[LocalStore] = None):
        self.cfg = config
        self.settings = settings
        self.session = session or RegistrySession(settings)
        self.store = store or LocalStore(settings=settings, session=self.session)

    def pack(self, inputs: Sequence[Path], output: Path, name: Optional[str] = None) -> Tuple[Layout, Path]:
        """
        Package files, or a single directory, into an oci-archive file.

        Returns:
            (layout, written archive path)
        """
        if len(inputs) == 1 and inputs[0].is_dir():
            layout = pack_dir(inputs[0], name)
        else:
            layout = pack(inputs, name)
        return layout, write_archive_file(layout, output)

    def inspect(self, archive: Path) -> List[Tuple[Optional[ImageName], List[str]]]:
        """
        Image names and layer files of an oci-archive, one entry per manifest.

        Manifests without a ref-name annotation are reported with name None.
        """
        layout = read_archive_file(archive)
        return [(ImageName.parse(desc.ref_name) if desc.ref_name else None, layout.files(desc))
                for desc in layout.index.manifests]

    def load(self, archive: Path) -> Path:
        return self.store.load(archive)

    def get(self, name: str, refresh: bool = False) -> Path:
        return self.store.get(name, refresh=refresh)

    def push(self, archive: Path, target: Optional[str] = None) -> List[Tuple[ImageName, Digest]]:
        return push_archive(archive, target, session=self.session)

    def list(self) -> List[Tuple[ImageName, Path]]:
        return list(self.store.list())

    def image_directory(self, name: str) -> Path:
        """
        Local directory of a stored image.

        Raises:
            NotFound: If the image is not in the store
        """
        path = self.store.resolve(name)
        if path is None:
            raise NotFound(f"{name} is not in the local store")
        return path

    def tags(self, name: str) -> List[str]:
        return self.session.client_for(ImageName.parse(name)).get_tags()

    def login(self, registry: str, username: str, password: str) -> Path:
        """
        Verify credentials against a registry and save them.

        Returns:
            Path of the auth file the credentials were saved to
        """
        host = registry.split("://", 1)[-1].rstrip("/")
        # A repository is needed to build the endpoint URL; only the host matters
        probe = ImageName.parse(f"{host}/ocipkg/login")
        credentials = CredentialStore(username=username, password=password)
        with RegistrySession(self.settings, credentials=credentials) as session:
            session.verify_credentials(probe.host, probe.registry_url(self.settings.registry_insecure))
        return CredentialStore().save(probe.host, username, password)

    def link_flags(self, name: str) -> List[str]:
        return link_flags(name, store=self.store)

    def close(self) -> None:
        self.session.close()
