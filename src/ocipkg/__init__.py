"""
ocipkg - package binaries as OCI images.

Build OCI images from files, exchange them with container registries and
cache them unpacked in a local, content-addressed package store.
"""
from .digest import Digest, digest_of, verify
from .errors import (
    AuthorizationDenied,
    CodecError,
    DigestMismatch,
    FormatError,
    IncompleteLayout,
    InvalidDigest,
    InvalidImageName,
    NotFound,
    OciError,
    RegistryError,
    StoreError,
    TransientRegistryError,
    UnsupportedManifestType,
    UploadOffsetMismatch,
)
from .image_name import ImageName
from .layout import Layout, compose, pack, pack_dir, read_archive, read_archive_file, write_archive, write_archive_file
from .link import link_flags
from .registry import CredentialStore, RegistryClient, RegistrySession
from .settings import Settings, create_settings_from_env
from .store import LocalStore
from .transfer import pull, push, push_archive

__version__ = "0.1.0"

__all__ = [
    "Digest",
    "digest_of",
    "verify",
    "ImageName",
    "Layout",
    "pack",
    "compose",
    "pack_dir",
    "read_archive",
    "write_archive",
    "read_archive_file",
    "write_archive_file",
    "RegistrySession",
    "RegistryClient",
    "CredentialStore",
    "LocalStore",
    "push",
    "push_archive",
    "pull",
    "link_flags",
    "Settings",
    "create_settings_from_env",
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
