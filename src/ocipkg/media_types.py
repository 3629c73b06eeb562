"""
OCI media types and constants.

Single source of truth for all OCI-related media types and constants.
"""
from __future__ import annotations

# Manifest types
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

# Manifest types we accept on pull (in order of preference)
ACCEPTED_MANIFEST_TYPES = [
    OCI_IMAGE_MANIFEST,
    OCI_IMAGE_INDEX,
    DOCKER_MANIFEST_V2,
    DOCKER_MANIFEST_LIST,
]
IMAGE_MANIFEST_TYPES = {OCI_IMAGE_MANIFEST, DOCKER_MANIFEST_V2}
INDEX_TYPES = {OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST}

# Config types
OCI_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
DOCKER_IMAGE_CONFIG = "application/vnd.docker.container.image.v1+json"

# Layer types
OCI_LAYER_TAR = "application/vnd.oci.image.layer.v1.tar"
OCI_LAYER_TAR_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
OCI_LAYER_TAR_ZSTD = "application/vnd.oci.image.layer.v1.tar+zstd"
DOCKER_LAYER_TAR_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"
OCIPKG_LAYER_TAR_GZIP = "application/vnd.ocipkg.v1.layer.tar+gzip"

GZIP_LAYER_TYPES = {OCI_LAYER_TAR_GZIP, DOCKER_LAYER_TAR_GZIP, OCIPKG_LAYER_TAR_GZIP}
ZSTD_LAYER_TYPES = {OCI_LAYER_TAR_ZSTD}
PLAIN_LAYER_TYPES = {OCI_LAYER_TAR}
LAYER_TYPES = GZIP_LAYER_TYPES | ZSTD_LAYER_TYPES | PLAIN_LAYER_TYPES

# Annotations
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"
ANNOTATION_TITLE = "org.opencontainers.image.title"

# oci-layout marker file content
OCI_LAYOUT_VERSION = "1.0.0"
OCI_LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"

SCHEMA_VERSION = 2


__all__ = [
    "OCI_IMAGE_MANIFEST",
    "OCI_IMAGE_INDEX",
    "DOCKER_MANIFEST_V2",
    "DOCKER_MANIFEST_LIST",
    "ACCEPTED_MANIFEST_TYPES",
    "IMAGE_MANIFEST_TYPES",
    "INDEX_TYPES",
    "OCI_IMAGE_CONFIG",
    "DOCKER_IMAGE_CONFIG",
    "OCI_LAYER_TAR",
    "OCI_LAYER_TAR_GZIP",
    "OCI_LAYER_TAR_ZSTD",
    "DOCKER_LAYER_TAR_GZIP",
    "OCIPKG_LAYER_TAR_GZIP",
    "GZIP_LAYER_TYPES",
    "ZSTD_LAYER_TYPES",
    "PLAIN_LAYER_TYPES",
    "LAYER_TYPES",
    "ANNOTATION_REF_NAME",
    "ANNOTATION_TITLE",
    "OCI_LAYOUT_VERSION",
    "OCI_LAYOUT_FILE",
    "INDEX_FILE",
    "SCHEMA_VERSION",
]
