"""
OCI media types and constants.

Single source of truth for all OCI-related media types and constants.
"""
from __future__ import annotations

# Manifest and index types
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"

# Config types
OCI_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
DOCKER_IMAGE_CONFIG = "application/vnd.docker.container.image.v1+json"

# Layer types
OCI_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
OCI_IMAGE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
OCI_IMAGE_LAYER_ZSTD = "application/vnd.oci.image.layer.v1.tar+zstd"
DOCKER_IMAGE_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"

# Manifest types accepted on pull (in order of preference)
ACCEPTED_MANIFEST_TYPES = [
    OCI_IMAGE_MANIFEST,
    DOCKER_MANIFEST_V2,
]

# Layer media type per builder compression setting
LAYER_MEDIA_TYPES = {
    "none": OCI_IMAGE_LAYER,
    "gzip": OCI_IMAGE_LAYER_GZIP,
    "zstd": OCI_IMAGE_LAYER_ZSTD,
}

# Compression per layer media type, for unpacking
LAYER_COMPRESSION = {
    OCI_IMAGE_LAYER: "none",
    OCI_IMAGE_LAYER_GZIP: "gzip",
    DOCKER_IMAGE_LAYER_GZIP: "gzip",
    OCI_IMAGE_LAYER_ZSTD: "zstd",
}

# Standard annotations
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"
CREATED_ANNOTATION = "org.opencontainers.image.created"

# OCI image layout
OCI_LAYOUT_FILE = "oci-layout"
OCI_LAYOUT_VERSION = "1.0.0"
INDEX_FILE = "index.json"
BLOBS_DIR = "blobs"


__all__ = [
    "OCI_IMAGE_MANIFEST",
    "OCI_IMAGE_INDEX",
    "DOCKER_MANIFEST_V2",
    "OCI_IMAGE_CONFIG",
    "DOCKER_IMAGE_CONFIG",
    "OCI_IMAGE_LAYER",
    "OCI_IMAGE_LAYER_GZIP",
    "OCI_IMAGE_LAYER_ZSTD",
    "DOCKER_IMAGE_LAYER_GZIP",
    "ACCEPTED_MANIFEST_TYPES",
    "LAYER_MEDIA_TYPES",
    "LAYER_COMPRESSION",
    "REF_NAME_ANNOTATION",
    "CREATED_ANNOTATION",
    "OCI_LAYOUT_FILE",
    "OCI_LAYOUT_VERSION",
    "INDEX_FILE",
    "BLOBS_DIR",
]
