"""
OCI image format data models.

These Pydantic models provide validation and deterministic JSON
serialization for the documents stored in archives, in the local store and
on registries: descriptors, image manifests, image indexes, image
configurations and the ``oci-layout`` marker.
"""
from __future__ import annotations

import platform
import sys
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .digest import Digest
from .errors import ProtocolError
from .media_types import (
    OCI_IMAGE_CONFIG,
    OCI_IMAGE_INDEX,
    OCI_IMAGE_MANIFEST,
    OCI_LAYOUT_VERSION,
    REF_NAME_ANNOTATION,
)

__all__ = [
    "Descriptor",
    "ImageManifest",
    "ImageIndex",
    "ImageConfiguration",
    "ContainerConfig",
    "RootFs",
    "OciLayout",
    "to_json_bytes",
    "parse_document",
]


class _OciModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Descriptor(_OciModel):
    """Metadata pointer to a blob: media type, digest and size."""
    media_type: str = Field(..., alias="mediaType")
    digest: str = Field(..., description="Content digest (sha256:...)")
    size: int = Field(..., ge=0, description="Blob size in bytes")
    annotations: Optional[Dict[str, str]] = None

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v):
        Digest.parse(v)
        return v

    @property
    def parsed_digest(self) -> Digest:
        return Digest.parse(self.digest)

    @classmethod
    def for_blob(cls, media_type: str, data: bytes, annotations: Optional[Dict[str, str]] = None) -> Descriptor:
        return cls(
            media_type=media_type,
            digest=str(Digest.from_bytes(data)),
            size=len(data),
            annotations=annotations,
        )

    @property
    def ref_name(self) -> Optional[str]:
        return (self.annotations or {}).get(REF_NAME_ANNOTATION)


class ImageManifest(_OciModel):
    """
    OCI image manifest.

    References one config blob and an ordered list of layer blobs; later
    layers overlay earlier ones.
    """
    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: Optional[str] = Field(default=OCI_IMAGE_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: List[Descriptor] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v):
        if v != 2:
            raise ValueError(f"Unsupported manifest schemaVersion: {v}")
        return v

    def descriptors(self) -> List[Descriptor]:
        """Config first, then layers in order."""
        return [self.config, *self.layers]


class ImageIndex(_OciModel):
    """OCI image index: the root document of an OCI layout."""
    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: Optional[str] = Field(default=OCI_IMAGE_INDEX, alias="mediaType")
    manifests: List[Descriptor] = Field(default_factory=list)
    annotations: Optional[Dict[str, str]] = None


class RootFs(_OciModel):
    type: str = "layers"
    diff_ids: List[str] = Field(default_factory=list)


class ContainerConfig(_OciModel):
    env: Optional[List[str]] = Field(default=None, alias="Env")
    entrypoint: Optional[List[str]] = Field(default=None, alias="Entrypoint")
    cmd: Optional[List[str]] = Field(default=None, alias="Cmd")
    working_dir: Optional[str] = Field(default=None, alias="WorkingDir")
    labels: Optional[Dict[str, str]] = Field(default=None, alias="Labels")


class ImageConfiguration(_OciModel):
    """
    OCI image configuration.

    Only its digest and size matter for storage and transfer; the builder
    fills ``rootfs.diff_ids`` with the uncompressed layer digests.
    """
    architecture: str
    os: str
    created: Optional[str] = None
    author: Optional[str] = None
    config: Optional[ContainerConfig] = None
    rootfs: RootFs = Field(default_factory=RootFs)
    history: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def for_host(cls) -> ImageConfiguration:
        """Default configuration describing the running platform."""
        return cls(architecture=_host_architecture(), os=_host_os())

    @property
    def media_type(self) -> str:
        return OCI_IMAGE_CONFIG


class OciLayout(_OciModel):
    image_layout_version: str = Field(default=OCI_LAYOUT_VERSION, alias="imageLayoutVersion")


def to_json_bytes(model: BaseModel) -> bytes:
    """Deterministic JSON encoding used for every blob this package writes."""
    return model.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def parse_document(model_cls, data: bytes, what: str):
    """
    Validate a JSON document read from an archive, store or registry.

    Raises:
        ProtocolError: If the bytes are not a valid ``model_cls`` document
    """
    try:
        return model_cls.model_validate_json(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {what}: {e}") from e


_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


def _host_architecture() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine or "unknown")


def _host_os() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    return sys.platform
