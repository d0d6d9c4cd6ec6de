"""
ocipkg: package files into OCI images.

Build OCI-layout archives from directories or build artifacts, keep images
in a local content-addressable store, and move them to and from OCI
registries.
"""
__version__ = "0.1.0"

from .digest import Digest
from .errors import (
    AlreadyExists,
    AuthFailure,
    DigestMismatch,
    InvalidName,
    IoError,
    NetworkError,
    NotFound,
    OciError,
    ProtocolError,
)
from .image import Builder, OciArchive, load, pack_dir, pack_files
from .image_name import ImageName, Reference
from .local import LocalStore
from .settings import Settings, create_settings_from_env
from .distribution import get_image, push_image

__all__ = [
    "__version__",
    "Digest",
    "ImageName",
    "Reference",
    "LocalStore",
    "Settings",
    "create_settings_from_env",
    "Builder",
    "OciArchive",
    "pack_dir",
    "pack_files",
    "load",
    "get_image",
    "push_image",
    "OciError",
    "InvalidName",
    "AlreadyExists",
    "IoError",
    "DigestMismatch",
    "NotFound",
    "AuthFailure",
    "ProtocolError",
    "NetworkError",
]
