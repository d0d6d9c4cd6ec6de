"""OCI-layout archives: building, reading and loading into the local store."""
from .archive import OciArchive
from .builder import Builder, pack_dir, pack_files
from .loader import load

__all__ = ["Builder", "OciArchive", "pack_dir", "pack_files", "load"]
