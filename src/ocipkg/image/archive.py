"""
Read-only, verified view of an OCI-layout tar archive.

The archive is read sequentially once. Every ``blobs/<alg>/<hex>`` entry is
copied into a staging directory while being hashed and compared against the
digest embedded in its file name; the first mismatch aborts with
``DigestMismatch``. Nothing outside the staging directory is touched.
"""
from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Dict, List, Optional, Tuple, Union

from ..digest import CHUNK_SIZE, Digest, Digester
from ..errors import DigestMismatch, InvalidName, IoError, NotFound, ProtocolError
from ..image_name import ImageName
from ..media_types import (
    BLOBS_DIR,
    DOCKER_IMAGE_CONFIG,
    INDEX_FILE,
    OCI_IMAGE_CONFIG,
    OCI_LAYOUT_FILE,
    OCI_LAYOUT_VERSION,
)
from ..models import (
    Descriptor,
    ImageConfiguration,
    ImageIndex,
    ImageManifest,
    OciLayout,
    parse_document,
)
from ..path_safety import safe_relpath

logger = logging.getLogger(__name__)

__all__ = ["OciArchive"]


class OciArchive:
    """
    Staged contents of an OCI-layout archive.

    Use as a context manager; the staging directory is removed on exit when
    the archive created it.
    """

    def __init__(self, path: Path, staging_dir: Path, index: ImageIndex,
                 blobs: Dict[Digest, Path], owns_staging: bool = False):
        self.path = path
        self.staging_dir = staging_dir
        self.index = index
        self._blobs = blobs
        self._owns_staging = owns_staging

    @classmethod
    def open(cls, path: Union[str, Path], staging_dir: Optional[Path] = None) -> OciArchive:
        """
        Read and verify ``path``.

        Raises:
            IoError: If the archive cannot be read
            ProtocolError: If the layout marker or index is missing or invalid
            DigestMismatch: If a blob does not hash to its file name
        """
        path = Path(path)
        if not path.is_file():
            raise IoError(f"Archive does not exist: {path}")

        owns_staging = staging_dir is None
        staging = Path(tempfile.mkdtemp(prefix="ocipkg-archive-")) if owns_staging else Path(staging_dir)
        try:
            layout_bytes, index_bytes, blobs = _read_archive(path, staging)

            if layout_bytes is None:
                raise ProtocolError(f"{path} is not an OCI layout: missing {OCI_LAYOUT_FILE}")
            layout = parse_document(OciLayout, layout_bytes, f"{OCI_LAYOUT_FILE} in {path}")
            if layout.image_layout_version != OCI_LAYOUT_VERSION:
                raise ProtocolError(
                    f"Unsupported imageLayoutVersion {layout.image_layout_version!r} in {path}"
                )
            if index_bytes is None:
                raise ProtocolError(f"{path} is not an OCI layout: missing {INDEX_FILE}")
            index = parse_document(ImageIndex, index_bytes, f"{INDEX_FILE} in {path}")
        except BaseException:
            if owns_staging:
                shutil.rmtree(staging, ignore_errors=True)
            raise

        return cls(path, staging, index, blobs, owns_staging)

    def close(self) -> None:
        if self._owns_staging:
            shutil.rmtree(self.staging_dir, ignore_errors=True)

    def __enter__(self) -> OciArchive:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Blob access

    def has_blob(self, digest: Union[Digest, str]) -> bool:
        return _as_digest(digest) in self._blobs

    def blob_path(self, digest: Union[Digest, str]) -> Path:
        d = _as_digest(digest)
        try:
            return self._blobs[d]
        except KeyError:
            raise NotFound(f"Blob {d} referenced but missing from {self.path}") from None

    def open_blob(self, digest: Union[Digest, str]) -> BinaryIO:
        return open(self.blob_path(digest), "rb")

    def read_blob(self, digest: Union[Digest, str]) -> bytes:
        return self.blob_path(digest).read_bytes()

    def check_descriptor(self, descriptor: Descriptor) -> Path:
        """Blob path for ``descriptor`` after checking presence and size."""
        path = self.blob_path(descriptor.digest)
        actual = path.stat().st_size
        if actual != descriptor.size:
            raise ProtocolError(
                f"Blob {descriptor.digest} in {self.path} is {actual} bytes, descriptor says {descriptor.size}"
            )
        return path

    # Images

    def images(self) -> List[Tuple[ImageName, Descriptor]]:
        """
        Image names in the index with their manifest descriptors.

        Raises:
            ProtocolError: If a manifest entry carries no image name
            InvalidName: If the image name is malformed
        """
        result = []
        for descriptor in self.index.manifests:
            ref = descriptor.ref_name
            if not ref:
                raise ProtocolError(f"Index entry {descriptor.digest} in {self.path} has no image name")
            result.append((ImageName.parse(ref), descriptor))
        return result

    def manifest(self, descriptor: Descriptor) -> Tuple[bytes, ImageManifest]:
        """
        Raw and parsed manifest for an index entry, with every referenced
        blob checked for presence and size. The config is validated too.
        """
        self.check_descriptor(descriptor)
        data = self.read_blob(descriptor.digest)
        manifest = parse_document(ImageManifest, data, f"manifest {descriptor.digest} in {self.path}")
        for blob in manifest.descriptors():
            self.check_descriptor(blob)
        if manifest.config.media_type in (OCI_IMAGE_CONFIG, DOCKER_IMAGE_CONFIG):
            parse_document(
                ImageConfiguration,
                self.read_blob(manifest.config.digest),
                f"config {manifest.config.digest} in {self.path}",
            )
        return data, manifest


def _as_digest(digest: Union[Digest, str]) -> Digest:
    return digest if isinstance(digest, Digest) else Digest.parse(digest)


def _read_archive(path: Path, staging: Path):
    layout_bytes = None
    index_bytes = None
    blobs: Dict[Digest, Path] = {}
    try:
        with tarfile.open(path, mode="r|*") as tar:
            for member in tar:
                try:
                    name = safe_relpath(member.name.rstrip("/"))
                except ValueError as e:
                    raise ProtocolError(f"Unsafe entry in {path}: {e}") from e
                if member.isdir():
                    continue
                if not member.isreg():
                    raise ProtocolError(f"Unexpected non-file entry {name} in {path}")

                if name == OCI_LAYOUT_FILE:
                    layout_bytes = tar.extractfile(member).read()
                elif name == INDEX_FILE:
                    index_bytes = tar.extractfile(member).read()
                elif name.startswith(BLOBS_DIR + "/"):
                    digest = _digest_from_entry(name, path)
                    blobs[digest] = _stage_blob(tar.extractfile(member), digest, staging, path)
                else:
                    logger.debug("Ignoring entry %s in %s", name, path)
    except tarfile.TarError as e:
        raise ProtocolError(f"Corrupt archive {path}: {e}") from e
    except OSError as e:
        if isinstance(e, IoError):
            raise
        raise IoError(f"Failed to read archive {path}: {e}") from e
    return layout_bytes, index_bytes, blobs


def _digest_from_entry(name: str, path: Path) -> Digest:
    parts = PurePosixPath(name).parts
    if len(parts) != 3:
        raise ProtocolError(f"Unexpected blob entry {name} in {path}")
    try:
        return Digest(parts[1], parts[2])
    except InvalidName as e:
        raise ProtocolError(f"Invalid blob entry {name} in {path}: {e}") from e


def _stage_blob(src: BinaryIO, digest: Digest, staging: Path, path: Path) -> Path:
    target = staging / digest.algorithm / digest.hex
    target.parent.mkdir(parents=True, exist_ok=True)
    digester = Digester(digest.algorithm)
    with open(target, "wb") as out:
        while True:
            chunk = src.read(CHUNK_SIZE)
            if not chunk:
                break
            digester.update(chunk)
            out.write(chunk)
    try:
        digester.verify(digest)
    except DigestMismatch as e:
        target.unlink()
        raise DigestMismatch(
            f"Blob {digest} in {path} failed verification: got {e.actual}",
            expected=e.expected,
            actual=e.actual,
        ) from e
    return target
