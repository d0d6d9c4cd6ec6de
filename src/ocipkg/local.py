"""
Local content-addressable image store.

Layout under the store root::

    blobs/<algorithm>/<hex>              shared blob pool
    <registry>/<repository>/__<tag>/     one directory per image name
        index.json                       OCI index pointing at the manifest blob
        rootfs/                          layers applied in order (optional)

Every write goes through a temp file in the destination directory followed
by an atomic rename, so a partially written blob or index is never visible.
An image's ``index.json`` is written only after every blob its manifest
references is present in the pool.
"""
from __future__ import annotations

import contextlib
import logging
import os
import shutil
import stat
import tarfile
import tempfile
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, Mapping, Optional, Union

import zstandard as zstd

from .digest import CHUNK_SIZE, Digest, Digester
from .errors import DigestMismatch, IoError, NotFound, ProtocolError
from .image_name import ImageName
from .media_types import (
    BLOBS_DIR,
    INDEX_FILE,
    LAYER_COMPRESSION,
    OCI_IMAGE_MANIFEST,
    REF_NAME_ANNOTATION,
)
from .models import Descriptor, ImageIndex, ImageManifest, parse_document, to_json_bytes
from .path_safety import safe_relpath
from .settings import Settings

logger = logging.getLogger(__name__)

__all__ = ["LocalStore", "BlobWriter", "ImageListing", "BlobSource"]

ROOTFS_DIR = "rootfs"
_TMP_PREFIX = ".ocipkg.tmp."
_WHITEOUT_PREFIX = ".wh."
_OPAQUE_WHITEOUT = ".wh..wh..opq"

BlobSource = Union[bytes, Path, BinaryIO]


def _as_digest(digest: Union[Digest, str]) -> Digest:
    return digest if isinstance(digest, Digest) else Digest.parse(digest)


def _atomic_write(target_path: Path, data: bytes) -> None:
    """Write bytes to ``target_path`` via temp file + fsync + rename."""
    target_path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=target_path.parent)
    try:
        with os.fdopen(fd, "wb") as out:
            out.write(data)
            out.flush()
            os.fsync(out.fileno())
        os.replace(temp_path, target_path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temp_path)
        raise


class BlobWriter:
    """
    Streaming writer for one blob of the pool.

    Bytes go to a temp file next to the final path while being hashed. On a
    clean ``commit`` the digest (and size, when given) is verified and the
    temp file atomically renamed into place; on any error, including task
    cancellation, the temp file is removed so no partial blob survives.
    An existing blob with the same digest is left untouched.
    """

    def __init__(self, target_path: Path, digest: Digest, size: Optional[int] = None):
        self.target_path = target_path
        self.digest = digest
        self.expected_size = size
        self._digester = Digester(digest.algorithm)
        self._file: Optional[BinaryIO] = None
        self._temp_path: Optional[Path] = None

    def __enter__(self) -> BlobWriter:
        self.target_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=self.target_path.parent)
        self._temp_path = Path(temp_path)
        self._file = os.fdopen(fd, "wb")
        return self

    def write(self, chunk: bytes) -> int:
        self._digester.update(chunk)
        return self._file.write(chunk)

    @property
    def size(self) -> int:
        return self._digester.size

    def commit(self) -> Path:
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        self._digester.verify(self.digest)
        if self.expected_size is not None and self._digester.size != self.expected_size:
            raise DigestMismatch(
                f"Size mismatch for {self.digest}: expected {self.expected_size}, got {self._digester.size}",
                expected=str(self.expected_size),
                actual=str(self._digester.size),
            )
        if self.target_path.exists():
            self._temp_path.unlink()
        else:
            os.replace(self._temp_path, self.target_path)
        self._temp_path = None
        return self.target_path

    def abort(self) -> None:
        if self._file is not None and not self._file.closed:
            self._file.close()
        if self._temp_path is not None:
            with contextlib.suppress(FileNotFoundError):
                self._temp_path.unlink()
            self._temp_path = None

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.abort()
            return False
        try:
            self.commit()
        except BaseException:
            self.abort()
            raise
        return False


class ImageListing:
    """Lazy, finite, restartable iterable over the image names in a store."""

    def __init__(self, root: Path):
        self._root = root

    def __iter__(self) -> Iterator[ImageName]:
        if not self._root.is_dir():
            return
        for dirpath, dirnames, _ in os.walk(self._root):
            rel = Path(dirpath).relative_to(self._root)
            if rel == Path("."):
                dirnames[:] = [d for d in dirnames if d != BLOBS_DIR and not d.startswith(".")]
                continue
            if rel.name.startswith(("__", "@")):
                # Image directory: never descend into rootfs
                dirnames[:] = []
                if (Path(dirpath) / INDEX_FILE).is_file():
                    yield ImageName.from_path(rel.as_posix())
            else:
                dirnames[:] = [d for d in dirnames if not d.startswith(".")]


class LocalStore:
    """
    Directory-per-image-name content-addressable cache.

    Owns all files under ``root``; callers go through this API.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    @classmethod
    def default(cls, settings: Optional[Settings] = None) -> LocalStore:
        if settings is None:
            from .settings import create_settings_from_env
            settings = create_settings_from_env()
        return cls(settings.data_dir)

    # Paths

    def image_dir(self, name: ImageName) -> Path:
        """Deterministic, collision-free directory for ``name``."""
        return self.root / name.as_path()

    def blob_path(self, digest: Union[Digest, str]) -> Path:
        d = _as_digest(digest)
        return self.root / BLOBS_DIR / d.algorithm / d.hex

    # Blob pool

    def has_blob(self, digest: Union[Digest, str]) -> bool:
        return self.blob_path(digest).is_file()

    def open_blob(self, digest: Union[Digest, str]) -> BinaryIO:
        path = self.blob_path(digest)
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise NotFound(f"Blob not found in local store: {digest}") from e

    def read_blob(self, digest: Union[Digest, str]) -> bytes:
        with self.open_blob(digest) as f:
            return f.read()

    def blob_writer(self, digest: Union[Digest, str], size: Optional[int] = None) -> BlobWriter:
        return BlobWriter(self.blob_path(digest), _as_digest(digest), size)

    def put_blob(self, digest: Union[Digest, str], source: BlobSource, size: Optional[int] = None) -> Path:
        """
        Insert one blob, verifying its digest.

        Idempotent: if the blob is already present the pool is left untouched.

        Raises:
            DigestMismatch: If ``source`` does not hash to ``digest``
            IoError: If the pool cannot be written
        """
        d = _as_digest(digest)
        path = self.blob_path(d)
        if path.is_file():
            logger.debug("Blob %s already present", d)
            return path
        try:
            with self.blob_writer(d, size) as writer:
                if isinstance(source, bytes):
                    writer.write(source)
                elif isinstance(source, Path):
                    with open(source, "rb") as f:
                        shutil.copyfileobj(f, writer, CHUNK_SIZE)
                else:
                    shutil.copyfileobj(source, writer, CHUNK_SIZE)
        except OSError as e:
            raise IoError(f"Failed to write blob {d}: {e}") from e
        return path

    # Images

    def insert(
        self,
        name: ImageName,
        manifest: bytes,
        blobs: Optional[Mapping[Union[Digest, str], BlobSource]] = None,
        rootfs: Optional[Path] = None,
    ) -> Digest:
        """
        Register ``name`` pointing at ``manifest``.

        Writes ``blobs`` first, checks every descriptor of the manifest is in
        the pool, stores the manifest blob, then atomically replaces the
        image's ``index.json``. Re-inserting a name replaces it
        (last writer wins).

        ``rootfs`` is a tree prepared with ``build_rootfs`` on the store's
        filesystem. It is renamed into place together with the index; if the
        index cannot be written the previous rootfs is restored.

        Returns:
            Manifest digest

        Raises:
            NotFound: If the manifest references a blob that is not present
            DigestMismatch: If a supplied blob does not match its digest
            IoError: If the image directory cannot be written
        """
        for digest, source in (blobs or {}).items():
            self.put_blob(digest, source)

        parsed = parse_document(ImageManifest, manifest, f"manifest for {name}")
        for descriptor in parsed.descriptors():
            path = self.blob_path(descriptor.digest)
            if not path.is_file():
                raise NotFound(f"Manifest for {name} references missing blob {descriptor.digest}")
            if path.stat().st_size != descriptor.size:
                raise ProtocolError(
                    f"Blob {descriptor.digest} is {path.stat().st_size} bytes, manifest for {name} says {descriptor.size}"
                )

        manifest_digest = Digest.from_bytes(manifest)
        self.put_blob(manifest_digest, manifest)

        index = ImageIndex(manifests=[
            Descriptor(
                media_type=parsed.media_type or OCI_IMAGE_MANIFEST,
                digest=str(manifest_digest),
                size=len(manifest),
                annotations={REF_NAME_ANNOTATION: str(name)},
            )
        ])
        image_dir = self.image_dir(name)
        previous = None
        if rootfs is not None:
            try:
                image_dir.mkdir(parents=True, exist_ok=True)
                previous = _swap_rootfs(image_dir, Path(rootfs))
            except OSError as e:
                raise IoError(f"Failed to install rootfs for {name}: {e}") from e
        try:
            _atomic_write(image_dir / INDEX_FILE, to_json_bytes(index))
        except OSError as e:
            if rootfs is not None:
                _restore_rootfs(image_dir, previous)
            raise IoError(f"Failed to register {name}: {e}") from e
        _discard(previous)
        logger.info("Stored %s (%s)", name, manifest_digest)
        return manifest_digest

    def contains(self, name: ImageName) -> bool:
        return (self.image_dir(name) / INDEX_FILE).is_file()

    def get_manifest_digest(self, name: ImageName) -> Digest:
        index_path = self.image_dir(name) / INDEX_FILE
        try:
            data = index_path.read_bytes()
        except FileNotFoundError as e:
            raise NotFound(f"Image not found in local store: {name}") from e
        index = parse_document(ImageIndex, data, f"index for {name}")
        if len(index.manifests) != 1:
            raise ProtocolError(f"Index for {name} must reference exactly one manifest")
        return index.manifests[0].parsed_digest

    def get_manifest_bytes(self, name: ImageName) -> bytes:
        return self.read_blob(self.get_manifest_digest(name))

    def get(self, name: ImageName) -> ImageManifest:
        """
        Look up the manifest stored for ``name``.

        Raises:
            NotFound: If ``name`` is not in the store
        """
        return parse_document(ImageManifest, self.get_manifest_bytes(name), f"manifest for {name}")

    def list(self) -> ImageListing:
        return ImageListing(self.root)

    @contextlib.contextmanager
    def staging_dir(self) -> Iterator[Path]:
        """Scratch directory on the store's filesystem, removed on exit."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=_TMP_PREFIX, dir=self.root))
        try:
            yield path
        finally:
            _discard(path)

    def build_rootfs(
        self,
        manifest: ImageManifest,
        dest: Path,
        open_blob: Optional[Callable[[str], BinaryIO]] = None,
    ) -> Path:
        """
        Apply ``manifest``'s layers in order into the new directory ``dest``.

        Nothing in the store changes; pass the result to ``insert(...,
        rootfs=dest)`` to publish it. Layers are read with ``open_blob``
        (default: from this store's pool).

        Raises:
            ProtocolError: If a layer is corrupt, unsupported or unsafe
            IoError: If the tree cannot be written
        """
        dest = Path(dest)
        try:
            dest.mkdir(parents=True)
        except OSError as e:
            raise IoError(f"Failed to create {dest}: {e}") from e
        self._apply_layers(manifest, dest, open_blob or self.open_blob)
        return dest

    def unpack(self, name: ImageName, dest: Optional[Path] = None) -> Path:
        """
        Apply the image's layers in order into ``dest``.

        Defaults to ``<image_dir>/rootfs``, which is built aside and swapped
        in as a whole so a failed unpack never touches the existing tree.
        """
        manifest = self.get(name)
        if dest is not None:
            dest = Path(dest)
            try:
                dest.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise IoError(f"Failed to create {dest}: {e}") from e
            self._apply_layers(manifest, dest, self.open_blob)
            return dest

        image_dir = self.image_dir(name)
        with self.staging_dir() as staging:
            staged = self.build_rootfs(manifest, staging / ROOTFS_DIR)
            try:
                previous = _swap_rootfs(image_dir, staged)
            except OSError as e:
                raise IoError(f"Failed to install rootfs for {name}: {e}") from e
        _discard(previous)
        return image_dir / ROOTFS_DIR

    def _apply_layers(self, manifest: ImageManifest, dest: Path,
                      open_blob: Callable[[str], BinaryIO]) -> None:
        root = dest.resolve()
        # Directory modes are applied once every layer is in, so later
        # layers can still write into directories that end up read-only.
        dir_modes: Dict[Path, int] = {}
        for layer in manifest.layers:
            compression = LAYER_COMPRESSION.get(layer.media_type)
            if compression is None:
                raise ProtocolError(f"Unsupported layer media type: {layer.media_type}")
            try:
                with open_blob(layer.digest) as raw:
                    if compression == "zstd":
                        reader = zstd.ZstdDecompressor().stream_reader(raw)
                        with tarfile.open(fileobj=reader, mode="r|") as tar:
                            _extract_layer(tar, dest, root, dir_modes)
                    else:
                        mode = "r|gz" if compression == "gzip" else "r|"
                        with tarfile.open(fileobj=raw, mode=mode) as tar:
                            _extract_layer(tar, dest, root, dir_modes)
            except (tarfile.TarError, zstd.ZstdError) as e:
                raise ProtocolError(f"Corrupt layer {layer.digest}: {e}") from e
            except OSError as e:
                if isinstance(e, IoError):
                    raise
                raise IoError(f"Failed to unpack layer {layer.digest} into {dest}: {e}") from e

        try:
            for path in sorted(dir_modes, key=lambda p: len(p.parts), reverse=True):
                if path.is_dir() and not path.is_symlink():
                    os.chmod(path, dir_modes[path])
        except OSError as e:
            raise IoError(f"Failed to set directory modes in {dest}: {e}") from e


def _extract_layer(tar: tarfile.TarFile, dest: Path, root: Path, dir_modes: Dict[Path, int]) -> None:
    """
    Extract one layer, honoring OCI whiteouts.

    Member names are validated with ``safe_relpath`` and every write target
    must resolve inside ``root``. Directory modes are collected in
    ``dir_modes`` instead of being applied.
    """
    for member in tar:
        try:
            rel = safe_relpath(member.name.rstrip("/"))
        except ValueError as e:
            raise ProtocolError(f"Unsafe layer member: {e}") from e
        target = dest / rel
        _ensure_within(root, target.parent)
        base = target.name

        if base == _OPAQUE_WHITEOUT:
            for child in list(target.parent.iterdir()) if target.parent.is_dir() else []:
                _remove(child)
            continue
        if base.startswith(_WHITEOUT_PREFIX):
            _remove(target.parent / base[len(_WHITEOUT_PREFIX):])
            continue

        if member.isdir():
            if target.exists() and not target.is_dir():
                _remove(target)
            target.mkdir(parents=True, exist_ok=True)
            dir_modes[target] = member.mode & 0o7777
        elif member.isreg():
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists() or target.is_symlink():
                _remove(target)
            src = tar.extractfile(member)
            with open(target, "wb") as out:
                shutil.copyfileobj(src, out, CHUNK_SIZE)
            os.chmod(target, member.mode & 0o7777)
        elif member.issym():
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists() or target.is_symlink():
                _remove(target)
            os.symlink(member.linkname, target)
        elif member.islnk():
            try:
                link_rel = safe_relpath(member.linkname)
            except ValueError as e:
                raise ProtocolError(f"Unsafe hard link target: {e}") from e
            source = dest / link_rel
            _ensure_within(root, source)
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists() or target.is_symlink():
                _remove(target)
            os.link(source, target)
        else:
            logger.debug("Skipping special file %s in layer", member.name)


def _ensure_within(root: Path, path: Path) -> None:
    resolved = path.resolve()
    if resolved != root and root not in resolved.parents:
        raise ProtocolError(f"Layer member escapes destination: {path}")


def _swap_rootfs(image_dir: Path, staged: Path) -> Optional[Path]:
    """
    Rename ``staged`` to ``<image_dir>/rootfs``.

    Returns the trash directory now holding the previous rootfs, if there
    was one. Removing it is left to the caller.
    """
    image_dir.mkdir(parents=True, exist_ok=True)
    final = image_dir / ROOTFS_DIR
    trash = None
    if os.path.lexists(final):
        trash = Path(tempfile.mkdtemp(prefix=_TMP_PREFIX, dir=image_dir))
        os.replace(final, trash / ROOTFS_DIR)
    try:
        os.replace(staged, final)
    except OSError:
        if trash is not None:
            os.replace(trash / ROOTFS_DIR, final)
            trash.rmdir()
        raise
    return trash


def _restore_rootfs(image_dir: Path, trash: Optional[Path]) -> None:
    """Undo ``_swap_rootfs``: drop the new rootfs and put the previous one back."""
    final = image_dir / ROOTFS_DIR
    _discard(final)
    if trash is not None:
        os.replace(trash / ROOTFS_DIR, final)
        trash.rmdir()


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        _rmtree(path)


def _rmtree(path: Path) -> None:
    """``shutil.rmtree`` that also removes directories unpacked read-only."""
    os.chmod(path, os.stat(path).st_mode | stat.S_IRWXU)
    for dirpath, dirnames, _ in os.walk(path):
        for dirname in dirnames:
            child = os.path.join(dirpath, dirname)
            if not os.path.islink(child):
                os.chmod(child, os.lstat(child).st_mode | stat.S_IRWXU)
    shutil.rmtree(path)


def _discard(path: Optional[Path]) -> None:
    """Remove a scratch tree; failures only leave hidden temp entries behind."""
    if path is None or not os.path.lexists(path):
        return
    try:
        _remove(path)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
