"""
OCI-layout archive builder.

Creates OCI image archives from directory trees or explicit file lists. Layer
tars are deterministic (sorted entries, zeroed ownership and timestamps,
fixed compression settings), so identical inputs give identical layer
digests across processes. Every blob is hashed during the single pass that
serializes it, and no blob is written to the archive twice.
"""
from __future__ import annotations

import gzip
import logging
import os
import tarfile
import tempfile
from pathlib import Path, PurePath
from typing import BinaryIO, Callable, Iterable, Iterator, List, Optional, Set, Tuple, Union

import zstandard as zstd

from ..digest import Digest, HashingWriter
from ..errors import AlreadyExists, IoError
from ..image_name import ImageName, random_image_name
from ..media_types import (
    BLOBS_DIR,
    INDEX_FILE,
    LAYER_MEDIA_TYPES,
    OCI_IMAGE_CONFIG,
    OCI_IMAGE_MANIFEST,
    OCI_LAYOUT_FILE,
    REF_NAME_ANNOTATION,
)
from ..models import (
    Descriptor,
    ImageConfiguration,
    ImageIndex,
    ImageManifest,
    OciLayout,
    RootFs,
    to_json_bytes,
)
from ..path_safety import archive_relpath

logger = logging.getLogger(__name__)

__all__ = ["Builder", "pack_dir", "pack_files"]

# Layers up to this size are kept in memory while being built
_SPOOL_MAX_SIZE = 16 * 1024 * 1024


class Builder:
    """
    Streams layers, config, manifest and index into an OCI-layout tar.

    Usage::

        with open("out.tar", "xb") as f:
            builder = Builder(f)
            builder.set_name(ImageName.parse("ghcr.io/me/lib:1.0"))
            builder.append_dir_all("build/")
            builder.into_inner()

    Args:
        sink: Writable binary file receiving the archive
        name_factory: Produces the image name when ``set_name`` was not called
        compression: Layer compression, one of "gzip", "zstd", "none"
        zstd_level: Zstandard compression level
    """

    def __init__(self, sink: BinaryIO, *,
                 name_factory: Callable[[], ImageName] = random_image_name,
                 compression: str = "gzip",
                 zstd_level: int = 19):
        if compression not in LAYER_MEDIA_TYPES:
            raise ValueError(f"Unsupported layer compression: {compression}")
        self._sink = sink
        self._name_factory = name_factory
        self._compression = compression
        self._zstd_level = zstd_level
        self._tar = tarfile.open(fileobj=sink, mode="w", format=tarfile.USTAR_FORMAT)
        self._name: Optional[ImageName] = None
        self._config: Optional[ImageConfiguration] = None
        self._layers: List[Descriptor] = []
        self._diff_ids: List[str] = []
        self._written: Set[Digest] = set()
        self._finished = False
        self._write_entry(OCI_LAYOUT_FILE, to_json_bytes(OciLayout()))

    def set_name(self, name: Union[ImageName, str]) -> None:
        if isinstance(name, str):
            name = ImageName.parse(name)
        self._name = name

    def append_config(self, config: ImageConfiguration) -> None:
        self._config = config

    def append_dir_all(self, path: Union[str, Path]) -> Descriptor:
        """
        Append one layer containing the whole tree under ``path``.

        Relative paths and permission bits are preserved.

        Raises:
            IoError: If ``path`` is not a readable directory
        """
        src = Path(path)
        if not src.is_dir():
            raise IoError(f"Input directory does not exist: {path}")

        def populate(tar: tarfile.TarFile) -> None:
            for entry_path, arcname in _iter_entries_sorted(src):
                arc = arcname + ("/" if entry_path.is_dir() and not entry_path.is_symlink() else "")
                _add_path(tar, entry_path, arc)

        return self._append_layer(populate)

    def append_files(self, paths: Iterable[Union[str, Path]]) -> Descriptor:
        """
        Append one layer containing ``paths`` flat (by file name).

        Raises:
            IoError: If a path is not a readable file
            AlreadyExists: If two paths share a file name
        """
        files = [Path(p) for p in paths]
        seen: Set[str] = set()
        for f in files:
            if not f.is_file():
                raise IoError(f"Input file does not exist: {f}")
            if f.name in seen:
                raise AlreadyExists(f"Duplicate file name in layer: {f.name}")
            seen.add(f.name)

        def populate(tar: tarfile.TarFile) -> None:
            for f in sorted(files, key=lambda p: p.name):
                _add_path(tar, f, archive_relpath(PurePath(f.name)))

        return self._append_layer(populate)

    def into_inner(self) -> BinaryIO:
        """
        Write config, manifest and index, close the archive and return the sink.

        The sink itself is flushed but not closed.
        """
        if self._finished:
            raise ValueError("Builder already finished")
        name = self._name or self._name_factory()

        config = self._config or ImageConfiguration.for_host()
        config = config.model_copy(update={"rootfs": RootFs(diff_ids=list(self._diff_ids))})
        config_bytes = to_json_bytes(config)
        config_desc = Descriptor.for_blob(OCI_IMAGE_CONFIG, config_bytes)
        self._add_bytes_blob(config_bytes)

        manifest = ImageManifest(config=config_desc, layers=list(self._layers))
        manifest_bytes = to_json_bytes(manifest)
        self._add_bytes_blob(manifest_bytes)

        index = ImageIndex(manifests=[
            Descriptor.for_blob(
                OCI_IMAGE_MANIFEST,
                manifest_bytes,
                annotations={REF_NAME_ANNOTATION: str(name)},
            )
        ])
        self._write_entry(INDEX_FILE, to_json_bytes(index))
        self._tar.close()
        self._sink.flush()
        self._finished = True
        logger.info("Packed %s with %d layer(s)", name, len(self._layers))
        return self._sink

    # Internals

    def _append_layer(self, populate: Callable[[tarfile.TarFile], None]) -> Descriptor:
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_SIZE) as spool:
            blob_writer = HashingWriter(spool)
            compressor = self._open_compressor(blob_writer)
            diff_writer = HashingWriter(compressor if compressor is not None else blob_writer)
            try:
                with tarfile.open(fileobj=diff_writer, mode="w", format=tarfile.PAX_FORMAT) as tar:
                    populate(tar)
            except OSError as e:
                raise IoError(f"Failed to read layer input: {e}") from e
            if compressor is not None:
                compressor.close()

            digest = blob_writer.digest()
            descriptor = Descriptor(
                media_type=LAYER_MEDIA_TYPES[self._compression],
                digest=str(digest),
                size=blob_writer.size,
            )
            spool.seek(0)
            self._add_blob(digest, blob_writer.size, spool)

        self._layers.append(descriptor)
        self._diff_ids.append(str(diff_writer.digest()))
        logger.debug("Layer %s (%d bytes)", descriptor.digest, descriptor.size)
        return descriptor

    def _open_compressor(self, inner: HashingWriter):
        if self._compression == "gzip":
            return gzip.GzipFile(filename="", fileobj=inner, mode="wb", mtime=0)
        if self._compression == "zstd":
            compressor = zstd.ZstdCompressor(level=self._zstd_level, write_checksum=True)
            return compressor.stream_writer(inner, closefd=False)
        return None

    def _add_bytes_blob(self, data: bytes) -> Digest:
        digest = Digest.from_bytes(data)
        self._add_blob(digest, len(data), _BytesReader(data))
        return digest

    def _add_blob(self, digest: Digest, size: int, fileobj: BinaryIO) -> None:
        if digest in self._written:
            logger.debug("Blob %s already in archive, skipping", digest)
            return
        info = tarfile.TarInfo(f"{BLOBS_DIR}/{digest.algorithm}/{digest.hex}")
        info.size = size
        info.mode = 0o644
        _apply_canonical_headers(info)
        self._tar.addfile(info, fileobj)
        self._written.add(digest)

    def _write_entry(self, name: str, data: bytes) -> None:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        info.mode = 0o644
        _apply_canonical_headers(info)
        self._tar.addfile(info, _BytesReader(data))


class _BytesReader:
    """Minimal readable view over bytes for ``TarFile.addfile``."""

    def __init__(self, data: bytes):
        self._view = memoryview(data)
        self._pos = 0

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self._view) - self._pos
        chunk = self._view[self._pos:self._pos + size].tobytes()
        self._pos += len(chunk)
        return chunk


def pack_dir(input_dir: Union[str, Path], output: Union[str, Path], *,
             name: Optional[Union[ImageName, str]] = None,
             config: Optional[ImageConfiguration] = None,
             compression: str = "gzip") -> Path:
    """
    Pack a directory into an OCI-layout tar archive.

    The output suffix is forced to ``.tar``. The archive is written to a
    temp file and linked into place, so an existing output is never
    overwritten and a failed pack leaves nothing behind.

    Raises:
        AlreadyExists: If the output path exists
        IoError: If the input directory is missing or unreadable
        InvalidName: If ``name`` is malformed
    """
    src = Path(input_dir)
    if not src.is_dir():
        raise IoError(f"Input directory does not exist: {input_dir}")
    return _pack(output, name, config, compression, lambda b: b.append_dir_all(src))


def pack_files(paths: Iterable[Union[str, Path]], output: Union[str, Path], *,
               name: Optional[Union[ImageName, str]] = None,
               config: Optional[ImageConfiguration] = None,
               compression: str = "gzip") -> Path:
    """Pack build artifacts flat into an OCI-layout tar archive (see ``pack_dir``)."""
    files = list(paths)
    return _pack(output, name, config, compression, lambda b: b.append_files(files))


def _pack(output, name, config, compression, populate: Callable[[Builder], object]) -> Path:
    if isinstance(name, str):
        name = ImageName.parse(name)
    out_path = Path(output).with_suffix(".tar").resolve()
    if out_path.exists():
        raise AlreadyExists(f"Output already exists: {out_path}")
    if not out_path.parent.is_dir():
        raise IoError(f"Output directory does not exist: {out_path.parent}")

    fd, temp_path = tempfile.mkstemp(suffix='.tmp', dir=out_path.parent, prefix=out_path.name + '.')
    try:
        with os.fdopen(fd, 'wb') as f:
            builder = Builder(f, compression=compression)
            if name is not None:
                builder.set_name(name)
            if config is not None:
                builder.append_config(config)
            populate(builder)
            builder.into_inner()
            os.fsync(f.fileno())
        try:
            os.link(temp_path, out_path)
        except FileExistsError as e:
            raise AlreadyExists(f"Output already exists: {out_path}") from e
        except OSError as e:
            raise IoError(f"Failed to write {out_path}: {e}") from e
    finally:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
    return out_path


def _iter_entries_sorted(src_dir: Path) -> Iterator[Tuple[Path, str]]:
    """
    Iterate entries in deterministic order.

    Yields (filesystem_path, archive_name) pairs sorted by archive name, so
    directories precede their contents. Symlinks to directories are yielded
    as links and not followed.
    """
    entries = []

    for root, dirs, files in os.walk(src_dir, onerror=_raise_walk_error):
        root_path = Path(root)
        rel_root = root_path.relative_to(src_dir)

        if rel_root != Path('.'):
            entries.append((root_path, archive_relpath(rel_root)))

        for dir_name in dirs:
            dir_path = root_path / dir_name
            if dir_path.is_symlink():
                entries.append((dir_path, archive_relpath(dir_path.relative_to(src_dir))))

        for file_name in files:
            file_path = root_path / file_name
            rel_file = file_path.relative_to(src_dir)
            entries.append((file_path, archive_relpath(rel_file)))

    entries.sort(key=lambda x: x[1])

    yield from entries


def _add_path(tar: tarfile.TarFile, entry_path: Path, arcname: str) -> None:
    tarinfo = tar.gettarinfo(str(entry_path), arcname=arcname)
    if tarinfo is None:
        # Sockets and doors have no tar representation
        logger.debug("Skipping unsupported file type %s", entry_path)
        return
    _apply_canonical_headers(tarinfo)
    if tarinfo.isreg():
        with open(entry_path, 'rb') as entry_file:
            tar.addfile(tarinfo, entry_file)
    else:
        tar.addfile(tarinfo)


def _apply_canonical_headers(tarinfo: tarfile.TarInfo) -> None:
    """
    Apply canonical tar headers for deterministic output.

    Zeroes ownership and timestamps; permission bits are kept as-is so they
    survive a pack/load round trip.
    """
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ""
    tarinfo.gname = ""
    tarinfo.mtime = 0
    tarinfo.mode &= 0o7777


def _raise_walk_error(error: OSError) -> None:
    raise error
