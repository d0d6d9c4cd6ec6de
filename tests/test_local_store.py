"""
Tests for the local content-addressable store.
"""
from __future__ import annotations

import io
import json

import pytest

from ocipkg.digest import Digest
from ocipkg.errors import DigestMismatch, IoError, NotFound, ProtocolError
from ocipkg.image_name import ImageName
from ocipkg.local import LocalStore
from ocipkg.media_types import OCI_IMAGE_CONFIG, OCI_IMAGE_LAYER, REF_NAME_ANNOTATION
from ocipkg.models import Descriptor, ImageManifest, to_json_bytes
from ocipkg.settings import Settings

CONFIG = b'{"architecture":"amd64","os":"linux","rootfs":{"type":"layers","diff_ids":[]}}'


def _manifest(*layers: bytes) -> bytes:
    return to_json_bytes(ImageManifest(
        config=Descriptor.for_blob(OCI_IMAGE_CONFIG, CONFIG),
        layers=[Descriptor.for_blob(OCI_IMAGE_LAYER, data) for data in layers],
    ))


def _blobs(*layers: bytes):
    return {Digest.from_bytes(data): data for data in (CONFIG, *layers)}


def _temp_files(store):
    return [p for p in store.root.rglob("*") if p.name.startswith(".ocipkg.tmp.")]


class TestBlobPool:
    """Test digest-addressed blob storage."""

    def test_put_and_read_blob(self, store):
        digest = Digest.from_bytes(b"hello")
        path = store.put_blob(digest, b"hello")
        assert path == store.root / "blobs" / "sha256" / digest.hex
        assert store.has_blob(digest)
        assert store.read_blob(str(digest)) == b"hello"

    def test_put_blob_from_stream_and_path(self, store, tmp_path):
        src = tmp_path / "src.bin"
        src.write_bytes(b"from a file")
        store.put_blob(Digest.from_bytes(b"from a file"), src)
        store.put_blob(Digest.from_bytes(b"from a stream"), io.BytesIO(b"from a stream"))
        assert store.read_blob(Digest.from_bytes(b"from a file")) == b"from a file"
        assert store.read_blob(Digest.from_bytes(b"from a stream")) == b"from a stream"

    def test_mismatched_blob_rejected(self, store):
        """Test a wrong blob is never committed and no temp file remains."""
        digest = Digest.from_bytes(b"hello")
        with pytest.raises(DigestMismatch):
            store.put_blob(digest, b"goodbye")
        assert not store.has_blob(digest)
        assert _temp_files(store) == []

    def test_size_mismatch_rejected(self, store):
        digest = Digest.from_bytes(b"hello")
        with pytest.raises(DigestMismatch, match="Size mismatch"):
            store.put_blob(digest, b"hello", size=4)
        assert not store.has_blob(digest)

    def test_existing_blob_untouched(self, store):
        """Test inserting an existing digest does not rewrite the file."""
        digest = Digest.from_bytes(b"hello")
        path = store.put_blob(digest, b"hello")
        before = path.stat()
        store.put_blob(digest, b"hello")
        after = path.stat()
        assert (before.st_ino, before.st_mtime_ns) == (after.st_ino, after.st_mtime_ns)

    def test_blob_writer_aborts_on_exception(self, store):
        """Test an interrupted write leaves neither blob nor temp file."""
        digest = Digest.from_bytes(b"complete content")
        with pytest.raises(RuntimeError):
            with store.blob_writer(digest) as writer:
                writer.write(b"complete")
                raise RuntimeError("cancelled mid-transfer")
        assert not store.has_blob(digest)
        assert _temp_files(store) == []

    def test_blob_writer_streams(self, store):
        digest = Digest.from_bytes(b"complete content")
        with store.blob_writer(digest, size=16) as writer:
            writer.write(b"complete")
            writer.write(b" content")
            assert writer.size == 16
        assert store.read_blob(digest) == b"complete content"

    def test_open_missing_blob(self, store):
        with pytest.raises(NotFound):
            store.open_blob(Digest.from_bytes(b"nothing"))

    def test_unwritable_pool_is_io_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_bytes(b"not a directory")
        store = LocalStore(blocker)
        with pytest.raises(IoError):
            store.put_blob(Digest.from_bytes(b"x"), b"x")


class TestImages:
    """Test image registration and lookup."""

    def test_insert_and_get(self, store):
        name = ImageName.parse("ghcr.io/org/app:1")
        manifest = _manifest(b"layer")
        digest = store.insert(name, manifest, _blobs(b"layer"))

        assert digest == Digest.from_bytes(manifest)
        assert store.contains(name)
        assert store.get_manifest_digest(name) == digest
        assert store.get_manifest_bytes(name) == manifest
        assert store.get(name).layers[0].digest == str(Digest.from_bytes(b"layer"))

        index = json.loads((store.image_dir(name) / "index.json").read_bytes())
        entry, = index["manifests"]
        assert entry["digest"] == str(digest)
        assert entry["annotations"][REF_NAME_ANNOTATION] == "ghcr.io/org/app:1"

    def test_insert_with_dangling_reference_rejected(self, store):
        """Test the store never registers a manifest with a missing blob."""
        name = ImageName.parse("ghcr.io/org/app:1")
        with pytest.raises(NotFound):
            store.insert(name, _manifest(b"layer"), {Digest.from_bytes(CONFIG): CONFIG})
        assert not store.contains(name)

    def test_insert_with_wrong_blob_size_rejected(self, store):
        name = ImageName.parse("ghcr.io/org/app:1")
        manifest = json.loads(_manifest(b"layer"))
        manifest["layers"][0]["size"] = 999
        with pytest.raises(ProtocolError):
            store.insert(name, json.dumps(manifest).encode(), _blobs(b"layer"))
        assert not store.contains(name)

    def test_insert_invalid_manifest(self, store):
        with pytest.raises(ProtocolError):
            store.insert(ImageName.parse("ghcr.io/org/app:1"), b"{}")

    def test_get_missing_image(self, store):
        with pytest.raises(NotFound):
            store.get(ImageName.parse("ghcr.io/org/missing:1"))

    def test_reinsert_last_writer_wins(self, store):
        """Re-pushing a tag replaces the previous manifest for that name."""
        name = ImageName.parse("ghcr.io/org/app:latest")
        store.insert(name, _manifest(b"v1"), _blobs(b"v1"))
        second = store.insert(name, _manifest(b"v2"), _blobs(b"v2"))
        assert store.get_manifest_digest(name) == second
        assert list(store.list()) == [name]
        # The old blobs stay in the pool; only explicit deletion removes them
        assert store.has_blob(Digest.from_bytes(b"v1"))

    def test_images_share_blob_pool(self, store):
        a = ImageName.parse("ghcr.io/org/a:1")
        b = ImageName.parse("ghcr.io/org/b:1")
        store.insert(a, _manifest(b"shared"), _blobs(b"shared"))
        store.insert(b, _manifest(b"shared"), _blobs(b"shared"))
        blobs = list((store.root / "blobs" / "sha256").iterdir())
        assert len(blobs) == 3  # config, layer, manifest

    def test_no_temp_files_after_insert(self, store):
        store.insert(ImageName.parse("ghcr.io/org/app:1"), _manifest(b"l"), _blobs(b"l"))
        assert _temp_files(store) == []


class TestListing:
    """Test image enumeration."""

    def test_list_empty_store(self, tmp_path):
        assert list(LocalStore(tmp_path / "nowhere").list()) == []

    def test_list_all_images(self, store):
        names = [
            ImageName.parse("ghcr.io/org/app:1"),
            ImageName.parse("ghcr.io/org/app:2"),
            ImageName.parse("localhost:5000/deep/nested/repo:x"),
            ImageName.parse(f"quay.io/pinned@{Digest.from_bytes(b'm')}"),
        ]
        for name in names:
            store.insert(name, _manifest(b"l"), _blobs(b"l"))
        listing = store.list()
        assert sorted(map(str, listing)) == sorted(map(str, names))
        # Restartable
        assert sorted(map(str, listing)) == sorted(map(str, names))

    def test_list_skips_incomplete_entries(self, store):
        name = ImageName.parse("ghcr.io/org/app:1")
        store.insert(name, _manifest(b"l"), _blobs(b"l"))
        (store.root / "ghcr.io" / "org" / "half" / "__1").mkdir(parents=True)
        assert list(store.list()) == [name]


class TestDefaults:
    def test_default_store_uses_settings(self, tmp_path):
        store = LocalStore.default(Settings(data_dir=tmp_path / "d"))
        assert store.root == tmp_path / "d"

    def test_default_store_from_env(self, tmp_path):
        assert LocalStore.default().root == tmp_path / "env-data"

    def test_image_dir_layout(self, store):
        name = ImageName.parse("localhost:5000/team/app:v1")
        assert store.image_dir(name) == store.root / "localhost__5000" / "team" / "app" / "__v1"
