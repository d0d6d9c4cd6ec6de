"""
Test OCI-layout archive building.

Validates that the builder produces valid, deterministic archives, never
writes a blob twice, and refuses to clobber existing outputs.
"""
from __future__ import annotations

import gzip
import io
import json
import os
import socket
import tarfile

import pytest
import zstandard as zstd

from ocipkg.digest import Digest
from ocipkg.errors import AlreadyExists, InvalidName, IoError
from ocipkg.image import Builder, pack_dir, pack_files
from ocipkg.image.builder import _apply_canonical_headers
from ocipkg.image_name import ImageName
from ocipkg.media_types import (
    OCI_IMAGE_LAYER,
    OCI_IMAGE_LAYER_GZIP,
    OCI_IMAGE_LAYER_ZSTD,
    REF_NAME_ANNOTATION,
)
from ocipkg.models import ContainerConfig, ImageConfiguration

from .helpers.oci_helpers import archive_members


def _index(members):
    return json.loads(members["index.json"])


def _manifest(members):
    descriptor = _index(members)["manifests"][0]
    return json.loads(members["blobs/" + descriptor["digest"].replace(":", "/")])


def _blob(members, digest):
    return members["blobs/" + digest.replace(":", "/")]


def _layer_members(layer_bytes):
    with tarfile.open(fileobj=io.BytesIO(gzip.decompress(layer_bytes))) as tar:
        return tar.getmembers()


class TestArchiveLayout:
    """Test the structure of built archives."""

    def test_layout_entries(self, tmp_path, sample_tree):
        """Test oci-layout comes first and every referenced blob is present."""
        out = pack_dir(sample_tree, tmp_path / "out", name="ghcr.io/org/app:1.0")
        assert out == (tmp_path / "out.tar").resolve()

        with tarfile.open(out) as tar:
            names = tar.getnames()
        assert names[0] == "oci-layout"
        assert names[-1] == "index.json"

        members = archive_members(out)
        assert json.loads(members["oci-layout"]) == {"imageLayoutVersion": "1.0.0"}

        index = _index(members)
        assert index["schemaVersion"] == 2
        assert len(index["manifests"]) == 1
        assert index["manifests"][0]["annotations"][REF_NAME_ANNOTATION] == "ghcr.io/org/app:1.0"

        manifest = _manifest(members)
        assert manifest["schemaVersion"] == 2
        assert len(manifest["layers"]) == 1
        for descriptor in [manifest["config"], *manifest["layers"]]:
            data = _blob(members, descriptor["digest"])
            assert len(data) == descriptor["size"]
            assert str(Digest.from_bytes(data)) == descriptor["digest"]

    def test_config_records_diff_ids(self, tmp_path, sample_tree):
        """Test rootfs.diff_ids holds the uncompressed layer digests."""
        out = pack_dir(sample_tree, tmp_path / "out")
        members = archive_members(out)
        manifest = _manifest(members)
        config = json.loads(_blob(members, manifest["config"]["digest"]))
        layer = _blob(members, manifest["layers"][0]["digest"])
        assert config["rootfs"]["type"] == "layers"
        assert config["rootfs"]["diff_ids"] == [str(Digest.from_bytes(gzip.decompress(layer)))]

    def test_layer_preserves_paths_and_modes(self, tmp_path, sample_tree):
        """Test entries are sorted, relative, ownerless and keep permission bits."""
        out = pack_dir(sample_tree, tmp_path / "out")
        members = archive_members(out)
        layer = _blob(members, _manifest(members)["layers"][0]["digest"])
        entries = {m.name.rstrip("/"): m for m in _layer_members(layer)}

        assert list(entries) == sorted(entries)
        assert set(entries) == {
            "README.txt", "bin", "bin/tool", "lib", "lib/libfoo.so",
            "lib/libfoo.so.1", "lib/nested", "lib/nested/data.json",
        }
        assert entries["bin/tool"].mode == 0o755
        assert entries["lib/libfoo.so"].mode == 0o644
        assert entries["lib/libfoo.so.1"].issym()
        assert entries["lib/libfoo.so.1"].linkname == "libfoo.so"
        for member in entries.values():
            assert (member.uid, member.gid, member.mtime) == (0, 0, 0)
            assert member.uname == member.gname == ""

    def test_default_name_uses_factory(self):
        """Test the injected name factory names an unnamed image."""
        sink = io.BytesIO()
        builder = Builder(sink, name_factory=lambda: ImageName.parse("example.com/generated:x"))
        builder.append_files([])
        builder.into_inner()
        sink.seek(0)
        with tarfile.open(fileobj=sink) as tar:
            index = json.loads(tar.extractfile("index.json").read())
        assert index["manifests"][0]["annotations"][REF_NAME_ANNOTATION] == "example.com/generated:x"

    def test_unnamed_pack_gets_random_name(self, tmp_path, sample_tree):
        out = pack_dir(sample_tree, tmp_path / "out")
        ref = _index(archive_members(out))["manifests"][0]["annotations"][REF_NAME_ANNOTATION]
        name = ImageName.parse(ref)
        assert name.registry == "registry-1.docker.io"
        assert name.tag == "latest"

    def test_custom_config(self, tmp_path, sample_tree):
        config = ImageConfiguration(
            architecture="arm64", os="linux",
            config=ContainerConfig(env=["A=1"], entrypoint=["/bin/tool"]),
        )
        out = pack_dir(sample_tree, tmp_path / "out", config=config)
        members = archive_members(out)
        stored = json.loads(_blob(members, _manifest(members)["config"]["digest"]))
        assert stored["architecture"] == "arm64"
        assert stored["config"] == {"Env": ["A=1"], "Entrypoint": ["/bin/tool"]}


class TestDeterminism:
    """Test identical inputs produce identical digests."""

    def test_identical_trees_produce_identical_archives(self, tmp_path, sample_tree):
        """Test re-packing the same tree with the same name is byte-identical."""
        a = pack_dir(sample_tree, tmp_path / "a", name="ghcr.io/org/app:1")
        os.utime(sample_tree / "README.txt", (12345, 12345))
        b = pack_dir(sample_tree, tmp_path / "b", name="ghcr.io/org/app:1")
        assert a.read_bytes() == b.read_bytes()

    def test_copied_tree_gives_same_layer_digest(self, tmp_path, sample_tree):
        """Test a separately created copy of the tree hashes the same."""
        copy = tmp_path / "copy"
        for src_root, dirs, files in os.walk(sample_tree):
            rel = os.path.relpath(src_root, sample_tree)
            (copy / rel).mkdir(parents=True, exist_ok=True)
            for f in files:
                src = os.path.join(src_root, f)
                dst = copy / rel / f
                if os.path.islink(src):
                    os.symlink(os.readlink(src), dst)
                else:
                    dst.write_bytes(open(src, "rb").read())
                    os.chmod(dst, os.stat(src).st_mode & 0o7777)
        a = archive_members(pack_dir(sample_tree, tmp_path / "a"))
        b = archive_members(pack_dir(copy, tmp_path / "b"))
        assert _manifest(a)["layers"] == _manifest(b)["layers"]

    @pytest.mark.parametrize("compression, media_type", [
        ("gzip", OCI_IMAGE_LAYER_GZIP),
        ("zstd", OCI_IMAGE_LAYER_ZSTD),
        ("none", OCI_IMAGE_LAYER),
    ])
    def test_compression_modes(self, tmp_path, sample_tree, compression, media_type):
        """Test every compression mode is deterministic and labelled correctly."""
        a = archive_members(pack_dir(sample_tree, tmp_path / "a", name="x.io/a:1", compression=compression))
        b = archive_members(pack_dir(sample_tree, tmp_path / "b", name="x.io/a:1", compression=compression))
        assert a == b
        layer = _manifest(a)["layers"][0]
        assert layer["mediaType"] == media_type
        data = _blob(a, layer["digest"])
        if compression == "zstd":
            data = zstd.ZstdDecompressor().decompressobj().decompress(data)
        elif compression == "gzip":
            data = gzip.decompress(data)
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            assert "README.txt" in tar.getnames()

    def test_unknown_compression_rejected(self):
        with pytest.raises(ValueError, match="Unsupported layer compression"):
            Builder(io.BytesIO(), compression="lz4")


class TestDeduplication:
    """Test blobs are written at most once per archive."""

    def test_identical_layers_written_once(self, tmp_path, sample_tree):
        sink = io.BytesIO()
        builder = Builder(sink)
        builder.set_name("ghcr.io/org/app:dup")
        first = builder.append_dir_all(sample_tree)
        second = builder.append_dir_all(sample_tree)
        builder.into_inner()
        assert first.digest == second.digest

        sink.seek(0)
        with tarfile.open(fileobj=sink) as tar:
            names = tar.getnames()
        layer_entry = "blobs/" + first.digest.replace(":", "/")
        assert names.count(layer_entry) == 1
        assert len(names) == len(set(names))

        manifest = _manifest(archive_members_from(sink))
        assert [layer["digest"] for layer in manifest["layers"]] == [first.digest, second.digest]

    def test_builder_cannot_finish_twice(self):
        builder = Builder(io.BytesIO())
        builder.into_inner()
        with pytest.raises(ValueError):
            builder.into_inner()


def archive_members_from(sink):
    sink.seek(0)
    with tarfile.open(fileobj=sink) as tar:
        return {m.name: tar.extractfile(m).read() for m in tar.getmembers() if m.isreg()}


class TestPackFiles:
    """Test flat packing of explicit files."""

    def test_files_packed_flat(self, tmp_path, sample_tree):
        out = pack_files(
            [sample_tree / "lib" / "libfoo.so", sample_tree / "bin" / "tool"],
            tmp_path / "artifacts.tar",
            name="ghcr.io/org/lib:1",
        )
        members = archive_members(out)
        layer = _blob(members, _manifest(members)["layers"][0]["digest"])
        entries = {m.name: m for m in _layer_members(layer)}
        assert list(entries) == ["libfoo.so", "tool"]
        assert entries["tool"].mode == 0o755

    def test_duplicate_basenames_rejected(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        (tmp_path / "a" / "x.so").write_bytes(b"1")
        (tmp_path / "b" / "x.so").write_bytes(b"2")
        with pytest.raises(AlreadyExists):
            pack_files([tmp_path / "a" / "x.so", tmp_path / "b" / "x.so"], tmp_path / "out")

    def test_missing_file_rejected(self, tmp_path):
        with pytest.raises(IoError):
            pack_files([tmp_path / "missing.so"], tmp_path / "out")
        assert not (tmp_path / "out.tar").exists()


class TestPackErrors:
    """Test pack refuses bad inputs without leaving partial output."""

    def test_existing_output_is_not_overwritten(self, tmp_path, sample_tree):
        out = tmp_path / "out.tar"
        out.write_bytes(b"precious")
        with pytest.raises(AlreadyExists):
            pack_dir(sample_tree, out)
        assert out.read_bytes() == b"precious"

    def test_suffix_forced_to_tar(self, tmp_path, sample_tree):
        (tmp_path / "out.tar").write_bytes(b"precious")
        with pytest.raises(AlreadyExists):
            pack_dir(sample_tree, tmp_path / "out.oci")

    def test_missing_input_directory(self, tmp_path):
        with pytest.raises(IoError):
            pack_dir(tmp_path / "missing", tmp_path / "out")
        assert list(tmp_path.iterdir()) == []

    def test_invalid_name(self, tmp_path, sample_tree):
        with pytest.raises(InvalidName):
            pack_dir(sample_tree, tmp_path / "out", name="Not A Name")
        assert not (tmp_path / "out.tar").exists()

    def test_no_temp_files_left_behind(self, tmp_path, sample_tree):
        out_dir = tmp_path / "outdir"
        out_dir.mkdir()
        pack_dir(sample_tree, out_dir / "app")
        assert [p.name for p in out_dir.iterdir()] == ["app.tar"]

    def test_backslash_in_file_name_rejected(self, tmp_path):
        """Test a POSIX name holding a backslash is refused rather than split."""
        src = tmp_path / "src"
        src.mkdir()
        (src / "a\\b").write_text("x")
        with pytest.raises(ValueError):
            pack_dir(src, tmp_path / "out")
        assert not (tmp_path / "out.tar").exists()


class TestSpecialEntries:
    """Test inputs that are not plain files or directories."""

    @pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="needs unix sockets")
    def test_socket_is_skipped(self, tmp_path, sample_tree):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(sample_tree / "ctl.sock"))
            out = pack_dir(sample_tree, tmp_path / "out")
        finally:
            sock.close()
        members = archive_members(out)
        names = {m.name.rstrip("/") for m in _layer_members(_blob(members, _manifest(members)["layers"][0]["digest"]))}
        assert "ctl.sock" not in names
        assert "README.txt" in names

    def test_decomposed_unicode_name_kept(self, tmp_path):
        src = tmp_path / "src"
        src.mkdir()
        decomposed = "cafe\u0301.txt"
        (src / decomposed).write_text("x")
        out = pack_dir(src, tmp_path / "out")
        members = archive_members(out)
        names = [m.name for m in _layer_members(_blob(members, _manifest(members)["layers"][0]["digest"]))]
        assert decomposed in names
        assert "caf\u00e9.txt" not in names

    def test_hard_links_share_one_body(self, tmp_path, sample_tree):
        os.link(sample_tree / "README.txt", sample_tree / "README.copy")
        out = pack_dir(sample_tree, tmp_path / "out")
        members = archive_members(out)
        entries = {m.name: m for m in _layer_members(_blob(members, _manifest(members)["layers"][0]["digest"]))}
        assert entries["README.copy"].isreg()
        assert entries["README.txt"].islnk()
        assert entries["README.txt"].linkname == "README.copy"


class TestCanonicalHeaders:
    def test_canonical_headers_zero_ownership(self):
        info = tarfile.TarInfo("file")
        info.uid, info.gid, info.uname, info.gname, info.mtime = 1000, 1000, "me", "us", 1700000000
        info.mode = 0o100755
        _apply_canonical_headers(info)
        assert (info.uid, info.gid, info.uname, info.gname, info.mtime) == (0, 0, "", "", 0)
        assert info.mode == 0o755
