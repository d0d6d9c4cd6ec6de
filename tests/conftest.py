"""Root pytest configuration for ocipkg tests."""
from __future__ import annotations

import os

import pytest

from ocipkg.image import pack_dir
from ocipkg.local import LocalStore
from ocipkg.settings import Settings

from .fakes.fake_registry import FakeRegistry
from .helpers.oci_helpers import IMAGE_NAME, seed_registry


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Isolate tests from the user's data directory, credentials and Docker config."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("OCIPKG_DATA_DIR", str(tmp_path / "env-data"))
    for var in ("OCIPKG_REGISTRY_USERNAME", "OCIPKG_REGISTRY_PASSWORD", "OCIPKG_REGISTRY_TOKEN",
                "OCIPKG_INSECURE", "OCIPKG_HTTP_TIMEOUT", "OCIPKG_HTTP_RETRY", "OCIPKG_CHUNK_SIZE",
                "OCIPKG_MAX_CONCURRENCY", "OCIPKG_RETRY_BACKOFF", "XDG_DATA_HOME"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def settings(tmp_path):
    """Standard test settings: no backoff delay so retry tests run fast."""
    return Settings(data_dir=tmp_path / "data", http_retry=3, retry_backoff_s=0.0)


@pytest.fixture
def store(settings):
    return LocalStore(settings.data_dir)


@pytest.fixture
def registry():
    """In-memory registry answering for registry.test."""
    return FakeRegistry()


@pytest.fixture
def sample_tree(tmp_path):
    """Small directory tree with nested dirs, an executable and a symlink."""
    root = tmp_path / "tree"
    (root / "bin").mkdir(parents=True)
    (root / "lib" / "nested").mkdir(parents=True)
    (root / "README.txt").write_text("hello ocipkg\n")
    (root / "bin" / "tool").write_text("#!/bin/sh\necho tool\n")
    os.chmod(root / "bin" / "tool", 0o755)
    (root / "lib" / "libfoo.so").write_bytes(b"\x7fELF" + bytes(range(256)) * 8)
    os.chmod(root / "lib" / "libfoo.so", 0o644)
    (root / "lib" / "nested" / "data.json").write_text('{"a": 1}')
    os.symlink("libfoo.so", root / "lib" / "libfoo.so.1")
    return root


@pytest.fixture
def sample_archive(tmp_path, sample_tree):
    """OCI archive of ``sample_tree`` named ``IMAGE_NAME``."""
    (tmp_path / "archives").mkdir()
    return pack_dir(sample_tree, tmp_path / "archives" / "app", name=IMAGE_NAME)


@pytest.fixture
def published_image(registry, sample_archive):
    """
    Seed the fake registry with ``sample_archive``.

    Returns:
        (image name, manifest digest string)
    """
    return seed_registry(registry, sample_archive)
