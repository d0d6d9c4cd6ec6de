"""
Load an OCI-layout archive into the local store.

The whole archive is verified, and every image unpacked into a staging
directory, before anything is committed: a corrupt, incomplete or hostile
archive leaves the store exactly as it was.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

from ..image_name import ImageName
from ..local import ROOTFS_DIR, LocalStore
from .archive import OciArchive

logger = logging.getLogger(__name__)

__all__ = ["load"]


def load(archive_path: Union[str, Path], store: Optional[LocalStore] = None, *,
         unpack: bool = True) -> List[ImageName]:
    """
    Verify ``archive_path`` and register its images in ``store``.

    Args:
        archive_path: OCI-layout tar archive
        store: Target store (defaults to ``LocalStore.default()``)
        unpack: Also apply the layers into each image's ``rootfs`` directory

    Returns:
        Names of the loaded images, in index order

    Raises:
        DigestMismatch: If any blob fails verification
        NotFound: If a referenced blob is missing from the archive
        ProtocolError: If the archive is not a valid OCI layout or a layer
            cannot be unpacked safely
        IoError: If the archive cannot be read or the store written
    """
    if store is None:
        store = LocalStore.default()

    with store.staging_dir() as staging, OciArchive.open(archive_path, staging) as archive:
        plan = []
        for i, (name, descriptor) in enumerate(archive.images()):
            manifest_bytes, manifest = archive.manifest(descriptor)
            blobs = {blob.digest: archive.blob_path(blob.digest) for blob in manifest.descriptors()}
            rootfs = None
            if unpack:
                rootfs = store.build_rootfs(manifest, staging / f"{ROOTFS_DIR}.{i}", archive.open_blob)
            plan.append((name, manifest_bytes, blobs, rootfs))

        # Every image is verified and unpacked; only now touch the store
        loaded = []
        for name, manifest_bytes, blobs, rootfs in plan:
            store.insert(name, manifest_bytes, blobs, rootfs=rootfs)
            loaded.append(name)
            logger.info("Loaded %s from %s", name, archive_path)
    return loaded
