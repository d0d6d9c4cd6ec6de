"""
Image transfer between the local store and OCI registries.

``get_image`` pulls the manifest first and then every blob it references;
``push_image`` uploads missing blobs first and the manifest last. Blob
transfers inside one image run concurrently, bounded by
``Settings.max_concurrency``.
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

import httpx

from ..digest import Digest
from ..errors import ProtocolError
from ..image.archive import OciArchive
from ..image_name import ImageName
from ..local import ROOTFS_DIR, LocalStore
from ..media_types import OCI_IMAGE_MANIFEST
from ..models import Descriptor, ImageManifest, parse_document
from ..settings import Settings, create_settings_from_env
from .auth import AuthChallenge, AuthState, DockerAuth, RegistryAuth
from .client import RegistryClient
from .upload import UploadSession

logger = logging.getLogger(__name__)

__all__ = [
    "get_image",
    "push_image",
    "RegistryClient",
    "RegistryAuth",
    "AuthState",
    "AuthChallenge",
    "DockerAuth",
    "UploadSession",
]

T = TypeVar("T")


async def _gather_bounded(factories: Sequence[Callable[[], Awaitable[T]]], limit: int) -> List[T]:
    """
    Run coroutine factories with at most ``limit`` in flight.

    If one fails the others are cancelled and awaited before the error
    propagates, so no transfer keeps running in the background.
    """
    semaphore = asyncio.Semaphore(limit)

    async def run(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    tasks = [asyncio.ensure_future(run(factory)) for factory in factories]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _unique(descriptors: Sequence[Descriptor]) -> List[Descriptor]:
    seen: Dict[str, Descriptor] = {}
    for descriptor in descriptors:
        seen.setdefault(descriptor.digest, descriptor)
    return list(seen.values())


def _resolve(name: Union[ImageName, str]) -> ImageName:
    return name if isinstance(name, ImageName) else ImageName.parse(name)


async def get_image(
    name: Union[ImageName, str],
    *,
    store: Optional[LocalStore] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    unpack: bool = True,
) -> Digest:
    """
    Pull ``name`` from its registry into the local store.

    The manifest is fetched first; blobs already in the pool are skipped
    and the rest are downloaded concurrently and verified. The name is
    registered only after every blob is present and, with ``unpack``, after
    the layers have been applied into a staging tree.

    Args:
        name: Image to pull
        store: Target store (defaults to ``LocalStore.default(settings)``)
        settings: Defaults to ``create_settings_from_env()``
        transport: Custom httpx transport
        unpack: Also apply the layers into the image's ``rootfs`` directory

    Returns:
        Manifest digest

    Raises:
        NotFound: If the manifest or a blob does not exist remotely
        DigestMismatch: If any downloaded content fails verification
        AuthFailure: If the registry rejects our credentials
        ProtocolError: If a layer cannot be unpacked safely
    """
    name = _resolve(name)
    settings = settings or create_settings_from_env()
    store = store or LocalStore.default(settings)

    async with RegistryClient(name, settings=settings, transport=transport) as client:
        manifest_bytes, _, digest = await client.get_manifest(name.reference)
        manifest = parse_document(ImageManifest, manifest_bytes, f"manifest for {name}")
        missing = [d for d in _unique(manifest.descriptors()) if not store.has_blob(d.digest)]
        logger.info("Pulling %s: %d of %d blobs missing locally",
                    name, len(missing), len(manifest.descriptors()))
        await _gather_bounded(
            [partial(client.fetch_blob, descriptor, store) for descriptor in missing],
            settings.max_concurrency,
        )

    if not unpack:
        store.insert(name, manifest_bytes)
        return digest
    with store.staging_dir() as staging:
        rootfs = store.build_rootfs(manifest, staging / ROOTFS_DIR)
        store.insert(name, manifest_bytes, rootfs=rootfs)
    return digest


async def push_image(
    source: Union[ImageName, str, Path],
    *,
    store: Optional[LocalStore] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Digest:
    """
    Push an image to the registry named in its image name.

    Args:
        source: An OCI-layout archive holding exactly one image, or the
            name of an image in the local store. A ``str`` that names an
            existing file is taken as an archive path.
        store: Store holding ``source`` when it is a name
        settings: Defaults to ``create_settings_from_env()``
        transport: Custom httpx transport

    Returns:
        Manifest digest

    Raises:
        NotFound: If the named image is not in the local store
        ProtocolError: If an archive does not hold exactly one image
    """
    settings = settings or create_settings_from_env()
    if isinstance(source, str) and Path(source).is_file():
        source = Path(source)

    if isinstance(source, Path):
        with tempfile.TemporaryDirectory(prefix=".ocipkg.push.") as staging:
            with OciArchive.open(source, Path(staging)) as archive:
                images = archive.images()
                if len(images) != 1:
                    raise ProtocolError(f"{source} holds {len(images)} images; push needs exactly one")
                name, descriptor = images[0]
                manifest_bytes, manifest = archive.manifest(descriptor)
                return await _push(name, manifest_bytes, manifest, archive.open_blob, settings, transport)

    name = _resolve(source)
    store = store or LocalStore.default(settings)
    manifest_bytes = store.get_manifest_bytes(name)
    manifest = parse_document(ImageManifest, manifest_bytes, f"manifest for {name}")
    return await _push(name, manifest_bytes, manifest, store.open_blob, settings, transport)


async def _push(name, manifest_bytes, manifest, open_blob, settings, transport) -> Digest:
    async with RegistryClient(name, settings=settings, transport=transport) as client:

        async def ensure_blob(descriptor: Descriptor) -> None:
            digest = descriptor.parsed_digest
            if await client.blob_exists(digest):
                logger.debug("Blob %s already present in %s", digest, name.registry)
                return
            await client.upload_blob(digest, descriptor.size, partial(open_blob, digest))

        await _gather_bounded(
            [partial(ensure_blob, descriptor) for descriptor in _unique(manifest.descriptors())],
            settings.max_concurrency,
        )
        return await client.put_manifest(
            name.reference, manifest_bytes, manifest.media_type or OCI_IMAGE_MANIFEST
        )
