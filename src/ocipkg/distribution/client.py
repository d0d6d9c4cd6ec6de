"""
Registry HTTP Client for the OCI Distribution API.

Async client over ``httpx.AsyncClient`` implementing the v2 endpoints used to
pull and push images: manifests by tag or digest, blob existence checks,
streamed blob downloads with digest verification, and monolithic or chunked
blob uploads. Auth challenges are answered through ``RegistryAuth``;
transient transport failures on idempotent requests are retried with
bounded exponential backoff.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Optional, Tuple, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .. import __version__
from ..digest import CHUNK_SIZE, Digest
from ..errors import AuthFailure, DigestMismatch, NetworkError, NotFound, ProtocolError
from ..image_name import ImageName, Reference
from ..local import LocalStore
from ..media_types import ACCEPTED_MANIFEST_TYPES
from ..models import Descriptor
from ..settings import Settings
from .auth import DockerAuth, RegistryAuth
from .upload import UploadSession

logger = logging.getLogger(__name__)

__all__ = ["RegistryClient"]

# Longest backoff between retries, in seconds
_MAX_BACKOFF_S = 10.0


class RegistryClient:
    """
    HTTP client for one repository on one registry.

    Use as an async context manager::

        async with RegistryClient(name, settings=settings) as client:
            data, media_type, digest = await client.get_manifest(name.reference)
    """

    def __init__(self, name: ImageName, *, settings: Settings,
                 auth: Optional[RegistryAuth] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            name: Image name; its registry and repository are used
            settings: Timeouts, retry policy, chunk size and credentials
            auth: Auth state (defaults to settings credentials, then Docker config)
            transport: Custom httpx transport (e.g. ``httpx.MockTransport`` in tests)
        """
        self.name = name
        self.repository = name.repository
        self.settings = settings

        if settings.insecure:
            self.base_url = f"http://{name.registry}"
        else:
            self.base_url = name.url

        if auth is None:
            credentials = settings.credentials or DockerAuth().get_credentials(name.registry)
            auth = RegistryAuth(name.registry, credentials=credentials, token=settings.registry_token)
        self.auth = auth

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(settings.http_timeout_s, connect=min(settings.http_timeout_s, 10.0)),
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": f"ocipkg/{__version__}"},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    # Manifests

    async def get_manifest(self, reference: Union[Reference, str]) -> Tuple[bytes, str, Digest]:
        """
        Fetch a manifest by tag or digest.

        Digest-addressed manifests are verified against the requested
        digest. Tag-addressed manifests are hashed locally and checked
        against ``Docker-Content-Digest`` when the registry sends it.

        Returns:
            (raw manifest bytes, media type, manifest digest)

        Raises:
            NotFound: If the manifest does not exist
            DigestMismatch: If the content does not match its digest
            ProtocolError: If the media type is not an image manifest
        """
        if isinstance(reference, str):
            reference = Reference.parse(reference)
        what = f"manifest {self._ref_text(reference)}"
        response = await self._request_idempotent(
            "GET",
            f"/v2/{self.repository}/manifests/{reference}",
            headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)},
        )
        self._raise_for_status(response, what)

        data = response.content
        actual = Digest.from_bytes(data)
        if reference.digest is not None and actual != reference.digest:
            raise DigestMismatch(
                f"{what} does not match its digest: got {actual}",
                expected=str(reference.digest),
                actual=str(actual),
            )
        header_digest = response.headers.get("Docker-Content-Digest")
        if header_digest and header_digest != str(actual):
            raise DigestMismatch(
                f"{what}: registry reports {header_digest}, content hashes to {actual}",
                expected=header_digest,
                actual=str(actual),
            )

        media_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
        if media_type not in ACCEPTED_MANIFEST_TYPES:
            raise ProtocolError(f"Unsupported manifest media type {media_type!r} for {what}")
        return data, media_type, actual

    async def put_manifest(self, reference: Union[Reference, str], payload: bytes, media_type: str) -> Digest:
        """
        Upload a manifest under ``reference``.

        Every blob the manifest references must already exist remotely.

        Raises:
            DigestMismatch: If the registry's digest differs from the local one
        """
        if isinstance(reference, str):
            reference = Reference.parse(reference)
        what = f"manifest {self._ref_text(reference)}"
        response = await self._send(
            "PUT",
            f"/v2/{self.repository}/manifests/{reference}",
            headers={"Content-Type": media_type},
            content=payload,
        )
        self._raise_for_status(response, what, ok=(201,))
        digest = Digest.from_bytes(payload)
        returned = response.headers.get("Docker-Content-Digest")
        if returned and returned != str(digest):
            raise DigestMismatch(
                f"{what}: registry stored {returned}, expected {digest}",
                expected=str(digest),
                actual=returned,
            )
        logger.info("Pushed %s (%s)", self._ref_text(reference), digest)
        return digest

    # Blobs

    async def blob_exists(self, digest: Digest) -> bool:
        response = await self._request_idempotent("HEAD", f"/v2/{self.repository}/blobs/{digest}")
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"blob {digest}")
        return True

    async def fetch_blob(self, descriptor: Descriptor, store: LocalStore) -> Path:
        """
        Stream a blob into the local store, verifying its digest and size.

        A partial or mismatching download is discarded. Transport failures
        restart the download from scratch, up to the retry limit.

        Raises:
            DigestMismatch: If the bytes do not match the descriptor
            NotFound: If the blob does not exist
        """
        digest = descriptor.parsed_digest
        url = f"/v2/{self.repository}/blobs/{digest}"
        async for attempt in self._retrying():
            with attempt:
                response = await self._send("GET", url, stream=True)
                try:
                    if response.status_code != 200:
                        await response.aread()
                        self._raise_for_status(response, f"blob {digest}")
                    with store.blob_writer(digest, descriptor.size) as writer:
                        try:
                            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                                writer.write(chunk)
                        except httpx.TransportError as e:
                            raise NetworkError(f"Download of {digest} interrupted: {e}") from e
                finally:
                    await response.aclose()
        logger.debug("Fetched %s (%d bytes)", digest, descriptor.size)
        return store.blob_path(digest)

    async def start_upload(self, digest: Digest, size: int) -> UploadSession:
        """Open an upload session (``POST /v2/<name>/blobs/uploads/``)."""
        response = await self._send("POST", f"/v2/{self.repository}/blobs/uploads/")
        self._raise_for_status(response, f"upload session for {digest}", ok=(202,))
        location = response.headers.get("Location")
        if not location:
            raise ProtocolError(f"Registry did not return an upload location for {digest}")
        return UploadSession(self, response.request.url.join(location), digest, size)

    async def upload_blob(self, digest: Digest, size: int, opener: Callable[[], BinaryIO]) -> None:
        """
        Upload one blob.

        Blobs up to ``settings.chunk_size`` go in a single ``PUT``; larger
        ones in ``PATCH`` chunks. A transport failure the session cannot
        resume from restarts the whole session, up to the retry limit.
        """
        async for attempt in self._retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Restarting upload session for %s (attempt %d/%d)",
                                   digest, attempt.retry_state.attempt_number, self.settings.http_retry)
                session = await self.start_upload(digest, size)
                with opener() as src:
                    if size <= self.settings.chunk_size:
                        await session.put_monolithic(src.read())
                    else:
                        await session.upload_chunks(src, self.settings.chunk_size)

    # Transport

    async def _send(self, method: str, url: Union[str, httpx.URL], *,
                    headers: Optional[dict] = None,
                    content: Optional[bytes] = None,
                    stream: bool = False) -> httpx.Response:
        """
        Send one request, answering a single ``401`` challenge.

        The original request is re-sent exactly once with credentials. A
        second ``401`` is an ``AuthFailure``.
        """
        response = await self._transmit(method, url, headers, content, stream)
        if response.status_code != 401:
            return response

        await response.aclose()
        await self.auth.handle_challenge(self.client, response)
        response = await self._transmit(method, url, headers, content, stream)
        if response.status_code == 401:
            await response.aclose()
            raise AuthFailure(f"{method} {url} on {self.name.registry} still unauthorized after authentication")
        return response

    async def _transmit(self, method, url, headers, content, stream) -> httpx.Response:
        request = self.client.build_request(method, url, headers=headers, content=content)
        self.auth.apply(request.headers)
        try:
            return await self.client.send(request, stream=stream)
        except httpx.TransportError as e:
            raise NetworkError(f"Network error on {method} {request.url}: {e}") from e

    async def _request_idempotent(self, method: str, url: str, *, headers: Optional[dict] = None) -> httpx.Response:
        async for attempt in self._retrying():
            with attempt:
                response = await self._send(method, url, headers=headers)
        return response

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.settings.http_retry),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_s, max=_MAX_BACKOFF_S),
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        )

    def _raise_for_status(self, response: httpx.Response, what: str, ok: Iterable[int] = (200,)) -> None:
        """
        Map a response status onto the error taxonomy.

        404 is ``NotFound``, 401/403 ``AuthFailure``, anything else outside
        ``ok`` a terminal ``ProtocolError``.
        """
        status = response.status_code
        if status in ok:
            return
        context = f"{what} in {self.name.registry}/{self.repository}"
        if status == 404:
            raise NotFound(f"Not found: {context}")
        if status in (401, 403):
            raise AuthFailure(f"Access denied ({status}) for {context}")
        raise ProtocolError(f"Registry error {status} for {context}: {_error_detail(response)}", status)

    def _ref_text(self, reference: Reference) -> str:
        sep = "@" if reference.is_digest else ":"
        return f"{self.name.registry}/{self.repository}{sep}{reference}"


def _error_detail(response: httpx.Response) -> str:
    """First registry error message from the body, if any."""
    try:
        errors = response.json().get("errors") or []
    except (ValueError, AttributeError, httpx.ResponseNotRead):
        return response.reason_phrase
    if errors and isinstance(errors[0], dict):
        return f"{errors[0].get('code', '')} {errors[0].get('message', '')}".strip()
    return response.reason_phrase
