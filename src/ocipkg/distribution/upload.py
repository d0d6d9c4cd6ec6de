"""
Blob upload sessions.

An ``UploadSession`` is the client-side state of one registry upload:
the current upload location and the next offset the registry expects.
Chunked uploads resume from the offset the registry confirms after a
transport failure; if the registry cannot report it, the caller restarts
the whole session.
"""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, BinaryIO, Optional

import httpx

from ..digest import Digest
from ..errors import DigestMismatch, NetworkError, ProtocolError

if TYPE_CHECKING:
    from .client import RegistryClient

logger = logging.getLogger(__name__)

__all__ = ["UploadSession"]

_RANGE_RE = re.compile(r"^(?:bytes=)?(\d+)-(\d+)$")


class UploadSession:
    """Resumable upload of one blob."""

    def __init__(self, client: RegistryClient, location: httpx.URL, digest: Digest, size: int):
        self.client = client
        self.location = location
        self.digest = digest
        self.size = size
        self.offset = 0

    def _update(self, response: httpx.Response) -> None:
        """Track the Location and Range headers of a session response."""
        location = response.headers.get("Location")
        if location:
            self.location = response.request.url.join(location)
        range_header = response.headers.get("Range")
        if range_header:
            match = _RANGE_RE.match(range_header.strip())
            if not match:
                raise ProtocolError(f"Invalid Range header in upload response: {range_header!r}")
            self.offset = int(match.group(2)) + 1

    async def put_monolithic(self, data: bytes) -> None:
        """Upload the whole blob in the closing ``PUT``."""
        await self.complete(data)

    async def upload_chunks(self, src: BinaryIO, chunk_size: int, max_resumes: int = 3) -> None:
        """
        Stream ``src`` in ``PATCH`` chunks, then close with ``PUT``.

        After a transport failure the session asks the registry for the
        confirmed offset and resumes from there, at most ``max_resumes``
        times. Chunks are never re-sent blindly.

        Raises:
            NetworkError: If the session cannot be resumed
        """
        resumes = 0
        while self.offset < self.size:
            src.seek(self.offset)
            chunk = src.read(min(chunk_size, self.size - self.offset))
            if not chunk:
                raise ProtocolError(f"Blob {self.digest} source ended at offset {self.offset} of {self.size}")
            try:
                await self.patch_chunk(chunk)
            except NetworkError:
                resumes += 1
                if resumes > max_resumes:
                    raise
                logger.warning("Upload of %s interrupted at offset %d, resuming", self.digest, self.offset)
                await self.refresh()
        await self.complete(b"")

    async def patch_chunk(self, chunk: bytes) -> None:
        start = self.offset
        end = start + len(chunk) - 1
        response = await self.client._send(
            "PATCH",
            self.location,
            headers={
                "Content-Type": "application/octet-stream",
                "Content-Range": f"{start}-{end}",
            },
            content=chunk,
        )
        self.client._raise_for_status(response, f"upload chunk {start}-{end} of {self.digest}", ok=(202,))
        expected_offset = end + 1
        self._update(response)
        if response.headers.get("Range") is None:
            self.offset = expected_offset
        elif self.offset != expected_offset:
            raise ProtocolError(
                f"Registry confirmed offset {self.offset} for {self.digest}, expected {expected_offset}"
            )

    async def refresh(self) -> None:
        """Ask the registry for the confirmed offset of this session."""
        response = await self.client._send("GET", self.location)
        self.client._raise_for_status(response, f"upload status of {self.digest}", ok=(204,))
        self.offset = 0
        self._update(response)

    async def complete(self, data: Optional[bytes]) -> None:
        url = self.location.copy_merge_params({"digest": str(self.digest)})
        response = await self.client._send(
            "PUT",
            url,
            headers={"Content-Type": "application/octet-stream"},
            content=data or b"",
        )
        self.client._raise_for_status(response, f"upload of {self.digest}", ok=(201,))
        returned = response.headers.get("Docker-Content-Digest")
        if returned and returned != str(self.digest):
            raise DigestMismatch(
                f"Registry stored blob as {returned}, expected {self.digest}",
                expected=str(self.digest),
                actual=returned,
            )
        logger.debug("Uploaded %s (%d bytes)", self.digest, self.size)
