"""
Content digests.

A ``Digest`` is the ``algorithm:hex`` address of a blob. Digests are either
parsed from text (syntax check only) or computed by streaming bytes through
a ``Digester``; content is never trusted until it has been re-hashed.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Union

from .errors import DigestMismatch, InvalidName

__all__ = ["Digest", "Digester", "HashingWriter", "SUPPORTED_ALGORITHMS", "CHUNK_SIZE"]

# Streaming I/O chunk size
CHUNK_SIZE = 1024 * 1024  # 1 MiB

SUPPORTED_ALGORITHMS = {"sha256": 64}

_DIGEST_RE = re.compile(r"^([a-z0-9]+(?:[.+_-][a-z0-9]+)*):([a-zA-Z0-9=_-]+)$")


@dataclass(frozen=True)
class Digest:
    """
    Content address of a blob.

    Invariants:
    - algorithm: one of SUPPORTED_ALGORITHMS (currently only sha256)
    - hex: lowercase hex string of the algorithm's fixed length
    """
    algorithm: str
    hex: str

    def __post_init__(self):
        expected_len = SUPPORTED_ALGORITHMS.get(self.algorithm)
        if expected_len is None:
            raise InvalidName(f"Unsupported digest algorithm: {self.algorithm}")
        if len(self.hex) != expected_len or not re.fullmatch(r"[a-f0-9]+", self.hex):
            raise InvalidName(f"Invalid {self.algorithm} digest: {self.hex}")

    @classmethod
    def parse(cls, value: str) -> Digest:
        """
        Parse ``algorithm:hex`` text.

        Only the syntax is checked; the result still has to be verified
        against the bytes it claims to address.

        Raises:
            InvalidName: If the text is not a supported digest
        """
        match = _DIGEST_RE.match(value or "")
        if not match:
            raise InvalidName(f"Invalid digest: {value!r}")
        return cls(match.group(1), match.group(2))

    @classmethod
    def from_bytes(cls, data: bytes) -> Digest:
        return cls("sha256", hashlib.sha256(data).hexdigest())

    @classmethod
    def from_stream(cls, stream: Union[BinaryIO, Iterable[bytes]]) -> Digest:
        """Hash a file-like object (read to EOF) or an iterable of chunks."""
        digester = Digester()
        if hasattr(stream, "read"):
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                digester.update(chunk)
        else:
            for chunk in stream:
                digester.update(chunk)
        return digester.digest()

    @classmethod
    def from_file(cls, path: Path) -> Digest:
        with open(path, "rb") as f:
            return cls.from_stream(f)

    def verify(self, data: bytes) -> None:
        """
        Re-hash ``data`` and compare.

        Raises:
            DigestMismatch: If the bytes do not hash to this digest
        """
        actual = Digester(self.algorithm)
        actual.update(data)
        actual.verify(self)

    @property
    def encoded(self) -> str:
        return self.hex

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


class Digester:
    """Incremental hasher that yields a ``Digest``."""

    def __init__(self, algorithm: str = "sha256"):
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise InvalidName(f"Unsupported digest algorithm: {algorithm}")
        self.algorithm = algorithm
        self._hash = hashlib.new(algorithm)
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)
        self.size += len(chunk)

    def digest(self) -> Digest:
        return Digest(self.algorithm, self._hash.hexdigest())

    def verify(self, expected: Digest) -> None:
        actual = self.digest()
        if actual != expected:
            raise DigestMismatch(
                f"Digest mismatch: expected {expected}, got {actual}",
                expected=str(expected),
                actual=str(actual),
            )


class HashingWriter:
    """
    Write-through wrapper that hashes every byte passed to the inner file.

    Lets a serializer compute a blob digest during the same pass that
    writes it.
    """

    def __init__(self, inner: BinaryIO, algorithm: str = "sha256"):
        self._inner = inner
        self._digester = Digester(algorithm)

    def write(self, data) -> int:
        chunk = bytes(data)
        self._digester.update(chunk)
        self._inner.write(chunk)
        return len(chunk)

    def flush(self) -> None:
        self._inner.flush()

    def writable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._digester.size

    @property
    def size(self) -> int:
        return self._digester.size

    def digest(self) -> Digest:
        return self._digester.digest()
