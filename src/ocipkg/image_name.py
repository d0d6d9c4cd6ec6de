"""
Image name parsing.

Parses ``registry/repository:tag`` and ``registry/repository@digest`` into
an immutable ``ImageName`` and serializes it back to canonical text.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional, Union

from .digest import Digest
from .errors import InvalidName

__all__ = ["ImageName", "Reference", "DEFAULT_REGISTRY", "DEFAULT_TAG", "random_image_name"]

DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_TAG = "latest"

# Registry path component: lowercase alnum separated by '.', '_', '__' or runs of '-'
_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$")
_REGISTRY_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?(?::[0-9]+)?$")

# Path prefixes in the local store; components never start with these
_TAG_DIR_PREFIX = "__"
_DIGEST_DIR_PREFIX = "@"


@dataclass(frozen=True)
class Reference:
    """Either a tag or a digest; exactly one is set."""
    tag: Optional[str] = None
    digest: Optional[Digest] = None

    def __post_init__(self):
        if (self.tag is None) == (self.digest is None):
            raise InvalidName("Reference must be exactly one of tag or digest")
        if self.tag is not None and not _TAG_RE.match(self.tag):
            raise InvalidName(f"Invalid tag: {self.tag!r}")

    @classmethod
    def parse(cls, value: str) -> Reference:
        if ":" in value:
            return cls(digest=Digest.parse(value))
        return cls(tag=value)

    @property
    def is_digest(self) -> bool:
        return self.digest is not None

    def __str__(self) -> str:
        return str(self.digest) if self.digest is not None else self.tag


@dataclass(frozen=True)
class ImageName:
    """
    Structured image name.

    Invariants:
    - registry: ``host[:port]``
    - repository: '/'-joined path components matching the registry grammar
    - reference: a valid tag or a supported digest
    """
    registry: str
    repository: str
    reference: Reference

    def __post_init__(self):
        if not _REGISTRY_RE.match(self.registry):
            raise InvalidName(f"Invalid registry: {self.registry!r}")
        if not self.repository:
            raise InvalidName("Repository cannot be empty")
        for component in self.repository.split("/"):
            if not _COMPONENT_RE.match(component):
                raise InvalidName(f"Invalid repository component {component!r} in {self.repository!r}")

    @classmethod
    def parse(cls, name: str) -> ImageName:
        """
        Parse an image name.

        Supports formats:
        - "registry.example.com/foo/bar:v1"
        - "localhost:5000/foo@sha256:<hex>"
        - "foo/bar" (registry defaults to registry-1.docker.io, tag to latest)

        The first component is a registry only when it contains '.' or ':'
        or equals "localhost".

        Raises:
            InvalidName: If the name is malformed

        Examples:
            >>> ImageName.parse("registry.example.com/foo/bar:v1")
            ImageName(registry='registry.example.com', repository='foo/bar', reference=Reference(tag='v1', digest=None))
        """
        if not name or name != name.strip() or any(c.isspace() for c in name):
            raise InvalidName(f"Invalid image name: {name!r}")

        remainder = name
        digest = None
        if "@" in remainder:
            remainder, digest_text = remainder.split("@", 1)
            digest = Digest.parse(digest_text)

        registry = DEFAULT_REGISTRY
        first, sep, rest = remainder.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            registry, remainder = first, rest

        tag = None
        last_slash = remainder.rfind("/")
        colon = remainder.rfind(":")
        if colon > last_slash:
            remainder, tag = remainder[:colon], remainder[colon + 1:]

        if digest is not None:
            if tag is not None:
                raise InvalidName(f"Image name has both tag and digest: {name!r}")
            reference = Reference(digest=digest)
        else:
            reference = Reference(tag=tag if tag is not None else DEFAULT_TAG)

        return cls(registry=registry, repository=remainder, reference=reference)

    @classmethod
    def from_path(cls, path: Union[str, PurePosixPath]) -> ImageName:
        """
        Inverse of ``as_path``.

        Raises:
            InvalidName: If the path was not produced by ``as_path``
        """
        parts = PurePosixPath(path).parts
        if len(parts) < 3:
            raise InvalidName(f"Not an image path: {path}")
        registry = parts[0].replace("__", ":")
        repository = "/".join(parts[1:-1])
        leaf = parts[-1]
        if leaf.startswith(_TAG_DIR_PREFIX):
            reference = Reference(tag=leaf[len(_TAG_DIR_PREFIX):])
        elif leaf.startswith(_DIGEST_DIR_PREFIX):
            algorithm, _, hex_ = leaf[len(_DIGEST_DIR_PREFIX):].partition("_")
            reference = Reference(digest=Digest(algorithm, hex_))
        else:
            raise InvalidName(f"Not an image path: {path}")
        return cls(registry=registry, repository=repository, reference=reference)

    def as_path(self) -> PurePosixPath:
        """
        Collision-free relative path for this name.

        Hostnames never contain '_' and repository components never start
        with '_' or '@', so the encoding is injective.
        """
        if self.reference.digest is not None:
            leaf = f"{_DIGEST_DIR_PREFIX}{self.reference.digest.algorithm}_{self.reference.digest.hex}"
        else:
            leaf = f"{_TAG_DIR_PREFIX}{self.reference.tag}"
        return PurePosixPath(self.registry.replace(":", "__"), *self.repository.split("/"), leaf)

    @property
    def tag(self) -> Optional[str]:
        return self.reference.tag

    @property
    def digest(self) -> Optional[Digest]:
        return self.reference.digest

    @property
    def url(self) -> str:
        """Registry base URL (plain HTTP only for loopback registries)."""
        host = self.registry.split(":", 1)[0]
        scheme = "http" if host in ("localhost", "127.0.0.1") else "https"
        return f"{scheme}://{self.registry}"

    def with_reference(self, reference: Union[str, Reference]) -> ImageName:
        if isinstance(reference, str):
            reference = Reference.parse(reference)
        return ImageName(registry=self.registry, repository=self.repository, reference=reference)

    def __str__(self) -> str:
        sep = "@" if self.reference.is_digest else ":"
        return f"{self.registry}/{self.repository}{sep}{self.reference}"


def random_image_name() -> ImageName:
    """Default name generator: a fresh UUID4 repository tagged ``latest``."""
    return ImageName.parse(str(uuid.uuid4()))
