"""
image_inspect/reference.py
──────────────────────────
Image reference parsing: "quay.io/org/app:1.2" → registry, repository, tag.

Grammar (distribution reference, simplified):

    [registry/]path[:tag][@digest]

  • The first path component is a registry if it contains "." or ":" or
    is "localhost". Otherwise the registry is docker.io.
  • docker.io single-component paths live under "library/".
  • No tag and no digest means tag "latest".
  • docker.io is served from registry-1.docker.io.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Optional

from image_inspect.errors import InvalidImageReferenceError

DEFAULT_REGISTRY = "docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
DEFAULT_TAG = "latest"

_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}
_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def name(self) -> str:
        """registry/repository, the form mirror rules and credentials match against."""
        return f"{self.registry}/{self.repository}"

    @property
    def reference(self) -> str:
        """What goes after /manifests/ in the registry API: digest wins over tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def is_digest(self) -> bool:
        return self.digest is not None

    @property
    def api_host(self) -> str:
        if self.registry in _DOCKER_HUB_ALIASES:
            return DOCKER_HUB_API_HOST
        return self.registry

    def with_name(self, name: str) -> "ImageReference":
        """Same tag/digest under a different registry/repository (mirror rewrite)."""
        registry, _, repository = name.partition("/")
        if not repository:
            raise InvalidImageReferenceError(name, "mirror location has no repository path")
        return replace(self, registry=registry, repository=repository)

    def __str__(self) -> str:
        out = self.name
        if self.tag:
            out += f":{self.tag}"
        if self.digest:
            out += f"@{self.digest}"
        return out


def parse_image_reference(image: str) -> ImageReference:
    """
    Parse an image string as found in a container spec.

    Raises:
        InvalidImageReferenceError: for empty strings, upper-case paths,
            malformed tags or digests.
    """
    raw = (image or "").strip()
    if not raw:
        raise InvalidImageReferenceError(image, "empty image reference")

    remainder, digest = raw, None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not _DIGEST.match(digest):
            raise InvalidImageReferenceError(image, f"invalid digest {digest!r}")

    tag = None
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1:]
        if not _TAG.match(tag):
            raise InvalidImageReferenceError(image, f"invalid tag {tag!r}")

    first, sep, rest = remainder.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, path = first, rest
    else:
        registry, path = DEFAULT_REGISTRY, remainder

    if registry in _DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if "/" not in path:
            path = f"library/{path}"

    if not path or not all(_PATH_COMPONENT.match(c) for c in path.split("/")):
        raise InvalidImageReferenceError(image, f"invalid repository path {path!r}")

    if tag is None and digest is None:
        tag = DEFAULT_TAG
    return ImageReference(registry=registry, repository=path, tag=tag, digest=digest)


def registry_host(name: str) -> str:
    """The registry part of a registry/path scope such as "quay.io/org"."""
    host = name.split("/", 1)[0]
    return DEFAULT_REGISTRY if host in _DOCKER_HUB_ALIASES else host
