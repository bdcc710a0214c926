"""
image_inspect/errors.py
───────────────────────
Failure taxonomy for resolving and probing one image.

    ImageInspectionError
    ├── InvalidImageReferenceError   unparseable image string           (fatal)
    ├── RegistryPolicyDeniedError    blocked / not allowed by policy    (fatal, never retried)
    ├── ManifestInvalidError         unknown media type, bad JSON       (fatal, empty contribution)
    ├── ImageNotFoundError           every candidate refused or 404'd   (fatal, empty contribution)
    └── RegistryUnreachableError     network / 5xx on every candidate   (transient, retried)

Only RegistryUnreachableError is transient. The controller requeues the
pod for it; everything else is absorbed into the pod's intersection as an
empty architecture set.
"""

from __future__ import annotations


class ImageInspectionError(Exception):
    """
    Base class for per-image failures.

    Attributes:
        image:  The image reference that failed.
        reason: Human-readable explanation.
    """

    transient = False

    def __init__(self, image: str, reason: str) -> None:
        self.image = image
        self.reason = reason
        super().__init__(f"{image}: {reason}")


class InvalidImageReferenceError(ImageInspectionError):
    pass


class RegistryPolicyDeniedError(ImageInspectionError):
    pass


class ManifestInvalidError(ImageInspectionError):
    pass


class ImageNotFoundError(ImageInspectionError):
    pass


class RegistryUnreachableError(ImageInspectionError):
    transient = True
