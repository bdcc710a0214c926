"""
image_inspect — which CPU architectures can run a container image.

Public API:

    RegistryAccessResolver   — image + policy + credentials → ordered candidates
    ImageArchitectureProber  — candidates → FrozenSet of architectures
    ArchitectureCache        — shared, policy-aware TTL cache for the prober
    CredentialStore          — merged pull secrets, longest-prefix lookup
    parse_image_reference()  — "quay.io/org/app:tag" → ImageReference

    ImageInspectionError and subclasses — per-image failure taxonomy
"""

from image_inspect.cache import ArchitectureCache
from image_inspect.credentials import (
    CredentialStore,
    RegistryCredentials,
    docker_config_from_secret_data,
    parse_docker_config,
)
from image_inspect.errors import (
    ImageInspectionError,
    ImageNotFoundError,
    InvalidImageReferenceError,
    ManifestInvalidError,
    RegistryPolicyDeniedError,
    RegistryUnreachableError,
)
from image_inspect.prober import ImageArchitectureProber, normalize_architecture
from image_inspect.reference import ImageReference, parse_image_reference
from image_inspect.registry_access import (
    RegistryAccessResolver,
    RegistryCandidate,
    TLSPolicy,
    policy_fingerprint,
)

__all__ = [
    "ArchitectureCache",
    "CredentialStore",
    "RegistryCredentials",
    "docker_config_from_secret_data",
    "parse_docker_config",
    "ImageInspectionError",
    "ImageNotFoundError",
    "InvalidImageReferenceError",
    "ManifestInvalidError",
    "RegistryPolicyDeniedError",
    "RegistryUnreachableError",
    "ImageArchitectureProber",
    "normalize_architecture",
    "ImageReference",
    "parse_image_reference",
    "RegistryAccessResolver",
    "RegistryCandidate",
    "TLSPolicy",
    "policy_fingerprint",
]
