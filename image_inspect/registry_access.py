"""
image_inspect/registry_access.py
─────────────────────────────────
RegistryAccessResolver: which endpoints to ask about an image, with which
credentials and which TLS settings.

What it does
─────────────
resolve(image, credentials) returns an ordered list of RegistryCandidate.
No network I/O happens here; the prober walks the list.

  1. Mirror rewrite
     Digest rules apply to digest references, tag rules to tag references.
     A rule matches when its source equals the image name or is a path
     prefix of it (at a "/" boundary). Matching rules are applied most
     specific source first, then in declaration order; their mirrors
     become candidates in declared order.
     If any matching rule says NeverContactSource the source registry is
     not a candidate at all. Otherwise it is appended last.

  2. Trust policy
     • source in blocked_registries          → RegistryPolicyDeniedError
     • allowed_registries non-empty and the
       source is not listed                  → RegistryPolicyDeniedError
     • a mirror that is blocked / not allowed → dropped
     • nothing left to try                   → RegistryPolicyDeniedError
     • host in insecure_registries           → TLSPolicy.SKIP_VERIFY
     • host with an additional trusted CA    → TLSPolicy.CUSTOM_CA

  3. Credentials
     Looked up per candidate by the candidate's own registry/repository,
     so a mirror uses the mirror's pull secret, not the source's.

Registry list entries may be a host ("quay.io"), a host:port, a
host/path scope ("quay.io/org") or a wildcard host ("*.example.com").
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from image_inspect.credentials import CredentialStore, RegistryCredentials
from image_inspect.errors import RegistryPolicyDeniedError
from image_inspect.reference import ImageReference, parse_image_reference, registry_host
from podplacement.shared.models import (
    ImageMirrorRule,
    ImageRegistryPolicy,
    MirrorKind,
    MirrorSourcePolicy,
)

logger = logging.getLogger(__name__)


class TLSPolicy(str, Enum):
    VERIFY = "verify"
    SKIP_VERIFY = "skip-verify"
    CUSTOM_CA = "custom-ca"


@dataclass(frozen=True)
class RegistryCandidate:
    """
    One place to fetch an image manifest from.

    Fields:
        reference   → the (possibly mirror-rewritten) image reference.
        source      → the reference as written in the pod spec.
        credentials → pull credentials for `reference`, if any.
        tls_policy  → how to treat the endpoint's certificate.
        ca_bundle   → PEM to trust when tls_policy is CUSTOM_CA.
        is_mirror   → False only for the source registry itself.
    """
    reference: ImageReference
    source: ImageReference
    credentials: Optional[RegistryCredentials] = None
    tls_policy: TLSPolicy = TLSPolicy.VERIFY
    ca_bundle: Optional[str] = None
    is_mirror: bool = False

    @property
    def endpoint(self) -> str:
        return self.reference.api_host

    def describe(self) -> str:
        kind = "mirror" if self.is_mirror else "source"
        return f"{self.reference} ({kind}, tls={self.tls_policy.value})"


def policy_fingerprint(candidates: Iterable[RegistryCandidate]) -> str:
    """
    Stable digest of everything in a candidate list that changes the answer:
    endpoints, order, TLS policy and CA material. Credentials are left out;
    they decide whether we get an answer, not what it is.
    """
    h = hashlib.sha256()
    for c in candidates:
        h.update(str(c.reference).encode())
        h.update(c.tls_policy.value.encode())
        h.update((c.ca_bundle or "").encode())
        h.update(b"\x00")
    return h.hexdigest()[:16]


def scope_matches(entry: str, name: str) -> bool:
    """
    True if a registry-list entry covers `name` (registry/repository).

    "quay.io" covers "quay.io/x/y"; "quay.io/x" covers "quay.io/x/y" but
    not "quay.io/xy"; "*.example.com" covers "a.example.com/x".
    """
    entry = entry.strip().rstrip("/")
    if not entry:
        return False
    if entry.startswith("*."):
        host = registry_host(name)
        return host.endswith(entry[1:])
    if "/" not in entry:
        return registry_host(name) == registry_host(entry)
    return name == entry or name.startswith(entry + "/")


def _rule_matches(rule: ImageMirrorRule, ref: ImageReference) -> bool:
    if rule.kind == MirrorKind.DIGEST and not ref.is_digest:
        return False
    if rule.kind == MirrorKind.TAG and ref.is_digest:
        return False
    source = rule.source.rstrip("/")
    return ref.name == source or ref.name.startswith(source + "/")


class RegistryAccessResolver:
    """
    Pure candidate resolution against one policy snapshot.

    Build a new resolver for every resolution with the policy freshly read
    from the cluster; it holds no other state.
    """

    def __init__(self, policy: Optional[ImageRegistryPolicy] = None) -> None:
        self._policy = policy or ImageRegistryPolicy()

    @property
    def policy(self) -> ImageRegistryPolicy:
        return self._policy

    def resolve(
        self,
        image: str,
        credentials: Optional[CredentialStore] = None,
    ) -> List[RegistryCandidate]:
        """
        Ordered candidates for `image`.

        Raises:
            InvalidImageReferenceError: if `image` does not parse.
            RegistryPolicyDeniedError:  if policy forbids every candidate.
        """
        source = parse_image_reference(image)
        credentials = credentials or CredentialStore()
        self._check_source_allowed(image, source)

        mirrors, contact_source = self._mirror_references(source)
        candidates: List[RegistryCandidate] = []
        seen = set()
        for ref in mirrors:
            if str(ref) in seen:
                continue
            seen.add(str(ref))
            if not self._is_permitted(ref.name):
                logger.debug("Dropping mirror %s for %s: not permitted by policy", ref, image)
                continue
            candidates.append(self._candidate(ref, source, credentials, is_mirror=True))
        if contact_source and str(source) not in seen:
            candidates.append(self._candidate(source, source, credentials, is_mirror=False))

        if not candidates:
            raise RegistryPolicyDeniedError(
                image,
                "no permitted registry to contact: mirrors are blocked or not allowed "
                "and the source registry may not be contacted",
            )
        logger.debug(
            "Resolved %s to %d candidate(s): %s",
            image, len(candidates), ", ".join(c.describe() for c in candidates),
        )
        return candidates

    # ── Policy helpers ────────────────────────────────────────────────────────

    def _check_source_allowed(self, image: str, ref: ImageReference) -> None:
        for entry in self._policy.blocked_registries:
            if scope_matches(entry, ref.name):
                raise RegistryPolicyDeniedError(
                    image, f"registry {entry!r} is in the blocked registries list"
                )
        allowed = self._policy.allowed_registries
        if allowed and not any(scope_matches(entry, ref.name) for entry in allowed):
            raise RegistryPolicyDeniedError(
                image, f"registry {ref.registry!r} is not in the allowed registries list"
            )

    def _is_permitted(self, name: str) -> bool:
        if any(scope_matches(e, name) for e in self._policy.blocked_registries):
            return False
        allowed = self._policy.allowed_registries
        return not allowed or any(scope_matches(e, name) for e in allowed)

    def _mirror_references(self, source: ImageReference) -> Tuple[List[ImageReference], bool]:
        matching = [
            (i, rule) for i, rule in enumerate(self._policy.mirror_rules)
            if _rule_matches(rule, source)
        ]
        # most specific source first, declaration order breaks ties
        matching.sort(key=lambda pair: (-len(pair[1].source.rstrip("/")), pair[0]))

        refs: List[ImageReference] = []
        contact_source = True
        for _, rule in matching:
            if rule.mirror_source_policy == MirrorSourcePolicy.NEVER_CONTACT_SOURCE:
                contact_source = False
            suffix = source.name[len(rule.source.rstrip("/")):]
            for mirror in rule.mirrors:
                refs.append(source.with_name(mirror.rstrip("/") + suffix))
        return refs, contact_source

    def _candidate(
        self,
        ref: ImageReference,
        source: ImageReference,
        credentials: CredentialStore,
        is_mirror: bool,
    ) -> RegistryCandidate:
        tls_policy, ca_bundle = self._tls_for(ref.registry)
        return RegistryCandidate(
            reference=ref,
            source=source,
            credentials=credentials.lookup(ref.name),
            tls_policy=tls_policy,
            ca_bundle=ca_bundle,
            is_mirror=is_mirror,
        )

    def _tls_for(self, registry: str) -> Tuple[TLSPolicy, Optional[str]]:
        if any(scope_matches(e, registry) for e in self._policy.insecure_registries):
            return TLSPolicy.SKIP_VERIFY, None
        cas = self._policy.additional_trusted_cas
        # configmap keys spell host:port as host..port
        for key in (registry, registry.replace(":", "..")):
            if key in cas:
                return TLSPolicy.CUSTOM_CA, cas[key]
        return TLSPolicy.VERIFY, None
