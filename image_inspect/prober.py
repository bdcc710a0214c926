"""
image_inspect/prober.py
───────────────────────
ImageArchitectureProber: ask registries which architectures an image supports.

How probe() works
──────────────────
1. Walk the ordered candidate list from RegistryAccessResolver, at most
   max_candidates entries, until one endpoint returns a manifest.

2. Per candidate, a failure is classified:
     connection error, timeout, HTTP 429 / 5xx   → transient, try next
     HTTP 401 / 403 / 404, TLS trust failure     → permanent, try next
     unknown media type, undecodable manifest    → ManifestInvalidError,
                                                   stop (fatal for the image)

3. On a 200, the media type decides:
     OCI index / Docker manifest list → union of children's
                                        platform.architecture
     OCI / Docker v2 image manifest   → architecture of the config blob
     Docker schema 1                  → top-level architecture

4. All candidates failed:
     any transient failure → RegistryUnreachableError (the pod is retried)
     otherwise             → ImageNotFoundError

An index whose children carry no usable architecture yields an empty set,
not an error; the caller counts it as "supports nothing".

Authentication
───────────────
Registry v2 token flow: a 401 with `WWW-Authenticate: Bearer realm=...`
triggers one token request (basic-authenticated with the candidate's
credentials when present); `Basic` challenges are answered directly.
"""

from __future__ import annotations

import hashlib
import logging
import re
import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import requests

from image_inspect.cache import ArchitectureCache
from image_inspect.errors import (
    ImageNotFoundError,
    ManifestInvalidError,
    RegistryUnreachableError,
)
from image_inspect.registry_access import RegistryCandidate, TLSPolicy, policy_fingerprint
from podplacement.shared.log_config import TRACE, TRACE_ALL
from podplacement.shared.settings import DEFAULT_MAX_CANDIDATES, DEFAULT_REGISTRY_TIMEOUT_S

logger = logging.getLogger(__name__)

# ── Media types ───────────────────────────────────────────────────────────────

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_MANIFEST_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"

INDEX_MEDIA_TYPES = frozenset({OCI_INDEX, DOCKER_MANIFEST_LIST})
IMAGE_MEDIA_TYPES = frozenset({OCI_MANIFEST, DOCKER_MANIFEST_V2})
SCHEMA1_MEDIA_TYPES = frozenset({DOCKER_MANIFEST_V1, DOCKER_MANIFEST_V1_SIGNED})

MANIFEST_ACCEPT = ", ".join(
    [OCI_INDEX, DOCKER_MANIFEST_LIST, OCI_MANIFEST, DOCKER_MANIFEST_V2, DOCKER_MANIFEST_V1_SIGNED]
)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "x86-64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64/v8": "arm64",
    "ppc64el": "ppc64le",
    "i386": "386",
}

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

# PEM content hash → temp file path; requests wants a path for custom CAs
_ca_bundle_paths: Dict[str, str] = {}
_ca_bundle_lock = threading.Lock()


def normalize_architecture(raw: Optional[str]) -> Optional[str]:
    """Registry spelling → node-label spelling. None for blank / "unknown"."""
    if not raw:
        return None
    value = raw.strip().lower()
    if not value or value == "unknown":
        return None
    return _ARCH_ALIASES.get(value, value)


class _CandidateFailure(Exception):
    def __init__(self, reason: str, transient: bool) -> None:
        self.reason = reason
        self.transient = transient
        super().__init__(reason)


@dataclass
class _AuthState:
    token: Optional[str] = None
    basic: Optional[Tuple[str, str]] = None
    challenged: bool = False


class ImageArchitectureProber:
    """
    Stateless apart from the optional shared cache; safe to share between
    worker threads as long as the session is (requests.Session is, for GETs).

    Args:
        session:        HTTP session. A new requests.Session by default.
        timeout_s:      Per-request timeout.
        max_candidates: Upper bound on endpoints tried per image.
        cache:          Optional ArchitectureCache shared across probes.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout_s: float = DEFAULT_REGISTRY_TIMEOUT_S,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        cache: Optional[ArchitectureCache] = None,
    ) -> None:
        self._session = session or requests.Session()
        self._timeout_s = timeout_s
        self._max_candidates = max_candidates
        self._cache = cache

    # ── Public API ─────────────────────────────────────────────────────────────

    def probe(self, candidates: Sequence[RegistryCandidate]) -> FrozenSet[str]:
        """
        Supported architectures of the image the candidates point at.

        Raises:
            ValueError:               empty candidate list.
            ManifestInvalidError:     an endpoint returned an unusable manifest.
            RegistryUnreachableError: no endpoint answered and at least one
                                      failure was transient.
            ImageNotFoundError:       no endpoint answered, all permanently.
        """
        if not candidates:
            raise ValueError("probe() needs at least one registry candidate")
        image = str(candidates[0].source)
        fingerprint = policy_fingerprint(candidates)

        if self._cache is not None:
            hit = self._cache.get(image, fingerprint)
            if hit is not None:
                logger.log(TRACE, "Cache hit for %s via %s: %s", image, hit[0], sorted(hit[1]))
                return hit[1]

        transient: List[str] = []
        permanent: List[str] = []
        for candidate in candidates[: self._max_candidates]:
            try:
                architectures = self._probe_candidate(candidate)
            except _CandidateFailure as exc:
                (transient if exc.transient else permanent).append(
                    f"{candidate.describe()}: {exc.reason}"
                )
                logger.debug(
                    "Candidate %s failed for %s (%s): %s",
                    candidate.describe(), image,
                    "transient" if exc.transient else "permanent", exc.reason,
                )
                continue
            logger.log(
                TRACE, "Image %s supports %s (via %s)",
                image, sorted(architectures), candidate.describe(),
            )
            if self._cache is not None:
                self._cache.put(image, candidate.endpoint, fingerprint, architectures)
            return architectures

        skipped = len(candidates) - self._max_candidates
        if skipped > 0:
            permanent.append(f"{skipped} candidate(s) not tried: max_candidates={self._max_candidates}")
        if transient:
            raise RegistryUnreachableError(image, "; ".join(transient + permanent))
        raise ImageNotFoundError(image, "; ".join(permanent))

    # ── Per-candidate protocol ────────────────────────────────────────────────

    def _probe_candidate(self, candidate: RegistryCandidate) -> FrozenSet[str]:
        ref = candidate.reference
        auth = _AuthState(basic=None)
        response = self._get(
            candidate, f"/v2/{ref.repository}/manifests/{ref.reference}", MANIFEST_ACCEPT, auth
        )
        body = self._json_body(candidate, response, "manifest")
        media_type = body.get("mediaType") or _content_type(response)

        if media_type in INDEX_MEDIA_TYPES or (not media_type and "manifests" in body):
            return self._architectures_from_index(candidate, body)
        if body.get("schemaVersion") == 1 or media_type in SCHEMA1_MEDIA_TYPES:
            return self._single_architecture(candidate, body.get("architecture"), "schema 1 manifest")
        if media_type in IMAGE_MEDIA_TYPES or (not media_type and "config" in body):
            return self._architecture_from_config(candidate, body, auth)
        raise ManifestInvalidError(
            str(candidate.source), f"unsupported manifest media type {media_type!r}"
        )

    def _architectures_from_index(self, candidate: RegistryCandidate, body: Dict[str, Any]) -> FrozenSet[str]:
        manifests = body.get("manifests")
        if not isinstance(manifests, list):
            raise ManifestInvalidError(str(candidate.source), "image index has no manifests list")
        architectures = set()
        for entry in manifests:
            platform = entry.get("platform") if isinstance(entry, dict) else None
            arch = normalize_architecture((platform or {}).get("architecture"))
            if arch is not None:
                architectures.add(arch)
        if not architectures:
            logger.warning(
                "Image index for %s lists no usable architecture; treating as supporting none",
                candidate.source,
            )
        return frozenset(architectures)

    def _architecture_from_config(
        self, candidate: RegistryCandidate, body: Dict[str, Any], auth: _AuthState
    ) -> FrozenSet[str]:
        config = body.get("config")
        digest = config.get("digest") if isinstance(config, dict) else None
        if not digest:
            raise ManifestInvalidError(str(candidate.source), "image manifest has no config digest")
        response = self._get(
            candidate, f"/v2/{candidate.reference.repository}/blobs/{digest}",
            config.get("mediaType") or "*/*", auth,
        )
        blob = self._json_body(candidate, response, "config blob")
        return self._single_architecture(candidate, blob.get("architecture"), "image config")

    def _single_architecture(self, candidate: RegistryCandidate, raw: Any, what: str) -> FrozenSet[str]:
        arch = normalize_architecture(raw if isinstance(raw, str) else None)
        if arch is None:
            raise ManifestInvalidError(str(candidate.source), f"{what} has no architecture")
        return frozenset({arch})

    # ── HTTP ──────────────────────────────────────────────────────────────────

    def _get(
        self, candidate: RegistryCandidate, path: str, accept: str, auth: _AuthState
    ) -> requests.Response:
        response = self._request_any_scheme(candidate, path, accept, auth)
        if response.status_code == 401 and not auth.challenged:
            auth.challenged = True
            if self._answer_challenge(candidate, response, auth):
                response = self._request_any_scheme(candidate, path, accept, auth)

        status = response.status_code
        if status == 200:
            return response
        if status == 429 or status >= 500:
            raise _CandidateFailure(f"HTTP {status} from registry", transient=True)
        if status in (401, 403):
            raise _CandidateFailure(f"HTTP {status}: access denied", transient=False)
        if status == 404:
            raise _CandidateFailure("HTTP 404: not found", transient=False)
        raise _CandidateFailure(f"unexpected HTTP {status}", transient=False)

    def _request_any_scheme(
        self, candidate: RegistryCandidate, path: str, accept: str, auth: _AuthState
    ) -> requests.Response:
        schemes = ["https", "http"] if candidate.tls_policy == TLSPolicy.SKIP_VERIFY else ["https"]
        for index, scheme in enumerate(schemes):
            last = index == len(schemes) - 1
            url = f"{scheme}://{candidate.endpoint}{path}"
            headers = {"Accept": accept}
            if auth.token:
                headers["Authorization"] = f"Bearer {auth.token}"
            logger.log(TRACE_ALL, "GET %s", url)
            try:
                return self._session.get(
                    url,
                    headers=headers,
                    auth=auth.basic,
                    timeout=self._timeout_s,
                    verify=self._verify(candidate),
                )
            except requests.exceptions.SSLError as exc:
                if last:
                    raise _CandidateFailure(f"TLS verification failed: {exc}", transient=False) from exc
                logger.debug("GET %s: TLS verification failed (%s); trying plain http", url, exc)
            except requests.exceptions.RequestException as exc:
                if last:
                    raise _CandidateFailure(f"request failed: {exc}", transient=True) from exc
                logger.debug("GET %s failed (%s); trying plain http", url, exc)
        raise _CandidateFailure("no URL scheme to try", transient=False)

    def _answer_challenge(
        self, candidate: RegistryCandidate, response: requests.Response, auth: _AuthState
    ) -> bool:
        challenge = response.headers.get("WWW-Authenticate", "")
        scheme = challenge.split(" ", 1)[0].lower()
        creds = candidate.credentials
        if scheme == "basic":
            if creds is None or creds.basic_auth is None:
                return False
            auth.basic = creds.basic_auth
            return True
        if scheme == "bearer":
            auth.token = self._fetch_token(candidate, dict(_CHALLENGE_PARAM.findall(challenge)))
            return auth.token is not None
        return False

    def _fetch_token(self, candidate: RegistryCandidate, params: Dict[str, str]) -> Optional[str]:
        realm = params.get("realm")
        if not realm:
            return None
        query = {"scope": params.get("scope") or f"repository:{candidate.reference.repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]
        creds = candidate.credentials
        same_host = urlparse(realm).hostname == candidate.endpoint.split(":")[0]
        logger.log(TRACE_ALL, "GET %s (token)", realm)
        try:
            response = self._session.get(
                realm,
                params=query,
                auth=creds.basic_auth if creds else None,
                timeout=self._timeout_s,
                verify=self._verify(candidate) if same_host else True,
            )
        except requests.exceptions.RequestException as exc:
            raise _CandidateFailure(f"token request failed: {exc}", transient=True) from exc
        if response.status_code != 200:
            transient = response.status_code == 429 or response.status_code >= 500
            raise _CandidateFailure(
                f"token request returned HTTP {response.status_code}", transient=transient
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise _CandidateFailure("token response is not JSON", transient=False) from exc
        return payload.get("token") or payload.get("access_token")

    def _verify(self, candidate: RegistryCandidate) -> Union[bool, str]:
        if candidate.tls_policy == TLSPolicy.SKIP_VERIFY:
            return False
        if candidate.tls_policy == TLSPolicy.CUSTOM_CA and candidate.ca_bundle:
            return _ca_bundle_path(candidate.ca_bundle)
        return True

    def _json_body(self, candidate: RegistryCandidate, response: requests.Response, what: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ManifestInvalidError(str(candidate.source), f"{what} is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ManifestInvalidError(str(candidate.source), f"{what} is not a JSON object")
        return body


def _content_type(response: requests.Response) -> str:
    return response.headers.get("Content-Type", "").split(";", 1)[0].strip()


def _ca_bundle_path(pem: str) -> str:
    digest = hashlib.sha256(pem.encode()).hexdigest()
    with _ca_bundle_lock:
        path = _ca_bundle_paths.get(digest)
        if path is None:
            with tempfile.NamedTemporaryFile(
                "w", prefix="registry-ca-", suffix=".pem", delete=False
            ) as fh:
                fh.write(pem)
                path = fh.name
            _ca_bundle_paths[digest] = path
        return path
