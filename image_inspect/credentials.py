"""
image_inspect/credentials.py
────────────────────────────
Pull-secret handling: docker config JSON → credential lookup by image name.

Sources, in precedence order:
  1. The pod's imagePullSecrets (namespace-scoped dockerconfigjson secrets).
  2. The cluster-wide pull secret.

Both are merged into one CredentialStore. Lookup is longest-prefix over
`registry/repository`, matching at path boundaries only, so a key for
"quay.io/multi-arch/tuning-test-local" beats a key for "quay.io" and
neither matches "quay.io/multi-arch/tuning-test-localx". When two sources
define the same key, the pod-level one wins.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"
DOCKER_CFG_KEY = ".dockercfg"

_DOCKER_HUB_KEYS = {
    "index.docker.io/v1": "docker.io",
    "index.docker.io": "docker.io",
    "registry-1.docker.io": "docker.io",
    "docker.io": "docker.io",
}


@dataclass(frozen=True)
class RegistryCredentials:
    username: str = ""
    password: str = ""
    identity_token: str = ""

    @property
    def basic_auth(self) -> Optional[Tuple[str, str]]:
        if self.username or self.password:
            return self.username, self.password
        return None

    def __repr__(self) -> str:
        return f"RegistryCredentials(username={self.username!r}, password=***)"


def normalize_registry_key(key: str) -> str:
    """
    Canonicalise an `auths` key: strip scheme and trailing API suffixes,
    map every Docker Hub spelling to "docker.io".
    """
    k = key.strip()
    for scheme in ("https://", "http://"):
        if k.startswith(scheme):
            k = k[len(scheme):]
    k = k.rstrip("/")
    for suffix in ("/v2", "/v1"):
        if k.endswith(suffix) and k[: -len(suffix)] in _DOCKER_HUB_KEYS:
            k = k[: -len(suffix)]
    return _DOCKER_HUB_KEYS.get(k, k)


def parse_docker_config(config: Mapping[str, Any]) -> Dict[str, RegistryCredentials]:
    """
    Parse a docker config object ({"auths": {...}}) or the legacy
    .dockercfg shape ({host: {...}}) into normalised key → credentials.

    Entries without usable credentials are skipped with a debug log.
    """
    auths = config.get("auths") if isinstance(config.get("auths"), Mapping) else config
    out: Dict[str, RegistryCredentials] = {}
    for key, entry in auths.items():
        if not isinstance(entry, Mapping):
            continue
        creds = _credentials_from_entry(entry)
        if creds is None:
            logger.debug("Skipping pull-secret entry %s: no usable credentials", key)
            continue
        out[normalize_registry_key(key)] = creds
    return out


def _credentials_from_entry(entry: Mapping[str, Any]) -> Optional[RegistryCredentials]:
    username = entry.get("username") or ""
    password = entry.get("password") or ""
    token = entry.get("identitytoken") or ""
    auth = entry.get("auth")
    if auth and not (username and password):
        try:
            decoded = base64.b64decode(auth).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        username, sep, password = decoded.partition(":")
        if not sep:
            return None
    if not (username or password or token):
        return None
    return RegistryCredentials(username=username, password=password, identity_token=token)


def docker_config_from_secret_data(data: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    """
    Decode the base64 `data` map of a kubernetes.io/dockerconfigjson (or
    dockercfg) Secret. Returns None if neither key is present or decodable.
    """
    for key in (DOCKER_CONFIG_JSON_KEY, DOCKER_CFG_KEY):
        raw = data.get(key)
        if not raw:
            continue
        try:
            return json.loads(base64.b64decode(raw).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("Pull secret key %s is not valid base64 JSON", key)
            return None
    return None


class CredentialStore:
    """Ordered credential entries with longest-prefix lookup."""

    def __init__(self, entries: Optional[Sequence[Tuple[str, RegistryCredentials]]] = None) -> None:
        self._entries: Dict[str, RegistryCredentials] = {}
        for key, creds in entries or ():
            # first writer wins: earlier sources take precedence
            self._entries.setdefault(key, creds)

    @classmethod
    def merged(
        cls,
        pod_configs: Sequence[Mapping[str, Any]] = (),
        global_config: Optional[Mapping[str, Any]] = None,
    ) -> "CredentialStore":
        """Merge pod-level docker configs (in order) ahead of the global one."""
        entries: List[Tuple[str, RegistryCredentials]] = []
        for config in pod_configs:
            entries.extend(parse_docker_config(config).items())
        if global_config:
            entries.extend(parse_docker_config(global_config).items())
        return cls(entries)

    def lookup(self, name: str) -> Optional[RegistryCredentials]:
        """
        Credentials for `registry/repository`, by longest matching key.

        Args:
            name: e.g. "quay.io/multi-arch/tuning-test-local".
        """
        best_key, best = "", None
        for key, creds in self._entries.items():
            if (name == key or name.startswith(key + "/")) and len(key) > len(best_key):
                best_key, best = key, creds
        return best

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
