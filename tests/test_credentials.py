"""
tests/test_credentials.py
──────────────────────────
Pull-secret parsing and credential lookup.

Test groups:
    Group 1: Docker config parsing
    Group 2: Secret data decoding
    Group 3: Longest-prefix lookup and precedence
"""

from __future__ import annotations

import base64
import json

from image_inspect.credentials import (
    CredentialStore,
    RegistryCredentials,
    docker_config_from_secret_data,
    normalize_registry_key,
    parse_docker_config,
)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def _config(entries: dict) -> dict:
    return {"auths": {k: {"auth": _b64(v)} for k, v in entries.items()}}


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Docker config parsing
# ─────────────────────────────────────────────────────────────────────────────

class TestParseDockerConfig:
    def test_auth_field_is_decoded(self):
        parsed = parse_docker_config(_config({"quay.io": "alice:s3cret"}))
        assert parsed["quay.io"] == RegistryCredentials(username="alice", password="s3cret")

    def test_username_password_fields(self):
        parsed = parse_docker_config({"auths": {"reg.local": {"username": "u", "password": "p"}}})
        assert parsed["reg.local"].basic_auth == ("u", "p")

    def test_legacy_dockercfg_shape(self):
        parsed = parse_docker_config({"quay.io": {"auth": _b64("bob:pw")}})
        assert parsed["quay.io"].username == "bob"

    def test_docker_hub_keys_normalised(self):
        parsed = parse_docker_config(_config({"https://index.docker.io/v1/": "a:b"}))
        assert "docker.io" in parsed

    def test_entries_without_credentials_are_skipped(self):
        parsed = parse_docker_config({"auths": {"quay.io": {}, "bad.io": {"auth": "!!!"}}})
        assert parsed == {}

    def test_password_is_masked_in_repr(self):
        assert "s3cret" not in repr(RegistryCredentials(username="a", password="s3cret"))

    def test_normalize_strips_scheme(self):
        assert normalize_registry_key("https://quay.io/") == "quay.io"


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Secret data decoding
# ─────────────────────────────────────────────────────────────────────────────

class TestSecretData:
    def test_dockerconfigjson_key(self):
        config = _config({"quay.io": "a:b"})
        data = {".dockerconfigjson": _b64(json.dumps(config))}
        assert docker_config_from_secret_data(data) == config

    def test_dockercfg_key(self):
        config = {"quay.io": {"auth": _b64("a:b")}}
        data = {".dockercfg": _b64(json.dumps(config))}
        assert docker_config_from_secret_data(data) == config

    def test_undecodable_returns_none(self):
        assert docker_config_from_secret_data({".dockerconfigjson": _b64("not json")}) is None

    def test_missing_key_returns_none(self):
        assert docker_config_from_secret_data({"token": "x"}) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Lookup and precedence
# ─────────────────────────────────────────────────────────────────────────────

class TestLookup:
    def test_longest_prefix_wins(self):
        store = CredentialStore.merged(
            global_config=_config({
                "quay.io": "registry:wide",
                "quay.io/multi-arch/tuning-test-local": "repo:specific",
            })
        )
        creds = store.lookup("quay.io/multi-arch/tuning-test-local")
        assert creds.username == "repo"
        assert store.lookup("quay.io/other/app").username == "registry"

    def test_prefix_matches_only_at_path_boundary(self):
        store = CredentialStore.merged(global_config=_config({"quay.io/org/app": "a:b"}))
        assert store.lookup("quay.io/org/appx") is None
        assert store.lookup("quay.io/org/app/sub") is not None

    def test_pod_secret_wins_over_global(self):
        store = CredentialStore.merged(
            pod_configs=[_config({"quay.io": "pod:pw"})],
            global_config=_config({"quay.io": "global:pw"}),
        )
        assert store.lookup("quay.io/org/app").username == "pod"

    def test_sources_are_merged(self):
        store = CredentialStore.merged(
            pod_configs=[_config({"reg.local": "pod:pw"})],
            global_config=_config({"quay.io": "global:pw"}),
        )
        assert len(store) == 2
        assert store.lookup("reg.local/x").username == "pod"
        assert store.lookup("quay.io/x").username == "global"

    def test_no_match(self):
        assert CredentialStore().lookup("quay.io/org/app") is None
