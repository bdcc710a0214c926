"""
podplacement/control_plane/config_validator.py
────────────────────────────────────────────────
Admission control for placement configuration objects.

Runs AFTER pydantic validation (schema: weight bounds, priority bounds,
field types) and BEFORE the object is persisted. Nothing here touches pods:
a configuration change never invalidates pods that were already admitted.

What it checks
───────────────
  ClusterPodPlacementConfig (create / update):
    1. The name is the singleton name "cluster".
    2. namespaceSelector is well formed.
    3. nodeAffinityScoring, if present:
         • at least one platform term,
         • every term names an architecture, and a recognised one,
         • no architecture appears twice,
         • every weight lies in [1, 100].

  ClusterPodPlacementConfig (delete):
    4. No PodPlacementConfig exists anywhere in the cluster.

  PodPlacementConfig (create / update):
    5. The cluster singleton exists.
    6. No other config in the same namespace holds the same priority.
       An update of the object itself does not collide with its old version.
    7. labelSelector is well formed.
    8. Same plugin checks as (3).

What it does NOT check
───────────────────────
  • Whether pods in the namespace will match any config. That is the
    resolver's job at pod time.
  • Priority uniqueness across namespaces; priorities are namespace-local.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from podplacement.shared.models import (
    SINGLETON_RESOURCE_NAME,
    SUPPORTED_ARCHITECTURES,
    ClusterPodPlacementConfig,
    PodPlacementConfig,
    Plugins,
)
from podplacement.shared.selectors import validate_label_selector

logger = logging.getLogger(__name__)

_PLATFORMS_PATH = ".spec.plugins.nodeAffinityScoring.platforms"


class ValidationDeniedError(Exception):
    """
    Raised when a configuration object fails admission.

    Attributes:
        reason: Human-readable explanation, returned to the client verbatim.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def validate_cluster_config(config: ClusterPodPlacementConfig) -> None:
    """
    Admission checks for creating or updating the cluster singleton.

    Raises:
        ValidationDeniedError: with a descriptive reason string.
    """
    _check_singleton_name(config)
    problems = validate_label_selector(config.spec.namespace_selector)
    if problems:
        raise ValidationDeniedError(
            "invalid .spec.namespaceSelector: " + "; ".join(problems)
        )
    _check_plugins(config.spec.plugins)


def validate_cluster_config_delete(
    config: ClusterPodPlacementConfig,
    dependents: Sequence[PodPlacementConfig],
) -> None:
    """
    The singleton may only go away once every namespaced config is gone.

    Args:
        config:     The singleton being deleted.
        dependents: Every PodPlacementConfig in the cluster.
    """
    if dependents:
        raise ValidationDeniedError(
            f"cannot delete ClusterPodPlacementConfig {config.name!r}: "
            f"{len(dependents)} PodPlacementConfig(s) still exist in the cluster"
        )


def validate_pod_placement_config(
    config: PodPlacementConfig,
    cluster_config: Optional[ClusterPodPlacementConfig],
    namespace_configs: Sequence[PodPlacementConfig],
) -> None:
    """
    Admission checks for creating or updating a namespaced config.

    Args:
        config:            The incoming object.
        cluster_config:    The current singleton, or None if it does not exist.
        namespace_configs: Configs already stored in config's namespace
                           (may include the previous version of `config`).

    Raises:
        ValidationDeniedError: with a descriptive reason string.
    """
    if cluster_config is None:
        raise ValidationDeniedError(
            "create the cluster-scoped ClusterPodPlacementConfig "
            f"{SINGLETON_RESOURCE_NAME!r} before creating a namespaced PodPlacementConfig"
        )
    _check_priority_unique(config, namespace_configs)
    problems = validate_label_selector(config.spec.label_selector)
    if problems:
        raise ValidationDeniedError("invalid .spec.labelSelector: " + "; ".join(problems))
    _check_plugins(config.spec.plugins)


# ── Individual checks ─────────────────────────────────────────────────────────

def _check_singleton_name(config: ClusterPodPlacementConfig) -> None:
    if config.name != SINGLETON_RESOURCE_NAME:
        raise ValidationDeniedError(
            f"ClusterPodPlacementConfig must be named {SINGLETON_RESOURCE_NAME!r}, "
            f"got {config.name!r}"
        )


def _check_priority_unique(
    config: PodPlacementConfig, namespace_configs: Sequence[PodPlacementConfig]
) -> None:
    for existing in namespace_configs:
        if existing.name == config.name or existing.namespace != config.namespace:
            continue
        if existing.spec.priority == config.spec.priority:
            raise ValidationDeniedError(
                f"another PodPlacementConfig ({existing.name}) with priority "
                f"{existing.spec.priority} already exists in namespace {config.namespace}"
            )


def _check_plugins(plugins: Optional[Plugins]) -> None:
    """
    Scoring terms are checked whether or not the plugin is enabled, so a
    disabled-but-broken plugin cannot be switched on later by a one-field edit.
    """
    if plugins is None or plugins.node_affinity_scoring is None:
        return
    platforms = plugins.node_affinity_scoring.platforms
    if not platforms:
        raise ValidationDeniedError(f"{_PLATFORMS_PATH} must contain at least one term")

    seen = set()
    for i, term in enumerate(platforms):
        arch = term.architecture
        if not arch:
            raise ValidationDeniedError(f"{_PLATFORMS_PATH}[{i}].architecture is required")
        if arch not in SUPPORTED_ARCHITECTURES:
            raise ValidationDeniedError(
                f"{_PLATFORMS_PATH}[{i}].architecture {arch!r} is not one of "
                f"{', '.join(sorted(SUPPORTED_ARCHITECTURES))}"
            )
        if arch in seen:
            raise ValidationDeniedError(
                f"duplicate architecture {arch!r} in the {_PLATFORMS_PATH} list"
            )
        seen.add(arch)
        # pydantic bounds the weight; model_construct() bypasses that
        if not 1 <= term.weight <= 100:
            raise ValidationDeniedError(
                f"{_PLATFORMS_PATH}[{i}].weight {term.weight} must be between 1 and 100"
            )
