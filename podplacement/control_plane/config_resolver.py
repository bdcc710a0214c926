"""
podplacement/control_plane/config_resolver.py
───────────────────────────────────────────────
Which placement configuration applies to one pod.

resolve_placement() is a pure function over a ConfigSnapshot. It is
re-evaluated for every pod (at admission and again at reconcile time);
nothing here is cached.

Decision order
───────────────
  1. No cluster singleton               → disabled, out of scope.
  2. namespaceSelector does not match   → out of scope. Namespaced configs
                                          are not consulted at all.
  3. Namespaced configs in the pod's namespace whose labelSelector matches
     the pod, highest priority first    → the first one's enabled scoring
                                          plugin, if any.
  4. The singleton's enabled scoring plugin.
  5. Neither                            → in scope, affinity only.

A namespaced config that matches but has no enabled scoring plugin still
wins (step 3): it deliberately switches scoring off for its pods.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from podplacement.shared.models import ConfigSnapshot, NodeAffinityScoring
from podplacement.shared.selectors import matches_label_selector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPlacement:
    """
    Outcome of configuration resolution for one pod.

    Fields:
        in_scope → whether the engine gates / mutates this pod at all.
        scoring  → the scoring plugin to apply, or None for affinity only.
        source   → which object decided ("ClusterPodPlacementConfig/cluster",
                   "PodPlacementConfig/<ns>/<name>") or "" when out of scope.
        reason   → short explanation for logs and events.
    """
    in_scope: bool
    scoring: Optional[NodeAffinityScoring] = None
    source: str = ""
    reason: str = ""


def resolve_placement(
    snapshot: ConfigSnapshot,
    namespace: str,
    namespace_labels: Optional[Mapping[str, str]],
    pod_labels: Optional[Mapping[str, str]] = None,
) -> ResolvedPlacement:
    """
    Resolve the effective placement configuration for a pod.

    Args:
        snapshot:         Every placement config at one instant.
        namespace:        The pod's namespace.
        namespace_labels: Labels of that namespace.
        pod_labels:       The pod's own labels (for labelSelector).
    """
    cluster = snapshot.cluster_config
    if cluster is None:
        return ResolvedPlacement(
            in_scope=False, reason="no ClusterPodPlacementConfig: pod placement disabled"
        )
    if not matches_label_selector(cluster.spec.namespace_selector, namespace_labels):
        return ResolvedPlacement(
            in_scope=False,
            reason=f"namespace {namespace} is not selected by the cluster namespaceSelector",
        )

    candidates = sorted(
        snapshot.for_namespace(namespace), key=lambda c: c.spec.priority, reverse=True
    )
    for config in candidates:
        if not matches_label_selector(config.spec.label_selector, pod_labels):
            continue
        plugins = config.spec.plugins
        logger.debug(
            "Pod in %s resolved to PodPlacementConfig %s (priority %d)",
            namespace, config.name, config.spec.priority,
        )
        return ResolvedPlacement(
            in_scope=True,
            scoring=plugins.scoring if plugins else None,
            source=f"PodPlacementConfig/{namespace}/{config.name}",
            reason=f"highest-priority matching PodPlacementConfig (priority {config.spec.priority})",
        )

    plugins = cluster.spec.plugins
    return ResolvedPlacement(
        in_scope=True,
        scoring=plugins.scoring if plugins else None,
        source=f"ClusterPodPlacementConfig/{cluster.name}",
        reason="cluster singleton",
    )
