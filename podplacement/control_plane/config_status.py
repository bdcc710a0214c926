"""
podplacement/control_plane/config_status.py
─────────────────────────────────────────────
Status conditions written back onto the placement configuration objects.

Conditions
───────────
    ClusterPodPlacementConfig
        Available    True   AsExpected            pods in selected namespaces
                                                  are gated and resolved
        Progressing  True   GatedPodsPending      N pod(s) still gated
                     False  AsExpected            nothing waiting

    PodPlacementConfig
        Available    True   AsExpected            applies to matching pods
                     False  ClusterConfigMissing  no singleton exists
                     False  NamespaceNotSelected  the singleton's
                                                  namespaceSelector excludes
                                                  the config's namespace

set_condition() keeps a condition's lastTransitionTime while its status is
unchanged, so a periodic refresh over a stable cluster computes a status
equal to the stored one and nothing is written.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Mapping, Optional

from podplacement.shared.models import (
    ClusterPodPlacementConfig,
    Condition,
    ConfigStatus,
    PodPlacementConfig,
)
from podplacement.shared.selectors import matches_label_selector

CONDITION_AVAILABLE = "Available"
CONDITION_PROGRESSING = "Progressing"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

REASON_AS_EXPECTED = "AsExpected"
REASON_GATED_PODS_PENDING = "GatedPodsPending"
REASON_CLUSTER_CONFIG_MISSING = "ClusterConfigMissing"
REASON_NAMESPACE_NOT_SELECTED = "NamespaceNotSelected"


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(status: ConfigStatus, condition: Condition, now: Optional[str] = None) -> ConfigStatus:
    """
    Return a copy of `status` in which `condition` replaces any condition of
    the same type. Other conditions keep their order.
    """
    conditions = []
    replaced = False
    for existing in status.conditions:
        if existing.type != condition.type:
            conditions.append(existing.model_copy())
            continue
        replaced = True
        if existing.status == condition.status and existing.last_transition_time:
            stamp = existing.last_transition_time
        else:
            stamp = now or _timestamp()
        conditions.append(condition.model_copy(update={"last_transition_time": stamp}))
    if not replaced:
        conditions.append(condition.model_copy(update={"last_transition_time": now or _timestamp()}))
    return ConfigStatus(conditions=conditions)


def cluster_config_status(
    config: ClusterPodPlacementConfig,
    gated_pods: int,
    now: Optional[str] = None,
) -> ConfigStatus:
    status = set_condition(config.status, Condition(
        type=CONDITION_AVAILABLE,
        status=CONDITION_TRUE,
        reason=REASON_AS_EXPECTED,
        message="pods in selected namespaces are gated until their architectures are resolved",
    ), now)
    if gated_pods:
        progressing = Condition(
            type=CONDITION_PROGRESSING,
            status=CONDITION_TRUE,
            reason=REASON_GATED_PODS_PENDING,
            message=f"{gated_pods} gated pod(s) awaiting architecture resolution",
        )
    else:
        progressing = Condition(
            type=CONDITION_PROGRESSING,
            status=CONDITION_FALSE,
            reason=REASON_AS_EXPECTED,
            message="no gated pods pending",
        )
    return set_condition(status, progressing, now)


def pod_placement_config_status(
    config: PodPlacementConfig,
    cluster_config: Optional[ClusterPodPlacementConfig],
    namespace_labels: Optional[Mapping[str, str]],
    now: Optional[str] = None,
) -> ConfigStatus:
    if cluster_config is None:
        available = Condition(
            type=CONDITION_AVAILABLE,
            status=CONDITION_FALSE,
            reason=REASON_CLUSTER_CONFIG_MISSING,
            message="no ClusterPodPlacementConfig exists; pod placement is disabled",
        )
    elif not matches_label_selector(cluster_config.spec.namespace_selector, namespace_labels):
        available = Condition(
            type=CONDITION_AVAILABLE,
            status=CONDITION_FALSE,
            reason=REASON_NAMESPACE_NOT_SELECTED,
            message=f"namespace {config.namespace} is not selected by the cluster namespaceSelector",
        )
    else:
        available = Condition(
            type=CONDITION_AVAILABLE,
            status=CONDITION_TRUE,
            reason=REASON_AS_EXPECTED,
            message=f"applies to matching pods in {config.namespace} at priority {config.spec.priority}",
        )
    return set_condition(config.status, available, now)
