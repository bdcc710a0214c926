"""
podplacement/control_plane/pod_admission.py
─────────────────────────────────────────────
Phase one of the gate-then-patch protocol: decide at pod admission whether
the pod is held back for architecture resolution.

    Created ──gate_pod()──► Gated        patch adds the scheduling gate and
                                         the `gated` label
            └────────────► OutOfScope    no patch at all

This runs inside the admission request, so it must be fast and local: it
reads the configuration snapshot and namespace labels, never a registry.
Gates can only be added at creation time, which is why the decision is made
here rather than in the controller.

Phase two (ungate_patch) is built here too so both halves of the marker
protocol live in one place; placement_controller applies it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from podplacement.control_plane.affinity_merge import (
    has_explicit_placement,
    is_control_plane_pod,
)
from podplacement.control_plane.config_resolver import ResolvedPlacement, resolve_placement
from podplacement.shared.models import (
    SCHEDULING_GATE_LABEL,
    SCHEDULING_GATE_LABEL_VALUE_GATED,
    SCHEDULING_GATE_LABEL_VALUE_REMOVED,
    SCHEDULING_GATE_NAME,
    Affinity,
    ConfigSnapshot,
    PlacementState,
    Pod,
)

logger = logging.getLogger(__name__)

JsonPatch = List[Dict[str, Any]]


@dataclass(frozen=True)
class GatingDecision:
    """
    state     → GATED or OUT_OF_SCOPE.
    patch     → JSON patch operations for the admission response (may be empty).
    reason    → why, for logs.
    placement → the configuration resolution the decision was based on.
    """
    state: PlacementState
    patch: JsonPatch = field(default_factory=list)
    reason: str = ""
    placement: Optional[ResolvedPlacement] = None


def escape_pointer(token: str) -> str:
    """RFC 6901: '~' → '~0', '/' → '~1'."""
    return token.replace("~", "~0").replace("/", "~1")


def is_pod_in_scope(
    pod: Pod,
    snapshot: ConfigSnapshot,
    namespace_labels: Optional[Mapping[str, str]],
) -> GatingDecision:
    """
    Scope check shared by admission and reconcile. Returns OUT_OF_SCOPE or
    GATED (with an empty patch); gate_pod() adds the patch.
    """
    placement = resolve_placement(snapshot, pod.namespace, namespace_labels, pod.labels)
    if not placement.in_scope:
        return GatingDecision(PlacementState.OUT_OF_SCOPE, reason=placement.reason, placement=placement)
    if has_explicit_placement(pod.spec):
        return GatingDecision(
            PlacementState.OUT_OF_SCOPE, reason="pod sets nodeName or nodeSelector", placement=placement
        )
    if is_control_plane_pod(pod.spec):
        return GatingDecision(
            PlacementState.OUT_OF_SCOPE, reason="pod is pinned to control-plane nodes", placement=placement
        )
    if not pod.images():
        return GatingDecision(
            PlacementState.OUT_OF_SCOPE, reason="pod references no container image", placement=placement
        )
    return GatingDecision(PlacementState.GATED, reason=placement.reason, placement=placement)


def gate_pod(
    pod: Pod,
    snapshot: ConfigSnapshot,
    namespace_labels: Optional[Mapping[str, str]],
) -> GatingDecision:
    """
    Admission-time decision for a pod being created.

    Args:
        pod:              The pod from the admission request.
        snapshot:         Current placement configuration.
        namespace_labels: Labels of the pod's namespace.
    """
    decision = is_pod_in_scope(pod, snapshot, namespace_labels)
    if decision.state != PlacementState.GATED:
        logger.debug("Pod %s not gated: %s", pod.key, decision.reason)
        return decision
    if pod.has_scheduling_gate():
        return GatingDecision(
            PlacementState.GATED, reason="scheduling gate already present", placement=decision.placement
        )
    logger.info("Gating pod %s (%s)", pod.key, decision.placement.source)
    return GatingDecision(
        PlacementState.GATED,
        patch=gate_patch(pod),
        reason=decision.reason,
        placement=decision.placement,
    )


# ── JSON patch builders ───────────────────────────────────────────────────────

def gate_patch(pod: Pod) -> JsonPatch:
    """Add the scheduling gate and the `gated` label."""
    ops: JsonPatch = []
    gate = {"name": SCHEDULING_GATE_NAME}
    if pod.spec.scheduling_gates is None:
        ops.append({"op": "add", "path": "/spec/schedulingGates", "value": [gate]})
    else:
        ops.append({"op": "add", "path": "/spec/schedulingGates/-", "value": gate})
    ops.append(_label_op(pod, SCHEDULING_GATE_LABEL_VALUE_GATED))
    return ops


def ungate_patch(pod: Pod, affinity: Optional[Affinity] = None) -> JsonPatch:
    """
    One patch that (optionally) writes the new affinity, removes the gate
    and flips the label to `removed`. Applying it is atomic, so the gate is
    never seen gone without the affinity in place.

    The `test` op makes the patch fail rather than remove the wrong gate
    if the gate list changed since the pod was read.
    """
    ops: JsonPatch = []
    if affinity is not None:
        ops.append({"op": "add", "path": "/spec/affinity", "value": affinity.to_api()})
    for i, gate in enumerate(pod.spec.scheduling_gates or []):
        if gate.name == SCHEDULING_GATE_NAME:
            ops.append({"op": "test", "path": f"/spec/schedulingGates/{i}/name", "value": SCHEDULING_GATE_NAME})
            ops.append({"op": "remove", "path": f"/spec/schedulingGates/{i}"})
            break
    ops.append(_label_op(pod, SCHEDULING_GATE_LABEL_VALUE_REMOVED))
    return ops


def _label_op(pod: Pod, value: str) -> Dict[str, Any]:
    if pod.metadata.labels is None:
        return {"op": "add", "path": "/metadata/labels", "value": {SCHEDULING_GATE_LABEL: value}}
    return {
        "op": "add",
        "path": f"/metadata/labels/{escape_pointer(SCHEDULING_GATE_LABEL)}",
        "value": value,
    }
