"""
podplacement/control_plane/affinity_merge.py
──────────────────────────────────────────────
Node Affinity Merge Engine: combine a pod's resolved architecture set with
whatever placement constraints the user already wrote.

merge_affinity(architectures, spec, scoring) → MergeResult

Decision table
───────────────
  pod sets nodeName or a non-empty nodeSelector   → EXEMPT   (never touched)
  a required term pins control-plane node roles   → EXEMPT
  architecture set is empty                       → EMPTY    (no common arch)
  no required node affinity                       → MUTATE   one new term:
                                                     kubernetes.io/arch In [sorted archs]
  required terms present:
    term does not mention kubernetes.io/arch      → arch In [...] ANDed into the term
    term mentions it, some resolved arch allowed  → term kept as written
    term mentions it, no resolved arch allowed    → CONFLICT (whole pod untouched)
  nothing to add                                  → NOOP

Terms stay ORed: the architecture requirement is appended to every
existing term, never added as a new alternative term, so all user terms
still hold.

Scoring
────────
With an enabled scoring plugin, each (architecture, weight) platform term
whose architecture is in the resolved set becomes a preferred term
`kubernetes.io/arch In [arch]` with that weight. Nothing is added if the
pod already carries a preferred term on the architecture label.

Idempotence
────────────
Every term of a MUTATE result constrains the architecture label and any
added preferred terms mention it too, so merging a result with itself is
a NOOP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from podplacement.shared.models import (
    ARCH_LABEL,
    CONTROL_PLANE_NODE_LABELS,
    Affinity,
    NodeAffinity,
    NodeAffinityScoring,
    NodeSelector,
    NodeSelectorRequirement,
    NodeSelectorTerm,
    PodSpec,
    PreferredSchedulingTerm,
)

logger = logging.getLogger(__name__)


class MergeOutcome(str, Enum):
    MUTATE = "Mutate"
    NOOP = "NoOp"
    EXEMPT = "Exempt"
    CONFLICT = "Conflict"
    EMPTY = "Empty"


@dataclass(frozen=True)
class MergeResult:
    """
    outcome  → see MergeOutcome.
    affinity → the complete new pod affinity; set only for MUTATE.
    reason   → short explanation for logs and events.
    """
    outcome: MergeOutcome
    affinity: Optional[Affinity] = None
    reason: str = ""

    @property
    def mutated(self) -> bool:
        return self.outcome == MergeOutcome.MUTATE


def has_explicit_placement(spec: PodSpec) -> bool:
    """nodeName or any nodeSelector entry: the user already chose where to run."""
    return bool(spec.node_name) or bool(spec.node_selector)


def is_control_plane_pod(spec: PodSpec) -> bool:
    """True if the pod is pinned to control-plane / master nodes."""
    if any(label in (spec.node_selector or {}) for label in CONTROL_PLANE_NODE_LABELS):
        return True
    for term in _required_terms(spec.affinity):
        for req in term.match_expressions or []:
            if req.key in CONTROL_PLANE_NODE_LABELS and req.operator in ("In", "Exists"):
                return True
    return False


def merge_affinity(
    architectures: Iterable[str],
    spec: PodSpec,
    scoring: Optional[NodeAffinityScoring] = None,
) -> MergeResult:
    """
    Compute the pod's new affinity. The input spec is never modified.

    Args:
        architectures: Resolved architecture set (intersection over images).
        spec:          The pod spec as currently stored.
        scoring:       Enabled scoring plugin, or None.
    """
    if has_explicit_placement(spec):
        return MergeResult(MergeOutcome.EXEMPT, reason="pod sets nodeName or nodeSelector")
    if is_control_plane_pod(spec):
        return MergeResult(MergeOutcome.EXEMPT, reason="pod is pinned to control-plane nodes")

    archs = frozenset(architectures)
    if not archs:
        return MergeResult(
            MergeOutcome.EMPTY, reason="container images share no common architecture"
        )

    affinity = spec.affinity.model_copy(deep=True) if spec.affinity else Affinity()
    node_affinity = affinity.node_affinity or NodeAffinity()
    required = node_affinity.required_during_scheduling_ignored_during_execution
    changed = False

    if required is None or not required.node_selector_terms:
        required = NodeSelector(
            node_selector_terms=[NodeSelectorTerm(match_expressions=[_arch_requirement(archs)])]
        )
        changed = True
    else:
        for i, term in enumerate(required.node_selector_terms):
            arch_reqs = [r for r in term.match_expressions or [] if r.key == ARCH_LABEL]
            if arch_reqs:
                allowed = set(archs)
                for req in arch_reqs:
                    allowed &= _satisfying(req, archs)
                if not allowed:
                    return MergeResult(
                        MergeOutcome.CONFLICT,
                        reason=(
                            f"nodeSelectorTerms[{i}] restricts {ARCH_LABEL} to values disjoint "
                            f"from the image architectures {sorted(archs)}"
                        ),
                    )
                continue
            if not term.match_expressions and not term.match_fields:
                # an empty term matches no node; extending it would widen it
                continue
            term.match_expressions = list(term.match_expressions or []) + [_arch_requirement(archs)]
            changed = True
    node_affinity.required_during_scheduling_ignored_during_execution = required

    if scoring is not None and _add_preferred_terms(node_affinity, archs, scoring):
        changed = True

    if not changed:
        return MergeResult(MergeOutcome.NOOP, reason="pod affinity already covers the architectures")

    affinity.node_affinity = node_affinity
    logger.debug("Merged architectures %s into pod affinity", sorted(archs))
    return MergeResult(
        MergeOutcome.MUTATE,
        affinity=affinity,
        reason=f"{ARCH_LABEL} restricted to {', '.join(sorted(archs))}",
    )


# ── Helpers ───────────────────────────────────────────────────────────────────

def _arch_requirement(archs: FrozenSet[str]) -> NodeSelectorRequirement:
    return NodeSelectorRequirement(key=ARCH_LABEL, operator="In", values=sorted(archs))


def _satisfying(req: NodeSelectorRequirement, archs: FrozenSet[str]) -> FrozenSet[str]:
    """The subset of `archs` whose nodes would satisfy `req`."""
    values = set(req.values or [])
    if req.operator == "In":
        return archs & values
    if req.operator == "NotIn":
        return archs - values
    if req.operator == "Exists":
        return archs
    # DoesNotExist, and Gt / Lt which never match a non-integer label
    return frozenset()


def _required_terms(affinity: Optional[Affinity]) -> List[NodeSelectorTerm]:
    if affinity is None or affinity.node_affinity is None:
        return []
    required = affinity.node_affinity.required_during_scheduling_ignored_during_execution
    return list(required.node_selector_terms) if required else []


def _add_preferred_terms(
    node_affinity: NodeAffinity, archs: FrozenSet[str], scoring: NodeAffinityScoring
) -> bool:
    existing = node_affinity.preferred_during_scheduling_ignored_during_execution or []
    for term in existing:
        if any(r.key == ARCH_LABEL for r in term.preference.match_expressions or []):
            return False
    added = [
        PreferredSchedulingTerm(
            weight=platform.weight,
            preference=NodeSelectorTerm(
                match_expressions=[
                    NodeSelectorRequirement(key=ARCH_LABEL, operator="In", values=[platform.architecture])
                ]
            ),
        )
        for platform in scoring.platforms
        if platform.architecture in archs
    ]
    if not added:
        return False
    node_affinity.preferred_during_scheduling_ignored_during_execution = list(existing) + added
    return True
