"""
tests/test_affinity_merge.py
─────────────────────────────
merge_affinity(): combining the resolved architecture set with user affinity.

Test groups:
    Group 1: No existing affinity
    Group 2: Existing required terms (AND into each term, conflicts)
    Group 3: Exempt pods and empty sets
    Group 4: Scoring plugin preferred terms
    Group 5: Idempotence and preservation of unrelated fields
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from podplacement.control_plane.affinity_merge import (
    MergeOutcome,
    is_control_plane_pod,
    merge_affinity,
)
from podplacement.shared.models import (
    ARCH_LABEL,
    HOSTNAME_LABEL,
    NodeAffinityScoring,
    NodeAffinityScoringPlatformTerm,
    PodSpec,
)

_ALL = frozenset({"amd64", "arm64", "ppc64le", "s390x"})


# ─────────────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def _spec(
    terms: Optional[List[List[Dict[str, Any]]]] = None,
    preferred: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> PodSpec:
    """PodSpec from raw JSON, the way the API server sends it."""
    raw: Dict[str, Any] = {"containers": [{"name": "c", "image": "quay.io/org/app:1.0"}]}
    node_affinity: Dict[str, Any] = {}
    if terms is not None:
        node_affinity["requiredDuringSchedulingIgnoredDuringExecution"] = {
            "nodeSelectorTerms": [{"matchExpressions": exprs} for exprs in terms]
        }
    if preferred is not None:
        node_affinity["preferredDuringSchedulingIgnoredDuringExecution"] = preferred
    if node_affinity:
        raw["affinity"] = {"nodeAffinity": node_affinity}
    raw.update(extra)
    return PodSpec.model_validate(raw)


def _expr(key: str, operator: str, *values: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {"key": key, "operator": operator}
    if values:
        out["values"] = list(values)
    return out


def _required(result) -> List[Dict[str, Any]]:
    api = result.affinity.to_api()
    return api["nodeAffinity"]["requiredDuringSchedulingIgnoredDuringExecution"]["nodeSelectorTerms"]


def _preferred(result) -> List[Dict[str, Any]]:
    return result.affinity.to_api()["nodeAffinity"].get(
        "preferredDuringSchedulingIgnoredDuringExecution", []
    )


def _scoring(**weights: int) -> NodeAffinityScoring:
    return NodeAffinityScoring(
        enabled=True,
        platforms=[NodeAffinityScoringPlatformTerm(architecture=a, weight=w) for a, w in weights.items()],
    )


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: No existing affinity
# ─────────────────────────────────────────────────────────────────────────────

class TestNoExistingAffinity:
    def test_single_term_with_sorted_architectures(self):
        result = merge_affinity(_ALL, _spec())
        assert result.outcome == MergeOutcome.MUTATE
        assert _required(result) == [
            {"matchExpressions": [_expr(ARCH_LABEL, "In", "amd64", "arm64", "ppc64le", "s390x")]}
        ]

    def test_input_spec_not_modified(self):
        spec = _spec()
        merge_affinity({"arm64"}, spec)
        assert spec.affinity is None

    def test_empty_required_block_gets_arch_term(self):
        spec = PodSpec.model_validate({
            "containers": [{"name": "c", "image": "x"}],
            "affinity": {"nodeAffinity": {"requiredDuringSchedulingIgnoredDuringExecution": {"nodeSelectorTerms": []}}},
        })
        result = merge_affinity({"s390x"}, spec)
        assert _required(result) == [{"matchExpressions": [_expr(ARCH_LABEL, "In", "s390x")]}]


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Existing required terms
# ─────────────────────────────────────────────────────────────────────────────

class TestExistingRequiredTerms:
    def test_arch_requirement_anded_into_existing_term(self):
        result = merge_affinity({"arm64"}, _spec([[_expr(HOSTNAME_LABEL, "Exists")]]))
        assert result.outcome == MergeOutcome.MUTATE
        terms = _required(result)
        assert len(terms) == 1
        assert terms[0]["matchExpressions"] == [
            _expr(HOSTNAME_LABEL, "Exists"),
            _expr(ARCH_LABEL, "In", "arm64"),
        ]

    def test_every_term_receives_the_requirement(self):
        result = merge_affinity(
            {"amd64", "arm64"},
            _spec([[_expr("zone", "In", "a")], [_expr("zone", "In", "b")]]),
        )
        terms = _required(result)
        assert len(terms) == 2
        for term in terms:
            assert term["matchExpressions"][-1] == _expr(ARCH_LABEL, "In", "amd64", "arm64")

    def test_compatible_arch_term_kept_as_written(self):
        spec = _spec([[_expr(ARCH_LABEL, "In", "arm64", "amd64")]])
        result = merge_affinity({"arm64", "s390x"}, spec)
        assert result.outcome == MergeOutcome.NOOP

    def test_disjoint_arch_term_is_conflict(self):
        result = merge_affinity({"arm64"}, _spec([[_expr(ARCH_LABEL, "In", "amd64")]]))
        assert result.outcome == MergeOutcome.CONFLICT
        assert result.affinity is None
        assert "nodeSelectorTerms[0]" in result.reason

    def test_not_in_excluding_every_arch_is_conflict(self):
        result = merge_affinity({"amd64"}, _spec([[_expr(ARCH_LABEL, "NotIn", "amd64")]]))
        assert result.outcome == MergeOutcome.CONFLICT

    def test_not_in_leaving_some_arch_is_kept(self):
        result = merge_affinity({"amd64", "arm64"}, _spec([[_expr(ARCH_LABEL, "NotIn", "amd64")]]))
        assert result.outcome == MergeOutcome.NOOP

    def test_conflict_in_one_term_blocks_the_whole_pod(self):
        spec = _spec([[_expr("zone", "In", "a")], [_expr(ARCH_LABEL, "In", "ppc64le")]])
        assert merge_affinity({"amd64"}, spec).outcome == MergeOutcome.CONFLICT

    def test_mixed_terms_only_unconstrained_ones_extended(self):
        spec = _spec([[_expr("zone", "In", "a")], [_expr(ARCH_LABEL, "Exists")]])
        terms = _required(merge_affinity({"arm64"}, spec))
        assert terms[0]["matchExpressions"][-1] == _expr(ARCH_LABEL, "In", "arm64")
        assert terms[1]["matchExpressions"] == [_expr(ARCH_LABEL, "Exists")]


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Exempt pods and empty sets
# ─────────────────────────────────────────────────────────────────────────────

class TestExemptAndEmpty:
    def test_node_selector_exempt(self):
        result = merge_affinity(_ALL, _spec(nodeSelector={"disk": "ssd"}))
        assert result.outcome == MergeOutcome.EXEMPT

    def test_node_name_exempt(self):
        assert merge_affinity(_ALL, _spec(nodeName="worker-0")).outcome == MergeOutcome.EXEMPT

    def test_control_plane_affinity_exempt(self):
        spec = _spec([[_expr("node-role.kubernetes.io/control-plane", "Exists")]])
        assert is_control_plane_pod(spec)
        assert merge_affinity(_ALL, spec).outcome == MergeOutcome.EXEMPT

    def test_control_plane_not_in_is_not_pinned(self):
        spec = _spec([[_expr("node-role.kubernetes.io/master", "DoesNotExist")]])
        assert not is_control_plane_pod(spec)

    def test_empty_set(self):
        result = merge_affinity(frozenset(), _spec())
        assert result.outcome == MergeOutcome.EMPTY
        assert result.mutated is False


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Scoring plugin
# ─────────────────────────────────────────────────────────────────────────────

class TestScoring:
    def test_preferred_terms_for_resolved_architectures_only(self):
        result = merge_affinity({"amd64", "arm64"}, _spec(), _scoring(arm64=80, s390x=20, amd64=10))
        assert _preferred(result) == [
            {"weight": 80, "preference": {"matchExpressions": [_expr(ARCH_LABEL, "In", "arm64")]}},
            {"weight": 10, "preference": {"matchExpressions": [_expr(ARCH_LABEL, "In", "amd64")]}},
        ]

    def test_existing_arch_preference_left_alone(self):
        preferred = [{"weight": 5, "preference": {"matchExpressions": [_expr(ARCH_LABEL, "In", "amd64")]}}]
        result = merge_affinity({"amd64", "arm64"}, _spec(preferred=preferred), _scoring(arm64=80))
        assert _preferred(result) == preferred

    def test_unrelated_preferences_kept_and_extended(self):
        preferred = [{"weight": 5, "preference": {"matchExpressions": [_expr("zone", "In", "a")]}}]
        result = merge_affinity({"arm64"}, _spec(preferred=preferred), _scoring(arm64=80))
        assert len(_preferred(result)) == 2
        assert _preferred(result)[0] == preferred[0]

    def test_scoring_alone_can_mutate(self):
        spec = _spec([[_expr(ARCH_LABEL, "In", "arm64")]])
        result = merge_affinity({"arm64"}, spec, _scoring(arm64=50))
        assert result.outcome == MergeOutcome.MUTATE
        assert _required(result) == [{"matchExpressions": [_expr(ARCH_LABEL, "In", "arm64")]}]


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Idempotence and preservation
# ─────────────────────────────────────────────────────────────────────────────

class TestIdempotenceAndPreservation:
    def test_merge_is_idempotent(self):
        scoring = _scoring(arm64=60, amd64=40)
        first = merge_affinity({"amd64", "arm64"}, _spec([[_expr("zone", "In", "a")]]), scoring)
        again = _spec()
        again.affinity = first.affinity
        assert merge_affinity({"amd64", "arm64"}, again, scoring).outcome == MergeOutcome.NOOP

    def test_pod_affinity_preserved(self):
        pod_affinity = {
            "requiredDuringSchedulingIgnoredDuringExecution": [
                {"labelSelector": {"matchLabels": {"app": "db"}}, "topologyKey": HOSTNAME_LABEL}
            ]
        }
        spec = PodSpec.model_validate({
            "containers": [{"name": "c", "image": "x"}],
            "affinity": {"podAffinity": pod_affinity},
        })
        result = merge_affinity({"arm64"}, spec)
        assert result.affinity.to_api()["podAffinity"] == pod_affinity

    def test_match_fields_term_extended(self):
        spec = PodSpec.model_validate({
            "containers": [{"name": "c", "image": "x"}],
            "affinity": {"nodeAffinity": {"requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [{"matchFields": [
                    {"key": "metadata.name", "operator": "In", "values": ["n1"]}
                ]}]
            }}},
        })
        terms = _required(merge_affinity({"amd64"}, spec))
        assert terms[0]["matchFields"][0]["values"] == ["n1"]
        assert terms[0]["matchExpressions"] == [_expr(ARCH_LABEL, "In", "amd64")]
