"""
tests/test_config_status.py
────────────────────────────
Status conditions computed for ClusterPodPlacementConfig and
PodPlacementConfig objects.

Test groups:
    Group 1: set_condition (replacement, lastTransitionTime)
    Group 2: Singleton conditions
    Group 3: Namespaced config conditions
"""

from __future__ import annotations

from podplacement.control_plane.config_status import (
    CONDITION_AVAILABLE,
    CONDITION_PROGRESSING,
    REASON_AS_EXPECTED,
    REASON_CLUSTER_CONFIG_MISSING,
    REASON_GATED_PODS_PENDING,
    REASON_NAMESPACE_NOT_SELECTED,
    cluster_config_status,
    pod_placement_config_status,
    set_condition,
)
from podplacement.shared.models import (
    ClusterPodPlacementConfig,
    ClusterPodPlacementConfigSpec,
    Condition,
    ConfigStatus,
    LabelSelector,
    ObjectMeta,
    PodPlacementConfig,
    PodPlacementConfigSpec,
)

T0 = "2026-01-01T00:00:00Z"
T1 = "2026-01-01T00:05:00Z"


def _by_type(status: ConfigStatus):
    return {c.type: c for c in status.conditions}


def _ppc(priority: int = 0) -> PodPlacementConfig:
    return PodPlacementConfig(
        metadata=ObjectMeta(name="p", namespace="app"),
        spec=PodPlacementConfigSpec(priority=priority),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: set_condition
# ─────────────────────────────────────────────────────────────────────────────

class TestSetCondition:
    def test_new_condition_is_stamped(self):
        status = set_condition(ConfigStatus(), Condition(type="A", status="True"), T0)
        assert [(c.type, c.last_transition_time) for c in status.conditions] == [("A", T0)]

    def test_same_status_keeps_stamp_but_takes_new_message(self):
        first = set_condition(ConfigStatus(), Condition(type="A", status="True", message="one"), T0)
        second = set_condition(first, Condition(type="A", status="True", message="two"), T1)
        [condition] = second.conditions
        assert condition.last_transition_time == T0
        assert condition.message == "two"

    def test_status_change_restamps(self):
        first = set_condition(ConfigStatus(), Condition(type="A", status="True"), T0)
        second = set_condition(first, Condition(type="A", status="False"), T1)
        assert second.conditions[0].last_transition_time == T1

    def test_other_conditions_keep_their_order(self):
        status = ConfigStatus(conditions=[
            Condition(type="A", status="True", last_transition_time=T0),
            Condition(type="B", status="True", last_transition_time=T0),
        ])
        updated = set_condition(status, Condition(type="A", status="False"), T1)
        assert [c.type for c in updated.conditions] == ["A", "B"]
        assert status.conditions[0].status == "True"

    def test_missing_stamp_is_filled(self):
        status = ConfigStatus(conditions=[Condition(type="A", status="True")])
        updated = set_condition(status, Condition(type="A", status="True"), T1)
        assert updated.conditions[0].last_transition_time == T1


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Singleton conditions
# ─────────────────────────────────────────────────────────────────────────────

class TestClusterConfigStatus:
    def test_gated_pods_pending(self):
        conditions = _by_type(cluster_config_status(ClusterPodPlacementConfig(), 3, T0))
        assert conditions[CONDITION_AVAILABLE].status == "True"
        progressing = conditions[CONDITION_PROGRESSING]
        assert (progressing.status, progressing.reason) == ("True", REASON_GATED_PODS_PENDING)
        assert progressing.message.startswith("3 gated pod(s)")

    def test_nothing_pending(self):
        conditions = _by_type(cluster_config_status(ClusterPodPlacementConfig(), 0, T0))
        progressing = conditions[CONDITION_PROGRESSING]
        assert (progressing.status, progressing.reason) == ("False", REASON_AS_EXPECTED)

    def test_recomputing_a_stable_status_is_equal(self):
        config = ClusterPodPlacementConfig()
        config = config.model_copy(update={"status": cluster_config_status(config, 0, T0)})
        assert cluster_config_status(config, 0, T1).to_api() == config.status.to_api()


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Namespaced config conditions
# ─────────────────────────────────────────────────────────────────────────────

class TestPodPlacementConfigStatus:
    def test_available_in_selected_namespace(self):
        status = pod_placement_config_status(_ppc(7), ClusterPodPlacementConfig(), {}, T0)
        available = _by_type(status)[CONDITION_AVAILABLE]
        assert (available.status, available.reason) == ("True", REASON_AS_EXPECTED)
        assert "priority 7" in available.message

    def test_without_singleton(self):
        status = pod_placement_config_status(_ppc(), None, {}, T0)
        available = _by_type(status)[CONDITION_AVAILABLE]
        assert (available.status, available.reason) == ("False", REASON_CLUSTER_CONFIG_MISSING)

    def test_namespace_excluded_by_singleton(self):
        cluster = ClusterPodPlacementConfig(spec=ClusterPodPlacementConfigSpec(
            namespace_selector=LabelSelector(match_labels={"placement": "on"})
        ))
        excluded = pod_placement_config_status(_ppc(), cluster, {"placement": "off"}, T0)
        available = _by_type(excluded)[CONDITION_AVAILABLE]
        assert (available.status, available.reason) == ("False", REASON_NAMESPACE_NOT_SELECTED)

        included = pod_placement_config_status(_ppc(), cluster, {"placement": "on"}, T1)
        assert _by_type(included)[CONDITION_AVAILABLE].last_transition_time == T1
