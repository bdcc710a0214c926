"""
tests/test_cluster_store.py
────────────────────────────
InMemoryClusterStore and the JSON patch applier it shares with the tests.

Test groups:
    Group 1: apply_json_patch
    Group 2: Store reads return copies
    Group 3: patch_pod
    Group 4: Pod watch
    Group 5: Config status
"""

from __future__ import annotations

import threading
from typing import List, Tuple

import pytest

from podplacement.cluster.store import (
    WATCH_ADDED,
    WATCH_DELETED,
    WATCH_MODIFIED,
    InMemoryClusterStore,
    PatchFailedError,
    PodNotFoundError,
    apply_json_patch,
)
from podplacement.shared.models import (
    ClusterPodPlacementConfig,
    Condition,
    ConfigStatus,
    ObjectMeta,
    Pod,
    PodPlacementConfig,
)


def _pod(name: str = "web", labels=None) -> Pod:
    return Pod.model_validate({
        "metadata": {"name": name, "namespace": "app", "labels": labels},
        "spec": {"containers": [{"name": "c", "image": "quay.io/org/app:1"}]},
    })


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: apply_json_patch
# ─────────────────────────────────────────────────────────────────────────────

class TestApplyJsonPatch:
    def test_add_remove_replace(self):
        doc = {"a": {"b": 1}, "l": [1, 2, 3]}
        out = apply_json_patch(doc, [
            {"op": "add", "path": "/a/c", "value": 2},
            {"op": "remove", "path": "/l/0"},
            {"op": "replace", "path": "/a/b", "value": 10},
            {"op": "add", "path": "/l/-", "value": 4},
        ])
        assert out == {"a": {"b": 10, "c": 2}, "l": [2, 3, 4]}
        assert doc == {"a": {"b": 1}, "l": [1, 2, 3]}

    def test_escaped_pointer(self):
        out = apply_json_patch({"labels": {}}, [
            {"op": "add", "path": "/labels/example.io~1key", "value": "v"}
        ])
        assert out == {"labels": {"example.io/key": "v"}}

    def test_failed_test_op(self):
        with pytest.raises(PatchFailedError):
            apply_json_patch({"a": 1}, [{"op": "test", "path": "/a", "value": 2}])

    def test_missing_path(self):
        with pytest.raises(PatchFailedError):
            apply_json_patch({}, [{"op": "remove", "path": "/nope"}])

    def test_unsupported_op(self):
        with pytest.raises(PatchFailedError):
            apply_json_patch({"a": 1}, [{"op": "move", "from": "/a", "path": "/b"}])


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Reads
# ─────────────────────────────────────────────────────────────────────────────

class TestReads:
    def test_get_pod_returns_copy(self):
        store = InMemoryClusterStore()
        store.add_pod(_pod(labels={"a": "1"}))
        store.get_pod("app", "web").metadata.labels["a"] = "changed"
        assert store.get_pod("app", "web").labels == {"a": "1"}

    def test_list_pods_by_label(self):
        store = InMemoryClusterStore()
        store.add_pod(_pod("a", labels={"gate": "gated"}))
        store.add_pod(_pod("b", labels={"gate": "removed"}))
        assert [p.name for p in store.list_pods({"gate": "gated"})] == ["a"]
        assert len(store.list_pods()) == 2

    def test_pod_placement_configs_by_namespace(self):
        store = InMemoryClusterStore()
        for ns, name in (("x", "a"), ("y", "b")):
            store.put_pod_placement_config(PodPlacementConfig(metadata=ObjectMeta(name=name, namespace=ns)))
        assert [c.name for c in store.list_pod_placement_configs("y")] == ["b"]
        assert len(store.config_snapshot().pod_placement_configs) == 2

    def test_pull_secrets_missing_skipped(self):
        store = InMemoryClusterStore()
        store.put_pull_secret("app", "one", {"auths": {}})
        assert store.pull_secret_configs("app", ["one", "two"]) == [{"auths": {}}]


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: patch_pod
# ─────────────────────────────────────────────────────────────────────────────

class TestPatchPod:
    def test_patch_applies_and_persists(self):
        store = InMemoryClusterStore()
        store.add_pod(_pod())
        store.patch_pod("app", "web", [{"op": "add", "path": "/spec/nodeName", "value": "n1"}])
        assert store.get_pod("app", "web").spec.node_name == "n1"

    def test_patch_missing_pod(self):
        with pytest.raises(PodNotFoundError):
            InMemoryClusterStore().patch_pod("app", "web", [])

    def test_failed_patch_leaves_pod_unchanged(self):
        store = InMemoryClusterStore()
        store.add_pod(_pod(labels={"a": "1"}))
        with pytest.raises(PatchFailedError):
            store.patch_pod("app", "web", [
                {"op": "add", "path": "/metadata/labels/b", "value": "2"},
                {"op": "test", "path": "/metadata/labels/a", "value": "nope"},
            ])
        assert store.get_pod("app", "web").labels == {"a": "1"}


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Pod watch
# ─────────────────────────────────────────────────────────────────────────────

_GATED = {"gate": "gated"}


class _Watching:
    """Runs InMemoryClusterStore.watch_pods on a thread and records events."""

    def __init__(self, store: InMemoryClusterStore, handler=None) -> None:
        self.store = store
        self.events: List[Tuple[str, str, dict]] = []
        self.stop = threading.Event()
        self._handler = handler or self._record
        self.thread = threading.Thread(
            target=store.watch_pods, args=(_GATED, self._handler, self.stop), daemon=True
        )

    def _record(self, event_type: str, pod: Pod) -> None:
        self.events.append((event_type, pod.name, dict(pod.labels)))

    def __enter__(self) -> "_Watching":
        self.thread.start()
        while not self.store._watchers:
            self.stop.wait(0.01)
        return self

    def __exit__(self, *exc) -> None:
        self.stop.set()
        self.thread.join(timeout=5)


class TestWatchPods:
    def test_added_modified_and_deleted(self):
        store = InMemoryClusterStore()
        with _Watching(store) as w:
            store.add_pod(_pod(labels={"gate": "gated"}))
            store.patch_pod("app", "web", [{"op": "add", "path": "/metadata/labels/x", "value": "1"}])
            store.delete_pod("app", "web")
        assert [(t, n) for t, n, _ in w.events] == [
            (WATCH_ADDED, "web"), (WATCH_MODIFIED, "web"), (WATCH_DELETED, "web"),
        ]

    def test_pod_leaving_the_selector_is_deleted_with_new_labels(self):
        store = InMemoryClusterStore()
        store.add_pod(_pod(labels={"gate": "gated"}))
        with _Watching(store) as w:
            store.patch_pod("app", "web", [{"op": "replace", "path": "/metadata/labels/gate", "value": "removed"}])
        assert w.events == [(WATCH_DELETED, "web", {"gate": "removed"})]

    def test_unselected_pods_are_not_reported(self):
        store = InMemoryClusterStore()
        with _Watching(store) as w:
            store.add_pod(_pod("other", labels={"gate": "removed"}))
            store.delete_pod("app", "other")
        assert w.events == []

    def test_handler_error_does_not_reach_the_writer(self):
        def boom(event_type, pod):
            raise RuntimeError("handler bug")

        store = InMemoryClusterStore()
        with _Watching(store, boom):
            store.add_pod(_pod(labels={"gate": "gated"}))
        assert store.get_pod("app", "web") is not None

    def test_watcher_removed_after_stop(self):
        store = InMemoryClusterStore()
        with _Watching(store) as w:
            pass
        assert not w.thread.is_alive()
        assert store._watchers == []

    def test_returns_after_timeout(self):
        store = InMemoryClusterStore()
        store.watch_pods(_GATED, lambda t, p: None, threading.Event(), timeout_s=0.01)
        assert store._watchers == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Config status
# ─────────────────────────────────────────────────────────────────────────────

def _status(reason: str) -> ConfigStatus:
    return ConfigStatus(conditions=[Condition(type="Available", status="True", reason=reason)])


class TestUpdateConfigStatus:
    def test_cluster_config_status_stored(self):
        store = InMemoryClusterStore()
        store.put_cluster_config(ClusterPodPlacementConfig())
        store.update_config_status(store.get_cluster_config(), _status("AsExpected"))
        [condition] = store.get_cluster_config().status.conditions
        assert condition.reason == "AsExpected"

    def test_pod_placement_config_status_stored(self):
        store = InMemoryClusterStore()
        ppc = PodPlacementConfig(metadata=ObjectMeta(name="p", namespace="app"))
        store.put_pod_placement_config(ppc)
        store.update_config_status(ppc, _status("AsExpected"))
        [stored] = store.list_pod_placement_configs("app")
        assert stored.status.conditions[0].reason == "AsExpected"

    def test_deleted_configs_are_ignored(self):
        store = InMemoryClusterStore()
        store.update_config_status(ClusterPodPlacementConfig(), _status("AsExpected"))
        store.update_config_status(
            PodPlacementConfig(metadata=ObjectMeta(name="p", namespace="app")), _status("AsExpected")
        )
        assert store.get_cluster_config() is None
        assert store.list_pod_placement_configs() == []
