"""
podplacement/cluster/store.py
──────────────────────────────
ClusterStore: everything the engine reads from, or writes to, the cluster.

What this is
─────────────
The engine never talks to the orchestrator API directly. It goes through
this protocol, which has two implementations:

    InMemoryClusterStore      (this file) — dict-backed, for tests and
                              local runs; applies JSON patches itself.
    KubernetesClusterStore    (kube_store.py) — the official `kubernetes`
                              client.

Reads vs writes
────────────────
The engine only WRITES three things: pod JSON patches, events and the
status of placement configs. Specs of placement configs, namespaces,
registry policy and secrets are read-only to it and are re-read on every
call (no caching here), so policy changes take effect on the next
resolution.

Watching pods
──────────────
watch_pods() blocks, delivering ADDED / MODIFIED / DELETED for pods that
match a label selector, until stop_event is set or timeout_s elapses.
A pod whose labels stop matching is reported as DELETED, as the API
server does. Callers re-establish the watch in a loop.

Integration contract
─────────────────────
    store = InMemoryClusterStore()
    store.put_cluster_config(ClusterPodPlacementConfig())
    store.add_pod(pod)
    controller = PlacementController(store, ...)
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from podplacement.shared.models import (
    ClusterPodPlacementConfig,
    ConfigSnapshot,
    ConfigStatus,
    ImageRegistryPolicy,
    Pod,
    PodPlacementConfig,
)

logger = logging.getLogger(__name__)

JsonPatch = List[Dict[str, Any]]

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

WATCH_ADDED = "ADDED"
WATCH_MODIFIED = "MODIFIED"
WATCH_DELETED = "DELETED"

PodWatchHandler = Callable[[str, Pod], None]
PlacementConfig = Union[ClusterPodPlacementConfig, PodPlacementConfig]


class PodNotFoundError(Exception):
    """The pod no longer exists (deleted between read and write)."""

    def __init__(self, namespace: str, name: str) -> None:
        self.namespace = namespace
        self.name = name
        super().__init__(f"pod {namespace}/{name} not found")


class PatchFailedError(Exception):
    """
    A JSON patch could not be applied (failed `test`, bad path, or the API
    server refused it).

    Attributes:
        reason: Human-readable explanation.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True)
class PodEvent:
    namespace: str
    pod_name: str
    event_type: str
    reason: str
    message: str


class ClusterStore(Protocol):

    def get_pod(self, namespace: str, name: str) -> Optional[Pod]:
        ...

    def list_pods(self, label_selector: Optional[Mapping[str, str]] = None) -> List[Pod]:
        ...

    def patch_pod(self, namespace: str, name: str, patch: JsonPatch) -> Pod:
        ...

    def namespace_labels(self, namespace: str) -> Dict[str, str]:
        ...

    def get_cluster_config(self) -> Optional[ClusterPodPlacementConfig]:
        ...

    def list_pod_placement_configs(self, namespace: Optional[str] = None) -> List[PodPlacementConfig]:
        ...

    def config_snapshot(self) -> ConfigSnapshot:
        ...

    def registry_policy(self) -> ImageRegistryPolicy:
        ...

    def pull_secret_configs(self, namespace: str, names: Sequence[str]) -> List[Dict[str, Any]]:
        ...

    def global_pull_secret(self) -> Optional[Dict[str, Any]]:
        ...

    def record_event(self, pod: Pod, event_type: str, reason: str, message: str) -> None:
        ...

    def update_config_status(self, config: PlacementConfig, status: ConfigStatus) -> None:
        ...

    def watch_pods(
        self,
        label_selector: Mapping[str, str],
        on_event: PodWatchHandler,
        stop_event: threading.Event,
        timeout_s: Optional[float] = None,
    ) -> None:
        ...


class InMemoryClusterStore:
    """
    Thread-safe, dict-backed ClusterStore.

    Every getter returns a deep copy, so callers can never mutate stored
    state except through patch_pod().
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._pods: Dict[Tuple[str, str], Pod] = {}
        self._namespaces: Dict[str, Dict[str, str]] = {}
        self._cluster_config: Optional[ClusterPodPlacementConfig] = None
        self._ppcs: Dict[Tuple[str, str], PodPlacementConfig] = {}
        self._policy = ImageRegistryPolicy()
        self._secrets: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._global_pull_secret: Optional[Dict[str, Any]] = None
        self.events: List[PodEvent] = []
        self._watchers: List[Tuple[Dict[str, str], PodWatchHandler]] = []

    # ── Seeding (tests / local runs) ──────────────────────────────────────────

    def add_pod(self, pod: Pod) -> None:
        with self._lock:
            old = self._pods.get((pod.namespace, pod.name))
            stored = pod.model_copy(deep=True)
            self._pods[(pod.namespace, pod.name)] = stored
            self._namespaces.setdefault(pod.namespace, {})
        self._notify(old, stored)

    def delete_pod(self, namespace: str, name: str) -> None:
        with self._lock:
            old = self._pods.pop((namespace, name), None)
        self._notify(old, None)

    def set_namespace_labels(self, namespace: str, labels: Mapping[str, str]) -> None:
        with self._lock:
            self._namespaces[namespace] = dict(labels)

    def put_cluster_config(self, config: ClusterPodPlacementConfig) -> None:
        with self._lock:
            self._cluster_config = config.model_copy(deep=True)

    def delete_cluster_config(self) -> None:
        with self._lock:
            self._cluster_config = None

    def put_pod_placement_config(self, config: PodPlacementConfig) -> None:
        with self._lock:
            self._ppcs[(config.namespace, config.name)] = config.model_copy(deep=True)

    def delete_pod_placement_config(self, namespace: str, name: str) -> None:
        with self._lock:
            self._ppcs.pop((namespace, name), None)

    def set_registry_policy(self, policy: ImageRegistryPolicy) -> None:
        with self._lock:
            self._policy = policy

    def put_pull_secret(self, namespace: str, name: str, docker_config: Mapping[str, Any]) -> None:
        with self._lock:
            self._secrets[(namespace, name)] = copy.deepcopy(dict(docker_config))

    def set_global_pull_secret(self, docker_config: Optional[Mapping[str, Any]]) -> None:
        with self._lock:
            self._global_pull_secret = copy.deepcopy(dict(docker_config)) if docker_config else None

    # ── ClusterStore ──────────────────────────────────────────────────────────

    def get_pod(self, namespace: str, name: str) -> Optional[Pod]:
        with self._lock:
            pod = self._pods.get((namespace, name))
            return pod.model_copy(deep=True) if pod else None

    def list_pods(self, label_selector: Optional[Mapping[str, str]] = None) -> List[Pod]:
        with self._lock:
            pods = list(self._pods.values())
        selector = dict(label_selector or {})
        return [p.model_copy(deep=True) for p in pods if _selects(selector, p)]

    def patch_pod(self, namespace: str, name: str, patch: JsonPatch) -> Pod:
        with self._lock:
            pod = self._pods.get((namespace, name))
            if pod is None:
                raise PodNotFoundError(namespace, name)
            doc = apply_json_patch(pod.model_dump(by_alias=True, exclude_none=True, mode="json"), patch)
            patched = Pod.model_validate(doc)
            self._pods[(namespace, name)] = patched
        self._notify(pod, patched)
        return patched.model_copy(deep=True)

    def namespace_labels(self, namespace: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._namespaces.get(namespace, {}))

    def get_cluster_config(self) -> Optional[ClusterPodPlacementConfig]:
        with self._lock:
            return self._cluster_config.model_copy(deep=True) if self._cluster_config else None

    def list_pod_placement_configs(self, namespace: Optional[str] = None) -> List[PodPlacementConfig]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for (ns, _), c in sorted(self._ppcs.items())
                if namespace is None or ns == namespace
            ]

    def config_snapshot(self) -> ConfigSnapshot:
        with self._lock:
            return ConfigSnapshot(
                cluster_config=self.get_cluster_config(),
                pod_placement_configs=tuple(self.list_pod_placement_configs()),
            )

    def registry_policy(self) -> ImageRegistryPolicy:
        with self._lock:
            return self._policy

    def pull_secret_configs(self, namespace: str, names: Sequence[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        with self._lock:
            for name in names:
                config = self._secrets.get((namespace, name))
                if config is None:
                    logger.debug("Pull secret %s/%s not found", namespace, name)
                    continue
                out.append(copy.deepcopy(config))
        return out

    def global_pull_secret(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._global_pull_secret)

    def record_event(self, pod: Pod, event_type: str, reason: str, message: str) -> None:
        with self._lock:
            self.events.append(PodEvent(pod.namespace, pod.name, event_type, reason, message))

    def update_config_status(self, config: PlacementConfig, status: ConfigStatus) -> None:
        with self._lock:
            if isinstance(config, ClusterPodPlacementConfig):
                stored = self._cluster_config
                if stored is None or stored.name != config.name:
                    logger.debug("ClusterPodPlacementConfig %s gone; status not written", config.name)
                    return
                self._cluster_config = stored.model_copy(update={"status": status.model_copy(deep=True)})
                return
            key = (config.namespace, config.name)
            stored_ppc = self._ppcs.get(key)
            if stored_ppc is None:
                logger.debug("PodPlacementConfig %s/%s gone; status not written", *key)
                return
            self._ppcs[key] = stored_ppc.model_copy(update={"status": status.model_copy(deep=True)})

    def watch_pods(
        self,
        label_selector: Mapping[str, str],
        on_event: PodWatchHandler,
        stop_event: threading.Event,
        timeout_s: Optional[float] = None,
    ) -> None:
        watcher = (dict(label_selector or {}), on_event)
        with self._lock:
            self._watchers.append(watcher)
        try:
            stop_event.wait(timeout_s)
        finally:
            with self._lock:
                self._watchers.remove(watcher)

    def events_for(self, namespace: str, name: str) -> List[PodEvent]:
        with self._lock:
            return [e for e in self.events if e.namespace == namespace and e.pod_name == name]

    def _notify(self, old: Optional[Pod], new: Optional[Pod]) -> None:
        with self._lock:
            watchers = list(self._watchers)
        for selector, on_event in watchers:
            old_match = old is not None and _selects(selector, old)
            new_match = new is not None and _selects(selector, new)
            if new_match:
                event = (WATCH_MODIFIED if old_match else WATCH_ADDED, new)
            elif old_match:
                event = (WATCH_DELETED, new if new is not None else old)
            else:
                continue
            try:
                on_event(event[0], event[1].model_copy(deep=True))
            except Exception:
                logger.exception("Pod watch handler failed on %s %s", event[0], event[1].key)


def _selects(selector: Mapping[str, str], pod: Pod) -> bool:
    labels = pod.labels
    return all(labels.get(k) == v for k, v in selector.items())


# ── JSON patch (RFC 6902 subset: add, remove, replace, test) ─────────────────

def apply_json_patch(doc: Any, patch: JsonPatch) -> Any:
    """
    Apply `patch` to a deep copy of `doc` and return the copy.

    Raises:
        PatchFailedError: on a failed test, an unknown op or a bad path.
    """
    result = copy.deepcopy(doc)
    for op in patch:
        kind = op.get("op")
        tokens = _parse_pointer(op.get("path", ""))
        if kind == "test":
            if _resolve(result, tokens) != op.get("value"):
                raise PatchFailedError(f"test failed at {op.get('path')}")
            continue
        if not tokens:
            raise PatchFailedError(f"{kind} on the document root is not supported")
        parent = _resolve(result, tokens[:-1])
        key = tokens[-1]
        if kind == "add":
            _add(parent, key, copy.deepcopy(op.get("value")), op["path"])
        elif kind == "remove":
            _remove(parent, key, op["path"])
        elif kind == "replace":
            _remove(parent, key, op["path"])
            _add(parent, key, copy.deepcopy(op.get("value")), op["path"])
        else:
            raise PatchFailedError(f"unsupported patch op {kind!r}")
    return result


def _parse_pointer(path: str) -> List[str]:
    if path == "":
        return []
    if not path.startswith("/"):
        raise PatchFailedError(f"invalid JSON pointer {path!r}")
    return [t.replace("~1", "/").replace("~0", "~") for t in path[1:].split("/")]


def _resolve(doc: Any, tokens: Sequence[str]) -> Any:
    node = doc
    for token in tokens:
        if isinstance(node, dict):
            if token not in node:
                raise PatchFailedError(f"path segment {token!r} does not exist")
            node = node[token]
        elif isinstance(node, list):
            try:
                node = node[int(token)]
            except (ValueError, IndexError) as exc:
                raise PatchFailedError(f"bad list index {token!r}") from exc
        else:
            raise PatchFailedError(f"cannot descend into {type(node).__name__} at {token!r}")
    return node


def _add(parent: Any, key: str, value: Any, path: str) -> None:
    if isinstance(parent, dict):
        parent[key] = value
    elif isinstance(parent, list):
        if key == "-":
            parent.append(value)
            return
        try:
            index = int(key)
        except ValueError as exc:
            raise PatchFailedError(f"bad list index in {path}") from exc
        if not 0 <= index <= len(parent):
            raise PatchFailedError(f"list index out of range in {path}")
        parent.insert(index, value)
    else:
        raise PatchFailedError(f"cannot add at {path}")


def _remove(parent: Any, key: str, path: str) -> None:
    if isinstance(parent, dict):
        if key not in parent:
            raise PatchFailedError(f"nothing to remove at {path}")
        del parent[key]
    elif isinstance(parent, list):
        try:
            del parent[int(key)]
        except (ValueError, IndexError) as exc:
            raise PatchFailedError(f"nothing to remove at {path}") from exc
    else:
        raise PatchFailedError(f"cannot remove at {path}")
