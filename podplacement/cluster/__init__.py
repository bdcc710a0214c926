"""
podplacement/cluster — the engine's view of cluster state.

Public API:
    ClusterStore            — protocol every backend implements
    InMemoryClusterStore    — dict-backed store for tests and local runs
    PodNotFoundError        — pod vanished between read and write
    PatchFailedError        — JSON patch rejected
    WATCH_ADDED / WATCH_MODIFIED / WATCH_DELETED
                            — event types delivered by watch_pods()

KubernetesClusterStore lives in podplacement.cluster.kube_store and is not
imported here, so the in-memory store works without a kubeconfig.
"""

from podplacement.cluster.store import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    WATCH_ADDED,
    WATCH_DELETED,
    WATCH_MODIFIED,
    ClusterStore,
    InMemoryClusterStore,
    PatchFailedError,
    PodEvent,
    PodNotFoundError,
    PodWatchHandler,
    apply_json_patch,
)

__all__ = [
    "EVENT_TYPE_NORMAL",
    "EVENT_TYPE_WARNING",
    "WATCH_ADDED",
    "WATCH_DELETED",
    "WATCH_MODIFIED",
    "ClusterStore",
    "InMemoryClusterStore",
    "PatchFailedError",
    "PodEvent",
    "PodNotFoundError",
    "PodWatchHandler",
    "apply_json_patch",
]
