"""
podplacement/control_plane — the placement engine.

Public API:

    Admission (synchronous, no registry I/O):
        gate_pod()                    — pod CREATE → gate + label patch, or nothing
        validate_cluster_config()     — singleton checks
        validate_pod_placement_config() — namespaced config checks
        ValidationDeniedError         — raised by the validators
        validate_config_review()      — AdmissionReview boundary for configs
        mutate_pod_review()           — AdmissionReview boundary for pods

    Resolution (asynchronous):
        PlacementController           — worker pool over gated pods
        resolve_placement()           — which config applies to a pod
        inspect_pod_images()          — probe every image, intersect
        merge_affinity()              — architecture set + user affinity → new affinity

    Status:
        cluster_config_status()       — conditions for the singleton
        pod_placement_config_status() — conditions for a namespaced config
"""

from podplacement.control_plane.affinity_merge import (
    MergeOutcome,
    MergeResult,
    merge_affinity,
)
from podplacement.control_plane.config_resolver import (
    ResolvedPlacement,
    resolve_placement,
)
from podplacement.control_plane.config_status import (
    cluster_config_status,
    pod_placement_config_status,
)
from podplacement.control_plane.config_validator import (
    ValidationDeniedError,
    validate_cluster_config,
    validate_cluster_config_delete,
    validate_pod_placement_config,
)
from podplacement.control_plane.placement_controller import (
    PlacementController,
    ReconcileResult,
)
from podplacement.control_plane.pod_admission import (
    GatingDecision,
    gate_pod,
    ungate_patch,
)
from podplacement.control_plane.pod_architectures import (
    PodArchitectureResult,
    inspect_pod_images,
)
from podplacement.control_plane.webhook import (
    mutate_pod_review,
    validate_config_review,
)

__all__ = [
    "MergeOutcome",
    "MergeResult",
    "merge_affinity",
    "ResolvedPlacement",
    "resolve_placement",
    "cluster_config_status",
    "pod_placement_config_status",
    "ValidationDeniedError",
    "validate_cluster_config",
    "validate_cluster_config_delete",
    "validate_pod_placement_config",
    "PlacementController",
    "ReconcileResult",
    "GatingDecision",
    "gate_pod",
    "ungate_patch",
    "PodArchitectureResult",
    "inspect_pod_images",
    "mutate_pod_review",
    "validate_config_review",
]
