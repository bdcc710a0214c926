"""
podplacement/shared/models.py
─────────────────────────────
The single source of truth for every data structure the placement engine
reads or writes.

Design philosophy
-----------------
Every model answers one question: "What does the engine *need to know*
about this object in order to decide where a pod may run?"

The orchestrator hands us raw JSON (camelCase). Each model below accepts
that JSON directly (aliases are generated from the snake_case field names)
and dumps back to the same shape with `to_api()`. Pod-side models keep any
field they do not declare (`extra="allow"`) so that a parse → patch cycle
never loses user data.

Reading guide
-------------
Read top-to-bottom. Each section builds on the ones above it.
  1. Constants and enumerations
  2. Label selectors
  3. Pod subset (affinity, containers, metadata)
  4. Placement configuration objects (cluster singleton + namespaced)
  5. Image registry policy
  6. Configuration snapshot
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: CONSTANTS AND ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

API_GROUP = "multiarch.openshift.io"
API_VERSION_V1BETA1 = "v1beta1"
API_VERSION_V1ALPHA1 = "v1alpha1"

SINGLETON_RESOURCE_NAME = "cluster"
"""The only accepted name for the cluster-scoped ClusterPodPlacementConfig."""

ARCH_LABEL = "kubernetes.io/arch"
HOSTNAME_LABEL = "kubernetes.io/hostname"

SCHEDULING_GATE_NAME = "multiarch.openshift.io/scheduling-gate"
SCHEDULING_GATE_LABEL = SCHEDULING_GATE_NAME
SCHEDULING_GATE_LABEL_VALUE_GATED = "gated"
SCHEDULING_GATE_LABEL_VALUE_REMOVED = "removed"

CONTROL_PLANE_NODE_LABELS: Tuple[str, ...] = (
    "node-role.kubernetes.io/master",
    "node-role.kubernetes.io/control-plane",
)
"""Node-role labels that pin a pod to control-plane nodes (exempt from placement)."""


class Architecture(str, Enum):
    """
    CPU architectures a cluster node can report in its `kubernetes.io/arch`
    label and that a scoring term may reference.
    """
    AMD64 = "amd64"
    ARM64 = "arm64"
    PPC64LE = "ppc64le"
    S390X = "s390x"


SUPPORTED_ARCHITECTURES: FrozenSet[str] = frozenset(a.value for a in Architecture)


class LogVerbosity(str, Enum):
    """
    Log level requested by the cluster operator in the singleton config.

    Normal   → INFO
    Debug    → DEBUG
    Trace    → per-image probing detail
    TraceAll → every registry request
    """
    NORMAL = "Normal"
    DEBUG = "Debug"
    TRACE = "Trace"
    TRACE_ALL = "TraceAll"


class PlacementState(str, Enum):
    """
    Lifecycle of one pod as seen by the engine.

    CREATED      → Admission request received, nothing decided yet.
    GATED        → Scheduling gate attached, resolution pending.
    MUTATED      → Gate removed and architecture affinity written.
    UNMUTATED    → Gate removed, pod left with its original constraints.
    OUT_OF_SCOPE → Never gated (namespace excluded or explicit placement).
    """
    CREATED = "Created"
    GATED = "Gated"
    MUTATED = "Mutated"
    UNMUTATED = "Unmutated"
    OUT_OF_SCOPE = "OutOfScope"


class MirrorSourcePolicy(str, Enum):
    """Whether the source registry may still be contacted when mirrors are set."""
    ALLOW_CONTACTING_SOURCE = "AllowContactingSource"
    NEVER_CONTACT_SOURCE = "NeverContactSource"


class MirrorKind(str, Enum):
    """
    DIGEST → rule from an ImageDigestMirrorSet; applies to `@sha256:` references.
    TAG    → rule from an ImageTagMirrorSet; applies to `:tag` references.
    """
    DIGEST = "digest"
    TAG = "tag"


class ApiModel(BaseModel):
    """Base for every orchestrator-facing model: camelCase aliases, by-name population."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_api(self) -> Dict[str, Any]:
        """Dump to the orchestrator's JSON shape (camelCase, no nulls)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class OpenApiModel(ApiModel):
    """An ApiModel that keeps fields it does not declare."""
    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, extra="allow"
    )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: LABEL SELECTORS
# ─────────────────────────────────────────────────────────────────────────────

class LabelSelectorRequirement(ApiModel):
    key: str
    operator: str = Field(..., description="In, NotIn, Exists or DoesNotExist")
    values: List[str] = Field(default_factory=list)


class LabelSelector(ApiModel):
    """
    Standard label selector. Requirements are ANDed. The empty selector
    matches everything.
    """
    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_expressions: List[LabelSelectorRequirement] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: POD SUBSET
# Only the fields the engine reads are declared; everything else rides along.
# ─────────────────────────────────────────────────────────────────────────────

class NodeSelectorRequirement(ApiModel):
    """One expression inside a node selector term, e.g. `kubernetes.io/arch In [arm64]`."""
    key: str
    operator: str
    values: Optional[List[str]] = None


class NodeSelectorTerm(ApiModel):
    """
    A node selector term. Expressions within a term are ANDed; terms inside
    a NodeSelector are ORed.
    """
    match_expressions: Optional[List[NodeSelectorRequirement]] = None
    match_fields: Optional[List[NodeSelectorRequirement]] = None


class NodeSelector(ApiModel):
    node_selector_terms: List[NodeSelectorTerm] = Field(default_factory=list)


class PreferredSchedulingTerm(ApiModel):
    weight: int = Field(..., ge=1, le=100)
    preference: NodeSelectorTerm


class NodeAffinity(ApiModel):
    required_during_scheduling_ignored_during_execution: Optional[NodeSelector] = None
    preferred_during_scheduling_ignored_during_execution: Optional[
        List[PreferredSchedulingTerm]
    ] = None


class Affinity(OpenApiModel):
    """Pod affinity block. podAffinity / podAntiAffinity are kept as opaque extras."""
    node_affinity: Optional[NodeAffinity] = None


class Container(OpenApiModel):
    name: str = ""
    image: Optional[str] = None


class LocalObjectReference(ApiModel):
    name: str


class PodSchedulingGate(ApiModel):
    name: str


class OwnerReference(OpenApiModel):
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: Optional[bool] = None


class ObjectMeta(OpenApiModel):
    name: Optional[str] = None
    generate_name: Optional[str] = None
    namespace: Optional[str] = None
    uid: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None
    owner_references: Optional[List[OwnerReference]] = None
    deletion_timestamp: Optional[str] = None


class PodSpec(OpenApiModel):
    """
    The scheduling-relevant part of a pod spec.

    Fields:
        containers / init_containers → every image the pod will pull.
        image_pull_secrets            → names of dockerconfigjson secrets in
                                        the pod namespace.
        node_name / node_selector     → explicit placement directives; the
                                        engine never overrides them.
        affinity                      → user affinity the merge engine
                                        combines with the architecture term.
        scheduling_gates              → where the engine's pending marker lives.
    """
    containers: List[Container] = Field(default_factory=list)
    init_containers: Optional[List[Container]] = None
    image_pull_secrets: Optional[List[LocalObjectReference]] = None
    node_name: Optional[str] = None
    node_selector: Optional[Dict[str, str]] = None
    affinity: Optional[Affinity] = None
    scheduling_gates: Optional[List[PodSchedulingGate]] = None


class Pod(OpenApiModel):
    api_version: str = "v1"
    kind: str = "Pod"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PodSpec = Field(default_factory=PodSpec)

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    @property
    def name(self) -> str:
        return self.metadata.name or self.metadata.generate_name or ""

    @property
    def key(self) -> str:
        """`namespace/name`, the work-queue key for this pod."""
        return f"{self.namespace}/{self.name}"

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.labels or {}

    def images(self) -> List[str]:
        """Unique images across init and regular containers, in declaration order."""
        seen: List[str] = []
        for container in (self.spec.init_containers or []) + self.spec.containers:
            if container.image and container.image not in seen:
                seen.append(container.image)
        return seen

    def pull_secret_names(self) -> List[str]:
        return [ref.name for ref in self.spec.image_pull_secrets or [] if ref.name]

    def has_scheduling_gate(self, gate_name: str = SCHEDULING_GATE_NAME) -> bool:
        return any(g.name == gate_name for g in self.spec.scheduling_gates or [])


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: PLACEMENT CONFIGURATION OBJECTS
# ─────────────────────────────────────────────────────────────────────────────

class NodeAffinityScoringPlatformTerm(ApiModel):
    """
    One (architecture, weight) pair of the scoring plugin.

    The weight bounds are schema-level. Whether the architecture is set,
    recognised and unique is checked at admission by config_validator.
    """
    architecture: str = ""
    weight: int = Field(..., ge=1, le=100)


class NodeAffinityScoring(ApiModel):
    """
    Soft-placement plugin: each platform term becomes a preferred node
    affinity term with the given weight.
    """
    enabled: bool = False
    platforms: List[NodeAffinityScoringPlatformTerm] = Field(default_factory=list)


class Plugins(ApiModel):
    node_affinity_scoring: Optional[NodeAffinityScoring] = None

    @property
    def scoring(self) -> Optional[NodeAffinityScoring]:
        """The scoring plugin if present and enabled, else None."""
        nas = self.node_affinity_scoring
        if nas is not None and nas.enabled:
            return nas
        return None


class Condition(ApiModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = None


class ConfigStatus(ApiModel):
    conditions: List[Condition] = Field(default_factory=list)


class ClusterPodPlacementConfigSpec(ApiModel):
    namespace_selector: Optional[LabelSelector] = Field(
        None,
        description="Namespaces the engine operates on. None = every namespace.",
    )
    log_verbosity: LogVerbosity = LogVerbosity.NORMAL
    plugins: Optional[Plugins] = None


class ClusterPodPlacementConfig(ApiModel):
    """
    Cluster-scoped singleton (name `cluster`). Its existence switches the
    engine on; its namespaceSelector decides which namespaces take part.
    """
    api_version: str = f"{API_GROUP}/{API_VERSION_V1BETA1}"
    kind: str = "ClusterPodPlacementConfig"
    metadata: ObjectMeta = Field(
        default_factory=lambda: ObjectMeta(name=SINGLETON_RESOURCE_NAME)
    )
    spec: ClusterPodPlacementConfigSpec = Field(default_factory=ClusterPodPlacementConfigSpec)
    status: ConfigStatus = Field(default_factory=ConfigStatus)

    @property
    def name(self) -> str:
        return self.metadata.name or ""


class PodPlacementConfigSpec(ApiModel):
    priority: int = Field(
        0, ge=0, le=255,
        description="Higher wins. Unique among the configs of one namespace.",
    )
    label_selector: Optional[LabelSelector] = Field(
        None,
        description="Pods this config applies to. None = every pod in the namespace.",
    )
    plugins: Optional[Plugins] = None


class PodPlacementConfig(ApiModel):
    """Namespaced configuration that overrides the singleton's plugins for some pods."""
    api_version: str = f"{API_GROUP}/{API_VERSION_V1BETA1}"
    kind: str = "PodPlacementConfig"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PodPlacementConfigSpec = Field(default_factory=PodPlacementConfigSpec)
    status: ConfigStatus = Field(default_factory=ConfigStatus)

    @property
    def name(self) -> str:
        return self.metadata.name or ""

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: IMAGE REGISTRY POLICY
# Read-only view of the cluster-wide image configuration.
# ─────────────────────────────────────────────────────────────────────────────

class ImageMirrorRule(ApiModel):
    """
    One source → mirrors mapping from an ImageDigestMirrorSet or
    ImageTagMirrorSet.

    Fields:
        source               → repository (or registry) being mirrored,
                               e.g. "quay.io/openshifttest".
        mirrors              → replacement locations, tried in order.
        mirror_source_policy → NeverContactSource drops the source from the
                               candidate list entirely.
        kind                 → which reference form the rule applies to.
    """
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    source: str
    mirrors: Tuple[str, ...] = ()
    mirror_source_policy: MirrorSourcePolicy = MirrorSourcePolicy.ALLOW_CONTACTING_SOURCE
    kind: MirrorKind = MirrorKind.DIGEST


class ImageRegistryPolicy(ApiModel):
    """
    Registry trust and mirroring policy.

    insecure_registries     → TLS verification skipped (plain HTTP allowed).
    blocked_registries      → never contacted; images from them are denied.
    allowed_registries      → if non-empty, the only registries contacted.
    mirror_rules            → digest and tag mirror rules, declaration order.
    additional_trusted_cas  → registry host (optionally host:port) → PEM bundle.
    """
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    insecure_registries: Tuple[str, ...] = ()
    blocked_registries: Tuple[str, ...] = ()
    allowed_registries: Tuple[str, ...] = ()
    mirror_rules: Tuple[ImageMirrorRule, ...] = ()
    additional_trusted_cas: Dict[str, str] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: CONFIGURATION SNAPSHOT
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable view of every placement configuration at one instant.

    The configuration resolver is a pure function over this snapshot; the
    store builds a fresh one for every pod so nothing is cached between
    resolutions.
    """
    cluster_config: Optional[ClusterPodPlacementConfig] = None
    pod_placement_configs: Tuple[PodPlacementConfig, ...] = field(default_factory=tuple)

    def for_namespace(self, namespace: str) -> Tuple[PodPlacementConfig, ...]:
        return tuple(c for c in self.pod_placement_configs if c.namespace == namespace)
