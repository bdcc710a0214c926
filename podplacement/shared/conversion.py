"""
podplacement/shared/conversion.py
──────────────────────────────────
Field mapping between the two served schema versions of the cluster config.

v1alpha1 carries logVerbosity + namespaceSelector only.
v1beta1 (the hub, and the only shape the engine reads) adds plugins.

Both directions are pure functions. Going down to v1alpha1 stores the
v1beta1-only `plugins` stanza in an annotation so that converting back up
restores it: alpha → beta → alpha and beta → alpha → beta are both lossless.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional

from pydantic import Field

from podplacement.shared.models import (
    API_GROUP,
    API_VERSION_V1ALPHA1,
    API_VERSION_V1BETA1,
    ApiModel,
    ClusterPodPlacementConfig,
    ClusterPodPlacementConfigSpec,
    ConfigStatus,
    LabelSelector,
    LogVerbosity,
    ObjectMeta,
    Plugins,
    SINGLETON_RESOURCE_NAME,
)

PLUGINS_ANNOTATION = f"{API_GROUP}/v1beta1-plugins"


class ClusterPodPlacementConfigSpecV1Alpha1(ApiModel):
    namespace_selector: Optional[LabelSelector] = None
    log_verbosity: LogVerbosity = LogVerbosity.NORMAL


class ClusterPodPlacementConfigV1Alpha1(ApiModel):
    api_version: str = f"{API_GROUP}/{API_VERSION_V1ALPHA1}"
    kind: str = "ClusterPodPlacementConfig"
    metadata: ObjectMeta = Field(
        default_factory=lambda: ObjectMeta(name=SINGLETON_RESOURCE_NAME)
    )
    spec: ClusterPodPlacementConfigSpecV1Alpha1 = Field(
        default_factory=ClusterPodPlacementConfigSpecV1Alpha1
    )
    status: ConfigStatus = Field(default_factory=ConfigStatus)


def convert_to_hub(src: ClusterPodPlacementConfigV1Alpha1) -> ClusterPodPlacementConfig:
    """v1alpha1 → v1beta1."""
    metadata = src.metadata.model_copy(deep=True)
    annotations = dict(metadata.annotations or {})
    raw_plugins = annotations.pop(PLUGINS_ANNOTATION, None)
    metadata.annotations = annotations or None
    plugins = Plugins.model_validate(json.loads(raw_plugins)) if raw_plugins else None
    return ClusterPodPlacementConfig(
        api_version=f"{API_GROUP}/{API_VERSION_V1BETA1}",
        metadata=metadata,
        spec=ClusterPodPlacementConfigSpec(
            namespace_selector=src.spec.namespace_selector,
            log_verbosity=src.spec.log_verbosity,
            plugins=plugins,
        ),
        status=src.status.model_copy(deep=True),
    )


def convert_from_hub(src: ClusterPodPlacementConfig) -> ClusterPodPlacementConfigV1Alpha1:
    """v1beta1 → v1alpha1."""
    metadata = src.metadata.model_copy(deep=True)
    annotations = dict(metadata.annotations or {})
    if src.spec.plugins is not None:
        annotations[PLUGINS_ANNOTATION] = json.dumps(
            src.spec.plugins.to_api(), sort_keys=True
        )
    metadata.annotations = annotations or None
    return ClusterPodPlacementConfigV1Alpha1(
        metadata=metadata,
        spec=ClusterPodPlacementConfigSpecV1Alpha1(
            namespace_selector=src.spec.namespace_selector,
            log_verbosity=src.spec.log_verbosity,
        ),
        status=src.status.model_copy(deep=True),
    )


def load_cluster_config(obj: Mapping[str, Any]) -> ClusterPodPlacementConfig:
    """
    Parse a raw ClusterPodPlacementConfig of either served version into the
    canonical v1beta1 model.

    Raises:
        pydantic.ValidationError: if the object does not fit its schema.
        ValueError: if apiVersion names an unknown version.
    """
    api_version = obj.get("apiVersion") or f"{API_GROUP}/{API_VERSION_V1BETA1}"
    version = api_version.rsplit("/", 1)[-1]
    if version == API_VERSION_V1BETA1:
        return ClusterPodPlacementConfig.model_validate(obj)
    if version == API_VERSION_V1ALPHA1:
        return convert_to_hub(ClusterPodPlacementConfigV1Alpha1.model_validate(obj))
    raise ValueError(f"unsupported ClusterPodPlacementConfig apiVersion {api_version!r}")
