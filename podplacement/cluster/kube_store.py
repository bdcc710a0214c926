"""
podplacement/cluster/kube_store.py
───────────────────────────────────
KubernetesClusterStore: the ClusterStore protocol over the official
`kubernetes` Python client.

Objects read
─────────────
  pods, namespaces, secrets            CoreV1Api
  clusterpodplacementconfigs           CustomObjectsApi, multiarch.openshift.io
  podplacementconfigs                  (v1beta1 and v1alpha1 both accepted)
  images/cluster                       CustomObjectsApi, config.openshift.io/v1
  imagedigestmirrorsets
  imagetagmirrorsets
  openshift-config/pull-secret         cluster-wide pull secret
  openshift-config/<additionalTrustedCA.name>
                                       CA bundles keyed by registry host

Objects written
────────────────
  pods      JSON patch (patch_namespaced_pod with a list body)
  events    create_namespaced_event
  status    merge patch on the status subresource of both config kinds

Pods are also watched (kubernetes.watch over list_pod_for_all_namespaces).
A watch ends when its server-side timeout expires or its resourceVersion
is too old (HTTP 410); the caller simply starts a new one, which begins
with an ADDED event for every matching pod.

Every read hits the API server; nothing is cached here.
"""

from __future__ import annotations

import datetime
import logging
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from image_inspect.credentials import docker_config_from_secret_data
from podplacement.cluster.store import (
    WATCH_ADDED,
    WATCH_DELETED,
    WATCH_MODIFIED,
    JsonPatch,
    PatchFailedError,
    PlacementConfig,
    PodNotFoundError,
    PodWatchHandler,
)
from podplacement.shared.conversion import load_cluster_config
from podplacement.shared.models import (
    API_GROUP,
    API_VERSION_V1BETA1,
    SINGLETON_RESOURCE_NAME,
    ClusterPodPlacementConfig,
    ConfigSnapshot,
    ConfigStatus,
    ImageMirrorRule,
    ImageRegistryPolicy,
    MirrorKind,
    MirrorSourcePolicy,
    Pod,
    PodPlacementConfig,
)

logger = logging.getLogger(__name__)

CLUSTER_CONFIG_PLURAL = "clusterpodplacementconfigs"
POD_PLACEMENT_CONFIG_PLURAL = "podplacementconfigs"

OPENSHIFT_CONFIG_GROUP = "config.openshift.io"
OPENSHIFT_CONFIG_VERSION = "v1"
OPENSHIFT_CONFIG_NAMESPACE = "openshift-config"
GLOBAL_PULL_SECRET_NAME = "pull-secret"

EVENT_SOURCE_COMPONENT = "pod-placement-controller"

WATCH_EVENT_TYPES = (WATCH_ADDED, WATCH_MODIFIED, WATCH_DELETED)


def format_label_selector(label_selector: Optional[Mapping[str, str]]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted((label_selector or {}).items()))


def load_client_config() -> None:
    """In-cluster config when running in a pod, kubeconfig otherwise."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def parse_registry_policy(
    image_config: Optional[Mapping[str, Any]],
    digest_mirror_sets: Iterable[Mapping[str, Any]] = (),
    tag_mirror_sets: Iterable[Mapping[str, Any]] = (),
    trusted_ca_data: Optional[Mapping[str, str]] = None,
) -> ImageRegistryPolicy:
    """
    Build an ImageRegistryPolicy from the raw cluster objects.

    Args:
        image_config:       images.config.openshift.io "cluster" (or None).
        digest_mirror_sets: ImageDigestMirrorSet objects, in list order.
        tag_mirror_sets:    ImageTagMirrorSet objects, in list order.
        trusted_ca_data:    `data` of the additional-trusted-CA config map.
    """
    spec = (image_config or {}).get("spec") or {}
    sources = spec.get("registrySources") or {}

    rules: List[ImageMirrorRule] = []
    for obj, field, kind in [
        *((o, "imageDigestMirrors", MirrorKind.DIGEST) for o in digest_mirror_sets),
        *((o, "imageTagMirrors", MirrorKind.TAG) for o in tag_mirror_sets),
    ]:
        for entry in (obj.get("spec") or {}).get(field) or []:
            if not entry.get("source"):
                continue
            rules.append(
                ImageMirrorRule(
                    source=entry["source"],
                    mirrors=tuple(entry.get("mirrors") or ()),
                    mirror_source_policy=MirrorSourcePolicy(
                        entry.get("mirrorSourcePolicy")
                        or MirrorSourcePolicy.ALLOW_CONTACTING_SOURCE.value
                    ),
                    kind=kind,
                )
            )

    return ImageRegistryPolicy(
        insecure_registries=tuple(sources.get("insecureRegistries") or ()),
        blocked_registries=tuple(sources.get("blockedRegistries") or ()),
        allowed_registries=tuple(sources.get("allowedRegistries") or ()),
        mirror_rules=tuple(rules),
        additional_trusted_cas=dict(trusted_ca_data or {}),
    )


class KubernetesClusterStore:
    """
    ClusterStore backed by the API server.

    Args:
        core_api:   CoreV1Api. Built from load_client_config() when omitted.
        custom_api: CustomObjectsApi. Same.
    """

    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
    ) -> None:
        if core_api is None or custom_api is None:
            load_client_config()
        self._core = core_api or client.CoreV1Api()
        self._custom = custom_api or client.CustomObjectsApi()

    # ── Pods ──────────────────────────────────────────────────────────────────

    def get_pod(self, namespace: str, name: str) -> Optional[Pod]:
        try:
            obj = self._core.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self._to_pod(obj)

    def list_pods(self, label_selector: Optional[Mapping[str, str]] = None) -> List[Pod]:
        result = self._core.list_pod_for_all_namespaces(
            label_selector=format_label_selector(label_selector)
        )
        return [self._to_pod(item) for item in result.items]

    def patch_pod(self, namespace: str, name: str, patch: JsonPatch) -> Pod:
        # a list body is sent as application/json-patch+json
        try:
            obj = self._core.patch_namespaced_pod(name=name, namespace=namespace, body=list(patch))
        except ApiException as e:
            if e.status == 404:
                raise PodNotFoundError(namespace, name) from e
            if e.status in (409, 422):
                raise PatchFailedError(f"pod {namespace}/{name}: {e.reason}") from e
            raise
        return self._to_pod(obj)

    def watch_pods(
        self,
        label_selector: Mapping[str, str],
        on_event: PodWatchHandler,
        stop_event: threading.Event,
        timeout_s: Optional[float] = None,
    ) -> None:
        kwargs: Dict[str, Any] = {"label_selector": format_label_selector(label_selector)}
        if timeout_s is not None:
            kwargs["timeout_seconds"] = int(timeout_s)
        watcher = watch.Watch()
        try:
            for event in watcher.stream(self._core.list_pod_for_all_namespaces, **kwargs):
                if stop_event.is_set():
                    return
                event_type = event.get("type")
                if event_type not in WATCH_EVENT_TYPES:
                    logger.warning("Pod watch returned %s: %s", event_type, event.get("raw_object"))
                    return
                on_event(event_type, Pod.model_validate(event["raw_object"]))
        except ApiException as e:
            if e.status == 410:
                logger.info("Pod watch expired (resourceVersion too old); restarting")
                return
            raise
        finally:
            watcher.stop()

    def _to_pod(self, obj: Any) -> Pod:
        return Pod.model_validate(self._core.api_client.sanitize_for_serialization(obj))

    # ── Namespaces ────────────────────────────────────────────────────────────

    def namespace_labels(self, namespace: str) -> Dict[str, str]:
        try:
            ns = self._core.read_namespace(name=namespace)
        except ApiException as e:
            if e.status == 404:
                return {}
            raise
        return dict(ns.metadata.labels or {})

    # ── Placement configuration ───────────────────────────────────────────────

    def get_cluster_config(self) -> Optional[ClusterPodPlacementConfig]:
        obj = self._get_cluster_object(
            API_GROUP, API_VERSION_V1BETA1, CLUSTER_CONFIG_PLURAL, SINGLETON_RESOURCE_NAME
        )
        return load_cluster_config(obj) if obj is not None else None

    def list_pod_placement_configs(self, namespace: Optional[str] = None) -> List[PodPlacementConfig]:
        if namespace is None:
            result = self._custom.list_cluster_custom_object(
                API_GROUP, API_VERSION_V1BETA1, POD_PLACEMENT_CONFIG_PLURAL
            )
        else:
            result = self._custom.list_namespaced_custom_object(
                API_GROUP, API_VERSION_V1BETA1, namespace, POD_PLACEMENT_CONFIG_PLURAL
            )
        return [PodPlacementConfig.model_validate(item) for item in result.get("items", [])]

    def config_snapshot(self) -> ConfigSnapshot:
        return ConfigSnapshot(
            cluster_config=self.get_cluster_config(),
            pod_placement_configs=tuple(self.list_pod_placement_configs()),
        )

    # ── Registry policy and secrets ───────────────────────────────────────────

    def registry_policy(self) -> ImageRegistryPolicy:
        image_config = self._get_cluster_object(
            OPENSHIFT_CONFIG_GROUP, OPENSHIFT_CONFIG_VERSION, "images", "cluster"
        )
        ca_data: Dict[str, str] = {}
        ca_ref = ((image_config or {}).get("spec") or {}).get("additionalTrustedCA") or {}
        if ca_ref.get("name"):
            try:
                cm = self._core.read_namespaced_config_map(
                    name=ca_ref["name"], namespace=OPENSHIFT_CONFIG_NAMESPACE
                )
                ca_data = dict(cm.data or {})
            except ApiException as e:
                if e.status != 404:
                    raise
                logger.warning("Additional trusted CA config map %s not found", ca_ref["name"])
        return parse_registry_policy(
            image_config,
            self._list_cluster_objects("imagedigestmirrorsets"),
            self._list_cluster_objects("imagetagmirrorsets"),
            ca_data,
        )

    def pull_secret_configs(self, namespace: str, names: Sequence[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for name in names:
            docker_config = self._read_docker_config(namespace, name)
            if docker_config is not None:
                out.append(docker_config)
        return out

    def global_pull_secret(self) -> Optional[Dict[str, Any]]:
        return self._read_docker_config(OPENSHIFT_CONFIG_NAMESPACE, GLOBAL_PULL_SECRET_NAME)

    def _read_docker_config(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            secret = self._core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status in (403, 404):
                logger.debug("Pull secret %s/%s unavailable (HTTP %s)", namespace, name, e.status)
                return None
            raise
        return docker_config_from_secret_data(secret.data or {})

    # ── Events ────────────────────────────────────────────────────────────────

    def record_event(self, pod: Pod, event_type: str, reason: str, message: str) -> None:
        now = datetime.datetime.now(datetime.timezone.utc)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{pod.name}.", namespace=pod.namespace),
            involved_object=client.V1ObjectReference(
                api_version="v1", kind="Pod", name=pod.name,
                namespace=pod.namespace, uid=pod.metadata.uid,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=EVENT_SOURCE_COMPONENT),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self._core.create_namespaced_event(namespace=pod.namespace, body=body)
        except ApiException as e:
            # events are best effort; the pod outcome is already written
            logger.warning("Could not record %s event on pod %s: %s", reason, pod.key, e.reason)

    # ── Config status ─────────────────────────────────────────────────────────

    def update_config_status(self, config: PlacementConfig, status: ConfigStatus) -> None:
        body = {"status": status.to_api()}
        try:
            if isinstance(config, ClusterPodPlacementConfig):
                self._custom.patch_cluster_custom_object_status(
                    API_GROUP, API_VERSION_V1BETA1, CLUSTER_CONFIG_PLURAL, config.name, body
                )
            else:
                self._custom.patch_namespaced_custom_object_status(
                    API_GROUP, API_VERSION_V1BETA1, config.namespace,
                    POD_PLACEMENT_CONFIG_PLURAL, config.name, body,
                )
        except ApiException as e:
            if e.status == 404:
                logger.debug("%s %s gone; status not written", config.kind, config.name)
                return
            raise

    # ── Custom object helpers ─────────────────────────────────────────────────

    def _get_cluster_object(self, group: str, version: str, plural: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._custom.get_cluster_custom_object(group, version, plural, name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def _list_cluster_objects(self, plural: str) -> List[Dict[str, Any]]:
        try:
            result = self._custom.list_cluster_custom_object(
                OPENSHIFT_CONFIG_GROUP, OPENSHIFT_CONFIG_VERSION, plural
            )
        except ApiException as e:
            if e.status == 404:
                return []
            raise
        return list(result.get("items", []))
