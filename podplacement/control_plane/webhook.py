"""
podplacement/control_plane/webhook.py
───────────────────────────────────────
Admission boundary: AdmissionReview (admission.k8s.io/v1) dict in,
AdmissionReview dict out. No HTTP server here; whatever serves the webhook
hands the decoded request body to these functions.

    validate_config_review(review, store)
        ClusterPodPlacementConfig  CREATE / UPDATE / DELETE
        PodPlacementConfig         CREATE / UPDATE
        → allowed, or denied with the ValidationDeniedError reason.
          Schema errors (pydantic) are denials too. Unexpected errors deny
          with an internal-error message.

    mutate_pod_review(review, store)
        Pod CREATE
        → allowed, with a base64 JSONPatch adding the scheduling gate when
          the pod is in scope. Unexpected errors allow the pod unmodified:
          a broken engine must not block pod creation.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from podplacement.cluster.store import ClusterStore
from podplacement.control_plane.config_validator import (
    ValidationDeniedError,
    validate_cluster_config,
    validate_cluster_config_delete,
    validate_pod_placement_config,
)
from podplacement.control_plane.pod_admission import gate_pod
from podplacement.shared.conversion import load_cluster_config
from podplacement.shared.models import ClusterPodPlacementConfig, Pod, PodPlacementConfig

logger = logging.getLogger(__name__)

ADMISSION_API_VERSION = "admission.k8s.io/v1"


def validate_config_review(review: Mapping[str, Any], store: ClusterStore) -> Dict[str, Any]:
    request = review.get("request") or {}
    uid = request.get("uid", "")
    kind = (request.get("kind") or {}).get("kind")
    operation = request.get("operation")
    try:
        if kind == "ClusterPodPlacementConfig":
            _validate_cluster_config_request(request, operation, store)
        elif kind == "PodPlacementConfig" and operation in ("CREATE", "UPDATE"):
            config = PodPlacementConfig.model_validate(request.get("object") or {})
            if not config.metadata.namespace:
                config.metadata.namespace = request.get("namespace")
            validate_pod_placement_config(
                config,
                store.get_cluster_config(),
                store.list_pod_placement_configs(config.namespace),
            )
    except ValidationDeniedError as e:
        logger.info("Denied %s %s: %s", operation, kind, e.reason)
        return _response(uid, allowed=False, message=e.reason)
    except ValidationError as e:
        message = format_validation_error(e)
        logger.info("Denied %s %s: %s", operation, kind, message)
        return _response(uid, allowed=False, message=message)
    except ValueError as e:
        return _response(uid, allowed=False, message=str(e))
    except Exception as e:
        logger.exception("Unexpected error validating %s %s", operation, kind)
        return _response(
            uid, allowed=False, message=f"internal error: {e.__class__.__name__}: {e}", code=500
        )
    return _response(uid, allowed=True)


def mutate_pod_review(review: Mapping[str, Any], store: ClusterStore) -> Dict[str, Any]:
    request = review.get("request") or {}
    uid = request.get("uid", "")
    kind = (request.get("kind") or {}).get("kind")
    if kind != "Pod" or request.get("operation") != "CREATE":
        return _response(uid, allowed=True)
    try:
        pod = Pod.model_validate(request.get("object") or {})
        if not pod.metadata.namespace:
            pod.metadata.namespace = request.get("namespace")
        decision = gate_pod(pod, store.config_snapshot(), store.namespace_labels(pod.namespace))
    except Exception:
        logger.exception("Unexpected error gating pod in %s; admitting unmodified", request.get("namespace"))
        return _response(uid, allowed=True)
    return _response(uid, allowed=True, patch=decision.patch or None)


def format_validation_error(error: ValidationError) -> str:
    """pydantic errors as "spec.plugins...weight: Input should be ..." lines joined by '; '."""
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()
    )


def _validate_cluster_config_request(
    request: Mapping[str, Any], operation: Optional[str], store: ClusterStore
) -> None:
    if operation == "DELETE":
        old = request.get("oldObject")
        config = (
            load_cluster_config(old) if old
            else store.get_cluster_config() or ClusterPodPlacementConfig()
        )
        validate_cluster_config_delete(config, store.list_pod_placement_configs())
        return
    if operation in ("CREATE", "UPDATE"):
        validate_cluster_config(load_cluster_config(request.get("object") or {}))


def _response(
    uid: str,
    allowed: bool,
    message: str = "",
    code: int = 403,
    patch: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    response: Dict[str, Any] = {"uid": uid, "allowed": allowed}
    if not allowed:
        response["status"] = {"code": code, "message": message}
    if patch:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(patch).encode()).decode()
    return {"apiVersion": ADMISSION_API_VERSION, "kind": "AdmissionReview", "response": response}
