"""
Helpers for the ``Redpanda`` cluster resource (cluster.redpanda.com/v1alpha2).

The resource is handled as the plain dict returned by CustomObjectsApi.
Status helpers mutate ``rp["status"]`` in place; the reconciler persists it
once at the end of a pass.
"""

import base64
import copy
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CLUSTER_GROUP = "cluster.redpanda.com"
CLUSTER_VERSION = "v1alpha2"
CLUSTER_PLURAL = "redpandas"
CLUSTER_KIND = "Redpanda"

FINALIZER_KEY = "operator.redpanda.com/finalizer"
MANAGED_ANNOTATION = f"{CLUSTER_GROUP}/managed"
NOT_MANAGED = "false"
MANAGED_DECOMMISSION_ANNOTATION = "operator.redpanda.com/managed-decommission"

FLUX_NAME_LABEL = "helm.toolkit.fluxcd.io/name"
FLUX_NAMESPACE_LABEL = "helm.toolkit.fluxcd.io/namespace"
HELM_RELEASE_NAME_ANNOTATION = "meta.helm.sh/release-name"
HELM_RELEASE_NAMESPACE_ANNOTATION = "meta.helm.sh/release-namespace"
HELM_HOOK_ANNOTATION = "helm.sh/hook"

HELM_RELEASE_API_VERSION = "helm.toolkit.fluxcd.io/v2beta2"
HELM_RELEASE_V2BETA1_API_VERSION = "helm.toolkit.fluxcd.io/v2beta1"
HELM_REPOSITORY_API_VERSION = "source.toolkit.fluxcd.io/v1beta2"
RESOURCE_TYPE_HELM_RELEASE = "HelmRelease"
RESOURCE_TYPE_HELM_REPOSITORY = "HelmRepository"
DEFAULT_REPOSITORY_NAME = "redpanda-repository"

READY_CONDITION = "Ready"
REMEDIATED_CONDITION = "Remediated"

RESOURCE_READY_FMT = "%s '%s/%s' is ready"
RESOURCE_NOT_READY_FMT = "%s '%s/%s' is not ready"

# Condition reasons
REASON_DEPLOYED = "RedpandaClusterDeployed"
REASON_ARTIFACT_FAILED = "ArtifactFailed"
REASON_PODS_NOT_READY = "RedpandaPodsNotReady"
REASON_CONSOLE_NOT_READY = "ConsolePodsNotReady"
REASON_CHART_REF_UNSUPPORTED = "ChartRefUnsupported"


def _meta(rp: Dict[str, Any]) -> Dict[str, Any]:
    return rp.setdefault("metadata", {})


def _chart_ref(rp: Dict[str, Any]) -> Dict[str, Any]:
    return (rp.get("spec") or {}).get("chartRef") or {}


def status(rp: Dict[str, Any]) -> Dict[str, Any]:
    if rp.get("status") is None:
        rp["status"] = {}
    return rp["status"]


def release_name(rp: Dict[str, Any]) -> str:
    return _meta(rp)["name"]


def repository_name(rp: Dict[str, Any]) -> str:
    return _chart_ref(rp).get("helmRepositoryName") or DEFAULT_REPOSITORY_NAME


def use_flux(rp: Dict[str, Any]) -> bool:
    value = _chart_ref(rp).get("useFlux")
    return True if value is None else bool(value)


def generation(rp: Dict[str, Any]) -> int:
    return int(_meta(rp).get("generation") or 0)


def observed_generation(rp: Dict[str, Any]) -> int:
    return int(status(rp).get("observedGeneration") or 0)


def is_managed(rp: Dict[str, Any]) -> bool:
    annotations = _meta(rp).get("annotations") or {}
    return annotations.get(MANAGED_ANNOTATION) != NOT_MANAGED


def is_deleting(rp: Dict[str, Any]) -> bool:
    return bool(_meta(rp).get("deletionTimestamp"))


def has_finalizer(rp: Dict[str, Any]) -> bool:
    return FINALIZER_KEY in (_meta(rp).get("finalizers") or [])


def ownership_ref(rp: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "apiVersion": f"{CLUSTER_GROUP}/{CLUSTER_VERSION}",
        "kind": CLUSTER_KIND,
        "name": _meta(rp)["name"],
        "uid": _meta(rp)["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }


def release_identity_labels(rp: Dict[str, Any]) -> Dict[str, str]:
    return {
        FLUX_NAME_LABEL: release_name(rp),
        FLUX_NAMESPACE_LABEL: _meta(rp)["namespace"],
    }


def values(rp: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy of the chart values, safe to hand to a renderer."""
    return copy.deepcopy((rp.get("spec") or {}).get("clusterSpec") or {})


def values_sha(vals: Dict[str, Any]) -> str:
    raw = json.dumps(vals, sort_keys=True, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest()).decode()


# =========================================================================
# CONDITIONS
# =========================================================================


def set_condition(
    conditions: List[Dict[str, Any]],
    condition_type: str,
    cond_status: str,
    reason: str,
    message: str,
    observed_gen: int,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Upsert a condition; lastTransitionTime only moves when status flips."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime("%Y-%m-%dT%H:%M:%SZ")
    for cond in conditions:
        if cond.get("type") == condition_type:
            if cond.get("status") != cond_status:
                cond["lastTransitionTime"] = timestamp
            cond.update(
                status=cond_status,
                reason=reason,
                message=message,
                observedGeneration=observed_gen,
            )
            return conditions
    conditions.append(
        {
            "type": condition_type,
            "status": cond_status,
            "reason": reason,
            "message": message,
            "observedGeneration": observed_gen,
            "lastTransitionTime": timestamp,
        }
    )
    return conditions


def mark_ready(rp: Dict[str, Any]) -> Dict[str, Any]:
    st = status(rp)
    st["conditions"] = set_condition(
        st.get("conditions") or [],
        READY_CONDITION,
        "True",
        REASON_DEPLOYED,
        "Redpanda reconciliation succeeded",
        generation(rp),
    )
    return rp


def mark_not_ready(rp: Dict[str, Any], reason: str, message: str) -> Dict[str, Any]:
    st = status(rp)
    st["conditions"] = set_condition(
        st.get("conditions") or [],
        READY_CONDITION,
        "False",
        reason,
        message,
        generation(rp),
    )
    return rp


# =========================================================================
# FLUX COMPANIONS
# =========================================================================


def helm_repository_from_template(rp: Dict[str, Any], url: str) -> Dict[str, Any]:
    return {
        "apiVersion": HELM_REPOSITORY_API_VERSION,
        "kind": RESOURCE_TYPE_HELM_REPOSITORY,
        "metadata": {
            "name": repository_name(rp),
            "namespace": _meta(rp)["namespace"],
            "ownerReferences": [ownership_ref(rp)],
        },
        "spec": {
            "suspend": not use_flux(rp),
            "interval": "30s",
            "url": url,
        },
    }


def helm_release_from_template(
    rp: Dict[str, Any], default_chart_version: str
) -> Dict[str, Any]:
    chart_ref = _chart_ref(rp)
    namespace = _meta(rp)["namespace"]

    # Waiting on the release would block pending upgrades behind the upgrade job.
    upgrade: Dict[str, Any] = {"disableWait": True, "disableWaitForJobs": True}
    overrides = chart_ref.get("upgrade") or {}
    for key in ("force", "cleanupOnFail", "preserveValues"):
        if overrides.get(key) is not None:
            upgrade[key] = bool(overrides[key])
    if overrides.get("remediation") is not None:
        upgrade["remediation"] = overrides["remediation"]

    return {
        "apiVersion": HELM_RELEASE_API_VERSION,
        "kind": RESOURCE_TYPE_HELM_RELEASE,
        "metadata": {
            "name": release_name(rp),
            "namespace": namespace,
            "ownerReferences": [ownership_ref(rp)],
        },
        "spec": {
            "suspend": not use_flux(rp),
            "chart": {
                "spec": {
                    "chart": "redpanda",
                    "version": chart_ref.get("chartVersion") or default_chart_version,
                    "interval": "1m0s",
                    "sourceRef": {
                        "kind": RESOURCE_TYPE_HELM_REPOSITORY,
                        "name": repository_name(rp),
                        "namespace": namespace,
                    },
                },
            },
            "values": values(rp),
            "interval": "30s",
            "timeout": chart_ref.get("timeout") or "15m0s",
            "upgrade": upgrade,
        },
    }
