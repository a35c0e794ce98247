"""
Predicates deciding which watched events enqueue a reconcile, plus the
label selector used to narrow them.

All functions here are stateless and safe to call from watch threads.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import client

from .meta import (
    ObjectKey,
    controller_owner,
    object_annotations,
    object_labels,
    object_namespace,
    owner_references,
)

INSTANCE_LABEL = "app.kubernetes.io/instance"
NAME_LABEL = "app.kubernetes.io/name"
JOB_NAME_LABEL = "batch.kubernetes.io/job-name"
RELEASE_NAME_ANNOTATION = "meta.helm.sh/release-name"
RELEASE_NAMESPACE_ANNOTATION = "meta.helm.sh/release-namespace"

_REQUIREMENT_RE = re.compile(
    r"^\s*(?P<key>[A-Za-z0-9._/-]+)\s+(?P<op>in|notin)\s+\((?P<values>[^)]*)\)\s*$"
)


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str  # "=", "!=", "in", "notin", "exists", "!exists"
    values: Tuple[str, ...] = ()

    def matches(self, labels: Dict[str, str]) -> bool:
        present = self.key in labels
        value = labels.get(self.key)
        if self.operator == "exists":
            return present
        if self.operator == "!exists":
            return not present
        if self.operator in ("=", "in"):
            return present and value in self.values
        # "!=" and "notin" match objects missing the key, as in Kubernetes
        return not present or value not in self.values


class LabelSelector:
    """A parsed Kubernetes label selector string.

    Supports equality (``k=v``, ``k==v``, ``k!=v``), set (``k in (a,b)``,
    ``k notin (a,b)``) and existence (``k``, ``!k``) requirements.
    """

    def __init__(self, requirements: List[Requirement]):
        self.requirements = tuple(requirements)

    @classmethod
    def parse(cls, selector: str) -> "LabelSelector":
        requirements = []
        for term in _split_terms(selector):
            requirements.append(_parse_requirement(term))
        return cls(requirements)

    def matches(self, labels: Optional[Dict[str, str]]) -> bool:
        labels = labels or {}
        return all(r.matches(labels) for r in self.requirements)

    def __str__(self) -> str:
        parts = []
        for r in self.requirements:
            if r.operator == "exists":
                parts.append(r.key)
            elif r.operator == "!exists":
                parts.append(f"!{r.key}")
            elif r.operator in ("in", "notin"):
                parts.append(f"{r.key} {r.operator} ({','.join(r.values)})")
            else:
                parts.append(f"{r.key}{r.operator}{r.values[0]}")
        return ",".join(parts)


def _split_terms(selector: str) -> List[str]:
    terms, depth, current = [], 0, []
    for ch in selector:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            terms.append("".join(current))
            current = []
        else:
            current.append(ch)
    terms.append("".join(current))
    return [t.strip() for t in terms if t.strip()]


def _parse_requirement(term: str) -> Requirement:
    match = _REQUIREMENT_RE.match(term)
    if match:
        values = tuple(
            v.strip() for v in match.group("values").split(",") if v.strip()
        )
        return Requirement(match.group("key"), match.group("op"), values)
    if "!=" in term:
        key, value = term.split("!=", 1)
        return Requirement(key.strip(), "!=", (value.strip(),))
    if "==" in term:
        key, value = term.split("==", 1)
        return Requirement(key.strip(), "=", (value.strip(),))
    if "=" in term:
        key, value = term.split("=", 1)
        return Requirement(key.strip(), "=", (value.strip(),))
    if term.startswith("!"):
        return Requirement(term[1:].strip(), "!exists")
    if " " in term or not term:
        raise ValueError(f"invalid label selector term: {term!r}")
    return Requirement(term, "exists")


# =========================================================================
# PVC UNBINDER
# =========================================================================


def pvc_unbinder_predicate(obj: Any) -> bool:
    """True for Pending Pods controlled by a StatefulSet."""
    if not isinstance(obj, client.V1Pod):
        return False

    sts_managed = any(
        ref.get("apiVersion") == "apps/v1"
        and ref.get("kind") == "StatefulSet"
        and bool(ref.get("controller"))
        for ref in owner_references(obj)
    )
    is_pending = obj.status is not None and obj.status.phase == "Pending"
    return sts_managed and is_pending


def filter_pod_owner(
    owner_namespace: str, owner_name: str
) -> Callable[[client.V1Pod], bool]:
    """Filter restricting the unbinder to Pods of one Helm release."""

    def _filter(pod: client.V1Pod) -> bool:
        return (
            object_namespace(pod) == owner_namespace
            and object_labels(pod).get(INSTANCE_LABEL) == owner_name
        )

    return _filter


# =========================================================================
# REDPANDA CLUSTER
# =========================================================================

HELM_MANAGED_COMPONENT = LabelSelector.parse(
    f"{NAME_LABEL} in (redpanda,console),{INSTANCE_LABEL},!{JOB_NAME_LABEL}"
)


def helm_managed_component(obj: Any) -> bool:
    """Redpanda or Console workloads of a release, excluding Job pods."""
    return HELM_MANAGED_COMPONENT.matches(object_labels(obj))


def cluster_key_from_release(obj: Any) -> Optional[ObjectKey]:
    """Map a Helm-managed workload back to the cluster that rendered it."""
    annotations = object_annotations(obj)
    name = annotations.get(RELEASE_NAME_ANNOTATION)
    if not name:
        return None
    namespace = annotations.get(RELEASE_NAMESPACE_ANNOTATION) or object_namespace(
        obj
    )
    return ObjectKey(namespace, name)


def cluster_key_from_owner(obj: Any, owner_kind: str = "Redpanda") -> Optional[ObjectKey]:
    """Map an owned companion object to its controlling cluster."""
    owner = controller_owner(obj)
    if owner is None or owner.get("kind") != owner_kind:
        return None
    return ObjectKey(object_namespace(obj), owner["name"])
