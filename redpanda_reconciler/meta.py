"""
Object keys and metadata accessors.

Watched objects arrive either as typed kubernetes models (Pods, StatefulSets)
or as plain dicts (custom objects, dynamic client results). The accessors
here read both shapes so predicates and mappers don't have to care.
"""

from typing import Any, Dict, List, NamedTuple, Optional


class ObjectKey(NamedTuple):
    """Namespaced name of an object; the unit of work queued for reconciles."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class KindKey(NamedTuple):
    """Kind-qualified key used for the expected/seen sets of a sync pass."""

    api_version: str
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.api_version}/{self.kind} {self.namespace}/{self.name}"


def _metadata(obj: Any) -> Any:
    if isinstance(obj, dict):
        return obj.get("metadata") or {}
    return getattr(obj, "metadata", None)


def _field(meta: Any, dict_key: str, attr: str) -> Any:
    if meta is None:
        return None
    if isinstance(meta, dict):
        return meta.get(dict_key)
    return getattr(meta, attr, None)


def object_name(obj: Any) -> str:
    return _field(_metadata(obj), "name", "name") or ""


def object_namespace(obj: Any) -> str:
    return _field(_metadata(obj), "namespace", "namespace") or ""


def object_uid(obj: Any) -> str:
    return _field(_metadata(obj), "uid", "uid") or ""


def object_labels(obj: Any) -> Dict[str, str]:
    return dict(_field(_metadata(obj), "labels", "labels") or {})


def object_annotations(obj: Any) -> Dict[str, str]:
    return dict(_field(_metadata(obj), "annotations", "annotations") or {})


def object_key(obj: Any) -> ObjectKey:
    return ObjectKey(object_namespace(obj), object_name(obj))


def kind_key(obj: Dict[str, Any]) -> KindKey:
    return KindKey(
        obj.get("apiVersion", ""),
        obj.get("kind", ""),
        object_namespace(obj),
        object_name(obj),
    )


def owner_references(obj: Any) -> List[Dict[str, Any]]:
    """Owner references normalised to the camelCase dict form."""
    refs = _field(_metadata(obj), "ownerReferences", "owner_references") or []
    result = []
    for ref in refs:
        if isinstance(ref, dict):
            result.append(ref)
        else:
            result.append(
                {
                    "apiVersion": ref.api_version,
                    "kind": ref.kind,
                    "name": ref.name,
                    "uid": ref.uid,
                    "controller": ref.controller,
                }
            )
    return result


def controller_owner(obj: Any) -> Optional[Dict[str, Any]]:
    for ref in owner_references(obj):
        if ref.get("controller"):
            return ref
    return None


def is_owned_by(obj: Any, uid: str) -> bool:
    return any(ref.get("uid") == uid for ref in owner_references(obj))


def find_condition(
    conditions: Optional[List[Dict[str, Any]]], condition_type: str
) -> Optional[Dict[str, Any]]:
    for cond in conditions or []:
        if cond.get("type") == condition_type:
            return cond
    return None


def is_condition_true(
    conditions: Optional[List[Dict[str, Any]]], condition_type: str
) -> bool:
    cond = find_condition(conditions, condition_type)
    return cond is not None and cond.get("status") == "True"


def object_resource_version(obj: Any) -> str:
    return _field(_metadata(obj), "resourceVersion", "resource_version") or ""
