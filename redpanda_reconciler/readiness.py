"""
Readiness aggregation for a Redpanda cluster.

Pure functions over observed objects: companion Flux objects, scaling group
replica counts, and the decommission gate.
"""

from typing import Any, Callable, Dict, Iterable, List, Tuple

from .meta import is_condition_true
from .redpanda import READY_CONDITION, REMEDIATED_CONDITION


def _generation_current(obj: Dict[str, Any]) -> bool:
    meta = obj.get("metadata") or {}
    st = obj.get("status") or {}
    return int(meta.get("generation") or 0) == int(st.get("observedGeneration") or 0)


def _suspended(obj: Dict[str, Any]) -> bool:
    return bool((obj.get("spec") or {}).get("suspend"))


def release_ready(hr: Dict[str, Any]) -> bool:
    """A HelmRelease is ready once its current generation is Ready or Remediated.

    A suspended release is never reconciled by Flux, so it counts as ready.
    """
    if _suspended(hr):
        return True
    conditions = (hr.get("status") or {}).get("conditions")
    return _generation_current(hr) and (
        is_condition_true(conditions, READY_CONDITION)
        or is_condition_true(conditions, REMEDIATED_CONDITION)
    )


def repository_ready(repo: Dict[str, Any]) -> bool:
    if _suspended(repo):
        return True
    conditions = (repo.get("status") or {}).get("conditions")
    return _generation_current(repo) and is_condition_true(conditions, READY_CONDITION)


def _replicas(obj: Any) -> Tuple[int, int, int, int]:
    st = obj.status
    desired = obj.spec.replicas if obj.spec and obj.spec.replicas is not None else 0
    if st is None:
        return 0, 0, 0, desired
    return (
        st.updated_replicas or 0,
        st.available_replicas or 0,
        st.ready_replicas or 0,
        desired,
    )


def check_replicas(
    items: Iterable[Any],
    resource: str,
    extract: Callable[[Any], Tuple[int, int, int, int]] = _replicas,
) -> Tuple[str, bool]:
    """Return (message, ready); ready only if every item is fully converged."""
    not_ready: List[str] = []
    for item in items:
        updated, available, ready, total = extract(item)
        if updated != total or available != total or ready != total:
            name = f"{item.metadata.namespace}/{item.metadata.name}"
            not_ready.append(
                f'"{name}" (updated/available/ready/total: '
                f"{updated}/{available}/{ready}/{total})"
            )
    if not_ready:
        not_ready.sort()
        return (
            f"Not all {resource} replicas updated, available, and ready for "
            f"[{'; '.join(not_ready)}]",
            False,
        )
    return "", True


def desired_replicas(items: Iterable[Any]) -> int:
    return sum(_replicas(item)[3] for item in items)


def needs_decommission(live_members: int, desired: int) -> bool:
    """True while more brokers are registered than the StatefulSets want."""
    if live_members == 0 or desired == 0:
        return False
    return live_members > desired
