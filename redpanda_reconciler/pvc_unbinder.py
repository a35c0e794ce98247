"""
PVC unbinder: remediation for StatefulSet Pods stuck in Pending because
their PersistentVolumes are pinned to a Node that can no longer host them.

Pod events are watched rather than Node events: a Node deletion can be missed
when this process runs on the Node that died, and re-implementing the
scheduler's affinity matching is riskier than reading its verdict.

To get the Pod rescheduled:
  1. Find the PVs and PVCs associated with the Pod.
  2. Ensure every such PV has a Retain reclaim policy.
  3. Delete the bound PVCs (they are immutable once bound).
  4. Optionally "recycle" the PVs by clearing their claimRef, so a Node that
     comes back may reclaim them.
  5. Delete the Pod so the StatefulSet controller recreates the Pod and its
     PVCs, which then bind afresh.

There are no transactions across these objects. A snapshot is taken early
and every unsafe write carries the observed UID/resourceVersion, so a
concurrent change fails the pass and the driver retries it from scratch.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Pattern, Tuple

import structlog
from kubernetes import client

from .config import Settings
from .controller import Result
from .errors import PolicyViolation
from .meta import ObjectKey
from .metrics import pvc_unbinder_actions_total
from .predicates import LabelSelector, filter_pod_owner, pvc_unbinder_predicate
from .store import ResourceStore

logger = structlog.get_logger(__name__)

# Structured affinity-conflict reasons are not exposed uniformly across
# Kubernetes versions; newer schedulers only report that no node fits.
SCHEDULING_FAILURE_RE = re.compile(
    r"(^0/[1-9]\d* nodes are available)|(volume node affinity)"
)

RECLAIM_RETAIN = "Retain"

PodFilter = Callable[[client.V1Pod], bool]


@dataclass(frozen=True)
class UnbinderOptions:
    """Immutable unbinder policy, built once at startup."""

    # Seconds a Pod must be unschedulable before remediation
    timeout: float = 900.0
    selector: Optional[LabelSelector] = None
    filter: Optional[PodFilter] = None
    # Clearing claimRef lets a recovered Node rebind its old volume. With
    # reused Node names and local-path provisioners the volume directory may
    # be missing on rebind, so this is off by default.
    allow_rebinding: bool = False
    failure_pattern: Pattern = SCHEDULING_FAILURE_RE

    @classmethod
    def from_settings(cls, s: Settings) -> "UnbinderOptions":
        pod_filter = None
        if s.pvc_unbinder_owner_namespace and s.pvc_unbinder_owner_name:
            pod_filter = filter_pod_owner(
                s.pvc_unbinder_owner_namespace, s.pvc_unbinder_owner_name
            )
        return cls(
            timeout=float(s.pvc_unbinder_timeout_seconds),
            selector=(
                LabelSelector.parse(s.pvc_unbinder_selector)
                if s.pvc_unbinder_selector
                else None
            ),
            filter=pod_filter,
            allow_rebinding=s.pvc_unbinder_allow_rebinding,
        )


def sts_pvcs(pod: client.V1Pod) -> List[ObjectKey]:
    """Keys of the Pod's PVCs that look StatefulSet-managed.

    StatefulSet claims are named ``<template>-<pod name>``, so a suffix match
    on the Pod name is the cheapest reliable tell.
    """
    found = []
    for vol in (pod.spec.volumes if pod.spec else None) or []:
        if vol.persistent_volume_claim is None:
            continue
        claim_name = vol.persistent_volume_claim.claim_name or ""
        if not claim_name.endswith(pod.metadata.name):
            continue
        found.append(ObjectKey(pod.metadata.namespace, claim_name))
    return found


def _is_local(pv: client.V1PersistentVolume) -> bool:
    return pv.spec.host_path is not None or pv.spec.local is not None


def _unschedulable_condition(
    pod: client.V1Pod,
) -> Optional[client.V1PodCondition]:
    for cond in (pod.status.conditions if pod.status else None) or []:
        if (
            cond.type == "PodScheduled"
            and cond.status == "False"
            and cond.reason == "Unschedulable"
        ):
            return cond
    return None


class PVCUnbinder:
    """Reconciles Pending StatefulSet Pods whose local volumes block scheduling."""

    name = "pvc-unbinder"

    def __init__(
        self,
        store: ResourceStore,
        options: UnbinderOptions,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.options = options
        self._clock = clock

    def should_remediate(self, pod: client.V1Pod) -> Tuple[bool, float]:
        """Return (eligible, seconds until remediation is due)."""
        name = pod.metadata.name
        labels = pod.metadata.labels or {}

        if self.options.selector is not None and not self.options.selector.matches(
            labels
        ):
            logger.info(
                "Selector not satisfied; skipping",
                name=name,
                selector=str(self.options.selector),
            )
            return False, 0.0

        if self.options.filter is not None:
            try:
                keep = self.options.filter(pod)
            except Exception as exc:
                logger.error("Error filtering Pod", name=name, error=str(exc))
                return False, 0.0
            if not keep:
                logger.info("Filter not satisfied; skipping", name=name)
                return False, 0.0

        # The Pod may have changed between enqueue and now.
        cond = _unschedulable_condition(pod)
        if cond is None or not pvc_unbinder_predicate(pod):
            return False, 0.0

        if not self.options.failure_pattern.search(cond.message or ""):
            logger.info(
                "Scheduling failure does not indicate volume affinity issues; skipping",
                name=name,
                message=cond.message,
            )
            return False, 0.0

        now = self._clock()
        elapsed = (now - (cond.last_transition_time or now)).total_seconds()
        if elapsed < self.options.timeout:
            return True, self.options.timeout - elapsed
        return True, 0.0

    async def reconcile(self, key: ObjectKey) -> Result:
        pod = await self.store.get_pod(key.namespace, key.name)
        if pod is None:
            return Result()

        ok, delay = self.should_remediate(pod)
        if not ok or delay > 0:
            logger.info(
                "Not remediating Pod",
                name=pod.metadata.name,
                eligible=ok,
                requeue_after=delay,
            )
            return Result(requeue=ok, requeue_after=delay)

        # None marks a PVC that does not exist (or no longer exists). Keys are
        # only removed once they are known to be unrelated to the failure.
        pvcs: Dict[ObjectKey, Optional[client.V1PersistentVolumeClaim]] = {}
        for pvc_key in sts_pvcs(pod):
            pvcs[pvc_key] = await self.store.get_pvc(pvc_key.namespace, pvc_key.name)

        if not pvcs:
            logger.info("Pod had no detectable StatefulSet PVCs; skipping", name=key.name)
            return Result()

        pvs, candidates = self._match_volumes(await self.store.list_pvs(), pvcs)

        for i, pv in enumerate(pvs):
            pvs[i] = await self._ensure_retain_policy(pv)

        retained = {pv.metadata.name for pv in pvs}
        for pvc_key in sorted(candidates):
            pvc = candidates[pvc_key]
            if pvc is None or not pvc.spec.volume_name:
                continue
            if pvc.spec.volume_name not in retained:
                logger.warning(
                    "PVC bound to an unretained volume; not deleting",
                    name=pvc_key.name,
                    volume=pvc.spec.volume_name,
                )
                continue

            logger.info("Deleting PVC to re-trigger volume binding", name=pvc_key.name)
            await self.store.delete_pvc(pvc)
            pvc_unbinder_actions_total.labels(action="delete_pvc").inc()
            candidates[pvc_key] = None

        for pv in pvs:
            await self._maybe_recycle(pv)

        if not any(pvc is None for pvc in candidates.values()):
            logger.info("Not deleting Pod; no PVCs were deleted", name=pod.metadata.name)
            return Result()

        logger.info("Deleting Pod to trigger PVC recreation", name=pod.metadata.name)
        await self.store.delete_pod(pod)
        pvc_unbinder_actions_total.labels(action="delete_pod").inc()
        return Result()

    def _match_volumes(
        self,
        pv_list: List[client.V1PersistentVolume],
        pvcs: Dict[ObjectKey, Optional[client.V1PersistentVolumeClaim]],
    ) -> Tuple[
        List[client.V1PersistentVolume],
        Dict[ObjectKey, Optional[client.V1PersistentVolumeClaim]],
    ]:
        """Keep node-pinned local PVs bound to our claims, and those claims.

        A claim is dropped only when a PV bound to it rules the volume out.
        Claims no PV references (including ones an earlier pass already
        deleted and unbound) stay candidates.
        """
        matched: Dict[ObjectKey, List[client.V1PersistentVolume]] = {}
        dropped = set()
        for pv in pv_list:
            ref = pv.spec.claim_ref if pv.spec else None
            if ref is None:
                continue
            claim = ObjectKey(ref.namespace or "", ref.name or "")
            if claim not in pvcs:
                continue
            # Without a NodeAffinity on a local disk the volume can't be
            # what keeps the Pod from scheduling.
            if pv.spec.node_affinity is None or not _is_local(pv):
                dropped.add(claim)
                continue
            matched.setdefault(claim, []).append(pv)

        candidates = {k: pvcs[k] for k in sorted(pvcs) if k not in dropped}
        pvs = [pv for k in candidates for pv in matched.get(k, [])]
        return pvs, candidates

    async def _ensure_retain_policy(
        self, pv: client.V1PersistentVolume
    ) -> client.V1PersistentVolume:
        if pv.spec.persistent_volume_reclaim_policy == RECLAIM_RETAIN:
            return pv

        logger.info("Setting reclaim policy to Retain", name=pv.metadata.name)
        # resourceVersion in the body makes this an optimistic-lock patch.
        patched = await self.store.patch_pv(
            pv.metadata.name,
            {
                "metadata": {"resourceVersion": pv.metadata.resource_version},
                "spec": {"persistentVolumeReclaimPolicy": RECLAIM_RETAIN},
            },
        )
        pvc_unbinder_actions_total.labels(action="retain_pv").inc()
        return patched

    async def _maybe_recycle(self, pv: client.V1PersistentVolume):
        """Clear the claimRef of a released local PV, if rebinding is allowed."""
        if not _is_local(pv):
            raise PolicyViolation(
                f"PersistentVolume {pv.metadata.name!r} must specify "
                ".spec.hostPath or .spec.local for recycling"
            )

        if not self.options.allow_rebinding:
            logger.info(
                "Skipping claimRef clearing of PersistentVolume",
                name=pv.metadata.name,
                allow_rebinding=False,
            )
            return

        if pv.spec.claim_ref is None:
            return

        logger.info("Clearing claimRef of PersistentVolume", name=pv.metadata.name)
        # No optimistic lock: the control plane is expected to be moving the
        # PV's status to Released concurrently.
        await self.store.patch_pv(pv.metadata.name, {"spec": {"claimRef": None}})
        pvc_unbinder_actions_total.labels(action="clear_claim_ref").inc()
