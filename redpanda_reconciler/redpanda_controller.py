"""
Reconciliation of ``Redpanda`` cluster resources.

Each pass:
  1. Keeps the finalizer in step with the resource's managed/deleting state.
  2. Applies the Flux HelmRepository and HelmRelease for the cluster and
     aggregates readiness from them, the StatefulSets, the Console
     Deployments and the decommission gate into the Ready condition.
  3. When Flux is disabled, renders the chart itself, applies every object
     with server-side apply, and garbage collects owned objects the render
     no longer produces.
  4. Advances observedGeneration and writes status, only if nothing failed.

Deletion is two-phase: the HelmRelease is deleted with foreground
propagation and the finalizer is only dropped once it is gone.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Set, Tuple

import structlog

from . import redpanda
from .admin_client import AdminClientFactory
from .config import Settings
from .controller import Result
from .errors import (
    GarbageCollectionError,
    ReconcileError,
    UnknownKindError,
    WaitForReleaseDeletion,
    is_not_found,
)
from .meta import KindKey, ObjectKey, is_owned_by, kind_key
from .metrics import gc_deleted_total
from .predicates import INSTANCE_LABEL, NAME_LABEL
from .readiness import (
    check_replicas,
    desired_replicas,
    needs_decommission,
    release_ready,
    repository_ready,
)
from .render import Renderer
from .store import CHILD_KINDS, ChildKind, ResourceStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SyncOptions:
    """Immutable sync policy, built once at startup."""

    field_owner: str = "redpanda-operator"
    chart_version: str = "5.9.4"
    repository_url: str = "https://charts.redpanda.com/"
    deletion_poll_seconds: float = 5.0
    child_kinds: Tuple[ChildKind, ...] = CHILD_KINDS

    @classmethod
    def from_settings(cls, s: Settings) -> "SyncOptions":
        return cls(
            field_owner=s.field_owner,
            chart_version=s.chart_version,
            repository_url=s.chart_repository_url,
            deletion_poll_seconds=s.deletion_poll_seconds,
        )


class RedpandaReconciler:
    """Reconciles one Redpanda cluster per key."""

    name = "redpanda"

    def __init__(
        self,
        store: ResourceStore,
        renderer: Renderer,
        admin_clients: AdminClientFactory,
        options: SyncOptions,
    ):
        self.store = store
        self.renderer = renderer
        self.admin_clients = admin_clients
        self.options = options

    async def reconcile(self, key: ObjectKey) -> Result:
        start = time.perf_counter()
        logger.info("Starting reconcile loop", cluster=str(key))
        try:
            return await self._reconcile(key)
        finally:
            logger.info(
                "Reconciliation finished",
                cluster=str(key),
                duration_seconds=round(time.perf_counter() - start, 3),
            )

    async def _reconcile(self, key: ObjectKey) -> Result:
        rp = await self.store.get_cluster(key.namespace, key.name)
        if rp is None:
            return Result()

        if redpanda.is_deleting(rp):
            return await self.reconcile_delete(rp)

        if not redpanda.is_managed(rp):
            logger.info(
                "Management is disabled; set the annotation to true or remove it to enable",
                cluster=str(key),
                annotation=redpanda.MANAGED_ANNOTATION,
            )
            if redpanda.has_finalizer(rp):
                await self._set_finalizer(rp, present=False)
            return Result()

        annotations = rp["metadata"].get("annotations") or {}
        if redpanda.MANAGED_DECOMMISSION_ANNOTATION in annotations:
            logger.info("Managed decommission in progress; skipping", cluster=str(key))
            return Result()

        if not redpanda.has_finalizer(rp):
            await self._set_finalizer(rp, present=True)

        await self.reconcile_readiness(rp)
        await self.reconcile_defluxed(rp)

        # Only a pass that completed without error observes the generation.
        redpanda.status(rp)["observedGeneration"] = redpanda.generation(rp)
        await self.store.patch_cluster_status(
            key.namespace, key.name, redpanda.status(rp)
        )
        return Result()

    # =========================================================================
    # FINALIZER / DELETION
    # =========================================================================

    async def _set_finalizer(self, rp: Dict[str, Any], present: bool):
        meta = rp["metadata"]
        finalizers = [f for f in meta.get("finalizers") or [] if f != redpanda.FINALIZER_KEY]
        if present:
            finalizers.append(redpanda.FINALIZER_KEY)

        patched = await self.store.patch_cluster(
            meta["namespace"],
            meta["name"],
            {
                "metadata": {
                    "finalizers": finalizers,
                    "resourceVersion": meta.get("resourceVersion"),
                }
            },
        )
        rp["metadata"] = patched.get("metadata") or {**meta, "finalizers": finalizers}
        logger.info(
            "Updated finalizer",
            cluster=f"{meta['namespace']}/{meta['name']}",
            present=present,
        )

    async def reconcile_delete(self, rp: Dict[str, Any]) -> Result:
        try:
            await self._delete_helm_release(rp)
        except WaitForReleaseDeletion as exc:
            logger.info("Waiting for deletion", cluster=redpanda.release_name(rp), detail=str(exc))
            return Result(requeue_after=self.options.deletion_poll_seconds)

        if redpanda.has_finalizer(rp):
            await self._set_finalizer(rp, present=False)
        return Result()

    async def _delete_helm_release(self, rp: Dict[str, Any]):
        st = redpanda.status(rp)
        name = st.get("helmRelease")
        if not name:
            return

        namespace = rp["metadata"]["namespace"]
        try:
            hr = await self.store.get(
                redpanda.HELM_RELEASE_API_VERSION,
                redpanda.RESOURCE_TYPE_HELM_RELEASE,
                namespace,
                name,
            )
        except UnknownKindError:
            hr = None

        if hr is None:
            st["helmRelease"] = ""
            st["helmRepository"] = ""
            return

        await self.store.delete(
            redpanda.HELM_RELEASE_API_VERSION,
            redpanda.RESOURCE_TYPE_HELM_RELEASE,
            namespace,
            name,
            propagation_policy="Foreground",
        )
        raise WaitForReleaseDeletion(f"HelmRelease {namespace}/{name} is being deleted")

    # =========================================================================
    # READINESS
    # =========================================================================

    async def reconcile_readiness(self, rp: Dict[str, Any]):
        """Apply the Flux companions and fold every signal into Ready."""
        namespace = rp["metadata"]["namespace"]
        release = redpanda.release_name(rp)

        statefulsets = await self.store.list_statefulsets(
            namespace, {INSTANCE_LABEL: release, NAME_LABEL: "redpanda"}
        )
        deployments = await self.store.list_deployments(
            namespace, {INSTANCE_LABEL: release, NAME_LABEL: "console"}
        )

        st = redpanda.status(rp)
        await self._reconcile_helm_repository(rp)
        if not st.get("helmRepositoryReady"):
            redpanda.mark_not_ready(
                rp,
                redpanda.REASON_ARTIFACT_FAILED,
                redpanda.RESOURCE_NOT_READY_FMT
                % (redpanda.RESOURCE_TYPE_HELM_REPOSITORY, namespace, redpanda.repository_name(rp)),
            )
            return

        await self._reconcile_helm_release(rp)
        if not st.get("helmReleaseReady"):
            redpanda.mark_not_ready(
                rp,
                redpanda.REASON_ARTIFACT_FAILED,
                redpanda.RESOURCE_NOT_READY_FMT
                % (redpanda.RESOURCE_TYPE_HELM_RELEASE, namespace, release),
            )
            return

        if not statefulsets:
            redpanda.mark_not_ready(
                rp, redpanda.REASON_PODS_NOT_READY, "Redpanda StatefulSet not yet created"
            )
            return

        message, ready = check_replicas(statefulsets, "StatefulSet")
        if not ready:
            redpanda.mark_not_ready(rp, redpanda.REASON_PODS_NOT_READY, message)
            return

        message, ready = check_replicas(deployments, "Deployment")
        if not ready:
            redpanda.mark_not_ready(rp, redpanda.REASON_CONSOLE_NOT_READY, message)
            return

        # Only meaningful once every broker Pod is up.
        admin = self.admin_clients.for_cluster(rp)
        members = await admin.live_members()
        if needs_decommission(len(members), desired_replicas(statefulsets)):
            redpanda.mark_not_ready(
                rp,
                redpanda.REASON_PODS_NOT_READY,
                "Cluster currently decommissioning dead nodes",
            )
            return

        redpanda.mark_ready(rp)

    async def _reconcile_helm_repository(self, rp: Dict[str, Any]):
        repo = await self.store.apply(
            redpanda.helm_repository_from_template(rp, self.options.repository_url),
            self.options.field_owner,
        )
        st = redpanda.status(rp)
        st["helmRepository"] = repo["metadata"]["name"]
        st["helmRepositoryReady"] = repository_ready(repo)
        if st["helmRepositoryReady"]:
            logger.info(
                redpanda.RESOURCE_READY_FMT
                % (
                    redpanda.RESOURCE_TYPE_HELM_REPOSITORY,
                    repo["metadata"]["namespace"],
                    repo["metadata"]["name"],
                )
            )

    async def _reconcile_helm_release(self, rp: Dict[str, Any]):
        template = redpanda.helm_release_from_template(rp, self.options.chart_version)
        logger.info(
            "SHA of values file to use",
            cluster=redpanda.release_name(rp),
            sha=redpanda.values_sha(template["spec"]["values"]),
        )
        hr = await self.store.apply(template, self.options.field_owner)
        st = redpanda.status(rp)
        st["helmRelease"] = hr["metadata"]["name"]
        st["helmReleaseReady"] = release_ready(hr)
        if st["helmReleaseReady"]:
            logger.info(
                redpanda.RESOURCE_READY_FMT
                % (
                    redpanda.RESOURCE_TYPE_HELM_RELEASE,
                    hr["metadata"]["namespace"],
                    hr["metadata"]["name"],
                )
            )

    # =========================================================================
    # RENDER / APPLY / GC
    # =========================================================================

    async def reconcile_defluxed(self, rp: Dict[str, Any]):
        """Render and apply the chart directly when Flux is disabled."""
        if redpanda.use_flux(rp):
            logger.debug("useFlux is true; skipping non-flux reconciliation")
            return

        chart_version = ((rp.get("spec") or {}).get("chartRef") or {}).get(
            "chartVersion"
        ) or ""
        supported = self.options.chart_version
        if chart_version not in ("", supported):
            message = (
                f'.spec.chartRef.chartVersion needs to be "{supported}" or "". '
                f'got "{chart_version}"'
            )
            logger.error(message, cluster=redpanda.release_name(rp))
            # Retrying cannot help until .spec.chartRef changes.
            redpanda.mark_not_ready(rp, redpanda.REASON_CHART_REF_UNSUPPORTED, message)
            return

        namespace = rp["metadata"]["namespace"]
        release = redpanda.release_name(rp)
        # Template loading and YAML parsing block.
        objects = await asyncio.to_thread(
            self.renderer, namespace, release, redpanda.values(rp)
        )

        expected: Set[KindKey] = set()
        for obj in objects:
            meta = obj.setdefault("metadata", {})
            # Charts set namespaces inconsistently.
            meta["namespace"] = namespace
            meta["ownerReferences"] = [redpanda.ownership_ref(rp)]

            labels = meta.get("labels") or {}
            annotations = meta.get("annotations") or {}
            # Flux refuses to adopt objects without these.
            annotations[redpanda.HELM_RELEASE_NAME_ANNOTATION] = release
            annotations[redpanda.HELM_RELEASE_NAMESPACE_ANNOTATION] = namespace
            labels.update(redpanda.release_identity_labels(rp))
            meta["labels"] = labels
            meta["annotations"] = annotations

            if redpanda.HELM_HOOK_ANNOTATION in annotations:
                logger.info("Skipping helm hook", kind=obj.get("kind"), name=meta.get("name"))
                continue

            try:
                await self.store.apply(obj, self.options.field_owner)
            except Exception as exc:
                raise ReconcileError(
                    f"deploying {obj.get('kind')} {meta.get('name')!r}: {exc}"
                ) from exc

            logger.info("Deployed object", kind=obj.get("kind"), name=meta.get("name"))
            expected.add(kind_key(obj))

        # An unchanged generation means .spec matches the last successful
        # pass, so there is nothing new to collect.
        gen = redpanda.generation(rp)
        if gen == redpanda.observed_generation(rp) and gen != 0:
            logger.info(
                "Observed generation is up to date; skipping garbage collection",
                generation=gen,
            )
            return

        await self.garbage_collect(rp, expected)

    async def garbage_collect(self, rp: Dict[str, Any], expected: Set[KindKey]):
        """Delete owned, release-labelled objects missing from ``expected``."""
        namespace = rp["metadata"]["namespace"]
        uid = rp["metadata"]["uid"]
        labels = redpanda.release_identity_labels(rp)

        to_delete: List[KindKey] = []
        for child in self.options.child_kinds:
            try:
                items = await self.store.list(child.api_version, child.kind, namespace, labels)
            except UnknownKindError:
                # Optional CRDs (cert-manager, prometheus-operator) may be absent.
                logger.info("Skipping unknown kind", api_version=child.api_version, kind=child.kind)
                continue

            for obj in items:
                key = kind_key(obj)
                if key in expected:
                    continue
                if not is_owned_by(obj, uid):
                    continue
                to_delete.append(key)

        logger.info(
            "Identified objects to garbage collect",
            count=len(to_delete),
            objects=[str(k) for k in sorted(to_delete)],
        )

        errors: List[Exception] = []
        for key in sorted(to_delete):
            try:
                await self.store.delete(key.api_version, key.kind, key.namespace, key.name)
                gc_deleted_total.inc()
            except Exception as exc:
                if is_not_found(exc):
                    continue
                errors.append(ReconcileError(f"gc'ing {key}: {exc}"))

        if errors:
            raise GarbageCollectionError(errors)
