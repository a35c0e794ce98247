"""Shared test fixtures for redpanda-reconciler."""

import copy
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from kubernetes import client
from kubernetes.client.rest import ApiException

from redpanda_reconciler import redpanda
from redpanda_reconciler.errors import UnknownKindError
from redpanda_reconciler.meta import KindKey, ObjectKey, kind_key, object_labels

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
AFFINITY_MESSAGE = (
    "0/3 nodes are available: 3 node(s) had volume node affinity conflict"
)


# ---------------------------------------------------------------------------
# Environment fixture (needed by any test that instantiates Settings)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings_env(monkeypatch):
    """Set minimal environment for Settings to load."""
    monkeypatch.setenv("REDPANDA_RECONCILER_WATCH_NAMESPACE", "redpanda")
    monkeypatch.setenv("REDPANDA_RECONCILER_PVC_UNBINDER_ENABLED", "true")


# ---------------------------------------------------------------------------
# Singleton reset fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset module-level singletons between tests."""
    yield

    mod = sys.modules.get("redpanda_reconciler.store")
    if mod is not None:
        mod._store = None
    api = sys.modules.get("redpanda_reconciler.api")
    if api is not None:
        api.app_state.manager = None


# ---------------------------------------------------------------------------
# Object builders
# ---------------------------------------------------------------------------


def make_pod(
    name: str = "db-2",
    namespace: str = "default",
    claims: Iterable[str] = ("data-db-2",),
    phase: str = "Pending",
    message: str = AFFINITY_MESSAGE,
    pending_for: timedelta = timedelta(minutes=20),
    owner_kind: Optional[str] = "StatefulSet",
    labels: Optional[Dict[str, str]] = None,
    unschedulable: bool = True,
) -> client.V1Pod:
    owner_refs = None
    if owner_kind:
        owner_refs = [
            client.V1OwnerReference(
                api_version="apps/v1",
                kind=owner_kind,
                name=name.rsplit("-", 1)[0],
                uid=f"uid-{owner_kind.lower()}",
                controller=True,
            )
        ]
    conditions = []
    if unschedulable:
        conditions.append(
            client.V1PodCondition(
                type="PodScheduled",
                status="False",
                reason="Unschedulable",
                message=message,
                last_transition_time=NOW - pending_for,
            )
        )
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-pod-{name}",
            resource_version="10",
            labels=labels if labels is not None else {"app.kubernetes.io/name": "db"},
            owner_references=owner_refs,
        ),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name="main", image="busybox")],
            volumes=[
                client.V1Volume(
                    name=f"vol-{i}",
                    persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                        claim_name=claim
                    ),
                )
                for i, claim in enumerate(claims)
            ],
        ),
        status=client.V1PodStatus(phase=phase, conditions=conditions),
    )


def make_pvc(
    name: str = "data-db-2",
    namespace: str = "default",
    volume_name: Optional[str] = "pv-x",
) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-pvc-{name}",
            resource_version="20",
        ),
        spec=client.V1PersistentVolumeClaimSpec(volume_name=volume_name),
    )


def make_pv(
    name: str = "pv-x",
    claim: Optional[Tuple[str, str]] = ("default", "data-db-2"),
    host_path: bool = True,
    node_affinity: bool = True,
    reclaim: str = "Delete",
) -> client.V1PersistentVolume:
    affinity = None
    if node_affinity:
        affinity = client.V1VolumeNodeAffinity(
            required=client.V1NodeSelector(
                node_selector_terms=[
                    client.V1NodeSelectorTerm(
                        match_expressions=[
                            client.V1NodeSelectorRequirement(
                                key="kubernetes.io/hostname",
                                operator="In",
                                values=["node-1"],
                            )
                        ]
                    )
                ]
            )
        )
    claim_ref = None
    if claim is not None:
        claim_ref = client.V1ObjectReference(namespace=claim[0], name=claim[1])
    return client.V1PersistentVolume(
        metadata=client.V1ObjectMeta(name=name, uid=f"uid-pv-{name}", resource_version="30"),
        spec=client.V1PersistentVolumeSpec(
            host_path=client.V1HostPathVolumeSource(path=f"/data/{name}") if host_path else None,
            csi=None if host_path else client.V1CSIPersistentVolumeSource(driver="ebs", volume_handle=name),
            node_affinity=affinity,
            claim_ref=claim_ref,
            persistent_volume_reclaim_policy=reclaim,
        ),
    )


def make_statefulset(
    name: str = "rp",
    namespace: str = "redpanda",
    replicas: int = 3,
    ready: Optional[int] = None,
    labels: Optional[Dict[str, str]] = None,
) -> client.V1StatefulSet:
    ready = replicas if ready is None else ready
    return client.V1StatefulSet(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels
            or {"app.kubernetes.io/instance": name, "app.kubernetes.io/name": "redpanda"},
        ),
        spec=client.V1StatefulSetSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            service_name=name,
            template=client.V1PodTemplateSpec(),
        ),
        status=client.V1StatefulSetStatus(
            replicas=replicas,
            updated_replicas=replicas,
            available_replicas=ready,
            ready_replicas=ready,
        ),
    )


def make_deployment(
    name: str = "rp-console",
    namespace: str = "redpanda",
    replicas: int = 1,
    ready: Optional[int] = None,
    instance: str = "rp",
) -> client.V1Deployment:
    ready = replicas if ready is None else ready
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels={"app.kubernetes.io/instance": instance, "app.kubernetes.io/name": "console"},
        ),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            template=client.V1PodTemplateSpec(),
        ),
        status=client.V1DeploymentStatus(
            replicas=replicas,
            updated_replicas=replicas,
            available_replicas=ready,
            ready_replicas=ready,
        ),
    )


def make_cluster(
    name: str = "rp",
    namespace: str = "redpanda",
    generation: int = 1,
    use_flux: bool = True,
    finalizers: Optional[List[str]] = None,
    annotations: Optional[Dict[str, str]] = None,
    status: Optional[Dict[str, Any]] = None,
    chart_version: Optional[str] = None,
) -> Dict[str, Any]:
    chart_ref: Dict[str, Any] = {"useFlux": use_flux}
    if chart_version is not None:
        chart_ref["chartVersion"] = chart_version
    return {
        "apiVersion": "cluster.redpanda.com/v1alpha2",
        "kind": "Redpanda",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "uid-cluster",
            "generation": generation,
            "resourceVersion": "1",
            "finalizers": list(finalizers or []),
            "annotations": dict(annotations or {}),
        },
        "spec": {
            "chartRef": chart_ref,
            "clusterSpec": {"statefulset": {"replicas": 3}},
        },
        "status": dict(status or {}),
    }


def ready_flux_status(generation: int = 1) -> Dict[str, Any]:
    return {
        "observedGeneration": generation,
        "conditions": [{"type": "Ready", "status": "True"}],
    }


def owned_object(
    api_version: str,
    kind: str,
    name: str,
    namespace: str = "redpanda",
    owner_uid: str = "uid-cluster",
    release: str = "rp",
) -> Dict[str, Any]:
    return {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {
                redpanda.FLUX_NAME_LABEL: release,
                redpanda.FLUX_NAMESPACE_LABEL: namespace,
            },
            "ownerReferences": [
                {
                    "apiVersion": "cluster.redpanda.com/v1alpha2",
                    "kind": "Redpanda",
                    "name": release,
                    "uid": owner_uid,
                    "controller": True,
                }
            ],
        },
    }


# ---------------------------------------------------------------------------
# In-memory resource store
# ---------------------------------------------------------------------------


def _not_found(what: str) -> ApiException:
    return ApiException(status=404, reason=f"{what} not found")


def _conflict(what: str) -> ApiException:
    return ApiException(status=409, reason=f"precondition failed for {what}")


class FakeStore:
    """In-memory stand-in for ResourceStore that honours preconditions."""

    def __init__(self):
        self.pods: Dict[ObjectKey, client.V1Pod] = {}
        self.pvcs: Dict[ObjectKey, client.V1PersistentVolumeClaim] = {}
        self.pvs: Dict[str, client.V1PersistentVolume] = {}
        self.statefulsets: List[client.V1StatefulSet] = []
        self.deployments: List[client.V1Deployment] = []
        self.clusters: Dict[ObjectKey, Dict[str, Any]] = {}
        self.objects: Dict[KindKey, Dict[str, Any]] = {}
        self.unserved: Set[Tuple[str, str]] = set()
        self.fail_deletes: Set[KindKey] = set()
        self.calls: List[Tuple[Any, ...]] = []
        self.status_patches: List[Dict[str, Any]] = []
        self._version = 100

    def _next_rv(self) -> str:
        self._version += 1
        return str(self._version)

    # -- seeding ----------------------------------------------------------

    def add_pod(self, pod):
        self.pods[ObjectKey(pod.metadata.namespace, pod.metadata.name)] = pod

    def add_pvc(self, pvc):
        self.pvcs[ObjectKey(pvc.metadata.namespace, pvc.metadata.name)] = pvc

    def add_pv(self, pv):
        self.pvs[pv.metadata.name] = pv

    def add_cluster(self, rp):
        self.clusters[ObjectKey(rp["metadata"]["namespace"], rp["metadata"]["name"])] = rp

    def add_object(self, obj):
        obj = copy.deepcopy(obj)
        obj["metadata"].setdefault("generation", 1)
        obj["metadata"].setdefault("uid", f"uid-{obj['metadata']['name']}")
        self.objects[kind_key(obj)] = obj

    def writes(self) -> List[Tuple[Any, ...]]:
        return [c for c in self.calls if c[0] != "get"]

    # -- pods / volumes ---------------------------------------------------

    async def get_pod(self, namespace, name):
        pod = self.pods.get(ObjectKey(namespace, name))
        return copy.deepcopy(pod)

    async def get_pvc(self, namespace, name):
        return copy.deepcopy(self.pvcs.get(ObjectKey(namespace, name)))

    async def list_pvs(self):
        return [copy.deepcopy(pv) for pv in self.pvs.values()]

    async def patch_pv(self, name, body):
        self.calls.append(("patch_pv", name, copy.deepcopy(body)))
        pv = self.pvs.get(name)
        if pv is None:
            raise _not_found(name)
        expected_rv = (body.get("metadata") or {}).get("resourceVersion")
        if expected_rv is not None and expected_rv != pv.metadata.resource_version:
            raise _conflict(name)
        spec = body.get("spec") or {}
        if "persistentVolumeReclaimPolicy" in spec:
            pv.spec.persistent_volume_reclaim_policy = spec["persistentVolumeReclaimPolicy"]
        if "claimRef" in spec and spec["claimRef"] is None:
            pv.spec.claim_ref = None
        pv.metadata.resource_version = self._next_rv()
        return copy.deepcopy(pv)

    async def _delete_typed(self, kind, table, obj):
        key = ObjectKey(obj.metadata.namespace, obj.metadata.name)
        self.calls.append((f"delete_{kind}", str(key)))
        live = table.get(key)
        if live is None:
            raise _not_found(str(key))
        if (
            live.metadata.uid != obj.metadata.uid
            or live.metadata.resource_version != obj.metadata.resource_version
        ):
            raise _conflict(str(key))
        del table[key]

    async def delete_pvc(self, pvc):
        await self._delete_typed("pvc", self.pvcs, pvc)

    async def delete_pod(self, pod):
        await self._delete_typed("pod", self.pods, pod)

    # -- scaling groups ---------------------------------------------------

    @staticmethod
    def _select(items, namespace, labels):
        return [
            i
            for i in items
            if i.metadata.namespace == namespace
            and all(object_labels(i).get(k) == v for k, v in labels.items())
        ]

    async def list_statefulsets(self, namespace, labels):
        return self._select(self.statefulsets, namespace, labels)

    async def list_deployments(self, namespace, labels):
        return self._select(self.deployments, namespace, labels)

    # -- clusters ---------------------------------------------------------

    async def get_cluster(self, namespace, name):
        return copy.deepcopy(self.clusters.get(ObjectKey(namespace, name)))

    async def patch_cluster(self, namespace, name, body):
        self.calls.append(("patch_cluster", f"{namespace}/{name}", copy.deepcopy(body)))
        rp = self.clusters.get(ObjectKey(namespace, name))
        if rp is None:
            raise _not_found(name)
        meta = body.get("metadata") or {}
        if meta.get("resourceVersion") not in (None, rp["metadata"]["resourceVersion"]):
            raise _conflict(name)
        if "finalizers" in meta:
            rp["metadata"]["finalizers"] = list(meta["finalizers"])
        rp["metadata"]["resourceVersion"] = self._next_rv()
        return copy.deepcopy(rp)

    async def patch_cluster_status(self, namespace, name, status):
        self.calls.append(("patch_cluster_status", f"{namespace}/{name}"))
        self.status_patches.append(copy.deepcopy(status))
        rp = self.clusters[ObjectKey(namespace, name)]
        rp["status"] = copy.deepcopy(status)
        return copy.deepcopy(rp)

    # -- generic objects --------------------------------------------------

    def _check_kind(self, api_version, kind):
        if (api_version, kind) in self.unserved:
            raise UnknownKindError(api_version, kind)

    async def apply(self, obj, field_owner):
        self._check_kind(obj["apiVersion"], obj["kind"])
        key = kind_key(obj)
        self.calls.append(("apply", str(key), field_owner))
        stored = copy.deepcopy(obj)
        existing = self.objects.get(key)
        if existing is not None:
            # Server-owned fields survive an apply.
            stored["status"] = copy.deepcopy(existing.get("status"))
            stored["metadata"]["generation"] = existing["metadata"].get("generation", 1)
            stored["metadata"]["uid"] = existing["metadata"].get("uid")
        else:
            stored["metadata"]["generation"] = 1
            stored["metadata"]["uid"] = f"uid-{obj['metadata']['name']}"
        self.objects[key] = stored
        return copy.deepcopy(stored)

    async def get(self, api_version, kind, namespace, name):
        self._check_kind(api_version, kind)
        return copy.deepcopy(self.objects.get(KindKey(api_version, kind, namespace, name)))

    async def list(self, api_version, kind, namespace, labels):
        self._check_kind(api_version, kind)
        return [
            copy.deepcopy(obj)
            for key, obj in self.objects.items()
            if key.api_version == api_version
            and key.kind == kind
            and key.namespace == namespace
            and all(object_labels(obj).get(k) == v for k, v in labels.items())
        ]

    async def delete(self, api_version, kind, namespace, name, propagation_policy=None):
        self._check_kind(api_version, kind)
        key = KindKey(api_version, kind, namespace, name)
        self.calls.append(("delete", str(key), propagation_policy))
        if key in self.fail_deletes:
            raise ApiException(status=500, reason="internal error")
        if key not in self.objects:
            raise _not_found(str(key))
        del self.objects[key]


@pytest.fixture
def fake_store():
    return FakeStore()


# ---------------------------------------------------------------------------
# httpx / FastAPI test client
# ---------------------------------------------------------------------------


@pytest.fixture
def app_no_lifespan(settings_env):
    """Create a FastAPI app instance without running lifespan (no watches)."""
    from redpanda_reconciler.api import app_state, create_app

    manager = MagicMock()
    manager.running = True
    manager.queue_depths.return_value = {"pvc-unbinder": 0, "redpanda": 2}
    app_state.manager = manager

    app = create_app()
    # Remove the lifespan so httpx can call routes directly
    app.router.lifespan_context = None
    return app


@pytest_asyncio.fixture
async def async_client(app_no_lifespan):
    """Async httpx test client for FastAPI endpoint tests."""
    from httpx import ASGITransport, AsyncClient

    transport = ASGITransport(app=app_no_lifespan)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
