"""
Kubernetes resource store used by the reconcilers.

Wraps the typed and dynamic kubernetes clients behind async methods. Reads
return ``None`` on not-found; writes carry UID/resourceVersion preconditions
where a stale overwrite would be unsafe. Every other ApiException propagates.
"""

import asyncio
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import structlog
from kubernetes import client, config
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from .config import settings
from .errors import UnknownKindError, is_not_found
from .redpanda import CLUSTER_GROUP, CLUSTER_PLURAL, CLUSTER_VERSION

logger = structlog.get_logger(__name__)

# Dict bodies would otherwise be sent as JSON patches by CustomObjectsApi.
MERGE_PATCH = "application/merge-patch+json"


class ChildKind(NamedTuple):
    api_version: str
    kind: str


# Every kind the Redpanda chart can render. Third-party kinds (cert-manager,
# prometheus-operator) may be absent from the API server.
CHILD_KINDS: Tuple[ChildKind, ...] = (
    ChildKind("v1", "ConfigMap"),
    ChildKind("v1", "Secret"),
    ChildKind("v1", "Service"),
    ChildKind("v1", "ServiceAccount"),
    ChildKind("apps/v1", "StatefulSet"),
    ChildKind("apps/v1", "Deployment"),
    ChildKind("batch/v1", "Job"),
    ChildKind("policy/v1", "PodDisruptionBudget"),
    ChildKind("rbac.authorization.k8s.io/v1", "Role"),
    ChildKind("rbac.authorization.k8s.io/v1", "RoleBinding"),
    ChildKind("networking.k8s.io/v1", "Ingress"),
    ChildKind("cert-manager.io/v1", "Certificate"),
    ChildKind("cert-manager.io/v1", "Issuer"),
    ChildKind("monitoring.coreos.com/v1", "ServiceMonitor"),
)


def _preconditions(obj: Any) -> client.V1DeleteOptions:
    return client.V1DeleteOptions(
        preconditions=client.V1Preconditions(
            uid=obj.metadata.uid,
            resource_version=obj.metadata.resource_version,
        )
    )


def _label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class ResourceStore:
    """
    Kubernetes access for the reconcilers.

    All blocking client calls run in a worker thread so that reconciles for
    different keys can proceed concurrently on one event loop.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        if api_client is None:
            try:
                if settings.kubeconfig_path:
                    config.load_kube_config(settings.kubeconfig_path)
                else:
                    config.load_incluster_config()
            except config.ConfigException:
                logger.warning("Failed to load in-cluster config, trying kubeconfig")
                config.load_kube_config()
            api_client = client.ApiClient()

        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.custom_objects = client.CustomObjectsApi(api_client)
        self._dynamic: Optional[DynamicClient] = None
        self._resources: Dict[ChildKind, Any] = {}

    @property
    def dynamic(self) -> DynamicClient:
        # Discovery runs on construction, so defer it to first use.
        if self._dynamic is None:
            self._dynamic = DynamicClient(self.api_client)
        return self._dynamic

    def resolve_kinds(self, kinds: Tuple[ChildKind, ...] = CHILD_KINDS) -> None:
        """Resolve API resources for ``kinds`` once, remembering missing ones."""
        for kind in kinds:
            if kind in self._resources:
                continue
            try:
                self._resources[kind] = self.dynamic.resources.get(
                    api_version=kind.api_version, kind=kind.kind
                )
            except ResourceNotFoundError:
                logger.info(
                    "Kind not served by API server",
                    api_version=kind.api_version,
                    kind=kind.kind,
                )
                self._resources[kind] = None

    async def _resource(self, api_version: str, kind: str) -> Any:
        key = ChildKind(api_version, kind)
        if key not in self._resources:
            # Discovery is blocking network I/O.
            await asyncio.to_thread(self.resolve_kinds, (key,))
        resource = self._resources[key]
        if resource is None:
            raise UnknownKindError(api_version, kind)
        return resource

    # =========================================================================
    # PODS / VOLUMES
    # =========================================================================

    async def get_pod(self, namespace: str, name: str) -> Optional[client.V1Pod]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_pod, name, namespace
            )
        except Exception as e:
            if is_not_found(e):
                return None
            raise

    async def get_pvc(
        self, namespace: str, name: str
    ) -> Optional[client.V1PersistentVolumeClaim]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_persistent_volume_claim, name, namespace
            )
        except Exception as e:
            if is_not_found(e):
                return None
            raise

    async def list_pvs(self) -> List[client.V1PersistentVolume]:
        pv_list = await asyncio.to_thread(self.core_v1.list_persistent_volume)
        return list(pv_list.items)

    async def patch_pv(
        self, name: str, body: Dict[str, Any]
    ) -> client.V1PersistentVolume:
        return await asyncio.to_thread(
            self.core_v1.patch_persistent_volume,
            name,
            body,
            _content_type=MERGE_PATCH,
        )

    async def delete_pvc(self, pvc: client.V1PersistentVolumeClaim) -> None:
        """Delete ``pvc`` only if it is still the object we observed."""
        await asyncio.to_thread(
            self.core_v1.delete_namespaced_persistent_volume_claim,
            pvc.metadata.name,
            pvc.metadata.namespace,
            body=_preconditions(pvc),
        )

    async def delete_pod(self, pod: client.V1Pod) -> None:
        """Delete ``pod`` only if it is still the object we observed."""
        await asyncio.to_thread(
            self.core_v1.delete_namespaced_pod,
            pod.metadata.name,
            pod.metadata.namespace,
            body=_preconditions(pod),
        )

    # =========================================================================
    # SCALING GROUPS
    # =========================================================================

    async def list_statefulsets(
        self, namespace: str, labels: Dict[str, str]
    ) -> List[client.V1StatefulSet]:
        sts_list = await asyncio.to_thread(
            self.apps_v1.list_namespaced_stateful_set,
            namespace,
            label_selector=_label_selector(labels),
        )
        return list(sts_list.items)

    async def list_deployments(
        self, namespace: str, labels: Dict[str, str]
    ) -> List[client.V1Deployment]:
        deploy_list = await asyncio.to_thread(
            self.apps_v1.list_namespaced_deployment,
            namespace,
            label_selector=_label_selector(labels),
        )
        return list(deploy_list.items)

    # =========================================================================
    # REDPANDA CLUSTERS
    # =========================================================================

    async def get_cluster(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(
                self.custom_objects.get_namespaced_custom_object,
                CLUSTER_GROUP,
                CLUSTER_VERSION,
                namespace,
                CLUSTER_PLURAL,
                name,
            )
        except Exception as e:
            if is_not_found(e):
                return None
            raise

    async def patch_cluster(
        self, namespace: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(
            self.custom_objects.patch_namespaced_custom_object,
            CLUSTER_GROUP,
            CLUSTER_VERSION,
            namespace,
            CLUSTER_PLURAL,
            name,
            body,
            _content_type=MERGE_PATCH,
        )

    async def patch_cluster_status(
        self, namespace: str, name: str, status: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(
            self.custom_objects.patch_namespaced_custom_object_status,
            CLUSTER_GROUP,
            CLUSTER_VERSION,
            namespace,
            CLUSTER_PLURAL,
            name,
            {"status": status},
            _content_type=MERGE_PATCH,
        )

    # =========================================================================
    # GENERIC OBJECTS (dynamic client)
    # =========================================================================

    async def apply(self, obj: Dict[str, Any], field_owner: str) -> Dict[str, Any]:
        """Server-side apply ``obj``, forcing ownership of conflicting fields."""
        resource = await self._resource(obj["apiVersion"], obj["kind"])
        obj["metadata"].pop("managedFields", None)
        result = await asyncio.to_thread(
            self.dynamic.server_side_apply,
            resource,
            body=obj,
            name=obj["metadata"]["name"],
            namespace=obj["metadata"].get("namespace"),
            field_manager=field_owner,
            force_conflicts=True,
        )
        return result.to_dict()

    async def get(
        self, api_version: str, kind: str, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        resource = await self._resource(api_version, kind)
        try:
            result = await asyncio.to_thread(
                self.dynamic.get, resource, name=name, namespace=namespace
            )
        except Exception as e:
            if is_not_found(e):
                return None
            raise
        return result.to_dict()

    async def list(
        self, api_version: str, kind: str, namespace: str, labels: Dict[str, str]
    ) -> List[Dict[str, Any]]:
        """List objects of a kind; raises UnknownKindError for unserved kinds."""
        resource = await self._resource(api_version, kind)
        result = await asyncio.to_thread(
            self.dynamic.get,
            resource,
            namespace=namespace,
            label_selector=_label_selector(labels),
        )
        items = result.to_dict().get("items") or []
        # List items omit apiVersion/kind; restore them for key computation.
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items

    async def delete(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        propagation_policy: Optional[str] = None,
    ) -> None:
        resource = await self._resource(api_version, kind)
        body = {"propagationPolicy": propagation_policy} if propagation_policy else None
        await asyncio.to_thread(
            self.dynamic.delete, resource, name=name, namespace=namespace, body=body
        )


# Global store instance
_store: Optional[ResourceStore] = None


def get_store() -> ResourceStore:
    """Get or create ResourceStore singleton."""
    global _store
    if _store is None:
        _store = ResourceStore()
    return _store
