"""
Wiring: watch streams feeding controllers.

Each ``EventSource`` runs a blocking ``kubernetes.watch.Watch`` in a daemon
thread, filters events with a predicate, maps the object to a reconcile key
and hands the key to its controller's queue on the event loop.
"""

import asyncio
import random
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from kubernetes import watch
from kubernetes.client.rest import ApiException

from . import __version__, redpanda
from .admin_client import AdminClientFactory
from .config import Settings, settings
from .controller import Controller
from .meta import ObjectKey, object_key, object_resource_version
from .metrics import reconciler_info, watch_restarts_total
from .predicates import (
    cluster_key_from_owner,
    cluster_key_from_release,
    helm_managed_component,
    pvc_unbinder_predicate,
)
from .pvc_unbinder import PVCUnbinder, UnbinderOptions
from .redpanda_controller import RedpandaReconciler, SyncOptions
from .render import TemplateRenderer
from .store import CHILD_KINDS, ChildKind, ResourceStore, get_store

logger = structlog.get_logger(__name__)

Mapper = Callable[[Any], Optional[ObjectKey]]
Predicate = Callable[[Any], bool]

FLUX_KINDS = (
    ChildKind(redpanda.HELM_RELEASE_API_VERSION, redpanda.RESOURCE_TYPE_HELM_RELEASE),
    ChildKind(redpanda.HELM_REPOSITORY_API_VERSION, redpanda.RESOURCE_TYPE_HELM_REPOSITORY),
)


class EventSource:
    """Watch one resource list and enqueue mapped keys."""

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        controller: Controller,
        mapper: Mapper = object_key,
        predicate: Optional[Predicate] = None,
        list_args: Tuple[Any, ...] = (),
        timeout_seconds: int = 300,
        max_backoff_seconds: float = 30.0,
        optional: bool = False,
    ):
        self.name = name
        self.list_func = list_func
        self.controller = controller
        self.mapper = mapper
        self.predicate = predicate
        self.list_args = list_args
        self.timeout_seconds = timeout_seconds
        self.max_backoff_seconds = max_backoff_seconds
        # Optional sources stop quietly when the API server does not serve them.
        self.optional = optional

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watch: Optional[watch.Watch] = None
        self._watch_lock = threading.Lock()

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"watch-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info("Watch started", source=self.name)

    def stop(self):
        self._stop.set()
        with self._watch_lock:
            active = self._watch
        if active is not None:
            active.stop()

    def handle(self, obj: Any) -> Optional[ObjectKey]:
        """Filter and map one watched object, enqueueing its key."""
        if self.predicate is not None and not self.predicate(obj):
            return None
        key = self.mapper(obj)
        if key is None:
            return None
        self.controller.enqueue_threadsafe(key)
        return key

    def _run(self):
        # Restarting without a resourceVersion replays every object as ADDED,
        # which doubles as a periodic resync.
        resource_version: Optional[str] = None
        backoff = 1.0

        while not self._stop.is_set():
            w = watch.Watch()
            with self._watch_lock:
                self._watch = w
            kwargs: Dict[str, Any] = {"timeout_seconds": self.timeout_seconds}
            if resource_version:
                kwargs["resource_version"] = resource_version

            try:
                for event in w.stream(self.list_func, *self.list_args, **kwargs):
                    if self._stop.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    resource_version = object_resource_version(obj) or resource_version
                    self.handle(obj)
                backoff = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    logger.warning("Watch resource version expired, re-listing", source=self.name)
                    watch_restarts_total.labels(source=self.name, reason="expired").inc()
                    resource_version = None
                    continue
                if exc.status == 404 and self.optional:
                    logger.info("Resource not served; stopping watch", source=self.name)
                    break
                logger.error("Kubernetes API watch error", source=self.name, status=exc.status, error=str(exc))
                watch_restarts_total.labels(source=self.name, reason="error").inc()
                resource_version = None
                self._stop.wait(backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, self.max_backoff_seconds)
            except Exception as exc:
                logger.error("Unexpected watch error", source=self.name, error=str(exc))
                watch_restarts_total.labels(source=self.name, reason="error").inc()
                resource_version = None
                self._stop.wait(backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, self.max_backoff_seconds)
            finally:
                w.stop()

        logger.info("Watch stopped", source=self.name)


class Manager:
    """Builds reconcilers, controllers and watch sources from settings."""

    def __init__(self, s: Settings = settings, store: Optional[ResourceStore] = None):
        self.settings = s
        self.store = store or get_store()
        self.controllers: Dict[str, Controller] = {}
        self.sources: List[EventSource] = []
        self._started = False

        if s.pvc_unbinder_enabled:
            self._setup_pvc_unbinder()
        if s.redpanda_controller_enabled:
            self._setup_redpanda()

    @property
    def running(self) -> bool:
        return self._started

    def queue_depths(self) -> Dict[str, int]:
        return {name: len(c.queue) for name, c in self.controllers.items()}

    def _controller(self, name: str, reconcile) -> Controller:
        c = Controller(
            name,
            reconcile,
            workers=self.settings.max_concurrent_reconciles,
            backoff_base=self.settings.backoff_base_seconds,
            backoff_max=self.settings.backoff_max_seconds,
        )
        self.controllers[name] = c
        return c

    # =========================================================================
    # LIST FUNCTIONS (namespaced or cluster-wide)
    # =========================================================================

    def _core_list(self, api: Any, resource: str) -> Tuple[Callable[..., Any], Tuple[Any, ...]]:
        ns = self.settings.watch_namespace
        if ns:
            return getattr(api, f"list_namespaced_{resource}"), (ns,)
        return getattr(api, f"list_{resource}_for_all_namespaces"), ()

    def _custom_list(self, api_version: str, plural: str) -> Tuple[Callable[..., Any], Tuple[Any, ...]]:
        group, version = api_version.split("/", 1)
        api = self.store.custom_objects
        ns = self.settings.watch_namespace
        if ns:
            return api.list_namespaced_custom_object, (group, version, ns, plural)
        return api.list_cluster_custom_object, (group, version, plural)

    def _source(self, name: str, listing, controller: Controller, **kwargs) -> EventSource:
        list_func, list_args = listing
        source = EventSource(name, list_func, controller, list_args=list_args, **kwargs)
        self.sources.append(source)
        return source

    # =========================================================================
    # CONTROLLERS
    # =========================================================================

    def _setup_pvc_unbinder(self):
        unbinder = PVCUnbinder(self.store, UnbinderOptions.from_settings(self.settings))
        c = self._controller(unbinder.name, unbinder.reconcile)
        self._source(
            "pods",
            self._core_list(self.store.core_v1, "pod"),
            c,
            predicate=pvc_unbinder_predicate,
        )

    def _setup_redpanda(self):
        reconciler = RedpandaReconciler(
            self.store,
            TemplateRenderer(self.settings.chart_dir),
            AdminClientFactory(
                self.settings.admin_api_url_template,
                self.settings.admin_api_timeout_seconds,
            ),
            SyncOptions.from_settings(self.settings),
        )
        c = self._controller(reconciler.name, reconciler.reconcile)

        self._source(
            "redpandas",
            self._custom_list(
                f"{redpanda.CLUSTER_GROUP}/{redpanda.CLUSTER_VERSION}",
                redpanda.CLUSTER_PLURAL,
            ),
            c,
        )
        self._source(
            "helmreleases",
            self._custom_list(redpanda.HELM_RELEASE_API_VERSION, "helmreleases"),
            c,
            mapper=cluster_key_from_owner,
        )
        # Releases still served at the older version also requeue their cluster.
        self._source(
            "helmreleases-v2beta1",
            self._custom_list(redpanda.HELM_RELEASE_V2BETA1_API_VERSION, "helmreleases"),
            c,
            mapper=cluster_key_from_owner,
            optional=True,
        )
        self._source(
            "helmrepositories",
            self._custom_list(redpanda.HELM_REPOSITORY_API_VERSION, "helmrepositories"),
            c,
            mapper=cluster_key_from_owner,
        )
        self._source(
            "statefulsets",
            self._core_list(self.store.apps_v1, "stateful_set"),
            c,
            predicate=helm_managed_component,
            mapper=cluster_key_from_release,
        )
        self._source(
            "deployments",
            self._core_list(self.store.apps_v1, "deployment"),
            c,
            predicate=helm_managed_component,
            mapper=cluster_key_from_release,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        if self.settings.redpanda_controller_enabled:
            # Discovery is blocking; resolve every kind once up front.
            await asyncio.to_thread(self.store.resolve_kinds, CHILD_KINDS + FLUX_KINDS)

        for c in self.controllers.values():
            await c.start()
        for source in self.sources:
            source.start()

        reconciler_info.info(
            {
                "version": __version__,
                "controllers": ",".join(sorted(self.controllers)),
                "watch_namespace": self.settings.watch_namespace or "*",
            }
        )
        self._started = True
        logger.info(
            "Manager started",
            controllers=sorted(self.controllers),
            sources=[s.name for s in self.sources],
        )

    async def stop(self):
        for source in self.sources:
            source.stop()
        for c in self.controllers.values():
            await c.stop()
        self._started = False
        logger.info("Manager stopped")
