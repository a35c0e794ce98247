"""Tests for watch sources and manager wiring."""

from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from prometheus_client import REGISTRY

from redpanda_reconciler.config import Settings
from redpanda_reconciler.manager import FLUX_KINDS, EventSource, Manager
from redpanda_reconciler.meta import ObjectKey
from redpanda_reconciler.predicates import pvc_unbinder_predicate
from redpanda_reconciler.store import CHILD_KINDS

from .conftest import make_pod


def _sources(manager):
    return {s.name: s for s in manager.sources}


class TestEventSource:
    def test_handle_filters_and_maps(self):
        controller = MagicMock()
        source = EventSource("pods", MagicMock(), controller, predicate=pvc_unbinder_predicate)

        assert source.handle(make_pod(phase="Running")) is None
        assert source.handle(make_pod()) == ObjectKey("default", "db-2")
        controller.enqueue_threadsafe.assert_called_once_with(ObjectKey("default", "db-2"))

    def test_mapper_returning_none_is_dropped(self):
        controller = MagicMock()
        source = EventSource("x", MagicMock(), controller, mapper=lambda obj: None)
        assert source.handle({"metadata": {"name": "a"}}) is None
        controller.enqueue_threadsafe.assert_not_called()

    def test_expired_watch_is_restarted_without_resource_version(self):
        controller = MagicMock()
        list_func = MagicMock()
        source = EventSource("pods-410", list_func, controller, list_args=("ns",))
        controller.enqueue_threadsafe.side_effect = lambda key: source._stop.set()

        watcher = MagicMock()
        watcher.stream.side_effect = [
            ApiException(status=410),
            iter([{"type": "ADDED", "object": make_pod()}]),
        ]

        with patch("redpanda_reconciler.manager.watch.Watch", return_value=watcher):
            source._run()

        assert watcher.stream.call_count == 2
        args, kwargs = watcher.stream.call_args
        assert args == (list_func, "ns")
        assert "resource_version" not in kwargs
        controller.enqueue_threadsafe.assert_called_once_with(ObjectKey("default", "db-2"))
        assert REGISTRY.get_sample_value(
            "redpanda_reconciler_watch_restarts_total",
            {"source": "pods-410", "reason": "expired"},
        ) == 1.0

    def test_stream_resumes_from_last_resource_version(self):
        controller = MagicMock()
        source = EventSource("pods-rv", MagicMock(), controller)
        calls = []

        def stream(func, *args, **kwargs):
            calls.append(kwargs)
            if len(calls) == 2:
                source._stop.set()
            return iter([{"type": "MODIFIED", "object": make_pod()}])

        watcher = MagicMock()
        watcher.stream.side_effect = stream

        with patch("redpanda_reconciler.manager.watch.Watch", return_value=watcher):
            source._run()

        assert "resource_version" not in calls[0]
        assert calls[1]["resource_version"] == "10"

    def test_errors_back_off_and_stop(self):
        source = EventSource("pods-err", MagicMock(), MagicMock())

        def boom(*args, **kwargs):
            source._stop.set()
            raise RuntimeError("connection reset")

        watcher = MagicMock()
        watcher.stream.side_effect = boom

        with patch("redpanda_reconciler.manager.watch.Watch", return_value=watcher):
            source._run()

        watcher.stop.assert_called()
        assert REGISTRY.get_sample_value(
            "redpanda_reconciler_watch_restarts_total",
            {"source": "pods-err", "reason": "error"},
        ) == 1.0

    def test_unserved_optional_source_stops(self):
        source = EventSource("hr-old", MagicMock(), MagicMock(), optional=True)
        watcher = MagicMock()
        watcher.stream.side_effect = ApiException(status=404)

        with patch("redpanda_reconciler.manager.watch.Watch", return_value=watcher):
            source._run()

        assert watcher.stream.call_count == 1
        assert REGISTRY.get_sample_value(
            "redpanda_reconciler_watch_restarts_total",
            {"source": "hr-old", "reason": "error"},
        ) is None


class TestManager:
    def test_namespaced_wiring(self):
        store = MagicMock()
        manager = Manager(
            Settings(pvc_unbinder_enabled=True, watch_namespace="redpanda"), store=store
        )

        assert sorted(manager.controllers) == ["pvc-unbinder", "redpanda"]
        sources = _sources(manager)
        assert sorted(sources) == [
            "deployments",
            "helmreleases",
            "helmreleases-v2beta1",
            "helmrepositories",
            "pods",
            "redpandas",
            "statefulsets",
        ]
        assert sources["pods"].list_func is store.core_v1.list_namespaced_pod
        assert sources["pods"].list_args == ("redpanda",)
        assert sources["statefulsets"].list_func is store.apps_v1.list_namespaced_stateful_set
        assert sources["redpandas"].list_func is store.custom_objects.list_namespaced_custom_object
        assert sources["redpandas"].list_args == (
            "cluster.redpanda.com",
            "v1alpha2",
            "redpanda",
            "redpandas",
        )
        assert sources["helmreleases"].list_args == (
            "helm.toolkit.fluxcd.io",
            "v2beta2",
            "redpanda",
            "helmreleases",
        )
        older = sources["helmreleases-v2beta1"]
        assert older.optional is True
        assert older.list_args == (
            "helm.toolkit.fluxcd.io",
            "v2beta1",
            "redpanda",
            "helmreleases",
        )
        assert older.mapper is sources["helmreleases"].mapper

    def test_cluster_wide_wiring_and_disabled_unbinder(self):
        store = MagicMock()
        manager = Manager(Settings(), store=store)

        assert sorted(manager.controllers) == ["redpanda"]
        sources = _sources(manager)
        assert "pods" not in sources
        assert sources["deployments"].list_func is store.apps_v1.list_deployment_for_all_namespaces
        assert sources["deployments"].list_args == ()
        assert sources["helmrepositories"].list_func is store.custom_objects.list_cluster_custom_object
        assert sources["helmrepositories"].list_args == (
            "source.toolkit.fluxcd.io",
            "v1beta2",
            "helmrepositories",
        )

    def test_controllers_use_settings(self):
        manager = Manager(
            Settings(max_concurrent_reconciles=5, backoff_max_seconds=10.0),
            store=MagicMock(),
        )
        c = manager.controllers["redpanda"]
        assert c._workers == 5
        assert c.queue.backoff_max == 10.0

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        store = MagicMock()
        manager = Manager(Settings(pvc_unbinder_enabled=True), store=store)

        with patch.object(EventSource, "start") as start, patch.object(EventSource, "stop") as stop:
            await manager.start()
            assert manager.running
            assert all(c.running for c in manager.controllers.values())
            assert manager.queue_depths() == {"pvc-unbinder": 0, "redpanda": 0}
            store.resolve_kinds.assert_called_once_with(CHILD_KINDS + FLUX_KINDS)
            assert start.call_count == len(manager.sources)

            await manager.stop()

        assert not manager.running
        assert stop.call_count == len(manager.sources)
