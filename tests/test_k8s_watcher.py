"""Tests for the Kubernetes watcher (API calls mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from k8s_factories import make_ingress, make_service
from napi_ingress_controller.k8s_watcher import RESOURCE_INGRESSES, RESOURCE_SERVICES, K8sWatcher


class TestHandleEvent:
    def test_forwards_events(self) -> None:
        on_event = MagicMock()
        watcher = K8sWatcher([], [RESOURCE_INGRESSES], on_event)
        ing = make_ingress()

        watcher._handle_event(RESOURCE_INGRESSES, {"type": "ADDED", "object": ing})

        on_event.assert_called_once_with(RESOURCE_INGRESSES, "ADDED", ing)

    def test_ignores_bookmarks_and_empty_objects(self) -> None:
        on_event = MagicMock()
        watcher = K8sWatcher([], [RESOURCE_INGRESSES], on_event)

        watcher._handle_event(RESOURCE_INGRESSES, {"type": "BOOKMARK", "object": make_ingress()})
        watcher._handle_event(RESOURCE_INGRESSES, {"type": "ADDED", "object": None})

        on_event.assert_not_called()

    def test_callback_errors_are_contained(self) -> None:
        watcher = K8sWatcher([], [RESOURCE_SERVICES], MagicMock(side_effect=RuntimeError("boom")))
        watcher._handle_event(RESOURCE_SERVICES, {"type": "DELETED", "object": make_service()})


class TestListObjects:
    @patch("napi_ingress_controller.k8s_watcher.client")
    def test_all_namespaces(self, mock_client: MagicMock) -> None:
        api = mock_client.NetworkingV1Api.return_value
        api.list_ingress_for_all_namespaces.return_value = MagicMock(items=[make_ingress()])

        items = K8sWatcher([], [RESOURCE_INGRESSES], MagicMock()).list_objects(RESOURCE_INGRESSES)

        assert len(items) == 1
        api.list_ingress_for_all_namespaces.assert_called_once_with()

    @patch("napi_ingress_controller.k8s_watcher.client")
    def test_listed_namespaces(self, mock_client: MagicMock) -> None:
        api = mock_client.CoreV1Api.return_value
        api.list_namespaced_service.return_value = MagicMock(items=[make_service()])

        watcher = K8sWatcher(["a", "b"], [RESOURCE_SERVICES], MagicMock())
        items = watcher.list_objects(RESOURCE_SERVICES)

        assert len(items) == 2
        assert [c.kwargs["namespace"] for c in api.list_namespaced_service.call_args_list] == ["a", "b"]


class TestLifecycle:
    def test_unknown_resource_type_is_skipped(self) -> None:
        watcher = K8sWatcher([], ["deployments"], MagicMock())
        watcher.start()
        assert watcher._threads == []
        watcher.stop()
