import threading
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

import computedomain_dra.defaults as defaults
from computedomain_dra.controller.base import ManagerConfig
from computedomain_dra.controller.node import NodeManager

LABEL = defaults.COMPUTE_DOMAIN_LABEL_KEY


def node(name, cd_uid=None):
    obj = MagicMock()
    obj.metadata.name = name
    obj.metadata.labels = {LABEL: cd_uid} if cd_uid else {}
    return obj


@pytest.fixture
def domains():
    return {}


@pytest.fixture
def manager(domains):
    config = ManagerConfig(
        driver_namespace="nvidia-dra-driver",
        core_api=MagicMock(),
        apps_api=MagicMock(),
        custom_api=MagicMock(),
    )
    return NodeManager(config, domains.get, cleanup_interval=3600)


def removed(manager):
    return [c.kwargs["name"] for c in manager.config.core_api.patch_node.call_args_list]


def test_delete_removes_label_from_each_node(manager) -> None:
    manager.config.core_api.list_node.return_value.items = [node("node-a", "cd-1"), node("node-b", "cd-1")]
    manager.delete("cd-1")

    manager.config.core_api.list_node.assert_called_once_with(label_selector=f"{LABEL}=cd-1")
    assert removed(manager) == ["node-a", "node-b"]
    assert manager.config.core_api.patch_node.call_args.kwargs["body"] == {"metadata": {"labels": {LABEL: None}}}


def test_delete_ignores_vanished_nodes(manager) -> None:
    manager.config.core_api.list_node.return_value.items = [node("node-a", "cd-1")]
    manager.config.core_api.patch_node.side_effect = ApiException(status=404)
    manager.delete("cd-1")


def test_assert_removed(manager) -> None:
    manager.config.core_api.list_node.return_value.items = [node("node-a", "cd-1")]
    with pytest.raises(RuntimeError, match="node-a"):
        manager.assert_removed("cd-1")

    manager.config.core_api.list_node.return_value.items = []
    manager.assert_removed("cd-1")


def test_remove_stale_labels(manager, domains) -> None:
    domains["cd-live"] = {"metadata": {"uid": "cd-live"}}
    manager.config.core_api.list_node.return_value.items = [
        node("node-a", "cd-live"),
        node("node-b", "cd-gone"),
    ]
    manager.remove_stale_labels()

    manager.config.core_api.list_node.assert_called_once_with(label_selector=LABEL)
    assert removed(manager) == ["node-b"]


def test_remove_stale_labels_async_logs_errors(manager) -> None:
    manager.config.core_api.list_node.side_effect = ApiException(status=500)
    thread = manager.remove_stale_labels_async()
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_remove_stale_labels_async_runs_one_sweep_at_a_time(manager) -> None:
    listing, release = threading.Event(), threading.Event()

    def slow_list_node(**kwargs):
        listing.set()
        release.wait(5)
        return MagicMock(items=[])

    manager.config.core_api.list_node.side_effect = slow_list_node
    first = manager.remove_stale_labels_async()
    assert listing.wait(5)

    # A second request while the first sweep is listing nodes is dropped
    assert manager.remove_stale_labels_async() is None

    release.set()
    first.join(timeout=5)
    assert not first.is_alive()
    assert manager.config.core_api.list_node.call_count == 1

    second = manager.remove_stale_labels_async()
    assert second is not None
    second.join(timeout=5)
    assert manager.config.core_api.list_node.call_count == 2


def test_create_and_remove_finalizer_are_noops(manager) -> None:
    assert manager.create("team-a", {}) is None
    assert manager.remove_finalizer("cd-1") is None
    manager.config.core_api.patch_node.assert_not_called()
