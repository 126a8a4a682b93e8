import os
from unittest.mock import MagicMock

import pytest

import computedomain_dra.defaults as defaults
from computedomain_dra.computedomain import ComputeDomainManager
from computedomain_dra.devices import ChannelInfo, NvCapDeviceInfo
from computedomain_dra.errors import PermanentError, is_permanent_error

LABEL = defaults.COMPUTE_DOMAIN_LABEL_KEY


def compute_domain(uid="cd-1", namespace="team-a", ready=True):
    cd = {"metadata": {"uid": uid, "name": "imex", "namespace": namespace}}
    if ready:
        cd["status"] = {"status": "Ready"}
    return cd


def node(labels=None):
    obj = MagicMock()
    obj.metadata.labels = labels
    obj.metadata.resource_version = "7"
    return obj


@pytest.fixture
def domains():
    return {}


@pytest.fixture
def manager(tmp_path, domains):
    return ComputeDomainManager(
        node_name="node-a",
        settings_root=str(tmp_path / "settings"),
        clique_id="clique-1",
        get_compute_domain=domains.get,
        core_api=MagicMock(),
    )


def test_namespace_match(manager, domains) -> None:
    domains["cd-1"] = compute_domain()
    manager.assert_compute_domain_namespace("team-a", "cd-1")


def test_namespace_mismatch_is_permanent(manager, domains) -> None:
    domains["cd-1"] = compute_domain()
    with pytest.raises(PermanentError, match="namespace"):
        manager.assert_compute_domain_namespace("team-b", "cd-1")


def test_unknown_domain_is_retryable(manager) -> None:
    with pytest.raises(RuntimeError, match="not found") as excinfo:
        manager.assert_compute_domain_namespace("team-a", "cd-1")
    assert not is_permanent_error(excinfo.value)


def test_domain_not_ready_is_retryable(manager, domains) -> None:
    domains["cd-1"] = compute_domain(ready=False)
    with pytest.raises(RuntimeError, match="not ready") as excinfo:
        manager.assert_compute_domain_ready("cd-1")
    assert not is_permanent_error(excinfo.value)

    domains["cd-1"] = compute_domain()
    manager.assert_compute_domain_ready("cd-1")


def test_add_node_label(manager) -> None:
    manager.core_api.read_node.return_value = node({"kubernetes.io/hostname": "node-a"})
    manager.add_node_label("cd-1")
    manager.core_api.patch_node.assert_called_once_with(
        name="node-a",
        body={"metadata": {"labels": {LABEL: "cd-1"}, "resourceVersion": "7"}},
    )


def test_add_node_label_already_set(manager) -> None:
    manager.core_api.read_node.return_value = node({LABEL: "cd-1"})
    manager.add_node_label("cd-1")
    manager.core_api.patch_node.assert_not_called()


def test_add_node_label_conflict(manager) -> None:
    manager.core_api.read_node.return_value = node({LABEL: "cd-2"})
    with pytest.raises(RuntimeError, match="already labeled"):
        manager.add_node_label("cd-1")
    manager.core_api.patch_node.assert_not_called()


def test_remove_node_label_only_own(manager) -> None:
    manager.core_api.read_node.return_value = node({LABEL: "cd-2"})
    manager.remove_node_label("cd-1")
    manager.core_api.patch_node.assert_not_called()

    manager.core_api.read_node.return_value = node({LABEL: "cd-1"})
    manager.remove_node_label("cd-1")
    manager.core_api.patch_node.assert_called_once_with(
        name="node-a",
        body={"metadata": {"labels": {LABEL: None}, "resourceVersion": "7"}},
    )


def test_remove_node_label_without_labels(manager) -> None:
    manager.core_api.read_node.return_value = node(None)
    manager.remove_node_label("cd-1")
    manager.core_api.patch_node.assert_not_called()


def test_daemon_settings_prepare_and_unprepare(manager) -> None:
    settings = manager.new_settings("cd-1")
    settings.prepare()
    settings.prepare()
    assert os.path.isfile(os.path.join(settings.root_dir, "nodes_config.cfg"))

    settings.unprepare()
    assert not os.path.exists(settings.root_dir)
    settings.unprepare()


def test_daemon_container_edits(manager, domains) -> None:
    domains["cd-1"] = compute_domain()
    settings = manager.new_settings("cd-1")
    edits = settings.get_cdi_container_edits("/host", NvCapDeviceInfo(major=235, minor=3, mode=256, modify=1))

    assert "CLIQUE_ID=clique-1" in edits.env
    assert "COMPUTE_DOMAIN_UUID=cd-1" in edits.env
    assert "COMPUTE_DOMAIN_NAMESPACE=team-a" in edits.env
    assert edits.mounts[0].host_path == settings.root_dir
    assert edits.mounts[0].container_path == defaults.DAEMON_SETTINGS_MOUNT
    assert edits.device_nodes[0].path == "/dev/nvidia-caps/nvidia-cap3"
    assert edits.device_nodes[0].host_path == "/host/dev/nvidia-caps/nvidia-cap3"


def test_daemon_container_edits_unknown_domain(manager) -> None:
    with pytest.raises(RuntimeError, match="not found"):
        manager.new_settings("cd-1").get_cdi_container_edits("/", NvCapDeviceInfo(major=1, minor=1, mode=1, modify=1))


def test_channel_container_edits(manager) -> None:
    edits = manager.get_channel_container_edits("/host", ChannelInfo(id=4))
    assert edits.device_nodes[0].path == "/dev/nvidia-caps-imex-channels/channel4"
    assert edits.device_nodes[0].host_path == "/host/dev/nvidia-caps-imex-channels/channel4"
