from unittest.mock import MagicMock

import pytest

import computedomain_dra.api as api
import computedomain_dra.defaults as defaults
from computedomain_dra.controller.base import ManagerConfig
from computedomain_dra.controller.resourceclaimtemplate import (
    DaemonResourceClaimTemplateManager,
    WorkloadResourceClaimTemplateManager,
    daemon_object_name,
)
from computedomain_dra.errors import PermanentError


def compute_domain(template_name="imex-channel"):
    cd = {"metadata": {"uid": "cd-1", "name": "imex", "namespace": "team-a"}, "spec": {"numNodes": 2}}
    if template_name:
        cd["spec"]["channel"] = {"resourceClaimTemplate": {"name": template_name}}
    return cd


@pytest.fixture
def config():
    config = ManagerConfig(
        driver_namespace="nvidia-dra-driver",
        core_api=MagicMock(),
        apps_api=MagicMock(),
        custom_api=MagicMock(),
    )
    config.custom_api.create_namespaced_custom_object.side_effect = lambda body, **kwargs: body
    return config


def test_workload_template(config) -> None:
    manager = WorkloadResourceClaimTemplateManager(config, MagicMock())
    manager.create("team-a", compute_domain())

    kwargs = config.custom_api.create_namespaced_custom_object.call_args.kwargs
    assert kwargs["namespace"] == "team-a"
    assert kwargs["plural"] == "resourceclaimtemplates"
    body = kwargs["body"]
    assert body["metadata"]["name"] == "imex-channel"
    assert body["metadata"]["labels"] == {
        defaults.COMPUTE_DOMAIN_LABEL_KEY: "cd-1",
        defaults.TEMPLATE_TARGET_LABEL_KEY: defaults.TEMPLATE_TARGET_WORKLOAD,
    }
    devices = body["spec"]["spec"]["devices"]
    assert devices["requests"] == [{"name": "channel", "deviceClassName": defaults.CHANNEL_DEVICE_CLASS}]
    assert devices["config"][0]["requests"] == ["channel"]
    assert devices["config"][0]["opaque"]["driver"] == defaults.DRIVER_NAME
    assert api.decode_config(devices["config"][0]["opaque"]["parameters"]).domain_id == "cd-1"


def test_workload_template_requires_name(config) -> None:
    manager = WorkloadResourceClaimTemplateManager(config, MagicMock())
    with pytest.raises(PermanentError, match="resourceClaimTemplate"):
        manager.create("team-a", compute_domain(template_name=None))
    config.custom_api.create_namespaced_custom_object.assert_not_called()


def test_daemon_template_name(config) -> None:
    manager = DaemonResourceClaimTemplateManager(config, MagicMock())
    manager.create("nvidia-dra-driver", compute_domain())

    body = config.custom_api.create_namespaced_custom_object.call_args.kwargs["body"]
    assert body["metadata"]["name"] == daemon_object_name("cd-1") == "computedomain-daemon-cd-1"
    assert isinstance(api.decode_config(body["spec"]["spec"]["devices"]["config"][0]["opaque"]["parameters"]), api.DaemonConfig)


def test_informer_selects_own_target(config) -> None:
    workload = WorkloadResourceClaimTemplateManager(config, MagicMock())
    daemon = DaemonResourceClaimTemplateManager(config, MagicMock())
    assert workload.informer.list_kwargs["label_selector"].endswith(
        f"{defaults.TEMPLATE_TARGET_LABEL_KEY}={defaults.TEMPLATE_TARGET_WORKLOAD}"
    )
    assert daemon.informer.list_kwargs["label_selector"].endswith(
        f"{defaults.TEMPLATE_TARGET_LABEL_KEY}={defaults.TEMPLATE_TARGET_DAEMON}"
    )
