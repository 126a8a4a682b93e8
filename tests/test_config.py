import pytest

import computedomain_dra.api as api
import computedomain_dra.defaults as defaults
from computedomain_dra.config import get_config_results_map, get_opaque_device_configs
from computedomain_dra.devices import DeviceLib
from computedomain_dra.errors import PermanentError, is_permanent_error

DRIVER = defaults.DRIVER_NAME


@pytest.fixture
def allocatable():
    return DeviceLib(channel_count=2).enumerate_all_possible_devices()


def result(request, device, driver=DRIVER):
    return {"request": request, "driver": driver, "pool": "node-a", "device": device}


def opaque(source, kind, domain_id, requests=None, driver=DRIVER):
    return {
        "source": source,
        "requests": requests or [],
        "opaque": {
            "driver": driver,
            "parameters": {
                "apiVersion": defaults.CONFIG_API_VERSION,
                "kind": kind,
                "domainID": domain_id,
            },
        },
    }


def status(results, configs=None):
    return {"allocation": {"devices": {"results": results, "config": configs or []}}}


def single(config_results):
    assert len(config_results) == 1
    return config_results[0]


def test_defaults_apply_without_configs(allocatable) -> None:
    entries = get_config_results_map(
        status([result("channel", "channel-0"), result("daemon", "daemon-0")]), allocatable
    )
    kinds = {type(e.config) for e in entries}
    assert kinds == {api.ChannelConfig, api.DaemonConfig}
    assert all(e.config.domain_id == "" for e in entries)


def test_claim_config_beats_class_config(allocatable) -> None:
    configs = [
        opaque("FromClass", api.CHANNEL_CONFIG_KIND, "from-class", ["channel"]),
        opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "from-claim", ["channel"]),
    ]
    entry = single(get_config_results_map(status([result("channel", "channel-0")], configs), allocatable))
    assert entry.config.domain_id == "from-claim"


def test_claim_config_beats_class_config_regardless_of_listing_order(allocatable) -> None:
    configs = [
        opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "from-claim"),
        opaque("FromClass", api.CHANNEL_CONFIG_KIND, "from-class"),
    ]
    entry = single(get_config_results_map(status([result("channel", "channel-0")], configs), allocatable))
    assert entry.config.domain_id == "from-claim"


def test_later_config_within_source_wins(allocatable) -> None:
    configs = [
        opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "first"),
        opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "second"),
    ]
    entry = single(get_config_results_map(status([result("channel", "channel-0")], configs), allocatable))
    assert entry.config.domain_id == "second"


def test_explicit_request_beats_later_wildcard_of_other_type(allocatable) -> None:
    configs = [
        opaque("FromClass", api.DAEMON_CONFIG_KIND, "daemon-cd", ["daemon"]),
        opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "channel-cd"),
    ]
    entry = single(get_config_results_map(status([result("daemon", "daemon-0")], configs), allocatable))
    assert isinstance(entry.config, api.DaemonConfig)
    assert entry.config.domain_id == "daemon-cd"


def test_explicit_type_mismatch_is_permanent(allocatable) -> None:
    configs = [opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "cd-1", ["daemon"])]
    with pytest.raises(PermanentError, match="cannot apply"):
        get_config_results_map(status([result("daemon", "daemon-0")], configs), allocatable)


def test_wildcard_type_mismatch_is_skipped(allocatable) -> None:
    configs = [opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "cd-1")]
    entry = single(get_config_results_map(status([result("daemon", "daemon-0")], configs), allocatable))
    assert isinstance(entry.config, api.DaemonConfig)
    assert entry.config.domain_id == ""


def test_results_sharing_a_config_are_grouped(allocatable) -> None:
    configs = [opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "cd-1")]
    entries = get_config_results_map(
        status(
            [result("a", "channel-0"), result("daemon", "daemon-0"), result("b", "channel-1")],
            configs,
        ),
        allocatable,
    )
    assert [e.requests() for e in entries] == [["a", "b"], ["daemon"]]


def test_other_driver_configs_and_results_are_ignored(allocatable) -> None:
    configs = [
        opaque("FromClaim", api.CHANNEL_CONFIG_KIND, "cd-1"),
        {
            "source": "FromClaim",
            "requests": [],
            "opaque": {"driver": "gpu.nvidia.com", "parameters": {"kind": "GpuConfig"}},
        },
    ]
    entry = single(
        get_config_results_map(
            status(
                [result("channel", "channel-0"), result("gpu", "gpu-0", driver="gpu.nvidia.com")],
                configs,
            ),
            allocatable,
        )
    )
    assert entry.config.domain_id == "cd-1"
    assert entry.requests() == ["channel"]


def test_invalid_source_is_permanent() -> None:
    config = opaque("FromNowhere", api.CHANNEL_CONFIG_KIND, "cd-1")
    with pytest.raises(PermanentError, match="invalid config source"):
        get_opaque_device_configs(DRIVER, [config])


def test_non_opaque_config_is_permanent() -> None:
    with pytest.raises(PermanentError, match="opaque"):
        get_opaque_device_configs(DRIVER, [{"source": "FromClaim", "requests": []}])


def test_unknown_kind_is_permanent(allocatable) -> None:
    configs = [opaque("FromClaim", "GpuConfig", "cd-1")]
    with pytest.raises(PermanentError):
        get_config_results_map(status([result("channel", "channel-0")], configs), allocatable)


def test_missing_allocation_is_permanent(allocatable) -> None:
    with pytest.raises(PermanentError, match="no allocation"):
        get_config_results_map({}, allocatable)


def test_unknown_device_is_retryable(allocatable) -> None:
    with pytest.raises(RuntimeError, match="not allocatable") as excinfo:
        get_config_results_map(status([result("channel", "channel-99")]), allocatable)
    assert not is_permanent_error(excinfo.value)
