"""
Resolve which opaque config applies to each device allocation result.

Configs are collected from the device class (lower precedence) and the claim
(higher precedence); within each source later entries win. A default channel
config and a default daemon config are always present at the very lowest
precedence, so every result of this driver ends up with exactly one config.
"""

import logging

import computedomain_dra.api as api
import computedomain_dra.defaults as defaults
from computedomain_dra.devices import CHANNEL_TYPE, DAEMON_TYPE
from computedomain_dra.errors import PermanentError
from computedomain_dra.utils import get_nested

log = logging.getLogger(__name__)

SOURCE_CLASS = "FromClass"
SOURCE_CLAIM = "FromClaim"


class OpaqueDeviceConfig:
    def __init__(self, requests, config):
        self.requests = list(requests or [])
        self.config = config

    def is_wildcard(self):
        return len(self.requests) == 0

    def __repr__(self):
        return f"OpaqueDeviceConfig(requests={self.requests}, config={self.config!r})"


class ConfigResults:
    """
    One config and the allocation results it governs within a claim.
    """

    def __init__(self, config):
        self.config = config
        self.results = []

    def requests(self):
        return [r.get("request") for r in self.results]


def get_opaque_device_configs(driver_name, possible_configs):
    """
    Return this driver's configs, ordered from lowest to highest precedence.
    """
    class_configs = []
    claim_configs = []
    for config in possible_configs or []:
        source = config.get("source")
        if source == SOURCE_CLASS:
            class_configs.append(config)
        elif source == SOURCE_CLAIM:
            claim_configs.append(config)
        else:
            raise PermanentError(f"invalid config source: {source}")

    result_configs = []
    for config in class_configs + claim_configs:
        opaque = config.get("opaque")

        # Only opaque parameters are understood by this driver
        if opaque is None:
            raise PermanentError("only opaque parameters are supported by this driver")

        # A request can be satisfied by several drivers, skip the others
        if opaque.get("driver") != driver_name:
            log.debug(f"Skipping opaque config for driver {opaque.get('driver')}.")
            continue

        decoded = api.decode_config(opaque.get("parameters"))
        result_configs.append(OpaqueDeviceConfig(config.get("requests"), decoded))
    return result_configs


def _type_matches(config, device_type):
    if isinstance(config, api.ChannelConfig):
        return device_type == CHANNEL_TYPE
    if isinstance(config, api.DaemonConfig):
        return device_type == DAEMON_TYPE
    raise PermanentError(f"runtime object is not a recognized configuration: {type(config).__name__}")


def get_config_results_map(claim_status, allocatable, driver_name=defaults.DRIVER_NAME):
    """
    Group this driver's allocation results by the config that wins for them.

    Returns a list of ConfigResults in the order configs first matched. An
    explicit request match whose config type does not fit the device is a
    permanent error; a wildcard that does not fit is skipped.
    """
    allocation = get_nested(claim_status, "allocation")
    if allocation is None:
        raise PermanentError("claim status has no allocation")

    configs = get_opaque_device_configs(
        driver_name, get_nested(allocation, "devices", "config", default=[])
    )
    configs = [
        OpaqueDeviceConfig([], api.default_daemon_config()),
        OpaqueDeviceConfig([], api.default_channel_config()),
    ] + configs

    grouped = {}
    for result in get_nested(allocation, "devices", "results", default=[]):
        if result.get("driver") != driver_name:
            continue
        device = allocatable.get(result.get("device"))
        if device is None:
            raise RuntimeError(f"requested device is not allocatable: {result.get('device')}")
        device_type = device.type()
        request = result.get("request")

        for candidate in reversed(configs):
            if request in candidate.requests:
                if not _type_matches(candidate.config, device_type):
                    raise PermanentError(
                        f"cannot apply {candidate.config.kind} to request: {request}"
                    )
            elif candidate.is_wildcard():
                if not _type_matches(candidate.config, device_type):
                    continue
            else:
                continue
            key = id(candidate.config)
            if key not in grouped:
                grouped[key] = ConfigResults(candidate.config)
            grouped[key].results.append(result)
            break

    return list(grouped.values())
