import copy
import logging
import threading

from kubernetes import client

import computedomain_dra.api as api
import computedomain_dra.defaults as defaults
from computedomain_dra.checkpoint import Checkpoint, PreparedClaim
from computedomain_dra.config import get_config_results_map
from computedomain_dra.devices import CHANNEL_TYPE, DAEMON_TYPE
from computedomain_dra.errors import PermanentError
from computedomain_dra.prepared import (
    DeviceConfigState,
    KubeletDevice,
    PreparedChannel,
    PreparedDaemon,
    PreparedDevice,
    PreparedDeviceGroup,
    PreparedDevices,
    append_edits,
)
from computedomain_dra.utils import get_nested

log = logging.getLogger(__name__)


def claim_ref_string(claim_ref):
    return f"{claim_ref.namespace}/{claim_ref.name}:{claim_ref.uid}"


class DeviceState:
    """
    Prepares and unprepares this node's devices for resource claims.

    All calls are serialized behind one lock, and the checkpoint is the only
    record of what is prepared: a claim UID is in the checkpoint if and only
    if its devices are prepared on this node.
    """

    def __init__(
        self,
        cdi,
        compute_domain_manager,
        allocatable,
        devlib,
        checkpoint_manager,
        get_resource_claim=None,
        checkpoint_name=defaults.CHECKPOINT_FILE_BASENAME,
        driver_name=defaults.DRIVER_NAME,
    ):
        self._lock = threading.Lock()
        self.cdi = cdi
        self.compute_domain_manager = compute_domain_manager
        self.allocatable = allocatable
        self.devlib = devlib
        self.checkpoint_manager = checkpoint_manager
        self.get_resource_claim = get_resource_claim
        self.checkpoint_name = checkpoint_name
        self.driver_name = driver_name

        self.cdi.create_standard_device_spec_file(allocatable)
        if checkpoint_name not in self.checkpoint_manager.list_checkpoints():
            log.info(f"Creating empty checkpoint {checkpoint_name}.")
            self.checkpoint_manager.create_checkpoint(checkpoint_name, Checkpoint())

    @property
    def fabric_enabled(self):
        return self.compute_domain_manager.clique_id != ""

    def prepare(self, claim: dict):
        """
        Prepare the devices of a claim and return the kubelet device list.

        A claim already in the checkpoint returns its recorded devices without
        repeating any side effects.
        """
        with self._lock:
            claim_uid = claim["metadata"]["uid"]
            checkpoint = self.checkpoint_manager.get_checkpoint(self.checkpoint_name)

            prepared_claim = checkpoint.v1.prepared_claims.get(claim_uid)
            if prepared_claim is not None:
                log.debug(f"Skip prepare: claim {claim_uid} found in checkpoint.")
                return prepared_claim.get_prepared_devices().get_devices()

            try:
                prepared_devices = self.prepare_devices(claim)
            except Exception as e:
                raise RuntimeError(f"prepare devices failed: {e}") from e

            try:
                self.cdi.create_claim_spec_file(claim_uid, prepared_devices)
            except Exception as e:
                raise RuntimeError(f"unable to create CDI spec file for claim: {e}") from e

            # The unprepare path must only depend on local state, the claim
            # may be gone from the API server by then.
            checkpoint.v1.prepared_claims[claim_uid] = PreparedClaim(
                status=copy.deepcopy(claim.get("status") or {}),
                prepared_devices=list(prepared_devices),
            )
            self.checkpoint_manager.create_checkpoint(self.checkpoint_name, checkpoint)
            log.debug(f"Checkpoint written for claim {claim_uid}.")
            return prepared_devices.get_devices()

    def unprepare(self, claim_ref):
        with self._lock:
            claim_uid = claim_ref.uid
            checkpoint = self.checkpoint_manager.get_checkpoint(self.checkpoint_name)

            prepared_claim = checkpoint.v1.prepared_claims.get(claim_uid)
            if prepared_claim is None:
                # Never prepared, or already unprepared
                log.info(f"Unprepare noop: claim not found in checkpoint data: {claim_ref_string(claim_ref)}")
                return

            status = prepared_claim.status
            if get_nested(status, "allocation") is None:
                status = self._fetch_legacy_status(claim_ref)

            try:
                self.unprepare_devices(status)
            except Exception as e:
                raise RuntimeError(f"unprepare devices failed: {e}") from e

            try:
                self.cdi.delete_claim_spec_file(claim_uid)
            except Exception as e:
                raise RuntimeError(f"unable to delete CDI spec file for claim: {e}") from e

            del checkpoint.v1.prepared_claims[claim_uid]
            self.checkpoint_manager.create_checkpoint(self.checkpoint_name, checkpoint)

    # TODO: drop once no node carries a checkpoint written before status snapshots
    def _fetch_legacy_status(self, claim_ref):
        """
        Checkpoints written by older releases have no status snapshot; pull
        it from the API server instead. Failing here is permanent.
        """
        log.info(
            f"PreparedClaim status was unset in checkpoint for ResourceClaim "
            f"{claim_ref_string(claim_ref)}: attempting to pull it from API server"
        )
        if self.get_resource_claim is None:
            raise PermanentError(f"no API access to fetch ResourceClaim {claim_ref_string(claim_ref)}")
        try:
            claim = self.get_resource_claim(claim_ref.namespace, claim_ref.name)
        except client.ApiException as e:
            raise PermanentError(
                f"failed to fetch ResourceClaim {claim_ref_string(claim_ref)}: {e}"
            ) from e
        status = claim.get("status") or {}
        if status.get("allocation") is None:
            raise PermanentError(f"no allocation set in ResourceClaim {claim_ref_string(claim_ref)}")
        return status

    def prepare_devices(self, claim) -> PreparedDevices:
        config_results = get_config_results_map(
            claim.get("status") or {}, self.allocatable, self.driver_name
        )

        # Normalize, validate and apply every config before building records
        config_states = []
        for entry in config_results:
            entry.config.normalize()
            entry.config.validate_config()
            config_states.append(self.apply_config(entry.config, claim, entry.results))

        claim_uid = claim["metadata"]["uid"]
        prepared_devices = PreparedDevices()
        for entry, config_state in zip(config_results, config_states):
            group = PreparedDeviceGroup(config_state=config_state)
            for result in entry.results:
                allocatable = self.allocatable[result["device"]]
                cdi_devices = []
                standard = self.cdi.get_standard_device(allocatable)
                if standard:
                    cdi_devices.append(standard)
                claim_device = self.cdi.get_claim_device(
                    claim_uid, allocatable, config_state.container_edits
                )
                if claim_device:
                    cdi_devices.append(claim_device)

                device = KubeletDevice(
                    request_names=[result["request"]],
                    pool_name=result["pool"],
                    device_name=result["device"],
                    cdi_device_ids=cdi_devices,
                )
                if allocatable.type() == CHANNEL_TYPE:
                    prepared = PreparedDevice(
                        channel=PreparedChannel(info=allocatable.channel, device=device)
                    )
                else:
                    prepared = PreparedDevice(
                        daemon=PreparedDaemon(info=allocatable.daemon, device=device)
                    )
                group.devices.append(prepared)
            prepared_devices.append(group)
        return prepared_devices

    def unprepare_devices(self, claim_status):
        config_results = get_config_results_map(claim_status, self.allocatable, self.driver_name)
        for entry in config_results:
            config = entry.config
            if isinstance(config, api.ChannelConfig):
                self.compute_domain_manager.remove_node_label(config.domain_id)
            elif isinstance(config, api.DaemonConfig):
                self.compute_domain_manager.new_settings(config.domain_id).unprepare()

    def apply_config(self, config, claim, results) -> DeviceConfigState:
        if isinstance(config, api.ChannelConfig):
            return self.apply_channel_config(config, claim, results)
        if isinstance(config, api.DaemonConfig):
            return self.apply_daemon_config(config, claim, results)
        raise PermanentError(f"unknown config type: {type(config).__name__}")

    def apply_channel_config(self, config, claim, results) -> DeviceConfigState:
        config_state = DeviceConfigState(type=CHANNEL_TYPE, compute_domain=config.domain_id)
        manager = self.compute_domain_manager
        claim_namespace = claim["metadata"].get("namespace")

        for result in results:
            channel = self.allocatable[result["device"]].channel
            manager.assert_compute_domain_namespace(claim_namespace, config.domain_id)
            manager.add_node_label(config.domain_id)
            manager.assert_compute_domain_ready(config.domain_id)
            if self.fabric_enabled:
                self.devlib.create_compute_domain_channel_device(channel.id)
                config_state.container_edits = append_edits(
                    config_state.container_edits,
                    manager.get_channel_container_edits(self.devlib.dev_root, channel),
                )
        return config_state

    def apply_daemon_config(self, config, claim, results) -> DeviceConfigState:
        requests = [r["request"] for r in results]
        if len(results) != 1:
            raise PermanentError(
                f"only expected 1 device for requests {requests} in claim {claim['metadata']['uid']}"
            )

        config_state = DeviceConfigState(type=DAEMON_TYPE, compute_domain=config.domain_id)

        # Daemon files are only needed when IMEX is supported
        if self.fabric_enabled:
            nvcap_info = self.devlib.parse_nvcap_device_info(
                defaults.NVIDIA_CAP_FABRIC_IMEX_MGMT_PATH
            )
            self.devlib.create_nvcap_device(nvcap_info)

            settings = self.compute_domain_manager.new_settings(config.domain_id)
            settings.prepare()
            edits = settings.get_cdi_container_edits(self.devlib.dev_root, nvcap_info)
            config_state.container_edits = append_edits(config_state.container_edits, edits)
        return config_state
