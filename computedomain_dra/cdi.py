import logging
import os
import threading

import yaml

import computedomain_dra.defaults as defaults
import computedomain_dra.utils as utils
from computedomain_dra.devices import CHANNEL_TYPE

log = logging.getLogger(__name__)


def qualified_name(vendor, device_class, name):
    return f"{vendor}/{device_class}={name}"


def transient_spec_name(vendor, device_class, transient_id):
    transient_id = transient_id.replace("/", "_")
    return f"{vendor}-{device_class}_{transient_id}"


class CDIHandler:
    """
    Writes the container device interface spec files for this driver.

    There is one standard spec covering the devices of the node, and one
    spec per claim for the claim-specific container edits. File names are
    derived from vendor, class and claim UID so rewriting a claim replaces
    its spec instead of adding another one.
    """

    def __init__(
        self,
        cdi_root=defaults.CDI_ROOT,
        vendor=defaults.CDI_VENDOR,
        device_class=defaults.CDI_DEVICE_CLASS,
        claim_class=defaults.CDI_CLAIM_CLASS,
    ):
        self._lock = threading.Lock()
        self.cdi_root = cdi_root
        self.vendor = vendor
        self.device_class = device_class
        self.claim_class = claim_class
        os.makedirs(cdi_root, exist_ok=True)

    def _spec_path(self, spec_name):
        return os.path.join(self.cdi_root, f"{spec_name}.yaml")

    def _write_spec(self, spec: dict, spec_name):
        with self._lock:
            path = self._spec_path(spec_name)
            utils.write_file(path, yaml.safe_dump(spec, sort_keys=False))
            log.info(f"Wrote CDI spec {path}.")

    def create_standard_device_spec_file(self, allocatable):
        """
        Write the base spec. Only daemon devices reference it, channels get
        everything they need from the claim spec.
        """
        spec = {
            "cdiVersion": defaults.CDI_VERSION,
            "kind": f"{self.vendor}/{self.device_class}",
            "devices": [
                {
                    "name": "all",
                    "containerEdits": {"env": ["NVIDIA_VISIBLE_DEVICES=void"]},
                }
            ],
        }
        log.info(f"Creating standard CDI spec for {len(allocatable)} allocatable devices...")
        self._write_spec(
            spec,
            transient_spec_name(self.vendor, self.device_class, defaults.CDI_BASE_SPEC_IDENTIFIER),
        )

    def create_claim_spec_file(self, claim_uid, prepared_devices):
        devices = []
        for group in prepared_devices:
            edits = group.config_state.container_edits
            if edits is None:
                continue
            for device in group.devices:
                devices.append(
                    {
                        "name": f"{claim_uid}-{device.canonical_name()}",
                        "containerEdits": edits.to_cdi(),
                    }
                )

        # Nothing claim specific, so no claim spec file
        if not devices:
            return

        spec = {
            "cdiVersion": defaults.CDI_VERSION,
            "kind": f"{self.vendor}/{self.claim_class}",
            "devices": devices,
        }
        self._write_spec(spec, transient_spec_name(self.vendor, self.claim_class, claim_uid))

    def delete_claim_spec_file(self, claim_uid):
        with self._lock:
            utils.remove(
                self._spec_path(transient_spec_name(self.vendor, self.claim_class, claim_uid))
            )

    def get_standard_device(self, device) -> str:
        if device.type() == CHANNEL_TYPE:
            return ""
        return qualified_name(self.vendor, self.device_class, "all")

    def get_claim_device(self, claim_uid, device, container_edits) -> str:
        if container_edits is None:
            return ""
        return qualified_name(
            self.vendor, self.claim_class, f"{claim_uid}-{device.canonical_name()}"
        )
