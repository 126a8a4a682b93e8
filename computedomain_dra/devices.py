import logging
import os
import stat
from typing import Dict, Optional

from kubernetes import client
from pydantic import BaseModel

import computedomain_dra.defaults as defaults
import computedomain_dra.utils as utils

log = logging.getLogger(__name__)

CHANNEL_TYPE = "channel"
DAEMON_TYPE = "daemon"


class ChannelInfo(BaseModel):
    id: int

    def canonical_name(self) -> str:
        return f"{CHANNEL_TYPE}-{self.id}"


class DaemonInfo(BaseModel):
    id: int

    def canonical_name(self) -> str:
        return f"{DAEMON_TYPE}-{self.id}"


class AllocatableDevice(BaseModel):
    """
    A device this node advertises. Exactly one of channel or daemon is set.
    """

    channel: Optional[ChannelInfo] = None
    daemon: Optional[DaemonInfo] = None

    def type(self) -> str:
        if self.channel is not None:
            return CHANNEL_TYPE
        if self.daemon is not None:
            return DAEMON_TYPE
        raise ValueError("allocatable device has no type")

    def canonical_name(self) -> str:
        if self.channel is not None:
            return self.channel.canonical_name()
        return self.daemon.canonical_name()

    def get_device(self, clique_id="") -> dict:
        """
        The ResourceSlice entry for this device.
        """
        info = self.channel if self.channel is not None else self.daemon
        attributes = {
            "type": {"string": self.type()},
            "id": {"int": info.id},
        }
        if clique_id:
            attributes["cliqueID"] = {"string": clique_id}
        return {"name": self.canonical_name(), "basic": {"attributes": attributes}}


AllocatableDevices = Dict[str, AllocatableDevice]


class NvCapDeviceInfo(BaseModel):
    major: int
    minor: int
    mode: int
    modify: int

    def path(self) -> str:
        return f"/dev/{defaults.NVIDIA_CAPS_DEVICE_NAME}/nvidia-cap{self.minor}"


class DeviceLib:
    """
    Node-local device enumeration and device node creation.

    The clique ID comes from configuration: an empty clique ID means the
    node has no IMEX fabric support and no device nodes are created.
    """

    def __init__(self, dev_root="/", clique_id="", channel_count=1, proc_root="/proc"):
        if channel_count < 1 or channel_count > defaults.MAX_CHANNELS:
            raise ValueError(
                f"channel count must be between 1 and {defaults.MAX_CHANNELS}, got {channel_count}"
            )
        self.dev_root = dev_root
        self.clique_id = clique_id
        self.channel_count = channel_count
        self.proc_root = proc_root

    def enumerate_all_possible_devices(self) -> AllocatableDevices:
        alldevices = {}
        for i in range(self.channel_count):
            device = AllocatableDevice(channel=ChannelInfo(id=i))
            alldevices[device.canonical_name()] = device
        daemon = AllocatableDevice(daemon=DaemonInfo(id=0))
        alldevices[daemon.canonical_name()] = daemon
        log.info(f"Enumerated {len(alldevices)} allocatable devices.")
        return alldevices

    def get_clique_id(self) -> str:
        return self.clique_id

    def get_device_major(self, name) -> int:
        """
        Look up the major number of a character device in /proc/devices.
        """
        in_char_section = False
        for line in utils.read_file(os.path.join(self.proc_root, "devices")).splitlines():
            line = line.strip()
            if line == "Character devices:":
                in_char_section = True
                continue
            if line == "Block devices:":
                in_char_section = False
                continue
            if not in_char_section or not line:
                continue
            major, _, devname = line.partition(" ")
            if devname.strip() == name:
                return int(major)
        raise RuntimeError(f"character device {name} not found in /proc/devices")

    def create_compute_domain_channel_device(self, channel_id: int):
        major = self.get_device_major(defaults.IMEX_CHANNELS_DEVICE_NAME)
        path = os.path.join(
            self.dev_root,
            defaults.IMEX_CHANNELS_DEVICE_DIR.lstrip("/"),
            f"channel{channel_id}",
        )
        self._mknod(path, major, channel_id, 0o666)

    def parse_nvcap_device_info(self, nvcap_file_path) -> NvCapDeviceInfo:
        major = self.get_device_major(defaults.NVIDIA_CAPS_DEVICE_NAME)
        path = os.path.join(self.proc_root, os.path.relpath(nvcap_file_path, "/proc"))
        fields = {}
        for line in utils.read_file(path).splitlines():
            key, sep, value = line.partition(":")
            if sep:
                fields[key.strip()] = value.strip()
        try:
            return NvCapDeviceInfo(
                major=major,
                minor=int(fields["DeviceFileMinor"]),
                mode=int(fields["DeviceFileMode"]),
                modify=int(fields["DeviceFileModify"]),
            )
        except (KeyError, ValueError) as e:
            raise RuntimeError(f"malformed nvcap file {path}: {e}") from e

    def create_nvcap_device(self, info: NvCapDeviceInfo):
        path = os.path.join(self.dev_root, info.path().lstrip("/"))
        self._mknod(path, info.major, info.minor, info.mode)

    def _mknod(self, path, major, minor, mode):
        if os.path.exists(path):
            return
        os.makedirs(os.path.dirname(path), exist_ok=True)
        os.mknod(path, stat.S_IFCHR | mode, os.makedev(major, minor))
        log.info(f"Created device node {path} ({major}:{minor}).")


def create_or_update_resource_slice(node_name, allocatable: AllocatableDevices, clique_id=""):
    """
    Creates or updates the ResourceSlice advertising this node's devices.
    """
    log.info(f"Advertising resource inventory for node '{node_name}'...")
    core_api = client.CoreV1Api()
    custom_objects_api = client.CustomObjectsApi()
    object_name = f"{node_name}-{defaults.DRIVER_NAME}"

    try:
        node = core_api.read_node(name=node_name)
    except client.ApiException as e:
        log.error(f"Failed to read node object '{node_name}' to get UID: {e}")
        raise

    body = {
        "apiVersion": f"{defaults.RESOURCE_GROUP}/{defaults.RESOURCE_VERSION}",
        "kind": "ResourceSlice",
        "metadata": {
            "name": object_name,
            "ownerReferences": [
                {
                    "apiVersion": "v1",
                    "kind": "Node",
                    "name": node_name,
                    "uid": node.metadata.uid,
                    "controller": True,
                }
            ],
        },
        "spec": {
            "driver": defaults.DRIVER_NAME,
            "nodeName": node_name,
            "pool": {"name": node_name, "generation": 0, "resourceSliceCount": 1},
            "devices": [d.get_device(clique_id) for d in allocatable.values()],
        },
    }

    kwargs = {
        "group": defaults.RESOURCE_GROUP,
        "version": defaults.RESOURCE_VERSION,
        "plural": "resourceslices",
    }
    try:
        existing = custom_objects_api.get_cluster_custom_object(name=object_name, **kwargs)
    except client.ApiException as e:
        if e.status != 404:
            raise
        log.info(f"Creating ResourceSlice object '{object_name}'.")
        custom_objects_api.create_cluster_custom_object(body=body, **kwargs)
    else:
        body["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
        body["spec"]["pool"]["generation"] = existing["spec"]["pool"].get("generation", 0) + 1
        log.info(f"Updating ResourceSlice object '{object_name}'.")
        custom_objects_api.replace_cluster_custom_object(name=object_name, body=body, **kwargs)

    log.info(f"Successfully advertised resource inventory for node '{node_name}'.")
