from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from computedomain_dra.devices import ChannelInfo, DaemonInfo


class PreparedBaseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DeviceNode(PreparedBaseModel):
    path: str
    host_path: Optional[str] = Field(None, alias="hostPath")


class Mount(PreparedBaseModel):
    host_path: str = Field(..., alias="hostPath")
    container_path: str = Field(..., alias="containerPath")
    options: List[str] = Field(default_factory=list)


class ContainerEdits(PreparedBaseModel):
    """
    The subset of CDI container edits this driver produces.
    """

    env: List[str] = Field(default_factory=list)
    device_nodes: List[DeviceNode] = Field(default_factory=list, alias="deviceNodes")
    mounts: List[Mount] = Field(default_factory=list)

    def append(self, other: Optional["ContainerEdits"]) -> "ContainerEdits":
        if other is None:
            return self
        return ContainerEdits(
            env=self.env + other.env,
            device_nodes=self.device_nodes + other.device_nodes,
            mounts=self.mounts + other.mounts,
        )

    def to_cdi(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def append_edits(edits: Optional[ContainerEdits], other: Optional[ContainerEdits]):
    if edits is None:
        return other
    return edits.append(other)


class DeviceConfigState(PreparedBaseModel):
    type: str
    compute_domain: str = Field(..., alias="computeDomain")
    container_edits: Optional[ContainerEdits] = Field(None, alias="containerEdits")


class KubeletDevice(PreparedBaseModel):
    """
    The device descriptor handed back to the kubelet.
    """

    request_names: List[str] = Field(default_factory=list, alias="requestNames")
    pool_name: str = Field(..., alias="poolName")
    device_name: str = Field(..., alias="deviceName")
    cdi_device_ids: List[str] = Field(default_factory=list, alias="cdiDeviceIDs")


class PreparedChannel(PreparedBaseModel):
    info: ChannelInfo
    device: KubeletDevice


class PreparedDaemon(PreparedBaseModel):
    info: DaemonInfo
    device: KubeletDevice


class PreparedDevice(PreparedBaseModel):
    channel: Optional[PreparedChannel] = None
    daemon: Optional[PreparedDaemon] = None

    def get_device(self) -> KubeletDevice:
        if self.channel is not None:
            return self.channel.device
        if self.daemon is not None:
            return self.daemon.device
        raise ValueError("prepared device has no type")

    def canonical_name(self) -> str:
        if self.channel is not None:
            return self.channel.info.canonical_name()
        return self.daemon.info.canonical_name()


class PreparedDeviceGroup(PreparedBaseModel):
    devices: List[PreparedDevice] = Field(default_factory=list)
    config_state: DeviceConfigState = Field(..., alias="configState")


class PreparedDevices(list):
    def get_devices(self) -> List[KubeletDevice]:
        return [device.get_device() for group in self for device in group.devices]
