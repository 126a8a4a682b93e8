from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

import computedomain_dra.defaults as defaults
from computedomain_dra.errors import PermanentError

CHANNEL_CONFIG_KIND = "ComputeDomainChannelConfig"
DAEMON_CONFIG_KIND = "ComputeDomainDaemonConfig"


class ConfigBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    api_version: Literal[defaults.CONFIG_API_VERSION] = Field(
        defaults.CONFIG_API_VERSION, alias="apiVersion"
    )
    domain_id: str = Field("", alias="domainID")

    def normalize(self):
        self.domain_id = self.domain_id.strip()

    def validate_config(self):
        if not self.domain_id:
            raise PermanentError(f"{self.kind} has no domainID set")


class ChannelConfig(ConfigBaseModel):
    """
    Opaque config that binds an IMEX channel to a compute domain.
    """

    kind: Literal[CHANNEL_CONFIG_KIND] = CHANNEL_CONFIG_KIND


class DaemonConfig(ConfigBaseModel):
    """
    Opaque config that binds the per-node IMEX daemon to a compute domain.
    """

    kind: Literal[DAEMON_CONFIG_KIND] = DAEMON_CONFIG_KIND


DeviceConfig = Annotated[Union[ChannelConfig, DaemonConfig], Field(discriminator="kind")]
_config_adapter = TypeAdapter(DeviceConfig)


def default_channel_config():
    return ChannelConfig()


def default_daemon_config():
    return DaemonConfig()


def decode_config(parameters):
    """
    Decode opaque parameters into a typed config.

    Unknown kinds, versions or fields cannot be fixed by retrying, so all
    decoding failures are permanent.
    """
    if not isinstance(parameters, dict):
        raise PermanentError(f"opaque parameters must be an object, got {type(parameters).__name__}")
    try:
        return _config_adapter.validate_python(parameters)
    except ValidationError as e:
        raise PermanentError(f"error decoding config parameters: {e}") from e
