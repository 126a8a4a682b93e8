import json
import logging
import os
import zlib
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError

import computedomain_dra.utils as utils
from computedomain_dra.errors import CheckpointNotFoundError, CorruptCheckpointError
from computedomain_dra.prepared import PreparedDeviceGroup, PreparedDevices

log = logging.getLogger(__name__)


class PreparedClaim(BaseModel):
    """
    A claim whose devices are prepared on this node.

    status is the ResourceClaimStatus as it was at prepare time, kept verbatim
    so unprepare never needs the claim object from the API server.
    """

    model_config = ConfigDict(populate_by_name=True)

    status: Dict[str, Any] = Field(default_factory=dict)
    prepared_devices: List[PreparedDeviceGroup] = Field(
        default_factory=list, alias="preparedDevices"
    )

    def get_prepared_devices(self) -> PreparedDevices:
        return PreparedDevices(self.prepared_devices)


class CheckpointV1(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prepared_claims: Dict[str, PreparedClaim] = Field(
        default_factory=dict, alias="preparedClaims"
    )


class Checkpoint(BaseModel):
    checksum: int = 0
    v1: CheckpointV1 = Field(default_factory=CheckpointV1)

    def _payload_checksum(self) -> int:
        payload = json.dumps(
            self.v1.model_dump(by_alias=True), sort_keys=True, separators=(",", ":")
        )
        return zlib.crc32(payload.encode("utf-8"))

    def marshal_checkpoint(self) -> str:
        self.checksum = self._payload_checksum()
        return json.dumps(self.model_dump(by_alias=True), indent=2)

    @classmethod
    def unmarshal_checkpoint(cls, data):
        try:
            return cls.model_validate(json.loads(data))
        except (ValueError, ValidationError) as e:
            raise CorruptCheckpointError(f"unable to decode checkpoint: {e}") from e

    def verify_checksum(self):
        if self.checksum != self._payload_checksum():
            raise CorruptCheckpointError("checkpoint checksum mismatch")


class CheckpointManager:
    """
    Whole-document checkpoint files in a single directory.

    Writes go to a temporary file that is renamed into place, so a crash
    leaves either the previous or the new checkpoint on disk.
    """

    def __init__(self, directory):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, name):
        return os.path.join(self.directory, name)

    def list_checkpoints(self) -> List[str]:
        return sorted(
            f
            for f in os.listdir(self.directory)
            if not f.startswith(".") and os.path.isfile(self._path(f))
        )

    def get_checkpoint(self, name) -> Checkpoint:
        try:
            data = utils.read_file(self._path(name))
        except FileNotFoundError:
            raise CheckpointNotFoundError(f"checkpoint {name} not found")
        checkpoint = Checkpoint.unmarshal_checkpoint(data)
        checkpoint.verify_checksum()
        return checkpoint

    def create_checkpoint(self, name, checkpoint: Checkpoint):
        utils.write_file(self._path(name), checkpoint.marshal_checkpoint())
        log.debug(f"Wrote checkpoint {name} with {len(checkpoint.v1.prepared_claims)} claims.")
