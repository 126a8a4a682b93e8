import logging
import os

from kubernetes import client

import computedomain_dra.defaults as defaults
import computedomain_dra.utils as utils
from computedomain_dra.errors import PermanentError
from computedomain_dra.prepared import ContainerEdits, DeviceNode, Mount

log = logging.getLogger(__name__)

NODES_CONFIG_FILENAME = "nodes_config.cfg"


class DaemonSettings:
    """
    Per-domain files handed to the IMEX daemon running on this node.
    """

    def __init__(self, manager, domain_id):
        self.manager = manager
        self.domain_id = domain_id
        self.root_dir = os.path.join(manager.settings_root, domain_id)

    def prepare(self):
        os.makedirs(self.root_dir, exist_ok=True)
        nodes_config = os.path.join(self.root_dir, NODES_CONFIG_FILENAME)
        if not os.path.exists(nodes_config):
            utils.write_file(nodes_config, "")
        log.info(f"Prepared daemon settings for ComputeDomain {self.domain_id} in {self.root_dir}.")

    def unprepare(self):
        utils.remove_tree(self.root_dir)

    def get_cdi_container_edits(self, dev_root, nvcap_device_info) -> ContainerEdits:
        cd = self.manager.get_compute_domain(self.domain_id)
        if cd is None:
            raise RuntimeError(f"ComputeDomain not found: {self.domain_id}")
        metadata = cd.get("metadata", {})
        nvcap_path = nvcap_device_info.path()
        return ContainerEdits(
            env=[
                f"CLIQUE_ID={self.manager.clique_id}",
                f"COMPUTE_DOMAIN_UUID={self.domain_id}",
                f"COMPUTE_DOMAIN_NAME={metadata.get('name')}",
                f"COMPUTE_DOMAIN_NAMESPACE={metadata.get('namespace')}",
            ],
            mounts=[
                Mount(
                    host_path=self.root_dir,
                    container_path=defaults.DAEMON_SETTINGS_MOUNT,
                    options=["rw", "nosuid", "nodev", "bind"],
                )
            ],
            device_nodes=[
                DeviceNode(path=nvcap_path, host_path=os.path.join(dev_root, nvcap_path.lstrip("/")))
            ],
        )


class ComputeDomainManager:
    """
    Node-local view of compute domains used while preparing devices.

    get_compute_domain resolves a domain UID through a watch cache and
    returns None when the domain is not (or no longer) known.
    """

    def __init__(self, node_name, settings_root, clique_id, get_compute_domain, core_api=None):
        self.node_name = node_name
        self.settings_root = settings_root
        self.clique_id = clique_id
        self.get_compute_domain = get_compute_domain
        self.core_api = core_api or client.CoreV1Api()

    def new_settings(self, domain_id) -> DaemonSettings:
        return DaemonSettings(self, domain_id)

    def assert_compute_domain_namespace(self, claim_namespace, domain_id):
        cd = self.get_compute_domain(domain_id)
        if cd is None:
            raise RuntimeError(f"ComputeDomain not found: {domain_id}")
        cd_namespace = cd["metadata"].get("namespace")
        if cd_namespace != claim_namespace:
            raise PermanentError(
                f"the ResourceClaim's namespace ({claim_namespace}) differs from "
                f"the ComputeDomain's namespace ({cd_namespace})"
            )

    def assert_compute_domain_ready(self, domain_id):
        cd = self.get_compute_domain(domain_id)
        if cd is None:
            raise RuntimeError(f"ComputeDomain not found: {domain_id}")
        status = utils.get_nested(cd, "status", "status")
        if status != defaults.COMPUTE_DOMAIN_STATUS_READY:
            raise RuntimeError(f"ComputeDomain {domain_id} not ready (status: {status})")

    def add_node_label(self, domain_id):
        node = self.core_api.read_node(name=self.node_name)
        labels = node.metadata.labels or {}
        current = labels.get(defaults.COMPUTE_DOMAIN_LABEL_KEY)
        if current == domain_id:
            return
        if current:
            raise RuntimeError(
                f"node {self.node_name} already labeled for ComputeDomain {current}"
            )
        self._patch_label(node, domain_id)
        log.info(f"Added ComputeDomain label {domain_id} to node {self.node_name}.")

    def remove_node_label(self, domain_id):
        node = self.core_api.read_node(name=self.node_name)
        labels = node.metadata.labels or {}
        if labels.get(defaults.COMPUTE_DOMAIN_LABEL_KEY) != domain_id:
            return
        self._patch_label(node, None)
        log.info(f"Removed ComputeDomain label {domain_id} from node {self.node_name}.")

    def _patch_label(self, node, value):
        body = {
            "metadata": {
                "labels": {defaults.COMPUTE_DOMAIN_LABEL_KEY: value},
                "resourceVersion": node.metadata.resource_version,
            }
        }
        self.core_api.patch_node(name=self.node_name, body=body)

    def get_channel_container_edits(self, dev_root, channel) -> ContainerEdits:
        path = f"{defaults.IMEX_CHANNELS_DEVICE_DIR}/channel{channel.id}"
        return ContainerEdits(
            device_nodes=[DeviceNode(path=path, host_path=os.path.join(dev_root, path.lstrip("/")))]
        )
