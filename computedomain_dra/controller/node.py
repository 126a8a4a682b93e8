import logging
import threading

from kubernetes import client

import computedomain_dra.defaults as defaults

log = logging.getLogger(__name__)


class NodeManager:
    """
    ComputeDomain labels on nodes.

    Labels are added by the kubelet plugins; the controller only removes
    them, either for a ComputeDomain being torn down or when the label names
    a ComputeDomain that no longer exists.
    """

    def __init__(self, config, get_compute_domain, cleanup_interval=defaults.STALE_LABEL_CLEANUP_INTERVAL):
        self.config = config
        self.get_compute_domain = get_compute_domain
        self.cleanup_interval = cleanup_interval
        self._stop = threading.Event()
        self._thread = None
        self._sweep_lock = threading.Lock()

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._periodic_cleanup, name="node-label-cleanup", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def create(self, namespace, cd):
        return None

    def remove_finalizer(self, cd_uid):
        return None

    def _list_nodes(self, label_selector):
        return self.config.core_api.list_node(label_selector=label_selector).items

    def _remove_label(self, node_name):
        body = {"metadata": {"labels": {defaults.COMPUTE_DOMAIN_LABEL_KEY: None}}}
        try:
            self.config.core_api.patch_node(name=node_name, body=body)
        except client.ApiException as e:
            if e.status != 404:
                raise

    def delete(self, cd_uid):
        """
        Remove this ComputeDomain's label from every node carrying it.
        """
        for node in self._list_nodes(f"{defaults.COMPUTE_DOMAIN_LABEL_KEY}={cd_uid}"):
            self._remove_label(node.metadata.name)
            log.info(f"Removed ComputeDomain label {cd_uid} from node {node.metadata.name}.")

    def assert_removed(self, cd_uid):
        nodes = self._list_nodes(f"{defaults.COMPUTE_DOMAIN_LABEL_KEY}={cd_uid}")
        if nodes:
            names = [n.metadata.name for n in nodes]
            raise RuntimeError(f"nodes still labeled for ComputeDomain {cd_uid}: {names}")

    def remove_stale_labels(self):
        """
        Remove labels that point at ComputeDomains no longer in the cache.
        """
        for node in self._list_nodes(defaults.COMPUTE_DOMAIN_LABEL_KEY):
            cd_uid = (node.metadata.labels or {}).get(defaults.COMPUTE_DOMAIN_LABEL_KEY)
            if not cd_uid or self.get_compute_domain(cd_uid) is not None:
                continue
            self._remove_label(node.metadata.name)
            log.info(f"Removed stale ComputeDomain label {cd_uid} from node {node.metadata.name}.")

    def _remove_stale_labels_logged(self):
        try:
            self.remove_stale_labels()
        except Exception as e:
            log.error(f"Error removing stale ComputeDomain node labels: {e}")

    def _sweep_and_release(self):
        try:
            self._remove_stale_labels_logged()
        finally:
            self._sweep_lock.release()

    def remove_stale_labels_async(self):
        """
        Start a sweep in the background unless one is already running.

        Returns the sweep thread, or None when the sweep was skipped.
        """
        if not self._sweep_lock.acquire(blocking=False):
            log.debug("Stale ComputeDomain label sweep already running, skipping.")
            return None
        thread = threading.Thread(target=self._sweep_and_release, name="node-label-sweep", daemon=True)
        thread.start()
        return thread

    def _periodic_cleanup(self):
        while not self._stop.wait(self.cleanup_interval):
            if self._sweep_lock.acquire(blocking=False):
                self._sweep_and_release()
