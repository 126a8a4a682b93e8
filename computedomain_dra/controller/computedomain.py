import logging

from kubernetes import client

import computedomain_dra.defaults as defaults
from computedomain_dra.controller.base import CACHE_SYNC_TIMEOUT, ManagerConfig, finalizer_patch
from computedomain_dra.controller.daemonset import DaemonSetManager
from computedomain_dra.controller.node import NodeManager
from computedomain_dra.controller.resourceclaimtemplate import WorkloadResourceClaimTemplateManager
from computedomain_dra.informer import Informer, uid_indexer
from computedomain_dra.utils import get_nested

log = logging.getLogger(__name__)


class ComputeDomainManager:
    """
    Watches ComputeDomains and keeps their dependent objects in step.

    A ComputeDomain gets the driver finalizer on first sight, then a daemon
    DaemonSet and a workload claim template. Once it is marked for deletion
    the dependents are torn down in a fixed order and the finalizer is the
    very last thing removed, so nothing is left behind pointing at it.
    """

    def __init__(self, config: ManagerConfig, informer=None, daemonset_manager=None, claim_template_manager=None, node_manager=None):
        self.config = config
        self.informer = informer or Informer(
            config.custom_api.list_cluster_custom_object,
            name="computedomains",
            group=defaults.API_GROUP,
            version=defaults.API_VERSION,
            plural=defaults.COMPUTE_DOMAIN_PLURAL,
        )
        self.informer.add_indexers({"uid": uid_indexer})
        self.daemonset_manager = daemonset_manager or DaemonSetManager(config, self.get)
        self.claim_template_manager = claim_template_manager or WorkloadResourceClaimTemplateManager(config, self.get)
        self.node_manager = node_manager or NodeManager(config, self.get)
        self._started = []

    def start(self):
        try:
            self.informer.add_event_handler(
                on_add=lambda obj: self.config.work_queue.enqueue(obj, self.on_add_or_update),
                on_update=lambda old, new: self.config.work_queue.enqueue(new, self.on_add_or_update),
            )
            self.informer.start()
            self._started.append(self.informer)
            if not self.informer.wait_for_cache_sync(CACHE_SYNC_TIMEOUT):
                raise RuntimeError("informer cache sync for ComputeDomains failed")

            for name, manager in (
                ("DaemonSet", self.daemonset_manager),
                ("ResourceClaimTemplate", self.claim_template_manager),
                ("Node", self.node_manager),
            ):
                try:
                    manager.start()
                except Exception as e:
                    raise RuntimeError(f"error starting {name} manager: {e}") from e
                self._started.append(manager)
        except Exception:
            self.stop()
            raise

    def stop(self):
        while self._started:
            component = self._started.pop()
            try:
                component.stop()
            except Exception as e:
                log.error(f"Error stopping {type(component).__name__}: {e}")

    def get(self, uid):
        """
        Look up a ComputeDomain by UID in the local cache.

        Returns None when it is not (or no longer) cached.
        """
        return self.informer.get_by_index("uid", uid)

    def _patch(self, cd, body):
        metadata = cd["metadata"]
        return self.config.custom_api.patch_namespaced_custom_object(
            group=defaults.API_GROUP,
            version=defaults.API_VERSION,
            namespace=metadata["namespace"],
            plural=defaults.COMPUTE_DOMAIN_PLURAL,
            name=metadata["name"],
            body=body,
        )

    def remove_finalizer(self, uid):
        cd = self.get(uid)
        if cd is None:
            return
        if get_nested(cd, "metadata", "deletionTimestamp") is None:
            raise RuntimeError("attempting to remove finalizer before ComputeDomain marked for deletion")

        finalizers = cd["metadata"].get("finalizers") or []
        kept = [f for f in finalizers if f != defaults.COMPUTE_DOMAIN_FINALIZER]
        if len(kept) == len(finalizers):
            return
        try:
            self._patch(cd, finalizer_patch(cd, kept))
        except client.ApiException as e:
            if e.status != 404:
                raise

    def add_finalizer(self, cd):
        finalizers = cd["metadata"].get("finalizers") or []
        if defaults.COMPUTE_DOMAIN_FINALIZER in finalizers:
            return
        updated = self._patch(cd, finalizer_patch(cd, finalizers + [defaults.COMPUTE_DOMAIN_FINALIZER]))
        if updated:
            self.informer.mutate(updated)

    def on_add_or_update(self, cd):
        metadata = cd["metadata"]
        uid = metadata["uid"]
        log.info(f"Processing added or updated ComputeDomain: {metadata['namespace']}/{metadata['name']}/{uid}")

        if metadata.get("deletionTimestamp") is not None:
            self.teardown(uid)
            return

        try:
            self.add_finalizer(cd)
        except Exception as e:
            raise RuntimeError(f"error adding finalizer: {e}") from e

        # Do not wait for the next periodic label cleanup
        self.node_manager.remove_stale_labels_async()

        try:
            self.daemonset_manager.create(self.config.driver_namespace, cd)
        except Exception as e:
            raise RuntimeError(f"error creating DaemonSet: {e}") from e

        try:
            self.claim_template_manager.create(metadata["namespace"], cd)
        except Exception as e:
            raise RuntimeError(f"error creating ResourceClaimTemplate: {e}") from e

    def teardown(self, uid):
        """
        Remove everything a ComputeDomain owns, then its finalizer.

        Each step must succeed before the next one runs; a failure raises and
        the whole sequence starts over on redelivery.
        """
        steps = (
            ("deleting ResourceClaimTemplate", self.claim_template_manager.delete),
            ("deleting DaemonSet", self.daemonset_manager.delete),
            ("removing ComputeDomain node labels", self.node_manager.delete),
            ("asserting removal of ComputeDomain node labels", self.node_manager.assert_removed),
            ("removing finalizer on ResourceClaimTemplate", self.claim_template_manager.remove_finalizer),
            ("asserting removal of ResourceClaimTemplate", self.claim_template_manager.assert_removed),
            ("removing finalizer on DaemonSet", self.daemonset_manager.remove_finalizer),
            ("asserting removal of DaemonSet", self.daemonset_manager.assert_removed),
            ("removing finalizer", self.remove_finalizer),
        )
        for description, step in steps:
            try:
                step(uid)
            except Exception as e:
                raise RuntimeError(f"error {description}: {e}") from e
