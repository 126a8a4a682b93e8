import logging

import computedomain_dra.defaults as defaults
from computedomain_dra.controller.base import ResourceManager, render_template
from computedomain_dra.controller.resourceclaimtemplate import (
    DaemonResourceClaimTemplateManager,
    daemon_object_name,
)
from computedomain_dra.informer import Informer
from computedomain_dra.utils import get_nested

log = logging.getLogger(__name__)


class DaemonSetManager(ResourceManager):
    """
    The IMEX daemon DaemonSet of a ComputeDomain and its daemon claim template.

    Both live in the driver namespace. The DaemonSet only lands on nodes that
    carry the ComputeDomain label, which the kubelet plugin adds when a
    workload's channel is prepared there.
    """

    kind = "DaemonSet"

    def __init__(self, config, get_compute_domain):
        super().__init__(config, get_compute_domain)
        self.claim_template_manager = DaemonResourceClaimTemplateManager(config, get_compute_domain)

    def new_informer(self) -> Informer:
        return Informer(
            self.config.apps_api.list_namespaced_daemon_set,
            name="daemonsets",
            namespace=self.config.driver_namespace,
            label_selector=defaults.COMPUTE_DOMAIN_LABEL_KEY,
        )

    def create_object(self, namespace, body):
        return self.config.apps_api.create_namespaced_daemon_set(namespace=namespace, body=body)

    def delete_object(self, namespace, name):
        return self.config.apps_api.delete_namespaced_daemon_set(name=name, namespace=namespace)

    def patch_object(self, namespace, name, body):
        return self.config.apps_api.patch_namespaced_daemon_set(name=name, namespace=namespace, body=body)

    def start(self):
        super().start()
        self.claim_template_manager.start()

    def stop(self):
        self.claim_template_manager.stop()
        super().stop()

    def create(self, namespace, cd):
        """
        Create the daemon claim template, then the DaemonSet using it.
        """
        self.claim_template_manager.create(namespace, cd)

        cd_uid = cd["metadata"]["uid"]
        existing = self.get(cd_uid)
        if existing is not None:
            log.debug(f"DaemonSet for ComputeDomain {cd_uid} already exists.")
            return existing

        body = render_template(
            "daemonset.tmpl.yaml",
            name=daemon_object_name(cd_uid),
            namespace=namespace,
            finalizer=defaults.COMPUTE_DOMAIN_FINALIZER,
            label_key=defaults.COMPUTE_DOMAIN_LABEL_KEY,
            compute_domain_uid=cd_uid,
            compute_domain_name=cd["metadata"].get("name"),
            compute_domain_namespace=cd["metadata"].get("namespace"),
            num_nodes=get_nested(cd, "spec", "numNodes", default=0),
            image_name=self.config.image_name,
            daemon_claim_template_name=daemon_object_name(cd_uid),
        )
        return self.create_from_body(namespace, body)

    def delete(self, cd_uid):
        super().delete(cd_uid)
        self.claim_template_manager.delete(cd_uid)

    def remove_finalizer(self, cd_uid):
        super().remove_finalizer(cd_uid)
        self.claim_template_manager.remove_finalizer(cd_uid)

    def assert_removed(self, cd_uid):
        super().assert_removed(cd_uid)
        self.claim_template_manager.assert_removed(cd_uid)
