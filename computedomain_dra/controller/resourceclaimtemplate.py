import logging

import computedomain_dra.api as api
import computedomain_dra.defaults as defaults
from computedomain_dra.controller.base import ResourceManager, render_template
from computedomain_dra.errors import PermanentError
from computedomain_dra.informer import Informer
from computedomain_dra.utils import get_nested

log = logging.getLogger(__name__)


class ResourceClaimTemplateManager(ResourceManager):
    """
    ResourceClaimTemplates generated for a ComputeDomain.

    The target label separates the workload channel templates (in the
    ComputeDomain's namespace) from the daemon templates (in the driver
    namespace), so each manager only caches its own.
    """

    kind = "ResourceClaimTemplate"
    target = ""
    device_class = ""
    request_name = ""
    config_kind = ""

    def new_informer(self) -> Informer:
        api_client = self.config.custom_api
        return Informer(
            api_client.list_cluster_custom_object,
            name=f"{self.target.lower()}-resourceclaimtemplates",
            group=defaults.RESOURCE_GROUP,
            version=defaults.RESOURCE_VERSION,
            plural="resourceclaimtemplates",
            label_selector=(
                f"{defaults.COMPUTE_DOMAIN_LABEL_KEY},"
                f"{defaults.TEMPLATE_TARGET_LABEL_KEY}={self.target}"
            ),
        )

    def _kwargs(self, namespace):
        return {
            "group": defaults.RESOURCE_GROUP,
            "version": defaults.RESOURCE_VERSION,
            "namespace": namespace,
            "plural": "resourceclaimtemplates",
        }

    def create_object(self, namespace, body):
        return self.config.custom_api.create_namespaced_custom_object(
            body=body, **self._kwargs(namespace)
        )

    def delete_object(self, namespace, name):
        return self.config.custom_api.delete_namespaced_custom_object(
            name=name, **self._kwargs(namespace)
        )

    def patch_object(self, namespace, name, body):
        return self.config.custom_api.patch_namespaced_custom_object(
            name=name, body=body, **self._kwargs(namespace)
        )

    def create_template(self, namespace, name, cd):
        """
        Create the template for a ComputeDomain unless one already exists.
        """
        cd_uid = cd["metadata"]["uid"]
        existing = self.get(cd_uid)
        if existing is not None:
            log.debug(f"{self.target} ResourceClaimTemplate for ComputeDomain {cd_uid} already exists.")
            return existing

        body = render_template(
            "resourceclaimtemplate.tmpl.yaml",
            name=name,
            namespace=namespace,
            finalizer=defaults.COMPUTE_DOMAIN_FINALIZER,
            label_key=defaults.COMPUTE_DOMAIN_LABEL_KEY,
            target_label_key=defaults.TEMPLATE_TARGET_LABEL_KEY,
            target=self.target,
            compute_domain_uid=cd_uid,
            request_name=self.request_name,
            device_class=self.device_class,
            driver=self.config.driver_name,
            config_api_version=defaults.CONFIG_API_VERSION,
            config_kind=self.config_kind,
        )
        return self.create_from_body(namespace, body)


class WorkloadResourceClaimTemplateManager(ResourceClaimTemplateManager):
    target = defaults.TEMPLATE_TARGET_WORKLOAD
    device_class = defaults.CHANNEL_DEVICE_CLASS
    request_name = "channel"
    config_kind = api.CHANNEL_CONFIG_KIND

    def create(self, namespace, cd):
        """
        Create the channel template named in the ComputeDomain's spec.
        """
        name = get_nested(cd, "spec", "channel", "resourceClaimTemplate", "name")
        if not name:
            raise PermanentError(
                f"ComputeDomain {cd['metadata'].get('namespace')}/{cd['metadata'].get('name')} "
                "has no channel resourceClaimTemplate name"
            )
        return self.create_template(namespace, name, cd)


class DaemonResourceClaimTemplateManager(ResourceClaimTemplateManager):
    target = defaults.TEMPLATE_TARGET_DAEMON
    device_class = defaults.DAEMON_DEVICE_CLASS
    request_name = "daemon"
    config_kind = api.DAEMON_CONFIG_KIND

    def create(self, namespace, cd):
        return self.create_template(namespace, daemon_object_name(cd["metadata"]["uid"]), cd)


def daemon_object_name(cd_uid):
    return f"computedomain-daemon-{cd_uid}"
