import logging
import os
import string

import yaml
from kubernetes import client

import computedomain_dra.defaults as defaults
from computedomain_dra.informer import Informer, label_indexer
from computedomain_dra.utils import get_nested

log = logging.getLogger(__name__)

here = os.path.dirname(os.path.abspath(__file__))
TEMPLATES_DIR = os.path.join(os.path.dirname(here), "templates")

CACHE_SYNC_TIMEOUT = 60


class ManagerConfig:
    """
    Shared settings and API clients for the controller's managers.
    """

    def __init__(
        self,
        driver_namespace,
        image_name="",
        work_queue=None,
        driver_name=defaults.DRIVER_NAME,
        core_api=None,
        apps_api=None,
        custom_api=None,
    ):
        self.driver_name = driver_name
        self.driver_namespace = driver_namespace
        self.image_name = image_name
        self.work_queue = work_queue
        self.core_api = core_api or client.CoreV1Api()
        self.apps_api = apps_api or client.AppsV1Api()
        self.custom_api = custom_api or client.CustomObjectsApi()


def render_template(filename, **values) -> dict:
    """
    Fill a YAML manifest template and parse it.
    """
    with open(os.path.join(TEMPLATES_DIR, filename), "r") as f:
        template = string.Template(f.read())
    return yaml.safe_load(template.substitute(**values))


def finalizer_patch(obj, finalizers):
    """
    JSON patch replacing the finalizer list, guarded by resourceVersion.
    """
    return [
        {
            "op": "test",
            "path": "/metadata/resourceVersion",
            "value": obj["metadata"]["resourceVersion"],
        },
        {"op": "replace", "path": "/metadata/finalizers", "value": finalizers},
    ]


class ResourceManager:
    """
    Manages objects that belong to a ComputeDomain.

    Objects carry the ComputeDomain label (its UID) and the driver finalizer,
    and are found through an informer indexed by that label. create, delete,
    remove_finalizer and assert_removed are all safe to repeat.
    """

    kind = ""

    def __init__(self, config: ManagerConfig, get_compute_domain):
        self.config = config
        self.get_compute_domain = get_compute_domain
        self.informer = self.new_informer()
        self.informer.add_indexers({"uid": label_indexer(defaults.COMPUTE_DOMAIN_LABEL_KEY)})

    def new_informer(self) -> Informer:
        raise NotImplementedError

    def create_object(self, namespace, body):
        raise NotImplementedError

    def delete_object(self, namespace, name):
        raise NotImplementedError

    def patch_object(self, namespace, name, body):
        raise NotImplementedError

    def start(self):
        self.informer.start()
        if not self.informer.wait_for_cache_sync(CACHE_SYNC_TIMEOUT):
            raise RuntimeError(f"informer cache sync for {self.kind} failed")

    def stop(self):
        self.informer.stop()

    def get(self, cd_uid):
        return self.informer.get_by_index("uid", cd_uid)

    def create_from_body(self, namespace, body):
        try:
            created = self.create_object(namespace, body)
        except client.ApiException as e:
            if e.status == 409:
                log.info(f"{self.kind} '{namespace}/{body['metadata']['name']}' already exists.")
                return None
            raise
        self.informer.mutate(created)
        log.info(f"{self.kind} '{namespace}/{body['metadata']['name']}' created.")
        return created

    def delete(self, cd_uid):
        obj = self.get(cd_uid)
        if obj is None:
            return
        if get_nested(obj, "metadata", "deletionTimestamp") is not None:
            return
        metadata = obj["metadata"]
        try:
            self.delete_object(metadata.get("namespace"), metadata["name"])
        except client.ApiException as e:
            if e.status != 404:
                raise
        log.info(f"{self.kind} '{metadata.get('namespace')}/{metadata['name']}' deleted.")

    def remove_finalizer(self, cd_uid):
        obj = self.get(cd_uid)
        if obj is None:
            return
        metadata = obj["metadata"]
        if metadata.get("deletionTimestamp") is None:
            raise RuntimeError(f"attempting to remove finalizer before {self.kind} marked for deletion")

        finalizers = metadata.get("finalizers") or []
        kept = [f for f in finalizers if f != defaults.COMPUTE_DOMAIN_FINALIZER]
        if len(kept) == len(finalizers):
            return
        try:
            self.patch_object(metadata.get("namespace"), metadata["name"], finalizer_patch(obj, kept))
        except client.ApiException as e:
            if e.status != 404:
                raise

    def assert_removed(self, cd_uid):
        obj = self.get(cd_uid)
        if obj is not None:
            metadata = obj["metadata"]
            raise RuntimeError(f"{self.kind} '{metadata.get('namespace')}/{metadata['name']}' not yet removed")
