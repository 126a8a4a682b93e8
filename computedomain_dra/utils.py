import logging
import os
import shutil
import tempfile

from kubernetes import config

log = logging.getLogger(__name__)


def remove(filepath):
    """
    Remove a file, treating a missing file as already removed.
    """
    try:
        os.remove(filepath)
        log.info(f"Successfully removed {filepath}.")
    except FileNotFoundError:
        pass


def remove_tree(path):
    if os.path.exists(path):
        shutil.rmtree(path)
        log.info(f"Successfully removed directory {path}.")


def write_file(filename, content):
    """
    Write content atomically: readers see either the old or the new file.
    """
    dirname = os.path.dirname(filename) or "."
    os.makedirs(dirname, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=dirname, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, filename)
    except BaseException:
        remove(tmp)
        raise


def read_file(filename):
    with open(filename, "r") as f:
        return f.read()


def get_nested(obj, *keys, default=None):
    """
    Walk a nested dict from the Kubernetes API, returning default on a gap.
    """
    for key in keys:
        if not isinstance(obj, dict) or obj.get(key) is None:
            return default
        obj = obj[key]
    return obj


def object_key(obj):
    """
    namespace/name key for an API object dict (name only if cluster scoped).
    """
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{metadata.get('name')}"
    return metadata.get("name")


def load_kube_config():
    """
    In-cluster config when running in a pod, kubeconfig otherwise.
    """
    try:
        config.load_incluster_config()
        log.info("Loaded in-cluster Kubernetes config.")
    except config.ConfigException:
        config.load_kube_config()
        log.info("Loaded kubeconfig.")
