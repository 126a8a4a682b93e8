import logging
import os
import signal
import threading

from computedomain_dra.controller.base import ManagerConfig
from computedomain_dra.controller.computedomain import ComputeDomainManager
from computedomain_dra.utils import load_kube_config
from computedomain_dra.workqueue import WorkQueue

log = logging.getLogger(__name__)


def run():
    """
    Run the ComputeDomain controller until SIGINT or SIGTERM.
    """
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )
    driver_namespace = os.environ.get("POD_NAMESPACE")
    image_name = os.environ.get("IMAGE_NAME")
    if not driver_namespace or not image_name:
        raise RuntimeError("POD_NAMESPACE or IMAGE_NAME env var is not set.")

    load_kube_config()
    work_queue = WorkQueue(workers=int(os.environ.get("WORKERS", "4")))
    manager_config = ManagerConfig(
        driver_namespace=driver_namespace,
        image_name=image_name,
        work_queue=work_queue,
    )
    manager = ComputeDomainManager(manager_config)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())

    work_queue.start()
    try:
        manager.start()
        log.info("ComputeDomain controller started.")
        stop.wait()
    finally:
        log.info("Shutting down ComputeDomain controller.")
        manager.stop()
        work_queue.stop()


if __name__ == "__main__":
    run()
