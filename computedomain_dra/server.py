import logging
import os
import signal
import threading
from concurrent import futures

import grpc
from kubernetes import client
from tenacity import Retrying, retry_if_exception, stop_after_delay, wait_exponential

import computedomain_dra.defaults as defaults
import computedomain_dra.devices as devices
from computedomain_dra.cdi import CDIHandler
from computedomain_dra.checkpoint import CheckpointManager
from computedomain_dra.computedomain import ComputeDomainManager
from computedomain_dra.device_state import DeviceState, claim_ref_string
from computedomain_dra.errors import PermanentError, is_permanent_error
from computedomain_dra.informer import Informer, uid_indexer
from computedomain_dra.proto import dra_pb2, dra_pb2_grpc, registration_pb2, registration_pb2_grpc
from computedomain_dra.utils import load_kube_config

log = logging.getLogger(__name__)


def get_resource_claim(namespace, name) -> dict:
    api = client.CustomObjectsApi()
    return api.get_namespaced_custom_object(
        group=defaults.RESOURCE_GROUP,
        version=defaults.RESOURCE_VERSION,
        namespace=namespace,
        plural="resourceclaims",
        name=name,
    )


class DraPluginServicer(dra_pb2_grpc.DRAPluginServicer):
    """
    Handles the kubelet's prepare and unprepare calls by driving DeviceState.

    Retryable failures are retried with backoff for up to retry_timeout
    seconds; permanent failures are reported to the kubelet right away.
    """

    def __init__(self, device_state, claim_getter=get_resource_claim, retry_timeout=defaults.PREPARE_RETRY_TIMEOUT):
        self.device_state = device_state
        self.claim_getter = claim_getter
        self.retry_timeout = retry_timeout
        log.info("DraPluginServicer initialized.")

    def _retrying(self):
        return Retrying(
            stop=stop_after_delay(self.retry_timeout),
            wait=wait_exponential(multiplier=0.1, max=5),
            retry=retry_if_exception(lambda e: not is_permanent_error(e)),
            reraise=True,
        )

    def fetch_claim(self, claim_ref) -> dict:
        """
        Fetch the full ResourceClaim from the API server.
        """
        try:
            claim = self.claim_getter(claim_ref.namespace, claim_ref.name)
        except client.ApiException as e:
            if e.status == 404:
                raise PermanentError(f"ResourceClaim {claim_ref_string(claim_ref)} not found") from e
            raise
        uid = claim["metadata"]["uid"]
        if uid != claim_ref.uid:
            raise PermanentError(
                f"ResourceClaim {claim_ref.namespace}/{claim_ref.name} has UID {uid}, expected {claim_ref.uid}"
            )
        return claim

    def prepare_claim(self, claim_ref):
        claim = self.fetch_claim(claim_ref)
        return self.device_state.prepare(claim)

    def NodePrepareResources(self, request, context):
        log.info(f"Received NodePrepareResources request for {len(request.claims)} claims.")
        response = dra_pb2.NodePrepareResourcesResponse()

        for claim in request.claims:
            try:
                prepared = self._retrying()(self.prepare_claim, claim)
            except Exception as e:
                kind = "permanent" if is_permanent_error(e) else "retryable"
                msg = f"error preparing devices for claim {claim_ref_string(claim)} ({kind}): {e}"
                log.error(msg)
                response.claims[claim.uid].CopyFrom(dra_pb2.NodePrepareResourceResponse(error=msg))
                continue

            result = dra_pb2.NodePrepareResourceResponse(
                devices=[
                    dra_pb2.Device(
                        request_names=device.request_names,
                        pool_name=device.pool_name,
                        device_name=device.device_name,
                        cdi_device_ids=device.cdi_device_ids,
                    )
                    for device in prepared
                ]
            )
            response.claims[claim.uid].CopyFrom(result)
            log.info(f"Prepared {len(prepared)} devices for claim {claim_ref_string(claim)}.")

        return response

    def NodeUnprepareResources(self, request, context):
        log.info(f"Received NodeUnprepareResources request for {len(request.claims)} claims.")
        response = dra_pb2.NodeUnprepareResourcesResponse()

        for claim in request.claims:
            unprepare_response = dra_pb2.NodeUnprepareResourceResponse()
            try:
                self._retrying()(self.device_state.unprepare, claim)
            except Exception as e:
                if is_permanent_error(e):
                    # Retrying cannot help, report success so the claim can be released
                    log.error(
                        f"Permanent error unpreparing devices for claim {claim_ref_string(claim)}, "
                        f"leaving its checkpoint entry in place: {e}"
                    )
                else:
                    msg = f"error unpreparing devices for claim {claim_ref_string(claim)}: {e}"
                    log.error(msg)
                    unprepare_response.error = msg

            # Kubelet requires an entry for every claim, even if empty
            response.claims[claim.uid].CopyFrom(unprepare_response)

        return response


class RegistrationServicer(registration_pb2_grpc.RegistrationServicer):
    """
    Handles the plugin registration with Kubelet.
    """

    def __init__(self, endpoint=defaults.DRA_SOCKET_PATH):
        self.endpoint = endpoint
        self.registered = threading.Event()

    def GetInfo(self, request, context):
        log.info("Received GetInfo registration request from Kubelet.")
        return registration_pb2.PluginInfo(
            type=defaults.PLUGIN_TYPE,
            name=defaults.DRIVER_NAME,
            endpoint=self.endpoint.replace("unix://", ""),
            supported_versions=["v1beta1.DRAPlugin"],
        )

    def NotifyRegistrationStatus(self, request, context):
        log.info(f"Received NotifyRegistrationStatus: Registered={request.plugin_registered}, Error={request.error}")
        if request.plugin_registered:
            self.registered.set()
        return registration_pb2.RegistrationStatusResponse()


def start_compute_domain_informer():
    """
    Cache of ComputeDomains for lookups by UID while preparing devices.
    """
    api = client.CustomObjectsApi()
    informer = Informer(
        api.list_cluster_custom_object,
        name="computedomains",
        group=defaults.API_GROUP,
        version=defaults.API_VERSION,
        plural=defaults.COMPUTE_DOMAIN_PLURAL,
    )
    informer.add_indexers({"uid": uid_indexer})
    informer.start()
    if not informer.wait_for_cache_sync(60):
        raise RuntimeError("informer cache sync for ComputeDomains failed")
    return informer


def new_device_state(node_name, informer):
    """
    Build the node's DeviceState from environment settings.
    """
    plugin_data_dir = os.environ.get("PLUGIN_DATA_DIR", defaults.PLUGIN_DATA_DIR)
    devlib = devices.DeviceLib(
        dev_root=os.environ.get("DEV_ROOT", defaults.DEV_ROOT),
        clique_id=os.environ.get("CLIQUE_ID", ""),
        channel_count=int(os.environ.get("CHANNEL_COUNT", "1")),
    )
    allocatable = devlib.enumerate_all_possible_devices()
    clique_id = devlib.get_clique_id()
    log.info(f"Using cliqueID={clique_id!r}, devRoot={devlib.dev_root}")

    manager = ComputeDomainManager(
        node_name=node_name,
        settings_root=os.environ.get("SETTINGS_ROOT", defaults.SETTINGS_ROOT),
        clique_id=clique_id,
        get_compute_domain=lambda uid: informer.get_by_index("uid", uid),
    )
    state = DeviceState(
        cdi=CDIHandler(cdi_root=os.environ.get("CDI_ROOT", defaults.CDI_ROOT)),
        compute_domain_manager=manager,
        allocatable=allocatable,
        devlib=devlib,
        checkpoint_manager=CheckpointManager(plugin_data_dir),
        get_resource_claim=get_resource_claim,
    )
    return state


def serve():
    """
    Configures and runs the gRPC server.
    """
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )
    log.info("Starting DRA plugin server...")

    node_name = os.environ.get("NODE_NAME")
    if not node_name:
        raise RuntimeError("NODE_NAME env var is not set.")

    # Clean up old sockets and create directories
    for path in [defaults.DRA_SOCKET_PATH, defaults.REGISTRATION_SOCKET_PATH]:
        sock_path = path.replace("unix://", "")
        if os.path.exists(sock_path):
            os.remove(sock_path)
            log.info(f"Removed stale socket: {sock_path}")
        os.makedirs(os.path.dirname(sock_path), exist_ok=True)

    load_kube_config()
    informer = start_compute_domain_informer()
    state = new_device_state(node_name, informer)

    server = grpc.server(futures.ThreadPoolExecutor(max_workers=10))
    dra_pb2_grpc.add_DRAPluginServicer_to_server(DraPluginServicer(state), server)
    registration_pb2_grpc.add_RegistrationServicer_to_server(RegistrationServicer(), server)
    server.add_insecure_port(defaults.DRA_SOCKET_PATH)
    server.add_insecure_port(defaults.REGISTRATION_SOCKET_PATH)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())

    server.start()
    log.info(
        f"gRPC server started, listening on {defaults.DRA_SOCKET_PATH} and {defaults.REGISTRATION_SOCKET_PATH}"
    )

    # Slower work happens once the kubelet can reach us
    devices.create_or_update_resource_slice(node_name, state.allocatable, state.compute_domain_manager.clique_id)

    try:
        stop.wait()
    finally:
        log.info("Shutting down DRA plugin server.")
        server.stop(5).wait()
        informer.stop()
        log.info("Server stopped.")


if __name__ == "__main__":
    serve()
