DRIVER_NAME = "compute-domain.nvidia.com"
PLUGIN_TYPE = "DRAPlugin"

# Custom resources owned by this driver
API_GROUP = "resource.nvidia.com"
API_VERSION = "v1beta1"
COMPUTE_DOMAIN_PLURAL = "computedomains"
CONFIG_API_VERSION = f"{API_GROUP}/{API_VERSION}"

# Upstream DRA resources
RESOURCE_GROUP = "resource.k8s.io"
RESOURCE_VERSION = "v1beta1"

COMPUTE_DOMAIN_LABEL_KEY = "resource.nvidia.com/computeDomain"
COMPUTE_DOMAIN_FINALIZER = COMPUTE_DOMAIN_LABEL_KEY
COMPUTE_DOMAIN_STATUS_READY = "Ready"

CHANNEL_DEVICE_CLASS = "compute-domain-default-channel.nvidia.com"
DAEMON_DEVICE_CLASS = "compute-domain-daemon.nvidia.com"

TEMPLATE_TARGET_LABEL_KEY = "resource.nvidia.com/computeDomainTarget"
TEMPLATE_TARGET_DAEMON = "Daemon"
TEMPLATE_TARGET_WORKLOAD = "Workload"

# Kubelet plugin paths
PLUGIN_DATA_DIR = f"/var/lib/kubelet/plugins/{DRIVER_NAME}"
DRA_SOCKET_PATH = f"unix://{PLUGIN_DATA_DIR}/dra.sock"
REGISTRATION_SOCKET_PATH = (
    f"unix:///var/lib/kubelet/plugins_registry/{DRIVER_NAME}-reg.sock"
)
CHECKPOINT_FILE_BASENAME = "checkpoint.json"

# Container device interface
CDI_ROOT = "/var/run/cdi"
CDI_VERSION = "0.6.0"
CDI_VENDOR = f"k8s.{DRIVER_NAME}"
CDI_DEVICE_CLASS = "device"
CDI_CLAIM_CLASS = "claim"
CDI_BASE_SPEC_IDENTIFIER = "base"

# Node-local device layout
DEV_ROOT = "/"
SETTINGS_ROOT = "/var/run/nvidia-imex"
IMEX_CHANNELS_DEVICE_NAME = "nvidia-caps-imex-channels"
IMEX_CHANNELS_DEVICE_DIR = "/dev/nvidia-caps-imex-channels"
NVIDIA_CAPS_DEVICE_NAME = "nvidia-caps"
NVIDIA_CAP_FABRIC_IMEX_MGMT_PATH = "/proc/driver/nvidia/capabilities/fabric-imex-mgmt"
MAX_CHANNELS = 2048
DAEMON_SETTINGS_MOUNT = "/etc/nvidia-imex"

# Controller timings, in seconds
INFORMER_RESYNC_PERIOD = 600
INFORMER_WATCH_TIMEOUT = 10
STALE_LABEL_CLEANUP_INTERVAL = 600
PREPARE_RETRY_TIMEOUT = 45
