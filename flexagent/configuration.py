import socket

from plumbum import local
from plumbum.typed_env import TypedEnv


class Config(TypedEnv):
    """
    Agent settings, read from the environment on every attribute access.
    Identity fields (``node_name``, ``namespace``) come from the downward API variables of the agent pod.
    """

    class Path(TypedEnv.Str):
        convert = staticmethod(local.path)

    plugin_name = "flexagent"
    plugin_version = TypedEnv.Str("X_FLEX_PLUGIN_VERSION", default="0.0.0")
    git_commit = TypedEnv.Str("X_FLEX_GIT_COMMIT", default="####")

    node_name = TypedEnv.Str("NODE_NAME", default=socket.gethostname())
    namespace = TypedEnv.Str("POD_NAMESPACE", default="rook-system")

    log_level = TypedEnv.Str("X_FLEX_LOG_LEVEL", default="info")
    worker_threads = TypedEnv.Int("X_FLEX_WORKER_THREADS", default=10)
    mock_devices = TypedEnv.Bool("X_FLEX_MOCK_DEVICES", default=False)
    endpoint = TypedEnv.Str("X_FLEX_ENDPOINT", default="unix:///var/run/flexagent.sock")

    default_cluster_name = TypedEnv.Str("X_FLEX_DEFAULT_CLUSTER", default="rook")
    flexvolume_vendor = TypedEnv.Str("X_FLEX_VENDOR", default="rook.io")
    flexvolume_driver = TypedEnv.Str("X_FLEX_DRIVER", default="rook")
    kubelet_root_dir = Path("X_FLEX_KUBELET_ROOT_DIR", default=local.path("/var/lib/kubelet"))

    ceph_config_root = Path("X_FLEX_CEPH_CONFIG_ROOT", default=local.path("/var/lib/rook"))
    rbd_timeout = TypedEnv.Int("X_FLEX_RBD_TIMEOUT", default=60)

    # VolumeAttachment custom resource coordinates
    crd_group = "rook.io"
    crd_version = "v1alpha1"
    crd_plural = "volumeattachments"
    crd_kind = "VolumeAttachment"

    @property
    def listen_address(self):
        # grpc understands 'unix:' targets as is, but wants bare host:port for tcp
        endpoint = self.endpoint.strip()
        return endpoint[len("tcp://"):] if endpoint.startswith("tcp://") else endpoint

    @property
    def api_version(self):
        return f"{self.crd_group}/{self.crd_version}"
