import posixpath

from .logging import logger
from .configuration import Config
from .cluster import ClusterInfo
from .exceptions import MalformedMountDir
from .models import AttachOptions

# keys of the flexvolume options in the PV spec
STORAGE_CLASS_KEY = "storageClass"
POOL_KEY = "pool"
IMAGE_KEY = "image"
CLUSTER_NAME_KEY = "clusterName"


def parse_mount_dir(mount_dir: str):
    """
    Get the pod id and volume name out of a kubelet mount dir, which looks like
    ``<root dir>/pods/<pod id>/volumes/<vendor>~<driver>/<volume name>``
    """
    tokens = posixpath.normpath(mount_dir).split("/")
    if len(tokens) < 5:
        raise MalformedMountDir(mount_dir=mount_dir)
    return tokens[-4], tokens[-1]


class MountPathResolver:
    """
    Kubernetes does not provide all the information needed to attach or detach a volume
    (https://github.com/kubernetes/kubernetes/issues/52590), so we complete it from the mount dir,
    the persistent volume and its storage class.
    """

    def __init__(self, cluster: ClusterInfo, config: Config):
        self.cluster = cluster
        self.config = config

    def get_attach_info_from_mount_dir(self, mount_dir: str, options: AttachOptions, node: str) -> AttachOptions:
        options = options.model_copy()
        if not options.pod_id:
            options.pod_id, options.volume_name = parse_mount_dir(mount_dir)

        pv = self.cluster.get_persistent_volume(options.volume_name)

        if not options.pod_namespace:
            # pod namespace should be the same as the PVC namespace
            options.pod_namespace = pv.claim_namespace or ""

        if not options.pod:
            pods = self.cluster.list_pods_on_node(options.pod_namespace, node)
            if pod := next((p for p in pods if p.uid == options.pod_id), None):
                options.pod = pod.name
            else:
                logger.warning(f"No pod with id {options.pod_id} in {options.pod_namespace} on {node}")

        options.image = options.image or pv.flex_options.get(IMAGE_KEY, "")
        options.pool = options.pool or pv.flex_options.get(POOL_KEY, "")
        options.storage_class = options.storage_class or pv.flex_options.get(STORAGE_CLASS_KEY, "")
        options.cluster_name = self.parse_cluster_name(options.storage_class)
        return options

    def parse_cluster_name(self, storage_class: str) -> str:
        parameters = self.cluster.get_storage_class(storage_class)
        if cluster_name := parameters.get(CLUSTER_NAME_KEY):
            return cluster_name
        default = self.config.default_cluster_name
        logger.info(f"clusterName not specified in the storage class {storage_class}. Defaulting to '{default}'")
        return default

    def get_global_mount_path(self, volume_name: str, node: str) -> str:
        """The path where the device is mounted before it gets bind-mounted into pods"""
        return posixpath.join(
            self.get_kubelet_root_dir(node),
            "plugins",
            self.config.flexvolume_vendor,
            self.config.flexvolume_driver,
            "mounts",
            volume_name,
        )

    def get_kubelet_root_dir(self, node: str) -> str:
        default = str(self.config.kubelet_root_dir)
        try:
            root_dir = self.cluster.get_kubelet_root_dir(node)
        except Exception as exc:
            logger.warning(f"Unable to query the kubelet configuration of {node}, using {default}: {exc}")
            return default
        return root_dir or default
