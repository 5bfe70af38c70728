import json
from dataclasses import dataclass, field
from typing import Optional

from kubernetes import client, config as kube_config
from kubernetes.client.rest import ApiException

from .logging import logger
from .exceptions import LookupFailed


def load_kube_config():
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        logger.info("Not running inside a cluster, loading kubeconfig")
        kube_config.load_kube_config()


@dataclass
class PodInfo:
    name: str
    namespace: str
    uid: str
    phase: Optional[str] = None


@dataclass
class PersistentVolumeInfo:
    name: str
    claim_namespace: Optional[str] = None
    storage_class: Optional[str] = None
    flex_options: dict = field(default_factory=dict)


class ClusterInfo:
    """
    Read-only lookups of cluster metadata: pods (for orphan detection and mount dir resolution),
    persistent volumes, storage classes and the kubelet configuration.
    """

    def __init__(self, core_api: client.CoreV1Api = None, storage_api: client.StorageV1Api = None):
        self.core_api = core_api or client.CoreV1Api()
        self.storage_api = storage_api or client.StorageV1Api()

    @staticmethod
    def _pod_info(pod):
        return PodInfo(
            name=pod.metadata.name,
            namespace=pod.metadata.namespace,
            uid=pod.metadata.uid,
            phase=pod.status.phase if pod.status else None,
        )

    def get_pod(self, namespace: str, name: str) -> Optional[PodInfo]:
        """The pod, or None if it doesn't exist. Any other failure is raised."""
        try:
            pod = self.core_api.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise LookupFailed(kind="pod", name=f"{namespace}/{name}", error=exc) from exc
        return self._pod_info(pod)

    def list_pods_on_node(self, namespace: str, node: str) -> list[PodInfo]:
        try:
            pods = self.core_api.list_namespaced_pod(namespace=namespace, field_selector=f"spec.nodeName={node}")
        except ApiException as exc:
            raise LookupFailed(kind="pods in namespace", name=namespace, error=exc) from exc
        return [self._pod_info(pod) for pod in pods.items]

    def get_persistent_volume(self, name: str) -> PersistentVolumeInfo:
        try:
            pv = self.core_api.read_persistent_volume(name=name)
        except ApiException as exc:
            raise LookupFailed(kind="persistent volume", name=name, error=exc) from exc
        spec = pv.spec
        return PersistentVolumeInfo(
            name=pv.metadata.name,
            claim_namespace=spec.claim_ref.namespace if spec.claim_ref else None,
            storage_class=spec.storage_class_name,
            flex_options=dict(spec.flex_volume.options or {}) if spec.flex_volume else {},
        )

    def get_storage_class(self, name: str) -> dict:
        """The parameters of the storage class"""
        try:
            storage_class = self.storage_api.read_storage_class(name=name)
        except ApiException as exc:
            raise LookupFailed(kind="storage class", name=name, error=exc) from exc
        return dict(storage_class.parameters or {})

    def get_kubelet_root_dir(self, node: str) -> Optional[str]:
        """
        The kubelet root directory as reported by the node's ``configz`` endpoint, or None if it isn't reported.
        Raises on API or parsing errors; callers treat this lookup as best effort.
        """
        resp = self.core_api.connect_get_node_proxy_with_path(name=node, path="configz", _preload_content=False)
        node_config = json.loads(resp.data)
        for section, key in (("kubeletconfig", "rootDirectory"), ("componentconfig", "RootDirectory")):
            if root_dir := (node_config.get(section) or {}).get(key):
                return root_dir
        return None
