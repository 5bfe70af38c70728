import sys
from pathlib import Path
from typing import Optional, Any
from unittest.mock import MagicMock

import grpc
import pytest

ROOT = Path(__file__).resolve().parents[1]
# Extend python import path to get flexagent package from here
sys.path += [ROOT.as_posix()]

from flexagent.cluster import PodInfo, PersistentVolumeInfo
from flexagent.configuration import Config
from flexagent.coordinator import AttachmentCoordinator
from flexagent.exceptions import RecordNotFound, RecordAlreadyExists, RecordConflict, LookupFailed
from flexagent.models import AttachmentRecord, AttachOptions
from flexagent.mountdir import MountPathResolver
from flexagent.record_store import AttachmentStoreI

NAMESPACE = "rook-system"


# ----------------------------------------------------------------------------------------------------------------------
# Helper classes
# ----------------------------------------------------------------------------------------------------------------------


class FakeAttachmentStore(AttachmentStoreI):
    """
    In-memory versioned store. Every write bumps the resource version and
    a write carrying a stale version is rejected, like the API server does.
    """

    def __init__(self):
        self.records = {}
        self.version = 0
        self.writes = MagicMock()

    def _bump(self, record):
        self.version += 1
        stored = record.model_copy(deep=True, update=dict(resource_version=str(self.version)))
        self.records[(record.namespace, record.name)] = stored
        return stored.model_copy(deep=True)

    def get(self, namespace, name):
        try:
            return self.records[(namespace, name)].model_copy(deep=True)
        except KeyError:
            raise RecordNotFound(namespace=namespace, name=name) from None

    def create(self, record):
        self.writes("create", record.name)
        if (record.namespace, record.name) in self.records:
            raise RecordAlreadyExists(namespace=record.namespace, name=record.name)
        return self._bump(record)

    def update(self, record):
        self.writes("update", record.name)
        try:
            current = self.records[(record.namespace, record.name)]
        except KeyError:
            raise RecordNotFound(namespace=record.namespace, name=record.name) from None
        if current.resource_version != record.resource_version:
            raise RecordConflict(
                namespace=record.namespace, name=record.name, resource_version=record.resource_version
            )
        return self._bump(record)

    def delete(self, namespace, name):
        self.writes("delete", name)
        if self.records.pop((namespace, name), None) is None:
            raise RecordNotFound(namespace=namespace, name=name)

    def seed(self, name, *attachments, namespace=NAMESPACE):
        """Put a record in place without going through the coordinator"""
        return self._bump(AttachmentRecord(name=name, namespace=namespace, attachments=list(attachments)))


class FakeVolumeManager:
    """Records calls in MagicMocks; set ``attach.side_effect`` / ``detach.side_effect`` to simulate failures"""

    def __init__(self, device_path: Optional[str] = "/dev/rbd0"):
        self.attach = MagicMock(return_value=device_path)
        self.detach = MagicMock(return_value=None)


class FakeCluster:
    """Simulate cluster metadata lookups"""

    def __init__(self,
                 pods: Optional[list] = (),
                 persistent_volumes: Optional[dict] = None,
                 storage_classes: Optional[dict] = None,
                 kubelet_root_dir: Any = None,
                 ):
        """
        Args:
            pods: PodInfo objects that exist in the cluster
            persistent_volumes: name -> PersistentVolumeInfo
            storage_classes: name -> parameters
            kubelet_root_dir: returned by 'get_kubelet_root_dir'; pass an exception instance to raise it
        """
        self.pods = {(p.namespace, p.name): p for p in pods}
        self.persistent_volumes = persistent_volumes or {}
        self.storage_classes = storage_classes or {}
        self.kubelet_root_dir = kubelet_root_dir

    def add_pods(self, *pods):
        self.pods.update({(p.namespace, p.name): p for p in pods})

    def get_pod(self, namespace, name):
        return self.pods.get((namespace, name))

    def list_pods_on_node(self, namespace, node):
        return [p for (ns, _), p in self.pods.items() if ns == namespace]

    def get_persistent_volume(self, name):
        try:
            return self.persistent_volumes[name]
        except KeyError:
            raise LookupFailed(kind="persistent volume", name=name, error=Exception("not found")) from None

    def get_storage_class(self, name):
        try:
            return self.storage_classes[name]
        except KeyError:
            raise LookupFailed(kind="storage class", name=name, error=Exception("not found")) from None

    def get_kubelet_root_dir(self, node):
        if isinstance(self.kubelet_root_dir, Exception):
            raise self.kubelet_root_dir
        return self.kubelet_root_dir


class AbortedCall(Exception):
    pass


class FakeContext:
    """Simulate grpc.ServicerContext; 'abort' raises like the real one does"""

    def __init__(self):
        self.code = None
        self.details = None

    def peer(self):
        return "unix:test"

    def abort(self, code: grpc.StatusCode, details: str):
        self.code = code
        self.details = details
        raise AbortedCall(code, details)


# ----------------------------------------------------------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------------------------------------------------------


@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("NODE_NAME", "node-a")
    monkeypatch.setenv("POD_NAMESPACE", NAMESPACE)
    return Config()


@pytest.fixture
def store():
    return FakeAttachmentStore()


@pytest.fixture
def volume_manager():
    return FakeVolumeManager()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def coordinator(store, volume_manager, cluster):
    return AttachmentCoordinator(store=store, volume_manager=volume_manager, cluster=cluster)


@pytest.fixture
def resolver(cluster, config):
    return MountPathResolver(cluster=cluster, config=config)


@pytest.fixture
def attach_options():
    """Factory for building AttachOptions"""

    def __wrapped(pod: str = "pod-1", mount_dir: Optional[str] = None, rw: str = "rw", volume_name: str = "pv-001"):
        return AttachOptions(
            volume_name=volume_name,
            pool="replicapool",
            image=volume_name,
            rw=rw,
            cluster_name="rook",
            pod=pod,
            pod_namespace="default",
            mount_dir=mount_dir or f"/var/lib/kubelet/pods/{pod}-uid/volumes/rook.io~rook/{volume_name}",
        )

    return __wrapped


@pytest.fixture
def pod():
    """Factory for building PodInfo"""

    def __wrapped(name: str, namespace: str = "default", uid: Optional[str] = None, phase: str = "Running"):
        return PodInfo(name=name, namespace=namespace, uid=uid or f"{name}-uid", phase=phase)

    return __wrapped


@pytest.fixture
def persistent_volume():
    def __wrapped(name: str = "pv-001", claim_namespace: str = "default", **flex_options):
        return PersistentVolumeInfo(name=name, claim_namespace=claim_namespace, flex_options=flex_options)

    return __wrapped
