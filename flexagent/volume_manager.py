import json
from abc import ABC, abstractmethod
from itertools import count
from threading import Lock

from plumbum import local, ProcessExecutionError

from .logging import logger
from .configuration import Config
from .exceptions import CommandFailed


class VolumeManagerI(ABC):
    """Device level attach/detach of an image against the storage backend"""

    @abstractmethod
    def attach(self, image: str, pool: str, cluster_name: str) -> str:
        """Map the image on this node and return the device path"""

    @abstractmethod
    def detach(self, image: str, pool: str, cluster_name: str) -> None:
        """Unmap the image from this node"""


def get_volume_manager(config: Config) -> VolumeManagerI:
    manager_cls = TestVolumeManager if config.mock_devices else RbdVolumeManager
    return manager_cls(config)


class RbdVolumeManager(VolumeManagerI):
    """
    Maps Ceph RBD images with the ``rbd`` CLI.
    Each Rook cluster keeps its ceph config under ``<ceph_config_root>/<cluster>/<cluster>.config``.
    """

    def __init__(self, config: Config):
        self.config = config

    def _rbd(self, cluster_name, *args):
        conf_file = self.config.ceph_config_root / cluster_name / f"{cluster_name}.config"
        return local["rbd"][("--cluster", cluster_name, "--conf", conf_file) + args]

    def _run(self, cluster_name, *args):
        cmd = self._rbd(cluster_name, *args)
        logger.info(f"rbd >> {cmd}")
        try:
            return cmd(timeout=self.config.rbd_timeout)
        except ProcessExecutionError as exc:
            logger.error(f"rbd !! {exc.stderr}")
            raise CommandFailed(command=str(cmd), retcode=exc.retcode, stderr=exc.stderr.strip()) from None

    def _mapped_devices(self, cluster_name):
        """
        ``{(pool, image): device}`` of images currently mapped on this node.
        Older ceph releases render ``showmapped`` as a dict keyed by id, newer ones as a list.
        """
        output = self._run(cluster_name, "showmapped", "--format", "json").strip()
        entries = json.loads(output) if output else []
        if isinstance(entries, dict):
            entries = entries.values()
        return {(e["pool"], e["name"]): e["device"] for e in entries}

    def attach(self, image, pool, cluster_name):
        if device := self._mapped_devices(cluster_name).get((pool, image)):
            logger.info(f"{pool}/{image} is already mapped to {device}")
            return device
        device = self._run(cluster_name, "map", f"{pool}/{image}").strip()
        logger.info(f"mapped {pool}/{image} to {device}")
        return device

    def detach(self, image, pool, cluster_name):
        if (pool, image) not in self._mapped_devices(cluster_name):
            logger.info(f"{pool}/{image} is not mapped - no need to unmap")
            return
        cmd = self._rbd(cluster_name, "unmap", f"{pool}/{image}")
        try:
            cmd & logger.pipe_info("rbd >>", timeout=self.config.rbd_timeout)
        except ProcessExecutionError as exc:
            raise CommandFailed(command=str(cmd), retcode=exc.retcode, stderr=exc.stderr.strip()) from None
        logger.info(f"unmapped {pool}/{image}")


class TestVolumeManager(VolumeManagerI):
    """
    Fake devices for sanity test runs on nodes without a ceph cluster.
    Device numbers are never reused within the life of the agent.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, config: Config):
        self.config = config
        self.mapped = {}
        self._device_ids = count()
        self._lock = Lock()

    def attach(self, image, pool, cluster_name):
        key = (cluster_name, pool, image)
        with self._lock:
            if key not in self.mapped:
                self.mapped[key] = f"/dev/rbd{next(self._device_ids)}"
            device = self.mapped[key]
        logger.info(f"(mock) mapped {pool}/{image} to {device}")
        return device

    def detach(self, image, pool, cluster_name):
        with self._lock:
            device = self.mapped.pop((cluster_name, pool, image), None)
        logger.info(f"(mock) unmapped {pool}/{image} from {device}")
