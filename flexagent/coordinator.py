"""
Attach/detach coordination through VolumeAttachment records.

Each volume has one record listing the pods (by node and mount dir) holding it. Every operation reads the
record, decides on that snapshot and writes it back once, conditioned on the version it read. A lost race
surfaces as ``RecordConflict`` and the kubelet retries the whole operation; nothing is retried here.
"""

from .logging import logger
from .cluster import ClusterInfo
from .exceptions import (
    AttachConflict,
    AttachmentNotFound,
    DeviceAttachFailed,
    DeviceDetachFailed,
    RecordAlreadyExists,
    RecordConflict,
    RecordNotFound,
)
from .models import AttachmentRecord, AttachOptions
from .record_store import AttachmentStoreI
from .volume_manager import VolumeManagerI


class AttachmentCoordinator:

    def __init__(self, store: AttachmentStoreI, volume_manager: VolumeManagerI, cluster: ClusterInfo):
        self.store = store
        self.volume_manager = volume_manager
        self.cluster = cluster

    def attach(self, options: AttachOptions, node: str, namespace: str) -> str:
        """Claim the volume for the requesting pod, then attach the device. Returns the device path."""
        # the record is named after the PV so that it can be used for fencing
        name = options.volume_name
        try:
            record = self.store.get(namespace, name)
        except RecordNotFound:
            self._create_record(options, node, namespace)
        else:
            self._claim(record, options, node)

        try:
            return self.volume_manager.attach(options.image, options.pool, options.cluster_name)
        except Exception as exc:
            # the claim stays; it is reconciled by cleanup or by orphan takeover on a later attach
            raise DeviceAttachFailed(pool=options.pool, image=options.image, error=exc) from exc

    def _create_record(self, options, node, namespace):
        record = AttachmentRecord(
            name=options.volume_name, namespace=namespace, attachments=[options.to_attachment(node)]
        )
        logger.info(f"Creating VolumeAttachment {namespace}/{record.name}: {options}")
        try:
            self.store.create(record)
        except RecordAlreadyExists:
            # some other attacher beat us in this race. Kubernetes will retry again.
            raise AttachConflict(
                volume=options.volume_name,
                pod_namespace=options.pod_namespace,
                pod=options.pod,
                reason="Volume is already attached by a different pod",
            ) from None

    def _claim(self, record, options, node):
        if record.find_attachment(node, options.mount_dir):
            # either a read-only volume shared by several pods, or an attach that already went
            # through and is being retried by Kubernetes
            logger.info(f"{options.volume_name} is already attached at {node}:{options.mount_dir}")
            return

        if rw_attachment := record.find_rw_attachment():
            holder = self.cluster.get_pod(rw_attachment.pod_namespace, rw_attachment.pod_name)
            if holder:
                raise AttachConflict(
                    volume=options.volume_name,
                    pod_namespace=options.pod_namespace,
                    pod=options.pod,
                    reason=(
                        f"Volume is already attached by pod {holder.namespace}/{holder.name}."
                        f" Status {holder.phase}"
                    ),
                )
            logger.warning(f"Taking over orphaned attachment {rw_attachment} of {options.volume_name}")
            rw_attachment.node = node
            rw_attachment.mount_dir = options.mount_dir
            rw_attachment.pod_namespace = options.pod_namespace
            rw_attachment.pod_name = options.pod
            rw_attachment.read_only = options.read_only
        elif not options.read_only and record.attachments:
            # a single read-write attachment only, no mixing with read-only ones either
            raise AttachConflict(
                volume=options.volume_name,
                pod_namespace=options.pod_namespace,
                pod=options.pod,
                reason="Volume is already attached by one or more pods",
            )
        else:
            record.attachments.append(options.to_attachment(node))

        self._commit(record)

    def _commit(self, record):
        try:
            self.store.update(record)
        except RecordNotFound:
            # deleted by a concurrent detach since we read it
            raise RecordConflict(
                namespace=record.namespace, name=record.name, resource_version=record.resource_version
            ) from None

    def detach(self, options: AttachOptions, namespace: str) -> None:
        """Detach the device, then drop the record if no attachment is left in it."""
        try:
            self.volume_manager.detach(options.image, options.pool, options.cluster_name)
        except Exception as exc:
            raise DeviceDetachFailed(pool=options.pool, image=options.image, error=exc) from exc

        record = self.store.get(namespace, options.volume_name)
        if not record.attachments:
            self.store.delete(namespace, record.name)

    def remove_attachment_object(self, options: AttachOptions, node: str, namespace: str) -> bool:
        """
        Remove this node's attachment for ``options.mount_dir`` from the record.
        Returns whether it was the last attachment of the volume on this node, i.e. whether the device may
        now be detached; other pods on the node could still be using it through other mount dirs.
        """
        name = options.volume_name
        logger.info(f"Deleting attachment for mountDir {options.mount_dir} from VolumeAttachment {namespace}/{name}")
        record = self.store.get(namespace, name)

        node_attachments = record.node_attachments(node)
        attachment = next((a for a in node_attachments if a.mount_dir == options.mount_dir), None)
        if not attachment:
            raise AttachmentNotFound(name=name, mount_dir=options.mount_dir, node=node)

        record.attachments.remove(attachment)
        self._commit(record)
        return len(node_attachments) == 1
