from abc import ABC, abstractmethod

from kubernetes import client
from kubernetes.client.rest import ApiException

from .logging import logger
from .configuration import Config
from .exceptions import RecordNotFound, RecordAlreadyExists, RecordConflict, StoreError
from .models import AttachmentRecord


class AttachmentStoreI(ABC):
    """
    Durable, versioned storage of one AttachmentRecord per (namespace, volume name).
    ``update`` must fail with ``RecordConflict`` if the record changed since it was read;
    this is the only concurrency control the coordinator relies on.
    """

    @abstractmethod
    def get(self, namespace: str, name: str) -> AttachmentRecord:
        """Raises ``RecordNotFound``"""

    @abstractmethod
    def create(self, record: AttachmentRecord) -> AttachmentRecord:
        """Raises ``RecordAlreadyExists``"""

    @abstractmethod
    def update(self, record: AttachmentRecord) -> AttachmentRecord:
        """Raises ``RecordConflict`` or ``RecordNotFound``"""

    @abstractmethod
    def delete(self, namespace: str, name: str) -> None:
        """Raises ``RecordNotFound``"""


class KubeAttachmentStore(AttachmentStoreI):
    """
    VolumeAttachment custom objects (volumeattachments.rook.io).
    The object's ``metadata.resourceVersion`` is the version token: the API server rejects
    a replace carrying a stale resourceVersion with HTTP 409.
    """

    def __init__(self, config: Config, api: client.CustomObjectsApi = None):
        self.config = config
        self.api = api or client.CustomObjectsApi()

    def _coordinates(self, namespace):
        return self.config.crd_group, self.config.crd_version, namespace, self.config.crd_plural

    def _body(self, record):
        return record.to_body(api_version=self.config.api_version, kind=self.config.crd_kind)

    def get(self, namespace, name):
        try:
            body = self.api.get_namespaced_custom_object(*self._coordinates(namespace), name)
        except ApiException as exc:
            if exc.status == 404:
                raise RecordNotFound(namespace=namespace, name=name) from None
            raise StoreError(
                op="get", namespace=namespace, name=name,
                status=exc.status, reason=exc.reason,
            ) from exc
        return AttachmentRecord.from_body(body)

    def create(self, record):
        body = self._body(record)
        body["metadata"].pop("resourceVersion", None)
        try:
            body = self.api.create_namespaced_custom_object(*self._coordinates(record.namespace), body)
        except ApiException as exc:
            if exc.status == 409:
                raise RecordAlreadyExists(namespace=record.namespace, name=record.name) from None
            raise StoreError(
                op="create", namespace=record.namespace, name=record.name,
                status=exc.status, reason=exc.reason,
            ) from exc
        return AttachmentRecord.from_body(body)

    def update(self, record):
        logger.info(
            f"Updating VolumeAttachment {record.namespace}/{record.name}"
            f" (resourceVersion {record.resource_version}): {', '.join(map(str, record.attachments)) or '-'}"
        )
        try:
            body = self.api.replace_namespaced_custom_object(
                *self._coordinates(record.namespace), record.name, self._body(record)
            )
        except ApiException as exc:
            if exc.status == 409:
                raise RecordConflict(
                    namespace=record.namespace, name=record.name, resource_version=record.resource_version
                ) from None
            if exc.status == 404:
                raise RecordNotFound(namespace=record.namespace, name=record.name) from None
            raise StoreError(
                op="update", namespace=record.namespace, name=record.name,
                status=exc.status, reason=exc.reason,
            ) from exc
        return AttachmentRecord.from_body(body)

    def delete(self, namespace, name):
        logger.info(f"Deleting VolumeAttachment {namespace}/{name}")
        try:
            self.api.delete_namespaced_custom_object(*self._coordinates(namespace), name)
        except ApiException as exc:
            if exc.status == 404:
                raise RecordNotFound(namespace=namespace, name=name) from None
            raise StoreError(
                op="delete", namespace=namespace, name=name,
                status=exc.status, reason=exc.reason,
            ) from exc
