"""Attachment records and the options the driver sends along with every call."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

READ_ONLY = "ro"
READ_WRITE = "rw"


class Attachment(BaseModel):
    """A claim of one pod (through one mount dir on one node) on a volume"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    node: str
    pod_namespace: str
    pod_name: str
    mount_dir: str
    read_only: bool = False

    def __str__(self):
        mode = READ_ONLY if self.read_only else READ_WRITE
        return f"<{self.node}:{self.pod_namespace}/{self.pod_name}:{self.mount_dir}:{mode}>"


class AttachmentRecord(BaseModel):
    """
    The VolumeAttachment custom object of a volume, named after the persistent volume.
    ``resource_version`` is the version token the store hands out on read and verifies on update.
    """

    name: str
    namespace: str
    attachments: list[Attachment] = Field(default_factory=list)
    resource_version: Optional[str] = None

    @classmethod
    def from_body(cls, body: dict) -> "AttachmentRecord":
        metadata = body.get("metadata") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata["namespace"],
            attachments=[Attachment.model_validate(a) for a in body.get("attachments") or ()],
            resource_version=metadata.get("resourceVersion"),
        )

    def to_body(self, api_version: str, kind: str) -> dict:
        metadata = dict(name=self.name, namespace=self.namespace)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return dict(
            apiVersion=api_version,
            kind=kind,
            metadata=metadata,
            attachments=[a.model_dump(by_alias=True) for a in self.attachments],
        )

    def find_attachment(self, node: str, mount_dir: str) -> Optional[Attachment]:
        return next((a for a in self.attachments if a.node == node and a.mount_dir == mount_dir), None)

    def find_rw_attachment(self) -> Optional[Attachment]:
        """The first read-write attachment; there is never more than one"""
        return next((a for a in self.attachments if not a.read_only), None)

    def node_attachments(self, node: str) -> list[Attachment]:
        return [a for a in self.attachments if a.node == node]


class AttachOptions(BaseModel):
    """
    Everything the driver knows about the volume being attached or detached.
    The driver may leave fields empty; ``MountPathResolver`` fills them in from the mount dir and the cluster.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    volume_name: str = ""
    pool: str = ""
    image: str = ""
    rw: str = READ_WRITE
    fs_type: str = ""
    storage_class: str = ""
    cluster_name: str = ""
    pod: str = ""
    pod_id: str = ""
    pod_namespace: str = ""
    mount_dir: str = ""

    @property
    def read_only(self) -> bool:
        return self.rw.lower() == READ_ONLY

    def to_attachment(self, node: str) -> Attachment:
        return Attachment(
            node=node,
            pod_namespace=self.pod_namespace,
            pod_name=self.pod,
            mount_dir=self.mount_dir,
            read_only=self.read_only,
        )
