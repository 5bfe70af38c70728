import grpc
from easypy.exceptions import TException


class Abort(Exception):
    @property
    def code(self):
        return self.args[0]

    @property
    def message(self):
        return self.args[1]


class FlexError(TException):
    """Base for errors reported back to the driver.

    ``code`` is the gRPC status the call is aborted with.
    """

    code = grpc.StatusCode.UNKNOWN
    template = "Flex agent error"


# Record store


class RecordNotFound(FlexError):
    code = grpc.StatusCode.NOT_FOUND
    template = "VolumeAttachment {namespace}/{name} not found"


class RecordAlreadyExists(FlexError):
    code = grpc.StatusCode.ALREADY_EXISTS
    template = "VolumeAttachment {namespace}/{name} already exists"


class RecordConflict(FlexError):
    """The record changed (or disappeared) between our read and our write."""

    code = grpc.StatusCode.ABORTED
    template = (
        "VolumeAttachment {namespace}/{name} was modified concurrently"
        " (read at resourceVersion {resource_version}). A new attempt should be made."
    )


class StoreError(FlexError):
    template = "Failed to {op} VolumeAttachment {namespace}/{name}: HTTP {status}: {reason}"


# Coordination


class AttachConflict(FlexError):
    code = grpc.StatusCode.FAILED_PRECONDITION
    template = "Failed to attach volume {volume} for pod {pod_namespace}/{pod}. {reason}"


class AttachmentNotFound(FlexError):
    code = grpc.StatusCode.NOT_FOUND
    template = "VolumeAttachment {name} found but attachment to the mountDir {mount_dir} was not found on node {node}"


class DeviceAttachFailed(FlexError):
    template = "Failed to attach volume {pool}/{image}: {error}"


class DeviceDetachFailed(FlexError):
    template = "Failed to detach volume {pool}/{image}: {error}"


class CommandFailed(FlexError):
    template = "Command `{command}` failed with exit code {retcode}: {stderr}"


# Cluster metadata


class MalformedMountDir(FlexError):
    code = grpc.StatusCode.INVALID_ARGUMENT
    template = "Failed to parse mountDir {mount_dir} for volume name and podID"


class LookupFailed(FlexError):
    template = "Failed to get {kind} {name}: {error}"
