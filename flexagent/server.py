"""The gRPC service the flexvolume driver binary talks to."""

import json
import inspect
from concurrent import futures
from functools import wraps
from pprint import pformat

import grpc
from easypy.collections import separate
from easypy.misc import kwargs_resilient

from .logging import logger, driver_logger, init_logging
from .configuration import Config
from .cluster import ClusterInfo, load_kube_config
from .coordinator import AttachmentCoordinator
from .exceptions import Abort, FlexError
from .models import AttachOptions
from .mountdir import MountPathResolver
from .record_store import KubeAttachmentStore
from .volume_manager import get_volume_manager


SERVICE_NAME = "flexagent.FlexDriver"

INVALID_ARGUMENT = grpc.StatusCode.INVALID_ARGUMENT
UNKNOWN = grpc.StatusCode.UNKNOWN
UNIMPLEMENTED = grpc.StatusCode.UNIMPLEMENTED


################################################################
#
# Wire format
#
################################################################


def encode_message(message: dict) -> bytes:
    return json.dumps(message or {}).encode()


def decode_message(data: bytes) -> dict:
    return json.loads(data) if data else {}


class FlexDriverServicer:
    """Methods of the flexagent.FlexDriver service. Requests and responses are JSON objects."""

    METHODS = [
        "Attach",
        "Detach",
        "RemoveAttachmentObject",
        "GetAttachInfoFromMountDir",
        "GetGlobalMountPath",
        "Log",
    ]

    def Attach(self, request, context):
        context.abort(UNIMPLEMENTED, "Method not implemented!")

    def Detach(self, request, context):
        context.abort(UNIMPLEMENTED, "Method not implemented!")

    def RemoveAttachmentObject(self, request, context):
        context.abort(UNIMPLEMENTED, "Method not implemented!")

    def GetAttachInfoFromMountDir(self, request, context):
        context.abort(UNIMPLEMENTED, "Method not implemented!")

    def GetGlobalMountPath(self, request, context):
        context.abort(UNIMPLEMENTED, "Method not implemented!")

    def Log(self, request, context):
        context.abort(UNIMPLEMENTED, "Method not implemented!")


def add_FlexDriverServicer_to_server(servicer, server):
    handlers = {
        method: grpc.unary_unary_rpc_method_handler(
            getattr(servicer, method),
            request_deserializer=decode_message,
            response_serializer=encode_message,
        )
        for method in FlexDriverServicer.METHODS
    }
    server.add_generic_rpc_handlers((grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),))


class FlexDriverStub:
    """Client side of the flexagent.FlexDriver service"""

    def __init__(self, channel):
        for method in FlexDriverServicer.METHODS:
            setattr(self, method, channel.unary_unary(
                f"/{SERVICE_NAME}/{method}",
                request_serializer=encode_message,
                response_deserializer=decode_message,
            ))


################################################################
#
# Helpers
#
################################################################


class Instrumented:
    """
    Wraps the servicer methods of subclasses: logs requests and responses, checks that required fields are
    present, injects the node identity and turns exceptions into aborted calls.

    Request fields are passed as keyword arguments. Parameters without defaults are required fields,
    except for the injected ones.
    """

    SILENCED = ["Log"]
    INJECTED = {"self", "request", "context", "node", "namespace"}

    @classmethod
    def logged(cls, func):

        method = func.__name__
        log = logger.debug if (method in cls.SILENCED) else logger.info

        parameters = inspect.signature(func).parameters
        required_params, _ = map(
            set, separate(parameters, key=lambda k: parameters[k].default is inspect._empty)
        )
        needs_identity = bool({"node", "namespace"} & required_params)
        # '**options' collects whatever else the driver sends along
        required_params -= cls.INJECTED | {k for k, p in parameters.items() if p.kind is p.VAR_KEYWORD}

        func = kwargs_resilient(func)

        @wraps(func)
        def wrapper(self, request, context):
            peer = context.peer()
            params = {k: v for k, v in (request or {}).items() if v not in (None, "") and k not in cls.INJECTED}
            missing_params = required_params - set(params)

            log(f"{peer} >>> {method}:")

            if params:
                for line in pformat(params).splitlines():
                    log(f"({method})    {line}")

            if needs_identity:
                # read per call rather than cached for the lifetime of the process
                identity = Config()
                params.update(node=identity.node_name, namespace=identity.namespace)

            try:
                if missing_params:
                    msg = f'Missing required fields: {", ".join(sorted(missing_params))}'
                    logger.error(f"{peer} <<< {method}: {msg}")
                    raise Abort(INVALID_ARGUMENT, msg)

                ret = func(self, **params)
            except Abort as exc:
                logger.info(
                    f'{peer} <<< {method} ABORTED with {exc.code} ("{exc.message}")'
                )
                logger.debug("Traceback", exc_info=True)
                context.abort(exc.code, exc.message)
            except FlexError as exc:
                if exc.code is UNKNOWN:
                    logger.exception(f"Exception during {method}")
                else:
                    logger.info(f'{peer} <<< {method} ABORTED with {exc.code} ("{exc.message}")')
                context.abort(exc.code, f"[{method}]. {exc.message}")
            except Exception as exc:
                logger.exception(f"Exception during {method}")
                text = str(exc)
                context.abort(UNKNOWN, f"[{method}]: {text}")
            if ret:
                log(f"{peer} <<< {method}:")
                for line in pformat(ret).splitlines():
                    log(f"    {line}")
            log(f"{peer} --- {method}: Done")
            return ret

        return wrapper

    @classmethod
    def __init_subclass__(cls):
        for name, _ in inspect.getmembers(cls.__base__, inspect.isfunction):
            if name.startswith("_"):
                continue
            func = getattr(cls, name)
            setattr(cls, name, cls.logged(func))
        super().__init_subclass__()


################################################################
#
# Driver
#
################################################################


class FlexDriver(FlexDriverServicer, Instrumented):

    def __init__(self, coordinator: AttachmentCoordinator, resolver: MountPathResolver):
        self.coordinator = coordinator
        self.resolver = resolver

    def Attach(self, node, namespace, volume_name, mount_dir, **options):
        options = AttachOptions(volume_name=volume_name, mount_dir=mount_dir, **options)
        device_path = self.coordinator.attach(options, node=node, namespace=namespace)
        return dict(device_path=device_path)

    def Detach(self, namespace, volume_name, **options):
        options = AttachOptions(volume_name=volume_name, **options)
        self.coordinator.detach(options, namespace=namespace)
        return dict()

    def RemoveAttachmentObject(self, node, namespace, volume_name, mount_dir, **options):
        options = AttachOptions(volume_name=volume_name, mount_dir=mount_dir, **options)
        safe_to_detach = self.coordinator.remove_attachment_object(options, node=node, namespace=namespace)
        return dict(safe_to_detach=safe_to_detach)

    def GetAttachInfoFromMountDir(self, node, mount_dir, **options):
        options = AttachOptions(mount_dir=mount_dir, **options)
        options = self.resolver.get_attach_info_from_mount_dir(mount_dir, options, node=node)
        return options.model_dump()

    def GetGlobalMountPath(self, node, volume_name):
        return dict(global_mount_path=self.resolver.get_global_mount_path(volume_name, node=node))

    def Log(self, message, is_error=False):
        if is_error:
            driver_logger.error(message)
        else:
            driver_logger.info(message)
        return dict()


################################################################
#
# Entrypoint
#
################################################################


def serve():
    config = Config()
    init_logging(level=config.log_level)
    logger.info("%s: %s (%s)", config.plugin_name, config.plugin_version, config.git_commit)

    load_kube_config()
    cluster = ClusterInfo()
    coordinator = AttachmentCoordinator(
        store=KubeAttachmentStore(config),
        volume_manager=get_volume_manager(config),
        cluster=cluster,
    )
    driver = FlexDriver(coordinator=coordinator, resolver=MountPathResolver(cluster=cluster, config=config))

    server = grpc.server(futures.ThreadPoolExecutor(max_workers=config.worker_threads))
    add_FlexDriverServicer_to_server(driver, server)
    server.add_insecure_port(config.listen_address)
    server.start()

    logger.info(
        f"Server started on node '{config.node_name}', listening on {config.listen_address},"
        f" spawned threads {config.worker_threads}"
    )
    server.wait_for_termination()
