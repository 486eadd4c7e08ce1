"""CRI runtime service handles

Two handles share the ``list_containers(container_filter)`` contract:
:py:class:`GrpcRuntimeClient` talks to the runtime socket directly,
:py:class:`CrictlRuntimeClient` asks a ``crictl`` binary for json.
"""

import functools
import json
import logging
import subprocess

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from crilist import (
    ContainerFilter,
    ContainerState,
    ContainerSummary,
    RuntimeClientError,
    STATE_LABELS,
)

logger = logging.getLogger("crilist.cri")

DEFAULT_ENDPOINT = "unix:///var/run/crio/crio.sock"
API_VERSIONS = ("v1", "v1alpha2")

_F = descriptor_pb2.FieldDescriptorProto
OPTIONAL = _F.LABEL_OPTIONAL
REPEATED = _F.LABEL_REPEATED

# Only the fields read by crilist, numbered as in the CRI api.proto. Anything
# else the runtime sends is kept as unknown fields.
# fmt: off
MESSAGES = {
    # message: ((field, number, type, type name, label), ...)
    "ContainerStateValue": (
        ("state",           1,  _F.TYPE_ENUM,       "ContainerState",       OPTIONAL),
    ),
    "ContainerFilter": (
        ("id",              1,  _F.TYPE_STRING,     None,                   OPTIONAL),
        ("state",           2,  _F.TYPE_MESSAGE,    "ContainerStateValue",  OPTIONAL),
        ("pod_sandbox_id",  3,  _F.TYPE_STRING,     None,                   OPTIONAL),
    ),
    "ListContainersRequest": (
        ("filter",          1,  _F.TYPE_MESSAGE,    "ContainerFilter",      OPTIONAL),
    ),
    "ContainerMetadata": (
        ("name",            1,  _F.TYPE_STRING,     None,                   OPTIONAL),
        ("attempt",         2,  _F.TYPE_UINT32,     None,                   OPTIONAL),
    ),
    "ImageSpec": (
        ("image",           1,  _F.TYPE_STRING,     None,                   OPTIONAL),
    ),
    "Container": (
        ("id",              1,  _F.TYPE_STRING,     None,                   OPTIONAL),
        ("pod_sandbox_id",  2,  _F.TYPE_STRING,     None,                   OPTIONAL),
        ("metadata",        3,  _F.TYPE_MESSAGE,    "ContainerMetadata",    OPTIONAL),
        ("image",           4,  _F.TYPE_MESSAGE,    "ImageSpec",            OPTIONAL),
        ("image_ref",       5,  _F.TYPE_STRING,     None,                   OPTIONAL),
        ("state",           6,  _F.TYPE_ENUM,       "ContainerState",       OPTIONAL),
        ("created_at",      7,  _F.TYPE_INT64,      None,                   OPTIONAL),
    ),
    "ListContainersResponse": (
        ("containers",      1,  _F.TYPE_MESSAGE,    "Container",            REPEATED),
    ),
}
# fmt: on


class RuntimeAPI:
    """message classes and method paths of one CRI API version"""

    def __init__(self, version):
        if version not in API_VERSIONS:
            raise ValueError(
                f"unknown CRI API version {version!r}, expecting one of {API_VERSIONS}"
            )
        self.version = version
        self.package = f"runtime.{version}"
        pool = descriptor_pool.DescriptorPool()
        pool.AddSerializedFile(self.file_descriptor().SerializeToString())
        for name in MESSAGES:
            descriptor = pool.FindMessageTypeByName(f"{self.package}.{name}")
            setattr(self, name, message_factory.GetMessageClass(descriptor))
        self.list_containers_method = f"/{self.package}.RuntimeService/ListContainers"

    def file_descriptor(self):
        fdp = descriptor_pb2.FileDescriptorProto(
            name=f"crilist/{self.version}/api.proto",
            package=self.package,
            syntax="proto3",
        )
        states = fdp.enum_type.add(name="ContainerState")
        for state in ContainerState:
            states.value.add(name=f"CONTAINER_{state.name}", number=state.value)
        for name, fields in MESSAGES.items():
            message = fdp.message_type.add(name=name)
            for field_name, number, field_type, type_name, label in fields:
                field = message.field.add(
                    name=field_name, number=number, type=field_type, label=label
                )
                if type_name:
                    field.type_name = f".{self.package}.{type_name}"
        return fdp

    def __repr__(self):
        return f"RuntimeAPI({self.version!r})"


@functools.lru_cache(maxsize=None)
def get_api(version="v1") -> RuntimeAPI:
    return RuntimeAPI(version)


def normalize_endpoint(endpoint: str) -> str:
    """
    Accepts either:
      - '/var/run/crio/crio.sock' (plain path)
      - 'unix:///var/run/crio/crio.sock' (already a target)
      - 'tcp://host:port' or 'host:port'
    and returns a gRPC target.
    """
    if not endpoint:
        raise ValueError("runtime endpoint is empty")
    if endpoint.startswith("unix://"):
        path = endpoint[len("unix://") :]
        if not path.startswith("/"):
            path = "/" + path
        return "unix://" + path
    if endpoint.startswith("/"):
        return "unix://" + endpoint
    return endpoint.removeprefix("tcp://")


def summary_from_message(container) -> ContainerSummary:
    return ContainerSummary(
        id=container.id,
        name=container.metadata.name,
        state=container.state,
        created_at=container.created_at,
    )


class GrpcRuntimeClient:
    """ListContainers over a gRPC channel, no retries, no reconnects"""

    def __init__(self, endpoint=DEFAULT_ENDPOINT, api_version="v1", timeout=None):
        self.api = get_api(api_version)
        self.target = normalize_endpoint(endpoint)
        self.timeout = timeout
        self.channel = grpc.insecure_channel(self.target)
        self._list_containers = self.channel.unary_unary(
            self.api.list_containers_method,
            request_serializer=self.api.ListContainersRequest.SerializeToString,
            response_deserializer=self.api.ListContainersResponse.FromString,
        )

    def build_request(self, container_filter: ContainerFilter):
        request = self.api.ListContainersRequest()
        request.filter.SetInParent()
        if container_filter.state is not None:
            # CREATED is 0, the state value must be present to filter on it
            request.filter.state.SetInParent()
            request.filter.state.state = int(container_filter.state)
        return request

    def list_containers(self, container_filter: ContainerFilter):
        request = self.build_request(container_filter)
        logger.debug(
            "calling %s on %s with %r",
            self.api.list_containers_method,
            self.target,
            container_filter,
        )
        response = self._list_containers(request, timeout=self.timeout)
        return [summary_from_message(c) for c in response.containers]

    def close(self):
        self.channel.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def summary_from_crictl(data) -> ContainerSummary:
    """convert one item of ``crictl ps -o json``"""
    state = data.get("state")
    if isinstance(state, str):
        try:
            state = ContainerState[state.removeprefix("CONTAINER_")]
        except KeyError:
            pass
    return ContainerSummary(
        id=data["id"],
        name=(data.get("metadata") or {}).get("name", ""),
        state=state,
        created_at=int(data.get("createdAt") or 0),
    )


class CrictlRuntimeClient:
    """ListContainers through ``crictl ps -o json``"""

    LIST_KEY = "ps"
    DATA_LIST_KEY = "containers"

    def __init__(self, crictl="crictl", endpoint=None, timeout=None):
        self.crictl = crictl
        self.endpoint = endpoint
        self.timeout = timeout

    def query_args(self, container_filter: ContainerFilter):
        if container_filter.state is None:
            return ["--all"]
        return ["--state", STATE_LABELS[container_filter.state]]

    def command(self, container_filter: ContainerFilter):
        args = [self.crictl]
        if self.endpoint:
            args += ["--runtime-endpoint", self.endpoint]
        args += [self.LIST_KEY, "-o", "json"]
        return args + self.query_args(container_filter)

    def run_crictl(self, args):
        logger.debug("running command %r", args)
        try:
            p = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("crictl command %r timed out in %r secs", args, self.timeout)
            raise RuntimeClientError(f"crictl command {args!r} timed out") from e

        if p.returncode != 0:
            logger.warning(
                "crictl returncode: %r stdout: %r stderr: %r",
                p.returncode,
                p.stdout,
                p.stderr,
            )
            raise RuntimeClientError(
                f"crictl command {args!r} got return code {p.returncode}"
            )
        try:
            data = json.loads(p.stdout.decode())
        except ValueError as e:
            logger.error("failed when decoding crictl output: %s", e)
            raise
        return data

    def list_containers(self, container_filter: ContainerFilter):
        data = self.run_crictl(self.command(container_filter))
        return [summary_from_crictl(o) for o in data.get(self.DATA_LIST_KEY) or []]

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
