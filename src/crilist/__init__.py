from typing import Optional, Any, Iterable, TextIO
from dataclasses import dataclass, asdict
from pathlib import Path
import enum
import sys
import re
import json
import time
import logging

import yaml

# ------------------------------------------------------------------------------
# Constants
# ------------------------------------------------------------------------------
# make sure we follow https://packaging.python.org/en/latest/specifications/version-specifiers/#version-scheme
__version__ = "0.1.0.dev0"
logger = logging.getLogger("crilist")

if sys.version_info[0] != 3 or sys.version_info[1] < 11:
    logger.warning("untested Python interpreter %s", sys.version)

TRUNCATED_ID_LEN = 13
IP_ANNOTATION = "io.kubernetes.cri-o.IP"
CONTAINERS_SUFFIX = "-containers"


# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------
class CRIListError(Exception):
    """base of all errors raised by crilist"""


class ConfigurationError(CRIListError, ValueError):
    """user supplied options can't be turned into a listing request"""


class InvalidStateError(ConfigurationError):
    def __init__(self, state):
        super().__init__(
            f"invalid state {state!r}, --state should be one of "
            "created, running, exited or unknown"
        )
        self.state = state


class UnsupportedOutputFormat(ConfigurationError):
    def __init__(self, output):
        super().__init__(f"unsupported output format {output!r}")
        self.output = output


class InvalidNamePattern(ConfigurationError):
    def __init__(self, pattern, error):
        super().__init__(f"invalid name pattern {pattern!r}: {error}")
        self.pattern = pattern


class StorageError(CRIListError):
    """a per-container storage document can't be read"""

    def __init__(self, path, error):
        super().__init__(f"failed reading storage document {path}: {error}")
        self.path = path


class RuntimeClientError(CRIListError):
    """the runtime service could not be queried"""


# ------------------------------------------------------------------------------
# Utilities
# ------------------------------------------------------------------------------
def human_duration(seconds: float) -> str:
    """
    coarse human readable duration, same buckets as docker's HumanDuration
    so outputs look familiar next to crictl and podman.
    """
    if seconds < 1:
        return "Less than a second"
    elif int(seconds) == 1:
        return "1 second"
    elif seconds < 60:
        return "%d seconds" % seconds
    minutes = int(seconds // 60)
    if minutes == 1:
        return "About a minute"
    elif minutes < 46:
        return "%d minutes" % minutes
    hours = int(seconds / 3600 + 0.5)
    if hours == 1:
        return "About an hour"
    elif hours < 48:
        return "%d hours" % hours
    elif hours < 24 * 7 * 2:
        return "%d days" % (hours // 24)
    elif hours < 24 * 30 * 2:
        return "%d weeks" % (hours // 24 // 7)
    elif hours < 24 * 365 * 2:
        return "%d months" % (hours // 24 // 30)
    return "%d years" % (int(seconds // 3600) // 24 // 365)


def truncate_id(id: str, prefix: str = "") -> str:
    id = id.removeprefix(prefix)
    return id[:TRUNCATED_ID_LEN]


class TableWriter:
    """Aligns rows into left justified columns.

    Every column except the last is padded to ``max(minwidth, widest cell +
    padding)``, the last column is written as is.
    """

    def __init__(self, minwidth=20, padding=3):
        if padding < 1:
            raise ValueError(f"padding should be at least 1, got {padding!r}")
        self.minwidth = minwidth
        self.padding = padding
        self.rows: list[list[str]] = []

    def add_row(self, cells: Iterable[Any]):
        self.rows.append([str(cell) for cell in cells])

    def widths(self):
        ncols = max((len(row) for row in self.rows), default=0)
        return [
            max(
                self.minwidth,
                max(len(row[i]) for row in self.rows if len(row) > i) + self.padding,
            )
            for i in range(ncols - 1)
        ]

    def render(self) -> str:
        widths = self.widths()
        lines = []
        for row in self.rows:
            padded = [cell.ljust(width) for cell, width in zip(row[:-1], widths)]
            lines.append("".join(padded + row[-1:]).rstrip())
        return "".join(line + "\n" for line in lines)


# ------------------------------------------------------------------------------
# Runtime data
# ------------------------------------------------------------------------------
class ContainerState(enum.IntEnum):
    """CRI container lifecycle, numbered as in the CRI api.proto"""

    CREATED = 0
    RUNNING = 1
    EXITED = 2
    UNKNOWN = 3


STATE_LABELS = {
    ContainerState.CREATED: "created",
    ContainerState.RUNNING: "running",
    ContainerState.EXITED: "exited",
    ContainerState.UNKNOWN: "unknown",
}
STATES_BY_LABEL = dict((label, state) for state, label in STATE_LABELS.items())


def map_state(value) -> str:
    """
    label for a runtime reported state. Values newer runtimes may add are
    reported as "unknown".
    """
    try:
        return STATE_LABELS[ContainerState(value)]
    except ValueError:
        return STATE_LABELS[ContainerState.UNKNOWN]


@dataclass(frozen=True)
class ContainerSummary:
    """one container as returned by ListContainers"""

    id: str
    name: str
    state: Any
    created_at: int  # nanoseconds since epoch


@dataclass
class ContainerFilter:
    """wire level filter, no state means all states"""

    state: Optional[ContainerState] = None


@dataclass
class ListingOptions:
    all: bool = False
    pid: str = ""
    state: str = ""
    name_regexp: str = ""
    no_trunc: bool = False
    output: str = ""


def build_filter(options: ListingOptions) -> ContainerFilter:
    """
    Translate listing options to the wire filter.

    Without ``all`` only running containers are requested, an explicit
    ``state`` replaces that default.

    :raises InvalidStateError: state is not a known label
    """
    container_filter = ContainerFilter()
    if not options.all:
        container_filter.state = ContainerState.RUNNING
    if options.state:
        try:
            container_filter.state = STATES_BY_LABEL[options.state.lower()]
        except KeyError:
            raise InvalidStateError(options.state) from None
    logger.debug("wire filter: %r", container_filter)
    return container_filter


# ------------------------------------------------------------------------------
# Storage correlation
# ------------------------------------------------------------------------------
def _scalar(value) -> Optional[str]:
    # bool is an int, but never a pid
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    return None


def _lookup(data, *keys):
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


@dataclass
class ContainerConfigDocument:
    """fields of ``userdata/config.json`` we care about"""

    root_path: Optional[str] = None

    @classmethod
    def from_json(cls, data):
        return cls(root_path=_scalar(_lookup(data, "root", "path")))


@dataclass
class ContainerStateDocument:
    """fields of ``userdata/state.json`` we care about"""

    pid: Optional[str] = None
    ip: Optional[str] = None

    @classmethod
    def from_json(cls, data):
        return cls(
            pid=_scalar(_lookup(data, "pid")),
            ip=_scalar(_lookup(data, "annotations", IP_ANNOTATION)),
        )


@dataclass
class StorageRecord:
    id: str
    pid: Optional[str] = None
    ip: Optional[str] = None
    mount_point: Optional[str] = None


def containers_dir(storage_root, driver_name) -> Path:
    return Path(storage_root) / (driver_name + CONTAINERS_SUFFIX)


def read_storage_document(path: Path):
    """
    Read a json document written by the storage layer.

    A file that can't be read raises :py:class:`StorageError`, a file that
    isn't valid json is logged and treated as empty.
    """
    logger.debug("reading storage document %s", path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise StorageError(path, e) from e
    try:
        return json.loads(raw)
    except ValueError as e:
        logger.warning("malformed storage document %s: %s", path, e)
        return None


def correlate(storage_root, driver_name, container_id) -> StorageRecord:
    userdata = containers_dir(storage_root, driver_name) / container_id / "userdata"
    config = ContainerConfigDocument.from_json(
        read_storage_document(userdata / "config.json")
    )
    state = ContainerStateDocument.from_json(
        read_storage_document(userdata / "state.json")
    )
    return StorageRecord(
        id=container_id, pid=state.pid, ip=state.ip, mount_point=config.root_path
    )


# ------------------------------------------------------------------------------
# Records
# ------------------------------------------------------------------------------
@dataclass
class ListingRecord:
    """one row of the listing, identical across output formats"""

    container_id: str
    created: str
    state: str
    name: str
    pid: str
    ip: str
    mount_point: str

    # (attribute, json key, table header)
    # fmt: off
    COLUMNS = (
        ("container_id",    "ContainerId",  "CONTAINER ID"),
        ("created",         "CTM",          "CREATED"),
        ("state",           "State",        "STATE"),
        ("name",            "Name",         "NAME"),
        ("pid",             "PID",          "PID"),
        ("ip",              "IP",           "IP"),
        ("mount_point",     "MountPoint",   "MOUNT POINT"),
    )
    # fmt: on

    def asdict(self):
        """return a json friendly representation"""
        data = asdict(self)
        return dict((key, data[attr]) for attr, key, _ in self.COLUMNS)

    def row(self):
        return [getattr(self, attr) for attr, _, _ in self.COLUMNS]


def assemble(
    summary: ContainerSummary,
    storage: StorageRecord,
    no_trunc: bool = False,
    now: Optional[int] = None,
) -> ListingRecord:
    """merge a runtime summary with its storage record, ``now`` in ns"""
    if now is None:
        now = time.time_ns()
    created = human_duration((now - summary.created_at) / 1e9) + " ago"
    container_id = summary.id
    if not no_trunc:
        container_id = truncate_id(container_id)
    return ListingRecord(
        container_id=container_id,
        created=created,
        state=map_state(summary.state),
        name=summary.name,
        pid=storage.pid or "",
        ip=storage.ip or "",
        mount_point=storage.mount_point or "",
    )


class RecordFilter:
    """
    Client side filters.

    The name pattern is searched in the container name and is checked before
    storage is read. The pid filter keeps the first record reporting the
    pid, after which the filter is exhausted and the listing stops.
    """

    def __init__(self, name_regexp: str = "", pid: str = ""):
        try:
            self.name_pattern = re.compile(name_regexp) if name_regexp else None
        except re.error as e:
            raise InvalidNamePattern(name_regexp, e) from e
        self.pid = pid
        self.exhausted = False

    def match_name(self, name: str) -> bool:
        if self.name_pattern is None:
            return True
        return bool(self.name_pattern.search(name))

    def match_pid(self, record: ListingRecord) -> bool:
        if not self.pid:
            return True
        if record.pid == self.pid:
            self.exhausted = True
            return True
        return False


# ------------------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------------------
class OutputFormat(enum.Enum):
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"

    @classmethod
    def parse(cls, output: str) -> "OutputFormat":
        if not output:
            return cls.TABLE
        try:
            return cls(output)
        except ValueError:
            raise UnsupportedOutputFormat(output) from None


JSON_KW = {"indent": "\t"}
TABLE_KW = {"minwidth": 20, "padding": 3}


def render_json(records: Iterable[ListingRecord]) -> str:
    result = {"Containers": [record.asdict() for record in records]}
    return json.dumps(result, **JSON_KW) + "\n"


def render_yaml(records: Iterable[ListingRecord]) -> str:
    # going through json keeps both encodings to the same fields and values
    data = json.loads(render_json(records))
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def render_table(records: Iterable[ListingRecord]) -> str:
    table = TableWriter(**TABLE_KW)
    table.add_row(header for _, _, header in ListingRecord.COLUMNS)
    for record in records:
        table.add_row(record.row())
    return table.render()


RENDERERS = {
    OutputFormat.JSON: render_json,
    OutputFormat.YAML: render_yaml,
    OutputFormat.TABLE: render_table,
}


def render(records: Iterable[ListingRecord], output_format: OutputFormat) -> str:
    return RENDERERS[output_format](records)


# ------------------------------------------------------------------------------
# Listing
# ------------------------------------------------------------------------------
def list_containers(client, options: ListingOptions, store_options, now=None):
    """
    List containers through ``client`` and correlate them with storage
    described by ``store_options`` (anything with ``graph_root`` and
    ``graph_driver_name``).

    Records keep the runtime's response order. Any error reading storage
    aborts the whole listing.
    """
    container_filter = build_filter(options)
    record_filter = RecordFilter(options.name_regexp, options.pid)
    summaries = client.list_containers(container_filter)
    logger.debug("runtime returned %d containers", len(summaries))

    records = []
    for summary in summaries:
        if not record_filter.match_name(summary.name):
            logger.debug("container %s skipped by name", summary.id)
            continue
        storage = correlate(
            store_options.graph_root, store_options.graph_driver_name, summary.id
        )
        record = assemble(summary, storage, no_trunc=options.no_trunc, now=now)
        if not record_filter.match_pid(record):
            logger.debug("container %s skipped by pid", summary.id)
            continue
        records.append(record)
        if record_filter.exhausted:
            # XXX: containers sharing a pid namespace with the host report the
            # same pid, only the first one is shown
            logger.debug("pid %s found, stop listing", record_filter.pid)
            break
    return records


def run_listing(
    client, options: ListingOptions, store_options, stream: Optional[TextIO] = None
) -> list[ListingRecord]:
    """list, then write the rendered result to ``stream`` in one go"""
    output_format = OutputFormat.parse(options.output)
    records = list_containers(client, options, store_options)
    text = render(records, output_format)
    (stream or sys.stdout).write(text)
    return records
