"""storage.conf reader

Reads the containers-storage configuration to find where per-container
metadata lives. Only the bits affecting the on-disk layout are loaded, the
rest is kept around for display and debugging.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Mapping
import os
import re
import logging
import tomllib

from crilist import containers_dir

logger = logging.getLogger("crilist.storage")

DEFAULT_STORAGE_CONF = "/etc/containers/storage.conf"
DEFAULT_SUBUID = "/etc/subuid"
DEFAULT_SUBGID = "/etc/subgid"

# fmt: off
THINPOOL_OPTIONS = {
    # toml key,                 driver option (formatted with driver)
    "autoextend_percent":       "dm.thinp_autoextend_percent",
    "autoextend_threshold":     "dm.thinp_autoextend_threshold",
    "basesize":                 "dm.basesize",
    "blocksize":                "dm.blocksize",
    "directlvm_device":         "dm.directlvm_device",
    "directlvm_device_force":   "dm.directlvm_device_force",
    "fs":                       "dm.fs",
    "log_level":                "dm.libdm_log_level",
    "min_free_space":           "dm.min_free_space",
    "mkfsarg":                  "dm.mkfsarg",
    "mountopt":                 "{driver}.mountopt",
    "use_deferred_deletion":    "dm.use_deferred_deletion",
    "use_deferred_removal":     "dm.use_deferred_removal",
    "xfs_nospace_max_retries":  "dm.xfs_nospace_max_retries",
}
DRIVER_OPTIONS = {
    "size":                     "{driver}.size",
    "ostree_repo":              "{driver}.ostree_repo",
    "skip_mount_home":          "{driver}.skip_mount_home",
    "mount_program":            "{driver}.mount_program",
    "ignore_chown_errors":      "{driver}.ignore_chown_errors",
    "mountopt":                 "{driver}.mountopt",
}
# fmt: on

# (key, enclosing tables, type), parents are listed before their children
STORAGE_SCHEMA = (
    ("storage", (), dict),
    ("driver", ("storage",), str),
    ("runroot", ("storage",), str),
    ("graphroot", ("storage",), str),
    ("options", ("storage",), dict),
    ("thinpool", ("storage", "options"), dict),
    ("additionalimagestores", ("storage", "options"), list),
    ("remap-user", ("storage", "options"), str),
    ("remap-group", ("storage", "options"), str),
    ("remap-uids", ("storage", "options"), str),
    ("remap-gids", ("storage", "options"), str),
)


@dataclass
class IDMap:
    container_id: int
    host_id: int
    size: int


@dataclass
class StoreOptions:
    """where and how containers-storage keeps its data"""

    run_root: str = ""
    graph_root: str = ""
    graph_driver_name: str = ""
    graph_driver_options: list[str] = field(default_factory=list)
    uid_map: list[IDMap] = field(default_factory=list)
    gid_map: list[IDMap] = field(default_factory=list)

    def containers_dir(self) -> Path:
        return containers_dir(self.graph_root, self.graph_driver_name)


def _option_value(value):
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def check_config(config):
    """
    :raises ValueError: a known key holds a value of the wrong type
    """
    for key, parents, expected in STORAGE_SCHEMA:
        table = config
        for parent in parents:
            table = table.get(parent, {})
        if key in table and not isinstance(table[key], expected):
            name = ".".join(parents + (key,))
            raise ValueError(
                f"{name} should be a {expected.__name__}, got {type(table[key]).__name__}"
            )


def parse_id_map(spec: str, setting: str) -> list[IDMap]:
    """
    parse ``container:host:size`` triples, separated by ``,`` or ``:``

    :raises ValueError: spec is not made of integer triples
    """
    fields = re.split(r"[:,\s]+", spec.strip()) if spec.strip() else []
    if len(fields) % 3:
        raise ValueError(f"{setting}: mapping {spec!r} is not made of triples")
    try:
        numbers = [int(f) for f in fields]
    except ValueError:
        raise ValueError(
            f"{setting}: mapping {spec!r} has non integer fields"
        ) from None
    return [IDMap(*numbers[i : i + 3]) for i in range(0, len(numbers), 3)]


def read_subid_ranges(path, name) -> list[IDMap]:
    """
    contiguous mappings for ``name`` from a subuid/subgid style file,
    container ids start at 0.

    :raises OSError: file can't be read
    :raises ValueError: no range found for name
    """
    ranges = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split(":")
            if len(parts) != 3 or parts[0] != name:
                continue
            try:
                ranges.append((int(parts[1]), int(parts[2])))
            except ValueError:
                logger.warning("ignoring malformed line %r in %s", line, path)
    if not ranges:
        raise ValueError(f"no subordinate ids found for {name!r} in {path}")
    result = []
    container_id = 0
    for host_id, size in sorted(ranges):
        result.append(IDMap(container_id, host_id, size))
        container_id += size
    return result


def load_store_options(
    path=DEFAULT_STORAGE_CONF,
    environ: Optional[Mapping[str, str]] = None,
    subuid=DEFAULT_SUBUID,
    subgid=DEFAULT_SUBGID,
) -> StoreOptions:
    """
    Load store options from a storage.conf file.

    A missing file is the same as an empty one. A file that can't be read or
    parsed is logged and plain defaults are returned.
    """
    environ = os.environ if environ is None else environ
    options = StoreOptions()
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except FileNotFoundError:
        logger.debug("storage configuration %s not found", path)
        config = {}
    except OSError as e:
        logger.warning("failed to read %s: %s", path, e)
        return options
    except tomllib.TOMLDecodeError as e:
        logger.warning("failed to parse %s: %s", path, e)
        return options
    try:
        check_config(config)
    except ValueError as e:
        logger.warning("failed to parse %s: %s", path, e)
        return options

    storage = config.get("storage", {})
    driver = storage.get("driver", "")
    if driver:
        options.graph_driver_name = driver
    if storage.get("runroot"):
        options.run_root = storage["runroot"]
    if storage.get("graphroot"):
        options.graph_root = storage["graphroot"]

    storage_opts = storage.get("options", {})
    thinpool = storage_opts.get("thinpool", {})
    driver_options = options.graph_driver_options
    for key, option in THINPOOL_OPTIONS.items():
        if thinpool.get(key, "") != "":
            driver_options.append(
                option.format(driver=driver) + "=" + _option_value(thinpool[key])
            )
    for store in storage_opts.get("additionalimagestores", []):
        driver_options.append(f"{driver}.imagestore={store}")
    for key, option in DRIVER_OPTIONS.items():
        if storage_opts.get(key, "") != "":
            driver_options.append(
                option.format(driver=driver) + "=" + _option_value(storage_opts[key])
            )

    remap_user = storage_opts.get("remap-user", "")
    remap_group = storage_opts.get("remap-group", "")
    if remap_user and not remap_group:
        remap_group = remap_user
    if remap_group and not remap_user:
        remap_user = remap_group
    if remap_user and remap_group:
        try:
            options.uid_map = read_subid_ranges(subuid, remap_user)
            options.gid_map = read_subid_ranges(subgid, remap_group)
        except (OSError, ValueError) as e:
            logger.warning(
                "error initializing ID mappings for %s:%s %s",
                remap_user,
                remap_group,
                e,
            )
            return options

    for setting, target in (
        ("remap-uids", options.uid_map),
        ("remap-gids", options.gid_map),
    ):
        try:
            target.extend(parse_id_map(storage_opts.get(setting, ""), setting))
        except ValueError as e:
            logger.warning("%s", e)

    if environ.get("STORAGE_DRIVER"):
        options.graph_driver_name = environ["STORAGE_DRIVER"]
    if environ.get("STORAGE_OPTS"):
        driver_options.extend(environ["STORAGE_OPTS"].split(","))
    logger.debug("store options: %r", options)
    return options
