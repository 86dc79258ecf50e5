#!/usr/bin/env python3
"""
Configuration for mini-chroot.

The configuration is built once at startup by an ordered merge:

    defaults -> JSON config file -> --set key=value overrides -> CLI flags

and is immutable afterwards. Keys are dot-path addressable, e.g.
``image.format`` or ``tools.jchroot``. A config file may use nested objects
or dotted keys:

    {
        "paths": {"root": "/srv/chroots"},
        "image.size": "8G",
        "jchroot": true
    }
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from mini_chroot.utils import DEFAULT_ROOT, Layout

SYSTEM_CONFIG_PATH = "/etc/mini-chroot.json"

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off", "")


class ConfigError(Exception):
    """Exception raised for invalid configuration."""

    pass


@dataclass(frozen=True)
class PathsConfig:
    """Storage and kernel interface locations."""

    root: str = DEFAULT_ROOT
    proc: str = "/proc"
    dev: str = "/dev"
    sys_block: str = "/sys/block"


@dataclass(frozen=True)
class ToolsConfig:
    """External tools invoked by mini-chroot."""

    chroot: str = "/usr/sbin/chroot"
    jchroot: str = "/usr/bin/jchroot"
    qemu_img: str = "qemu-img"
    qemu_nbd: str = "qemu-nbd"


@dataclass(frozen=True)
class ImageConfig:
    """Defaults for image-backed roots."""

    enabled: bool = False
    size: str = "4G"
    format: str = "qcow2"
    filesystem: str = "ext4"


@dataclass(frozen=True)
class Config:
    """Complete mini-chroot configuration."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    image: ImageConfig = field(default_factory=ImageConfig)

    # Command run by start when none is given
    shell: str = "/bin/sh"

    verbose: int = 0
    force: bool = False
    long: bool = False

    # Prefer jchroot (hostname + pid isolation) over plain chroot
    jchroot: bool = False

    # Comment appended to a root by info
    comment: str = ""

    @property
    def layout(self) -> Layout:
        return Layout(self.paths.root)

    @property
    def use_jchroot(self) -> bool:
        """True when the stronger isolation tool is requested and present."""
        return self.jchroot and os.access(self.tools.jchroot, os.X_OK)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into dot-path keys."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(flatten(value, f"{path}."))
        else:
            flat[path] = value
    return flat


def coerce(value: Any, default: Any, key: str) -> Any:
    """Convert a value to the type of the key's default."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        raise ConfigError(f"Invalid boolean for {key}: {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid integer for {key}: {value!r}")
    if value is None:
        raise ConfigError(f"Missing value for {key}")
    return str(value)


def apply_overrides(config: Any, overrides: Mapping[str, Any], prefix: str = "") -> Any:
    """
    Return a copy of a config dataclass with dot-path overrides applied.

    Args:
        config: Config (or nested section) instance
        overrides: Mapping of dot-path keys to raw values
        prefix: Path of ``config`` inside the root config

    Raises:
        ConfigError: On unknown keys or values of the wrong type
    """
    names = {f.name for f in fields(config)}
    changes: Dict[str, Any] = {}
    nested: Dict[str, Dict[str, Any]] = {}

    for key, value in overrides.items():
        head, _, rest = key.partition(".")
        if head not in names:
            raise ConfigError(f"Unknown configuration key: {prefix}{key}")
        current = getattr(config, head)
        if is_dataclass(current):
            if not rest:
                raise ConfigError(f"Configuration section needs a key: {prefix}{key}")
            nested.setdefault(head, {})[rest] = value
        elif rest:
            raise ConfigError(f"Unknown configuration key: {prefix}{key}")
        else:
            changes[head] = coerce(value, current, prefix + key)

    for head, sub in nested.items():
        changes[head] = apply_overrides(getattr(config, head), sub, f"{prefix}{head}.")

    return replace(config, **changes)


def parse_assignments(assignments: Iterable[str]) -> Dict[str, str]:
    """Parse ``key=value`` strings from the command line."""
    result: Dict[str, str] = {}
    for item in assignments:
        if "=" not in item:
            raise ConfigError(f"Expected key=value, got: {item}")
        key, value = item.split("=", 1)
        result[key.strip()] = value
    return result


def read_config_file(path: str) -> Dict[str, Any]:
    """Read a JSON config file into flat dot-path keys."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (IOError, OSError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return flatten(data)


def find_config_file(explicit: Optional[str] = None) -> Optional[str]:
    """Locate the config file: explicit path, $MINI_CHROOT_CONFIG, system file."""
    if explicit:
        return explicit
    if os.environ.get("MINI_CHROOT_CONFIG"):
        return os.environ["MINI_CHROOT_CONFIG"]
    if os.path.exists(SYSTEM_CONFIG_PATH):
        return SYSTEM_CONFIG_PATH
    return None


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    flags: Optional[Mapping[str, Any]] = None,
) -> Config:
    """
    Build the configuration.

    Args:
        path: Config file; when None the usual locations are searched
        overrides: Dot-path overrides from ``--set``
        flags: Dot-path values from dedicated command-line flags

    Returns:
        Immutable Config instance
    """
    config = Config()

    config_file = find_config_file(path)
    if config_file:
        config = apply_overrides(config, read_config_file(config_file))

    for layer in (overrides, flags):
        if layer:
            config = apply_overrides(config, layer)

    return config


def describe(config: Config) -> Tuple[Tuple[str, Any], ...]:
    """Return the configuration as sorted (dot-path, value) pairs."""
    return tuple(sorted(flatten(config.to_dict()).items()))
