"""Configuration for the PTP daemon.

Two layers: :class:`DaemonConfig` holds process-level runtime settings
(built from the command line), and :class:`Profile` is the node's PTP
profile, a JSON document that is reloaded whenever it changes on disk.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_PROFILE_DIR = Path("/etc/linuxptp")
DEFAULT_RUN_DIR = Path("/var/run")
DEFAULT_UPDATE_INTERVAL = 30
DEFAULT_METRICS_PORT = 9091

DEFAULT_HOLDOVER_TIMEOUT = 5.0
DEFAULT_MAX_OFFSET = 100.0
DEFAULT_MIN_OFFSET = -100.0


class ConfigError(ValueError):
    """The profile is malformed or violates a constraint."""


@dataclass(frozen=True)
class ClockThreshold:
    """Clock quality policy attached to every process of a profile."""

    # Seconds tolerated in HOLDOVER before the clock is declared FREERUN
    holdover_timeout: float = DEFAULT_HOLDOVER_TIMEOUT

    # Acceptable offset band in nanoseconds
    max_offset: float = DEFAULT_MAX_OFFSET
    min_offset: float = DEFAULT_MIN_OFFSET

    def __post_init__(self) -> None:
        if self.min_offset >= self.max_offset:
            raise ConfigError(
                f"minOffsetThreshold {self.min_offset} must be lower than "
                f"maxOffsetThreshold {self.max_offset}"
            )
        if self.holdover_timeout < 0:
            raise ConfigError(f"holdOverTimeout {self.holdover_timeout} is negative")

    def in_range(self, offset: float) -> bool:
        return self.min_offset <= offset <= self.max_offset


@dataclass(frozen=True)
class Subcommand:
    """A one-shot command run after a supervised process has started."""

    name: str
    argv: tuple[str, ...]


@dataclass
class Profile:
    """A node PTP profile."""

    name: str = ""
    interface: str = ""
    ptp4l_opts: str | None = None
    ptp4l_conf: str = ""
    phc2sys_opts: str | None = None
    ts2phc_opts: str | None = None
    ts2phc_conf: str = ""
    plugins: dict[str, dict[str, Any]] = field(default_factory=dict)
    ptp_settings: dict[str, str] = field(default_factory=dict)
    threshold: ClockThreshold = field(default_factory=ClockThreshold)
    post_start_commands: dict[str, list[Subcommand]] = field(default_factory=dict)

    def plugin_names(self) -> list[str]:
        """Return the configured plugin names in document order."""
        return list(self.plugins)


def _threshold_from(raw: Any) -> ClockThreshold:
    if raw is None:
        return ClockThreshold()
    if not isinstance(raw, dict):
        raise ConfigError("ptpClockThreshold must be an object")
    try:
        return ClockThreshold(
            holdover_timeout=float(raw.get("holdOverTimeout", DEFAULT_HOLDOVER_TIMEOUT)),
            max_offset=float(raw.get("maxOffsetThreshold", DEFAULT_MAX_OFFSET)),
            min_offset=float(raw.get("minOffsetThreshold", DEFAULT_MIN_OFFSET)),
        )
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid ptpClockThreshold: {exc}") from None


def _commands_from(raw: Any) -> dict[str, list[Subcommand]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("postStartCommands must be an object")
    commands: dict[str, list[Subcommand]] = {}
    for process, entries in raw.items():
        parsed: list[Subcommand] = []
        for entry in entries or []:
            name = entry.get("name") if isinstance(entry, dict) else None
            args = entry.get("args", []) if isinstance(entry, dict) else None
            if not name or not isinstance(args, list) or not args:
                raise ConfigError(f"invalid post-start command for {process}: {entry!r}")
            parsed.append(Subcommand(name=str(name), argv=tuple(str(a) for a in args)))
        commands[process] = parsed
    return commands


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value


def parse_profile(raw: dict[str, Any]) -> Profile:
    """Build a :class:`Profile` from a decoded JSON document.

    Raises:
        ConfigError: If a field has the wrong type or the clock threshold
            is inconsistent.
    """
    if not isinstance(raw, dict):
        raise ConfigError("profile must be a JSON object")

    plugins = raw.get("plugins") or {}
    settings = raw.get("ptpSettings") or {}
    if not isinstance(plugins, dict):
        raise ConfigError("plugins must be an object")
    if not isinstance(settings, dict):
        raise ConfigError("ptpSettings must be an object")

    return Profile(
        name=str(raw.get("name", "")),
        interface=str(raw.get("interface", "") or ""),
        ptp4l_opts=_optional_str(raw, "ptp4lOpts"),
        ptp4l_conf=_optional_str(raw, "ptp4lConf") or "",
        phc2sys_opts=_optional_str(raw, "phc2sysOpts"),
        ts2phc_opts=_optional_str(raw, "ts2phcOpts"),
        ts2phc_conf=_optional_str(raw, "ts2phcConf") or "",
        plugins={str(k): (v or {}) for k, v in plugins.items()},
        ptp_settings={str(k): str(v) for k, v in settings.items()},
        threshold=_threshold_from(raw.get("ptpClockThreshold")),
        post_start_commands=_commands_from(raw.get("postStartCommands")),
    )


def loads_profile(text: str | bytes, source: str = "<profile>") -> Profile:
    """Parse a profile from its JSON text.

    The node profile file may hold a single profile object or a list of
    profiles; in the latter case the first one applies.

    Raises:
        ConfigError: If the content is not a valid profile.
    """
    try:
        raw = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"{source}: {exc}") from None
    if isinstance(raw, list):
        if not raw:
            raise ConfigError(f"{source}: no profile defined")
        if len(raw) > 1:
            log.warning("%s: %d profiles defined, using the first", source, len(raw))
        raw = raw[0]
    return parse_profile(raw)


def load_profile(path: Path) -> Profile:
    """Read and parse a profile file.

    Raises:
        OSError: If the file cannot be read.
        ConfigError: If the content is not a valid profile.
    """
    return loads_profile(Path(path).read_bytes(), source=str(path))


@dataclass
class DaemonConfig:
    """Runtime configuration for the daemon."""

    # Node name used as the "node" metric label
    node_name: str = field(default_factory=lambda: os.environ.get("NODE_NAME", ""))

    # Directory holding one profile file per node
    profile_dir: Path = DEFAULT_PROFILE_DIR

    # Seconds between profile re-reads
    update_interval: int = DEFAULT_UPDATE_INTERVAL

    # Directory where per-process configuration files are written
    run_dir: Path = DEFAULT_RUN_DIR

    # Prometheus exporter port (0 = disabled)
    metrics_port: int = DEFAULT_METRICS_PORT

    # Hardware plugins to register at startup
    plugins: list[str] = field(default_factory=lambda: ["e810"])

    # Seconds between holdover expiry scans
    holdover_scan_interval: float = 1.0

    # Seconds to wait before restarting a process that exited
    restart_backoff: float = 1.0

    # Upper bound on a single plugin hook invocation
    hook_timeout: float = 30.0

    # Seconds to wait for the node profile to appear at startup
    profile_wait: float = 60.0

    # Log at DEBUG instead of INFO
    verbose: bool = False

    def __post_init__(self) -> None:
        self.profile_dir = Path(self.profile_dir)
        self.run_dir = Path(self.run_dir)

    @property
    def profile_path(self) -> Path:
        return self.profile_dir / self.node_name
