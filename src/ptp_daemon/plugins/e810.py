"""Intel E810 hardware plugin.

Routes SMA/U.FL connectors and SDP periodic outputs through the PTP
sysfs pin interface, publishes the NIC clock id (from the PCI Device
Serial Number) and DPLL settings into the profile settings, and drives
the u-blox GNSS receiver through ``ubxtool`` once ``gpspipe`` is up.

Plugin options (``profile.plugins["e810"]``)::

    {
        "enableDefaultConfig": false,
        "ublxCmds": [{"reportOutput": true, "args": ["-p", "MON-HW"]}],
        "pins": {"ens1f0": {"U.FL2": "0 2", "SDP22": "1 1 0 0 1000000000"}},
        "settings": {"LocalMaxHoldoverOffSet": 1500},
        "phaseOffsetPins": {"ens1f0": {"GNSS-1PPS.filter": "..."}}
    }
"""

from __future__ import annotations

import functools
import logging
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import Profile
from ..pci import (
    SYSFS_NET,
    UNRESOLVED,
    ClockIdentityCache,
    random_clock_identity,
    resolve_clock_identity,
)
from ..plugin import HardwareStatus, Plugin

log = logging.getLogger(__name__)

PLUGIN_NAME = "e810"

# Settings key prefix for the resolved NIC clock id: "clockId[<device>]"
CLOCK_ID_LABEL = "clockId"

# Presence of this settings key switches clock ids to random values
UNIT_TEST_SETTING = "unitTest"

GPSPIPE = "gpspipe"
UBXTOOL = "/usr/local/bin/ubxtool"
_UBXTOOL_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class UblxCmd:
    """One ubxtool invocation."""

    args: tuple[str, ...]
    report_output: bool = False


# NAV-CLOCK and NAV-STATUS every second, then persist the configuration.
DEFAULT_UBLX_CMDS: tuple[UblxCmd, ...] = (
    UblxCmd(args=("-p", "CFG-MSG,1,34,1")),
    UblxCmd(args=("-p", "CFG-MSG,1,3,1")),
    UblxCmd(args=("-p", "SAVE")),
)

# Default connector setup: E810 boards whose subsystem device id contains one
# of these values get every SMA and U.FL connector disabled.
DEFAULT_SUBSYSTEM_IDS: tuple[str, ...] = ("000e", "000f")
DEFAULT_GUARD_PIN = "U.FL2"
DEFAULT_PINS: tuple[tuple[str, str], ...] = (
    ("U.FL2", "0 2"),
    ("U.FL1", "0 1"),
    ("SMA2", "0 2"),
    ("SMA1", "0 1"),
)


@dataclass
class E810Opts:
    """Parsed plugin options."""

    enable_default_config: bool = False
    ublx_cmds: list[UblxCmd] = field(default_factory=list)
    device_pins: dict[str, dict[str, str]] = field(default_factory=dict)
    dpll_settings: dict[str, int] = field(default_factory=dict)
    phase_offset_pins: dict[str, dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> E810Opts:
        """Build options from the profile's plugin block.

        Raises:
            ValueError: If a field has the wrong shape.
        """
        try:
            cmds = [
                UblxCmd(
                    args=tuple(str(a) for a in cmd.get("args", [])),
                    report_output=bool(cmd.get("reportOutput", False)),
                )
                for cmd in raw.get("ublxCmds") or []
            ]
            pins = {
                str(dev): {str(p): str(v) for p, v in dev_pins.items()}
                for dev, dev_pins in (raw.get("pins") or {}).items()
            }
            dpll = {str(k): int(v) for k, v in (raw.get("settings") or {}).items()}
            phase = {
                str(iface): {str(p): str(v) for p, v in props.items()}
                for iface, props in (raw.get("phaseOffsetPins") or {}).items()
            }
        except (AttributeError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid e810 options: {exc}") from None
        if any(v < 0 for v in dpll.values()):
            raise ValueError("invalid e810 options: DPLL settings must be unsigned")

        return cls(
            enable_default_config=bool(raw.get("enableDefaultConfig", False)),
            ublx_cmds=cmds,
            device_pins=pins,
            dpll_settings=dpll,
            phase_offset_pins=phase,
        )

    def device_names(self) -> list[str]:
        return list(self.device_pins)


@dataclass
class E810PluginData:
    """Private state of the e810 plugin."""

    sysfs_root: Path = SYSFS_NET
    hwplugins: list[str] = field(default_factory=list)
    clock_ids: ClockIdentityCache = field(init=False)
    lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.sysfs_root = Path(self.sysfs_root)
        self.clock_ids = ClockIdentityCache(
            functools.partial(resolve_clock_identity, sysfs_root=self.sysfs_root)
        )


# ----------------------------------------------------------------------
# Pin writes
# ----------------------------------------------------------------------


def pin_path(sysfs_root: Path, device: str, phc: str, pin: str) -> Path:
    """Return the sysfs file controlling ``pin`` on one PHC of ``device``.

    SDP pins are programmed through the PHC's ``period`` file; named
    connectors have their own file under ``pins/``.
    """
    phc_dir = Path(sysfs_root) / device / "device" / "ptp" / phc
    if pin.startswith("SDP"):
        return phc_dir / "period"
    return phc_dir / "pins" / pin


def write_pin(sysfs_root: Path, device: str, pin: str, value: str) -> int:
    """Write ``value`` for ``pin`` on every PHC of ``device``.

    Returns:
        Number of successful writes.
    """
    ptp_dir = Path(sysfs_root) / device / "device" / "ptp"
    try:
        phcs = sorted(p.name for p in ptp_dir.iterdir())
    except OSError as exc:
        log.error("e810 failed to read %s: %s", ptp_dir, exc)
        return 0

    written = 0
    for phc in phcs:
        path = pin_path(sysfs_root, device, phc, pin)
        log.info("echo %s > %s", value, path)
        try:
            path.write_text(value)
        except OSError as exc:
            log.error("e810 failed to write %s to %s: %s", value, path, exc)
            continue
        written += 1
    return written


def _has_guard_pin(dev_dir: Path) -> bool:
    return any((dev_dir / "device" / "ptp").glob(f"*/pins/{DEFAULT_GUARD_PIN}"))


def apply_default_config(sysfs_root: Path) -> list[str]:
    """Disable every SMA and U.FL connector on matching E810 boards.

    Returns:
        The devices that were configured.
    """
    root = Path(sysfs_root)
    configured: list[str] = []
    try:
        dev_dirs = sorted(root.iterdir())
    except OSError as exc:
        log.error("e810 failed to list %s: %s", root, exc)
        return configured

    for dev_dir in dev_dirs:
        try:
            subsystem = (dev_dir / "device" / "subsystem_device").read_text()
        except OSError:
            continue
        if not any(sid in subsystem for sid in DEFAULT_SUBSYSTEM_IDS):
            continue
        if not _has_guard_pin(dev_dir):
            continue
        for pin, value in DEFAULT_PINS:
            write_pin(root, dev_dir.name, pin, value)
        configured.append(dev_dir.name)

    log.info("Disabled all SMA and U.FL Connections on %s", configured or "no devices")
    return configured


# ----------------------------------------------------------------------
# Hooks
# ----------------------------------------------------------------------


def _options(profile: Profile) -> E810Opts | None:
    raw = profile.plugins.get(PLUGIN_NAME)
    if raw is None:
        return None
    try:
        return E810Opts.from_dict(raw)
    except ValueError as exc:
        log.error("e810 failed to parse options: %s", exc)
        return None


def on_config_change(data: E810PluginData, profile: Profile) -> None:
    log.info("calling on_config_change for e810 plugin")
    opts = _options(profile)
    if opts is None:
        return

    with data.lock:
        data.hwplugins.clear()
    data.clock_ids.clear()

    if opts.enable_default_config:
        apply_default_config(data.sysfs_root)

    settings = profile.ptp_settings
    test_mode = UNIT_TEST_SETTING in settings
    clock_ids: dict[str, int] = {}

    for device, pins in opts.device_pins.items():
        clock_id = random_clock_identity() if test_mode else data.clock_ids.get(device)
        if clock_id == UNRESOLVED:
            log.warning("e810: clock id of %s is unavailable", device)
        else:
            clock_ids[device] = clock_id
            settings[f"{CLOCK_ID_LABEL}[{device}]"] = str(clock_id)
        for pin, value in pins.items():
            write_pin(data.sysfs_root, device, pin, value)

    for key, value in opts.dpll_settings.items():
        settings.setdefault(key, str(value))

    for iface, properties in opts.phase_offset_pins.items():
        if iface not in opts.device_pins:
            log.error(
                "e810 phase offset pin filter initialization failed: "
                "interface %s not found among %s",
                iface,
                opts.device_names(),
            )
            break
        clock_id = clock_ids.get(iface)
        if clock_id is None:
            continue
        for prop, value in properties.items():
            settings[f"{iface}.phaseOffsetFilter.{clock_id}.{prop}"] = value


def after_run_command(data: E810PluginData, profile: Profile, command: str) -> None:
    if command != GPSPIPE:
        log.debug("e810 after_run_command doing nothing for command: %s", command)
        return
    opts = _options(profile)
    if opts is None:
        return

    log.info("e810 doing ublx config for command: %s", command)
    for cmd in [*opts.ublx_cmds, *DEFAULT_UBLX_CMDS]:
        log.info("Running %s with args %s", UBXTOOL, ", ".join(cmd.args))
        try:
            result = subprocess.run(
                [UBXTOOL, *cmd.args],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=_UBXTOOL_TIMEOUT_S,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            log.error("ubxtool %s failed: %s", " ".join(cmd.args), exc)
            continue

        if cmd.report_output:
            log.info("Saving status to hwconfig: %s", result.stdout)
            with data.lock:
                data.hwplugins.append(f"ublx data: {result.stdout}")
        else:
            log.debug("Not saving status to hwconfig: %s", result.stdout)


def populate_hardware_status(data: E810PluginData, out: list[HardwareStatus]) -> None:
    with data.lock:
        out.extend(HardwareStatus(device_id=PLUGIN_NAME, status=s) for s in data.hwplugins)


def e810(name: str) -> Plugin | None:
    """Plugin factory."""
    if name != PLUGIN_NAME:
        log.error("Plugin must be initialized as %r, got %r", PLUGIN_NAME, name)
        return None
    log.info("registering e810 plugin")
    return Plugin(
        name=PLUGIN_NAME,
        on_config_change=on_config_change,
        after_run_command=after_run_command,
        populate_hardware_status=populate_hardware_status,
        data=E810PluginData(),
    )
