"""Hardware clock identity from the PCI Device Serial Number capability.

PCIe extended capabilities form a linked list starting right after the
256-byte legacy configuration header.  Each record begins with a 32-bit
header, read here as two little-endian 16-bit words::

    +0  capability id
    +2  version (low 4 bits) | next capability offset << 4

The Device Serial Number capability (id 3) carries a 64-bit little-endian
serial 4 bytes past its header, which is used as a stable clock id.
"""

from __future__ import annotations

import logging
import secrets
import struct
import threading
from collections.abc import Callable
from pathlib import Path

log = logging.getLogger(__name__)

SYSFS_NET = Path("/sys/class/net")

PCI_CFG_SPACE_SIZE = 256
PCI_EXT_CAP_ID_DSN = 3
PCI_EXT_CAP_NEXT_OFFSET = 2
PCI_EXT_CAP_OFFSET_SHIFT = 4
PCI_EXT_CAP_DATA_OFFSET = 4

# Returned when no identity can be derived.  Never a valid serial.
UNRESOLVED = 0

_U16 = struct.Struct("<H")
_U64 = struct.Struct("<Q")


def parse_dsn(config_space: bytes, device: str = "") -> int:
    """Walk the extended capability list and return the DSN.

    Args:
        config_space: Raw PCI configuration space image.
        device: Device name, only used in log messages.

    Returns:
        The 64-bit serial number, or :data:`UNRESOLVED` if the list ends,
        loops, or runs past the buffer before a DSN record is found.
    """
    offset = PCI_CFG_SPACE_SIZE
    visited: set[int] = set()

    while True:
        if offset + PCI_EXT_CAP_DATA_OFFSET > len(config_space):
            log.error(
                "DSN lookup for %s: capability offset %d outside %d-byte config space",
                device,
                offset,
                len(config_space),
            )
            return UNRESOLVED
        if offset in visited:
            log.error("DSN lookup for %s: capability list loops at %d", device, offset)
            return UNRESOLVED
        visited.add(offset)

        (cap_id,) = _U16.unpack_from(config_space, offset)
        if cap_id == PCI_EXT_CAP_ID_DSN:
            break
        if cap_id == 0:
            log.error("can't find DSN for device %s", device)
            return UNRESOLVED

        (next_word,) = _U16.unpack_from(config_space, offset + PCI_EXT_CAP_NEXT_OFFSET)
        offset = next_word >> PCI_EXT_CAP_OFFSET_SHIFT
        if offset == 0:
            log.error("can't find DSN for device %s", device)
            return UNRESOLVED

    data = offset + PCI_EXT_CAP_DATA_OFFSET
    if data + _U64.size > len(config_space):
        log.error("DSN lookup for %s: serial at %d truncated", device, data)
        return UNRESOLVED
    (serial,) = _U64.unpack_from(config_space, data)
    return serial


def read_config_space(device: str, sysfs_root: Path = SYSFS_NET) -> bytes:
    """Read the PCI configuration space of a network device.

    Raises:
        OSError: If the config file cannot be read.
    """
    return (Path(sysfs_root) / device / "device" / "config").read_bytes()


def resolve_clock_identity(device: str, sysfs_root: Path = SYSFS_NET) -> int:
    """Return the DSN-based clock id of ``device``, or :data:`UNRESOLVED`."""
    try:
        config_space = read_config_space(device, sysfs_root)
    except OSError as exc:
        log.error("failed to read PCI config space of %s: %s", device, exc)
        return UNRESOLVED
    return parse_dsn(config_space, device)


def random_clock_identity() -> int:
    """Return a random non-zero 64-bit id, for hosts without real hardware."""
    while True:
        value = secrets.randbits(64)
        if value != UNRESOLVED:
            return value


class ClockIdentityCache:
    """Memoize clock ids per device for one configuration generation."""

    def __init__(
        self,
        resolver: Callable[[str], int] = resolve_clock_identity,
    ) -> None:
        self._resolver = resolver
        self._lock = threading.Lock()
        self._ids: dict[str, int] = {}

    def get(self, device: str) -> int:
        with self._lock:
            if device in self._ids:
                return self._ids[device]
        clock_id = self._resolver(device)
        # Failures are retried on the next lookup.
        if clock_id != UNRESOLVED:
            with self._lock:
                self._ids[device] = clock_id
        return clock_id

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()
