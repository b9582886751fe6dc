"""Tests for the PCI Device Serial Number capability walk."""

from __future__ import annotations

import struct
from pathlib import Path

import pytest

from ptp_daemon.pci import (
    PCI_EXT_CAP_ID_DSN,
    UNRESOLVED,
    ClockIdentityCache,
    parse_dsn,
    random_clock_identity,
    read_config_space,
    resolve_clock_identity,
)

SERIAL = 0x507C6FFFFF1FB1B8
AER = 0x0001
ARI = 0x000E


def _config_space(caps: list[tuple[int, int, int]], size: int = 4096) -> bytes:
    """Build a config space image.

    Args:
        caps: (offset, capability id, next offset) records.  A DSN record
            gets :data:`SERIAL` as its payload.
    """
    buf = bytearray(size)
    for offset, cap_id, next_offset in caps:
        struct.pack_into("<HH", buf, offset, cap_id, (next_offset << 4) | 0x1)
        if cap_id == PCI_EXT_CAP_ID_DSN:
            struct.pack_into("<Q", buf, offset + 4, SERIAL)
    return bytes(buf)


@pytest.fixture()
def fake_sysfs(tmp_path: Path) -> Path:
    """Create a fake /sys/class/net tree with one E810 port."""
    dev = tmp_path / "ens1f0" / "device"
    dev.mkdir(parents=True)
    (dev / "config").write_bytes(_config_space([(256, AER, 0x148), (0x148, PCI_EXT_CAP_ID_DSN, 0)]))
    return tmp_path


class TestParseDsn:
    """parse_dsn() capability walk."""

    def test_dsn_first(self) -> None:
        assert parse_dsn(_config_space([(256, PCI_EXT_CAP_ID_DSN, 0)])) == SERIAL

    def test_dsn_after_chain(self) -> None:
        space = _config_space(
            [(256, AER, 0x150), (0x150, ARI, 0x1A0), (0x1A0, PCI_EXT_CAP_ID_DSN, 0)]
        )
        assert parse_dsn(space) == SERIAL

    def test_little_endian_serial(self) -> None:
        space = bytearray(512)
        struct.pack_into("<HH", space, 256, PCI_EXT_CAP_ID_DSN, 0)
        space[260:268] = bytes([1, 0, 0, 0, 0, 0, 0, 0])
        assert parse_dsn(bytes(space)) == 1

    def test_end_of_list(self) -> None:
        assert parse_dsn(_config_space([(256, AER, 0)])) == UNRESOLVED

    def test_zero_capability_id(self) -> None:
        assert parse_dsn(bytes(4096)) == UNRESOLVED

    def test_cycle(self) -> None:
        space = _config_space([(256, AER, 0x150), (0x150, ARI, 256)])
        assert parse_dsn(space) == UNRESOLVED

    def test_next_out_of_bounds(self) -> None:
        space = _config_space([(256, AER, 0xFF0)], size=1024)
        assert parse_dsn(space) == UNRESOLVED

    def test_legacy_only_space(self) -> None:
        assert parse_dsn(bytes(256)) == UNRESOLVED

    def test_truncated_serial(self) -> None:
        space = bytearray(262)
        struct.pack_into("<HH", space, 256, PCI_EXT_CAP_ID_DSN, 0)
        assert parse_dsn(bytes(space)) == UNRESOLVED


class TestResolve:
    """Reading config space from sysfs."""

    def test_read_config_space(self, fake_sysfs: Path) -> None:
        assert len(read_config_space("ens1f0", fake_sysfs)) == 4096

    def test_resolve(self, fake_sysfs: Path) -> None:
        assert resolve_clock_identity("ens1f0", fake_sysfs) == SERIAL

    def test_missing_device(self, fake_sysfs: Path) -> None:
        assert resolve_clock_identity("ens9f0", fake_sysfs) == UNRESOLVED

    def test_random_identity_nonzero(self) -> None:
        ids = {random_clock_identity() for _ in range(16)}
        assert UNRESOLVED not in ids
        assert all(0 < i < 2**64 for i in ids)


class TestClockIdentityCache:
    """Per-generation memoization."""

    def test_caches_success(self) -> None:
        calls: list[str] = []

        def _resolver(dev: str) -> int:
            calls.append(dev)
            return 42

        cache = ClockIdentityCache(_resolver)
        assert cache.get("ens1f0") == 42
        assert cache.get("ens1f0") == 42
        assert calls == ["ens1f0"]

    def test_failures_not_cached(self) -> None:
        results = iter([UNRESOLVED, 7])
        cache = ClockIdentityCache(lambda dev: next(results))
        assert cache.get("ens1f0") == UNRESOLVED
        assert cache.get("ens1f0") == 7

    def test_clear(self) -> None:
        values = iter([1, 2])
        cache = ClockIdentityCache(lambda dev: next(values))
        assert cache.get("ens1f0") == 1
        cache.clear()
        assert cache.get("ens1f0") == 2
