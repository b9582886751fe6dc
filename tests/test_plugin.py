"""Tests for the plugin registry and hook dispatch."""

from __future__ import annotations

import logging
import threading

import pytest

from ptp_daemon.config import Profile
from ptp_daemon.plugin import HardwareStatus, Plugin, PluginRegistry


def _set(key: str, value: str):
    def _hook(data: object, profile: Profile) -> None:
        profile.ptp_settings[key] = value

    return _hook


def _profile(*names: str) -> Profile:
    return Profile(name="p", plugins={n: {} for n in names})


class TestRegistration:
    """register() and load()."""

    def test_duplicate_rejected(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = PluginRegistry()
        first = Plugin(name="e810", data="first")
        assert registry.register(first)
        with caplog.at_level(logging.ERROR):
            assert not registry.register(Plugin(name="e810", data="second"))
        assert registry.get("e810") is first
        assert "already registered" in caplog.text

    def test_load_calls_factory_once_per_name(self) -> None:
        calls: list[str] = []

        def _factory(name: str) -> Plugin:
            calls.append(name)
            return Plugin(name=name)

        registry = PluginRegistry()
        registry.load(["a", "b", "a"], {"a": _factory, "b": _factory})
        assert calls == ["a", "b"]
        assert registry.names() == ["a", "b"]

    def test_load_skips_unknown_and_failing(self) -> None:
        def _broken(name: str) -> Plugin:
            raise RuntimeError("no hardware")

        registry = PluginRegistry()
        registry.load(
            ["missing", "broken", "none", "ok"],
            {"broken": _broken, "none": lambda name: None, "ok": lambda name: Plugin(name=name)},
        )
        assert registry.names() == ["ok"]

    def test_get_unknown(self) -> None:
        assert PluginRegistry().get("nope") is None


class TestOnConfigChange:
    """Config hook dispatch and settings merge."""

    def test_first_writer_wins(self) -> None:
        registry = PluginRegistry()
        registry.register(Plugin(name="a", on_config_change=_set("mode", "a")))
        registry.register(Plugin(name="b", on_config_change=_set("mode", "b")))
        profile = _profile("a", "b")
        registry.on_config_change(profile)
        assert profile.ptp_settings["mode"] == "a"

    def test_existing_setting_not_overwritten(self) -> None:
        registry = PluginRegistry()
        registry.register(Plugin(name="a", on_config_change=_set("mode", "plugin")))
        profile = _profile("a")
        profile.ptp_settings["mode"] = "user"
        registry.on_config_change(profile)
        assert profile.ptp_settings["mode"] == "user"

    def test_only_configured_plugins_run(self) -> None:
        registry = PluginRegistry()
        registry.register(Plugin(name="a", on_config_change=_set("a", "1")))
        registry.register(Plugin(name="b", on_config_change=_set("b", "1")))
        profile = _profile("b")
        registry.on_config_change(profile)
        assert profile.ptp_settings == {"b": "1"}

    def test_failing_hook_does_not_block_others(self) -> None:
        def _boom(data: object, profile: Profile) -> None:
            profile.ptp_settings["partial"] = "x"
            raise RuntimeError("boom")

        registry = PluginRegistry()
        registry.register(Plugin(name="a", on_config_change=_boom))
        registry.register(Plugin(name="b", on_config_change=_set("b", "1")))
        profile = _profile("a", "b")
        registry.on_config_change(profile)
        assert profile.ptp_settings == {"b": "1"}

    def test_hung_hook_times_out(self) -> None:
        release = threading.Event()

        def _hang(data: object, profile: Profile) -> None:
            release.wait(5)

        registry = PluginRegistry(hook_timeout=0.05)
        registry.register(Plugin(name="a", on_config_change=_hang))
        registry.register(Plugin(name="b", on_config_change=_set("b", "1")))
        profile = _profile("a", "b")
        try:
            registry.on_config_change(profile)
        finally:
            release.set()
        assert profile.ptp_settings == {"b": "1"}

    def test_hook_receives_data(self) -> None:
        seen: list[object] = []
        registry = PluginRegistry()
        registry.register(
            Plugin(name="a", on_config_change=lambda d, p: seen.append(d), data={"k": 1})
        )
        registry.on_config_change(_profile("a"))
        assert seen == [{"k": 1}]


class TestAfterRunCommand:
    """after_run_command dispatch."""

    def test_dispatch(self) -> None:
        seen: list[str] = []
        registry = PluginRegistry()
        registry.register(Plugin(name="a", after_run_command=lambda d, p, c: seen.append(c)))
        registry.register(Plugin(name="b", after_run_command=lambda d, p, c: seen.append("b")))
        registry.after_run_command(_profile("a"), "gpspipe")
        assert seen == ["gpspipe"]

    def test_failure_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        def _boom(data: object, profile: Profile, command: str) -> None:
            raise OSError("ubxtool missing")

        registry = PluginRegistry()
        registry.register(Plugin(name="a", after_run_command=_boom))
        with caplog.at_level(logging.ERROR):
            registry.after_run_command(_profile("a"), "gpspipe")
        assert "a.after_run_command failed" in caplog.text


class TestPopulateHardwareStatus:
    """Hardware status collection."""

    def test_appends_in_registration_order(self) -> None:
        def _status(text: str):
            def _hook(data: object, out: list[HardwareStatus]) -> None:
                out.append(HardwareStatus(device_id=text, status="ok"))

            return _hook

        registry = PluginRegistry()
        registry.register(Plugin(name="a", populate_hardware_status=_status("a")))
        registry.register(Plugin(name="b", populate_hardware_status=_status("b")))
        registry.register(Plugin(name="c"))
        existing = [HardwareStatus(device_id="x", status="y")]
        out = registry.populate_hardware_status(existing)
        assert out is existing
        assert [s.device_id for s in out] == ["x", "a", "b"]

    def test_repeated_calls_accumulate_same_records(self) -> None:
        data = ["ublx data: ok"]
        registry = PluginRegistry()
        registry.register(
            Plugin(
                name="a",
                populate_hardware_status=lambda d, out: out.extend(
                    HardwareStatus("a", s) for s in d
                ),
                data=data,
            )
        )
        assert registry.populate_hardware_status([]) == registry.populate_hardware_status([])

    def test_failing_hook_adds_nothing(self) -> None:
        def _boom(data: object, out: list[HardwareStatus]) -> None:
            out.append(HardwareStatus("a", "half"))
            raise RuntimeError("boom")

        registry = PluginRegistry()
        registry.register(Plugin(name="a", populate_hardware_status=_boom))
        assert registry.populate_hardware_status([]) == []
