"""Hardware plugin contract and hook dispatch.

A plugin is a named bundle of up to three optional hooks plus a private
data handle owned by the plugin:

``on_config_change(data, profile)``
    Called on every profile (re)load when the profile carries a block for
    the plugin.  May add derived values to ``profile.ptp_settings``.
``after_run_command(data, profile, command)``
    Called after a named post-start command of a supervised process
    completes.
``populate_hardware_status(data, out)``
    Appends :class:`HardwareStatus` records to ``out`` when hardware
    health is exported.

Every hook runs on a worker thread with a timeout; exceptions and
timeouts are logged and never reach the caller.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .config import Profile

log = logging.getLogger(__name__)

DEFAULT_HOOK_TIMEOUT = 30.0

OnConfigChange = Callable[[Any, Profile], None]
AfterRunCommand = Callable[[Any, Profile, str], None]
PopulateHardwareStatus = Callable[[Any, list["HardwareStatus"]], None]
PluginFactory = Callable[[str], "Plugin | None"]


@dataclass(frozen=True)
class HardwareStatus:
    """One hardware health record surfaced to the node status."""

    device_id: str
    status: str


@dataclass
class Plugin:
    """A registered plugin: its hooks and private data."""

    name: str
    on_config_change: OnConfigChange | None = None
    after_run_command: AfterRunCommand | None = None
    populate_hardware_status: PopulateHardwareStatus | None = None
    data: Any = None


def _call_with_timeout(label: str, hook: Callable[..., None], args: tuple, timeout: float) -> bool:
    """Run ``hook(*args)`` on a daemon thread and wait at most ``timeout``.

    Returns:
        True if the hook returned normally in time.
    """
    outcome: dict[str, bool] = {"ok": False}

    def _target() -> None:
        try:
            hook(*args)
        except Exception:
            log.exception("%s failed", label)
            return
        outcome["ok"] = True

    worker = threading.Thread(target=_target, name=f"hook-{label}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        log.error("%s did not finish within %.1fs, continuing without it", label, timeout)
        return False
    return outcome["ok"]


class PluginRegistry:
    """Name-keyed plugin collection that dispatches hooks."""

    def __init__(self, hook_timeout: float = DEFAULT_HOOK_TIMEOUT) -> None:
        self._hook_timeout = hook_timeout
        self._plugins: dict[str, Plugin] = {}

    def register(self, plugin: Plugin) -> bool:
        """Add a plugin.  A name that is already registered is rejected."""
        if plugin.name in self._plugins:
            log.error("plugin %r is already registered, ignoring duplicate", plugin.name)
            return False
        self._plugins[plugin.name] = plugin
        log.info("registered plugin %s", plugin.name)
        return True

    def load(self, names: Iterable[str], factories: Mapping[str, PluginFactory]) -> None:
        """Instantiate and register each named plugin, once per name."""
        for name in names:
            if name in self._plugins:
                log.error("plugin %r listed twice, ignoring duplicate", name)
                continue
            factory = factories.get(name)
            if factory is None:
                log.error("unknown plugin %r (available: %s)", name, ", ".join(sorted(factories)))
                continue
            try:
                plugin = factory(name)
            except Exception:
                log.exception("plugin %r failed to initialize", name)
                continue
            if plugin is None:
                log.error("plugin factory for %r returned nothing", name)
                continue
            self.register(plugin)

    def names(self) -> list[str]:
        return list(self._plugins)

    def get(self, name: str) -> Plugin | None:
        return self._plugins.get(name)

    # ------------------------------------------------------------------
    # Hook dispatch
    # ------------------------------------------------------------------

    def on_config_change(self, profile: Profile) -> None:
        """Run every configured plugin's config hook.

        Each plugin works on a private copy of ``profile.ptp_settings``.
        New keys are merged back afterwards; a key that is already set is
        never overwritten.
        """
        for name, plugin in self._plugins.items():
            if plugin.on_config_change is None or name not in profile.plugins:
                continue
            staged = dataclasses.replace(profile, ptp_settings=dict(profile.ptp_settings))
            ok = _call_with_timeout(
                f"{name}.on_config_change",
                plugin.on_config_change,
                (plugin.data, staged),
                self._hook_timeout,
            )
            if not ok:
                continue
            for key, value in staged.ptp_settings.items():
                current = profile.ptp_settings.get(key)
                if current is None:
                    profile.ptp_settings[key] = value
                elif current != value:
                    log.warning(
                        "plugin %s: not overwriting setting %s=%r with %r",
                        name,
                        key,
                        current,
                        value,
                    )

    def after_run_command(self, profile: Profile, command: str) -> None:
        for name, plugin in self._plugins.items():
            if plugin.after_run_command is None or name not in profile.plugins:
                continue
            _call_with_timeout(
                f"{name}.after_run_command",
                plugin.after_run_command,
                (plugin.data, profile, command),
                self._hook_timeout,
            )

    def populate_hardware_status(self, out: list[HardwareStatus]) -> list[HardwareStatus]:
        """Append every plugin's hardware status records to ``out``."""
        for name, plugin in self._plugins.items():
            if plugin.populate_hardware_status is None:
                continue
            staged: list[HardwareStatus] = []
            ok = _call_with_timeout(
                f"{name}.populate_hardware_status",
                plugin.populate_hardware_status,
                (plugin.data, staged),
                self._hook_timeout,
            )
            if ok:
                out.extend(staged)
        return out
