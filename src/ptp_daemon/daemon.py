"""Daemon context: wires the sink, tracker, plugins and supervisor together.

The daemon waits for the node profile to appear, applies it, and then
re-reads the file every update interval, reloading only when its bytes
changed.  A background thread runs the holdover expiry scan.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping

from .config import ConfigError, DaemonConfig, Profile, loads_profile
from .metrics import MetricSink
from .plugin import HardwareStatus, PluginFactory, PluginRegistry
from .plugins import FACTORIES
from .process import ProcessFactory, PtpProcess, ProcessSupervisor, build_descriptors
from .tracker import ClockStateTracker

log = logging.getLogger(__name__)

_PROFILE_POLL_S = 1.0


class Daemon:
    """Own every long-lived component of one node daemon."""

    def __init__(
        self,
        config: DaemonConfig,
        factories: Mapping[str, PluginFactory] = FACTORIES,
        clock: Callable[[], float] = time.monotonic,
        process_factory: ProcessFactory = PtpProcess,
    ) -> None:
        self.config = config
        self.sink = MetricSink(config.node_name)
        self.tracker = ClockStateTracker(self.sink, clock=clock)
        self.plugins = PluginRegistry(hook_timeout=config.hook_timeout)
        self.plugins.load(config.plugins, factories)
        self.supervisor = ProcessSupervisor(
            self.tracker,
            self.plugins,
            backoff=config.restart_backoff,
            process_factory=process_factory,
        )

        self.profile: Profile | None = None
        self._profile_bytes: bytes | None = None
        self._stop_event = threading.Event()
        self._scan_thread: threading.Thread | None = None

    def __enter__(self) -> Daemon:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the holdover expiry scan."""
        if self._scan_thread is not None:
            return
        self._scan_thread = threading.Thread(
            target=self._scan_loop, name="holdover-scan", daemon=True
        )
        self._scan_thread.start()

    def stop(self) -> None:
        """Ask :meth:`run` to return.  Safe to call from a signal handler."""
        self._stop_event.set()

    def close(self) -> None:
        """Stop the supervised processes and the scan thread."""
        self._stop_event.set()
        self.supervisor.stop()
        if self._scan_thread is not None:
            self._scan_thread.join(timeout=self.config.holdover_scan_interval + 1.0)
            self._scan_thread = None

    def _scan_loop(self) -> None:
        interval = self.config.holdover_scan_interval
        while not self._stop_event.wait(timeout=interval):
            try:
                self.tracker.expire_holdover()
            except Exception:
                log.exception("holdover scan failed")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def reload(self, profile: Profile) -> bool:
        """Apply a profile.

        An invalid profile is logged and the running configuration is kept.

        Returns:
            True if the profile was applied.
        """
        try:
            descriptors = build_descriptors(profile, self.config.run_dir)
        except ConfigError as exc:
            log.error("rejecting profile %r, keeping current configuration: %s", profile.name, exc)
            return False

        self.plugins.on_config_change(profile)
        self.supervisor.apply(descriptors, profile)
        self.profile = profile
        log.info(
            "Applied profile %r: %s",
            profile.name,
            ", ".join(d.name for d in descriptors) or "no processes",
        )
        return True

    def check_profile(self) -> bool:
        """Re-read the node profile and reload if its content changed.

        Returns:
            True if a new profile was applied.
        """
        path = self.config.profile_path
        try:
            data = path.read_bytes()
        except OSError as exc:
            log.warning("failed to read profile %s: %s", path, exc)
            return False
        if data == self._profile_bytes:
            return False
        self._profile_bytes = data

        log.info("Profile %s changed, reloading", path)
        try:
            profile = loads_profile(data, source=str(path))
        except ConfigError as exc:
            log.error("invalid profile, keeping current configuration: %s", exc)
            return False
        return self.reload(profile)

    def wait_for_profile(self) -> bool:
        """Wait up to ``config.profile_wait`` seconds for the profile file."""
        path = self.config.profile_path
        deadline = time.monotonic() + self.config.profile_wait
        while not path.exists():
            if time.monotonic() >= deadline or self._stop_event.is_set():
                return False
            log.info("Waiting for profile %s", path)
            self._stop_event.wait(timeout=min(_PROFILE_POLL_S, deadline - time.monotonic()))
        return True

    def run(self) -> None:
        """Apply the node profile and follow its changes until stopped.

        Raises:
            FileNotFoundError: If the profile does not appear in time.
        """
        with self:
            if not self.wait_for_profile():
                if self._stop_event.is_set():
                    return
                raise FileNotFoundError(
                    f"profile {self.config.profile_path} not found after "
                    f"{self.config.profile_wait:.0f}s"
                )
            self.check_profile()
            self.publish_hardware_status()
            while not self._stop_event.wait(timeout=self.config.update_interval):
                self.check_profile()
                self.publish_hardware_status()
        log.info("Daemon stopped")

    # ------------------------------------------------------------------
    # Hardware status
    # ------------------------------------------------------------------

    def hardware_status(self) -> list[HardwareStatus]:
        """Collect hardware status records from every plugin."""
        return self.plugins.populate_hardware_status([])

    def publish_hardware_status(self) -> list[HardwareStatus]:
        """Export the current hardware status records as metrics."""
        records = self.hardware_status()
        by_device: dict[str, list[str]] = {}
        for record in records:
            by_device.setdefault(record.device_id, []).append(record.status)
        self.sink.set_hardware_status(
            {device: "; ".join(statuses) for device, statuses in by_device.items()}
        )
        return records
