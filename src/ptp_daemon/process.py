"""Supervise the linuxptp processes of a profile.

Each configured process (ptp4l, phc2sys, ts2phc) runs as a child process
owned by a :class:`PtpProcess`.  A daemon thread reads the child's combined
stdout/stderr line by line, feeds every line to the parser and tracker,
and restarts the child after a back-off if it exits.
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import re
import shlex
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import ClockThreshold, ConfigError, Profile, Subcommand
from .parser import CLOCK_REALTIME, PHC2SYS, PTP4L, TS2PHC, SignalKind, parse
from .plugin import PluginRegistry
from .tracker import ClockStateTracker, Key

log = logging.getLogger(__name__)

_STOP_TIMEOUT_S = 5.0
_SUBCOMMAND_TIMEOUT_S = 30.0

# Configuration sections that do not name an interface
_NON_INTERFACE_SECTIONS = frozenset({"global", "nmea", "unicast_master_table"})
_SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")


@dataclass(frozen=True)
class ProcessDescriptor:
    """Everything needed to run and monitor one supervised process."""

    name: str
    message_tag: str
    interfaces: tuple[str, ...]
    threshold: ClockThreshold
    argv: tuple[str, ...]
    config_path: Path | None = None
    config_text: str = ""
    subcommands: tuple[Subcommand, ...] = ()

    @property
    def primary_interface(self) -> str | None:
        return self.interfaces[0] if self.interfaces else None

    def keys(self) -> list[Key]:
        return [(self.name, iface) for iface in self.interfaces]


# ----------------------------------------------------------------------
# Descriptor construction
# ----------------------------------------------------------------------


def config_interfaces(text: str) -> list[str]:
    """Return the interface sections of a linuxptp configuration, in order."""
    interfaces: list[str] = []
    for line in text.splitlines():
        match = _SECTION_RE.match(line)
        if match is None:
            continue
        section = match.group(1).strip()
        if section not in _NON_INTERFACE_SECTIONS and section not in interfaces:
            interfaces.append(section)
    return interfaces


def render_config(text: str, message_tag: str) -> str:
    """Return ``text`` with ``message_tag`` set in its ``[global]`` section."""
    lines = [
        line for line in text.splitlines() if not line.strip().startswith("message_tag")
    ]
    tag_line = f"message_tag {message_tag}"
    for idx, line in enumerate(lines):
        match = _SECTION_RE.match(line)
        if match is not None and match.group(1).strip() == "global":
            lines.insert(idx + 1, tag_line)
            break
    else:
        lines[:0] = ["[global]", tag_line]
    return "\n".join(lines) + "\n"


def _descriptor(
    name: str,
    profile: Profile,
    run_dir: Path,
    conf_text: str,
    opts: str,
    interfaces: list[str],
    message_tag: str | None = None,
) -> ProcessDescriptor:
    conf_name = f"{name}.0.config"
    tag = message_tag or f"[{conf_name}]"
    if not interfaces:
        raise ConfigError(f"{name}: no interface configured")
    config_path = run_dir / conf_name
    try:
        extra = shlex.split(opts)
    except ValueError as exc:
        raise ConfigError(f"{name}: invalid options {opts!r}: {exc}") from None
    return ProcessDescriptor(
        name=name,
        message_tag=tag,
        interfaces=tuple(interfaces),
        threshold=profile.threshold,
        argv=(name, "-f", str(config_path), *extra),
        config_path=config_path,
        config_text=render_config(conf_text, tag),
        subcommands=tuple(profile.post_start_commands.get(name, [])),
    )


def build_descriptors(profile: Profile, run_dir: Path) -> list[ProcessDescriptor]:
    """Derive the process set of a profile.

    Raises:
        ConfigError: If a configured process has no interface or its
            options cannot be split into arguments.
    """
    run_dir = Path(run_dir)
    fallback = [profile.interface] if profile.interface else []
    descriptors: list[ProcessDescriptor] = []
    ptp4l_tag: str | None = None

    if profile.ptp4l_opts is not None:
        ptp4l = _descriptor(
            PTP4L,
            profile,
            run_dir,
            profile.ptp4l_conf,
            profile.ptp4l_opts,
            config_interfaces(profile.ptp4l_conf) or fallback,
        )
        ptp4l_tag = ptp4l.message_tag
        descriptors.append(ptp4l)

    if profile.phc2sys_opts is not None:
        descriptors.append(
            _descriptor(
                PHC2SYS,
                profile,
                run_dir,
                "",
                profile.phc2sys_opts,
                [CLOCK_REALTIME],
                message_tag=ptp4l_tag,
            )
        )

    if profile.ts2phc_opts is not None:
        descriptors.append(
            _descriptor(
                TS2PHC,
                profile,
                run_dir,
                profile.ts2phc_conf,
                profile.ts2phc_opts,
                config_interfaces(profile.ts2phc_conf) or fallback,
            )
        )

    return descriptors


def write_config(descriptor: ProcessDescriptor) -> bool:
    """Write the descriptor's configuration file.  Returns False on failure."""
    if descriptor.config_path is None:
        return True
    try:
        descriptor.config_path.parent.mkdir(parents=True, exist_ok=True)
        descriptor.config_path.write_text(descriptor.config_text)
    except OSError as exc:
        log.error("failed to write %s: %s", descriptor.config_path, exc)
        return False
    return True


# ----------------------------------------------------------------------
# One supervised child
# ----------------------------------------------------------------------

LineHandler = Callable[[ProcessDescriptor, str], object]
SubcommandHandler = Callable[[ProcessDescriptor, str], object]


class PtpProcess:
    """Run one child process, stream its output, restart it on exit."""

    def __init__(
        self,
        descriptor: ProcessDescriptor,
        on_line: LineHandler,
        on_subcommand: SubcommandHandler | None = None,
        backoff: float = 1.0,
    ) -> None:
        self.descriptor = descriptor
        self._on_line = on_line
        self._on_subcommand = on_subcommand
        self._backoff = backoff

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._process: subprocess.Popen[str] | None = None
        self._thread: threading.Thread | None = None
        self.restarts = 0

    @property
    def name(self) -> str:
        return self.descriptor.name

    def start(self) -> None:
        """Start the supervising thread."""
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"{self.name}-supervisor",
            daemon=True,
        )
        self._thread.start()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Supervising thread
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        argv = list(self.descriptor.argv)
        while not self._stop_event.is_set():
            log.info("Starting %s: %s", self.name, " ".join(argv))
            try:
                proc = subprocess.Popen(
                    argv,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as exc:
                log.error("failed to start %s: %s", self.name, exc)
                self._stop_event.wait(timeout=self._backoff)
                continue

            with self._lock:
                self._process = proc
                stopping = self._stop_event.is_set()
            if stopping:
                proc.terminate()

            helper: threading.Thread | None = None
            if self.descriptor.subcommands:
                helper = threading.Thread(
                    target=self._run_subcommands,
                    name=f"{self.name}-subcommands",
                    daemon=True,
                )
                helper.start()

            try:
                self._pump(proc)
            except Exception:
                log.exception("%s: output reader failed", self.name)
                proc.kill()
            returncode = proc.wait()
            if helper is not None:
                helper.join(timeout=_STOP_TIMEOUT_S)

            if self._stop_event.is_set():
                break
            self.restarts += 1
            log.warning(
                "%s exited with code %s, restarting in %.1fs",
                self.name,
                returncode,
                self._backoff,
            )
            self._stop_event.wait(timeout=self._backoff)

        log.info("%s supervisor stopped", self.name)

    def _pump(self, proc: subprocess.Popen[str]) -> None:
        """Forward complete output lines until the child closes its stdout."""
        if proc.stdout is None:
            return
        with proc.stdout:
            for raw_line in proc.stdout:
                if not raw_line.endswith("\n"):
                    log.debug("%s: dropping unterminated output %r", self.name, raw_line)
                    continue
                line = raw_line.rstrip("\r\n")
                if not line:
                    continue
                log.debug("%s: %s", self.name, line)
                try:
                    self._on_line(self.descriptor, line)
                except Exception:
                    log.exception("%s: failed to process line %r", self.name, line)

    def _run_subcommands(self) -> None:
        for sub in self.descriptor.subcommands:
            if self._stop_event.is_set():
                return
            log.info("%s: running %s: %s", self.name, sub.name, " ".join(sub.argv))
            try:
                result = subprocess.run(
                    list(sub.argv),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=_SUBCOMMAND_TIMEOUT_S,
                )
            except (OSError, subprocess.TimeoutExpired) as exc:
                log.error("%s: %s failed: %s", self.name, sub.name, exc)
                continue
            if result.returncode != 0:
                log.warning(
                    "%s: %s exited with code %d: %s",
                    self.name,
                    sub.name,
                    result.returncode,
                    result.stdout.strip(),
                )
            if self._on_subcommand is not None:
                try:
                    self._on_subcommand(self.descriptor, sub.name)
                except Exception:
                    log.exception("%s: after-run handling of %s failed", self.name, sub.name)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Stop the child and wait for the supervising thread to exit."""
        self._stop_event.set()

        with self._lock:
            proc = self._process
        if proc is not None and proc.poll() is None:
            try:
                proc.terminate()
                proc.wait(timeout=_STOP_TIMEOUT_S)
            except (OSError, subprocess.TimeoutExpired):
                with contextlib.suppress(OSError):
                    proc.kill()

        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=_STOP_TIMEOUT_S)


# ----------------------------------------------------------------------
# The process set
# ----------------------------------------------------------------------

ProcessFactory = Callable[..., PtpProcess]


class ProcessSupervisor:
    """Own the running process set and route its output to the tracker."""

    def __init__(
        self,
        tracker: ClockStateTracker,
        plugins: PluginRegistry,
        backoff: float = 1.0,
        process_factory: ProcessFactory = PtpProcess,
    ) -> None:
        self._tracker = tracker
        self._plugins = plugins
        self._backoff = backoff
        self._process_factory = process_factory

        self._lock = threading.Lock()
        self._profile: Profile | None = None
        self._processes: list[PtpProcess] = []

    @property
    def descriptors(self) -> list[ProcessDescriptor]:
        with self._lock:
            return [p.descriptor for p in self._processes]

    def apply(self, descriptors: list[ProcessDescriptor], profile: Profile) -> None:
        """Replace the running process set.

        Running children are stopped (and their reader threads drained)
        before state for interfaces that are no longer configured is
        dropped and the new set is started.
        """
        with self._lock:
            self._stop_all()
            self._profile = profile

            self._tracker.prune({key for d in descriptors for key in d.keys()})

            for descriptor in descriptors:
                if not write_config(descriptor):
                    continue
                proc = self._process_factory(
                    descriptor,
                    self.handle_line,
                    self.handle_subcommand,
                    backoff=self._backoff,
                )
                proc.start()
                self._processes.append(proc)

    def handle_line(self, descriptor: ProcessDescriptor, line: str) -> bool:
        """Parse one output line and apply it.  Returns True if applied."""
        sample = parse(descriptor.name, line)
        if sample is None:
            return False
        if sample.kind is SignalKind.OFFSET and sample.interface is None:
            if descriptor.primary_interface is None:
                return False
            sample = dataclasses.replace(sample, interface=descriptor.primary_interface)
        return self._tracker.apply(sample, descriptor.threshold)

    def handle_subcommand(self, descriptor: ProcessDescriptor, command: str) -> None:
        profile = self._profile
        if profile is None:
            return
        log.info("%s: %s completed", descriptor.name, command)
        self._plugins.after_run_command(profile, command)

    def _stop_all(self) -> None:
        for proc in self._processes:
            try:
                proc.stop()
            except Exception:
                log.warning("failed to stop %s", proc.name, exc_info=True)
        self._processes = []

    def stop(self) -> None:
        with self._lock:
            self._stop_all()
