"""Prometheus gauges for PTP telemetry.

All gauges live in a :class:`prometheus_client.CollectorRegistry` owned by
the sink, so several sinks (one per daemon, one per test) never collide in
the process-wide default registry.
"""

from __future__ import annotations

import logging

from prometheus_client import CollectorRegistry, Gauge, Info, start_http_server

from .parser import ClockStateKind, SignalKind

log = logging.getLogger(__name__)

NAMESPACE = "openshift"
SUBSYSTEM = "ptp"

# Values exported on the clock_state gauge.
CLOCK_STATE_VALUES: dict[ClockStateKind, float] = {
    ClockStateKind.FREERUN: 0.0,
    ClockStateKind.LOCKED: 1.0,
    ClockStateKind.HOLDOVER: 2.0,
}

_SOURCE_LABELS = ["from", "process", "node", "iface"]
_STATE_LABELS = ["process", "node", "iface"]
_CLASS_LABELS = ["process", "node"]
_HARDWARE_LABELS = ["node", "device"]


class MetricSink:
    """Labeled gauge store, one gauge per :class:`SignalKind`."""

    def __init__(self, node: str, registry: CollectorRegistry | None = None) -> None:
        self.node = node
        self.registry = registry if registry is not None else CollectorRegistry()

        self._full_names: dict[SignalKind, str] = {}

        def _gauge(name: str, doc: str, labels: list[str]) -> Gauge:
            return Gauge(
                name,
                doc,
                labels,
                namespace=NAMESPACE,
                subsystem=SUBSYSTEM,
                registry=self.registry,
            )

        self._gauges: dict[SignalKind, Gauge] = {
            SignalKind.OFFSET: _gauge(
                "offset_ns", "Offset from the reference clock in nanoseconds.",
                _SOURCE_LABELS,
            ),
            SignalKind.MAX_OFFSET: _gauge(
                "max_offset_ns", "Maximum reported offset in nanoseconds.",
                _SOURCE_LABELS,
            ),
            SignalKind.FREQUENCY_ADJUSTMENT: _gauge(
                "frequency_adjustment_ns", "Frequency adjustment in ppb.",
                _SOURCE_LABELS,
            ),
            SignalKind.PATH_DELAY: _gauge(
                "delay_ns", "Mean path delay in nanoseconds.",
                _SOURCE_LABELS,
            ),
            SignalKind.CLOCK_STATE: _gauge(
                "clock_state",
                "Clock state: 0 = FREERUN, 1 = LOCKED, 2 = HOLDOVER.",
                _STATE_LABELS,
            ),
            SignalKind.CLOCK_CLASS: _gauge(
                "clock_class", "PTP clock class.", _CLASS_LABELS,
            ),
        }
        for kind, gauge in self._gauges.items():
            self._full_names[kind] = gauge.describe()[0].name
        self._hardware = Info(
            "hardware_status",
            "Hardware status reported by plugins, one series per device.",
            _HARDWARE_LABELS,
            namespace=NAMESPACE,
            subsystem=SUBSYSTEM,
            registry=self.registry,
        )

    def set_source(
        self, kind: SignalKind, source: str, process: str, iface: str, value: float
    ) -> None:
        """Set one of the per-source gauges (offset, max offset, freq, delay)."""
        self._gauges[kind].labels(source, process, self.node, iface).set(value)

    def set_clock_state(self, process: str, iface: str, state: ClockStateKind) -> None:
        self._gauges[SignalKind.CLOCK_STATE].labels(process, self.node, iface).set(
            CLOCK_STATE_VALUES[state]
        )

    def set_clock_class(self, process: str, value: float) -> None:
        self._gauges[SignalKind.CLOCK_CLASS].labels(process, self.node).set(value)

    def set_hardware_status(self, statuses: dict[str, str]) -> None:
        """Replace the hardware status series with ``{device: status}``."""
        self._hardware.clear()
        for device, status in statuses.items():
            self._hardware.labels(self.node, device).info({"status": status})

    def value(self, kind: SignalKind, **labels: str) -> float | None:
        """Return the current value of one series, or None if it does not exist."""
        labels.setdefault("node", self.node)
        return self.registry.get_sample_value(self._full_names[kind], labels)

    def remove_interface(self, source: str, process: str, iface: str) -> None:
        """Drop every series belonging to one (process, interface) pair."""
        for kind in (
            SignalKind.OFFSET,
            SignalKind.MAX_OFFSET,
            SignalKind.FREQUENCY_ADJUSTMENT,
            SignalKind.PATH_DELAY,
        ):
            self._remove(kind, source, process, self.node, iface)
        self._remove(SignalKind.CLOCK_STATE, process, self.node, iface)

    def _remove(self, kind: SignalKind, *labels: str) -> None:
        try:
            self._gauges[kind].remove(*labels)
        except KeyError:
            log.debug("no %s series for %s", kind.value, labels)

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry over HTTP in a background thread."""
        start_http_server(port, addr=addr, registry=self.registry)
        log.info("Serving metrics on %s:%d", addr, port)
