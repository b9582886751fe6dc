"""Per-interface clock state machine.

The tracker trusts the servo state each process reports (s0/s1/s2) and
adds holdover bookkeeping on top: a clock that stays in HOLDOVER longer
than its profile's holdover timeout is forced to FREERUN, even if no new
line arrives.  Expiry is driven by :meth:`ClockStateTracker.expire_holdover`,
which the daemon calls periodically.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .config import ClockThreshold
from .metrics import MetricSink
from .parser import ClockStateKind, MetricSample, SignalKind, metric_interface

log = logging.getLogger(__name__)

# Largest magnitude accepted for any decoded value (int64 range as a float)
MAX_MAGNITUDE = float(2**63)

Key = tuple[str, str]  # (process, interface)


@dataclass
class ClockState:
    """Live state of one (process, interface) pair."""

    process: str
    interface: str
    state: ClockStateKind = ClockStateKind.FREERUN
    source: str = ""
    threshold: ClockThreshold = field(default_factory=ClockThreshold)
    updated_at: float = 0.0
    locked_at: float | None = None
    holdover_since: float | None = None
    holdover_elapsed: float = 0.0
    expired: bool = False
    observed: bool = False
    degraded: bool = False
    offset: float = 0.0
    max_offset: float = 0.0
    frequency: float = 0.0
    delay: float = 0.0
    lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def key(self) -> Key:
        return (self.process, self.interface)

    def copy(self) -> ClockState:
        return dataclasses.replace(self)


def _valid(value: float) -> bool:
    return math.isfinite(value) and abs(value) <= MAX_MAGNITUDE


class ClockStateTracker:
    """Apply decoded samples to per-key :class:`ClockState` entries.

    Samples for the same key are serialized on that entry's lock; samples
    for different keys only contend briefly on the map lock.
    """

    def __init__(
        self,
        sink: MetricSink,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[Key, ClockState] = {}

    # ------------------------------------------------------------------
    # Sample intake
    # ------------------------------------------------------------------

    def apply(self, sample: MetricSample, threshold: ClockThreshold | None = None) -> bool:
        """Apply one sample.

        Returns:
            True if the sample was applied, False if it was discarded.
        """
        bad = [v for v in sample.numbers() if not _valid(v)]
        if bad:
            log.warning(
                "%s: discarding sample with out-of-range value(s) %s",
                sample.process,
                bad,
            )
            return False

        if sample.kind is SignalKind.CLOCK_CLASS:
            self._sink.set_clock_class(sample.process, sample.value)
            return True

        if not sample.interface:
            log.debug("%s: sample without interface dropped", sample.process)
            return False

        key = (sample.process, sample.interface)
        entry = self._entry(key)
        with entry.lock:
            if not self._is_current(key, entry):
                log.debug("%s %s: sample for pruned entry dropped", *key)
                return False
            if threshold is not None:
                entry.threshold = threshold
            self._transition(entry, sample, self._clock())
            self._export(entry)
        return True

    def _is_current(self, key: Key, entry: ClockState) -> bool:
        with self._lock:
            return self._states.get(key) is entry

    def _entry(self, key: Key) -> ClockState:
        with self._lock:
            entry = self._states.get(key)
            if entry is None:
                entry = ClockState(process=key[0], interface=key[1])
                self._states[key] = entry
            return entry

    def _transition(self, entry: ClockState, sample: MetricSample, now: float) -> None:
        reported = sample.state

        if reported is ClockStateKind.LOCKED:
            entry.state = ClockStateKind.LOCKED
            entry.locked_at = now
            entry.holdover_since = None
            entry.holdover_elapsed = 0.0
            entry.expired = False
        elif reported is ClockStateKind.HOLDOVER:
            if entry.expired:
                # Window already used up; only a LOCKED observation re-arms it.
                entry.state = ClockStateKind.FREERUN
            else:
                if entry.state is not ClockStateKind.HOLDOVER or not entry.observed:
                    entry.holdover_since = (
                        entry.locked_at if entry.locked_at is not None else now
                    )
                entry.state = ClockStateKind.HOLDOVER
                entry.holdover_elapsed = now - (entry.holdover_since or now)
        elif reported is ClockStateKind.FREERUN:
            if entry.state is not ClockStateKind.FREERUN:
                log.info("%s %s: clock reported FREERUN", entry.process, entry.interface)
            entry.state = ClockStateKind.FREERUN
            entry.holdover_since = None
            entry.holdover_elapsed = 0.0

        entry.observed = True
        entry.updated_at = now
        entry.source = sample.source
        entry.offset = sample.offset
        entry.max_offset = sample.max_offset
        entry.frequency = sample.frequency
        entry.delay = sample.delay
        entry.degraded = not entry.threshold.in_range(sample.offset)

    def _export(self, entry: ClockState) -> None:
        iface = metric_interface(entry.process, entry.interface)
        sink = self._sink
        sink.set_source(SignalKind.OFFSET, entry.source, entry.process, iface, entry.offset)
        sink.set_source(
            SignalKind.MAX_OFFSET, entry.source, entry.process, iface, entry.max_offset
        )
        sink.set_source(
            SignalKind.FREQUENCY_ADJUSTMENT,
            entry.source,
            entry.process,
            iface,
            entry.frequency,
        )
        sink.set_source(SignalKind.PATH_DELAY, entry.source, entry.process, iface, entry.delay)
        sink.set_clock_state(entry.process, iface, entry.state)

    # ------------------------------------------------------------------
    # Time-driven transitions
    # ------------------------------------------------------------------

    def expire_holdover(self) -> list[Key]:
        """Force FREERUN on every entry whose holdover window has run out.

        Returns:
            Keys that transitioned during this call.
        """
        now = self._clock()
        with self._lock:
            entries = list(self._states.values())

        expired: list[Key] = []
        for entry in entries:
            with entry.lock:
                if entry.state is not ClockStateKind.HOLDOVER or entry.holdover_since is None:
                    continue
                entry.holdover_elapsed = now - entry.holdover_since
                if entry.holdover_elapsed <= entry.threshold.holdover_timeout:
                    continue
                entry.state = ClockStateKind.FREERUN
                entry.expired = True
                self._sink.set_clock_state(
                    entry.process,
                    metric_interface(entry.process, entry.interface),
                    entry.state,
                )
                log.warning(
                    "%s %s: holdover timeout (%.1fs) exceeded, clock is FREERUN",
                    entry.process,
                    entry.interface,
                    entry.threshold.holdover_timeout,
                )
                expired.append(entry.key)
        return expired

    # ------------------------------------------------------------------
    # Reload support and inspection
    # ------------------------------------------------------------------

    def prune(self, valid_keys: Iterable[Key]) -> list[Key]:
        """Drop every entry whose key is not in ``valid_keys``.

        Metric series are removed too, unless a retained entry exports
        under the same interface label.

        Returns:
            The removed keys.
        """
        keep = set(valid_keys)
        with self._lock:
            removed = [e for k, e in self._states.items() if k not in keep]
            for entry in removed:
                del self._states[entry.key]
            live_labels = {
                (e.process, metric_interface(e.process, e.interface))
                for e in self._states.values()
            }

        for entry in removed:
            label = metric_interface(entry.process, entry.interface)
            if (entry.process, label) in live_labels:
                continue
            with entry.lock:
                self._sink.remove_interface(entry.source, entry.process, label)
            log.info("Removed clock state for %s %s", entry.process, entry.interface)
        return [e.key for e in removed]

    def get(self, process: str, interface: str) -> ClockState | None:
        """Return a copy of one entry, or None."""
        with self._lock:
            entry = self._states.get((process, interface))
        if entry is None:
            return None
        with entry.lock:
            return entry.copy()

    def keys(self) -> list[Key]:
        with self._lock:
            return sorted(self._states)

    def snapshot(self) -> dict[Key, ClockState]:
        """Return copies of all entries."""
        result: dict[Key, ClockState] = {}
        for key in self.keys():
            state = self.get(*key)
            if state is not None:
                result[key] = state
        return result
