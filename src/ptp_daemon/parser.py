"""Parse linuxptp status lines into metric samples.

Each supported process (ptp4l, phc2sys, ts2phc) prints periodic status lines
to stdout.  The parser does not implement a general grammar: it looks for a
fixed set of literal markers per process type and pulls the numeric field
that follows each marker.

Examples of recognised lines::

    phc2sys[1823126.732]: [ptp4l.0.config] CLOCK_REALTIME phc offset -10 s2 freq +8956 delay 508
    ts2phc[1896327.319]: [ts2phc.0.config] ens2f0 master offset -1 s2 freq -2
    ptp4l[74737.942]: [ptp4l.0.config] master offset -7 s2 freq -2568 path delay 745
    ptp4l[74737.942]: [ptp4l.0.config] rms 8 max 13 freq -1228 +/- 7 delay 745 +/- 1
    ptp4l[74737.942]: [ptp4l.0.config] CLOCK_CLASS_CHANGE 248
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import ClassVar

log = logging.getLogger(__name__)

PTP4L = "ptp4l"
PHC2SYS = "phc2sys"
TS2PHC = "ts2phc"

CLOCK_REALTIME = "CLOCK_REALTIME"
CLOCK_CLASS_MARKER = "CLOCK_CLASS_CHANGE"

# "ptp4l[74737.942]: " process prefix, then an optional "[ptp4l.0.config] " tag
_PREFIX_RE = re.compile(r"^\s*[\w.-]+\[[\d.]+\]:\s*")
_TAG_RE = re.compile(r"^\[[^\]]*\]\s*")


class SignalKind(enum.Enum):
    """Telemetry signals exported per process."""

    OFFSET = "offset"
    MAX_OFFSET = "max-offset"
    FREQUENCY_ADJUSTMENT = "frequency-adjustment"
    PATH_DELAY = "path-delay"
    CLOCK_STATE = "discrete-state"
    CLOCK_CLASS = "clock-class"


class ClockStateKind(enum.Enum):
    """Discrete clock quality."""

    FREERUN = "FREERUN"
    HOLDOVER = "HOLDOVER"
    LOCKED = "LOCKED"


# Servo state tokens printed right after the offset value.  Case-sensitive.
STATE_TOKENS: dict[str, ClockStateKind] = {
    "s0": ClockStateKind.FREERUN,
    "s1": ClockStateKind.HOLDOVER,
    "s2": ClockStateKind.LOCKED,
    "FREERUN": ClockStateKind.FREERUN,
    "HOLDOVER": ClockStateKind.HOLDOVER,
    "LOCKED": ClockStateKind.LOCKED,
}


@dataclass(frozen=True)
class Grammar:
    """Literal markers searched for in one process type's output."""

    # source marker -> exported "from" label
    sources: dict[str, str]
    # "from" label used for rms/max summary lines
    summary_source: str
    clock_class: bool = False

    OFFSET: ClassVar[str] = "offset"
    FREQ: ClassVar[str] = "freq"
    DELAY: ClassVar[str] = "delay"
    RMS: ClassVar[str] = "rms"
    MAX: ClassVar[str] = "max"


GRAMMARS: dict[str, Grammar] = {
    PTP4L: Grammar(
        sources={"master": "master"},
        summary_source="master",
        clock_class=True,
    ),
    PHC2SYS: Grammar(
        sources={"phc": "phc", "sys": "phc"},
        summary_source="phc",
    ),
    TS2PHC: Grammar(
        sources={"master": "master"},
        summary_source="master",
        clock_class=True,
    ),
}


@dataclass(frozen=True)
class MetricSample:
    """One decoded status line.

    An offset line carries offset, frequency and delay together and is
    applied as a unit.  A clock class line only sets ``value``.
    """

    kind: SignalKind
    process: str
    source: str = ""
    interface: str | None = None
    offset: float = 0.0
    max_offset: float = 0.0
    frequency: float = 0.0
    delay: float = 0.0
    state: ClockStateKind | None = None
    state_token: str = ""
    value: float = 0.0

    def numbers(self) -> tuple[float, ...]:
        """Return every numeric field, for range validation."""
        return (self.offset, self.max_offset, self.frequency, self.delay, self.value)


class DecodeError(ValueError):
    """A recognised field held a value that is not a number."""


def _number(fields: list[str], idx: int, name: str) -> float:
    if idx >= len(fields):
        raise DecodeError(f"missing value for {name!r}")
    raw = fields[idx]
    try:
        return float(raw)
    except ValueError:
        raise DecodeError(f"bad {name} value {raw!r}") from None


def _index_after(fields: list[str], marker: str, start: int) -> int:
    """Return the index of ``marker`` at or after ``start``, or -1."""
    try:
        return fields.index(marker, start)
    except ValueError:
        return -1


def _strip_prefix(line: str) -> str:
    body = _PREFIX_RE.sub("", line, count=1)
    return _TAG_RE.sub("", body, count=1)


def _parse_offset_line(
    process: str, grammar: Grammar, fields: list[str]
) -> MetricSample | None:
    src_idx = -1
    for idx in range(len(fields) - 1):
        if fields[idx] in grammar.sources and fields[idx + 1] == Grammar.OFFSET:
            src_idx = idx
            break
    if src_idx < 0:
        return None

    freq_idx = _index_after(fields, Grammar.FREQ, src_idx + 2)
    if freq_idx < 0:
        return None

    offset = _number(fields, src_idx + 2, Grammar.OFFSET)
    token = fields[src_idx + 3] if src_idx + 3 < freq_idx else ""
    frequency = _number(fields, freq_idx + 1, Grammar.FREQ)

    delay = 0.0
    delay_idx = _index_after(fields, Grammar.DELAY, freq_idx + 2)
    if delay_idx >= 0:
        delay = _number(fields, delay_idx + 1, Grammar.DELAY)

    return MetricSample(
        kind=SignalKind.OFFSET,
        process=process,
        source=grammar.sources[fields[src_idx]],
        interface=fields[src_idx - 1] if src_idx > 0 else None,
        offset=offset,
        max_offset=offset,
        frequency=frequency,
        delay=delay,
        state=STATE_TOKENS.get(token),
        state_token=token if token in STATE_TOKENS else "",
    )


def _parse_summary_line(
    process: str, grammar: Grammar, fields: list[str]
) -> MetricSample | None:
    rms_idx = _index_after(fields, Grammar.RMS, 0)
    if rms_idx < 0:
        return None
    max_idx = _index_after(fields, Grammar.MAX, rms_idx + 2)
    freq_idx = _index_after(fields, Grammar.FREQ, rms_idx + 2)
    if max_idx < 0 or freq_idx < 0:
        return None

    rms = _number(fields, rms_idx + 1, Grammar.RMS)
    max_offset = _number(fields, max_idx + 1, Grammar.MAX)
    frequency = _number(fields, freq_idx + 1, Grammar.FREQ)
    delay = 0.0
    delay_idx = _index_after(fields, Grammar.DELAY, freq_idx + 2)
    if delay_idx >= 0:
        delay = _number(fields, delay_idx + 1, Grammar.DELAY)

    return MetricSample(
        kind=SignalKind.OFFSET,
        process=process,
        source=grammar.summary_source,
        interface=fields[rms_idx - 1] if rms_idx > 0 else None,
        offset=rms,
        max_offset=max_offset,
        frequency=frequency,
        delay=delay,
    )


def _parse_clock_class(process: str, fields: list[str]) -> MetricSample | None:
    idx = _index_after(fields, CLOCK_CLASS_MARKER, 0)
    if idx < 0:
        return None
    value = _number(fields, idx + 1, "clock class")
    return MetricSample(kind=SignalKind.CLOCK_CLASS, process=process, value=value)


def parse(process_type: str, raw_line: str) -> MetricSample | None:
    """Decode one line of process output.

    Args:
        process_type: Logical process name selecting the grammar
            (``"ptp4l"``, ``"phc2sys"`` or ``"ts2phc"``).
        raw_line: One line of output, with or without a trailing newline.

    Returns:
        A :class:`MetricSample`, or ``None`` when the line carries no
        recognised telemetry or a recognised field fails to decode.
    """
    grammar = GRAMMARS.get(process_type)
    if grammar is None:
        return None

    fields = _strip_prefix(raw_line).split()
    if not fields:
        return None

    try:
        if grammar.clock_class and CLOCK_CLASS_MARKER in fields:
            return _parse_clock_class(process_type, fields)
        if Grammar.OFFSET in fields:
            return _parse_offset_line(process_type, grammar, fields)
        if Grammar.RMS in fields:
            return _parse_summary_line(process_type, grammar, fields)
    except DecodeError as exc:
        log.warning("%s: dropping line %r: %s", process_type, raw_line.strip(), exc)
    return None


def metric_interface(process: str, interface: str) -> str:
    """Return the interface label used when exporting metrics.

    ts2phc reports every port of a NIC; they are exported under one
    per-NIC alias with the port digit replaced by ``x`` (``ens2f0`` ->
    ``ens2fx``).
    """
    if process == TS2PHC and interface and interface != CLOCK_REALTIME:
        return interface[:-1] + "x"
    return interface
