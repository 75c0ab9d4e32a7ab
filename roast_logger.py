#!/usr/bin/env python3
"""
Roast Logger - Consolidated Telemetry Pipeline

Live logger for a two-probe coffee roaster. Polls the roaster's serial bridge,
decodes its fixed ASCII frames, tracks the roast session (charge, drop, resume
after reconnect), computes a smoothed Rate of Rise and lines up a previously
saved roast as a reference overlay.

This consolidated version contains all functionality in a single file for easy deployment.

Author: Coffee Analytics Team
Version: 0.1.0
"""

import argparse
import json
import logging
import math
import os
import random
import sys
import time
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import serial
from matplotlib.ticker import FuncFormatter, MultipleLocator


# =============================================================================
# CONFIGURATION
# =============================================================================

POLL_COMMAND = b"#001Nrn"          # Read request understood by the roaster
ERROR_SENTINEL = "Err\r\n"         # Reply sent when the roaster has no reading
MIN_FRAME_LENGTH = 10
HEX_DIGITS = "0123456789abcdefABCDEF"
PROBE_MIN = 0.0                    # Exclusive bounds for a sane reading (°C)
PROBE_MAX = 600.0
PROBES = ("probe1", "probe2")
PROBE_LABELS = {"probe1": "BT", "probe2": "ET"}

POLL_INTERVAL_S = 1.0
RESAMPLE_STEP_MS = 10_000
SMOOTHING_WINDOW = 5
IQR_FACTOR = 1.5
REFERENCE_LOOKBACK = timedelta(minutes=15)

RECONNECT_MAX_ATTEMPTS = 5
RECONNECT_BASE_DELAY_S = 2.0
RECONNECT_BACKOFF = 2.0
RECONNECT_MAX_DELAY_S = 60.0

DB_COLLECTION = "roast_logs"
DB_TEST_COLLECTION = "roast_logs_test"
ACTIVE_KEY = "active"
FINISHED_KEY_PREFIX = "roast_"
RECENT_ROASTS_LIMIT = 20
DEFAULT_COFFEE_AMOUNT = 150.0

UNSAVED_DATA_PROMPT = "You sure you want to clear collected data?"


# =============================================================================
# ERRORS
# =============================================================================

class TransitionError(ValueError):
    """Raised when a session operation is attempted outside its guard."""


class PersistenceError(RuntimeError):
    """Raised when the roast store cannot save, load or delete a record."""


class TransportError(RuntimeError):
    """Raised when the device link cannot connect, write or read."""


# =============================================================================
# FRAME DECODER MODULE
# =============================================================================

def decode_frame(raw: Union[bytes, str]) -> Optional[Tuple[float, float]]:
    """
    Decode one roaster reply into two probe temperatures.

    The reply is ASCII text of at least 10 characters holding two 4-digit
    hexadecimal fields at positions 1-4 and 7-10. Each field is a fixed-point
    value with one decimal (raw integer / 10).

    Args:
        raw: Frame as received from the transport

    Returns:
        (probe1, probe2) or None if the frame is malformed or out of range
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("ascii")
        except UnicodeDecodeError:
            return None
    else:
        text = raw

    if len(text) < MIN_FRAME_LENGTH or text == ERROR_SENTINEL:
        return None

    fields = (text[1:5], text[7:11])
    if any(len(f) != 4 or not all(c in HEX_DIGITS for c in f) for f in fields):
        return None

    probe1 = int(fields[0], 16) / 10
    probe2 = int(fields[1], 16) / 10

    if not (PROBE_MIN < probe1 < PROBE_MAX and PROBE_MIN < probe2 < PROBE_MAX):
        return None

    return probe1, probe2


def encode_frame(probe1: float, probe2: float) -> bytes:
    """Build a reply frame the way the roaster does (used by the simulator)."""
    return f"#{int(round(probe1 * 10)):04X},#{int(round(probe2 * 10)):04X}\r\n".encode("ascii")


# =============================================================================
# TELEMETRY LOG MODULE
# =============================================================================

@dataclass(frozen=True)
class TelemetryFrame:
    timestamp: datetime
    probe1: float
    probe2: float

    @property
    def is_valid(self) -> bool:
        return PROBE_MIN < self.probe1 < PROBE_MAX and PROBE_MIN < self.probe2 < PROBE_MAX

    def value(self, probe: str) -> float:
        if probe not in PROBES:
            raise KeyError(f"Unknown probe: {probe}")
        return getattr(self, probe)


@dataclass(frozen=True)
class DerivedPoint:
    offset_millis: int
    value: float


def offset_millis(timestamp: datetime, anchor: datetime) -> int:
    """Whole milliseconds from anchor to timestamp."""
    return (timestamp - anchor) // timedelta(milliseconds=1)


def frames_to_series(frames: Sequence[TelemetryFrame], probe: str, anchor: datetime) -> List[DerivedPoint]:
    """
    Project one probe of a frame sequence onto offsets from an anchor time.

    Args:
        frames: Time-ordered frames
        probe: 'probe1' or 'probe2'
        anchor: Time that maps to offset 0

    Returns:
        One DerivedPoint per frame
    """
    return [DerivedPoint(offset_millis(f.timestamp, anchor), f.value(probe)) for f in frames]


class TelemetryLog:
    """Append-only, strictly time-ordered store of frames for one session."""

    def __init__(self, frames: Optional[Sequence[TelemetryFrame]] = None):
        self._frames: List[TelemetryFrame] = []
        self._frozen = False
        for frame in frames or []:
            self.append(frame)

    def append(self, frame: TelemetryFrame) -> None:
        """
        Append a frame to the end of the log.

        Raises:
            ValueError: If the log is frozen, the frame is out of range, or its
                timestamp is not at least 1 ms after the latest frame
        """
        if self._frozen:
            raise ValueError("Telemetry log is frozen, the session has ended")
        if not frame.is_valid:
            raise ValueError(f"Frame out of range: {frame.probe1}, {frame.probe2}")
        # Ordered at the millisecond resolution of derived offsets
        if self._frames and offset_millis(frame.timestamp, self._frames[-1].timestamp) <= 0:
            raise ValueError(
                f"Frame at {frame.timestamp.isoformat()} is not after "
                f"{self._frames[-1].timestamp.isoformat()}"
            )
        self._frames.append(frame)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def frames(self) -> Tuple[TelemetryFrame, ...]:
        return tuple(self._frames)

    def latest(self) -> Optional[TelemetryFrame]:
        return self._frames[-1] if self._frames else None

    def earliest(self) -> Optional[TelemetryFrame]:
        return self._frames[0] if self._frames else None

    def since(self, start: datetime) -> List[TelemetryFrame]:
        """Frames with a timestamp at or after start."""
        return [f for f in self._frames if f.timestamp >= start]

    def series(self, probe: str, anchor: datetime) -> List[DerivedPoint]:
        return frames_to_series(self.since(anchor), probe, anchor)

    def to_dataframe(self) -> pd.DataFrame:
        """
        Convert the log to a DataFrame.

        Returns:
            DataFrame with logTime, probe1 and probe2 columns
        """
        return pd.DataFrame(
            {
                "logTime": pd.to_datetime([f.timestamp for f in self._frames], utc=True),
                "probe1": [f.probe1 for f in self._frames],
                "probe2": [f.probe2 for f in self._frames],
            }
        )

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[TelemetryFrame]:
        return iter(self._frames)

    def __getitem__(self, index: int) -> TelemetryFrame:
        return self._frames[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TelemetryLog):
            return NotImplemented
        return self._frames == other._frames

    def __repr__(self) -> str:
        return f"TelemetryLog({len(self._frames)} frames, frozen={self._frozen})"


@dataclass
class RoastSession:
    """
    One roast: metadata plus its telemetry log.

    start_time is the charge time, end_time the drop time. A session without
    end_time is active.
    """
    coffee_name: str = ""
    batch_number: int = 0
    input_mass: float = DEFAULT_COFFEE_AMOUNT
    output_mass: Optional[float] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    log: TelemetryLog = field(default_factory=TelemetryLog)

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def is_charged(self) -> bool:
        return self.start_time is not None

    @property
    def is_complete(self) -> bool:
        return self.start_time is not None and self.end_time is not None

    def anchor_time(self) -> Optional[datetime]:
        """Charge time if charged, else the earliest recorded frame."""
        if self.start_time is not None:
            return self.start_time
        earliest = self.log.earliest()
        return earliest.timestamp if earliest else None

    def finish(self, end_time: datetime) -> None:
        self.end_time = end_time
        self.log.freeze()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    # Naive timestamps are treated as UTC
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def session_to_record(session: RoastSession) -> Dict[str, Any]:
    """
    Serialize a session to the persisted record layout.

    Args:
        session: Session to serialize

    Returns:
        JSON-compatible record
    """
    return {
        "roastStartTime": _to_iso(session.start_time),
        "roastEndTime": _to_iso(session.end_time),
        "coffeeBatchNum": session.batch_number,
        "coffeeName": session.coffee_name,
        "coffeeAmount": session.input_mass,
        "coffeePostAmount": session.output_mass,
        "logData": [
            {"logTime": f.timestamp.isoformat(), "probe1": f.probe1, "probe2": f.probe2}
            for f in session.log
        ],
    }


def session_from_record(record: Dict[str, Any]) -> RoastSession:
    """
    Rebuild a session from a persisted record.

    Older records store the probes as BT/MET; both layouts are accepted.

    Args:
        record: Record produced by session_to_record()

    Returns:
        RoastSession; its log is frozen when the record has an end time

    Raises:
        ValueError: If the record is malformed
    """
    try:
        frames = []
        for entry in record.get("logData") or []:
            frames.append(TelemetryFrame(
                timestamp=_from_iso(entry["logTime"]),
                probe1=float(entry.get("probe1", entry.get("BT"))),
                probe2=float(entry.get("probe2", entry.get("MET"))),
            ))

        post_amount = record.get("coffeePostAmount")
        session = RoastSession(
            coffee_name=record.get("coffeeName") or "",
            batch_number=int(record.get("coffeeBatchNum") or 0),
            input_mass=float(record.get("coffeeAmount") or DEFAULT_COFFEE_AMOUNT),
            output_mass=float(post_amount) if post_amount is not None else None,
            start_time=_from_iso(record.get("roastStartTime")),
            end_time=_from_iso(record.get("roastEndTime")),
            log=TelemetryLog(frames),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid roast record: {e}") from e

    if session.end_time is not None:
        session.log.freeze()
    return session


def finished_record_key(session: RoastSession) -> str:
    """Store key for a finished roast, derived from its charge time."""
    if session.start_time is None:
        raise ValueError("A roast without a charge time has no finished key")
    start = session.start_time.astimezone(timezone.utc)
    return f"{FINISHED_KEY_PREFIX}{start.strftime('%Y%m%dT%H%M%S')}{start.microsecond // 1000:03d}Z"


def export_session_csv(session: RoastSession, output_file: Union[str, Path]) -> Path:
    """
    Export a session's telemetry to CSV.

    Args:
        session: Session to export
        output_file: Destination path

    Returns:
        Path that was written
    """
    output_file = Path(output_file)
    df = session.log.to_dataframe()
    anchor = session.anchor_time()
    if anchor is not None:
        df["offset_s"] = [offset_millis(f.timestamp, anchor) / 1000 for f in session.log]
    df.to_csv(output_file, index=False)
    return output_file


# =============================================================================
# RATE OF RISE MODULE
# =============================================================================

def differentiate(series: Sequence[DerivedPoint]) -> List[DerivedPoint]:
    """
    Rate of change between consecutive points, in units per minute.

    Each rate is stamped with the offset of the later point of its pair.

    Args:
        series: Points strictly ordered by offset

    Returns:
        len(series) - 1 rate points, or an empty list for fewer than 2 points

    Raises:
        ValueError: If offsets are not strictly increasing
    """
    if len(series) < 2:
        return []

    offsets = np.array([p.offset_millis for p in series], dtype=np.int64)
    values = np.array([p.value for p in series], dtype=float)

    dt = np.diff(offsets)
    if np.any(dt <= 0):
        raise ValueError("Series must be strictly ordered by offset")

    rates = np.diff(values) / (dt / 60_000.0)
    return [DerivedPoint(int(o), float(r)) for o, r in zip(offsets[1:], rates)]


def resample(
    points: Sequence[DerivedPoint],
    start_millis: int,
    end_millis: int,
    step_millis: int = RESAMPLE_STEP_MS,
) -> List[DerivedPoint]:
    """
    Resample onto a fixed grid from start to end.

    Each grid value is the unweighted mean of the points within half a step
    of it (inclusive on both sides). Grid points with no samples yield 0.

    Args:
        points: Points to resample
        start_millis: First grid offset
        end_millis: Last offset the grid may reach
        step_millis: Grid spacing

    Returns:
        One point per grid offset
    """
    if step_millis <= 0:
        raise ValueError("step_millis must be positive")
    if not points:
        return []

    offsets = np.array([p.offset_millis for p in points], dtype=np.int64)
    values = np.array([p.value for p in points], dtype=float)
    half = step_millis / 2

    grid = np.arange(start_millis, end_millis + 1, step_millis, dtype=np.int64)
    resampled = []
    for g in grid:
        in_window = np.abs(offsets - g) <= half
        value = float(values[in_window].mean()) if in_window.any() else 0.0
        resampled.append(DerivedPoint(int(g), value))
    return resampled


def nearest_rank_percentile(values: Union[Sequence[float], np.ndarray], fraction: float) -> float:
    """
    Non-interpolated percentile: sorted(values)[floor(fraction * n)].

    Args:
        values: Sample values
        fraction: Percentile as a fraction in [0, 1]

    Returns:
        The selected sample value
    """
    ordered = np.sort(np.asarray(values, dtype=float))
    if ordered.size == 0:
        raise ValueError("Cannot take a percentile of no values")
    index = min(int(math.floor(fraction * ordered.size)), ordered.size - 1)
    return float(ordered[index])


def reject_outliers(points: Sequence[DerivedPoint], factor: float = IQR_FACTOR) -> List[DerivedPoint]:
    """
    Drop points outside [Q1 - factor*IQR, Q3 + factor*IQR].

    Args:
        points: Points to filter
        factor: IQR multiplier

    Returns:
        Points inside the fences, order preserved
    """
    if not points:
        return []

    values = np.array([p.value for p in points], dtype=float)
    q1 = nearest_rank_percentile(values, 0.25)
    q3 = nearest_rank_percentile(values, 0.75)
    iqr = q3 - q1
    low, high = q1 - factor * iqr, q3 + factor * iqr

    return [p for p in points if low <= p.value <= high]


def weighted_moving_average(points: Sequence[DerivedPoint], window_size: int = SMOOTHING_WINDOW) -> List[DerivedPoint]:
    """
    Trailing weighted moving average with weights 1..k toward the newest point.

    Until the window fills, the shorter available window is used.

    Args:
        points: Points to smooth
        window_size: Maximum number of points in the window

    Returns:
        Smoothed points at the same offsets
    """
    if window_size < 1:
        raise ValueError("window_size must be at least 1")

    values = np.array([p.value for p in points], dtype=float)
    smoothed = []
    for i, point in enumerate(points):
        window = values[max(0, i - window_size + 1):i + 1]
        weights = np.arange(1, window.size + 1, dtype=float)
        smoothed.append(DerivedPoint(point.offset_millis, float(np.dot(window, weights) / weights.sum())))
    return smoothed


def compute_rate_of_rise(
    series: Sequence[DerivedPoint],
    step_millis: int = RESAMPLE_STEP_MS,
    window_size: int = SMOOTHING_WINDOW,
) -> List[DerivedPoint]:
    """
    Smoothed rate of rise of a temperature series (degrees per minute).

    Pipeline: differentiate -> resample -> reject outliers -> smooth.
    Points whose offset does not advance past the previous kept point are
    skipped, so a repeated offset never stops the pipeline.

    Args:
        series: Temperature points ordered by offset
        step_millis: Resample grid spacing
        window_size: Smoothing window

    Returns:
        RoR points; empty for fewer than 2 input points
    """
    ordered: List[DerivedPoint] = []
    for point in series:
        if ordered and point.offset_millis <= ordered[-1].offset_millis:
            continue
        ordered.append(point)
    series = ordered

    rates = differentiate(series)
    if not rates:
        return []

    resampled = resample(rates, series[0].offset_millis, series[-1].offset_millis, step_millis)
    kept = reject_outliers(resampled)
    return weighted_moving_average(kept, window_size)


# =============================================================================
# REFERENCE ALIGNER MODULE
# =============================================================================

@dataclass
class Overlay:
    batch_number: int
    anchor: datetime
    primary: Dict[str, List[DerivedPoint]]
    rate_of_rise: Dict[str, List[DerivedPoint]]


@dataclass
class ReferenceCache:
    key: Tuple[int, Optional[datetime]]
    earliest_time: Optional[datetime] = None
    anchor: Optional[datetime] = None
    window: List[TelemetryFrame] = field(default_factory=list)
    primary: Dict[str, List[DerivedPoint]] = field(default_factory=dict)
    rate_of_rise: Dict[str, List[DerivedPoint]] = field(default_factory=dict)


class ReferenceAligner:
    """
    Lines up a completed roast against the live one.

    Before the live roast charges, the reference is anchored at its earliest
    frame inside the lookback window; afterwards at its own charge time. The
    filtered window and its RoR are cached per reference and only rebuilt when
    the anchor moves or another reference is pinned. Unpinning keeps the cache.
    """

    def __init__(
        self,
        lookback: timedelta = REFERENCE_LOOKBACK,
        step_millis: int = RESAMPLE_STEP_MS,
        window_size: int = SMOOTHING_WINDOW,
    ):
        self.lookback = lookback
        self.step_millis = step_millis
        self.window_size = window_size
        self.reference: Optional[RoastSession] = None
        self.recompute_count = 0
        self._cache: Optional[ReferenceCache] = None

    @staticmethod
    def can_pin(reference: Optional[RoastSession]) -> bool:
        return reference is not None and reference.is_complete

    @property
    def pinned(self) -> bool:
        return self.reference is not None

    def pin(self, reference: RoastSession) -> None:
        if not self.can_pin(reference):
            raise TransitionError("Only a completed roast with charge and drop times can be pinned")
        self.reference = reference

    def unpin(self) -> None:
        self.reference = None

    def load_window(self, reference: RoastSession) -> List[TelemetryFrame]:
        """Frames from the lookback cutoff before charge onward."""
        cutoff = reference.start_time - self.lookback
        return reference.log.since(cutoff)

    def align(self, live_charged: bool) -> Optional[Overlay]:
        """
        Produce the overlay for the pinned reference.

        Args:
            live_charged: Whether the live session has charged

        Returns:
            Overlay with offsets from the reference anchor, or None when unpinned
        """
        reference = self.reference
        if reference is None:
            return None

        key = (reference.batch_number, reference.start_time)
        if self._cache is None or self._cache.key != key:
            self._cache = ReferenceCache(key=key)
        cache = self._cache

        loaded: Optional[List[TelemetryFrame]] = None
        if live_charged:
            anchor = reference.start_time
        else:
            if cache.earliest_time is None:
                loaded = self.load_window(reference)
                cache.earliest_time = loaded[0].timestamp if loaded else reference.start_time
            anchor = cache.earliest_time

        if anchor != cache.anchor:
            if loaded is None:
                loaded = self.load_window(reference)
            cache.window = [f for f in loaded if f.timestamp >= anchor]
            cache.primary = {p: frames_to_series(cache.window, p, anchor) for p in PROBES}
            cache.rate_of_rise = {
                p: compute_rate_of_rise(cache.primary[p], self.step_millis, self.window_size)
                for p in PROBES
            }
            cache.anchor = anchor
            self.recompute_count += 1

        return Overlay(
            batch_number=reference.batch_number,
            anchor=anchor,
            primary={p: list(s) for p, s in cache.primary.items()},
            rate_of_rise={p: list(s) for p, s in cache.rate_of_rise.items()},
        )


# =============================================================================
# CHART PROJECTOR MODULE
# =============================================================================

@dataclass
class ChartProjection:
    anchor: Optional[datetime]
    primary: Dict[str, List[DerivedPoint]]
    rate_of_rise: Dict[str, List[DerivedPoint]]
    overlay: Optional[Overlay] = None

    @property
    def overlay_present(self) -> bool:
        return self.overlay is not None

    def latest(self) -> Dict[str, Optional[float]]:
        """
        Most recent value of every live series, for numeric readouts.

        Returns:
            {'probe1': .., 'probe2': .., 'probe1_ror': .., 'probe2_ror': ..};
            None where a series is empty. The series are left untouched.
        """
        readout: Dict[str, Optional[float]] = {}
        for probe in PROBES:
            points = self.primary.get(probe) or []
            readout[probe] = points[-1].value if points else None
        for probe in PROBES:
            points = self.rate_of_rise.get(probe) or []
            readout[f"{probe}_ror"] = points[-1].value if points else None
        return readout


class ChartProjector:
    """Builds renderable series for a session, memoizing its RoR."""

    def __init__(self, step_millis: int = RESAMPLE_STEP_MS, window_size: int = SMOOTHING_WINDOW):
        self.step_millis = step_millis
        self.window_size = window_size
        self.recompute_count = 0
        self._ror_key: Optional[Tuple[int, int, Optional[datetime], datetime]] = None
        self._ror: Dict[str, List[DerivedPoint]] = {p: [] for p in PROBES}

    def project(self, session: RoastSession, overlay: Optional[Overlay] = None) -> ChartProjection:
        """
        Project a session onto offsets from its anchor.

        Args:
            session: Session to project
            overlay: Reference overlay, if one is pinned

        Returns:
            ChartProjection for the renderer
        """
        anchor = session.anchor_time()
        if anchor is None:
            return ChartProjection(None, {p: [] for p in PROBES}, {p: [] for p in PROBES}, overlay)

        primary = {p: session.log.series(p, anchor) for p in PROBES}

        latest = session.log.latest()
        key = (id(session.log), len(session.log), latest.timestamp if latest else None, anchor)
        if key != self._ror_key:
            self._ror = {
                p: compute_rate_of_rise(primary[p], self.step_millis, self.window_size)
                for p in PROBES
            }
            self._ror_key = key
            self.recompute_count += 1

        return ChartProjection(
            anchor=anchor,
            primary=primary,
            rate_of_rise={p: list(s) for p, s in self._ror.items()},
            overlay=overlay,
        )


def plot_projection(
    projection: ChartProjection,
    title: Optional[str] = None,
    save_path: Optional[str] = None,
) -> None:
    """
    Plot temperatures, RoR and the reference overlay of a projection.

    Args:
        projection: Projection from ChartProjector.project()
        title: Optional title for the plot
        save_path: Optional path to save the plot
    """
    fig, ax1 = plt.subplots(figsize=(12, 6))
    ax2 = ax1.twinx()

    # Color palette
    colors = {"probe1": "#27aeef", "probe2": "#ea5545"}

    for probe in PROBES:
        points = projection.primary[probe]
        ax1.plot([p.offset_millis / 1000 for p in points], [p.value for p in points],
                 color=colors[probe], label=PROBE_LABELS[probe])

    if projection.overlay is not None:
        for probe in PROBES:
            points = projection.overlay.primary[probe]
            ax1.plot([p.offset_millis / 1000 for p in points], [p.value for p in points],
                     color=colors[probe], alpha=0.5, linewidth=1, linestyle="--",
                     label=f"Target {PROBE_LABELS[probe]}")

    ror = projection.rate_of_rise["probe1"]
    ax2.plot([p.offset_millis / 1000 for p in ror], [p.value for p in ror],
             linestyle="--", color="lightgray", label="RoR (°/min)")
    if projection.overlay is not None:
        ref_ror = projection.overlay.rate_of_rise["probe1"]
        ax2.plot([p.offset_millis / 1000 for p in ref_ror], [p.value for p in ref_ror],
                 linestyle=":", color="gray", label="Target RoR")
    ax2.set_ylabel("Rate of Rise (°/min)")

    ax1.xaxis.set_major_locator(MultipleLocator(60))
    ax1.xaxis.set_major_formatter(
        FuncFormatter(lambda x, pos: f"{int(x//60)}:{int(x%60):02d}")
    )
    ax1.set_xlabel("Time since anchor (mm:ss)")
    ax1.set_ylabel("Temperature (°)")

    # Legend outside
    h1, l1 = ax1.get_legend_handles_labels()
    h2, l2 = ax2.get_legend_handles_labels()
    ax1.legend(h1 + h2, l1 + l2, loc="upper left",
               bbox_to_anchor=(1.1, .6), borderaxespad=0)

    ax1.grid(True, axis='y')
    ax1.grid(False, axis='x')
    ax2.grid(False)

    if title:
        plt.title(title)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        plt.close(fig)
    else:
        plt.show()


# =============================================================================
# PERSISTENCE MODULE
# =============================================================================

class RoastStore:
    """
    Keyed document store for roast records.

    Implementations raise PersistenceError for any failure.
    """

    def save(self, key: str, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


class JsonFileStore(RoastStore):
    """One JSON document per key under <directory>/<collection>/."""

    def __init__(self, directory: Union[str, Path], collection: str = DB_COLLECTION):
        self.path = Path(directory) / collection

    def _file(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise PersistenceError(f"Invalid record key: {key!r}")
        return self.path / f"{key}.json"

    def save(self, key: str, record: Dict[str, Any]) -> None:
        target = self._file(key)
        tmp = target.with_suffix(".json.tmp")
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
            os.replace(tmp, target)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not save '{key}': {e}") from e

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        target = self._file(key)
        if not target.exists():
            return None
        try:
            with open(target, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Could not load '{key}': {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._file(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Could not delete '{key}': {e}") from e

    def keys(self) -> List[str]:
        if not self.path.exists():
            return []
        return sorted(p.stem for p in self.path.glob("*.json"))


def list_recent_roasts(store: RoastStore, limit: int = RECENT_ROASTS_LIMIT) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Finished roasts, most recent charge first.

    Args:
        store: Roast store
        limit: Maximum number of records

    Returns:
        (key, record) pairs
    """
    records = []
    for key in store.keys():
        if not key.startswith(FINISHED_KEY_PREFIX):
            continue
        record = store.load(key)
        if record is None or not record.get("roastStartTime"):
            warnings.warn(f"Skipping roast record without a start time: {key}")
            continue
        records.append((key, record))

    records.sort(key=lambda item: _from_iso(item[1]["roastStartTime"]), reverse=True)
    return records[:limit]


def next_batch_number(store: RoastStore) -> int:
    """Batch number following the most recent finished roast (1 if none)."""
    recent = list_recent_roasts(store, limit=1)
    if not recent:
        return 1
    return int(recent[0][1].get("coffeeBatchNum") or 0) + 1


# =============================================================================
# TRANSPORT MODULE
# =============================================================================

class Transport:
    """
    Contract for the roaster link.

    The state machine only uses connect(), close(), send() and receive();
    receive() returns every raw reply that arrived since the last call.
    """

    @property
    def is_connected(self) -> bool:
        raise NotImplementedError

    def connect(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def send(self, command: bytes) -> None:
        raise NotImplementedError

    def receive(self) -> List[bytes]:
        raise NotImplementedError


class SerialTransport(Transport):
    """Roaster reached through a serial port (USB or BLE-serial bridge)."""

    def __init__(self, port: str, baudrate: int = 9600, timeout_s: float = 1.0, logger: Optional[logging.Logger] = None):
        self.port = port
        self.baudrate = baudrate
        self.timeout_s = timeout_s
        self.logger = logger or logging.getLogger("RoastLogger")
        self._ser: Optional[serial.Serial] = None

    @property
    def is_connected(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def connect(self) -> None:
        self.logger.info(f"Attempting to connect to {self.port}...")
        try:
            self._ser = serial.Serial(self.port, self.baudrate, timeout=self.timeout_s)
            self._ser.reset_input_buffer()
            self._ser.reset_output_buffer()
        except serial.SerialException as e:
            self._ser = None
            raise TransportError(f"Connection to {self.port} failed: {e}") from e
        self.logger.info(f"Connected to {self.port}")

    def close(self) -> None:
        if self._ser is not None and self._ser.is_open:
            self._ser.close()
        self._ser = None

    def send(self, command: bytes) -> None:
        if not self.is_connected:
            raise TransportError("Serial port not connected")
        try:
            self._ser.write(command)
        except serial.SerialException as e:
            raise TransportError(f"Error writing value: {e}") from e

    def receive(self) -> List[bytes]:
        if not self.is_connected:
            raise TransportError("Serial port not connected")
        frames = []
        try:
            while self._ser.in_waiting:
                line = self._ser.readline()
                if not line:
                    break
                frames.append(line)
        except (serial.SerialException, OSError) as e:
            self.close()
            raise TransportError(f"Device disconnected: {e}") from e
        return frames


class SimulatedTransport(Transport):
    """
    Fabricates replies for a plausible roast curve.

    Each poll command queues one frame; simulated time advances by
    seconds_per_poll per poll.
    """

    def __init__(self, seconds_per_poll: float = POLL_INTERVAL_S, seed: Optional[int] = None):
        self.seconds_per_poll = seconds_per_poll
        self.ambient_temp = 22.0
        self.drop_temp = 215.0
        self._rng = random.Random(seed)
        self._elapsed = 0.0
        self._connected = False
        self._pending: List[bytes] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self._connected = True

    def close(self) -> None:
        self._connected = False
        self._pending = []

    def bean_temperature(self, elapsed_s: float) -> float:
        rise = (self.drop_temp - self.ambient_temp) * (1 - math.exp(-elapsed_s / 300))
        return self.ambient_temp + rise + self._rng.uniform(-0.8, 0.8)

    def send(self, command: bytes) -> None:
        if not self._connected:
            raise TransportError("Simulated roaster not connected")
        if command != POLL_COMMAND:
            return
        self._elapsed += self.seconds_per_poll
        bt = self.bean_temperature(self._elapsed)
        et = bt + 40 + self._rng.uniform(-3, 3)
        self._pending.append(encode_frame(bt, et))

    def receive(self) -> List[bytes]:
        if not self._connected:
            raise TransportError("Simulated roaster not connected")
        frames, self._pending = self._pending, []
        return frames


# =============================================================================
# ALARM MODULE
# =============================================================================

class TemperatureAlarm:
    """
    Speaks the bean temperature while it is above max_temp.

    With a blocking speak() the announcement is over when speak() returns.
    A speech engine that returns immediately and talks in the background
    passes wait_for_finish=True and calls finished() when the utterance ends;
    no new announcement starts until then.
    """

    def __init__(
        self,
        max_temp: float,
        speak: Callable[[str], None],
        enabled: bool = True,
        wait_for_finish: bool = False,
    ):
        self.max_temp = max_temp
        self.speak = speak
        self.enabled = enabled
        self.wait_for_finish = wait_for_finish
        self._speaking = False

    @property
    def speaking(self) -> bool:
        return self._speaking

    def is_alarming(self, bean_temp: float) -> bool:
        return self.enabled and bean_temp > self.max_temp

    def finished(self) -> None:
        """Release the alarm once the current utterance has ended."""
        self._speaking = False

    def check(self, bean_temp: float) -> bool:
        """
        Announce the temperature if it is over the limit.

        Returns:
            Whether the alarm condition holds
        """
        if not self.is_alarming(bean_temp):
            return False
        if self._speaking:
            return True
        self._speaking = True
        try:
            self.speak(f"Temp is {bean_temp:.0f}")
        except Exception:
            self._speaking = False
            raise
        if not self.wait_for_finish:
            self._speaking = False
        return True


# =============================================================================
# SESSION STATE MACHINE MODULE
# =============================================================================

class RoastState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    LOGGING = "logging"
    ROASTING = "roasting"
    ENDED = "ended"


CONNECTED_STATES = (RoastState.CONNECTED, RoastState.LOGGING, RoastState.ROASTING, RoastState.ENDED)
LOGGING_STATES = (RoastState.LOGGING, RoastState.ROASTING)


class ReconnectStatus(Enum):
    IDLE = "idle"
    PENDING = "pending"
    GAVE_UP = "gave_up"


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    base_delay_s: float = RECONNECT_BASE_DELAY_S
    backoff_factor: float = RECONNECT_BACKOFF
    max_delay_s: float = RECONNECT_MAX_DELAY_S

    def delay(self, attempt: int) -> timedelta:
        """Wait before the given attempt (0-based)."""
        seconds = min(self.base_delay_s * self.backoff_factor ** attempt, self.max_delay_s)
        return timedelta(seconds=seconds)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_duration(duration: Optional[timedelta]) -> str:
    """Format a duration as m:ss, or '-' when there is none."""
    if duration is None:
        return "-"
    total = max(int(duration.total_seconds()), 0)
    return f"{total // 60}:{total % 60:02d}"


class RoastSessionStateMachine:
    """
    Owns the active roast session and its lifecycle.

    DISCONNECTED -> CONNECTED -> LOGGING -> ROASTING -> ENDED. ENDED is still
    connected and accepts a fresh start. Every operation has a can_* guard;
    calling an operation whose guard is false raises TransitionError and
    leaves the state untouched.

    The host drives the machine by calling tick() on its polling timer and
    service() to run due reconnect attempts. All work happens synchronously
    inside those calls.
    """

    def __init__(
        self,
        transport: Transport,
        store: RoastStore,
        clock: Callable[[], datetime] = _utc_now,
        logger: Optional[logging.Logger] = None,
        alarm: Optional[TemperatureAlarm] = None,
        on_error: Optional[Callable[[str], None]] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        poll_interval: timedelta = timedelta(seconds=POLL_INTERVAL_S),
        step_millis: int = RESAMPLE_STEP_MS,
        window_size: int = SMOOTHING_WINDOW,
        lookback: timedelta = REFERENCE_LOOKBACK,
    ):
        self.transport = transport
        self.store = store
        self.clock = clock
        self.logger = logger or logging.getLogger("RoastLogger")
        self.alarm = alarm
        self.on_error = on_error
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self.poll_interval = poll_interval

        self.state = RoastState.DISCONNECTED
        self.session = RoastSession()
        self.loaded_roast: Optional[RoastSession] = None
        self.aligner = ReferenceAligner(lookback, step_millis, window_size)
        self.projector = ChartProjector(step_millis, window_size)
        self.projection = self.projector.project(self.session)

        self.polling = False
        self.duration_ticking = False
        self.log_start_time: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._duration_stopped_at: Optional[datetime] = None

        self.reconnect_status = ReconnectStatus.IDLE
        self.reconnect_attempts = 0
        self.next_reconnect_at: Optional[datetime] = None

        self._next_poll_at: Optional[datetime] = None
        self._interrupted_state: Optional[RoastState] = None
        self._save_failed = False

    # ----------------------------
    # Guards
    # ----------------------------

    @property
    def is_connected(self) -> bool:
        return self.state in CONNECTED_STATES

    @property
    def is_logging(self) -> bool:
        return self.state in LOGGING_STATES

    @property
    def is_roasting(self) -> bool:
        return self.state == RoastState.ROASTING

    def can_connect(self) -> bool:
        return self.state == RoastState.DISCONNECTED

    def can_start_logging(self) -> bool:
        return self.state in (RoastState.CONNECTED, RoastState.ENDED)

    def can_resume(self) -> bool:
        return (
            self.is_connected
            and not self.is_logging
            and self.session.start_time is not None
            and self.session.end_time is None
        )

    def can_charge(self) -> bool:
        return (
            self.state == RoastState.LOGGING
            and self.session.start_time is None
            and bool(self.session.coffee_name.strip())
            and len(self.session.log) > 0
        )

    def can_drop(self) -> bool:
        return self.state == RoastState.ROASTING and self.session.end_time is None

    def can_stop_logging(self) -> bool:
        return self.state == RoastState.LOGGING and self.session.start_time is None

    def can_disconnect(self) -> bool:
        return self.is_connected

    def can_save(self) -> bool:
        return self.session.start_time is not None

    def can_load(self) -> bool:
        return not self.is_logging

    def can_edit_coffee(self) -> bool:
        return not self.is_roasting and self.session.is_active

    def can_pin(self) -> bool:
        return (
            not self.is_logging
            and not self.aligner.pinned
            and ReferenceAligner.can_pin(self.loaded_roast)
        )

    def can_unpin(self) -> bool:
        return not self.is_logging and self.aligner.pinned

    def _require(self, allowed: bool, operation: str) -> None:
        if not allowed:
            raise TransitionError(f"Cannot {operation} while {self.state.value}")

    # ----------------------------
    # Connection
    # ----------------------------

    def connect(self) -> bool:
        """
        Open the transport and resume an unfinished session.

        Returns:
            Whether the transport connected
        """
        self._require(self.can_connect(), "connect")
        try:
            self.transport.connect()
        except TransportError as e:
            self.logger.error(f"Connection failed: {e}")
            return False

        self.reconnect_status = ReconnectStatus.IDLE
        self.reconnect_attempts = 0
        self.next_reconnect_at = None
        self._on_connected()
        return True

    def _on_connected(self) -> None:
        self.state = RoastState.CONNECTED
        self.logger.info("Connected")

        if self.can_resume():
            self.start_logging(resume=True)
        elif self._interrupted_state == RoastState.LOGGING and self.session.is_active:
            self._begin_polling()
            self.state = RoastState.LOGGING
            self.logger.info("Resumed logging")
        self._interrupted_state = None

    def disconnect(self) -> None:
        """Handle loss of the device link and schedule a reconnect."""
        self._require(self.can_disconnect(), "disconnect")
        self.logger.warning("Device disconnected")

        self._interrupted_state = self.state if self.is_logging else None
        self._stop_polling()
        self.transport.close()
        self.state = RoastState.DISCONNECTED

        self.reconnect_attempts = 0
        self.reconnect_status = ReconnectStatus.PENDING
        self.next_reconnect_at = self.clock() + self.reconnect_policy.delay(0)

    def service(self, now: Optional[datetime] = None) -> None:
        """Run a reconnect attempt if one is due."""
        if self.reconnect_status != ReconnectStatus.PENDING:
            return
        now = now or self.clock()
        if now < self.next_reconnect_at:
            return

        self.logger.info("Attempting to reconnect...")
        try:
            self.transport.connect()
        except TransportError as e:
            self.reconnect_attempts += 1
            self.logger.error(f"Reconnection failed ({self.reconnect_attempts}/"
                              f"{self.reconnect_policy.max_attempts}): {e}")
            if self.reconnect_attempts >= self.reconnect_policy.max_attempts:
                self.reconnect_status = ReconnectStatus.GAVE_UP
                self.next_reconnect_at = None
                self._report_error(f"Giving up on reconnecting after {self.reconnect_attempts} attempts")
            else:
                self.next_reconnect_at = now + self.reconnect_policy.delay(self.reconnect_attempts)
            return

        self.reconnect_status = ReconnectStatus.IDLE
        self.reconnect_attempts = 0
        self.next_reconnect_at = None
        self._on_connected()

    # ----------------------------
    # Logging lifecycle
    # ----------------------------

    def set_coffee(self, name: str, input_mass: Optional[float] = None) -> None:
        self._require(self.can_edit_coffee(), "edit coffee details")
        self.session.coffee_name = name
        if input_mass is not None:
            self.session.input_mass = float(input_mass)

    def set_output_mass(self, output_mass: float) -> None:
        # Roasted weight is only known after drop, so it stays editable
        self.session.output_mass = float(output_mass)

    def _has_unsaved_data(self) -> bool:
        return self.session.start_time is not None and (self.session.is_active or self._save_failed)

    def _begin_polling(self) -> None:
        self.polling = True
        self.duration_ticking = True
        self._duration_stopped_at = None
        self._next_poll_at = self.clock()

    def _stop_polling(self) -> None:
        # The duration readout holds its value until polling resumes
        if self.duration_ticking:
            self._duration_stopped_at = self.clock()
        self.polling = False
        self.duration_ticking = False

    def start_logging(self, resume: bool = False, confirm: Optional[Callable[[str], bool]] = None) -> bool:
        """
        Start polling the roaster.

        Args:
            resume: Continue the current charged session without clearing it
            confirm: Asked before discarding an unsaved session

        Returns:
            False if the user declined to discard data, True otherwise
        """
        if resume:
            self._require(self.can_resume(), "resume logging")
            if self.log_start_time is None:
                self.log_start_time = self.clock()
            self._begin_polling()
            self.state = RoastState.ROASTING
            self.logger.info("Resumed active roast")
            self.refresh()
            return True

        self._require(self.can_start_logging(), "start logging")
        if self._has_unsaved_data() and (confirm is None or not confirm(UNSAVED_DATA_PROMPT)):
            self.logger.info("Start cancelled, collected data kept")
            return False

        previous = self.session
        self.session = RoastSession(
            coffee_name=previous.coffee_name,
            batch_number=self._next_batch_number(previous.batch_number),
            input_mass=previous.input_mass,
        )
        self._save_failed = False
        self.log_start_time = self.clock()
        self._begin_polling()
        self.state = RoastState.LOGGING
        self.logger.info(f"Starting logging, batch #{self.session.batch_number}")
        self.refresh()
        return True

    def _next_batch_number(self, previous: int) -> int:
        try:
            return next_batch_number(self.store)
        except PersistenceError as e:
            self._report_error(f"Failed to read last batch number! | {e}")
            return previous + 1

    def stop_logging(self) -> None:
        self._require(self.can_stop_logging(), "stop logging")
        self._stop_polling()
        self.state = RoastState.CONNECTED
        self.logger.info("Logging stopped")

    def charge(self) -> None:
        """Mark the beans going in; the latest frame becomes the anchor."""
        self._require(self.can_charge(), "charge")
        self.session.start_time = self.session.log.latest().timestamp
        self.duration_ticking = True
        self.state = RoastState.ROASTING
        self.logger.info(f"Roast started at {self.session.start_time.isoformat()}")
        self.refresh()
        self._persist()

    def drop(self) -> None:
        """Mark the beans coming out and archive the roast."""
        self._require(self.can_drop(), "drop")
        self.session.finish(self.clock())
        self.polling = False
        self.duration_ticking = False
        self.state = RoastState.ENDED
        self.logger.info(f"Roast ended after {format_duration(self.duration())}")
        self.refresh()
        self._persist()

    # ----------------------------
    # Telemetry
    # ----------------------------

    def tick(self, now: Optional[datetime] = None) -> List[TelemetryFrame]:
        """
        One polling-timer tick: send the read command when due and take in
        whatever the roaster replied.

        Each reply is stamped when it is taken in. Replies drained within the
        same millisecond as the previous frame are stamped 1 ms after it, so a
        burst keeps every frame in arrival order.

        Returns:
            Frames appended during this tick
        """
        if not self.polling:
            return []
        now = now or self.clock()

        if self._next_poll_at is None or now >= self._next_poll_at:
            self._next_poll_at = now + self.poll_interval
            try:
                self.transport.send(POLL_COMMAND)
            except TransportError as e:
                self.logger.error(f"Error writing value: {e}")

        try:
            replies = self.transport.receive()
        except TransportError as e:
            self.logger.error(str(e))
            if not self.transport.is_connected:
                self.disconnect()
            return []

        appended = []
        for raw in replies:
            arrived = self.clock()
            latest = self.session.log.latest()
            if latest is not None and offset_millis(arrived, latest.timestamp) == 0:
                arrived = latest.timestamp + timedelta(milliseconds=1)
            frame = self.receive_frame(raw, arrived)
            if frame is not None:
                appended.append(frame)
        return appended

    def receive_frame(self, raw: Union[bytes, str], now: Optional[datetime] = None) -> Optional[TelemetryFrame]:
        """
        Decode one reply and append it to the session.

        Replies arriving while not logging are ignored; malformed ones are
        dropped silently.

        Returns:
            The appended frame, or None
        """
        if not self.is_logging:
            self.logger.debug("Ignoring reply received while not logging")
            return None

        decoded = decode_frame(raw)
        if decoded is None:
            self.logger.debug(f"Dropped malformed reply: {raw!r}")
            return None

        frame = TelemetryFrame(now or self.clock(), *decoded)
        try:
            self.session.log.append(frame)
        except ValueError as e:
            warnings.warn(f"Dropped frame: {e}")
            return None

        self.logger.debug(f"Received BT={frame.probe1:.1f} ET={frame.probe2:.1f}")
        if self.alarm is not None:
            self.alarm.check(frame.probe1)
        self.refresh()
        return frame

    def refresh(self) -> ChartProjection:
        """Recompute the chart projection for the current session."""
        overlay = self.aligner.align(live_charged=self.session.start_time is not None)
        self.projection = self.projector.project(self.session, overlay)
        return self.projection

    def duration(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """
        Elapsed roast time (or logging time before charge).

        Runs while duration_ticking; once polling stops it holds the value it
        had at that moment. A dropped roast reports end - start.
        """
        if self.session.start_time is not None and self.session.end_time is not None:
            return self.session.end_time - self.session.start_time
        if self.duration_ticking:
            now = now or self.clock()
        elif self._duration_stopped_at is not None:
            now = self._duration_stopped_at
        else:
            return None
        if self.session.start_time is not None:
            return now - self.session.start_time
        if self.log_start_time is not None:
            return now - self.log_start_time
        return None

    # ----------------------------
    # Persistence
    # ----------------------------

    def _report_error(self, message: str) -> None:
        self.last_error = message
        self.logger.error(message)
        if self.on_error is not None:
            self.on_error(message)

    def _persist(self) -> bool:
        record = session_to_record(self.session)
        key = ACTIVE_KEY if self.session.is_active else finished_record_key(self.session)
        try:
            self.store.save(key, record)
        except PersistenceError as e:
            self._save_failed = True
            self._report_error(f"Failed to save roast data to database! | {e}")
            return False
        self._save_failed = False
        self.logger.info(f"Saved roast data as '{key}'")

        if not self.session.is_active:
            try:
                self.store.delete(ACTIVE_KEY)
            except PersistenceError as e:
                self._report_error(f"Failed to delete the active roast document! | {e}")
        return True

    def save(self) -> bool:
        """Save the current roast ('active' while roasting, archived once dropped)."""
        self._require(self.can_save(), "save")
        return self._persist()

    def _adopt(self, session: RoastSession) -> None:
        self.session = session
        self.log_start_time = None
        self._duration_stopped_at = None
        self._save_failed = False
        self.refresh()

    def load_active(self) -> bool:
        """
        Reload the unfinished roast left in the store, if any.

        Returns:
            Whether an active roast was loaded
        """
        self._require(self.can_load(), "load")
        try:
            record = self.store.load(ACTIVE_KEY)
            if record is None:
                self.logger.info("No active roast found")
                return False
            session = session_from_record(record)
        except (PersistenceError, ValueError) as e:
            self._report_error(f"Failed to load state from database! | {e}")
            return False

        self._adopt(session)
        self.logger.info(f"Loaded active roast, batch #{session.batch_number}")
        return True

    def load(self, key: str) -> Optional[RoastSession]:
        """
        Load a stored roast for viewing and as the pin candidate.

        Returns:
            The loaded session, or None if it could not be loaded
        """
        self._require(self.can_load(), "load")
        try:
            record = self.store.load(key)
            if record is None:
                self._report_error(f"No roast named '{key}'")
                return None
            reference = session_from_record(record)
        except (PersistenceError, ValueError) as e:
            self._report_error(f"Failed to load roast '{key}'! | {e}")
            return None

        # The pin candidate and the displayed session are separate copies
        self.loaded_roast = reference
        self._adopt(session_from_record(record))
        return self.session

    def list_recent(self, limit: int = RECENT_ROASTS_LIMIT) -> List[Tuple[str, Dict[str, Any]]]:
        try:
            return list_recent_roasts(self.store, limit)
        except PersistenceError as e:
            self._report_error(f"Error loading roasts: {e}")
            return []

    # ----------------------------
    # Reference overlay
    # ----------------------------

    def pin(self) -> None:
        self._require(self.can_pin(), "pin a reference roast")
        self.aligner.pin(self.loaded_roast)
        self.refresh()

    def unpin(self) -> None:
        self._require(self.can_unpin(), "unpin the reference roast")
        self.aligner.unpin()
        self.refresh()


# =============================================================================
# MAIN LOGGING LOOP
# =============================================================================

def _open_store(options: Dict[str, Any]) -> JsonFileStore:
    collection = DB_TEST_COLLECTION if options.get("test_store") else DB_COLLECTION
    return JsonFileStore(options.get("store", "data"), collection)


def run_session(options: Dict[str, Any]) -> Optional[RoastSession]:
    """
    Log one roast from connect to drop.

    Args:
        options: Logging options

    Returns:
        The finished (or interrupted) session, or None if the roaster was unreachable
    """
    print("=" * 60)
    print("ROAST LOGGER")
    print("=" * 60)

    store = _open_store(options)
    if options.get("simulate"):
        transport: Transport = SimulatedTransport(seconds_per_poll=options["interval"])
    else:
        transport = SerialTransport(options["port"], baudrate=options["baud"])

    alarm = None
    if options.get("max_temp") is not None:
        alarm = TemperatureAlarm(options["max_temp"], speak=lambda text: print(f"  ALARM: {text}"))

    machine = RoastSessionStateMachine(
        transport,
        store,
        alarm=alarm,
        on_error=lambda msg: print(f"ERROR: {msg}"),
        poll_interval=timedelta(seconds=options["interval"]),
    )

    # Step 1: Reference roast
    if options.get("reference"):
        print(f"\n1. Loading reference roast {options['reference']}...")
        if machine.load(options["reference"]) is not None and machine.can_pin():
            machine.pin()
            print("✓ Reference pinned")

    # Step 2: Unfinished roast
    print("\n2. Checking for an unfinished roast...")
    if machine.load_active():
        print(f"✓ Found batch #{machine.session.batch_number} ({machine.session.coffee_name})")

    # Step 3: Connect
    print("\n3. Connecting to roaster...")
    if not machine.connect():
        print("ERROR: Could not connect to the roaster!")
        return None
    print(f"✓ Connected ({machine.state.value})")

    if not machine.is_logging:
        machine.start_logging(confirm=lambda message: True)
        machine.set_coffee(options["coffee"], options["amount"])

    # Step 4: Log until drop
    print("\n4. Logging...")
    interval = options["interval"]
    try:
        while True:
            now = machine.clock()
            machine.service(now)
            machine.tick(now)

            if machine.reconnect_status == ReconnectStatus.GAVE_UP:
                break

            elapsed = machine.duration(now)
            if (machine.can_charge() and elapsed is not None
                    and elapsed.total_seconds() >= options["charge_after"]):
                machine.charge()
                print("  CHARGE")
            elif (machine.can_drop() and elapsed is not None
                    and elapsed.total_seconds() >= options["duration"]):
                machine.drop()
                print("  DROP")
                break

            readout = machine.projection.latest()
            if readout["probe1"] is not None:
                ror = readout["probe1_ror"]
                print(f"  {format_duration(elapsed):>6}  BT {readout['probe1']:6.1f}  "
                      f"ET {readout['probe2']:6.1f}  RoR {ror if ror is not None else 0:6.1f}")
            time.sleep(interval)

    except KeyboardInterrupt:
        print("\n\nLogging interrupted by user.")
        if machine.can_save():
            machine.save()

    session = machine.session

    # Step 5: Outputs
    if options.get("export_csv"):
        print("\n5. Exporting data to CSV...")
        export_session_csv(session, options["export_csv"])
        print(f"✓ Results exported to {options['export_csv']}")

    if options.get("save_plot"):
        print("\n6. Generating visualization...")
        plot_projection(machine.projection, title=f"#{session.batch_number} {session.coffee_name}",
                        save_path=options["save_plot"])
        print(f"✓ Plot saved to {options['save_plot']}")

    print("\n" + "=" * 60)
    print(f"ROAST COMPLETE! {format_duration(machine.duration())}")
    print("=" * 60)
    return session


def list_roasts(options: Dict[str, Any]) -> None:
    store = _open_store(options)
    roasts = list_recent_roasts(store)
    if not roasts:
        print("No roasts found.")
        return
    for key, record in roasts:
        started = _from_iso(record["roastStartTime"]).astimezone()
        print(f"  {key}: #{record.get('coffeeBatchNum')} - {record.get('coffeeName')} - "
              f"{started.strftime('%b %d %I:%M:%S %p')}")


def show_roast(options: Dict[str, Any]) -> None:
    store = _open_store(options)
    record = store.load(options["show"])
    if record is None:
        print(f"ERROR: No roast named '{options['show']}'")
        sys.exit(1)
    session = session_from_record(record)
    projection = ChartProjector().project(session)
    duration = session.end_time - session.start_time if session.is_complete else None
    print(f"#{session.batch_number} {session.coffee_name}: {len(session.log)} frames, "
          f"{format_duration(duration)}")
    plot_projection(projection, title=f"#{session.batch_number} {session.coffee_name}",
                    save_path=options.get("save_plot"))


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Log a coffee roast from a two-probe roaster",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python roast_logger.py --simulate --coffee "Ethiopia"      # Try it without hardware
  python roast_logger.py --port /dev/ttyUSB0 --coffee Kenya  # Log a real roast
  python roast_logger.py --list                              # Recent roasts
  python roast_logger.py --show roast_20240101T100000000Z --save-plot roast.png
        """
    )

    parser.add_argument("--port", default="/dev/ttyUSB0", help="Serial port of the roaster (default: /dev/ttyUSB0)")
    parser.add_argument("--baud", type=int, default=9600, help="Serial baud rate (default: 9600)")
    parser.add_argument("--simulate", action="store_true", help="Use a simulated roaster")
    parser.add_argument("--store", default="data", metavar="DIR", help="Directory of the roast store (default: data)")
    parser.add_argument("--test-store", action="store_true", help=f"Use the '{DB_TEST_COLLECTION}' collection")

    parser.add_argument("--coffee", default="", help="Coffee name (required to charge)")
    parser.add_argument("--amount", type=float, default=DEFAULT_COFFEE_AMOUNT, help="Green coffee mass in grams (default: 150)")
    parser.add_argument("--interval", type=float, default=POLL_INTERVAL_S, help="Seconds between polls (default: 1)")
    parser.add_argument("--charge-after", type=float, default=60, metavar="S", help="Charge after S seconds of logging (default: 60)")
    parser.add_argument("--duration", type=float, default=600, metavar="S", help="Drop S seconds after charge (default: 600)")
    parser.add_argument("--max-temp", type=float, help="Announce BT above this temperature")
    parser.add_argument("--reference", metavar="KEY", help="Pin a stored roast as reference")

    parser.add_argument("--list", action="store_true", help="List recent roasts and exit")
    parser.add_argument("--show", metavar="KEY", help="Plot a stored roast and exit")
    parser.add_argument("--save-plot", metavar="PATH", help="Save the roast plot to PATH")
    parser.add_argument("--export-csv", metavar="PATH", help="Export the roast telemetry to PATH")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    options = {
        'port': args.port,
        'baud': args.baud,
        'simulate': args.simulate,
        'store': args.store,
        'test_store': args.test_store,
        'coffee': args.coffee,
        'amount': args.amount,
        'interval': args.interval,
        'charge_after': args.charge_after,
        'duration': args.duration,
        'max_temp': args.max_temp,
        'reference': args.reference,
        'show': args.show,
        'save_plot': args.save_plot,
        'export_csv': args.export_csv,
    }

    try:
        if args.list:
            list_roasts(options)
        elif args.show:
            show_roast(options)
        else:
            if not args.coffee:
                print("ERROR: --coffee is required to charge a roast!")
                sys.exit(1)
            session = run_session(options)
            if session is None:
                sys.exit(1)
    except PersistenceError as e:
        print(f"\nStore error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        sys.exit(1)


if __name__ == "__main__":
    main()
