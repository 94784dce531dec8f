#!/usr/bin/env python3
#
# ble-radar - Dual-adapter Bluetooth Low Energy (BLE) terminal radar
#
# Follows btmon-style HCI traces from one or more Bluetooth adapters, keeps a
# short-lived table of nearby advertisers, and draws them on a polar ASCII
# radar with a rotating sweep and a ranked legend.  Every RSSI sighting is
# appended to a CSV log as it arrives.
#

"""BLE terminal radar - live polar view of nearby advertising devices."""

import argparse
import asyncio
import csv
import io
import logging
import math
import os
import platform
import re
import signal
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import (Callable, Dict, List, NamedTuple, Optional, TextIO,
                    Tuple, Union)

_HAS_BLEAK = False
try:
    from bleak import BleakScanner
    _HAS_BLEAK = True
except ImportError:
    pass

LOGGER = logging.getLogger("ble_radar")
LOGGER.addHandler(logging.NullHandler())

# Friendly labels for the scanning sources; tags A, B, ... follow this order
_DEFAULT_LABELS = ["Overwatch 0xFA", "Overwatch 0xBA"]
_DEFAULT_ADAPTERS = ["hci0", "hci1"]
_DEFAULT_LOG_FILE = os.path.join(os.path.expanduser("~"), "ble_radar",
                                 "ble_log.csv")
_UNKNOWN_SOURCE = "unknown"
_UNKNOWN_MARKER = "?"

# Polling / timing constants
_IDLE_TICK_INTERVAL = 0.1     # seconds between redraw checks with no input
_BTMON_RESPAWN_DELAY = 0.5    # seconds before restarting an exited btmon
_BTMON_STOP_TIMEOUT = 2       # seconds to wait for btmon to terminate
_LINE_QUEUE_SIZE = 10000      # lines buffered between feeds and the engine

# Glyphs
_RING_CHAR = "."
_SWEEP_CHAR = ":"
_SWEEP_EDGE_CHAR = "#"
_RING_FRACTIONS = (0.33, 0.66, 1.0)
_SPARK_BLOCKS = "▁▂▃▄▅▆▇█"

_LOG_FIELDNAMES = ["timestamp", "source", "address", "rssi", "name"]

_ESC_CLEAR = "\033[2J"
_ESC_HOME = "\033[H"
_ESC_ERASE_LINE = "\033[K"
_ESC_HIDE_CURSOR = "\033[?25l"
_ESC_SHOW_CURSOR = "\033[?25h"


@dataclass
class RadarConfig:
    """Scalar settings for the radar engine and display."""

    width: int = 64
    height: int = 24
    draw_interval: float = 0.5
    max_age: float = 60.0
    sweep_speed: float = 90.0
    sweep_width: float = 30.0
    history_len: int = 16
    prefixes: List[str] = field(default_factory=list)
    rssi_near: int = -30
    rssi_far: int = -90
    legend_size: int = 10
    association_window: float = 2.0
    compact_legend: bool = False
    labels: List[str] = field(default_factory=lambda: list(_DEFAULT_LABELS))

    def source_tags(self) -> Dict[str, str]:
        """Map each source tag (A, B, ...) to its friendly label."""
        return {chr(ord("A") + i): label for i, label in enumerate(self.labels)}


# ------------------------------------------------------------------
# Line classification
# ------------------------------------------------------------------

class AddressEvent(NamedTuple):
    source: str
    identifier: str


class NameEvent(NamedTuple):
    source: str
    name: str


class SignalEvent(NamedTuple):
    source: str
    value: int


LineEvent = Union[AddressEvent, NameEvent, SignalEvent]

_LABEL_RE = re.compile(r"^\[([^\]]+)\]")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_SURROGATE_RE = re.compile("[\ud800-\udfff]")
_PREFIX_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){0,5}$")


def _address_event(source: str, raw: str) -> Optional[LineEvent]:
    return AddressEvent(source, raw.upper())


def _name_event(source: str, raw: str) -> Optional[LineEvent]:
    name = _CONTROL_RE.sub("", raw).strip()
    # surrogateescape-decoded bytes cannot be encoded back out
    name = _SURROGATE_RE.sub("\ufffd", name)
    if not name:
        return None
    return NameEvent(source, name)


def _signal_event(source: str, raw: str) -> Optional[LineEvent]:
    try:
        return SignalEvent(source, int(raw))
    except ValueError:
        return None


# Checked in order; the first pattern that matches decides the line.
_LINE_PATTERNS = (
    (re.compile(r"Address:\s*((?:[0-9A-F]{2}:){5}[0-9A-F]{2})\b",
                re.IGNORECASE), _address_event),
    (re.compile(r"\bName\b[^:]*:\s*(.*)$", re.IGNORECASE), _name_event),
    (re.compile(r"RSSI:\s*([-+]?\d+)(?![\d.])", re.IGNORECASE), _signal_event),
)


def source_tag(label: str, tags: Dict[str, str]) -> str:
    """Resolve a bracketed line label to a source tag.

    A label matches a tag when it equals the tag itself or the tag's
    friendly label (case-insensitive).  Anything else is ``unknown``.
    """
    wanted = label.strip().lower()
    for tag, friendly in tags.items():
        if wanted == tag.lower() or wanted == friendly.strip().lower():
            return tag
    return _UNKNOWN_SOURCE


def source_marker(tag: str) -> str:
    if tag == _UNKNOWN_SOURCE or not tag:
        return _UNKNOWN_MARKER
    return tag[0]


def classify_line(line: str, tags: Dict[str, str]) -> Optional[LineEvent]:
    """Turn one trace line into an event, or None when it carries nothing.

    Lines must start with a ``[label]`` prefix naming the source that
    produced them.  The rest of the line is matched against the address,
    name, and RSSI patterns in that order.
    """
    line = line.rstrip("\r\n")
    m = _LABEL_RE.match(line)
    if m is None:
        return None
    source = source_tag(m.group(1), tags)
    body = line[m.end():]
    for pattern, build in _LINE_PATTERNS:
        found = pattern.search(body)
        if found:
            return build(source, found.group(1))
    return None


def advert_lines(label: str, address: str, name: Optional[str],
                 rssi: int) -> List[str]:
    """Render one advertisement as the trace lines btmon would print."""
    prefix = f"[{label}]"
    lines = [f"{prefix}     Address: {address}"]
    if name:
        lines.append(f"{prefix}     Name (complete): {name}")
    lines.append(f"{prefix}     RSSI: {rssi} dBm")
    return lines


# ------------------------------------------------------------------
# Device state
# ------------------------------------------------------------------

class SourceContext:
    """Address and name most recently seen on one source."""

    def __init__(self):
        self.pending_identifier: Optional[str] = None
        self.pending_since = 0.0
        self.pending_name: Optional[str] = None


class DeviceRecord:
    def __init__(self, identifier: str, source: str, history_len: int):
        self.identifier = identifier
        self.source = source
        self.last_seen = 0.0
        self.last_signal = 0
        self.history: deque = deque(maxlen=history_len)
        self.display_name: Optional[str] = None

    def age(self, now: float) -> float:
        return now - self.last_seen


class DeviceStore:
    """Per-(address, source) device records plus per-source context.

    An RSSI reading is attributed to the address most recently seen on the
    same source, provided that address arrived within the association
    window.  Each address pairs with at most one reading.
    """

    def __init__(self, history_len: int = 16,
                 association_window: float = 2.0,
                 prefixes: Optional[List[str]] = None):
        self.history_len = max(1, history_len)
        self.association_window = association_window
        self.prefixes = [p.upper() for p in (prefixes or []) if p]
        self.devices: Dict[Tuple[str, str], DeviceRecord] = {}
        self.contexts: Dict[str, SourceContext] = {}

    def _context(self, source: str) -> SourceContext:
        ctx = self.contexts.get(source)
        if ctx is None:
            ctx = self.contexts[source] = SourceContext()
        return ctx

    def _fresh_identifier(self, ctx: SourceContext,
                          now: float) -> Optional[str]:
        if ctx.pending_identifier is None:
            return None
        if now - ctx.pending_since > self.association_window:
            return None
        return ctx.pending_identifier

    def allowed(self, identifier: str) -> bool:
        if not self.prefixes:
            return True
        return any(identifier.startswith(p) for p in self.prefixes)

    def record_address(self, source: str, identifier: str, now: float):
        ctx = self._context(source)
        ctx.pending_identifier = identifier
        ctx.pending_since = now
        # A new address opens a new window; the old name belongs elsewhere
        ctx.pending_name = None

    def record_name(self, source: str, name: str, now: float):
        ctx = self._context(source)
        ctx.pending_name = name
        identifier = self._fresh_identifier(ctx, now)
        if identifier is None:
            return
        record = self.devices.get((identifier, source))
        if record is not None and record.display_name is None:
            record.display_name = name

    def record_signal(self, source: str, value: int,
                      now: float) -> Optional[DeviceRecord]:
        """Apply an RSSI reading.  Returns the updated record, or None
        when the reading was dropped."""
        ctx = self._context(source)
        identifier = self._fresh_identifier(ctx, now)
        if identifier is None:
            LOGGER.debug("dropped RSSI %d on %s: no recent address",
                         value, source)
            return None
        if not self.allowed(identifier):
            LOGGER.debug("dropped %s on %s: prefix not allowed",
                         identifier, source)
            return None

        key = (identifier, source)
        record = self.devices.get(key)
        if record is None:
            record = DeviceRecord(identifier, source, self.history_len)
            self.devices[key] = record
        record.last_seen = now
        record.last_signal = value
        record.history.append(value)
        if record.display_name is None and ctx.pending_name:
            record.display_name = ctx.pending_name
        ctx.pending_identifier = None
        return record

    def apply(self, event: LineEvent, now: float) -> Optional[DeviceRecord]:
        if isinstance(event, AddressEvent):
            self.record_address(event.source, event.identifier, now)
        elif isinstance(event, NameEvent):
            self.record_name(event.source, event.name, now)
        elif isinstance(event, SignalEvent):
            return self.record_signal(event.source, event.value, now)
        return None

    def evict(self, now: float, max_age: float) -> int:
        """Remove records older than *max_age*; returns how many went."""
        stale = [key for key, record in self.devices.items()
                 if record.age(now) > max_age]
        for key in stale:
            del self.devices[key]
        return len(stale)

    def live(self, now: float, max_age: float) -> List[DeviceRecord]:
        return [record for record in self.devices.values()
                if record.age(now) <= max_age]


# ------------------------------------------------------------------
# Projection and drawing
# ------------------------------------------------------------------

def _iround(x: float) -> int:
    return int(x + (0.5 if x >= 0 else -0.5))


def _clamp(value, lo, hi):
    return lo if value < lo else (hi if value > hi else value)


def mac_angle(identifier: str) -> float:
    """Stable pseudo-bearing (degrees) taken from the last address octet.

    This is only a way to spread devices around the dial; it says nothing
    about where a device actually is.
    """
    try:
        low = int(identifier.rsplit(":", 1)[-1], 16) & 0xFF
    except ValueError:
        return 0.0
    return low / 256.0 * 360.0


def rssi_radius(rssi: int, outer_radius: float, near: int = -30,
                far: int = -90) -> float:
    """Map RSSI onto a radius: *near* lands at 1, *far* one cell inside
    the outer ring."""
    clamped = _clamp(rssi, far, near)
    norm = (near - clamped) / float(near - far)
    return 1 + norm * (outer_radius - 2)


def sparkline(values, width: Optional[int] = None) -> str:
    """Min-max normalized glyph trend, right-aligned within *width*."""
    values = list(values)
    if not values:
        return ""
    lo = min(values)
    hi = max(values)
    top = len(_SPARK_BLOCKS) - 1
    chars = []
    for v in values:
        idx = 0 if hi == lo else int((v - lo) / (hi - lo) * top)
        chars.append(_SPARK_BLOCKS[idx])
    line = "".join(chars)
    if width is not None and len(line) < width:
        line = " " * (width - len(line)) + line
    return line


def _clip(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    if width <= 1:
        return text[:width]
    return text[: width - 1] + "…"


class RadarGrid:
    """Fixed-size character buffer addressed by (row, column)."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.cx = width // 2
        self.cy = height // 2
        self.radius = max(2, min(self.cx, self.cy) - 2)
        self.cells = [[" "] * width for _ in range(height)]

    def put(self, row: int, col: int, ch: str):
        row = _clamp(row, 0, self.height - 1)
        col = _clamp(col, 0, self.width - 1)
        self.cells[row][col] = ch

    def polar_cell(self, angle_deg: float, r: float) -> Tuple[int, int]:
        rad = math.radians(angle_deg)
        col = _clamp(_iround(self.cx + math.cos(rad) * r), 0, self.width - 1)
        row = _clamp(_iround(self.cy + math.sin(rad) * r), 0, self.height - 1)
        return row, col

    def plot(self, angle_deg: float, r: float, ch: str):
        self.put(*self.polar_cell(angle_deg, r), ch)

    def draw_rings(self):
        for frac in _RING_FRACTIONS:
            ring = int(self.radius * frac)
            for theta in range(360):
                self.plot(theta, ring, _RING_CHAR)

    def draw_crosshair(self):
        for col in range(self.width):
            self.put(self.cy, col, "+" if col % 2 == 0 else "-")
        for row in range(self.height):
            self.put(row, self.cx, "+" if row % 2 == 0 else "|")

    def draw_sweep(self, angle_deg: float, width_deg: float):
        """Arc trailing *angle_deg* by *width_deg*, leading ray on top."""
        steps = max(1, math.ceil(width_deg))
        for step in range(steps, -1, -1):
            ch = _SWEEP_EDGE_CHAR if step == 0 else _SWEEP_CHAR
            theta = (angle_deg - width_deg * step / steps) % 360.0
            for r in range(1, self.radius + 1):
                self.plot(theta, r, ch)

    def rows(self) -> List[str]:
        return ["".join(row) for row in self.cells]


class RadarRenderer:
    def __init__(self, config: RadarConfig):
        self.config = config
        self.tags = config.source_tags()
        self.sweep_angle = 0.0
        self._last_frame: Optional[float] = None

    def advance_sweep(self, now: float) -> float:
        if self._last_frame is not None:
            elapsed = max(0.0, now - self._last_frame)
            self.sweep_angle = ((self.sweep_angle
                                 + self.config.sweep_speed * elapsed) % 360.0)
        self._last_frame = now
        return self.sweep_angle

    def build_grid(self, records: List[DeviceRecord]) -> RadarGrid:
        cfg = self.config
        grid = RadarGrid(cfg.width, cfg.height)
        grid.draw_rings()
        grid.draw_crosshair()
        grid.draw_sweep(self.sweep_angle, cfg.sweep_width)
        # Shared cells keep whichever record is drawn last
        for record in records:
            r = rssi_radius(record.last_signal, grid.radius,
                            cfg.rssi_near, cfg.rssi_far)
            grid.plot(mac_angle(record.identifier), r,
                      source_marker(record.source))
        return grid

    def ranked(self, records: List[DeviceRecord]) -> List[DeviceRecord]:
        ordered = sorted(records, key=lambda rec: rec.last_signal,
                         reverse=True)
        return ordered[: self.config.legend_size]

    def header_lines(self, records: List[DeviceRecord],
                     now: float) -> List[str]:
        cfg = self.config
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
        counts: Dict[str, int] = {}
        for record in records:
            counts[record.source] = counts.get(record.source, 0) + 1

        sources = " | ".join(f"{tag}: {label}"
                             for tag, label in self.tags.items())
        active = "  ".join(f"{tag}={counts.get(tag, 0)}" for tag in self.tags)
        if counts.get(_UNKNOWN_SOURCE):
            active += f"  {_UNKNOWN_MARKER}={counts[_UNKNOWN_SOURCE]}"
        return [
            f" BLE Radar - {len(self.tags)}-source sweep   {stamp}",
            f"  {sources}   Active: {active}   "
            f"(aging out > {cfg.max_age:g}s)",
            f"  RSSI near(center) ~ {cfg.rssi_near} dBm   "
            f"far(edge) ~ {cfg.rssi_far} dBm",
            "",
        ]

    def legend_lines(self, records: List[DeviceRecord],
                     now: float) -> List[str]:
        cfg = self.config
        top = self.ranked(records)
        lines = [f"  Nearest devices (top {len(top)}):"]
        if cfg.compact_legend:
            lines.append("  MAC                RSSI  IF  Age(s)")
        else:
            lines.append("  MAC                RSSI  IF  Age(s)  "
                         "Name              Trend")
        for record in top:
            age = int(record.age(now))
            tag = source_marker(record.source)
            if cfg.compact_legend:
                lines.append(f"  {record.identifier:<18s} "
                             f"{record.last_signal:>4d}  {tag:1s}   {age:>4d}")
                continue
            name = _clip(record.display_name or "", 16)
            trend = sparkline(record.history, cfg.history_len)
            lines.append(f"  {record.identifier:<18s} "
                         f"{record.last_signal:>4d}  {tag:<2s} {age:>6d}  "
                         f"{name:<16s}  {trend}")
        return lines

    def render(self, store: DeviceStore, now: float) -> str:
        """Compose one full frame: cursor home, header, grid and legend."""
        records = store.live(now, self.config.max_age)
        self.advance_sweep(now)
        grid = self.build_grid(records)
        legend = self.legend_lines(records, now)

        out = [_ESC_HOME]
        for line in self.header_lines(records, now):
            out.append(line + _ESC_ERASE_LINE + "\n")
        for y, row in enumerate(grid.rows()):
            line = " " + row
            if y < len(legend):
                line += "   " + legend[y]
            out.append(line + _ESC_ERASE_LINE + "\n")
        return "".join(out)


# ------------------------------------------------------------------
# Redraw scheduling and the sighting log
# ------------------------------------------------------------------

class RedrawScheduler:
    """Fires *redraw* at most once per *interval* seconds."""

    def __init__(self, interval: float, redraw: Callable[[float], None]):
        self.interval = interval
        self._redraw = redraw
        self.last_redraw: Optional[float] = None

    def due(self, now: float) -> bool:
        return (self.last_redraw is None
                or now - self.last_redraw >= self.interval)

    def maybe_redraw(self, now: float) -> bool:
        if not self.due(now):
            return False
        self._redraw(now)
        self.last_redraw = now
        return True


class SightingLog:
    """Append-only CSV of accepted RSSI sightings, flushed per row."""

    def __init__(self, path: str):
        self.path = path
        self._fh = None
        self._writer = None

    def open(self) -> "SightingLog":
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        is_new = (not os.path.exists(self.path)
                  or os.path.getsize(self.path) == 0)
        self._fh = open(self.path, "a", newline="", encoding="utf-8")
        self._writer = csv.writer(self._fh, lineterminator="\n")
        if is_new:
            self._writer.writerow(_LOG_FIELDNAMES)
            self._fh.flush()
        return self

    def append(self, now: float, record: DeviceRecord):
        if self._writer is None:
            raise RuntimeError("sighting log is not open")
        row = [int(now), record.source, record.identifier, record.last_signal]
        if record.display_name:
            row.append(record.display_name)
        self._writer.writerow(row)
        self._fh.flush()

    def close(self):
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._writer = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()


class RadarEngine:
    """Owns all radar state; lines go in, frames and log rows come out."""

    def __init__(self, config: RadarConfig,
                 sighting_log: Optional[SightingLog] = None,
                 out: Optional[TextIO] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.tags = config.source_tags()
        self.store = DeviceStore(config.history_len,
                                 config.association_window,
                                 config.prefixes)
        self.renderer = RadarRenderer(config)
        self.scheduler = RedrawScheduler(config.draw_interval, self.redraw)
        self.sighting_log = sighting_log
        self.out = out
        self.clock = clock
        self.lines_seen = 0
        self.sightings = 0

    def feed_line(self, line: str) -> Optional[DeviceRecord]:
        now = self.clock()
        self.lines_seen += 1
        record = None
        event = classify_line(line, self.tags)
        if event is not None:
            record = self.store.apply(event, now)
            if record is not None:
                self.sightings += 1
                if self.sighting_log is not None:
                    self.sighting_log.append(now, record)
        self.scheduler.maybe_redraw(now)
        return record

    def tick(self) -> bool:
        return self.scheduler.maybe_redraw(self.clock())

    def redraw(self, now: float):
        removed = self.store.evict(now, self.config.max_age)
        if removed:
            LOGGER.debug("evicted %d stale device(s)", removed)
        frame = self.renderer.render(self.store, now)
        if self.out is not None:
            self.out.write(frame)
            self.out.flush()


# ------------------------------------------------------------------
# Line feeds
# ------------------------------------------------------------------

def _lenient_reader(stream: TextIO) -> TextIO:
    """Re-read a byte-backed text stream with undecodable bytes replaced."""
    buffer = getattr(stream, "buffer", None)
    if buffer is None:
        return stream
    return io.TextIOWrapper(buffer, encoding="utf-8", errors="replace")


class StreamFeed:
    """Read trace lines from a text stream or path on a daemon thread.

    Paths are opened on the reader thread so a FIFO without a writer does
    not block start-up.
    """

    finite = True

    def __init__(self, source: Union[str, TextIO]):
        self.source = source
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def name(self) -> str:
        if isinstance(self.source, str):
            return self.source
        return getattr(self.source, "name", "<stream>")

    async def start(self, app: "RadarApp"):
        loop = asyncio.get_running_loop()
        self._running = True
        self._thread = threading.Thread(target=self._run, args=(loop, app),
                                        daemon=True)
        self._thread.start()

    async def stop(self):
        self._running = False

    def _run(self, loop: asyncio.AbstractEventLoop, app: "RadarApp"):
        try:
            if isinstance(self.source, str):
                with open(self.source, encoding="utf-8",
                          errors="replace") as fh:
                    self._pump(loop, app, fh)
            else:
                self._pump(loop, app, _lenient_reader(self.source))
        except (OSError, ValueError) as e:
            LOGGER.warning("input %s failed: %s", self.name, e)
        finally:
            try:
                loop.call_soon_threadsafe(app.feed_done, self)
            except RuntimeError:
                pass  # loop already closed

    def _pump(self, loop, app, stream):
        for line in stream:
            if not self._running:
                break
            try:
                loop.call_soon_threadsafe(app.deliver, line)
            except RuntimeError:
                break


class BtmonFeed:
    """Supervise ``btmon -i <adapter>`` and forward its output, labelled.

    btmon is restarted whenever it exits until the feed is stopped.
    """

    finite = False

    def __init__(self, adapter: str, label: str, command: str = "btmon"):
        self.adapter = adapter
        self.label = label
        self.command = command
        self._running = False
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._app: Optional["RadarApp"] = None

    async def start(self, app: "RadarApp"):
        self._app = app
        self._running = True
        self._task = asyncio.create_task(self._supervise())

    async def _supervise(self):
        prefix = f"[{self.label}] "
        while self._running:
            try:
                self._proc = await asyncio.create_subprocess_exec(
                    self.command, "-i", self.adapter,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL)
            except FileNotFoundError:
                LOGGER.warning("%s not found; no trace from %s",
                               self.command, self.adapter)
                return
            LOGGER.info("btmon started on %s (pid %d)",
                        self.adapter, self._proc.pid)
            async for raw in self._proc.stdout:
                text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._app.deliver(prefix + text)
            rc = await self._proc.wait()
            if self._running:
                LOGGER.warning("btmon on %s exited (%s); restarting",
                               self.adapter, rc)
                await asyncio.sleep(_BTMON_RESPAWN_DELAY)

    async def stop(self):
        self._running = False
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass  # exited between the check and the signal
            try:
                await asyncio.wait_for(proc.wait(), _BTMON_STOP_TIMEOUT)
            except asyncio.TimeoutError:
                proc.kill()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class BleakFeed:
    """Scan one adapter with bleak.

    With *forward* set, each advertisement is turned into trace lines for
    the engine.  Without it the scanner only keeps discovery running so
    that a btmon feed on the same adapter has something to report.
    """

    finite = False

    def __init__(self, adapter: Optional[str], label: str,
                 forward: bool = True, active: bool = False):
        self.adapter = adapter
        self.label = label
        self.forward = forward
        self.active = active
        self._scanner = None
        self._app: Optional["RadarApp"] = None

    async def start(self, app: "RadarApp"):
        self._app = app
        scanner_kwargs: dict = {}
        if self.forward:
            scanner_kwargs["detection_callback"] = self.detection_callback
        if self.active:
            scanner_kwargs["scanning_mode"] = "active"
        if self.adapter:
            scanner_kwargs["adapter"] = self.adapter
        self._scanner = BleakScanner(**scanner_kwargs)
        await self._scanner.start()

    def detection_callback(self, device, adv):
        name = adv.local_name or device.name
        for line in advert_lines(self.label, device.address, name, adv.rssi):
            self._app.deliver(line)

    async def stop(self):
        if self._scanner is not None:
            await self._scanner.stop()
            self._scanner = None


class TerminalDisplay:
    """Clear the screen and hide the cursor; restore it on exit."""

    def __init__(self, out: TextIO):
        self.out = out

    def __enter__(self):
        self.out.write(_ESC_CLEAR + _ESC_HOME + _ESC_HIDE_CURSOR)
        self.out.flush()
        return self

    def __exit__(self, *exc):
        self.out.write(_ESC_SHOW_CURSOR + "\n")
        self.out.flush()


class RadarApp:
    """Single consumer loop: drains the line queue into the engine and
    keeps redrawing while input is idle."""

    def __init__(self, engine: RadarEngine, feeds: list):
        self.engine = engine
        self.feeds = feeds
        self.running = True
        self.dropped = 0
        self._queue: Optional[asyncio.Queue] = None
        self._pending_feeds = 0

    def deliver(self, line: str):
        try:
            self._queue.put_nowait(line)
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.debug("line queue full; dropped %d so far", self.dropped)

    def feed_done(self, feed):
        self._pending_feeds -= 1
        LOGGER.info("input %s finished", getattr(feed, "name", feed))

    @property
    def input_closed(self) -> bool:
        return (self._pending_feeds <= 0
                and all(feed.finite for feed in self.feeds))

    async def run(self):
        loop = asyncio.get_running_loop()
        handled = platform.system() != "Windows"
        if handled:
            loop.add_signal_handler(signal.SIGINT, self.stop)
            loop.add_signal_handler(signal.SIGTERM, self.stop)

        self._queue = asyncio.Queue(maxsize=_LINE_QUEUE_SIZE)
        self._pending_feeds = sum(1 for feed in self.feeds if feed.finite)
        started = []
        try:
            for feed in self.feeds:
                await feed.start(self)
                started.append(feed)
            await self._consume()
        finally:
            for feed in started:
                await feed.stop()
            if handled:
                loop.remove_signal_handler(signal.SIGINT)
                loop.remove_signal_handler(signal.SIGTERM)

    async def _consume(self):
        while self.running:
            try:
                line = await asyncio.wait_for(self._queue.get(),
                                              timeout=_IDLE_TICK_INTERVAL)
            except asyncio.TimeoutError:
                self.engine.tick()
                if self.input_closed and self._queue.empty():
                    break
                continue
            self.engine.feed_line(line)
        # Final frame reflects everything that was read
        self.engine.redraw(self.engine.clock())

    def stop(self):
        self.running = False


# ------------------------------------------------------------------
# Command line
# ------------------------------------------------------------------

def _split_list(values: Optional[List[str]]) -> List[str]:
    items: List[str] = []
    for value in values or []:
        items.extend(v.strip() for v in value.split(",") if v.strip())
    return items


def _build_feeds(source: str, inputs: List[str], adapters: List[str],
                 labels: List[str], active: bool = False) -> list:
    if source == "stdin":
        if inputs:
            return [StreamFeed(path) for path in inputs]
        return [StreamFeed(sys.stdin)]
    feeds: list = []
    for adapter, label in zip(adapters, labels):
        if source == "btmon":
            feeds.append(BtmonFeed(adapter, label))
            feeds.append(BleakFeed(adapter, label, forward=False,
                                   active=active))
        else:
            feeds.append(BleakFeed(adapter, label, active=active))
    return feeds


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="BLE Radar - live polar terminal view of nearby "
                    "BLE advertisers"
    )

    # Input
    parser.add_argument(
        "--source", choices=["stdin", "btmon", "bleak"], default="stdin",
        help="Where trace lines come from: stdin / --input files "
             "(default), supervised btmon per adapter, or bleak scanners"
    )
    parser.add_argument(
        "-i", "--input", action="append", default=None, metavar="PATH",
        help="Read labelled trace lines from a file or FIFO "
             "(repeatable; implies --source stdin)"
    )
    parser.add_argument(
        "--adapters", type=str, default=",".join(_DEFAULT_ADAPTERS),
        metavar="LIST",
        help="Comma-separated adapters for btmon/bleak sources "
             "(default: hci0,hci1)"
    )
    parser.add_argument(
        "--labels", type=str, default=",".join(_DEFAULT_LABELS),
        metavar="LIST",
        help="Comma-separated friendly labels; the first is tag A, "
             "the second tag B, and so on"
    )
    parser.add_argument(
        "--active", action="store_true",
        help="Use active scanning for bleak scanners (default: passive)"
    )

    # Display
    parser.add_argument("--width", type=int, default=64,
                        help="Radar width in characters (default: 64)")
    parser.add_argument("--height", type=int, default=24,
                        help="Radar height in lines (default: 24)")
    parser.add_argument(
        "--interval", type=float, default=0.5, metavar="SEC",
        help="Redraw interval in seconds (default: 0.5)"
    )
    parser.add_argument(
        "--sweep-speed", type=float, default=90.0, metavar="DEG",
        help="Sweep beam speed in degrees per second (default: 90)"
    )
    parser.add_argument(
        "--sweep-width", type=float, default=30.0, metavar="DEG",
        help="Sweep beam arc width in degrees (default: 30)"
    )
    parser.add_argument(
        "--rssi-near", type=int, default=-30, metavar="DBM",
        help="RSSI drawn at the centre (default: -30)"
    )
    parser.add_argument(
        "--rssi-far", type=int, default=-90, metavar="DBM",
        help="RSSI drawn at the edge (default: -90)"
    )
    parser.add_argument(
        "--top", type=int, default=10, metavar="N",
        help="Devices listed in the legend; must leave room for two "
             "header rows within --height (default: 10)"
    )
    parser.add_argument(
        "--compact-legend", action="store_true",
        help="Legend without name and trend columns"
    )

    # Tracking
    parser.add_argument(
        "--max-age", type=float, default=60.0, metavar="SEC",
        help="Drop devices not seen for this many seconds (default: 60)"
    )
    parser.add_argument(
        "--history", type=int, default=16, metavar="N",
        help="RSSI readings kept per device for the trend (default: 16)"
    )
    parser.add_argument(
        "--window", type=float, default=2.0, metavar="SEC",
        help="How long an Address line stays valid for the RSSI line "
             "that follows it (default: 2)"
    )
    parser.add_argument(
        "--prefix", action="append", default=None, metavar="OUI",
        help="Only track addresses starting with this prefix, e.g. "
             "AA:BB:CC (repeatable or comma-separated)"
    )

    # Output
    parser.add_argument(
        "--log", type=str, default=_DEFAULT_LOG_FILE, metavar="FILE",
        help=f"CSV sighting log (default: {_DEFAULT_LOG_FILE})"
    )
    parser.add_argument(
        "--debug-log", type=str, default=None, metavar="FILE",
        help="Write diagnostic logging (dropped lines, btmon restarts) "
             "to this file"
    )

    args = parser.parse_args(argv)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    if args.width < 16 or args.height < 8:
        parser.error("--width must be at least 16 and --height at least 8")
    if args.interval <= 0:
        parser.error("--interval must be greater than 0")
    if args.max_age <= 0:
        parser.error("--max-age must be greater than 0")
    if args.history < 1:
        parser.error("--history must be at least 1")
    if args.top < 1:
        parser.error("--top must be at least 1")
    if args.top + 2 > args.height:
        parser.error("--top plus the two legend header rows must fit in "
                     "--height")
    if args.window <= 0:
        parser.error("--window must be greater than 0")
    if args.sweep_width < 0 or args.sweep_width >= 360:
        parser.error("--sweep-width must be between 0 and 359")
    if args.rssi_near <= args.rssi_far:
        parser.error("--rssi-near must be stronger (greater) than --rssi-far")

    prefixes = _split_list(args.prefix)
    for prefix in prefixes:
        if not _PREFIX_RE.match(prefix):
            parser.error(
                f"Invalid prefix '{prefix}'. "
                "Expected colon-separated hex octets, e.g. AA:BB:CC")

    labels = _split_list([args.labels])
    if not labels:
        parser.error("--labels requires at least one label")
    if len(labels) > 26:
        parser.error("--labels supports at most 26 sources")

    adapters = _split_list([args.adapters])
    if args.input and args.source != "stdin":
        parser.error("--input can only be used with --source stdin")
    if args.source != "stdin":
        if not _HAS_BLEAK:
            parser.error(f"--source {args.source} requires 'bleak'. "
                         "Install with: pip install bleak")
        if not adapters:
            parser.error("--adapters requires at least one adapter name")
        if len(labels) < len(adapters):
            parser.error("--labels needs one label per adapter")
    if (args.source == "btmon" and platform.system() == "Linux"
            and os.geteuid() != 0):
        parser.error("--source btmon must run as root (sudo)")
    if args.source == "stdin" and not args.input and sys.stdin.isatty():
        parser.error("no input: pipe labelled btmon output into ble-radar, "
                     "or use --input / --source")

    if args.debug_log:
        logging.basicConfig(
            filename=args.debug_log, level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = RadarConfig(
        width=args.width,
        height=args.height,
        draw_interval=args.interval,
        max_age=args.max_age,
        sweep_speed=args.sweep_speed,
        sweep_width=args.sweep_width,
        history_len=args.history,
        prefixes=[p.upper() for p in prefixes],
        rssi_near=args.rssi_near,
        rssi_far=args.rssi_far,
        legend_size=args.top,
        association_window=args.window,
        compact_legend=args.compact_legend,
        labels=labels,
    )

    sighting_log = SightingLog(args.log)
    try:
        sighting_log.open()
    except OSError as e:
        parser.error(f"Cannot open log file: {e}")

    feeds = _build_feeds(args.source, args.input or [], adapters, labels,
                         active=args.active)
    engine = RadarEngine(config, sighting_log=sighting_log, out=sys.stdout)
    app = RadarApp(engine, feeds)

    try:
        with TerminalDisplay(sys.stdout):
            asyncio.run(app.run())
    except KeyboardInterrupt:
        # Covers Windows where add_signal_handler is unavailable
        app.stop()
    finally:
        sighting_log.close()

    print(f"  {engine.sightings} sightings from {engine.lines_seen} lines "
          f"logged to {args.log}")


if __name__ == "__main__":
    main()
