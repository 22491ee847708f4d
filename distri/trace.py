"""Chrome trace event output (JSON array format) for profiling distri runs."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional

log = logging.getLogger(__name__)

_START_NS = time.monotonic_ns()
_UINT64_MASK = (1 << 64) - 1

_sink_lock = threading.Lock()
_sink: Optional[BinaryIO] = None


def sink(writer: BinaryIO) -> None:
    """Write all following events as a Chrome trace event file into ``writer``."""
    global _sink
    with _sink_lock:
        _sink = writer
        # The closing bracket of the JSON array is optional and never written.
        writer.write(b"[")


def enable(prefix: str) -> str:
    """Start tracing into ``$TMPDIR/distri.traces/<prefix>.<pid>``.

    Returns the path of the trace file.
    """
    path = os.path.join(tempfile.gettempdir(), "distri.traces", f"{prefix}.{os.getpid()}")
    os.makedirs(os.path.dirname(path), mode=0o755, exist_ok=True)
    writer = open(path, "wb", buffering=0)
    sink(writer)
    return path


def _micros_since(start_ns: int) -> int:
    return max(0, (time.monotonic_ns() - start_ns) // 1000)


@dataclass
class PendingEvent:
    """A trace event that is written to the sink once done() is called."""

    name: str
    categories: str = ""
    type: str = "X"
    clock_timestamp: int = 0
    duration: int = 0
    pid: int = 0
    tid: int = 0
    args: Any = None
    _start_ns: int = field(default_factory=time.monotonic_ns, repr=False, compare=False)

    def _as_json(self) -> bytes:
        args = self.args
        if isinstance(args, dict):
            args = dict(sorted(args.items()))
        record = {
            "name": self.name,
            "cat": self.categories,
            "ph": self.type,
            "ts": self.clock_timestamp,
            "dur": self.duration,
            "pid": self.pid,
            "tid": self.tid,
            "args": args,
        }
        return json.dumps(record, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def done(self) -> None:
        """Record the duration and write the event to the sink."""
        self.duration = _micros_since(self._start_ns)
        payload = self._as_json() + b","
        with _sink_lock:
            if _sink is None:
                return
            try:
                _sink.write(payload)
            except OSError as err:
                log.warning("[trace] %s", err)


def event(name: str, tid: int) -> PendingEvent:
    """Begin a complete ("X") event with the given name and thread id."""
    return PendingEvent(name=name, clock_timestamp=_micros_since(_START_NS), tid=tid)


def _parse_uint_or_zero(text: str) -> int:
    try:
        value = int(text, 10)
    except ValueError:
        return 0
    return value if 0 <= value <= _UINT64_MASK else 0


def _cpu_events(last: dict[str, dict[str, int]], path: str = "/proc/stat") -> None:
    with open(path, encoding="utf-8") as f:
        content = f.read()
    for line in content.strip().split("\n"):
        if not line.startswith("cpu") or line.startswith("cpu "):
            continue
        # cpu10 126780 18 25115 1757702 300 1255 357 0 0 0
        parts = line.split(" ")
        if len(parts) < 5:
            continue
        counters = last.setdefault(parts[0], {})
        ev = event(parts[0], 0)
        ev.pid = 2
        ev.type = "C"
        present = "user" in counters
        user = _parse_uint_or_zero(parts[1])
        user_diff = (user - counters.get("user", 0)) & _UINT64_MASK
        counters["user"] = user
        sys_ = _parse_uint_or_zero(parts[3])
        sys_diff = (sys_ - counters.get("sys", 0)) & _UINT64_MASK
        counters["sys"] = sys_
        if not present:
            continue
        ev.args = {"user": user_diff, "sys": sys_diff}
        ev.done()


def _mem_events(path: str = "/proc/meminfo") -> None:
    with open(path, encoding="utf-8") as f:
        content = f.read()
    for line in content.strip().split("\n"):
        if not line.startswith("MemAvailable:"):
            continue
        value = line.removeprefix("MemAvailable:").strip().removesuffix(" kB")
        kb = int(value, 10)
        if kb < 0:
            raise ValueError(f"invalid MemAvailable value {value!r}")
        ev = event("MemAvailable", 0)
        ev.pid = 1
        ev.type = "C"
        ev.args = {"available": kb}
        ev.done()
        break


def cpu_events(stop: threading.Event, frequency: float) -> None:
    """Emit CPU and memory counter events every ``frequency`` seconds until ``stop`` is set."""
    last: dict[str, dict[str, int]] = {}
    for _ in range(2):  # initialize, then emit zero values immediately
        try:
            _cpu_events(last)
        except OSError:
            pass
    while not stop.wait(frequency):
        _mem_events()
        _cpu_events(last)


def mem_events(stop: threading.Event, frequency: float) -> None:
    """Emit memory counter events every ``frequency`` seconds until ``stop`` is set."""
    while not stop.wait(frequency):
        _mem_events()