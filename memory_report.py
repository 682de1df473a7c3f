"""
Memory Measurement Utilities

Snapshots of process memory taken around each benchmark scenario, the
human-readable diff printed between them, and a peak-RSS probe built on
memory_profiler. Garbage collection here is only a hint: snapshots are noisy
signals, not exact measurements.
"""

import gc
import tracemalloc
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import psutil
import pyarrow as pa
from memory_profiler import memory_usage

BYTE_BASE = 1000
BYTE_UNITS = ["Bytes", "KB", "MB", "GB", "TB", "PB"]
PEAK_SAMPLE_INTERVAL = 0.01  # seconds between memory_profiler samples

# (attribute, label) for the counters every snapshot carries
SNAPSHOT_COUNTERS = [
    ("rss", "RSS"),
    ("vms", "VMS"),
    ("heap_used", "HeapUsed"),
    ("arrow_allocated", "ArrowPool"),
]


@dataclass
class MemorySnapshot:
    rss: int
    vms: int
    heap_used: int
    arrow_allocated: int
    extra: Dict[str, int] = field(default_factory=dict)


def format_bytes(num_bytes, decimals: int = 2) -> str:
    """
    Render a signed byte count with a decimal (powers of 1000) unit.

    Zero renders as ``"0 "``. Magnitudes past the largest unit stay in that unit.
    """
    if num_bytes == 0:
        return "0 "

    magnitude = abs(num_bytes)
    power = 0
    while magnitude >= BYTE_BASE and power < len(BYTE_UNITS) - 1:
        magnitude /= BYTE_BASE
        power += 1

    scaled = num_bytes / BYTE_BASE ** power
    text = f"{scaled:.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text} {BYTE_UNITS[power]}"


def collect_garbage() -> int:
    """Ask the collector to run. Nothing guarantees memory is returned to the OS."""
    return gc.collect()


def take_snapshot(extra: Optional[Dict[str, int]] = None) -> MemorySnapshot:
    """Capture process, Python heap and Arrow pool counters."""
    mem = psutil.Process().memory_info()
    heap_used = tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else 0
    return MemorySnapshot(
        rss=mem.rss,
        vms=mem.vms,
        heap_used=heap_used,
        arrow_allocated=pa.total_allocated_bytes(),
        extra=dict(extra or {}),
    )


def _diff_line(label: str, before: int, after: int) -> str:
    return f"  {label:<10}: {format_bytes(after - before, 2)} ({before} -> {after})\n"


def report_memory_diff(info: str, mem_before: MemorySnapshot, mem_after: MemorySnapshot) -> str:
    """
    Print the per-counter change between two snapshots.

    Optional counters are reported when the "before" snapshot has them. A
    counter missing from the "after" snapshot is reported as missing rather
    than failing the run.

    Returns:
        str: The printed report
    """
    msg = f"Memory increase: {info}\n"
    for attr, label in SNAPSHOT_COUNTERS:
        msg += _diff_line(label, getattr(mem_before, attr), getattr(mem_after, attr))

    for name, before in mem_before.extra.items():
        if name in mem_after.extra:
            msg += _diff_line(name, before, mem_after.extra[name])
        else:
            msg += f"  {name:<10}: n/a (missing after load, before was {before})\n"

    print(msg)
    return msg


def measure_peak(func: Callable, *args) -> Tuple[float, object]:
    """
    Run ``func(*args)`` while memory_profiler samples this process.

    memory_profiler calls ``func`` again with a finer interval when a run is
    too short to sample, so ``func`` must be safe to repeat.

    Returns:
        tuple[float, object]: Peak RSS in MiB and the value returned by the last call
    """
    peak_mib, returned = memory_usage(
        (func, args),
        interval=PEAK_SAMPLE_INTERVAL,
        max_usage=True,
        retval=True,
    )
    return float(peak_mib), returned
