"""
Host load sampling for health snapshots and job metrics.
"""

import os
import resource
import shutil
import sys

from pydantic import BaseModel


class SystemLoad(BaseModel):
    """Normalised host load, each value in [0, 1] where known."""

    cpu: float = 0.0
    memory: float = 0.0
    disk: float = 0.0


def cpu_load() -> float:
    """One-minute load average divided by CPU count."""
    try:
        load_1m = os.getloadavg()[0]
    except (AttributeError, OSError):
        return 0.0
    return round(load_1m / (os.cpu_count() or 1), 4)


def memory_load() -> float:
    try:
        total = os.sysconf("SC_PHYS_PAGES")
        available = os.sysconf("SC_AVPHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return 0.0
    if total <= 0:
        return 0.0
    return round((total - available) / total, 4)


def disk_load(path: str = ".") -> float:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return 0.0
    if usage.total <= 0:
        return 0.0
    return round(usage.used / usage.total, 4)


def sample_system_load(path: str = ".") -> SystemLoad:
    return SystemLoad(cpu=cpu_load(), memory=memory_load(), disk=disk_load(path))


def process_memory_bytes() -> int:
    """Peak resident set size of this process in bytes."""
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS and kilobytes on Linux
    return rss if sys.platform == "darwin" else rss * 1024


def disk_usage_bytes(path: str | None) -> int | None:
    if not path:
        return None
    try:
        return os.path.getsize(path)
    except OSError:
        return None
