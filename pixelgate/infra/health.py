# pixelgate/infra/health.py
from __future__ import annotations

import gc
import os
import sys
import threading
import time
from typing import Any

_START = time.time()
_MB = 1024 * 1024


def _max_rss_mb() -> float:
    try:
        import resource
    except ImportError:  # Windows
        return 0.0
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    if sys.platform == "darwin":
        return round(rss / _MB, 2)
    return round(rss / 1024, 2)


def get_health_stats() -> dict[str, Any]:
    """Process statistics for the /health endpoint."""
    collections = sum(stat.get("collections", 0) for stat in gc.get_stats())
    return {
        "uptime": int(time.time() - _START),
        "maxResidentMemory": _max_rss_mb(),
        "threads": threading.active_count(),
        "completedGCCycles": collections,
        "cpus": os.cpu_count() or 1,
    }
