"""Host summary for the /system/info endpoint."""

from __future__ import annotations

import platform
import time

from .sandbox_tools import sandbox_run

_STARTED = time.monotonic()


def uptime() -> float:
    """Seconds since this process imported the module."""
    return round(time.monotonic() - _STARTED, 3)


def _cpu_model() -> str:
    r = sandbox_run('grep -m1 "model name" /proc/cpuinfo', timeout=5)
    if ":" in r.stdout:
        return r.stdout.split(":", 1)[1].strip()
    return platform.processor() or "Unknown"


def system_info() -> dict:
    mem = sandbox_run("free -h", timeout=5)
    disk = sandbox_run("df -h /", timeout=5)
    return {
        "cpu": _cpu_model(),
        "memory": mem.stdout,
        "disk": disk.stdout,
        "uptime": uptime(),
        "pythonVersion": platform.python_version(),
        "platform": platform.system().lower(),
        "arch": platform.machine(),
    }
