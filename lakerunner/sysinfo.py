"""Report runtime details and cgroup CPU limits, with a sanity check of their alignment."""

from __future__ import annotations

import argparse
import gc
import json
import os
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

__all__ = ["CPUQuota", "get_cpu_quota_cores", "run_sysinfo", "main"]

DEFAULT_CGROUP_ROOT = "/sys/fs/cgroup"


@dataclass(frozen=True)
class CPUQuota:
    """Effective CPU quota in cores (0 when unlimited) and the raw text it came from."""

    cores: float
    raw: str

    @property
    def unlimited(self) -> bool:
        return self.cores <= 0


def _parse_float(text: str) -> float | None:
    try:
        return float(text)
    except ValueError:
        return None


def get_cpu_quota_cores(root: str | Path | None = None) -> CPUQuota:
    """Read cgroup v2 ``cpu.max`` or the v1 ``cpu.cfs_*`` files under ``root``.

    Raises ValueError for an unreadable v2 format and OSError when no quota file exists.
    """
    base = Path(root if root is not None else DEFAULT_CGROUP_ROOT)

    try:
        raw = (base / "cpu.max").read_text().strip()
    except OSError:
        raw = None
    if raw is not None:
        parts = raw.split()
        if len(parts) >= 2:
            if parts[0] == "max":
                return CPUQuota(0.0, raw)
            quota, period = _parse_float(parts[0]), _parse_float(parts[1])
            if quota is not None and period is not None and period > 0:
                return CPUQuota(quota / period, raw)
        raise ValueError(f"unexpected format: {raw!r}")

    try:
        sq = (base / "cpu" / "cpu.cfs_quota_us").read_text().strip()
        sp = (base / "cpu" / "cpu.cfs_period_us").read_text().strip()
    except OSError as err:
        raise OSError("no cgroup CPU quota files available") from err
    raw = f"{sq} {sp}"
    if sq != "-1":
        quota, period = _parse_float(sq), _parse_float(sp)
        if quota is not None and period is not None and period > 0:
            return CPUQuota(quota / period, raw)
    return CPUQuota(0.0, raw)


def _usable_cpus() -> int:
    affinity = getattr(os, "sched_getaffinity", None)
    if affinity is not None:
        return len(affinity(0))
    return os.cpu_count() or 1


def _max_rss_mib() -> int | None:
    try:
        import resource
    except ImportError:
        return None
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports KiB, macOS reports bytes.
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return rss // divisor


def run_sysinfo(out: TextIO | None = None, root: str | Path | None = None) -> None:
    """Write the runtime, cgroup quota, sanity-check and memory report to ``out``."""
    out = out if out is not None else sys.stdout

    def emit(line: str = "") -> None:
        print(line, file=out)

    num_host = os.cpu_count() or 1
    usable = _usable_cpus()

    emit("=== Runtime ===")
    emit(f"  OS:             {platform.system().lower()}")
    emit(f"  Arch:           {platform.machine()}")
    emit(f"  Python:         {platform.python_version()}")
    emit(f"  NumCPU (host):  {num_host}")
    emit(f"  Usable CPUs:    {usable}")

    emit()
    emit("=== cgroup CPU quota ===")
    quota_cores = 0.0
    try:
        quota = get_cpu_quota_cores(root)
    except (OSError, ValueError) as err:
        emit(f"  error reading quota: {err}")
    else:
        quota_cores = quota.cores
        if quota.unlimited:
            emit(f"  none (unlimited) — raw: {json.dumps(quota.raw)}")
        else:
            emit(f"  {quota.cores:.2f} cores  — raw: {json.dumps(quota.raw)}")

    emit()
    emit("=== Config sanity check ===")
    if quota_cores > 0:
        if usable == num_host:
            emit(f"⚠️  usable CPUs={usable} equals host NumCPU={num_host}; quota not applied")
        elif usable > quota_cores:
            emit(f"⚠️  usable CPUs={usable} exceeds container quota of {quota_cores:.2f} cores")

    emit()
    emit("=== Memory Stats (MiB) ===")
    rss = _max_rss_mib()
    emit(f"  MaxRSS:     {rss if rss is not None else '<unavailable>':>6}")
    collections = sum(stat.get("collections", 0) for stat in gc.get_stats())
    emit(f"  NumGC:      {collections:6d}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sysinfo",
        description="Print runtime + cgroup limits & sanity-check alignment",
    )
    parser.parse_args(argv)
    run_sysinfo()
    return 0