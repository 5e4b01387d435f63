from __future__ import annotations
import os
import signal
import time
from pathlib import Path
from typing import Optional

import structlog

from ..core.models import Limits

log = structlog.get_logger(__name__)

CGROOT = Path("/sys/fs/cgroup")
CONTROLLERS = ("memory", "pids", "cpu")


def _write(p: Path, val) -> None:
    p.write_text(str(val))


def is_v2() -> bool:
    return (CGROOT / "cgroup.controllers").exists()


def _self_cgroup() -> Path:
    # unified v2: '0::/<relative>'
    with open("/proc/self/cgroup") as f:
        for line in f:
            if line.startswith("0::"):
                return CGROOT / line.split("::", 1)[1].strip().lstrip("/")
    return CGROOT


def resolve_base(configured: Optional[Path]) -> Path:
    """Parent node for all leaves: the configured path, else <own cgroup>/runbox."""
    if configured is not None:
        base = Path(configured)
        if not str(base).startswith(str(CGROOT)):
            raise ValueError(f"cgroup_base must live under {CGROOT}, got {base}")
        return base
    return _self_cgroup() / "runbox"


def enable_controllers(node: Path) -> None:
    """Delegate memory/pids/cpu to the children of `node` (which must hold no processes)."""
    have = set((node / "cgroup.controllers").read_text().split())
    want = [f"+{c}" for c in CONTROLLERS if c in have]
    if want:
        _write(node / "cgroup.subtree_control", " ".join(want))


def prepare_base(base: Path) -> None:
    base.mkdir(parents=True, exist_ok=True)
    enable_controllers(base)
    missing = set(CONTROLLERS) - set((base / "cgroup.subtree_control").read_text().split())
    if {"memory", "pids"} & missing:
        raise PermissionError(f"{base}: controllers not delegated: {sorted(missing)}")


def create_leaf(base: Path, name: str) -> Path:
    leaf = base / name
    leaf.mkdir(parents=False, exist_ok=False)
    return leaf


def set_limits(leaf: Path, limits: Limits) -> None:
    _write(leaf / "memory.max", limits.memory_bytes)
    try:
        _write(leaf / "memory.swap.max", 0)
    except FileNotFoundError:
        # swap accounting disabled
        pass
    _write(leaf / "memory.oom.group", 1)
    _write(leaf / "pids.max", limits.pids)
    if (leaf / "cpu.max").exists():
        # one full CPU
        _write(leaf / "cpu.max", "100000 100000")


def _event_count(leaf: Path, filename: str, key: str) -> int:
    p = leaf / filename
    try:
        for line in p.read_text().splitlines():
            name, _, value = line.partition(" ")
            if name == key:
                return int(value)
    except FileNotFoundError:
        pass
    return 0


def oom_kills(leaf: Path) -> int:
    return _event_count(leaf, "memory.events", "oom_kill")


def pids_denied(leaf: Path) -> int:
    return _event_count(leaf, "pids.events", "max")


def kill_all(leaf: Path) -> None:
    """Kill everything still in the leaf, including children that left the process group."""
    kill_file = leaf / "cgroup.kill"
    if kill_file.exists():
        _write(kill_file, 1)
        return
    for pid in (leaf / "cgroup.procs").read_text().split():
        try:
            os.kill(int(pid), signal.SIGKILL)
        except ProcessLookupError:
            pass


def teardown(leaf: Path, attempts: int = 5, delay_s: float = 0.1) -> bool:
    # rmdir only succeeds once the last process is reaped
    for _ in range(attempts):
        try:
            leaf.rmdir()
            return True
        except FileNotFoundError:
            return True
        except OSError:
            time.sleep(delay_s)
    log.warning("cgroup_teardown_failed", leaf=str(leaf))
    return False
