from __future__ import annotations
import os
import resource
from pathlib import Path
from typing import Callable, Optional

from ..core.models import Limits


def _set(which: int, soft: int, hard: int) -> None:
    # an unprivileged process cannot raise its hard limit, so stay under it
    _, cur_hard = resource.getrlimit(which)
    if cur_hard != resource.RLIM_INFINITY:
        hard = min(hard, cur_hard)
        soft = min(soft, hard)
    resource.setrlimit(which, (soft, hard))


def apply_rlimits(limits: Limits, *, address_space: bool = True) -> None:
    """
    Per-process caps: CPU time, address space, open files, file size, cores.
    CPU gets one second between soft and hard so the kernel sends SIGXCPU
    (distinguishable from a plain kill) before SIGKILL.
    """
    _set(resource.RLIMIT_CPU, limits.cpu_seconds, limits.cpu_seconds + 1)
    if address_space:
        _set(resource.RLIMIT_AS, limits.memory_bytes, limits.memory_bytes)
    _set(resource.RLIMIT_NOFILE, limits.nofile, limits.nofile)
    _set(resource.RLIMIT_FSIZE, limits.fsize_bytes, limits.fsize_bytes)
    _set(resource.RLIMIT_CORE, 0, 0)
    if limits.nproc:
        _set(resource.RLIMIT_NPROC, limits.nproc, limits.nproc)


def make_preexec(
    limits: Optional[Limits],
    *,
    address_space: bool = True,
    cgroup_leaf: Optional[Path] = None,
) -> Callable[[], None]:
    """
    preexec_fn for Popen. Runs in the forked child before exec, so the
    program is limited (and inside its cgroup) from its first instruction.
    """
    procs = str(cgroup_leaf / "cgroup.procs") if cgroup_leaf is not None else None

    def _preexec() -> None:
        if procs is not None:
            fd = os.open(procs, os.O_WRONLY)
            try:
                os.write(fd, str(os.getpid()).encode())
            finally:
                os.close(fd)
        if limits is not None:
            apply_rlimits(limits, address_space=address_space)

    return _preexec
