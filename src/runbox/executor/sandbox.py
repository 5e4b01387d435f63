from __future__ import annotations
import os
import signal
from pathlib import Path
from typing import Optional

import structlog

from ..core.errors import InfrastructureError
from ..core.models import Limits, ProcessResult
from ..isolation import cgroups as cg
from ..isolation.isolation import IsolationPipeline
from ..isolation.rlimits import make_preexec
from .base import ExecSpec
from .process import ProcessRunner

log = structlog.get_logger(__name__)

_SIGNAL_REASONS = {
    signal.SIGXCPU: "cpu_limit",
    signal.SIGXFSZ: "file_size_limit",
}


def _terminating_signal(rc: int, wrapped: bool) -> Optional[int]:
    if rc < 0:
        return -rc
    # unshare --fork and the jail shell report a killed child as 128 + signo.
    # A wrapped program that calls exit(129..255) itself is indistinguishable
    # from a signal here; only SIGXCPU, SIGXFSZ and cgroup events are mapped.
    if wrapped and rc > 128:
        return rc - 128
    return None


class Sandbox:
    """
    Process runner under OS limits. Lifecycle per invocation:
    prepare (cgroup leaf, jail mount point) -> run (preexec joins leaf + rlimits,
    argv wrapped into network and mount namespaces) -> classify -> cleanup
    (kill stragglers, rmdir).
    """

    def __init__(self, runner: ProcessRunner, isolation: IsolationPipeline):
        self.runner = runner
        self.iso = isolation

    def run(self, spec: ExecSpec, limits: Limits, *, run_id: str, step: str,
            address_space: bool = True) -> ProcessResult:
        leaf: Optional[Path] = None
        if self.iso.uses("cgroups"):
            try:
                leaf = cg.create_leaf(self.iso.cgroup_base, f"{run_id}-{step}")
                cg.set_limits(leaf, limits)
            except OSError as e:
                if leaf is not None:
                    cg.teardown(leaf)
                raise InfrastructureError(f"cannot prepare cgroup for {step}: {e}") from e

        preexec = None
        if self.iso.uses("rlimits") or leaf is not None:
            preexec = make_preexec(
                limits if self.iso.uses("rlimits") else None,
                address_space=address_space,
                cgroup_leaf=leaf,
            )
        new_root: Optional[Path] = None
        if self.iso.uses("mountns"):
            # mount point for the jail root, outside the workspace so the program never sees it
            new_root = Path(spec.workdir).resolve().parent / f".{run_id}-{step}.root"
            try:
                new_root.mkdir()
            except OSError as e:
                if leaf is not None:
                    cg.teardown(leaf)
                raise InfrastructureError(f"cannot prepare jail for {step}: {e}") from e
        wrapped = self.iso.wraps_command
        cmd = self.iso.wrap(list(spec.cmd), workdir=spec.workdir, new_root=new_root)
        env = {**spec.env, **self.iso.environment()}

        try:
            res = self.runner.run(
                ExecSpec(cmd=cmd, workdir=spec.workdir, env=env, timeout_s=limits.wall_timeout_seconds),
                preexec=preexec,
            )
            if not res.timed_out:
                self._classify(res, leaf, wrapped)
        finally:
            if leaf is not None:
                try:
                    cg.kill_all(leaf)
                except OSError as e:
                    log.warning("cgroup_kill_failed", leaf=str(leaf), error=str(e))
                cg.teardown(leaf)
            if new_root is not None:
                try:
                    os.rmdir(new_root)
                except OSError as e:
                    log.warning("jail_cleanup_failed", path=str(new_root), error=str(e))

        if res.resource_exceeded:
            log.info("resource_exceeded", run_id=run_id, step=step, reason=res.reason)
        return res

    @staticmethod
    def _classify(res: ProcessResult, leaf: Optional[Path], wrapped: bool) -> None:
        if res.exit_code == 0:
            return
        reason = None
        if leaf is not None and cg.oom_kills(leaf) > 0:
            reason = "memory_limit"
        else:
            sig = _terminating_signal(res.exit_code, wrapped)
            if sig is not None:
                reason = _SIGNAL_REASONS.get(sig)
        if reason is None and leaf is not None and cg.pids_denied(leaf) > 0:
            reason = "process_limit"
        if reason is not None:
            res.resource_exceeded = True
            res.reason = reason
