from __future__ import annotations
import os
import threading
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional

import structlog

from ..core.errors import CapacityError, InvalidSourceError, ValidationError
from ..core.models import ExecutionRequest, ExecutionResult, ProcessResult, Status, Workspace
from ..executor.base import ExecSpec
from ..executor.process import ProcessRunner
from ..executor.sandbox import Sandbox
from ..isolation.isolation import IsolationPipeline
from ..isolation.mountns import DEFAULT_JAIL_PATHS
from ..runners.base import ToolchainRecipe
from ..runners.registry import REGISTRY, ToolchainRegistry
from ..settings import Settings
from .workspace import WorkspaceManager

log = structlog.get_logger(__name__)

_LIMIT_NAMES = {
    "cpu_limit": "CPU time",
    "memory_limit": "memory",
    "file_size_limit": "file size",
    "process_limit": "process count",
}


def _resource_message(res: ProcessResult) -> str:
    return f"Execution exceeded the {_LIMIT_NAMES.get(res.reason or '', 'resource')} limit"


def _runtime_trees(runtimes: Mapping[str, str]) -> Iterator[str]:
    """Install prefix of every configured runtime, e.g. /opt/py for /opt/py/bin/python3."""
    for exe in runtimes.values():
        if not os.path.isabs(exe):
            continue
        for p in {Path(exe), Path(os.path.realpath(exe))}:
            tree = p.parent.parent if p.parent.name == "bin" else p.parent
            # /bin/x would otherwise expose the whole host root
            if tree != Path("/"):
                yield str(tree)


class ExecutionPipeline:
    """
    Registry + Workspace + Sandbox: stage the source, optionally compile,
    run, and always tear the workspace down.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        registry: ToolchainRegistry = REGISTRY,
        workspaces: Optional[WorkspaceManager] = None,
        sandbox: Optional[Sandbox] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.runtimes: Mapping[str, str] = dict(settings.runtimes)
        self.workspaces = workspaces or WorkspaceManager(
            settings.scratch_root,
            attempts=settings.cleanup_attempts,
            backoff_s=settings.cleanup_backoff_s,
            target_framework=settings.dotnet_target_framework,
        )
        self.sandbox = sandbox or Sandbox(
            ProcessRunner(max_output_bytes=settings.max_output_bytes),
            IsolationPipeline(
                settings.strategy_layers(),
                cgroup_base=settings.cgroup_base,
                require=settings.require_isolation,
                jail_paths=(*DEFAULT_JAIL_PATHS, *settings.jail_paths, *_runtime_trees(settings.runtimes)),
            ),
        )
        self._slots = threading.BoundedSemaphore(max(1, settings.max_concurrent))

    def validate(self, req: ExecutionRequest) -> ToolchainRecipe:
        if not req.source_code or not req.language or not req.language.strip():
            raise ValidationError("source code and language are required")
        recipe = self.registry.lookup(req.language)
        try:
            req.source_code.encode("utf-8")
        except UnicodeEncodeError as e:
            raise InvalidSourceError(f"source code is not valid UTF-8 at offset {e.start}") from None
        return recipe

    def execute(self, req: ExecutionRequest) -> ExecutionResult:
        recipe = self.validate(req)
        if not self._slots.acquire(timeout=self.settings.admission_timeout_s):
            raise CapacityError("too many executions in flight")
        try:
            return self._execute(recipe, req.source_code)
        finally:
            self._slots.release()

    def _execute(self, recipe: ToolchainRecipe, source_code: str) -> ExecutionResult:
        with self.workspaces.staged(source_code, recipe) as ws:
            bound = log.bind(run_id=ws.run_id, language=recipe.language)
            bound.info("state", status=Status.SOURCE_STAGED.value)
            env = recipe.environment()

            compile_argv = recipe.compile_argv(ws, self.runtimes)
            if compile_argv is not None:
                bound.info("state", status=Status.COMPILING.value)
                res = self._step(ws, recipe, compile_argv, env, "compile")
                failed = self._compile_outcome(ws, recipe, res)
                if failed is not None:
                    bound.info("state", status=failed.status.value, duration_s=round(res.duration_s, 3))
                    return failed
                bound.info("state", status=Status.COMPILED.value, duration_s=round(res.duration_s, 3))

            bound.info("state", status=Status.RUNNING.value)
            res = self._step(ws, recipe, recipe.run_argv(ws, self.runtimes), env, "run")
            result = self._run_outcome(res)
            bound.info("state", status=result.status.value, rc=res.exit_code, duration_s=round(res.duration_s, 3))
            return result

    def _step(self, ws: Workspace, recipe: ToolchainRecipe, argv, env: Dict[str, str], step: str) -> ProcessResult:
        limits = self.settings.step_limits(step)
        return self.sandbox.run(
            ExecSpec(cmd=argv, workdir=ws.root_dir, env=env, timeout_s=limits.wall_timeout_seconds),
            limits,
            run_id=ws.run_id,
            step=step,
            address_space=recipe.address_space_limit,
        )

    def _compile_outcome(self, ws: Workspace, recipe: ToolchainRecipe,
                         res: ProcessResult) -> Optional[ExecutionResult]:
        if res.timed_out:
            limit = self.settings.step_limits("compile").wall_timeout_seconds
            return ExecutionResult(f"Compilation timed out after {limit}s", True, Status.TIMED_OUT)
        if res.resource_exceeded:
            return ExecutionResult(_resource_message(res), True, Status.RESOURCE_EXCEEDED)
        diagnostics = res.stdout + res.stderr
        if res.exit_code != 0:
            return ExecutionResult(f"Compilation failed:\n{diagnostics}", True, Status.COMPILE_FAILED)
        missing = recipe.check_build(ws)
        if missing is not None:
            return ExecutionResult(f"Compilation failed: {missing}\n{diagnostics}", True, Status.COMPILE_FAILED)
        return None

    def _run_outcome(self, res: ProcessResult) -> ExecutionResult:
        if res.timed_out:
            limit = self.settings.step_limits("run").wall_timeout_seconds
            return ExecutionResult(f"Execution timed out after {limit}s", True, Status.TIMED_OUT)
        if res.resource_exceeded:
            return ExecutionResult(_resource_message(res), True, Status.RESOURCE_EXCEEDED)
        is_error = bool(res.stderr) or res.exit_code != 0
        return ExecutionResult(
            output=res.stderr or res.stdout,
            is_error=is_error,
            status=Status.RUN_FAILED if is_error else Status.COMPLETED,
        )
