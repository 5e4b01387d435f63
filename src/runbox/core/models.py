from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


class Status(str, Enum):
    IDLE = "Idle"
    SOURCE_STAGED = "SourceStaged"
    COMPILING = "Compiling"
    COMPILED = "Compiled"
    COMPILE_FAILED = "CompileFailed"
    RUNNING = "Running"
    COMPLETED = "Completed"
    RUN_FAILED = "RunFailed"
    TIMED_OUT = "TimedOut"
    RESOURCE_EXCEEDED = "ResourceExceeded"


@dataclass
class Limits:
    cpu_seconds: int
    memory_bytes: int
    nofile: int
    wall_timeout_seconds: int
    fsize_bytes: int = 16 * 1024 * 1024
    pids: int = 64
    nproc: Optional[int] = None  # RLIMIT_NPROC counts every process of the uid


@dataclass
class ExecutionRequest:
    language: str
    source_code: str


@dataclass
class Workspace:
    run_id: str
    root_dir: Path
    source_file: Path
    entry_name: str
    artifact_paths: List[Path] = field(default_factory=list)

    @property
    def bin_path(self) -> Path:
        return self.root_dir / self.run_id

    @property
    def build_dir(self) -> Path:
        return self.root_dir / "build"

    def placeholders(self) -> dict:
        return {
            "root": str(self.root_dir),
            "src": str(self.source_file),
            "bin": str(self.bin_path),
            "build": str(self.build_dir),
            "main": self.entry_name,
        }


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    resource_exceeded: bool = False
    reason: Optional[str] = None
    duration_s: float = 0.0


@dataclass
class ExecutionResult:
    output: str
    is_error: bool
    status: Status
