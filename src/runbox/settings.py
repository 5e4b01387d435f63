from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import Limits

_DEFAULT_LIMITS: Dict[str, Dict[str, int]] = {
    "compile": {
        "cpu_seconds": 30,
        "memory_bytes": 1024 * 1024 * 1024,
        "nofile": 256,
        "wall_timeout_seconds": 60,
        "fsize_bytes": 256 * 1024 * 1024,
        "pids": 256,
    },
    "run": {
        "cpu_seconds": 5,
        "memory_bytes": 256 * 1024 * 1024,
        "nofile": 128,
        "wall_timeout_seconds": 10,
        "fsize_bytes": 16 * 1024 * 1024,
        "pids": 128,
    },
}


class Settings(BaseSettings):
    # ---- paths ----
    scratch_root: Path = Path(tempfile.gettempdir()) / "runbox"
    limits_file: Path = Path("conf/limits.yaml")

    # ---- http ----
    port: int = Field(5121, validation_alias=AliasChoices("PORT", "RUNBOX_PORT"))

    # ---- execution ----
    max_output_bytes: int = 64 * 1024
    max_concurrent: int = 4
    admission_timeout_s: float = 30.0
    cleanup_attempts: int = 3
    cleanup_backoff_s: float = 0.5
    dotnet_target_framework: str = "net9.0"
    # executable name -> path, e.g. {"python3": "/opt/py/bin/python3"}
    runtimes: Dict[str, str] = {}

    # ---- isolation ----
    iso_strategy: str = "rlimits,cgroups,netns,mountns"
    # refuse to execute when a requested layer is missing on this host
    require_isolation: bool = True
    # host trees bound read-only into the mountns jail, on top of /usr, /etc, /opt, ...
    jail_paths: List[str] = []
    cgroup_base: Optional[Path] = None

    # merged from limits.yaml, keyed by step ("compile" / "run")
    limits: Dict[str, Any] = {}

    model_config = SettingsConfigDict(env_prefix="RUNBOX_", extra="ignore", populate_by_name=True)

    def step_limits(self, step: str) -> Limits:
        raw = dict(_DEFAULT_LIMITS.get(step, _DEFAULT_LIMITS["run"]))
        raw.update(self.limits.get(step) or {})
        return Limits(
            cpu_seconds=int(raw["cpu_seconds"]),
            memory_bytes=int(raw["memory_bytes"]),
            nofile=int(raw["nofile"]),
            wall_timeout_seconds=int(raw["wall_timeout_seconds"]),
            fsize_bytes=int(raw["fsize_bytes"]),
            pids=int(raw["pids"]),
            nproc=int(raw["nproc"]) if raw.get("nproc") else None,
        )

    def strategy_layers(self) -> set:
        return {p.strip().lower() for p in self.iso_strategy.split(",") if p.strip()}


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    return data if isinstance(data, dict) else {}


def load_settings() -> Settings:
    # 1) env RUNBOX_* / PORT
    s = Settings()

    # 2) conf/sandbox.yaml (or RUNBOX_CONF); env values win over the file
    data = _read_yaml(Path(os.environ.get("RUNBOX_CONF", "conf/sandbox.yaml")))
    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        defaults = {}
    update: Dict[str, Any] = {}
    for key, value in {**defaults, **{k: v for k, v in data.items() if k != "defaults"}}.items():
        if key in Settings.model_fields and key not in s.model_fields_set:
            update[key] = value
    if update:
        s = Settings(**update)

    # 3) conf/limits.yaml (optional)
    limits: Dict[str, Any] = {}
    try:
        raw = yaml.safe_load(s.limits_file.read_text(encoding="utf-8")) if s.limits_file.exists() else {}
        if isinstance(raw, dict):
            limits = {k: v for k, v in raw.items() if isinstance(v, dict)}
    except (OSError, yaml.YAMLError):
        # a broken limits file keeps the built-in defaults
        limits = {}
    return s.model_copy(update={"limits": limits})


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
