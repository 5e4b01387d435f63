from __future__ import annotations
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

import structlog

from ..core.errors import InfrastructureError
from . import cgroups as cg
from .mountns import DEFAULT_JAIL_PATHS, JAIL_ENV, collapse_paths, jail_available, wrap_with_jail
from .netns import netns_available, unshare_path, wrap_with_netns

log = structlog.get_logger(__name__)

LAYERS = ("rlimits", "cgroups", "netns", "mountns")


def probe_capabilities(layers: Iterable[str] = LAYERS, cgroup_base: Optional[Path] = None,
                       jail_paths: Sequence[str] = DEFAULT_JAIL_PATHS) -> Dict[str, object]:
    """What this host can enforce for the given layers. Called once at startup."""
    layers = set(layers)
    unshare = unshare_path()
    caps: Dict[str, object] = {
        "euid": os.geteuid(),
        "has_unshare": bool(unshare),
        "rlimits": "rlimits" in layers,
        "netns": "netns" in layers and netns_available(),
        "mountns": "mountns" in layers and bool(unshare) and jail_available(unshare, tuple(jail_paths)),
        "cgroups": False,
        "cgroup_base": None,
    }
    if "cgroups" in layers and cg.is_v2():
        try:
            base = cg.resolve_base(cgroup_base)
            cg.prepare_base(base)
            caps["cgroups"] = True
            caps["cgroup_base"] = str(base)
        except (OSError, ValueError) as e:
            caps["cgroup_error"] = str(e)
    return caps


class IsolationPipeline:
    """
    Chooses which layers are active and composes them around a command:
    rlimits and the cgroup join happen in preexec, netns and mountns wrap
    argv in a single unshare.
    """

    def __init__(self, requested: Iterable[str], *, cgroup_base: Optional[Path] = None,
                 require: bool = False, caps: Optional[Dict[str, object]] = None,
                 jail_paths: Sequence[str] = DEFAULT_JAIL_PATHS):
        wanted = {r.strip().lower() for r in requested if r.strip()}
        unknown = wanted - set(LAYERS) - {"none"}
        if unknown:
            raise ValueError(f"unknown isolation layers: {sorted(unknown)}")
        self.requested: Set[str] = wanted & set(LAYERS)
        self.jail_paths = collapse_paths(jail_paths)
        self.caps = caps if caps is not None else probe_capabilities(self.requested, cgroup_base, self.jail_paths)
        self.active: Set[str] = {layer for layer in self.requested if self.caps.get(layer)}
        missing = sorted(self.requested - self.active)
        if missing:
            if require:
                raise InfrastructureError(f"isolation layers unavailable: {missing}")
            log.warning("isolation_degraded", missing=missing, caps=self.caps)
        self.cgroup_base = Path(str(self.caps["cgroup_base"])) if "cgroups" in self.active else None
        self._unshare = unshare_path() if self.active & {"netns", "mountns"} else None

    @property
    def wraps_command(self) -> bool:
        return self._unshare is not None

    def wrap(self, cmd: List[str], *, workdir: Optional[Path] = None,
             new_root: Optional[Path] = None) -> List[str]:
        if self._unshare is None:
            return cmd
        if "mountns" in self.active:
            if workdir is None or new_root is None:
                raise ValueError("mountns needs a workdir and a mount point for the new root")
            return wrap_with_jail(cmd, self._unshare, new_root=new_root, workdir=workdir,
                                  jail_paths=self.jail_paths, net="netns" in self.active)
        return wrap_with_netns(cmd, self._unshare)

    def environment(self) -> Dict[str, str]:
        return dict(JAIL_ENV) if "mountns" in self.active else {}

    def uses(self, layer: str) -> bool:
        return layer in self.active

    def describe(self) -> Dict[str, object]:
        return {"requested": sorted(self.requested), "active": sorted(self.active), "caps": self.caps}
