from __future__ import annotations
import shutil
import subprocess
from functools import lru_cache
from typing import List, Optional

UNSHARE_FLAGS = ["--user", "--map-root-user", "--net", "--fork"]


def unshare_path() -> Optional[str]:
    return shutil.which("unshare")


def wrap_with_netns(cmd: List[str], unshare: str) -> List[str]:
    """
    Run `cmd` in fresh user + network namespaces: only a down loopback
    device exists inside, so nothing can reach the network.
    """
    return [unshare, *UNSHARE_FLAGS, "--", *cmd]


@lru_cache(maxsize=1)
def netns_available() -> bool:
    unshare = unshare_path()
    if not unshare:
        return False
    try:
        probe = subprocess.run(
            wrap_with_netns(["true"], unshare),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return probe.returncode == 0
