from __future__ import annotations
import os
import shutil
import subprocess
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

# Host trees the toolchains live in; bound read-only into every jail.
DEFAULT_JAIL_PATHS = ("/usr", "/bin", "/sbin", "/lib", "/lib32", "/lib64", "/libx32", "/etc", "/opt")

# Builds a fresh root on a tmpfs and chroots into it:
#   /usr, /etc, ... read-only binds of the host
#   /tmp            private tmpfs
#   /dev            null, zero, full, random, urandom only
#   /proc           fresh procfs for the new pid namespace (skipped if the host forbids it)
#   <workspace>     the only host directory that is writable
# The root tmpfs itself is remounted read-only last. The program runs as a
# child of the jail's pid 1, so rlimit signals are delivered normally and
# a signalled exit comes back as 128 + signo.
JAIL_SCRIPT = r"""
set -e
new=$1; ws=$2; ro=$3; shift 3
mount -t tmpfs -o mode=0755,size=16m runbox "$new"
mkdir -p "$new/tmp" "$new/dev" "$new/proc"
mount -t tmpfs -o mode=1777,size=64m tmpfs "$new/tmp"
IFS=:
for p in $ro; do
  [ -e "$p" ] || continue
  if [ -L "$p" ]; then
    mkdir -p "$new$(dirname "$p")"
    ln -s "$(readlink "$p")" "$new$p"
  else
    mkdir -p "$new$p"
    mount --rbind "$p" "$new$p"
    mount -o remount,bind,ro "$new$p"
  fi
done
unset IFS
for d in null zero full random urandom; do
  touch "$new/dev/$d"
  mount --bind "/dev/$d" "$new/dev/$d"
done
mount -t proc proc "$new/proc" 2>/dev/null || true
mkdir -p "$new$ws"
mount --bind "$ws" "$new$ws"
mount -o remount,ro "$new"
exec chroot "$new" /bin/sh -c 'cd "$0" || exit 1; "$@"; exit $?' "$ws" "$@"
"""

UNSHARE_FLAGS = ["--user", "--map-root-user", "--mount", "--pid", "--fork"]

# inside the jail the host HOME does not exist
JAIL_ENV = {"HOME": "/tmp", "TMPDIR": "/tmp"}


def collapse_paths(paths: Iterable[str]) -> Tuple[str, ...]:
    """Absolute, de-duplicated, and without entries already covered by a listed parent."""
    out: List[str] = []
    for p in sorted({os.path.abspath(str(p)) for p in paths if p}):
        if p == "/" or any(p == q or p.startswith(q.rstrip("/") + "/") for q in out):
            continue
        out.append(p)
    return tuple(out)


def wrap_with_jail(
    cmd: Sequence[str],
    unshare: str,
    *,
    new_root: Path,
    workdir: Path,
    jail_paths: Sequence[str],
    net: bool,
) -> List[str]:
    flags = [*UNSHARE_FLAGS, "--net"] if net else list(UNSHARE_FLAGS)
    sh = shutil.which("sh") or "/bin/sh"
    return [
        unshare, *flags, "--",
        sh, "-c", JAIL_SCRIPT, "runbox-jail",
        str(new_root), str(Path(workdir).resolve()), ":".join(jail_paths),
        *cmd,
    ]


@lru_cache(maxsize=8)
def jail_available(unshare: str, jail_paths: Tuple[str, ...]) -> bool:
    """Build a throwaway jail and run `true` in it."""
    with tempfile.TemporaryDirectory(prefix="runbox-probe-") as tmp:
        ws = Path(tmp) / "ws"
        new_root = Path(tmp) / "root"
        ws.mkdir()
        new_root.mkdir()
        argv = wrap_with_jail(["true"], unshare, new_root=new_root, workdir=ws,
                              jail_paths=jail_paths, net=False)
        try:
            probe = subprocess.run(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                                   timeout=10, check=False)
        except (OSError, subprocess.SubprocessError):
            return False
    return probe.returncode == 0
