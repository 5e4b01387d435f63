from __future__ import annotations
import os
import selectors
import signal
import subprocess
import time
from typing import Callable, Dict, Optional, Set

import structlog

from ..core.errors import InfrastructureError
from ..core.models import ProcessResult
from ..core.utils import decode_output
from .base import ExecSpec

log = structlog.get_logger(__name__)

_CHUNK = 64 * 1024
# after SIGKILL to the group, how long to keep reading what is left in the pipes
_KILL_GRACE_S = 2.0


def _kill_group(proc: subprocess.Popen) -> None:
    # the child is a session leader, so its pid is also the group id
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()


class _Capture:
    """Keeps the first `keep` bytes of a stream; everything after is read and dropped."""

    def __init__(self, keep: Optional[int]):
        self.keep = keep
        self.data = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes) -> None:
        room = len(chunk) if self.keep is None else max(0, self.keep - len(self.data))
        self.data += chunk[:room]
        self.dropped += max(0, len(chunk) - room)


def _pump(streams: Set, captures: Dict, deadline: float) -> bool:
    """Read every stream in `streams` until EOF. False if `deadline` passes first."""
    with selectors.DefaultSelector() as sel:
        for f in streams:
            sel.register(f, selectors.EVENT_READ)
        while streams:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            for key, _ in sel.select(remaining):
                chunk = os.read(key.fd, _CHUNK)
                if chunk:
                    captures[key.fileobj].feed(chunk)
                else:
                    sel.unregister(key.fileobj)
                    streams.discard(key.fileobj)
    return True


class ProcessRunner:
    """
    Spawn one program, capture both streams and enforce a wall-clock timeout.
    Pipes are drained as data arrives and only the first `max_output_bytes`
    of each stream are held, so a program printing in a loop costs us a
    bounded buffer rather than memory proportional to its output.
    """

    def __init__(self, max_output_bytes: int = 64 * 1024, base_env: Optional[Dict[str, str]] = None):
        self.max_output_bytes = max_output_bytes
        self.base_env = dict(os.environ) if base_env is None else dict(base_env)

    def run(self, spec: ExecSpec, preexec: Optional[Callable[[], None]] = None) -> ProcessResult:
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                spec.cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(spec.workdir),
                env={**self.base_env, **spec.env},
                preexec_fn=preexec,
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            # missing toolchain binary, permissions, or a failing preexec
            raise InfrastructureError(f"cannot start {spec.cmd[0]!r}: {e}") from e

        # one byte over the cap tells decode_output to mark the cut
        keep = self.max_output_bytes + 1 if self.max_output_bytes > 0 else None
        captures = {proc.stdout: _Capture(keep), proc.stderr: _Capture(keep)}
        streams = set(captures)
        deadline = start + spec.timeout_s
        try:
            timed_out = not _pump(streams, captures, deadline)
            if not timed_out:
                # both pipes closed, but the program itself may still be running
                try:
                    proc.wait(timeout=max(0.0, deadline - time.monotonic()))
                except subprocess.TimeoutExpired:
                    timed_out = True
            if timed_out:
                _kill_group(proc)
                if not _pump(streams, captures, time.monotonic() + _KILL_GRACE_S):
                    # a grandchild escaped the group and still holds the pipes
                    proc.kill()
            proc.wait()
        except BaseException:
            _kill_group(proc)
            proc.wait()
            raise
        finally:
            for f in captures:
                f.close()

        dur = time.monotonic() - start
        rc = proc.returncode
        out, err = captures[proc.stdout], captures[proc.stderr]
        res = ProcessResult(
            stdout=decode_output(bytes(out.data), self.max_output_bytes),
            stderr=decode_output(bytes(err.data), self.max_output_bytes),
            exit_code=rc,
            timed_out=timed_out,
            reason=f"timeout_{spec.timeout_s}s" if timed_out else (None if rc == 0 else f"exit_{rc}"),
            duration_s=dur,
        )
        log.debug("process_exited", cmd=spec.cmd[0], rc=rc, timed_out=timed_out,
                  duration_s=round(dur, 3), dropped_bytes=out.dropped + err.dropped)
        return res
