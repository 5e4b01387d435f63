from __future__ import annotations
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import structlog

from ..core.errors import InfrastructureError
from ..core.models import Workspace
from ..core.utils import new_run_id
from ..runners.base import ToolchainRecipe

log = structlog.get_logger(__name__)


class WorkspaceManager:
    """
    Scratch directories under a shared root:
      <scratch_root>/<run_id>/
        ├─ <run_id>.<ext> | <Class>.java   (submitted source)
        ├─ <run_id>                        (native binary, if any)
        ├─ build/                          (javac / tsc output)
        └─ Program.csproj, bin/, obj/      (dotnet)
    The root is unique per request, so nothing here is locked.
    """

    def __init__(self, scratch_root: Path, *, attempts: int = 3, backoff_s: float = 0.5,
                 target_framework: str = "net9.0"):
        self.scratch_root = scratch_root if scratch_root.is_absolute() else scratch_root.resolve()
        self.attempts = max(1, attempts)
        self.backoff_s = backoff_s
        self.target_framework = target_framework

    def stage(self, source_code: str, recipe: ToolchainRecipe) -> Workspace:
        run_id = new_run_id()
        root = self.scratch_root / run_id
        try:
            root.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise InfrastructureError(f"cannot create workspace: {e}") from e
        try:
            entry = recipe.entry_name(source_code, run_id)
            ws = Workspace(
                run_id=run_id,
                root_dir=root,
                source_file=root / recipe.source_name(entry),
                entry_name=entry,
            )
            ws.artifact_paths = recipe.artifact_paths(ws)
            ws.source_file.write_text(source_code, encoding="utf-8")
            for rel, content in recipe.project_files(ws, self.target_framework).items():
                (root / rel).write_text(content, encoding="utf-8")
        except OSError as e:
            shutil.rmtree(root, ignore_errors=True)
            raise InfrastructureError(f"cannot stage workspace: {e}") from e
        except BaseException:
            # nothing has been handed out yet, so the caller cannot tear this down
            shutil.rmtree(root, ignore_errors=True)
            raise
        log.debug("workspace_staged", run_id=run_id, language=recipe.language)
        return ws

    def teardown(self, ws: Workspace) -> bool:
        """Remove every artifact, the source and the root. Returns False if something stayed behind."""
        ok = True
        for path in [*ws.artifact_paths, ws.source_file, ws.root_dir]:
            ok = self._remove(path, ws.run_id) and ok
        return ok

    @contextmanager
    def staged(self, source_code: str, recipe: ToolchainRecipe) -> Iterator[Workspace]:
        ws = self.stage(source_code, recipe)
        try:
            yield ws
        finally:
            self.teardown(ws)

    def _remove(self, path: Path, run_id: str) -> bool:
        last: Optional[OSError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                elif path.exists() or path.is_symlink():
                    path.unlink()
                return True
            except FileNotFoundError:
                return True
            except OSError as e:
                last = e
                if attempt < self.attempts:
                    time.sleep(self.backoff_s)
        log.warning("cleanup_failed", run_id=run_id, path=str(path),
                    attempts=self.attempts, error=str(last))
        return False
