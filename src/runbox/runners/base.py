from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from ..core.models import Workspace


@dataclass(frozen=True)
class ToolchainRecipe:
    """
    How one language is built and run.

    Commands are argv templates; every element is formatted with the
    workspace placeholders ({root}, {src}, {bin}, {build}, {main}) and the
    first element is looked up in the deployment's runtime table, so no
    shell ever sees user-controlled text.
    """

    language: str
    extension: str
    run_command: Tuple[str, ...]
    compile_command: Optional[Tuple[str, ...]] = None
    artifacts: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()
    # JVM, .NET, Go and V8 reserve far more address space than they use
    address_space_limit: bool = True
    env: Tuple[Tuple[str, str], ...] = ()

    @property
    def produces_artifact(self) -> bool:
        return self.compile_command is not None

    def entry_name(self, source: str, run_id: str) -> str:
        return run_id

    def source_name(self, entry_name: str) -> str:
        return f"{entry_name}{self.extension}"

    def project_files(self, ws: Workspace, target_framework: str) -> Dict[str, str]:
        """Extra files (relative to the workspace root) the build needs next to the source."""
        return {}

    def check_build(self, ws: Workspace) -> Optional[str]:
        """Called after a successful compile; a message here turns it into a compile failure."""
        return None

    def render(self, template: Tuple[str, ...], ws: Workspace, runtimes: Mapping[str, str]) -> List[str]:
        values = ws.placeholders()
        argv = [part.format(**values) for part in template]
        argv[0] = runtimes.get(argv[0], argv[0])
        return argv

    def compile_argv(self, ws: Workspace, runtimes: Mapping[str, str]) -> Optional[List[str]]:
        if self.compile_command is None:
            return None
        return self.render(self.compile_command, ws, runtimes)

    def run_argv(self, ws: Workspace, runtimes: Mapping[str, str]) -> List[str]:
        return self.render(self.run_command, ws, runtimes)

    def artifact_paths(self, ws: Workspace) -> List[Path]:
        values = ws.placeholders()
        return [Path(t.format(**values)) for t in self.artifacts]

    def environment(self) -> Dict[str, str]:
        return dict(self.env)
