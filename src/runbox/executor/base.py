from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

@dataclass
class ExecSpec:
    cmd: List[str]
    workdir: Path
    env: Dict[str, str] = field(default_factory=dict)
    timeout_s: float = 10
