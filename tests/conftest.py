import sys

import pytest

from runbox.services.pipeline import ExecutionPipeline
from runbox.settings import Settings


@pytest.fixture
def scratch(tmp_path):
    return tmp_path / "scratch"


@pytest.fixture
def settings(scratch):
    # rlimits only: cgroups / user namespaces are often unavailable on CI hosts
    return Settings(
        scratch_root=scratch,
        iso_strategy="rlimits",
        runtimes={"python3": sys.executable},
        cleanup_backoff_s=0.01,
        limits={"run": {"wall_timeout_seconds": 3}},
    )


@pytest.fixture
def pipeline(settings):
    return ExecutionPipeline(settings)
