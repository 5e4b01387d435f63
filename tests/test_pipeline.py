import sys
import time
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from runbox.core.errors import (
    CapacityError,
    InfrastructureError,
    InvalidSourceError,
    UnsupportedLanguageError,
    ValidationError,
)
from runbox.core.models import ExecutionRequest, Status
from runbox.runners.base import ToolchainRecipe
from runbox.runners.recipes import DotnetRecipe, PYTHON
from runbox.runners.registry import ToolchainRegistry
from runbox.services.pipeline import ExecutionPipeline

PY = sys.executable


def _req(code, language="python"):
    return ExecutionRequest(language=language, source_code=code)


def _leftovers(scratch):
    return list(scratch.iterdir()) if scratch.exists() else []


def _with_recipes(settings, *recipes):
    return ExecutionPipeline(settings, registry=ToolchainRegistry([PYTHON, *recipes]))


def test_hello_world(pipeline, scratch):
    res = pipeline.execute(_req('print("Hello, World!")'))
    assert res.output == "Hello, World!\n"
    assert res.is_error is False
    assert res.status is Status.COMPLETED
    assert _leftovers(scratch) == []


def test_stderr_only_is_an_error_even_with_exit_zero(pipeline, scratch):
    res = pipeline.execute(_req("import sys; sys.stderr.write('careful\\n')"))
    assert res.output == "careful\n"
    assert res.is_error is True
    assert res.status is Status.RUN_FAILED


def test_stderr_wins_over_stdout(pipeline):
    res = pipeline.execute(_req("import sys; print('out'); sys.stderr.write('err')"))
    assert res.output == "err"


def test_nonzero_exit_without_stderr(pipeline):
    res = pipeline.execute(_req("import sys; print('partial'); sys.exit(2)"))
    assert res.output == "partial\n"
    assert res.is_error is True
    assert res.status is Status.RUN_FAILED


def test_syntax_error(pipeline, scratch):
    res = pipeline.execute(_req("print(\n"))
    assert res.is_error is True
    assert "SyntaxError" in res.output
    assert _leftovers(scratch) == []


def test_infinite_loop_times_out(pipeline, scratch):
    start = time.monotonic()
    res = pipeline.execute(_req("while True:\n    pass\n"))
    assert time.monotonic() - start < 3 + 2
    assert res.is_error is True
    assert res.status is Status.TIMED_OUT
    assert res.output == "Execution timed out after 3s"
    assert _leftovers(scratch) == []


def test_cpu_cap_reports_resource_exceeded(settings, scratch):
    settings.limits = {"run": {"cpu_seconds": 1, "wall_timeout_seconds": 15}}
    res = ExecutionPipeline(settings).execute(_req("while True:\n    pass\n"))
    assert res.status is Status.RESOURCE_EXCEEDED
    assert res.output == "Execution exceeded the CPU time limit"
    assert res.is_error is True
    assert _leftovers(scratch) == []


def test_unknown_language_spawns_nothing(pipeline, scratch, monkeypatch):
    def no_spawn(*args, **kwargs):
        raise AssertionError("nothing should run")

    monkeypatch.setattr(pipeline.sandbox, "run", no_spawn)
    with pytest.raises(UnsupportedLanguageError):
        pipeline.execute(_req("print(1)", language="brainfuck"))
    assert not scratch.exists()


@pytest.mark.parametrize("code, language", [("", "python"), ("print(1)", ""), ("print(1)", "   ")])
def test_missing_fields_rejected(pipeline, scratch, code, language):
    with pytest.raises(ValidationError):
        pipeline.execute(_req(code, language))
    assert not scratch.exists()


def test_concurrent_requests_do_not_cross_talk(pipeline, scratch):
    tokens = [uuid.uuid4().hex for _ in range(12)]

    def run(token):
        return token, pipeline.execute(_req(f"print('{token}')"))

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(run, tokens))

    for token, res in results:
        assert res.is_error is False
        assert res.output == f"{token}\n"
    assert _leftovers(scratch) == []


def test_missing_toolchain_is_infrastructure_error(settings, scratch):
    settings.runtimes = {"python3": "/nonexistent/bin/python3"}
    with pytest.raises(InfrastructureError):
        ExecutionPipeline(settings).execute(_req("print(1)"))
    assert _leftovers(scratch) == []


def test_compile_failure_short_circuits(settings, scratch, tmp_path):
    marker = tmp_path / "ran"
    broken = ToolchainRecipe(
        language="fakec",
        extension=".fc",
        compile_command=(PY, "-c", "import sys; print('line 1'); sys.stderr.write('error: nope'); sys.exit(1)"),
        run_command=(PY, "-c", f"open(r'{marker}', 'w')"),
        artifacts=("{bin}",),
    )
    res = _with_recipes(settings, broken).execute(_req("anything", "fakec"))
    assert res.status is Status.COMPILE_FAILED
    assert res.is_error is True
    assert res.output == "Compilation failed:\nline 1\nerror: nope"
    assert not marker.exists()
    assert _leftovers(scratch) == []


def test_compile_then_run_artifact(settings, scratch):
    copier = ToolchainRecipe(
        language="copy",
        extension=".txt",
        compile_command=(PY, "-c", "import shutil, sys; shutil.copy(sys.argv[1], sys.argv[2])", "{src}", "{bin}"),
        run_command=(PY, "{bin}"),
        artifacts=("{bin}",),
    )
    res = _with_recipes(settings, copier).execute(_req("print('compiled')", "copy"))
    assert res.output == "compiled\n"
    assert res.status is Status.COMPLETED
    assert _leftovers(scratch) == []


def test_missing_build_output_is_compile_failure(settings, scratch):
    fake = DotnetRecipe(
        language="fakecs",
        extension=".cs",
        compile_command=(PY, "-c", "print('Build succeeded.')"),
        run_command=(PY, "-c", "print('unreachable')"),
        artifacts=("{root}/Program.csproj", "{root}/bin", "{root}/obj"),
    )
    res = _with_recipes(settings, fake).execute(_req("class P {}", "fakecs"))
    assert res.status is Status.COMPILE_FAILED
    assert "bin/Program.dll was not produced" in res.output
    assert "Build succeeded." in res.output
    assert _leftovers(scratch) == []


def test_compile_timeout(settings, scratch):
    settings.limits = {"compile": {"wall_timeout_seconds": 1}}
    slow = ToolchainRecipe(
        language="slow",
        extension=".s",
        compile_command=(PY, "-c", "import time; time.sleep(30)"),
        run_command=(PY, "-c", "pass"),
    )
    res = _with_recipes(settings, slow).execute(_req("x", "slow"))
    assert res.status is Status.TIMED_OUT
    assert res.output == "Compilation timed out after 1s"
    assert _leftovers(scratch) == []


def test_admission_control(settings):
    settings.max_concurrent = 1
    settings.admission_timeout_s = 0.1
    pipeline = ExecutionPipeline(settings)
    assert pipeline._slots.acquire(timeout=1)
    try:
        with pytest.raises(CapacityError):
            pipeline.execute(_req("print(1)"))
    finally:
        pipeline._slots.release()
    assert pipeline.execute(_req("print(1)")).output == "1\n"


def test_lone_surrogate_is_rejected_before_staging(pipeline, scratch):
    with pytest.raises(InvalidSourceError):
        pipeline.execute(_req("print('\ud800')"))
    assert not scratch.exists()
