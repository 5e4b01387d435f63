import pytest

from runbox.core.errors import UnsupportedLanguageError, ValidationError
from runbox.core.models import Workspace
from runbox.core.utils import extract_java_class_name
from runbox.runners.base import ToolchainRecipe
from runbox.runners.recipes import ALL_RECIPES, CSHARP, JAVA, PYTHON, TYPESCRIPT
from runbox.runners.registry import REGISTRY, ToolchainRegistry, lookup


def _ws(tmp_path, entry="abc123", ext=".src"):
    return Workspace(run_id="abc123", root_dir=tmp_path, source_file=tmp_path / f"{entry}{ext}", entry_name=entry)


@pytest.mark.parametrize("tag, language", [
    ("python", "python"),
    ("PyThOn", "python"),
    ("  java ", "java"),
    ("js", "javascript"),
    ("TS", "typescript"),
    ("c++", "cpp"),
    ("C#", "csharp"),
    ("golang", "go"),
    ("rs", "rust"),
])
def test_lookup_is_case_insensitive_and_alias_aware(tag, language):
    assert lookup(tag).language == language


@pytest.mark.parametrize("tag", ["cobol", "", "   ", "pythonn"])
def test_unknown_language(tag):
    with pytest.raises(UnsupportedLanguageError) as exc:
        REGISTRY.lookup(tag)
    assert isinstance(exc.value, ValidationError)


def test_all_languages_registered():
    assert REGISTRY.languages() == sorted(
        ["c", "cpp", "csharp", "go", "java", "javascript", "php", "python", "ruby", "rust", "typescript"]
    )
    assert "c++" in REGISTRY
    assert "fortran" not in REGISTRY


def test_compiled_recipes_declare_artifacts():
    for recipe in ALL_RECIPES:
        if recipe.produces_artifact:
            assert recipe.artifacts, recipe.language
        else:
            assert recipe.artifacts == (), recipe.language


def test_duplicate_tags_rejected():
    clash = ToolchainRecipe(language="py", extension=".py", run_command=("python3", "{src}"))
    with pytest.raises(ValueError):
        ToolchainRegistry([PYTHON, clash])


def test_render_uses_runtime_table(tmp_path):
    ws = _ws(tmp_path, ext=".py")
    argv = PYTHON.run_argv(ws, {"python3": "/opt/py/bin/python"})
    assert argv == ["/opt/py/bin/python", str(ws.source_file)]
    assert PYTHON.compile_argv(ws, {}) is None


def test_typescript_runs_the_emitted_js(tmp_path):
    ws = _ws(tmp_path, ext=".ts")
    assert TYPESCRIPT.compile_argv(ws, {}) == ["tsc", str(ws.source_file), "--outDir", str(tmp_path / "build")]
    assert TYPESCRIPT.run_argv(ws, {}) == ["node", f"{tmp_path / 'build'}/abc123.js"]


@pytest.mark.parametrize("source, name", [
    ("public class Hello { }", "Hello"),
    ("import java.util.*;\npublic final class Solver {}", "Solver"),
    ("class Helper {}\npublic  class\tApp {}", "App"),
    ("class NotPublic {}", "Main"),
    ("", "Main"),
])
def test_java_entry_name(source, name):
    assert extract_java_class_name(source) == name
    assert JAVA.entry_name(source, "ignored") == name
    assert JAVA.source_name(name) == f"{name}.java"


def test_java_commands_use_class_name(tmp_path):
    ws = _ws(tmp_path, entry="Hello", ext=".java")
    assert JAVA.compile_argv(ws, {})[-1] == str(tmp_path / "Hello.java")
    assert JAVA.run_argv(ws, {})[-1] == "Hello"


def test_csharp_project_descriptor(tmp_path):
    ws = _ws(tmp_path, ext=".cs")
    files = CSHARP.project_files(ws, "net8.0")
    assert list(files) == ["Program.csproj"]
    assert "<TargetFramework>net8.0</TargetFramework>" in files["Program.csproj"]
    assert "<OutputPath>bin</OutputPath>" in files["Program.csproj"]
    assert tmp_path / "bin" in CSHARP.artifact_paths(ws)
    assert "was not produced" in CSHARP.check_build(ws)

    (tmp_path / "bin").mkdir()
    (tmp_path / "bin" / "Program.dll").write_bytes(b"MZ")
    assert CSHARP.check_build(ws) is None


def test_csharp_build_leaves_no_build_servers(tmp_path):
    argv = CSHARP.compile_argv(_ws(tmp_path, ext=".cs"), {})
    assert argv[:3] == ["dotnet", "build", str(tmp_path / "Program.csproj")]
    assert "--disable-build-servers" in argv
    assert "-nodeReuse:false" in argv
    assert "-p:UseSharedCompilation=false" in argv
    env = CSHARP.environment()
    assert env["MSBUILDDISABLENODEREUSE"] == "1"
    assert env["DOTNET_CLI_USE_MSBUILD_SERVER"] == "0"
