from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional

from ..core.models import Workspace
from ..core.utils import extract_java_class_name
from .base import ToolchainRecipe


@dataclass(frozen=True)
class JavaRecipe(ToolchainRecipe):
    """javac insists the file is named after its public class."""

    def entry_name(self, source: str, run_id: str) -> str:
        return extract_java_class_name(source)


_CSPROJ = """<Project Sdk="Microsoft.NET.Sdk">
  <PropertyGroup>
    <OutputType>Exe</OutputType>
    <TargetFramework>{tfm}</TargetFramework>
    <ImplicitUsings>enable</ImplicitUsings>
    <AssemblyName>Program</AssemblyName>
    <OutputPath>bin</OutputPath>
    <AppendTargetFrameworkToOutputPath>false</AppendTargetFrameworkToOutputPath>
  </PropertyGroup>
</Project>
"""


@dataclass(frozen=True)
class DotnetRecipe(ToolchainRecipe):
    """
    dotnet only builds projects: a Program.csproj is written beside the
    source and the assembly always lands in <root>/bin/Program.dll.
    """

    project_name: str = "Program.csproj"
    assembly: str = "bin/Program.dll"

    def project_files(self, ws: Workspace, target_framework: str) -> Dict[str, str]:
        return {self.project_name: _CSPROJ.format(tfm=target_framework)}

    def check_build(self, ws: Workspace) -> Optional[str]:
        if not (ws.root_dir / self.assembly).exists():
            return f"Build succeeded but {self.assembly} was not produced."
        return None


JAVASCRIPT = ToolchainRecipe(
    language="javascript",
    extension=".js",
    run_command=("node", "{src}"),
    aliases=("js", "node", "nodejs"),
    address_space_limit=False,
)

TYPESCRIPT = ToolchainRecipe(
    language="typescript",
    extension=".ts",
    compile_command=("tsc", "{src}", "--outDir", "{build}"),
    run_command=("node", "{build}/{main}.js"),
    artifacts=("{build}",),
    aliases=("ts",),
    address_space_limit=False,
)

PYTHON = ToolchainRecipe(
    language="python",
    extension=".py",
    run_command=("python3", "{src}"),
    aliases=("py", "python3"),
    env=(("PYTHONDONTWRITEBYTECODE", "1"), ("PYTHONUNBUFFERED", "1")),
)

JAVA = JavaRecipe(
    language="java",
    extension=".java",
    compile_command=("javac", "-d", "{build}", "{src}"),
    run_command=("java", "-cp", "{build}", "{main}"),
    artifacts=("{build}",),
    address_space_limit=False,
)

C = ToolchainRecipe(
    language="c",
    extension=".c",
    compile_command=("gcc", "{src}", "-o", "{bin}", "-lm"),
    run_command=("{bin}",),
    artifacts=("{bin}",),
)

CPP = ToolchainRecipe(
    language="cpp",
    extension=".cpp",
    compile_command=("g++", "{src}", "-o", "{bin}"),
    run_command=("{bin}",),
    artifacts=("{bin}",),
    aliases=("c++", "cxx"),
)

CSHARP = DotnetRecipe(
    language="csharp",
    extension=".cs",
    # build servers would outlive the request and hold the captured pipes open
    compile_command=(
        "dotnet", "build", "{root}/Program.csproj", "-c", "Release", "--nologo",
        "--disable-build-servers", "-nodeReuse:false", "-p:UseSharedCompilation=false",
    ),
    run_command=("dotnet", "{root}/bin/Program.dll"),
    artifacts=("{root}/Program.csproj", "{root}/bin", "{root}/obj"),
    aliases=("cs", "c#"),
    address_space_limit=False,
    env=(
        ("DOTNET_CLI_TELEMETRY_OPTOUT", "1"),
        ("DOTNET_NOLOGO", "1"),
        ("DOTNET_SKIP_FIRST_TIME_EXPERIENCE", "1"),
        ("DOTNET_CLI_USE_MSBUILD_SERVER", "0"),
        ("MSBUILDDISABLENODEREUSE", "1"),
    ),
)

PHP = ToolchainRecipe(
    language="php",
    extension=".php",
    run_command=("php", "{src}"),
)

RUBY = ToolchainRecipe(
    language="ruby",
    extension=".rb",
    run_command=("ruby", "{src}"),
    aliases=("rb",),
)

GO = ToolchainRecipe(
    language="go",
    extension=".go",
    compile_command=("go", "build", "-o", "{bin}", "{src}"),
    run_command=("{bin}",),
    artifacts=("{bin}",),
    aliases=("golang",),
    address_space_limit=False,
)

RUST = ToolchainRecipe(
    language="rust",
    extension=".rs",
    compile_command=("rustc", "{src}", "-o", "{bin}"),
    run_command=("{bin}",),
    artifacts=("{bin}",),
    aliases=("rs",),
)

ALL_RECIPES = (
    JAVASCRIPT, TYPESCRIPT, PYTHON, JAVA, C, CPP, CSHARP, PHP, RUBY, GO, RUST,
)
