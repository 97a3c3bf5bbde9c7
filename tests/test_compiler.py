from __future__ import annotations

import json
import os

from conftest import MISSING_SEMICOLON, FakeToolchain

from buildswarm.audit import AuditCounters
from buildswarm.build_request import normalize_build_request
from buildswarm.compiler import (
    NO_CODE_ERROR,
    BuildCache,
    Compiler,
    build_global_json,
    build_project_file,
    extract_primary_error,
    relativize_build_output,
)
from buildswarm.models import AppModel, BuildRequest, PackageReference, ProjectSettings
from buildswarm.process_runner import ProcessErrorKind, ProcessOutcome


PROGRAM = 'using System;\nfor (int i = 1; i <= 10; i++) Console.WriteLine(i * i);'


def make_compiler(settings, toolchain, clock=None):
    audit = AuditCounters()
    cache = BuildCache(ttl_seconds=settings.compile_dedup_seconds, clock=clock) if clock else None
    return Compiler(audit, settings, toolchain, cache), audit


def test_successful_build_publishes_artifacts_and_metadata(build_settings) -> None:
    toolchain = FakeToolchain()
    compiler, audit = make_compiler(build_settings, toolchain)

    result = compiler.compile(BuildRequest(code=PROGRAM))

    assert result.success
    assert result.app_model == AppModel.CONSOLE
    assert os.path.basename(result.artifact_dir).startswith("Run_")
    assert os.path.dirname(result.artifact_dir) == os.path.abspath(build_settings.artifacts_root)
    assert result.binary_path == os.path.join(result.artifact_dir, "App.dll")
    assert os.path.isfile(result.binary_path)

    with open(os.path.join(result.artifact_dir, "run-metadata.json"), encoding="utf-8") as f:
        metadata = json.load(f)
    assert metadata["appModel"] == "Console"
    assert metadata["targetFramework"] == "net10.0"

    call = toolchain.build_calls[0]
    assert call.cmd == ["dotnet", "build", "--nologo", "-c", "Release"]
    assert not os.path.exists(call.cwd)
    assert toolchain.sources == [PROGRAM]
    assert audit.compile_calls == 1
    assert compiler.build_runs == 1


def test_identical_request_within_window_is_served_from_cache(build_settings) -> None:
    toolchain = FakeToolchain()
    compiler, audit = make_compiler(build_settings, toolchain)

    first = compiler.compile_payload(f"```csharp\n{PROGRAM}\n```")
    second = compiler.compile_payload(f"Retrying:\n```csharp\n{PROGRAM}\n```\nCODE_READY")

    assert second is first
    assert len(toolchain.build_calls) == 1
    assert compiler.build_runs == 1
    assert audit.compile_calls == 2


def test_cache_entry_expires_after_window(build_settings) -> None:
    now = [100.0]
    toolchain = FakeToolchain()
    compiler, _ = make_compiler(build_settings, toolchain, clock=lambda: now[0])

    compiler.compile(BuildRequest(code=PROGRAM))
    now[0] += build_settings.compile_dedup_seconds + 0.1
    compiler.compile(BuildRequest(code=PROGRAM))

    assert len(toolchain.build_calls) == 2


def test_different_settings_trigger_a_new_build(build_settings) -> None:
    toolchain = FakeToolchain()
    compiler, _ = make_compiler(build_settings, toolchain)

    compiler.compile(BuildRequest(code=PROGRAM))
    result = compiler.compile(BuildRequest(code=PROGRAM, project=ProjectSettings(output_type="WinExe")))

    assert len(toolchain.build_calls) == 2
    assert result.app_model == AppModel.GUI


def test_cache_is_bounded() -> None:
    cache = BuildCache(ttl_seconds=60, max_entries=2)
    results = {}
    for key in ("a", "b", "c"):
        results[key] = object()
        cache.put(key, results[key])

    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("c") is results["c"]


def test_compile_failure_reports_primary_error(build_settings) -> None:
    toolchain = FakeToolchain(build_outcome=MISSING_SEMICOLON)
    compiler, _ = make_compiler(build_settings, toolchain)

    result = compiler.compile(BuildRequest(code="Console.WriteLine(1)"))

    assert not result.success
    assert result.primary_error == "Program.cs(3,44): error CS1002: ; expected"
    assert result.binary_path is None
    assert any("Build FAILED." in line for line in result.diagnostics)
    assert not os.path.exists(build_settings.artifacts_root)


def test_missing_code_fails_without_running_compiler(build_settings) -> None:
    toolchain = FakeToolchain()
    compiler, audit = make_compiler(build_settings, toolchain)

    result = compiler.compile_payload('{"project": {"outputType": "Exe"}}')

    assert not result.success
    assert result.primary_error == NO_CODE_ERROR
    assert toolchain.calls == []
    assert audit.compile_calls == 1


def test_launch_failure_is_a_failed_build(build_settings) -> None:
    launch_failed = ProcessOutcome(
        exit_code=None,
        error_kind=ProcessErrorKind.LAUNCH_FAILED,
        error_message="Failed to launch 'dotnet': [Errno 2] No such file or directory",
    )
    compiler, _ = make_compiler(build_settings, FakeToolchain(build_outcome=launch_failed))

    result = compiler.compile(BuildRequest(code=PROGRAM))

    assert not result.success
    assert "Failed to launch" in result.primary_error


def test_build_without_assembly_is_a_failure(build_settings) -> None:
    class NoOutputRunner:
        def run(self, cmd, **kwargs):
            return ProcessOutcome(exit_code=0, stdout="Build succeeded.")

    compiler, _ = make_compiler(build_settings, NoOutputRunner())

    result = compiler.compile(BuildRequest(code=PROGRAM))

    assert not result.success
    assert "App.dll was not found" in result.primary_error


def test_extract_primary_error_prefers_stderr_then_stdout() -> None:
    stderr = "warning: something\nerror MSB1009: Project file does not exist."
    stdout = "Program.cs(1,1): error CS0103: The name 'x' does not exist"

    assert extract_primary_error(stderr, stdout) == "error MSB1009: Project file does not exist."
    assert extract_primary_error("", stdout) == stdout
    assert extract_primary_error("", "\n  Restore failed  \n") == "Restore failed"
    assert extract_primary_error("", "") is None


def test_project_file_contains_settings_and_escaped_references() -> None:
    request = normalize_build_request(json.dumps({
        "code": PROGRAM,
        "project": {"useWpf": True, "outputType": "WinExe", "allowUnsafeBlocks": True},
        "properties": {"AssemblyTitle": "Fish & Chips"},
        "packageReferences": [{"id": "CommunityToolkit.Mvvm", "version": "8.2.2"}, "Serilog"],
        "frameworkReferences": ["Microsoft.WindowsDesktop.App"],
        "references": ["C:\\libs\\Legacy.Core.dll"],
    }))

    xml = build_project_file(request)

    assert '<Project Sdk="Microsoft.NET.Sdk">' in xml
    assert "<TargetFramework>net10.0-windows</TargetFramework>" in xml
    assert "<UseWPF>true</UseWPF>" in xml
    assert "<AllowUnsafeBlocks>true</AllowUnsafeBlocks>" in xml
    assert "<AssemblyTitle>Fish &amp; Chips</AssemblyTitle>" in xml
    assert '<PackageReference Include="CommunityToolkit.Mvvm" Version="8.2.2" />' in xml
    assert '<PackageReference Include="Serilog" />' in xml
    assert '<FrameworkReference Include="Microsoft.WindowsDesktop.App" />' in xml
    assert '<Reference Include="Legacy.Core">' in xml
    assert "<HintPath>C:\\libs\\Legacy.Core.dll</HintPath>" in xml


def test_global_json_pins_sdk_or_reuses_nearest(tmp_path) -> None:
    pinned = json.loads(build_global_json("10.0.103", [str(tmp_path)]))
    assert pinned == {"sdk": {"version": "10.0.103", "rollForward": "latestPatch"}}

    repo_json = '{"sdk": {"version": "9.0.100", "rollForward": "latestFeature"}}'
    (tmp_path / "global.json").write_text(repo_json, encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert build_global_json("10.0.103", [str(nested)]) == repo_json


def test_package_order_does_not_defeat_cache(build_settings) -> None:
    toolchain = FakeToolchain()
    compiler, _ = make_compiler(build_settings, toolchain)

    compiler.compile(BuildRequest(code=PROGRAM, package_references=(
        PackageReference("A", "1"), PackageReference("B", "2"))))
    compiler.compile(BuildRequest(code=PROGRAM, package_references=(
        PackageReference("B", "2"), PackageReference("A", "1"))))

    assert len(toolchain.build_calls) == 1


def test_injected_empty_cache_is_kept(build_settings) -> None:
    cache = BuildCache(ttl_seconds=5)

    compiler = Compiler(AuditCounters(), build_settings, FakeToolchain(), cache)

    assert compiler.cache is cache


def test_rebuilt_failure_reads_the_same_after_cache_expiry(build_settings) -> None:
    now = [100.0]
    toolchain = FakeToolchain(build_outcome=MISSING_SEMICOLON)
    compiler, _ = make_compiler(build_settings, toolchain, clock=lambda: now[0])

    first = compiler.compile(BuildRequest(code="Console.WriteLine(1)"))
    now[0] += build_settings.compile_dedup_seconds + 0.1
    second = compiler.compile(BuildRequest(code="Console.WriteLine(1)"))

    assert compiler.build_runs == 2
    assert toolchain.build_calls[0].cwd != toolchain.build_calls[1].cwd
    assert first.primary_error == second.primary_error
    assert first.diagnostics == second.diagnostics
    assert "App.csproj" not in second.primary_error


def test_relativize_build_output_strips_build_dir_and_project_tag() -> None:
    text = "/tmp/b1/Program.cs(2,5): error CS0103: nope [/tmp/b1/App.csproj]\nBuild FAILED."

    assert relativize_build_output(text, "/tmp/b1") == "Program.cs(2,5): error CS0103: nope\nBuild FAILED."
    assert relativize_build_output("", "/tmp/b1") == ""


def test_error_lines_are_matched_regardless_of_case() -> None:
    stdout = "  Restoring...\nProgram.cs(1,1): ERROR CS0103: The name 'x' does not exist\nError MSB4018: task failed"

    assert extract_primary_error("", stdout) == "Program.cs(1,1): ERROR CS0103: The name 'x' does not exist"
    assert extract_primary_error("", "  Restoring...\nError MSB4018: task failed") == "Error MSB4018: task failed"
