from __future__ import annotations

import json

import pytest

from conftest import FakeToolchain

from buildswarm import protocol
from buildswarm.audit import AuditCounters
from buildswarm.config import ExecutionSettings
from buildswarm.execution import CONSOLE_HANDLE_HINT, UI_TEST_MODE_ENV, ExecutionRunner
from buildswarm.models import AppModel, ExecutionResult, UISession
from buildswarm.process_runner import ProcessErrorKind, ProcessOutcome


TIMEOUT = ProcessOutcome(exit_code=None, error_kind=ProcessErrorKind.TIMEOUT, error_message="Timed out")

HANDLE_FAILURE = ProcessOutcome(
    exit_code=134,
    stderr=(
        "Unhandled exception. System.IO.IOException: The handle is invalid.\n"
        "   at System.ConsolePal.GetBufferInfo()\n"
        "   at System.Console.get_CursorLeft()\n"
    ),
)


@pytest.fixture
def binary(tmp_path):
    path = tmp_path / "Run_20260101_000000000" / "App.dll"
    path.parent.mkdir()
    path.write_text("fake", encoding="utf-8")
    return path


def make_runner(toolchain, settings=None):
    audit = AuditCounters()
    return ExecutionRunner(audit, settings or ExecutionSettings(timeout_seconds=3, gui_timeout_seconds=2), toolchain), audit


def test_console_exit_zero_is_success(binary) -> None:
    toolchain = FakeToolchain(run_outcomes=[ProcessOutcome(exit_code=0, stdout="1\n4\n9\n")])
    runner, audit = make_runner(toolchain)

    result = runner.run(str(binary))

    assert result.success
    assert result.app_model == AppModel.CONSOLE
    assert result.stdout == "1\n4\n9\n"
    assert toolchain.run_calls[0].cmd == ["dotnet", str(binary)]
    assert toolchain.run_calls[0].timeout == 3
    assert audit.execute_calls == 1


def test_console_nonzero_exit_is_failure_with_primary_error(binary) -> None:
    crash = ProcessOutcome(
        exit_code=1,
        stderr="Unhandled exception. System.DivideByZeroException: Attempted to divide by zero.\n   at Program.Main()",
    )
    runner, _ = make_runner(FakeToolchain(run_outcomes=[crash]))

    result = runner.run(str(binary))

    assert not result.success
    assert result.exit_code == 1
    assert "DivideByZeroException" in result.primary_error


def test_console_timeout_is_failure(binary) -> None:
    runner, _ = make_runner(FakeToolchain(run_outcomes=[TIMEOUT]))

    result = runner.run(str(binary))

    assert not result.success
    assert result.timed_out
    assert "timed out" in result.primary_error


def test_gui_timeout_with_clean_stderr_means_ui_started(binary) -> None:
    toolchain = FakeToolchain(run_outcomes=[TIMEOUT])
    runner, _ = make_runner(toolchain)

    result = runner.run(str(binary), AppModel.GUI)

    assert result.success
    assert result.ui_session == UISession.STARTED
    call = toolchain.run_calls[0]
    assert call.env == {UI_TEST_MODE_ENV: "1"}
    assert call.timeout == 2


def test_gui_timeout_with_runtime_failure_is_failure(binary) -> None:
    crashed = ProcessOutcome(
        exit_code=None,
        error_kind=ProcessErrorKind.TIMEOUT,
        stderr="Unhandled exception. System.InvalidOperationException: Cross-thread operation",
    )
    runner, _ = make_runner(FakeToolchain(run_outcomes=[crashed]))

    result = runner.run(str(binary), AppModel.GUI)

    assert not result.success
    assert result.ui_session is None
    assert "InvalidOperationException" in result.primary_error


def test_gui_normal_exit_is_completed_session(binary) -> None:
    runner, _ = make_runner(FakeToolchain(run_outcomes=[ProcessOutcome(exit_code=0)]))

    result = runner.run(str(binary), AppModel.GUI)

    assert result.success
    assert result.ui_session == UISession.COMPLETED


def test_app_model_comes_from_run_metadata(binary) -> None:
    (binary.parent / "run-metadata.json").write_text(
        json.dumps({"appModel": "Gui", "targetFramework": "net10.0-windows", "outputType": "WinExe"}),
        encoding="utf-8",
    )
    runner, _ = make_runner(FakeToolchain(run_outcomes=[TIMEOUT]))

    assert runner.resolve_app_model(str(binary)) == AppModel.GUI
    assert runner.resolve_app_model(str(binary), AppModel.CONSOLE) == AppModel.CONSOLE
    assert runner.run(str(binary)).ui_session == UISession.STARTED


def test_console_handle_failure_without_fallback_fails_fast(binary) -> None:
    toolchain = FakeToolchain(run_outcomes=[HANDLE_FAILURE])
    runner, _ = make_runner(toolchain)

    result = runner.run(str(binary))

    assert not result.success
    assert result.primary_error == CONSOLE_HANDLE_HINT
    assert not result.interactive_fallback_used
    assert len(toolchain.run_calls) == 1


def test_console_handle_failure_retries_attached_when_enabled(binary) -> None:
    toolchain = FakeToolchain(run_outcomes=[HANDLE_FAILURE, TIMEOUT])
    settings = ExecutionSettings(timeout_seconds=3, allow_interactive_fallback=True)
    runner, audit = make_runner(toolchain, settings)

    result = runner.run(str(binary))

    assert result.success
    assert result.interactive_fallback_used
    assert result.stdout == ""
    assert result.notes
    retry = toolchain.run_calls[1]
    assert retry.capture_stdout is False
    assert audit.execute_calls == 1


def test_interactive_retry_that_crashes_is_failure(binary) -> None:
    crash = ProcessOutcome(exit_code=1, stderr="Unhandled exception. System.Exception: boom")
    toolchain = FakeToolchain(run_outcomes=[HANDLE_FAILURE, crash])
    runner, _ = make_runner(toolchain, ExecutionSettings(allow_interactive_fallback=True))

    result = runner.run(str(binary))

    assert not result.success
    assert result.interactive_fallback_used
    assert "boom" in result.primary_error


def test_missing_binary_is_failure_and_still_audited(tmp_path) -> None:
    toolchain = FakeToolchain()
    runner, audit = make_runner(toolchain)

    result = runner.run(str(tmp_path / "nope" / "App.dll"))

    assert not result.success
    assert result.primary_error.startswith("Binary not found at:")
    assert toolchain.calls == []
    assert audit.execute_calls == 1


def test_native_executables_run_directly(tmp_path) -> None:
    exe = tmp_path / "App"
    exe.write_text("fake", encoding="utf-8")
    toolchain = FakeToolchain(run_outcomes=[ProcessOutcome(exit_code=0, stdout="ok\n")])
    runner, _ = make_runner(toolchain)

    runner.run(str(exe))

    assert toolchain.run_calls[0].cmd == [str(exe)]


def test_whitespace_only_run_gets_a_note(binary) -> None:
    runner, _ = make_runner(FakeToolchain(run_outcomes=[ProcessOutcome(exit_code=0, stdout="  \n\n")]))

    result = runner.run(str(binary))

    assert result.success
    assert result.notes == ("Output was whitespace only: 4 chars, 2 lines.",)


def test_whitespace_only_output_is_reported() -> None:
    result = ExecutionResult(success=True, app_model=AppModel.CONSOLE, exit_code=0, stdout="   \n\n  \n")

    text = protocol.format_execution_result(result)

    assert text.startswith(protocol.EXECUTION_SUCCESS)
    assert protocol.WHITESPACE_OUTPUT_DETECTED in text
    assert f"{protocol.WHITESPACE_OUTPUT_CHARS} 8" in text
    assert f"{protocol.WHITESPACE_OUTPUT_LINES} 3" in text


def test_gui_result_text_carries_smoke_markers() -> None:
    result = ExecutionResult(
        success=True, app_model=AppModel.GUI, timed_out=True, ui_session=UISession.STARTED,
    )

    text = protocol.format_execution_result(result)

    assert "UI_SESSION: STARTED" in text
    assert protocol.GUI_SMOKE_PASS in text
    assert "APP_MODEL: Gui" in text
