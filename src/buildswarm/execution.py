"""
Execution Runner
================

Runs a compiled assembly under a timeout and decides success according to
its application model:

    Console  success iff exit code 0; a timeout is a failure
    GUI      reaching the timeout with a clean error stream means the UI
             came up (UI session STARTED); a normal exit is COMPLETED

Console programs that die because their console handle is redirected
(cursor/window APIs) can be retried once attached to the parent console
when the interactive fallback is enabled. Captured stdout is lost in
that mode.
"""

import json
import logging
import os
from dataclasses import replace
from typing import List, Optional

from .audit import AuditCounters
from .compiler import RUN_METADATA_FILE
from .config import ExecutionSettings
from .models import AppModel, ExecutionResult, RunMetadata, UISession
from .process_runner import ProcessOutcome, ProcessRunner

logger = logging.getLogger(__name__)

UI_TEST_MODE_ENV = "BUILDSWARM_UI_TEST_MODE"

# stderr fragments that mean "this program needs a real console"
CONSOLE_HANDLE_SIGNATURES = (
    "The handle is invalid",
    "IOException: The handle",
    "Invalid handle",
    "Console.CursorLeft",
    "Console.CursorTop",
    "Console.CursorVisible",
    "Console.SetCursorPosition",
    "Console.WindowWidth",
    "Console.WindowHeight",
    "Console.BufferWidth",
    "Console.BufferHeight",
    "Console.Clear",
    "Console.ReadKey",
    "Cannot read keys when either application does not have a console",
)

# stderr fragments that mean the program crashed
RUNTIME_FAILURE_SIGNATURES = (
    "Unhandled exception",
    "Unhandled Exception",
    "Exception:",
    "Fatal error",
    "Process terminated",
    "Segmentation fault",
    "Aborted (core dumped)",
)

CONSOLE_HANDLE_HINT = (
    "Program needs an interactive console (cursor/window APIs fail with redirected output). "
    "Guard console calls with Console.IsOutputRedirected and print plain text, "
    "or enable allow_interactive_fallback."
)


def has_console_handle_failure(stderr: str) -> bool:
    return any(sig in stderr for sig in CONSOLE_HANDLE_SIGNATURES)


def has_runtime_failure(stderr: str) -> bool:
    return any(sig in stderr for sig in RUNTIME_FAILURE_SIGNATURES)


def first_failure_line(stderr: str, stdout: str = "") -> Optional[str]:
    for stream in (stderr, stdout):
        lines = [line.strip() for line in (stream or "").splitlines() if line.strip()]
        for line in lines:
            if any(sig in line for sig in RUNTIME_FAILURE_SIGNATURES + CONSOLE_HANDLE_SIGNATURES):
                return line
        if lines:
            return lines[0]
    return None


def load_run_metadata(binary_path: str) -> Optional[RunMetadata]:
    path = os.path.join(os.path.dirname(os.path.abspath(binary_path)), RUN_METADATA_FILE)
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return RunMetadata.from_dict(json.load(f))
    except (OSError, ValueError, AttributeError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return None


class ExecutionRunner:
    """The ExecuteCode capability."""

    def __init__(
        self,
        audit: AuditCounters,
        settings: Optional[ExecutionSettings] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        self.audit = audit
        self.settings = settings if settings is not None else ExecutionSettings()
        self.runner = runner if runner is not None else ProcessRunner()

    def resolve_app_model(self, binary_path: str, hint: Optional[AppModel] = None) -> AppModel:
        """Explicit hint, then run-metadata.json next to the binary, then Console."""
        if hint is not None:
            return hint
        metadata = load_run_metadata(binary_path)
        if metadata is not None:
            return metadata.app_model
        return AppModel.CONSOLE

    def launch_command(self, binary_path: str) -> List[str]:
        if binary_path.lower().endswith(".dll"):
            return [self.settings.runtime, binary_path]
        return [binary_path]

    def run(self, binary_path: str, app_model_hint: Optional[AppModel] = None) -> ExecutionResult:
        self.audit.register_execute()
        logger.info(f"ExecuteCode invoked for {binary_path}")

        if not binary_path or not os.path.isfile(binary_path):
            logger.warning(f"ExecuteCode: binary not found at {binary_path}")
            app_model = app_model_hint or AppModel.CONSOLE
            return ExecutionResult(
                success=False,
                app_model=app_model,
                primary_error=f"Binary not found at: {binary_path}",
            )

        app_model = self.resolve_app_model(binary_path, app_model_hint)
        cwd = os.path.dirname(os.path.abspath(binary_path))
        cmd = self.launch_command(binary_path)

        if app_model == AppModel.GUI:
            outcome = self.runner.run(
                cmd, cwd=cwd, timeout=self.settings.gui_timeout_seconds,
                env={UI_TEST_MODE_ENV: "1"},
            )
            result = self._gui_result(outcome)
        else:
            outcome = self.runner.run(cmd, cwd=cwd, timeout=self.settings.timeout_seconds)
            result = self._console_result(outcome, cmd, cwd)

        if result.stdout and not result.stdout.strip():
            result = replace(result, notes=result.notes + (
                f"Output was whitespace only: {len(result.stdout)} chars, "
                f"{len(result.stdout.splitlines())} lines.",
            ))

        logger.info(
            f"ExecuteCode {'SUCCESS' if result.success else 'FAILED'} "
            f"({app_model.value}, exit={result.exit_code}, timed_out={result.timed_out})"
        )
        return result

    # =========================================================================
    # POLICIES
    # =========================================================================

    def _gui_result(self, outcome: ProcessOutcome) -> ExecutionResult:
        if not outcome.launched:
            return ExecutionResult(success=False, app_model=AppModel.GUI,
                                   primary_error=outcome.error_message)

        crashed = has_runtime_failure(outcome.stderr)
        if outcome.timed_out:
            session = UISession.STARTED
        else:
            session = UISession.COMPLETED

        return ExecutionResult(
            success=not crashed,
            app_model=AppModel.GUI,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            ui_session=None if crashed else session,
            primary_error=first_failure_line(outcome.stderr) if crashed else None,
        )

    def _console_result(self, outcome: ProcessOutcome, cmd: List[str], cwd: str) -> ExecutionResult:
        if not outcome.launched:
            return ExecutionResult(success=False, app_model=AppModel.CONSOLE,
                                   primary_error=outcome.error_message)

        if outcome.timed_out:
            return ExecutionResult(
                success=False,
                app_model=AppModel.CONSOLE,
                timed_out=True,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                primary_error=(
                    f"Execution timed out after {self.settings.timeout_seconds}s "
                    f"(waiting for input or an endless loop?)"
                ),
            )

        if outcome.exit_code == 0:
            return ExecutionResult(
                success=True,
                app_model=AppModel.CONSOLE,
                exit_code=0,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )

        if has_console_handle_failure(outcome.stderr):
            if self.settings.allow_interactive_fallback:
                logger.info("Console handle failure; retrying attached to the parent console")
                return self._interactive_retry(cmd, cwd, outcome)
            return ExecutionResult(
                success=False,
                app_model=AppModel.CONSOLE,
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                primary_error=CONSOLE_HANDLE_HINT,
            )

        return ExecutionResult(
            success=False,
            app_model=AppModel.CONSOLE,
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            primary_error=first_failure_line(outcome.stderr, outcome.stdout)
            or f"Process exited with code {outcome.exit_code}",
        )

    def _interactive_retry(self, cmd: List[str], cwd: str, first: ProcessOutcome) -> ExecutionResult:
        """Second attempt with stdout attached; only stderr is still captured."""
        outcome = self.runner.run(
            cmd, cwd=cwd, timeout=self.settings.timeout_seconds, capture_stdout=False,
        )
        notes = ("Interactive fallback: stdout went to the console and was not captured.",)

        if not outcome.launched:
            return ExecutionResult(
                success=False,
                app_model=AppModel.CONSOLE,
                interactive_fallback_used=True,
                stderr=first.stderr,
                primary_error=outcome.error_message,
                notes=notes,
            )

        crashed = has_runtime_failure(outcome.stderr) or has_console_handle_failure(outcome.stderr)
        success = not crashed and (outcome.timed_out or outcome.exit_code == 0)
        return ExecutionResult(
            success=success,
            app_model=AppModel.CONSOLE,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            stdout="",
            stderr=outcome.stderr,
            interactive_fallback_used=True,
            primary_error=None if success else (
                first_failure_line(outcome.stderr) or f"Process exited with code {outcome.exit_code}"
            ),
            notes=notes,
        )
