"""
Turn text protocol
==================

Marker tokens the roles put in their messages, the text renderings of
build and execution results, and small helpers for reading labeled
fields back out of a turn.
"""

import re
from typing import Optional

from .models import AppModel, BuildResult, ExecutionResult

# Generator
CODE_READY = "CODE_READY"

# Compiler
COMPILED_SUCCESS = "COMPILED_SUCCESS"
COMPILATION_FAILED = "COMPILATION_FAILED"
DLL_PATH = "DLL_PATH:"
ARTIFACT_DIR = "ARTIFACT_DIR:"
APP_MODEL = "APP_MODEL:"
PRIMARY_ERROR = "PRIMARY_ERROR:"
ERRORS = "ERRORS:"
BUILD_OUTPUT = "BUILD_OUTPUT:"
WAITING_FOR_CODE = "WAITING_FOR_CODE"

# Executor
EXECUTION_SUCCESS = "SUCCESS - Execution completed"
EXECUTION_FAILED = "EXECUTION_FAILED"
OUTPUT = "OUTPUT:"
STDERR = "STDERR:"
EXIT_CODE = "EXIT_CODE:"
UI_SESSION = "UI_SESSION:"
GUI_SMOKE_PASS = "GUI_SMOKE_PASS"
INTERACTIVE_SESSION = "INTERACTIVE_SESSION:"
WHITESPACE_OUTPUT_DETECTED = "WHITESPACE_OUTPUT_DETECTED"
WHITESPACE_OUTPUT_CHARS = "WHITESPACE_OUTPUT_CHARS:"
WHITESPACE_OUTPUT_LINES = "WHITESPACE_OUTPUT_LINES:"
WAITING_FOR_BINARY = "WAITING_FOR_BINARY"

# Validator
VALIDATION_SUCCESS = "VALIDATION_SUCCESS"
VALIDATION_FAILED = "VALIDATION_FAILED"
REASON = "REASON:"
EVIDENCE = "EVIDENCE:"
NEXT_ACTION = "NEXT_ACTION:"
RESULT_SUMMARY = "RESULT_SUMMARY:"

# Manager
REPAIR_DIRECTIVE = "REPAIR_DIRECTIVE"
TOOL_AUDIT = "TOOL_AUDIT"
AGENT_ERROR = "AGENT_ERROR"

# Cap for build logs echoed back into the conversation
MAX_BUILD_OUTPUT_CHARS = 4000


def read_field(text: str, label: str) -> Optional[str]:
    """Value after the last 'LABEL:' line in text, or None."""
    pattern = re.compile(rf'^[ \t]*{re.escape(label)}[ \t]*(.*)$', re.MULTILINE)
    matches = pattern.findall(text or "")
    if not matches:
        return None
    value = matches[-1].strip()
    return value or None


def is_validation_success(text: str) -> bool:
    return VALIDATION_SUCCESS in text and VALIDATION_FAILED not in text


def is_compile_success(text: str) -> bool:
    return COMPILED_SUCCESS in text and COMPILATION_FAILED not in text


def _tail(text: str, limit: int = MAX_BUILD_OUTPUT_CHARS) -> str:
    text = text.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


def format_build_result(result: BuildResult) -> str:
    if result.success:
        return "\n".join([
            COMPILED_SUCCESS,
            f"{DLL_PATH} {result.binary_path}",
            f"{ARTIFACT_DIR} {result.artifact_dir}",
            f"{APP_MODEL} {result.app_model.value}",
        ])

    lines = [
        COMPILATION_FAILED,
        f"{PRIMARY_ERROR} {result.primary_error or 'unknown build error'}",
        ERRORS,
    ]
    errors = [d for d in result.diagnostics if "error" in d.lower()] or list(result.diagnostics[:1])
    lines.extend(errors[:20])
    lines.append(BUILD_OUTPUT)
    lines.append(_tail("\n".join(result.diagnostics)))
    return "\n".join(lines)


def format_execution_result(result: ExecutionResult) -> str:
    lines = [EXECUTION_SUCCESS if result.success else EXECUTION_FAILED]
    lines.append(f"{APP_MODEL} {result.app_model.value}")

    if result.ui_session is not None:
        lines.append(f"{UI_SESSION} {result.ui_session.value}")
        if result.success:
            lines.append(GUI_SMOKE_PASS)
    if result.interactive_fallback_used:
        lines.append(f"{INTERACTIVE_SESSION} attached console, stdout not captured")
    if not result.success:
        if result.primary_error:
            lines.append(f"{PRIMARY_ERROR} {result.primary_error}")
        lines.append(f"{EXIT_CODE} {'timeout' if result.timed_out else result.exit_code}")

    if result.stdout and not result.stdout.strip():
        lines.append(WHITESPACE_OUTPUT_DETECTED)
        lines.append(f"{WHITESPACE_OUTPUT_CHARS} {len(result.stdout)}")
        lines.append(f"{WHITESPACE_OUTPUT_LINES} {len(result.stdout.splitlines())}")

    for note in result.notes:
        lines.append(f"NOTE: {note}")

    lines.append(OUTPUT)
    lines.append(result.stdout.rstrip())
    if result.stderr.strip():
        lines.append(STDERR)
        lines.append(_tail(result.stderr))
    return "\n".join(lines)


def parse_app_model(text: str) -> Optional[AppModel]:
    return AppModel.parse(read_field(text, APP_MODEL))
