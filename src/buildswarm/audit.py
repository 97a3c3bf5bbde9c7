"""
Tool-call audit counters.

Each real invocation of the compile or execute capability bumps a counter.
The workflow manager samples the counters around every role turn; a turn
that reports a compile or run result while the matching counter stayed put
is a fabricated result.
"""

import logging
from threading import Lock
from typing import Optional

from .models import AuditSnapshot, Role
from . import protocol

logger = logging.getLogger(__name__)

COMPILE_CAPABILITY = "CompileCode"
EXECUTE_CAPABILITY = "ExecuteCode"


class AuditCounters:
    """Thread-safe invocation counters for the compile and execute capabilities."""

    def __init__(self):
        self._lock = Lock()
        self._compile_calls = 0
        self._execute_calls = 0

    def register_compile(self):
        with self._lock:
            self._compile_calls += 1
            count = self._compile_calls
        logger.debug(f"CompileCode invocation #{count}")

    def register_execute(self):
        with self._lock:
            self._execute_calls += 1
            count = self._execute_calls
        logger.debug(f"ExecuteCode invocation #{count}")

    @property
    def compile_calls(self) -> int:
        with self._lock:
            return self._compile_calls

    @property
    def execute_calls(self) -> int:
        with self._lock:
            return self._execute_calls

    def snapshot(self) -> AuditSnapshot:
        with self._lock:
            return AuditSnapshot(self._compile_calls, self._execute_calls)

    def reset(self):
        with self._lock:
            self._compile_calls = 0
            self._execute_calls = 0


def claims_compile_result(text: str) -> bool:
    return any(token in text for token in (
        protocol.COMPILED_SUCCESS, protocol.COMPILATION_FAILED, protocol.DLL_PATH,
    ))


def claims_execute_result(text: str) -> bool:
    return any(token in text for token in (
        protocol.EXECUTION_SUCCESS, protocol.EXECUTION_FAILED,
    ))


def detect_omission(role: Role, text: str, before: AuditSnapshot,
                    after: AuditSnapshot) -> Optional[str]:
    """
    Name the capability a turn claims to have used without invoking it.

    Returns COMPILE_CAPABILITY / EXECUTE_CAPABILITY, or None when the turn
    is consistent with the counters.
    """
    advanced = after - before
    if role == Role.COMPILER and claims_compile_result(text) and advanced.compile_calls <= 0:
        return COMPILE_CAPABILITY
    if role == Role.EXECUTOR and claims_execute_result(text) and advanced.execute_calls <= 0:
        return EXECUTE_CAPABILITY
    return None
