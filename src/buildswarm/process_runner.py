"""
Process Runner
==============

Launches a child process with optional output capture, a timeout, and
whole-tree termination. Two reader threads drain stdout/stderr while the
child runs so a chatty process cannot fill a pipe and stall.

Failures are returned as an explicit ``error_kind`` on the outcome rather
than raised; callers branch on it.
"""

import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, IO, List, Optional

logger = logging.getLogger(__name__)

# Upper bound for joining reader threads after the child is gone
READER_JOIN_TIMEOUT = 2.0


class ProcessErrorKind(Enum):
    NONE = "none"
    TIMEOUT = "timeout"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    error_kind: ProcessErrorKind = ProcessErrorKind.NONE
    error_message: str = ""
    duration: float = 0.0

    @property
    def timed_out(self) -> bool:
        return self.error_kind == ProcessErrorKind.TIMEOUT

    @property
    def launched(self) -> bool:
        return self.error_kind != ProcessErrorKind.LAUNCH_FAILED


def _pump(stream: IO[str], sink: List[str]):
    """Drain a pipe into sink until EOF."""
    try:
        for chunk in iter(stream.readline, ""):
            sink.append(chunk)
    except (OSError, ValueError):
        # Pipe closed underneath us after a kill
        pass
    finally:
        with contextlib.suppress(OSError):
            stream.close()


def terminate_process_tree(proc: subprocess.Popen, grace_s: float = 1.0):
    """Stop proc and its process group: SIGINT, then SIGTERM, then SIGKILL."""
    if proc.poll() is not None:
        return

    for sig, share in ((signal.SIGINT, 0.5), (signal.SIGTERM, 0.4)):
        try:
            os.killpg(proc.pid, sig)
        except OSError:
            with contextlib.suppress(OSError):
                proc.send_signal(sig)

        t0 = time.monotonic()
        while time.monotonic() - t0 < max(0.2, grace_s * share):
            if proc.poll() is not None:
                return
            time.sleep(0.05)

    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        with contextlib.suppress(OSError):
            proc.kill()


class ProcessRunner:
    """Runs commands for the compiler and the execution runner."""

    def __init__(self, kill_grace_seconds: float = 1.0):
        self.kill_grace_seconds = kill_grace_seconds

    def run(
        self,
        cmd: List[str],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        capture_stdout: bool = True,
        capture_stderr: bool = True,
    ) -> ProcessOutcome:
        """
        Run cmd to completion or until timeout.

        Args:
            cmd: Program and arguments
            cwd: Working directory
            timeout: Seconds before the process tree is killed (None = no limit)
            env: Extra environment variables layered over os.environ
            capture_stdout: False leaves stdout attached to the parent console
            capture_stderr: False leaves stderr attached to the parent console

        Returns:
            ProcessOutcome; launch errors and timeouts are reported in error_kind
        """
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        start = time.monotonic()
        logger.debug(f"Launching: {' '.join(cmd)} (cwd={cwd}, timeout={timeout})")

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                env=full_env,
                stdin=subprocess.DEVNULL if capture_stdout else None,
                stdout=subprocess.PIPE if capture_stdout else None,
                stderr=subprocess.PIPE if capture_stderr else None,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"Failed to launch {cmd[0]}: {e}")
            return ProcessOutcome(
                exit_code=None,
                error_kind=ProcessErrorKind.LAUNCH_FAILED,
                error_message=f"Failed to launch '{cmd[0]}': {e}",
                duration=time.monotonic() - start,
            )

        out_chunks: List[str] = []
        err_chunks: List[str] = []
        readers = []
        for stream, sink in ((proc.stdout, out_chunks), (proc.stderr, err_chunks)):
            if stream is not None:
                reader = threading.Thread(target=_pump, args=(stream, sink), daemon=True)
                reader.start()
                readers.append(reader)

        timed_out = False
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.info(f"Timeout after {timeout}s, killing process tree of pid {proc.pid}")
            terminate_process_tree(proc, grace_s=self.kill_grace_seconds)
            with contextlib.suppress(subprocess.TimeoutExpired):
                proc.wait(timeout=self.kill_grace_seconds)

        for reader in readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)
            if reader.is_alive():
                logger.warning("Output reader did not finish; returning partial output")

        return ProcessOutcome(
            exit_code=None if timed_out else proc.returncode,
            stdout="".join(out_chunks),
            stderr="".join(err_chunks),
            error_kind=ProcessErrorKind.TIMEOUT if timed_out else ProcessErrorKind.NONE,
            error_message=f"Timed out after {timeout}s" if timed_out else "",
            duration=time.monotonic() - start,
        )
