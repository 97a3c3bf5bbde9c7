"""
BuildSwarm: generate, build, run and validate C# programs with a team of
agents, checking every claimed compile and run against real tool calls.
"""

from .audit import AuditCounters
from .build_request import build_signature, normalize_build_request, request_to_manifest
from .compiler import BuildCache, Compiler
from .config import SwarmConfig, load_config
from .execution import ExecutionRunner
from .models import (
    AppModel, BuildRequest, BuildResult, ConversationHistory, ConversationTurn,
    ExecutionResult, Role, WorkflowOutcome,
)
from .process_runner import ProcessRunner
from .repair import RepairFeedbackSynthesizer
from .streaming import StreamAccumulator
from .workflow_manager import WorkflowContext, WorkflowManager, WorkflowResult

__version__ = "0.1.0"

__all__ = [
    "AppModel",
    "AuditCounters",
    "BuildCache",
    "BuildRequest",
    "BuildResult",
    "Compiler",
    "ConversationHistory",
    "ConversationTurn",
    "ExecutionResult",
    "ExecutionRunner",
    "ProcessRunner",
    "RepairFeedbackSynthesizer",
    "Role",
    "StreamAccumulator",
    "SwarmConfig",
    "WorkflowContext",
    "WorkflowManager",
    "WorkflowOutcome",
    "WorkflowResult",
    "build_signature",
    "load_config",
    "normalize_build_request",
    "request_to_manifest",
]
