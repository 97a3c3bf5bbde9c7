"""
Workflow Manager for BuildSwarm
===============================

Drives the build conversation round-robin:

    CodeGenerator -> CodeCompiler -> CodeExecutor -> CodeValidator -> ...

After every role turn the manager
- checks the turn against the tool-call audit counters (a compile or run
  result without a real CompileCode/ExecuteCode call is fabricated),
- asks the repair synthesizer for a directive when the turn failed,
- decides whether to stop.

A run only ends successfully when the validator reports success AND the
counters show at least one real compile and one real execution. The
iteration ceiling is a safety net and is reported as MAX_ITERATIONS,
never as success.
"""

import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from . import protocol
from .agents.agent_base import Agent, AgentError
from .audit import COMPILE_CAPABILITY, EXECUTE_CAPABILITY, AuditCounters, detect_omission
from .compiler import BuildCache, Compiler
from .config import SwarmConfig
from .execution import ExecutionRunner
from .models import (
    AuditSnapshot, ConversationHistory, ConversationTurn, Role, WorkflowOutcome, ROLE_ORDER,
)
from .process_runner import ProcessRunner
from .repair import RepairFeedbackSynthesizer

logger = logging.getLogger(__name__)

TurnCallback = Callable[[ConversationTurn], None]
StreamCallback = Callable[[Role, str], None]

CAPABILITY_OWNERS = {
    COMPILE_CAPABILITY: Role.COMPILER,
    EXECUTE_CAPABILITY: Role.EXECUTOR,
}


class WorkflowState(Enum):
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass
class AgentMetrics:
    """Metrics for agent performance tracking"""
    agent_name: str
    role: str
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    avg_response_time: float = 0.0
    last_call_time: Optional[float] = None

    def update(self, success: bool, response_time: float):
        """Update metrics after an agent call"""
        self.total_calls += 1
        if success:
            self.successful_calls += 1
        else:
            self.failed_calls += 1

        # Running average
        if self.avg_response_time == 0:
            self.avg_response_time = response_time
        else:
            self.avg_response_time = (
                self.avg_response_time * (self.total_calls - 1) + response_time
            ) / self.total_calls

        self.last_call_time = response_time


@dataclass
class TerminationDecision:
    terminate: bool
    outcome: Optional[WorkflowOutcome] = None
    reason: str = ""
    # (target role, directive text) pairs to inject before the next turn
    directives: List = field(default_factory=list)


@dataclass
class WorkflowResult:
    workflow_id: str
    outcome: WorkflowOutcome
    reason: str
    turns: List[ConversationTurn]
    audit: AuditSnapshot
    metrics: Dict[str, AgentMetrics]
    binary_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == WorkflowOutcome.SUCCESS

    @property
    def role_turn_count(self) -> int:
        return sum(1 for t in self.turns if not t.directive and t.author != Role.MANAGER)


@dataclass
class WorkflowContext:
    """
    Everything stateful a run shares: audit counters, the compiler with its
    build cache, the execution runner and the repair synthesizer.
    One context per run; nothing here is module-global.
    """
    audit: AuditCounters
    compiler: Compiler
    executor: ExecutionRunner
    repair: RepairFeedbackSynthesizer

    @classmethod
    def create(cls, config: Optional[SwarmConfig] = None,
               runner: Optional[ProcessRunner] = None) -> "WorkflowContext":
        config = config or SwarmConfig.from_dict()
        runner = runner if runner is not None else ProcessRunner()
        audit = AuditCounters()
        cache = BuildCache(
            ttl_seconds=config.build.compile_dedup_seconds,
            max_entries=config.build.cache_max_entries,
        )
        return cls(
            audit=audit,
            compiler=Compiler(audit, config.build, runner, cache),
            executor=ExecutionRunner(audit, config.execution, runner),
            repair=RepairFeedbackSynthesizer(config.workflow.directive_max_length),
        )


class WorkflowManager:
    """Round-robin scheduler and termination authority for one build conversation."""

    def __init__(
        self,
        agents: Dict[Role, Agent],
        context: WorkflowContext,
        max_iterations: int = 15,
        sessions_dir: str = "sessions",
        on_turn: Optional[TurnCallback] = None,
        on_stream: Optional[StreamCallback] = None,
    ):
        missing = [role for role in ROLE_ORDER if role not in agents]
        if missing:
            raise ValueError(f"No agent for role(s): {', '.join(r.value for r in missing)}")
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self.agents = agents
        self.context = context
        self.max_iterations = max_iterations
        self.sessions_dir = sessions_dir
        self.on_turn = on_turn
        self.on_stream = on_stream

        self.workflow_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.history = ConversationHistory()
        self.state = WorkflowState.RUNNING
        self.metrics: Dict[str, AgentMetrics] = {}
        self.result: Optional[WorkflowResult] = None

        self._slot = 0
        self._baseline = context.audit.snapshot()
        # capability -> counter value when the omission was detected
        self._pending_omissions: Dict[str, int] = {}

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def select_next_role(self) -> Role:
        return ROLE_ORDER[self._slot % len(ROLE_ORDER)]

    @property
    def iteration(self) -> int:
        """Completed full role cycles."""
        return self._slot // len(ROLE_ORDER)

    def _audit_since_start(self) -> AuditSnapshot:
        return self.context.audit.snapshot() - self._baseline

    def _counter(self, capability: str) -> int:
        snapshot = self.context.audit.snapshot()
        if capability == COMPILE_CAPABILITY:
            return snapshot.compile_calls
        return snapshot.execute_calls

    def _resolve_omissions(self):
        for capability, seen in list(self._pending_omissions.items()):
            if self._counter(capability) > seen:
                logger.info(f"{capability} omission resolved")
                del self._pending_omissions[capability]

    # =========================================================================
    # TERMINATION
    # =========================================================================

    def should_terminate(self, history: ConversationHistory) -> TerminationDecision:
        """
        Decide whether the conversation is over.

        Success needs a validator success turn backed by at least one real
        compile and one real execution, with no unresolved fabricated result.
        """
        last = history.last()
        if last is not None and last.author == Role.VALIDATOR and not last.directive \
                and protocol.is_validation_success(last.text):
            audit = self._audit_since_start()
            missing = []
            if audit.compile_calls < 1 or COMPILE_CAPABILITY in self._pending_omissions:
                missing.append(COMPILE_CAPABILITY)
            if audit.execute_calls < 1 or EXECUTE_CAPABILITY in self._pending_omissions:
                missing.append(EXECUTE_CAPABILITY)

            if not missing:
                return TerminationDecision(
                    terminate=True,
                    outcome=WorkflowOutcome.SUCCESS,
                    reason="Validator confirmed success with verified compile and execute calls",
                )

            logger.warning(
                f"Validator reported success but audit shows no real {', '.join(missing)}; "
                f"refusing to terminate"
            )
            directives = [
                (CAPABILITY_OWNERS[capability],
                 f"{protocol.TOOL_AUDIT}: {Role.VALIDATOR.author_name} reported success, but "
                 f"{capability} has not actually been invoked. "
                 f"{CAPABILITY_OWNERS[capability].author_name} must call {capability} "
                 f"before the result can be accepted.")
                for capability in missing
            ]
            if self._ceiling_reached(history):
                return self._ceiling_decision(directives)
            return TerminationDecision(
                terminate=False,
                reason=f"Missing capability invocation: {', '.join(missing)}",
                directives=directives,
            )

        if self._ceiling_reached(history):
            return self._ceiling_decision()

        return TerminationDecision(terminate=False)

    def _ceiling_reached(self, history: ConversationHistory) -> bool:
        return len(history.role_turns()) >= self.max_iterations * len(ROLE_ORDER)

    def _ceiling_decision(self, directives: Optional[List] = None) -> TerminationDecision:
        logger.warning(
            f"Safety-net exit: maximum of {self.max_iterations} iterations reached without "
            f"verified success"
        )
        return TerminationDecision(
            terminate=True,
            outcome=WorkflowOutcome.MAX_ITERATIONS,
            reason=f"Maximum iterations ({self.max_iterations}) reached",
            directives=directives or [],
        )

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    def _append(self, author: Role, text: str, directive: bool = False,
                target: Optional[Role] = None) -> ConversationTurn:
        turn = self.history.append(author, text, directive=directive, target=target)
        if self.on_turn:
            self.on_turn(turn)
        return turn

    def _take_turn(self, role: Role) -> ConversationTurn:
        agent = self.agents[role]
        metrics = self.metrics.setdefault(role.value, AgentMetrics(agent_name=agent.name, role=role.value))
        if self.on_stream:
            agent.on_text = lambda text, r=role: self.on_stream(r, text)

        start_time = time.time()
        success = False
        try:
            text = agent.respond(self.history)
            success = True
        except AgentError as e:
            logger.error(f"{agent.name} failed: [{e.code}] {e.message}")
            text = f"{protocol.AGENT_ERROR} [{e.code}]: {e.message}"
        finally:
            metrics.update(success, time.time() - start_time)

        self._slot += 1
        return self._append(role, text)

    def _audit_turn(self, turn: ConversationTurn, before: AuditSnapshot):
        capability = detect_omission(turn.author, turn.text, before, self.context.audit.snapshot())
        if capability is None:
            return
        logger.warning(
            f"{turn.author.author_name} reported a {capability} result without invoking {capability}"
        )
        self._pending_omissions[capability] = self._counter(capability)
        self._append(
            Role.MANAGER,
            f"{protocol.TOOL_AUDIT}: {turn.author.author_name} reported a result but {capability} "
            f"was never invoked. Call {capability} for real; fabricated results are rejected and "
            f"the workflow cannot finish until {capability} runs.",
            directive=True,
            target=turn.author,
        )

    def run(self, specification: str) -> WorkflowResult:
        """Run the conversation for a specification until it terminates."""
        if not specification or not specification.strip():
            raise ValueError("specification must not be empty")
        if self.state == WorkflowState.TERMINATED:
            raise ValueError("This workflow has already run; create a new manager")

        logger.info(f"Workflow {self.workflow_id} started (max {self.max_iterations} iterations)")
        self._append(Role.MANAGER, specification.strip())

        while True:
            role = self.select_next_role()
            before = self.context.audit.snapshot()
            turn = self._take_turn(role)

            self._resolve_omissions()
            self._audit_turn(turn, before)

            repair_text = self.context.repair.synthesize(turn)
            if repair_text is not None:
                self._append(Role.MANAGER, repair_text, directive=True, target=Role.GENERATOR)

            decision = self.should_terminate(self.history)
            for target, text in decision.directives:
                self._append(Role.MANAGER, text, directive=True, target=target)

            if decision.terminate:
                self.state = WorkflowState.TERMINATED
                self.result = self._build_result(decision)
                logger.info(
                    f"Workflow {self.workflow_id} finished: {decision.outcome.value} "
                    f"after {self.result.role_turn_count} turns ({decision.reason})"
                )
                return self.result

    def _build_result(self, decision: TerminationDecision) -> WorkflowResult:
        binary_path = None
        build_turn = self.history.last_from(Role.COMPILER)
        if build_turn is not None and protocol.is_compile_success(build_turn.text):
            binary_path = protocol.read_field(build_turn.text, protocol.DLL_PATH)

        return WorkflowResult(
            workflow_id=self.workflow_id,
            outcome=decision.outcome,
            reason=decision.reason,
            turns=list(self.history.turns()),
            audit=self._audit_since_start(),
            metrics=dict(self.metrics),
            binary_path=binary_path,
        )

    # =========================================================================
    # STATE
    # =========================================================================

    def save_state(self, filename: Optional[str] = None) -> str:
        """Save workflow transcript, outcome and metrics as JSON."""
        if filename is None:
            os.makedirs(self.sessions_dir, exist_ok=True)
            filename = os.path.join(self.sessions_dir, f"session_{self.workflow_id}.json")

        def serialize_turn(t: ConversationTurn) -> dict:
            return {
                "index": t.index,
                "author": t.author.author_name,
                "directive": t.directive,
                "target": t.target.author_name if t.target else None,
                "text": t.text,
            }

        audit = self._audit_since_start()
        state_data = {
            "workflow_id": self.workflow_id,
            "state": self.state.value,
            "outcome": self.result.outcome.value if self.result else None,
            "reason": self.result.reason if self.result else None,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "audit": {"compile_calls": audit.compile_calls, "execute_calls": audit.execute_calls},
            "binary_path": self.result.binary_path if self.result else None,
            "history": [serialize_turn(t) for t in self.history],
            "metrics": {k: asdict(v) for k, v in self.metrics.items()},
        }

        with open(filename, "w", encoding="utf-8") as f:
            json.dump(state_data, f, indent=2, default=str)
        logger.info(f"Session state saved to {filename}")
        return filename
