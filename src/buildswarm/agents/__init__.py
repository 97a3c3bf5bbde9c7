"""Role agents for the build conversation."""

from typing import Dict, TYPE_CHECKING

from ..config import SwarmConfig
from ..models import Role
from .agent_base import Agent, AgentError, LLMAgent, LLMClient
from .compiler_agent import CompilerAgent
from .executor_agent import ExecutorAgent
from .generator_agent import GeneratorAgent
from .validator_agent import ValidatorAgent

if TYPE_CHECKING:
    from ..workflow_manager import WorkflowContext


def create_default_agents(config: SwarmConfig, context: "WorkflowContext") -> Dict[Role, Agent]:
    """LLM-backed generator and validator, tool-backed compiler and executor."""
    return {
        Role.GENERATOR: GeneratorAgent(LLMClient(config.model_for(Role.GENERATOR))),
        Role.COMPILER: CompilerAgent(context.compiler),
        Role.EXECUTOR: ExecutorAgent(context.executor),
        Role.VALIDATOR: ValidatorAgent(LLMClient(config.model_for(Role.VALIDATOR))),
    }


__all__ = [
    "Agent",
    "AgentError",
    "LLMAgent",
    "LLMClient",
    "CompilerAgent",
    "ExecutorAgent",
    "GeneratorAgent",
    "ValidatorAgent",
    "create_default_agents",
]
