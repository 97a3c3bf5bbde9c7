"""
Executor agent: runs the binary named by the latest successful build.
"""

from .. import protocol
from ..execution import ExecutionRunner
from ..models import ConversationHistory, Role
from .agent_base import Agent


class ExecutorAgent(Agent):
    role = Role.EXECUTOR

    def __init__(self, runner: ExecutionRunner, name: str = None):
        super().__init__(name)
        self.runner = runner

    def respond(self, history: ConversationHistory) -> str:
        build_turn = history.last_from(Role.COMPILER)
        if build_turn is None or not protocol.is_compile_success(build_turn.text):
            return f"{protocol.WAITING_FOR_BINARY}: the latest build did not produce a binary."

        binary_path = protocol.read_field(build_turn.text, protocol.DLL_PATH)
        if not binary_path:
            return f"{protocol.WAITING_FOR_BINARY}: the latest build did not name a {protocol.DLL_PATH} path."

        result = self.runner.run(binary_path, protocol.parse_app_model(build_turn.text))
        return protocol.format_execution_result(result)
