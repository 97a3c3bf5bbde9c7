"""
Compiler agent: hands the generator's latest message to CompileCode and
reports the real result.
"""

from .. import protocol
from ..compiler import Compiler
from ..models import ConversationHistory, Role
from .agent_base import Agent


class CompilerAgent(Agent):
    role = Role.COMPILER

    def __init__(self, compiler: Compiler, name: str = None):
        super().__init__(name)
        self.compiler = compiler

    def respond(self, history: ConversationHistory) -> str:
        source_turn = history.last_from(Role.GENERATOR)
        if source_turn is None or not source_turn.text.strip():
            return f"{protocol.WAITING_FOR_CODE}: no generator output to compile yet."
        if source_turn.text.startswith(protocol.AGENT_ERROR):
            return f"{protocol.WAITING_FOR_CODE}: the generator failed to respond."

        # Passed verbatim; the normalizer picks out manifest and code
        result = self.compiler.compile_payload(source_turn.text)
        return protocol.format_build_result(result)
