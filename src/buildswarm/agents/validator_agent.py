"""
Validator agent: judges whether the executed program satisfies the request.
"""

from .. import protocol
from ..models import Role
from .agent_base import LLMAgent

VALIDATOR_PROMPT = f"""You are CodeValidator, a strict QA engineer.

Compare the original request with the latest CodeExecutor report and decide
whether the program does what was asked.

If it does, reply with:
{protocol.VALIDATION_SUCCESS}
{protocol.EVIDENCE} <the output lines that prove it>

If it does not (wrong output, failed build or run, missing feature), reply with:
{protocol.VALIDATION_FAILED}
{protocol.REASON} <one sentence>
{protocol.EVIDENCE} <the output or error that shows it>
{protocol.NEXT_ACTION} <the concrete change the generator should make>

Rules:
- Only judge what the executor actually reported. No report, no success.
- GUI programs: "{protocol.UI_SESSION} STARTED" with {protocol.GUI_SMOKE_PASS} means the window came up.
- Console drawings must end with a "{protocol.RESULT_SUMMARY}" line describing what was rendered.
- Whitespace-only output ({protocol.WHITESPACE_OUTPUT_DETECTED}) is never a success.
"""


class ValidatorAgent(LLMAgent):
    role = Role.VALIDATOR
    system_prompt = VALIDATOR_PROMPT

    def postprocess(self, response: str) -> str:
        if protocol.VALIDATION_SUCCESS in response or protocol.VALIDATION_FAILED in response:
            return response
        # No verdict counts as a rejection so the loop keeps going
        reason = " ".join(response.split())[:200] or "validator gave no verdict"
        return f"{protocol.VALIDATION_FAILED}\n{protocol.REASON} {reason}"
