"""
Generator agent: writes the C# program and its build manifest.
"""

from ..models import Role
from .. import protocol
from ..execution import UI_TEST_MODE_ENV
from .agent_base import LLMAgent, extract_code_block

GENERATOR_PROMPT = f"""You are CodeGenerator, a senior C# developer.

You receive a program request, then feedback from the compiler, the executor
and the validator. On every turn output a complete, fresh solution:

1. One ```json block with the build manifest:
   {{
     "project": {{"targetFramework": "net10.0", "outputType": "Exe",
                  "useWindowsForms": false, "useWpf": false}},
     "packageReferences": [],
     "frameworkReferences": [],
     "references": []
   }}
2. One ```csharp block with the COMPLETE program (Program.cs).
3. The line {protocol.CODE_READY}.

Rules:
- When feedback arrives, fix exactly what it reports first. Prefer the
  {protocol.PRIMARY_ERROR}, {protocol.REASON}, {protocol.EVIDENCE} and {protocol.NEXT_ACTION} fields.
- The program must terminate on its own; render bounded animations, never loop forever.
- Use decimal or BigInteger when more than 15 significant digits are needed.
- Console drawing with cursor/window APIs must fall back to plain text when
  Console.IsOutputRedirected is true, and print a final "{protocol.RESULT_SUMMARY} ..." line.
- WinForms/WPF apps: set useWindowsForms/useWpf and a -windows target framework.
  When the environment variable {UI_TEST_MODE_ENV} is "1", close the main window
  after a few seconds.
- Output exactly one json block and one csharp block. No drafts, no explanations.
"""


class GeneratorAgent(LLMAgent):
    role = Role.GENERATOR
    system_prompt = GENERATOR_PROMPT

    def postprocess(self, response: str) -> str:
        if protocol.CODE_READY not in response and extract_code_block(response):
            response = f"{response}\n{protocol.CODE_READY}"
        return response
