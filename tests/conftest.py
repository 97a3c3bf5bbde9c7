from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Callable, List, Optional, Union

import pytest

from buildswarm.agents.agent_base import Agent
from buildswarm.config import BuildSettings, ExecutionSettings
from buildswarm.models import ConversationHistory, Role
from buildswarm.process_runner import ProcessOutcome


BUILD_OK = ProcessOutcome(exit_code=0, stdout="Build succeeded.\n    0 Warning(s)\n    0 Error(s)\n")

def MISSING_SEMICOLON(call) -> ProcessOutcome:
    """dotnet build output for a missing ';', with paths inside the build directory."""
    source = os.path.join(call.cwd, "Program.cs")
    project = os.path.join(call.cwd, "App.csproj")
    return ProcessOutcome(
        exit_code=1,
        stdout=(
            "  Determining projects to restore...\n"
            f"{source}(3,44): error CS1002: ; expected [{project}]\n"
            "\n"
            "Build FAILED.\n"
        ),
    )


class FakeToolchain:
    """Stands in for ProcessRunner: fakes `dotnet build` and `dotnet App.dll`."""

    def __init__(
        self,
        build_outcome: Union[ProcessOutcome, Callable[[SimpleNamespace], ProcessOutcome]] = BUILD_OK,
        run_outcomes: Optional[List[ProcessOutcome]] = None,
    ):
        self.build_outcome = build_outcome
        self.run_outcomes = list(run_outcomes or [ProcessOutcome(exit_code=0, stdout="")])
        self.calls: List[SimpleNamespace] = []
        self.sources: List[str] = []
        self.project_files: List[str] = []
        self.global_json: List[str] = []

    @property
    def build_calls(self) -> List[SimpleNamespace]:
        return [c for c in self.calls if c.cmd[1:2] == ["build"]]

    @property
    def run_calls(self) -> List[SimpleNamespace]:
        return [c for c in self.calls if c.cmd[1:2] != ["build"]]

    def run(self, cmd, cwd=None, timeout=None, env=None, capture_stdout=True, capture_stderr=True):
        call = SimpleNamespace(
            cmd=list(cmd), cwd=cwd, timeout=timeout, env=env,
            capture_stdout=capture_stdout, capture_stderr=capture_stderr,
        )
        self.calls.append(call)

        if call.cmd[1:2] == ["build"]:
            with open(os.path.join(cwd, "Program.cs"), encoding="utf-8") as f:
                self.sources.append(f.read())
            with open(os.path.join(cwd, "App.csproj"), encoding="utf-8") as f:
                self.project_files.append(f.read())
            with open(os.path.join(cwd, "global.json"), encoding="utf-8") as f:
                self.global_json.append(f.read())

            outcome = self.build_outcome(call) if callable(self.build_outcome) else self.build_outcome
            if outcome.exit_code == 0:
                out_dir = os.path.join(cwd, "bin", "Release", "net10.0")
                os.makedirs(out_dir, exist_ok=True)
                for name in ("App.dll", "App.deps.json", "App.runtimeconfig.json"):
                    with open(os.path.join(out_dir, name), "w", encoding="utf-8") as f:
                        f.write("fake")
            return outcome

        if len(self.run_outcomes) > 1:
            return self.run_outcomes.pop(0)
        return self.run_outcomes[0]


class ScriptedAgent(Agent):
    """Replies from a script; the last reply repeats once the script runs out."""

    def __init__(self, role: Role, replies: Union[List[str], Callable[[ConversationHistory], str]]):
        self.role = role
        super().__init__()
        self.replies = replies
        self.seen_histories: List[int] = []

    def respond(self, history: ConversationHistory) -> str:
        self.seen_histories.append(len(history))
        if callable(self.replies):
            return self.replies(history)
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


@pytest.fixture
def build_settings(tmp_path) -> BuildSettings:
    return BuildSettings(artifacts_root=str(tmp_path / "GeneratedArtifacts"), sdk_version="10.0.103")


@pytest.fixture
def execution_settings() -> ExecutionSettings:
    return ExecutionSettings(timeout_seconds=3.0, gui_timeout_seconds=2.0)


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path, monkeypatch):
    # Keeps global.json lookup, logs and sessions inside the test directory
    monkeypatch.chdir(tmp_path)
