from __future__ import annotations

import json

import pytest
import requests

from buildswarm import protocol
from buildswarm.agents import (
    AgentError, CompilerAgent, ExecutorAgent, GeneratorAgent, LLMClient, ValidatorAgent,
)
from buildswarm.agents.agent_base import clean_response, extract_code_block, history_to_messages
from buildswarm.config import ModelSettings
from buildswarm.models import ConversationHistory, Role


class FakeResponse:
    def __init__(self, payload=None, lines=None, status=200):
        self.payload = payload
        self.lines = lines or []
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.exceptions.HTTPError(f"{self.status} Server Error")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload

    def iter_lines(self, decode_unicode=False):
        return iter(self.lines)


class RecordingPost:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, json=None, timeout=None, stream=False):
        self.calls.append({"url": url, "json": json, "timeout": timeout, "stream": stream})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def openai_settings() -> ModelSettings:
    return ModelSettings(url="http://localhost:1234/v1", model="coder", api_type="openai", timeout=5)


def ollama_settings() -> ModelSettings:
    return ModelSettings(url="http://localhost:11434/v1", model="qwen", api_type="ollama", timeout=5)


def test_openai_chat_returns_message_content(monkeypatch) -> None:
    post = RecordingPost(FakeResponse({"choices": [{"message": {"content": "hello"}}]}))
    monkeypatch.setattr(requests, "post", post)

    reply = LLMClient(openai_settings()).chat([{"role": "user", "content": "hi"}], temperature=0.0)

    assert reply == "hello"
    call = post.calls[0]
    assert call["url"] == "http://localhost:1234/v1/chat/completions"
    assert call["json"]["temperature"] == 0.0
    assert call["json"]["stream"] is False


def test_openai_stream_reports_accumulated_text(monkeypatch) -> None:
    chunks = [
        "data: " + json.dumps({"choices": [{"delta": {"content": "Console"}}]}),
        "",
        "data: " + json.dumps({"choices": [{"delta": {"content": ".WriteLine"}}]}),
        "data: [DONE]",
    ]
    monkeypatch.setattr(requests, "post", RecordingPost(FakeResponse(lines=chunks)))
    seen = []

    reply = LLMClient(openai_settings()).chat([], on_text=seen.append)

    assert reply == "Console.WriteLine"
    assert seen == ["Console", "Console.WriteLine"]


def test_ollama_chat_strips_v1_suffix(monkeypatch) -> None:
    post = RecordingPost(FakeResponse({"message": {"content": "ok"}}))
    monkeypatch.setattr(requests, "post", post)

    assert LLMClient(ollama_settings()).chat([], max_tokens=99) == "ok"
    call = post.calls[0]
    assert call["url"] == "http://localhost:11434/api/chat"
    assert call["json"]["options"]["num_predict"] == 99


def test_ollama_stream_stops_at_done(monkeypatch) -> None:
    lines = [
        json.dumps({"message": {"content": "VALIDATION_"}, "done": False}),
        "not json",
        json.dumps({"message": {"content": "SUCCESS"}, "done": True}),
        json.dumps({"message": {"content": "ignored"}, "done": False}),
    ]
    monkeypatch.setattr(requests, "post", RecordingPost(FakeResponse(lines=lines)))
    seen = []

    reply = LLMClient(ollama_settings()).chat([], on_text=seen.append)

    assert reply == "VALIDATION_SUCCESS"
    assert seen[-1] == "VALIDATION_SUCCESS"


def test_timeouts_are_retried_then_reported(monkeypatch) -> None:
    post = RecordingPost(requests.exceptions.Timeout("slow"))
    monkeypatch.setattr(requests, "post", post)

    with pytest.raises(AgentError) as excinfo:
        LLMClient(openai_settings(), retries=2).chat([])

    assert excinfo.value.code == AgentError.ERR_LLM_TIMEOUT
    assert len(post.calls) == 3


def test_transient_failure_recovers(monkeypatch) -> None:
    post = RecordingPost(
        requests.exceptions.ConnectionError("refused"),
        FakeResponse({"choices": [{"message": {"content": "second time"}}]}),
    )
    monkeypatch.setattr(requests, "post", post)

    assert LLMClient(openai_settings()).chat([]) == "second time"
    assert len(post.calls) == 2


def test_empty_reply_is_an_error(monkeypatch) -> None:
    monkeypatch.setattr(requests, "post", RecordingPost(FakeResponse({"choices": [{"message": {"content": "  "}}]})))

    with pytest.raises(AgentError) as excinfo:
        LLMClient(openai_settings()).chat([])

    assert excinfo.value.code == AgentError.ERR_LLM_ERROR


def test_response_helpers() -> None:
    assert clean_response("<think>plan</think>\n  answer ") == "answer"
    assert extract_code_block("```csharp\nint x = 1;\n```") == "int x = 1;"
    assert extract_code_block("```\nplain\n```") == "plain"
    assert extract_code_block("no code") is None


def test_history_maps_own_turns_to_assistant() -> None:
    history = ConversationHistory()
    history.append(Role.MANAGER, "Print 1")
    history.append(Role.GENERATOR, "```csharp\nConsole.WriteLine(1);\n```")
    history.append(Role.MANAGER, "REPAIR_DIRECTIVE [compile] fix", directive=True, target=Role.GENERATOR)

    messages = history_to_messages(history, Role.GENERATOR, "system")

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"].startswith("[WorkflowManager]")
    assert messages[3]["content"].startswith("[WorkflowManager -> CodeGenerator]")


class CannedLLM:
    def __init__(self, reply):
        self.reply = reply
        self.messages = None

    def chat(self, messages, temperature=None, max_tokens=None, on_text=None):
        self.messages = messages
        if on_text:
            on_text(self.reply)
        return self.reply


def test_generator_marks_code_ready() -> None:
    history = ConversationHistory()
    history.append(Role.MANAGER, "Print 1")
    llm = CannedLLM("```csharp\nConsole.WriteLine(1);\n```")

    reply = GeneratorAgent(llm).respond(history)

    assert reply.endswith(protocol.CODE_READY)
    assert llm.messages[0]["content"].startswith("You are CodeGenerator")


def test_generator_without_code_is_left_alone() -> None:
    reply = GeneratorAgent(CannedLLM("I need more details.")).respond(ConversationHistory())

    assert protocol.CODE_READY not in reply


def test_validator_without_verdict_counts_as_failure() -> None:
    reply = ValidatorAgent(CannedLLM("Looks\nplausible to me")).respond(ConversationHistory())

    assert reply.startswith(protocol.VALIDATION_FAILED)
    assert "Looks plausible to me" in reply


def test_validator_verdict_passes_through() -> None:
    verdict = f"{protocol.VALIDATION_SUCCESS}\n{protocol.EVIDENCE} 1 4 9"

    assert ValidatorAgent(CannedLLM(verdict)).respond(ConversationHistory()) == verdict


def test_streaming_callback_is_forwarded() -> None:
    agent = ValidatorAgent(CannedLLM(protocol.VALIDATION_SUCCESS))
    seen = []
    agent.on_text = seen.append

    agent.respond(ConversationHistory())

    assert seen == [protocol.VALIDATION_SUCCESS]


class Untouchable:
    def __getattr__(self, name):
        raise AssertionError(f"{name} should not be called")


def test_compiler_waits_for_generator_output() -> None:
    history = ConversationHistory()
    history.append(Role.MANAGER, "Print 1")

    assert CompilerAgent(Untouchable()).respond(history).startswith(protocol.WAITING_FOR_CODE)


def test_executor_waits_for_successful_build() -> None:
    history = ConversationHistory()
    history.append(Role.COMPILER, f"{protocol.COMPILATION_FAILED}\n{protocol.PRIMARY_ERROR} CS1002")

    assert ExecutorAgent(Untouchable()).respond(history).startswith(protocol.WAITING_FOR_BINARY)
