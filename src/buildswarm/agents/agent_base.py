"""
Agent Base Module for BuildSwarm
================================

Shared infrastructure for the role agents: the LLM client (OpenAI-compatible
or Ollama endpoints via requests), the AgentError type, response cleanup
helpers and the mapping from conversation history to chat messages.

Usage:
    from buildswarm.agents.agent_base import Agent, LLMClient

    class MyAgent(Agent):
        role = Role.VALIDATOR

        def respond(self, history):
            return self.llm.chat(self.build_messages(history))
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import requests

from ..config import ModelSettings
from ..models import ConversationHistory, Role

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], None]


class AgentError(Exception):
    """Custom exception for agent errors with error codes."""

    # Error codes
    ERR_INVALID_INPUT = "INVALID_INPUT"
    ERR_LLM_TIMEOUT = "LLM_TIMEOUT"
    ERR_LLM_ERROR = "LLM_ERROR"
    ERR_PARSE_ERROR = "PARSE_ERROR"
    ERR_INTERNAL = "INTERNAL_ERROR"

    def __init__(self, code: str, message: str, details: dict = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class LLMClient:
    """Chat completions against an OpenAI-compatible or Ollama endpoint."""

    def __init__(self, settings: ModelSettings, retries: int = 2):
        self.settings = settings
        self.retries = retries

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = None,
        max_tokens: int = None,
        on_text: Optional[TextCallback] = None,
    ) -> str:
        """
        Make API call to LLM with retry logic.

        Args:
            messages: List of {"role": str, "content": str}
            temperature: Override default temperature
            max_tokens: Override default max_tokens
            on_text: When given, the reply is streamed and on_text receives
                the accumulated text after every chunk

        Returns:
            Response content string

        Raises:
            AgentError on failure
        """
        temp = temperature if temperature is not None else self.settings.temperature
        tokens = max_tokens if max_tokens is not None else self.settings.max_tokens

        for attempt in range(self.retries + 1):
            try:
                if self.settings.api_type == "ollama":
                    content = self._call_ollama(messages, temp, tokens, on_text)
                else:
                    content = self._call_openai(messages, temp, tokens, on_text)
                if not content or not content.strip():
                    raise AgentError(AgentError.ERR_LLM_ERROR, "LLM returned empty response")
                return content

            except requests.exceptions.Timeout:
                if attempt < self.retries:
                    logger.warning(f"LLM timeout, retrying ({attempt + 1}/{self.retries})")
                    continue
                raise AgentError(
                    AgentError.ERR_LLM_TIMEOUT,
                    f"LLM request timed out after {self.settings.timeout}s",
                )
            except requests.exceptions.RequestException as e:
                if attempt < self.retries:
                    logger.warning(f"LLM request failed ({e}), retrying ({attempt + 1}/{self.retries})")
                    continue
                raise AgentError(AgentError.ERR_LLM_ERROR, f"LLM request failed: {e}")

        raise AgentError(AgentError.ERR_INTERNAL, "LLM call loop exited without a result")

    def _call_openai(self, messages: list, temperature: float, max_tokens: int,
                     on_text: Optional[TextCallback]) -> str:
        """Call OpenAI-compatible API (LM Studio, vLLM, etc.)"""
        url = f"{self.settings.url.rstrip('/')}/chat/completions"
        payload = {
            "model": self.settings.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": self.settings.top_p,
            "stream": on_text is not None,
        }

        response = requests.post(url, json=payload, timeout=self.settings.timeout,
                                 stream=on_text is not None)
        response.raise_for_status()

        if on_text is None:
            try:
                data = response.json()
            except ValueError as e:
                raise AgentError(AgentError.ERR_PARSE_ERROR, f"Invalid JSON from LLM: {e}")
            return data.get("choices", [{}])[0].get("message", {}).get("content", "")

        text = ""
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data:"):
                continue
            data_str = line[len("data:"):].strip()
            if data_str == "[DONE]":
                break
            try:
                chunk = json.loads(data_str)
            except ValueError:
                logger.debug(f"Skipping malformed stream chunk: {data_str[:80]}")
                continue
            delta = chunk.get("choices", [{}])[0].get("delta", {}).get("content") or ""
            if delta:
                text += delta
                on_text(text)
        return text

    def _call_ollama(self, messages: list, temperature: float, max_tokens: int,
                     on_text: Optional[TextCallback]) -> str:
        """Call Ollama API."""
        url = self.settings.url.replace("/v1", "").rstrip("/")
        payload = {
            "model": self.settings.model,
            "messages": messages,
            "stream": on_text is not None,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
                "top_p": self.settings.top_p,
            },
        }

        response = requests.post(f"{url}/api/chat", json=payload, timeout=self.settings.timeout,
                                 stream=on_text is not None)
        response.raise_for_status()

        if on_text is None:
            try:
                data = response.json()
            except ValueError as e:
                raise AgentError(AgentError.ERR_PARSE_ERROR, f"Invalid JSON from LLM: {e}")
            return data.get("message", {}).get("content", "")

        text = ""
        for line in response.iter_lines(decode_unicode=True):
            if not line:
                continue
            try:
                chunk = json.loads(line)
            except ValueError:
                logger.debug(f"Skipping malformed stream chunk: {line[:80]}")
                continue
            delta = chunk.get("message", {}).get("content") or ""
            if delta:
                text += delta
                on_text(text)
            if chunk.get("done"):
                break
        return text


# =============================================================================
# UTILITIES
# =============================================================================

def clean_response(response: str) -> str:
    """Remove <think>...</think> reasoning blocks and surrounding whitespace."""
    response = re.sub(r"<think>.*?</think>", "", response, flags=re.DOTALL)
    return response.strip()


def extract_code_block(text: str, language: str = "csharp") -> Optional[str]:
    """Extract code from markdown code block."""
    pattern = rf"```{re.escape(language)}\s*(.*?)```"
    match = re.search(pattern, text, re.DOTALL | re.IGNORECASE)
    if match:
        return match.group(1).strip()

    # Try without language specifier
    match = re.search(r"```\s*\n(.*?)```", text, re.DOTALL)
    if match:
        return match.group(1).strip()

    return None


def history_to_messages(history: ConversationHistory, role: Role,
                        system_prompt: str) -> List[Dict[str, str]]:
    """
    Group-chat transcript as chat messages from one role's point of view.

    The role's own turns become assistant messages; everything else is a
    user message prefixed with its author.
    """
    messages = [{"role": "system", "content": system_prompt}]
    for turn in history:
        if turn.author == role and not turn.directive:
            messages.append({"role": "assistant", "content": turn.text})
        else:
            prefix = turn.author.author_name
            if turn.directive and turn.target is not None:
                prefix = f"{prefix} -> {turn.target.author_name}"
            messages.append({"role": "user", "content": f"[{prefix}]\n{turn.text}"})
    return messages


# =============================================================================
# AGENT INTERFACE
# =============================================================================

class Agent(ABC):
    """
    A participant in the build conversation.

    respond() receives the full read-only history and returns the text of
    this role's next turn. Raising AgentError marks the turn as failed.
    """

    role: Role = Role.MANAGER

    def __init__(self, name: Optional[str] = None):
        self.name = name or self.role.author_name
        self.on_text: Optional[TextCallback] = None

    @abstractmethod
    def respond(self, history: ConversationHistory) -> str:
        pass


class LLMAgent(Agent):
    """Agent whose reply comes from an LLM given the transcript."""

    system_prompt: str = "You are a helpful assistant."

    def __init__(self, llm: LLMClient, name: Optional[str] = None):
        super().__init__(name)
        self.llm = llm

    def build_messages(self, history: ConversationHistory) -> List[Dict[str, str]]:
        return history_to_messages(history, self.role, self.system_prompt)

    def respond(self, history: ConversationHistory) -> str:
        response = self.llm.chat(self.build_messages(history), on_text=self.on_text)
        return self.postprocess(clean_response(response))

    def postprocess(self, response: str) -> str:
        return response
