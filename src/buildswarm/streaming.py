"""
Streamed output accumulation.

Streaming clients report the full text produced so far; printing that
verbatim repeats everything already shown. StreamAccumulator keeps the last
text seen per role and hands out only the new suffix.
"""

from typing import Dict

from .models import Role


class StreamAccumulator:
    def __init__(self):
        self._last_seen: Dict[Role, str] = {}

    def delta(self, role: Role, text: str) -> str:
        """New text since the last update for role (all of it if the stream restarted)."""
        previous = self._last_seen.get(role, "")
        self._last_seen[role] = text
        if text.startswith(previous):
            return text[len(previous):]
        return text

    def reset(self, role: Role):
        self._last_seen.pop(role, None)

    def last_seen(self, role: Role) -> str:
        return self._last_seen.get(role, "")
