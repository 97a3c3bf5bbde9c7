"""
Repair Feedback Synthesizer
===========================

Watches Compiler, Executor and Validator turns for failure markers and
turns the most useful line of a failure into a short directive for the
generator. The same failure text is never sent twice in a row for a
category, so a stuck loop does not flood the conversation.
"""

import logging
import re
from threading import Lock
from typing import Dict, Optional, Tuple

from . import protocol
from .models import ConversationHistory, ConversationTurn, FailureCategory, Role

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 240

_CATEGORY_BY_ROLE = {
    Role.COMPILER: FailureCategory.COMPILE,
    Role.EXECUTOR: FailureCategory.EXECUTE,
    Role.VALIDATOR: FailureCategory.VALIDATE,
}

_FAILURE_MARKERS = {
    FailureCategory.COMPILE: protocol.COMPILATION_FAILED,
    FailureCategory.EXECUTE: protocol.EXECUTION_FAILED,
    FailureCategory.VALIDATE: protocol.VALIDATION_FAILED,
}

_LABELS: Tuple[str, ...] = (protocol.PRIMARY_ERROR, protocol.REASON)

_KEYWORDS: Dict[FailureCategory, Tuple[str, ...]] = {
    FailureCategory.COMPILE: ("error CS", ": error"),
    FailureCategory.EXECUTE: ("Unhandled exception", "Exception", "error"),
    FailureCategory.VALIDATE: (protocol.NEXT_ACTION, protocol.EVIDENCE),
}

_INSTRUCTIONS = {
    FailureCategory.COMPILE: "Fix this compiler error and resubmit the complete program",
    FailureCategory.EXECUTE: "The program failed at runtime; fix this and resubmit the complete program",
    FailureCategory.VALIDATE: "The output does not satisfy the request; address this and resubmit the complete program",
}

# Lines that carry no information on their own
_UNINFORMATIVE = {
    protocol.COMPILATION_FAILED, protocol.EXECUTION_FAILED, protocol.VALIDATION_FAILED,
    protocol.ERRORS, protocol.BUILD_OUTPUT, protocol.OUTPUT, protocol.STDERR,
}


def classify_failure(turn: ConversationTurn) -> Optional[FailureCategory]:
    """Failure category for a turn, or None when the turn is not a failure."""
    if turn.directive:
        return None
    category = _CATEGORY_BY_ROLE.get(turn.author)
    if category is None:
        return None
    if _FAILURE_MARKERS[category] not in turn.text:
        return None
    if category == FailureCategory.VALIDATE and protocol.is_validation_success(turn.text):
        return None
    return category


def _informative(line: str) -> bool:
    stripped = line.strip()
    if not stripped or stripped in _UNINFORMATIVE:
        return False
    return not stripped.startswith((protocol.APP_MODEL, protocol.EXIT_CODE))


def extract_failure_line(text: str, category: FailureCategory) -> Optional[str]:
    """Labeled line first, then a category keyword, then the first informative line."""
    for label in _LABELS:
        value = protocol.read_field(text, label)
        if value:
            return value

    lines = text.splitlines()
    for keyword in _KEYWORDS[category]:
        for line in lines:
            if keyword in line and _informative(line):
                return line.strip()

    for line in lines:
        if _informative(line):
            return line.strip()
    return None


def normalize_failure_text(text: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    collapsed = re.sub(r"\s+", " ", text).strip()
    if len(collapsed) > max_length:
        collapsed = collapsed[:max(0, max_length - 3)].rstrip() + "..."
    return collapsed


class RepairFeedbackSynthesizer:
    """Builds de-duplicated repair directives from failing turns."""

    def __init__(self, max_length: int = DEFAULT_MAX_LENGTH):
        self.max_length = max_length
        self._last_by_category: Dict[FailureCategory, str] = {}
        self._lock = Lock()

    def synthesize(self, turn: ConversationTurn) -> Optional[str]:
        """
        Directive text for a failing turn.

        Returns None when the turn is not a failure, has nothing to quote,
        or repeats the last failure of its category.
        """
        category = classify_failure(turn)
        if category is None:
            return None

        line = extract_failure_line(turn.text, category)
        if not line:
            return None
        normalized = normalize_failure_text(line, self.max_length)

        with self._lock:
            if self._last_by_category.get(category) == normalized:
                logger.debug(f"Suppressing repeated {category.value} directive")
                return None
            self._last_by_category[category] = normalized

        directive = (
            f"{protocol.REPAIR_DIRECTIVE} [{category.value}] {_INSTRUCTIONS[category]}: {normalized}"
        )
        logger.info(directive)
        return directive

    def inject(self, history: ConversationHistory, turn: ConversationTurn) -> Optional[ConversationTurn]:
        """Synthesize and append the directive for turn to history."""
        text = self.synthesize(turn)
        if text is None:
            return None
        return history.append(Role.MANAGER, text, directive=True, target=Role.GENERATOR)

    def last_failure(self, category: FailureCategory) -> Optional[str]:
        with self._lock:
            return self._last_by_category.get(category)
