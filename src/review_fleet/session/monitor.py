"""Session state classification.

Everything here is pure: text and counters in, classified state out. The
subprocess boundary lives in the driver; the supervisor feeds observations in.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..patterns import DetectionPatterns, default_patterns
from .stream import find_ask_user_question, find_result, parse_events, plain_text

HISTORY_LIMIT = 10
WAITING_SAMPLES = 3
STALLED_SAMPLES = 5
AT_PROMPT_MAX_VELOCITY = 1.0
THINKING_MAX_VELOCITY = 10.0
ERROR_SCAN_LINES = 20
PROMPT_SCAN_LINES = 20
QUESTION_SCAN_LINES = 50
UNKNOWN_CONTEXT_LINES = 10
MAX_OPTIONS = 5


class SessionState(str, Enum):
    GENERATING = "generating"
    THINKING = "thinking"
    WAITING = "waiting"
    STALLED = "stalled"
    COMPLETE = "complete"
    ERROR = "error"
    UNKNOWN = "unknown"


class WaitReason(str, Enum):
    ASK_USER_QUESTION = "ask_user_question"
    EXTERNAL_PROMPT = "external_prompt"
    AGENT_QUESTION_TEXT = "agent_question_text"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class Observation:
    """One poll's worth of signal for a single session."""

    output: str
    alive: bool = True
    driver_state: str = "running"
    idle_seconds: float = 0.0
    velocity: float = 0.0


@dataclass(slots=True)
class SessionHistory:
    """Recent raw samples plus the stall-escalation counter for one session."""

    samples: deque[SessionState] = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))
    effective: SessionState = SessionState.UNKNOWN
    stall_attempts: int = 0

    def consecutive(self, state: SessionState) -> int:
        count = 0
        for sample in reversed(self.samples):
            if sample is not state:
                break
            count += 1
        return count


@dataclass(slots=True)
class WaitInfo:
    reason: WaitReason
    context: str
    options: list[str] = field(default_factory=list)
    risk_level: str = "low"
    detected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    questions: list[dict[str, Any]] = field(default_factory=list)
    tool_use_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "reason": self.reason.value,
            "context": self.context,
            "options": list(self.options),
            "risk_level": self.risk_level,
            "detected_at": self.detected_at,
        }
        if self.questions:
            payload["questions"] = self.questions
        if self.tool_use_id:
            payload["tool_use_id"] = self.tool_use_id
        return payload


def output_velocity(previous_size: int, previous_time: float | None, size: int, now: float) -> float:
    """Characters per second since the previous sample."""

    if previous_time is None or now <= previous_time:
        return 0.0
    return max(0, size - previous_size) / (now - previous_time)


def _tail_lines(text: str, count: int) -> list[str]:
    return text.splitlines()[-count:]


def matches_error(text: str, patterns: DetectionPatterns) -> str | None:
    tail = "\n".join(_tail_lines(text, ERROR_SCAN_LINES))
    for pattern in patterns.error_signatures:
        if re.search(pattern, tail, re.IGNORECASE):
            return pattern
    return None


def is_at_prompt(text: str, patterns: DetectionPatterns) -> bool:
    lines = text.rstrip("\r\n").splitlines()
    if not lines:
        return False
    last = lines[-1]
    return any(
        last.endswith(marker) or last.rstrip() == marker.rstrip() for marker in patterns.prompt_markers
    )


def has_thinking_indicators(text: str, patterns: DetectionPatterns) -> bool:
    tail = text[-400:]
    return any(glyph in tail for glyph in patterns.thinking_glyphs)


def detect_raw_state(
    observation: Observation,
    patterns: DetectionPatterns | None = None,
    *,
    stall_threshold: float = 30.0,
) -> SessionState:
    """Classify a single observation, most decisive signal first."""

    patterns = patterns or default_patterns()
    text = observation.output

    if find_result(parse_events(text)) is not None:
        return SessionState.COMPLETE
    if not observation.alive:
        return SessionState.ERROR
    if matches_error(plain_text(text), patterns):
        return SessionState.ERROR
    if observation.idle_seconds > stall_threshold:
        return SessionState.STALLED
    if observation.driver_state == "waiting":
        return SessionState.WAITING
    if is_at_prompt(text, patterns) and observation.velocity < AT_PROMPT_MAX_VELOCITY:
        return SessionState.WAITING
    if has_thinking_indicators(text, patterns) and observation.velocity < THINKING_MAX_VELOCITY:
        return SessionState.THINKING
    if observation.velocity > 0:
        return SessionState.GENERATING
    return SessionState.THINKING


def apply_hysteresis(history: SessionHistory, raw: SessionState) -> SessionState:
    """Record ``raw`` and return the effective state.

    Waiting and stalled only take effect after enough consecutive samples.
    """

    history.samples.append(raw)
    previous = history.effective

    match raw:
        case SessionState.ERROR | SessionState.COMPLETE:
            effective = raw
        case SessionState.WAITING:
            effective = raw if history.consecutive(raw) >= WAITING_SAMPLES else previous
        case SessionState.STALLED:
            effective = raw if history.consecutive(raw) >= STALLED_SAMPLES else previous
        case SessionState.GENERATING | SessionState.THINKING | SessionState.UNKNOWN:
            effective = raw
        case _:
            raise ValueError(f"Unhandled session state: {raw!r}")

    history.effective = effective
    return effective


def classify_risk(text: str, patterns: DetectionPatterns) -> str:
    lowered = text.lower()
    if any(keyword in lowered for keyword in patterns.high_risk_keywords):
        return "high"
    if any(keyword in lowered for keyword in patterns.medium_risk_keywords):
        return "medium"
    return "low"


def extract_options(lines: list[str], patterns: DetectionPatterns) -> list[str]:
    options: list[str] = []
    for line in lines:
        if any(re.search(pattern, line) for pattern in patterns.option_patterns):
            options.append(line.strip())
            if len(options) >= MAX_OPTIONS:
                break
    return options


def _ask_user_question_info(questions: list[dict[str, Any]], tool_use_id: str | None) -> WaitInfo:
    first = questions[0] if questions else {}
    options = [
        str(option.get("label", option)) if isinstance(option, dict) else str(option)
        for option in (first.get("options") or [])
    ]
    context = "\n".join(str(question.get("question", "")) for question in questions).strip()
    return WaitInfo(
        reason=WaitReason.ASK_USER_QUESTION,
        context=context,
        options=options[:MAX_OPTIONS],
        questions=questions,
        tool_use_id=tool_use_id,
    )


def detect_wait_reason(output: str, patterns: DetectionPatterns | None = None) -> WaitInfo:
    """Explain why a waiting session is waiting, in strict priority order."""

    patterns = patterns or default_patterns()

    ask = find_ask_user_question(parse_events(output))
    if ask is not None:
        return _ask_user_question_info(ask["questions"], ask["tool_use_id"])

    lines = plain_text(output).splitlines()

    for line in reversed(lines[-PROMPT_SCAN_LINES:]):
        for pattern in patterns.external_prompts:
            if re.search(pattern, line):
                return WaitInfo(
                    reason=WaitReason.EXTERNAL_PROMPT,
                    context=line.strip(),
                    risk_level=classify_risk(line, patterns),
                )

    window = lines[-QUESTION_SCAN_LINES:]
    for index in range(len(window) - 1, -1, -1):
        line = window[index]
        if any(re.search(pattern, line, re.IGNORECASE) for pattern in patterns.question_patterns):
            start = max(0, index - 5)
            context_lines = window[start : index + 3]
            return WaitInfo(
                reason=WaitReason.AGENT_QUESTION_TEXT,
                context="\n".join(context_lines).strip(),
                options=extract_options(window[start:], patterns),
            )

    return WaitInfo(
        reason=WaitReason.UNKNOWN,
        context="\n".join(lines[-UNKNOWN_CONTEXT_LINES:]).strip(),
    )


__all__ = [
    "Observation",
    "SessionHistory",
    "SessionState",
    "WaitInfo",
    "WaitReason",
    "apply_hysteresis",
    "classify_risk",
    "detect_raw_state",
    "detect_wait_reason",
    "extract_options",
    "has_thinking_indicators",
    "is_at_prompt",
    "matches_error",
    "output_velocity",
]
