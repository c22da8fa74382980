"""Parsing for agent NDJSON (stream-json) output."""

from __future__ import annotations

import json
from typing import Any, Iterable


def parse_events(text: str) -> list[dict[str, Any]]:
    """Return every JSON object line in ``text``; other lines are ignored."""

    events: list[dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    message = event.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def session_id_of(events: Iterable[dict[str, Any]]) -> str | None:
    for event in events:
        if event.get("type") == "system" and event.get("subtype") == "init":
            return event.get("session_id")
    return None


def find_result(events: Iterable[dict[str, Any]]) -> dict[str, Any] | None:
    """Summarize the final ``result`` event, if the agent emitted one."""

    result = None
    for event in events:
        if event.get("type") == "result":
            result = event
    if result is None:
        return None
    status = result.get("subtype") or ("error" if result.get("is_error") else "success")
    return {
        "status": status,
        "is_error": bool(result.get("is_error")),
        "duration_ms": result.get("duration_ms"),
        "session_id": result.get("session_id"),
        "cost_usd": result.get("total_cost_usd", result.get("cost_usd")),
        "text": result.get("result"),
    }


def has_completion_marker(text: str) -> bool:
    return find_result(parse_events(text)) is not None


def find_ask_user_question(events: Iterable[dict[str, Any]]) -> dict[str, Any] | None:
    """Return the latest unanswered ``AskUserQuestion`` tool call."""

    pending: dict[str, Any] | None = None
    for event in events:
        kind = event.get("type")
        for block in _content_blocks(event):
            if (
                kind == "assistant"
                and block.get("type") == "tool_use"
                and block.get("name") == "AskUserQuestion"
            ):
                payload = block.get("input") or {}
                pending = {
                    "tool_use_id": block.get("id"),
                    "questions": list(payload.get("questions") or []),
                }
            elif (
                kind == "user"
                and block.get("type") == "tool_result"
                and pending is not None
                and block.get("tool_use_id") == pending["tool_use_id"]
            ):
                pending = None
    return pending


def plain_text(text: str) -> str:
    """Human-readable text: non-JSON lines plus assistant text blocks."""

    lines: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("{"):
            try:
                event = json.loads(stripped)
            except json.JSONDecodeError:
                lines.append(line)
                continue
            if isinstance(event, dict) and event.get("type") == "assistant":
                for block in _content_blocks(event):
                    if block.get("type") == "text" and block.get("text"):
                        lines.extend(str(block["text"]).splitlines())
            continue
        lines.append(line)
    return "\n".join(lines)


__all__ = [
    "find_ask_user_question",
    "find_result",
    "has_completion_marker",
    "parse_events",
    "plain_text",
    "session_id_of",
]
