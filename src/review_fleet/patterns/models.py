"""Pattern set models for session state detection."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator


class DetectionPatterns(BaseModel):
    """Regular expressions and markers used to classify agent output."""

    id: str = Field(default="default", description="Identifier of the pattern set.")
    error_signatures: list[str] = Field(
        default_factory=list,
        description="Case-insensitive regexes that mark a session as errored.",
    )
    external_prompts: list[str] = Field(
        default_factory=list,
        description="Regexes for prompts raised by tools rather than the agent.",
    )
    high_risk_keywords: list[str] = Field(default_factory=list)
    medium_risk_keywords: list[str] = Field(default_factory=list)
    question_patterns: list[str] = Field(
        default_factory=list,
        description="Case-insensitive regexes for free-text agent questions.",
    )
    option_patterns: list[str] = Field(default_factory=list)
    prompt_markers: list[str] = Field(
        default_factory=list,
        description="Suffixes indicating the output sits at an interactive prompt.",
    )
    thinking_glyphs: str = Field(default="", description="Spinner characters shown while thinking.")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Pattern set id must not be empty")
        return normalized

    @field_validator(
        "error_signatures",
        "external_prompts",
        "question_patterns",
        "option_patterns",
        mode="before",
    )
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("Pattern fields must be sequences of strings")

    @field_validator("error_signatures", "external_prompts", "question_patterns", "option_patterns")
    @classmethod
    def _compile_check(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid regular expression {pattern!r}: {exc}") from exc
        return value

    def merged_with(self, override: "DetectionPatterns") -> "DetectionPatterns":
        """Return a copy where non-empty fields of ``override`` replace ours."""

        data = self.model_dump()
        for name, value in override.model_dump(exclude={"id"}).items():
            if value:
                data[name] = value
        data["id"] = override.id
        return DetectionPatterns.model_validate(data)


__all__ = ["DetectionPatterns"]
