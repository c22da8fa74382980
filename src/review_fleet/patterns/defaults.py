"""Built-in detection patterns."""

from __future__ import annotations

from .models import DetectionPatterns

ERROR_SIGNATURES = [
    r"rate.limit",
    r"\b429\b",
    r"quota.exceeded",
    r"panic:",
    r"SIGSEGV",
    r"\bkilled\b",
    r"unauthorized",
    r"invalid.*key",
    r"connection refused",
    r"timed out",
    r"context.*exceeded",
    r"token.*limit",
]

EXTERNAL_PROMPTS = [
    r"CONFLICT.*Merge conflict",
    r"Please enter.*commit message",
    r"Enter passphrase",
    r"Password:",
    r"\(yes/no\)",
    r"\(yes/no/\[fingerprint\]\)",
    r"error: cannot pull with rebase",
    r"Username for",
    r"gh auth login",
    r"fatal: could not read",
    r"Permission denied",
    r"Are you sure you want to continue connecting",
    r"Host key verification failed",
    r"Authentication failed",
    r"Error: authentication required",
    r"npm login",
    r"Enter OTP",
    r"Two-factor authentication",
]

HIGH_RISK_KEYWORDS = [
    "password",
    "passphrase",
    "credential",
    "auth",
    "token",
    "otp",
    "two-factor",
    "permission denied",
    "authentication",
]

MEDIUM_RISK_KEYWORDS = [
    "conflict",
    "merge",
    "rebase",
    "overwrite",
    "delete",
    "host key",
    "fingerprint",
    "yes/no",
]

QUESTION_PATTERNS = [
    r"Should I",
    r"Do you want",
    r"Would you like",
    r"Please confirm",
    r"Choose.*:",
    r"Which.*\?",
    r"What.*\?",
    r"How should",
    r"\[y/N\]",
    r"\[Y/n\]",
    r"Enter.*:",
    r"Press.*to",
]

OPTION_PATTERNS = [
    r"^\s*[a-z]\)",
    r"^\s*[0-9]+\.",
    r"^\s*-\s+[A-Z]",
]

PROMPT_MARKERS = ["claude> ", "> ", "❯ "]

THINKING_GLYPHS = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


def default_patterns() -> DetectionPatterns:
    return DetectionPatterns(
        id="default",
        error_signatures=list(ERROR_SIGNATURES),
        external_prompts=list(EXTERNAL_PROMPTS),
        high_risk_keywords=list(HIGH_RISK_KEYWORDS),
        medium_risk_keywords=list(MEDIUM_RISK_KEYWORDS),
        question_patterns=list(QUESTION_PATTERNS),
        option_patterns=list(OPTION_PATTERNS),
        prompt_markers=list(PROMPT_MARKERS),
        thinking_glyphs=THINKING_GLYPHS,
    )


__all__ = ["default_patterns"]
