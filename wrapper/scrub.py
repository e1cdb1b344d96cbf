"""
Regex scrubbing for redacting secrets from log lines.

CLI command lines carry the gateway token and provider API keys as
arguments, and onboarding output may echo them back. Everything that gets
printed or written to the audit log goes through this module first.
"""

import re
from typing import Any

REDACTED = "***REDACTED***"

# Arguments whose following argv element is a secret
SECRET_FLAGS = {
    "gateway.auth.token",
    "--token",
    "--gateway-token",
    "--openai-api-key",
    "--anthropic-api-key",
    "--openrouter-api-key",
    "--ai-gateway-api-key",
    "--moonshot-api-key",
    "--kimi-code-api-key",
    "--gemini-api-key",
    "--zai-api-key",
    "--minimax-api-key",
    "--synthetic-api-key",
    "--opencode-zen-api-key",
}

BUILTIN_RULES = [
    {
        "id": "api-key-sk",
        "pattern": r"sk-[A-Za-z0-9_-]{20,}",
        "replacement": "sk-" + REDACTED,
    },
    {
        "id": "bearer-token",
        "pattern": r"(?i)(Bearer\s+)[A-Za-z0-9_\-.]{20,}",
        "replacement": r"\1" + REDACTED,
    },
    {
        "id": "secret-flag-value",
        "pattern": r"(--(?:gateway-)?token|--[a-z-]+-api-key)(\s+|=)\S+",
        "replacement": r"\1\2" + REDACTED,
    },
    {
        "id": "json-secret-field",
        "pattern": r'(?i)("(?:token|botToken|appToken|apiKey)"\s*:\s*")[^"]{8,}(")',
        "replacement": r"\1" + REDACTED + r"\2",
    },
    {
        "id": "slack-token",
        "pattern": r"xox[abpr]-[A-Za-z0-9-]{10,}|xapp-[A-Za-z0-9-]{10,}",
        "replacement": REDACTED,
    },
    {
        "id": "telegram-bot-token",
        "pattern": r"\b\d{6,12}:[A-Za-z0-9_-]{30,}\b",
        "replacement": REDACTED,
    },
]

_COMPILED = [(re.compile(rule["pattern"]), rule["replacement"]) for rule in BUILTIN_RULES]


def scrub(text: str) -> str:
    """Apply all scrub rules to a string."""
    if not text:
        return text
    for pattern, replacement in _COMPILED:
        text = pattern.sub(replacement, text)
    return text


def scrub_dict(d: Any) -> Any:
    """Recursively scrub all string values in a dict/list."""
    if isinstance(d, str):
        return scrub(d)
    if isinstance(d, dict):
        return {k: scrub_dict(v) for k, v in d.items()}
    if isinstance(d, list):
        return [scrub_dict(item) for item in d]
    return d


def scrub_argv(argv: list[str]) -> str:
    """Render an argv for logging with secret flag values masked."""
    out = []
    mask_next = False
    for arg in argv:
        if mask_next:
            out.append(REDACTED)
            mask_next = False
            continue
        out.append(scrub(arg))
        mask_next = arg in SECRET_FLAGS
    return " ".join(out)
