"""Session class and provider taxonomy derivation.

Both functions are pure: they read only their arguments, so the sync engine
can call them once per session per pass and tests can pin every branch.
"""
from __future__ import annotations

import re

SESSION_CLASS_INTERACTIVE = "interactive"
SESSION_CLASS_BACKGROUND_CRON = "background_cron"
SESSION_CLASS_BACKGROUND_WORKFLOW = "background_workflow"
SESSION_CLASS_UNKNOWN = "unknown"

PROVIDER_UNKNOWN = "unknown"

INTERACTIVE_CHANNELS = frozenset(
    {
        "telegram",
        "discord",
        "slack",
        "whatsapp",
        "signal",
        "imessage",
        "sms",
        "matrix",
        "teams",
        "web",
        "webchat",
        "tui",
        "cli",
    }
)

INTERACTIVE_KINDS = frozenset({"chat", "direct", "dm", "group", "channel", "thread", "main"})

# First matching family wins; explicit `provider/model` prefixes are handled before this list.
_PROVIDER_FAMILIES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("anthropic", re.compile(r"claude|anthropic|opus|sonnet|haiku")),
    ("openai", re.compile(r"^(gpt|chatgpt|o1|o3|o4)\b|gpt-|codex|davinci|openai")),
    ("google", re.compile(r"gemini|gemma|palm|bison")),
    ("xai", re.compile(r"grok")),
    ("mistral", re.compile(r"mistral|mixtral|codestral|magistral")),
    ("meta", re.compile(r"llama")),
    ("deepseek", re.compile(r"deepseek")),
    ("qwen", re.compile(r"qwen")),
    ("moonshot", re.compile(r"kimi|moonshot")),
    ("zhipu", re.compile(r"glm")),
)


def _clean(value: str | None) -> str:
    return (value or "").strip().lower()


def _has_interactive_key(session_key: str) -> bool:
    segments = [segment for segment in session_key.split(":") if segment]
    if not segments:
        return False
    # Workflow keys look like `agent:main:wo:<id>:op:<id>` and are not chats.
    if "wo" in segments or "op" in segments or "cron" in segments:
        return False
    if segments[0] in INTERACTIVE_CHANNELS:
        return True
    if segments[0] == "agent" and len(segments) >= 3:
        return segments[2] in INTERACTIVE_CHANNELS or segments[2] == "main"
    return False


def derive_session_class(
    source: str | None,
    channel: str | None,
    session_key: str | None,
    session_kind: str | None,
    operation_id: str | None,
    work_order_id: str | None,
) -> str:
    if _clean(source) == "cron":
        return SESSION_CLASS_BACKGROUND_CRON
    if _clean(operation_id) and _clean(work_order_id):
        return SESSION_CLASS_BACKGROUND_WORKFLOW
    if _clean(channel) in INTERACTIVE_CHANNELS:
        return SESSION_CLASS_INTERACTIVE
    key = _clean(session_key)
    if key and _has_interactive_key(key):
        return SESSION_CLASS_INTERACTIVE
    if _clean(session_kind) in INTERACTIVE_KINDS:
        return SESSION_CLASS_INTERACTIVE
    return SESSION_CLASS_UNKNOWN


def derive_provider_key(model: str | None) -> str:
    """Map a model name to a provider key, or `unknown`.

    `openai-codex/gpt-5.3-codex` keeps the explicit `openai-codex` prefix;
    bare names fall back to family matching (`claude-opus-4-5` -> `anthropic`).
    """
    normalized = _clean(model)
    if not normalized:
        return PROVIDER_UNKNOWN
    if "/" in normalized:
        prefix = normalized.split("/", 1)[0].strip()
        if prefix:
            return prefix
    for provider, pattern in _PROVIDER_FAMILIES:
        if pattern.search(normalized):
            return provider
    return PROVIDER_UNKNOWN


def normalize_model_key(model: str | None) -> str:
    """Bucket key for a model name: lowercased, `unknown` when absent."""
    normalized = _clean(model)
    return normalized or "unknown"
