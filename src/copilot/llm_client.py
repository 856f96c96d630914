"""
Provider-agnostic LLM access for query planning and narratives.

  mock       prompt echo, no network (tests, offline dev)
  openai     Chat Completions
  anthropic  Messages

The SDKs are optional (``pip install 'engagement-copilot[llm]'``) and only
imported when their provider is called.  Requests are bounded by
``settings.llm_timeout_s`` and never retried here: the planner and the
explainer fall back to deterministic output when a call fails.
"""
from __future__ import annotations

import importlib
from types import ModuleType
from typing import Callable

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-haiku-20240307",
}
MAX_TOKENS = 1024
SYSTEM_PROMPT = "You are a careful analytics assistant for a marketing engagement funnel."


class LLMConfigError(RuntimeError):
    """A provider was selected but its key or SDK is missing."""


def _credentials(provider: str) -> str:
    field = f"{provider}_api_key"
    key = getattr(get_settings(), field, "")
    if not key:
        raise LLMConfigError(f"{field} is not set; add {field.upper()} to .env or the environment")
    return key


def _sdk(name: str) -> ModuleType:
    try:
        return importlib.import_module(name)
    except ImportError as exc:
        raise LLMConfigError(
            f"Provider '{name}' needs its SDK: pip install 'engagement-copilot[llm]'"
        ) from exc


# ── Providers ───────────────────────────────────────────


def _mock(prompt: str) -> str:
    return f"[MOCK] {prompt[:200]}"


def _openai(prompt: str) -> str:
    key = _credentials("openai")
    sdk = _sdk("openai")
    client = sdk.OpenAI(api_key=key, timeout=get_settings().llm_timeout_s, max_retries=0)
    completion = client.chat.completions.create(
        model=MODELS["openai"],
        temperature=0.0,
        max_tokens=MAX_TOKENS,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
    )
    return completion.choices[0].message.content or ""


def _anthropic(prompt: str) -> str:
    key = _credentials("anthropic")
    sdk = _sdk("anthropic")
    client = sdk.Anthropic(api_key=key, timeout=get_settings().llm_timeout_s, max_retries=0)
    message = client.messages.create(
        model=MODELS["anthropic"],
        max_tokens=MAX_TOKENS,
        system=SYSTEM_PROMPT,
        messages=[{"role": "user", "content": prompt}],
    )
    blocks = [b.text for b in message.content if getattr(b, "type", "text") == "text"]
    return "".join(blocks)


_PROVIDERS: dict[str, Callable[[str], str]] = {
    "mock": _mock,
    "openai": _openai,
    "anthropic": _anthropic,
}


def supported_providers() -> list[str]:
    return list(_PROVIDERS)


def call_llm(prompt: str, provider: str | None = None) -> str:
    """Send *prompt* to *provider* (default ``settings.llm_provider``).

    Raises
    ------
    NotImplementedError
        Unknown provider name.
    LLMConfigError
        Missing API key or SDK.
    """
    name = (provider or get_settings().llm_provider).lower()
    fn = _PROVIDERS.get(name)
    if fn is None:
        raise NotImplementedError(
            f"LLM provider '{name}' is not supported; choose one of {', '.join(_PROVIDERS)}"
        )
    logger.info("LLM call  provider=%s  prompt_len=%d", name, len(prompt))
    text = fn(prompt)
    logger.info("LLM reply  provider=%s  chars=%d", name, len(text))
    return text
