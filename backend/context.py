from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from backend.config import LOGGER
from backend.llm import LLMMessage

CONTEXT_LOGGER = LOGGER.getChild("context")

DEFAULT_CHARS_PER_TOKEN = 3.5
CHARS_PER_TOKEN: Dict[str, float] = {"GOOGLE": 3.8}
SAFETY_BUFFER = 1.05
MESSAGE_OVERHEAD_TOKENS = 4

DEFAULT_CONTEXT_LIMIT = 8192
DEFAULT_CONTEXT_BY_PROVIDER: Dict[str, int] = {
    "ANTHROPIC": 200000,
    "OPENAI": 128000,
    "GOOGLE": 1000000,
    "GROK": 131072,
    "OLLAMA": 8192,
    "OPENROUTER": 128000,
    "OPENAI_COMPATIBLE": 8192,
    "GAB_AI": 32000,
}
MODEL_CONTEXT_OVERRIDES: Dict[str, int] = {
    "llama3.2:3b": 131072,
    "llama3.1:8b": 131072,
    "llama3.1:70b": 131072,
    "mistral:7b": 32768,
    "mixtral:8x7b": 32768,
    "codellama:7b": 16384,
    "phi3:mini": 4096,
    "qwen2:7b": 32768,
    "anthropic/claude-3-opus": 200000,
    "anthropic/claude-3-sonnet": 200000,
    "anthropic/claude-3-haiku": 200000,
    "openai/gpt-4-turbo": 128000,
    "openai/gpt-4": 8192,
    "google/gemini-pro": 1000000,
    "gpt-4-0613": 8192,
    "gpt-4-32k": 32768,
    "gpt-3.5-turbo-16k": 16385,
}

SUMMARIZE_USAGE_PERCENT = 60
SUMMARIZE_MESSAGE_COUNT = 50


class ContextBudget(BaseModel):
    total_limit: int
    system_prompt_budget: int
    memory_budget: int
    summary_budget: int
    recent_messages_budget: int
    response_reserve: int


class MessageSelection(BaseModel):
    messages: List[LLMMessage] = Field(default_factory=list)
    token_count: int = 0
    truncated: bool = False


def chars_per_token(provider: Optional[str] = None) -> float:
    return CHARS_PER_TOKEN.get((provider or "").upper(), DEFAULT_CHARS_PER_TOKEN)


def estimate_tokens(text: Optional[str], provider: Optional[str] = None) -> int:
    """Character-ratio estimate, padded so the real count rarely exceeds it."""
    if not text:
        return 0
    return math.ceil(math.ceil(len(text) / chars_per_token(provider)) * SAFETY_BUFFER)


def truncate_to_token_limit(
    text: str,
    max_tokens: int,
    provider: Optional[str] = None,
    suffix: str = "...",
) -> str:
    if estimate_tokens(text, provider) <= max_tokens:
        return text
    suffix_tokens = estimate_tokens(suffix, provider)
    max_chars = math.floor((max_tokens - suffix_tokens) * chars_per_token(provider) * 0.95)
    if max_chars <= 0:
        return suffix
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        truncated = truncated[:last_space]
    return truncated + suffix


def get_model_context_limit(provider: Optional[str], model_name: Optional[str]) -> int:
    provider = (provider or "").upper()
    model_name = model_name or ""
    override = MODEL_CONTEXT_OVERRIDES.get(model_name)
    if override:
        return override
    prefixed = MODEL_CONTEXT_OVERRIDES.get(f"{provider.lower()}/{model_name}")
    if prefixed:
        return prefixed
    return DEFAULT_CONTEXT_BY_PROVIDER.get(provider, DEFAULT_CONTEXT_LIMIT)


def calculate_context_budget(provider: Optional[str], model_name: Optional[str]) -> ContextBudget:
    total = get_model_context_limit(provider, model_name)
    if total >= 200000:
        system, memory, summary, recent_share, reserve = 4000, 8000, 4000, 0.6, 8192
    elif total >= 100000:
        system, memory, summary, recent_share, reserve = 3000, 6000, 3000, 0.55, 4096
    elif total >= 32000:
        system, memory, summary, recent_share, reserve = 2000, 4000, 2000, 0.5, 4096
    else:
        system, memory, summary, recent_share, reserve = 1000, 2000, 1000, 0.4, 2048
    return ContextBudget(
        total_limit=total,
        system_prompt_budget=system,
        memory_budget=memory,
        summary_budget=summary,
        recent_messages_budget=math.floor(total * recent_share),
        response_reserve=reserve,
    )


def select_recent_messages(
    messages: Sequence[LLMMessage],
    max_tokens: int,
    provider: Optional[str] = None,
) -> MessageSelection:
    """Keep the newest messages that fit in ``max_tokens``, oldest first.

    The latest message is always kept, even when it alone is over budget.
    """
    selected: List[LLMMessage] = []
    used = 0
    truncated = False
    for message in reversed(messages):
        cost = estimate_tokens(message.content, provider) + MESSAGE_OVERHEAD_TOKENS
        if used + cost > max_tokens:
            truncated = True
            break
        selected.append(message)
        used += cost
    if not selected and messages:
        last = messages[-1]
        selected.append(last)
        used = estimate_tokens(last.content, provider) + MESSAGE_OVERHEAD_TOKENS
        truncated = True
    selected.reverse()
    return MessageSelection(messages=selected, token_count=used, truncated=truncated)


def should_summarize_conversation(
    message_count: int, estimated_tokens: int, context_limit: int
) -> bool:
    if context_limit > 0 and estimated_tokens / context_limit * 100 > SUMMARIZE_USAGE_PERCENT:
        return True
    return message_count > SUMMARIZE_MESSAGE_COUNT


def build_context(
    system_prompt: str,
    messages: Sequence[LLMMessage],
    provider: Optional[str],
    model_name: Optional[str],
) -> List[LLMMessage]:
    budget = calculate_context_budget(provider, model_name)
    system_prompt = truncate_to_token_limit(system_prompt, budget.system_prompt_budget, provider)
    system_tokens = estimate_tokens(system_prompt, provider)
    remaining = budget.total_limit - system_tokens - budget.response_reserve
    selection = select_recent_messages(
        messages, min(remaining, budget.recent_messages_budget), provider
    )
    if selection.truncated:
        CONTEXT_LOGGER.info(
            "history_truncated provider=%s model=%s kept=%s of=%s tokens=%s",
            provider or "-",
            model_name or "-",
            len(selection.messages),
            len(messages),
            selection.token_count,
        )
        if should_summarize_conversation(len(messages), selection.token_count, budget.total_limit):
            CONTEXT_LOGGER.warning(
                "history_over_budget provider=%s model=%s messages=%s",
                provider or "-",
                model_name or "-",
                len(messages),
            )
    return [LLMMessage(role="system", content=system_prompt)] + selection.messages
