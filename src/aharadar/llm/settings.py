from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields, replace
from typing import Any

from ..jobs import PROVIDERS, ProviderOverride
from ..storage import get_setting, set_setting
from ..utils import log_event

LLM_SETTINGS_KEY = "llm.settings"
REASONING_EFFORTS = ("none", "low", "medium", "high")

logger = logging.getLogger("aharadar.llm")


@dataclass(frozen=True)
class LlmSettings:
    provider: str = "openai"
    anthropic_model: str = "claude-sonnet-4-5"
    openai_model: str = "gpt-5.1"
    deep_summary_enabled: bool = False
    claude_subscription_enabled: bool = False
    claude_triage_thinking: bool = False
    claude_calls_per_hour: int = 100
    codex_subscription_enabled: bool = False
    codex_calls_per_hour: int = 100
    reasoning_effort: str = "none"
    triage_batch_enabled: bool = True
    triage_batch_size: int = 15

    @property
    def model(self) -> str:
        if self.provider in ("anthropic", "claude-subscription"):
            return self.anthropic_model
        return self.openai_model

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def load_llm_settings(conn: Any) -> LlmSettings:
    stored = get_setting(conn, LLM_SETTINGS_KEY, {})
    if not isinstance(stored, dict):
        log_event(logger, logging.WARNING, "llm_settings_invalid", reason="not_a_mapping")
        return LlmSettings()
    known = {field.name for field in fields(LlmSettings)}
    settings = LlmSettings(**{key: value for key, value in stored.items() if key in known})
    validate_llm_settings(settings)
    return settings


def save_llm_settings(conn: Any, settings: LlmSettings) -> None:
    validate_llm_settings(settings)
    set_setting(conn, LLM_SETTINGS_KEY, settings.to_dict())


def validate_llm_settings(settings: LlmSettings) -> None:
    if settings.provider not in PROVIDERS:
        raise ValueError(f"llm provider must be one of {', '.join(PROVIDERS)}")
    if settings.reasoning_effort not in REASONING_EFFORTS:
        raise ValueError(f"reasoning effort must be one of {', '.join(REASONING_EFFORTS)}")
    if settings.triage_batch_size < 1:
        raise ValueError("triage batch size must be at least 1")


def apply_provider_override(
    settings: LlmSettings, override: ProviderOverride | None
) -> LlmSettings:
    """Settings for a single run with the per-run provider/model applied."""
    if override is None or (override.provider is None and override.model is None):
        return settings
    updated = settings
    if override.provider:
        updated = replace(updated, provider=override.provider)
        if override.provider == "claude-subscription":
            updated = replace(updated, claude_subscription_enabled=True)
        elif override.provider == "codex-subscription":
            updated = replace(updated, codex_subscription_enabled=True)
    if override.model:
        if updated.provider in ("anthropic", "claude-subscription"):
            updated = replace(updated, anthropic_model=override.model)
        else:
            updated = replace(updated, openai_model=override.model)
    log_event(
        logger,
        logging.INFO,
        "llm_provider_override",
        provider=updated.provider,
        model=updated.model,
    )
    return updated
