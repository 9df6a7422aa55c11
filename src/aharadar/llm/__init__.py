from .settings import (
    LLM_SETTINGS_KEY,
    LlmSettings,
    apply_provider_override,
    load_llm_settings,
    save_llm_settings,
)

__all__ = [
    "LLM_SETTINGS_KEY",
    "LlmSettings",
    "apply_provider_override",
    "load_llm_settings",
    "save_llm_settings",
]
