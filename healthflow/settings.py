from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

from .models import AnalysisInvocationResult, LlmProvider, LlmRequestContext

logger = logging.getLogger(__name__)

AI_PROVIDER_SETTING_KEY = "ai_provider"
AI_API_KEYS_SETTING_KEY = "ai_api_keys"
AI_MODELS_SETTING_KEY = "ai_models"
AI_ENDPOINTS_SETTING_KEY = "ai_endpoints"

ANALYSIS_PURPOSE = "analysis"
SUMMARY_PURPOSE = "summary"

SUPPORTED_PROVIDERS = frozenset({LlmProvider.OPENAI, LlmProvider.GEMINI, LlmProvider.LOCAL})

# Providers without an entry here have no fallback and need an explicit model preference.
_FALLBACK_MODELS: dict[str, dict[LlmProvider, str]] = {
    ANALYSIS_PURPOSE: {
        LlmProvider.OPENAI: "gpt-4o-mini",
        LlmProvider.GEMINI: "gemini-1.5-flash",
    },
    SUMMARY_PURPOSE: {
        LlmProvider.OPENAI: "gpt-5-mini",
        LlmProvider.GEMINI: "gemini-1.5-flash",
    },
}

_CREDENTIAL_FREE_PROVIDERS = frozenset({LlmProvider.LOCAL})


@dataclass
class AppSettings:
    selected_provider: LlmProvider = LlmProvider.OPENAI
    api_keys: dict[LlmProvider, str] = field(default_factory=dict)
    model_preferences: dict[LlmProvider, str] = field(default_factory=dict)
    endpoints: dict[LlmProvider, str] = field(default_factory=dict)

    def api_key_for(self, provider: LlmProvider) -> str:
        return (self.api_keys.get(provider) or "").strip()

    def model_preference_for(self, provider: LlmProvider) -> str:
        return (self.model_preferences.get(provider) or "").strip()

    def endpoint_for(self, provider: LlmProvider) -> str:
        return (self.endpoints.get(provider) or "").strip()


class SettingsProvider(Protocol):
    def get_app_settings(self) -> AppSettings: ...


class SettingsStore(Protocol):
    def get_setting(self, key: str, default: str | None = None) -> str | None: ...

    def set_setting(self, key: str, value: str) -> None: ...


class SqliteSettingsRepository:
    """Provider settings kept in the database's ``app_settings`` table."""

    def __init__(self, store: SettingsStore):
        self._store = store

    def get_app_settings(self) -> AppSettings:
        raw_provider = self._store.get_setting(AI_PROVIDER_SETTING_KEY, LlmProvider.OPENAI.value)
        provider = LlmProvider.parse(raw_provider)
        if provider is None:
            logger.warning("Unknown provider %r in settings; using %s.", raw_provider, LlmProvider.OPENAI.value)
            provider = LlmProvider.OPENAI
        return AppSettings(
            selected_provider=provider,
            api_keys=self._load_map(AI_API_KEYS_SETTING_KEY),
            model_preferences=self._load_map(AI_MODELS_SETTING_KEY),
            endpoints=self._load_map(AI_ENDPOINTS_SETTING_KEY),
        )

    def save_app_settings(self, settings: AppSettings) -> None:
        self._store.set_setting(AI_PROVIDER_SETTING_KEY, settings.selected_provider.value)
        self._store.set_setting(AI_API_KEYS_SETTING_KEY, _dump_map(settings.api_keys))
        self._store.set_setting(AI_MODELS_SETTING_KEY, _dump_map(settings.model_preferences))
        self._store.set_setting(AI_ENDPOINTS_SETTING_KEY, _dump_map(settings.endpoints))

    def _load_map(self, key: str) -> dict[LlmProvider, str]:
        raw = self._store.get_setting(key, "") or ""
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Setting %s is not valid JSON; ignoring it.", key)
            return {}
        if not isinstance(data, dict):
            return {}
        values: dict[LlmProvider, str] = {}
        for name, value in data.items():
            provider = LlmProvider.parse(name)
            if provider is None or value is None:
                continue
            values[provider] = str(value)
        return values


def _dump_map(values: dict[LlmProvider, str]) -> str:
    return json.dumps({provider.value: value for provider, value in values.items() if value})


def fallback_model_for(provider: LlmProvider, purpose: str = ANALYSIS_PURPOSE) -> str:
    return _FALLBACK_MODELS.get(purpose, {}).get(provider, "")


def resolve_model_id(settings: AppSettings, purpose: str = ANALYSIS_PURPOSE) -> str:
    configured = settings.model_preference_for(settings.selected_provider)
    if configured:
        return configured
    return fallback_model_for(settings.selected_provider, purpose)


def resolve_request_context(
    settings: AppSettings,
    purpose: str = ANALYSIS_PURPOSE,
) -> LlmRequestContext | AnalysisInvocationResult:
    """Build the request context for the selected provider, or the result explaining why not."""
    provider = settings.selected_provider
    if provider not in SUPPORTED_PROVIDERS:
        logger.info("Selected provider %s is not supported yet.", provider.value)
        return AnalysisInvocationResult.not_supported(provider.value)

    model_id = resolve_model_id(settings, purpose)
    if not model_id:
        logger.warning("No model configured for provider %s.", provider.value)
        return AnalysisInvocationResult.missing_model(provider.value)

    api_key = settings.api_key_for(provider)
    if not api_key and provider not in _CREDENTIAL_FREE_PROVIDERS:
        logger.warning("No API key configured for provider %s.", provider.value)
        return AnalysisInvocationResult.missing_credentials(provider.value)

    return LlmRequestContext(
        model_id=model_id,
        provider=provider,
        api_key=api_key,
        endpoint=settings.endpoint_for(provider),
    )
