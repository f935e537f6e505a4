# polychat/clients/registry.py
"""
Provider registry: model id -> provider kind -> configured client.

Resolution is total and deterministic. A model id outside the configured
model table is an UnknownModelError. Otherwise an ordered list of
(predicate, kind) rules is evaluated top to bottom; first match wins, and
the last rule is the explicit default. Missing credentials for the resolved
kind raise ConfigurationError before any client is built or called.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from polychat.clients.openai_client import OpenAICompatibleClient
from polychat.config.settings import Settings
from polychat.core.errors import ConfigurationError, UnknownModelError
from polychat.utils.logging import get_logger

logger = get_logger(__name__)


class ProviderKind(str, Enum):
    OPENAI = "OpenAI"
    ANTHROPIC = "Anthropic"
    GOOGLE = "Google"
    LOCAL = "LM Studio"


@dataclass(frozen=True)
class ModelOption:
    value: str
    label: str
    provider: ProviderKind


AVAILABLE_MODELS: Tuple[ModelOption, ...] = (
    ModelOption("gpt-4.1-mini", "GPT-4.1 Mini", ProviderKind.OPENAI),
    ModelOption("gpt-4o-mini", "GPT-4o Mini", ProviderKind.OPENAI),
    ModelOption("claude-4.5-sonnet", "Claude 4.5 Sonnet", ProviderKind.ANTHROPIC),
    ModelOption("gemini-2.5-flash", "Gemini 2.5 Flash", ProviderKind.GOOGLE),
    ModelOption("huihui-gpt-oss-20b-abliterated", "GPT OSS 20B Abliterated", ProviderKind.LOCAL),
)

LOCAL_MODELS: Tuple[str, ...] = tuple(m.value for m in AVAILABLE_MODELS if m.provider is ProviderKind.LOCAL)

LMSTUDIO_API_KEY = "lm-studio"  # LM Studio ignores the key but the SDK requires one


def model_label(value: str) -> str:
    """Table label, or the id title-cased ("foo-bar" -> "Foo Bar")."""
    for option in AVAILABLE_MODELS:
        if option.value == value:
            return option.label
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), value.replace("-", " "))


ClientFactory = Callable[[ProviderKind, Settings], object]


def default_client_factory(kind: ProviderKind, settings: Settings) -> OpenAICompatibleClient:
    if kind is ProviderKind.ANTHROPIC:
        api_key, base_url = settings.anthropic_api_key, settings.anthropic_base_url
    elif kind is ProviderKind.GOOGLE:
        api_key, base_url = settings.google_api_key, settings.google_base_url
    elif kind is ProviderKind.LOCAL:
        api_key, base_url = LMSTUDIO_API_KEY, settings.lmstudio_base_url
    else:
        api_key, base_url = settings.openai_api_key, settings.openai_base_url

    return OpenAICompatibleClient(
        provider=kind.value,
        api_key=api_key or "",
        base_url=base_url,
        timeout=settings.openai_timeout_seconds,
        max_retries=settings.openai_max_retries,
    )


class ProviderRegistry:
    def __init__(self, settings: Settings, client_factory: Optional[ClientFactory] = None) -> None:
        self.settings = settings
        self._client_factory = client_factory or default_client_factory
        self._clients: Dict[ProviderKind, object] = {}

        self._local_models = set(LOCAL_MODELS) | set(settings.lmstudio_models)
        self._rules: List[Tuple[Callable[[str], bool], ProviderKind]] = [
            (lambda m: m.startswith("claude-"), ProviderKind.ANTHROPIC),
            (lambda m: m.startswith("gemini-"), ProviderKind.GOOGLE),
            (lambda m: m in self._local_models, ProviderKind.LOCAL),
            (lambda m: True, ProviderKind.OPENAI),
        ]

        self._models: Dict[str, ModelOption] = {m.value: m for m in AVAILABLE_MODELS}
        for value in settings.extra_models + settings.lmstudio_models:
            if value not in self._models:
                self._models[value] = ModelOption(value, model_label(value), self._first_match(value))

    def _first_match(self, model_id: str) -> ProviderKind:
        for predicate, kind in self._rules:
            if predicate(model_id):
                return kind
        # unreachable: the last rule always matches
        raise UnknownModelError(model_id)

    def models(self) -> List[ModelOption]:
        return list(self._models.values())

    def lookup(self, model_id: str) -> ProviderKind:
        if not isinstance(model_id, str) or model_id not in self._models:
            raise UnknownModelError(str(model_id))
        return self._first_match(model_id)

    def missing_credentials(self, kind: ProviderKind) -> Optional[str]:
        """Name of the missing setting for `kind`, or None when configured."""
        if kind is ProviderKind.OPENAI and not self.settings.openai_api_key:
            return "OPENAI_API_KEY"
        if kind is ProviderKind.ANTHROPIC and not self.settings.anthropic_api_key:
            return "ANTHROPIC_API_KEY"
        if kind is ProviderKind.GOOGLE and not self.settings.google_api_key:
            return "GOOGLE_API_KEY"
        if kind is ProviderKind.LOCAL and not self.settings.lmstudio_base_url:
            return "LMSTUDIO_BASE_URL"
        return None

    def is_configured(self, kind: ProviderKind) -> bool:
        return self.missing_credentials(kind) is None

    def resolve(self, model_id: str):
        kind = self.lookup(model_id)
        missing = self.missing_credentials(kind)
        if missing:
            logger.error("Provider %s for model %s is not configured: %s is not set",
                         kind.value, model_id, missing)
            raise ConfigurationError(f"{kind.value} API key not configured ({missing} is not set)")

        client = self._clients.get(kind)
        if client is None:
            client = self._client_factory(kind, self.settings)
            self._clients[kind] = client
        return client
