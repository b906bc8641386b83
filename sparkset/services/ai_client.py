"""
Language-model invocation with an ordered fallback chain.

Candidates are tried strictly in order; the first model that answers wins
and its reply goes through ``extract_sql``. Only when every candidate has
failed is a composite ``AIGenerationError`` raised.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from langchain_anthropic import ChatAnthropic
from langchain_core.output_parsers import StrOutputParser
from langchain_openai import ChatOpenAI

from sparkset.services import settings
from sparkset.services.errors import AIGenerationError, ExternalServiceError, ProviderConfigurationError
from sparkset.services.runtime import log_event, mask_secret
from sparkset.services.sql_extraction import extract_sql

logger = logging.getLogger("ai_client")


class ProviderKind(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    DEEPSEEK = "deepseek"
    GROQ = "groq"
    MOONSHOT = "moonshot"
    ZHIPU = "zhipu"
    QWEN = "qwen"
    OPENAI_COMPATIBLE = "openai-compatible"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProviderKind":
        normalized = (value or "").strip().lower()
        for kind in cls:
            if kind.value == normalized:
                return kind
        supported = ", ".join(k.value for k in cls)
        raise ProviderConfigurationError(f'Unsupported AI provider: "{value}". Supported providers: {supported}')


@dataclass(frozen=True)
class ProviderSpec:
    label: str
    # "openai" for the OpenAI wire protocol, "anthropic" for the Messages API
    wire: str
    default_base_url: Optional[str] = None
    probe_url: Optional[str] = None
    requires_api_key: bool = True
    requires_base_url: bool = False


PROVIDER_SPECS: Dict[ProviderKind, ProviderSpec] = {
    ProviderKind.OPENAI: ProviderSpec("OpenAI", "openai", probe_url="https://api.openai.com/v1/models"),
    ProviderKind.ANTHROPIC: ProviderSpec("Anthropic", "anthropic", probe_url="https://api.anthropic.com/v1/models"),
    ProviderKind.DEEPSEEK: ProviderSpec(
        "DeepSeek", "openai", "https://api.deepseek.com", probe_url="https://api.deepseek.com/models"
    ),
    ProviderKind.GROQ: ProviderSpec("Groq", "openai", "https://api.groq.com/openai/v1"),
    ProviderKind.MOONSHOT: ProviderSpec("Moonshot", "openai", "https://api.moonshot.cn/v1"),
    ProviderKind.ZHIPU: ProviderSpec("Zhipu AI", "openai", "https://open.bigmodel.cn/api/paas/v4"),
    ProviderKind.QWEN: ProviderSpec("Qwen", "openai", "https://dashscope.aliyuncs.com/compatible-mode/v1"),
    ProviderKind.OPENAI_COMPATIBLE: ProviderSpec(
        "OpenAI-compatible", "openai", requires_api_key=False, requires_base_url=True
    ),
}


@dataclass(frozen=True)
class ModelCandidate:
    """One model to try: the caller's choice or a configured fallback."""

    model: str
    provider: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ModelCandidate":
        return cls(
            model=str(raw.get("model") or "").strip(),
            provider=str(raw.get("provider") or "").strip(),
            api_key=raw.get("apiKey") or raw.get("api_key") or None,
            base_url=raw.get("baseURL") or raw.get("base_url") or None,
        )


@dataclass
class ModelCallOptions:
    prompt: str
    model: Optional[str] = None
    provider: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None


@dataclass
class AIClientConfig:
    default_model: str = settings.AI_DEFAULT_MODEL
    default_provider: str = settings.AI_DEFAULT_PROVIDER
    default_api_key: Optional[str] = None
    default_base_url: Optional[str] = None
    fallback_models: List[ModelCandidate] = field(default_factory=list)
    temperature: float = settings.AI_GENERATION_TEMPERATURE
    attempt_timeout_s: float = settings.AI_ATTEMPT_TIMEOUT_S
    locale: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "AIClientConfig":
        return cls(fallback_models=[ModelCandidate.from_dict(item) for item in settings.fallback_models()])


# ---------------------------
# Provider factory
# ---------------------------

def resolve_provider(candidate: ModelCandidate) -> Tuple[ProviderKind, ProviderSpec, Optional[str], Optional[str]]:
    """Return ``(kind, spec, api_key, base_url)`` or raise ProviderConfigurationError."""
    kind = ProviderKind.parse(candidate.provider)
    spec = PROVIDER_SPECS[kind]
    api_key = candidate.api_key or settings.provider_api_key(kind.value)
    base_url = candidate.base_url or spec.default_base_url
    if spec.requires_api_key and not api_key:
        raise ProviderConfigurationError(f"{spec.label} API key is required")
    if spec.requires_base_url and not base_url:
        raise ProviderConfigurationError("baseURL is required for openai-compatible provider")
    return kind, spec, api_key, base_url


def create_chat_model(candidate: ModelCandidate, temperature: float, timeout: Optional[float] = None):
    kind, spec, api_key, base_url = resolve_provider(candidate)
    log_event(
        logger,
        logging.INFO,
        "ai_create_model",
        provider=kind.value,
        model=candidate.model,
        base_url=base_url or "(default)",
        api_key=mask_secret(api_key),
    )
    params: Dict[str, Any] = {"model": candidate.model, "temperature": temperature, "max_retries": 0}
    if timeout:
        params["timeout"] = timeout

    if spec.wire == "anthropic":
        if base_url:
            params["base_url"] = base_url
        return ChatAnthropic(api_key=api_key, **params)

    # Self-hosted OpenAI-compatible servers usually ignore the key.
    return ChatOpenAI(api_key=api_key or "not-needed", base_url=base_url, **params)


ModelFactory = Callable[[ModelCandidate, float, Optional[float]], Any]


def _error_message(error: Optional[BaseException]) -> str:
    if error is None:
        return "unknown error"
    return str(error) or error.__class__.__name__


def _error_diagnostics(error: BaseException) -> Dict[str, str]:
    details: Dict[str, str] = {}
    for label, attr in (("cause", "__cause__"), ("response", "response"), ("data", "data"), ("body", "body")):
        value = getattr(error, attr, None)
        if value is None:
            continue
        status = getattr(value, "status_code", None)
        text = f"HTTP {status}" if status is not None else str(value)
        details[f"error_{label}"] = text[:500]
    return details


class LangChainAIClient:
    """Generates SQL through LangChain chat models with provider fallback."""

    def __init__(self, config: Optional[AIClientConfig] = None, model_factory: Optional[ModelFactory] = None):
        self.config = config or AIClientConfig()
        self._model_factory = model_factory or create_chat_model

    def candidates(self, options: ModelCallOptions) -> List[ModelCandidate]:
        primary = ModelCandidate(
            model=options.model or self.config.default_model,
            provider=options.provider or self.config.default_provider,
            api_key=options.api_key or self.config.default_api_key,
            base_url=options.base_url or self.config.default_base_url,
        )
        return [primary, *self.config.fallback_models]

    async def _invoke(self, chat_model: Any, prompt: str) -> str:
        chain = chat_model | StrOutputParser()
        timeout = self.config.attempt_timeout_s
        if not timeout:
            return await chain.ainvoke(prompt)
        try:
            return await asyncio.wait_for(chain.ainvoke(prompt), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError("AI provider", f"Model call timed out after {timeout:g}s") from exc

    async def generate_sql(self, options: ModelCallOptions) -> str:
        return await self._generate(options, lambda text: extract_sql(text, self.config.locale))

    async def generate_text(self, options: ModelCallOptions) -> str:
        """Same fallback chain as ``generate_sql`` but only trims the reply."""
        return await self._generate(options, str.strip)

    async def _generate(self, options: ModelCallOptions, postprocess: Callable[[str], str]) -> str:
        candidates = self.candidates(options)
        total = len(candidates)
        last_error: Optional[BaseException] = None

        for attempt, candidate in enumerate(candidates, start=1):
            started = time.perf_counter()
            log_event(
                logger,
                logging.INFO,
                "ai_generate_attempt",
                provider=candidate.provider,
                model=candidate.model,
                attempt=attempt,
                total=total,
            )
            try:
                chat_model = self._model_factory(
                    candidate, self.config.temperature, self.config.attempt_timeout_s or None
                )
                text = await self._invoke(chat_model, options.prompt)
                result = postprocess(text)
            except Exception as exc:
                last_error = exc
                log_event(
                    logger,
                    logging.WARNING,
                    "ai_generate_attempt_failed",
                    provider=candidate.provider,
                    model=candidate.model,
                    attempt=attempt,
                    error=_error_message(exc),
                    **_error_diagnostics(exc),
                )
                if attempt < total:
                    logger.info("Trying fallback model %s", candidates[attempt].model)
                continue

            log_event(
                logger,
                logging.INFO,
                "ai_generate_ok",
                provider=candidate.provider,
                model=candidate.model,
                elapsed_ms=int((time.perf_counter() - started) * 1000),
            )
            return result

        raise AIGenerationError(
            f"Failed to generate SQL after trying {total} model(s). Last error: {_error_message(last_error)}",
            attempts=total,
            last_error=last_error,
        ) from last_error
