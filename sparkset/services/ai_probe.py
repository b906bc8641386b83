"""Connectivity probe for language-model providers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from sparkset.services import settings
from sparkset.services.ai_client import PROVIDER_SPECS, ProviderKind
from sparkset.services.errors import ProviderConfigurationError
from sparkset.services.runtime import log_event

logger = logging.getLogger("ai_probe")

ANTHROPIC_API_VERSION = "2023-06-01"


@dataclass
class ProbeResult:
    success: bool
    message: str
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.timestamp:
            data["timestamp"] = self.timestamp
        return data


def _probe_url(kind: ProviderKind, base_url: Optional[str]) -> str:
    spec = PROVIDER_SPECS[kind]
    if kind != ProviderKind.OPENAI_COMPATIBLE and spec.probe_url:
        return spec.probe_url
    root = base_url or spec.default_base_url or ""
    return root.rstrip("/") + "/models"


async def probe_provider_connection(
    provider: str,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout_s: float = settings.AI_PROBE_TIMEOUT_S,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProbeResult:
    """
    Hit the provider's model-listing endpoint and classify the outcome.

    Never raises for provider-side problems; the reason is returned in
    ``ProbeResult.message``.
    """
    try:
        kind = ProviderKind.parse(provider)
    except ProviderConfigurationError:
        return ProbeResult(False, f"Unsupported provider type: {provider}")

    spec = PROVIDER_SPECS[kind]
    if spec.requires_api_key and not api_key:
        return ProbeResult(False, f"{spec.label} requires an API key")
    if spec.requires_base_url and not base_url:
        return ProbeResult(False, "OpenAI-compatible provider requires a base URL")
    if not api_key:
        return ProbeResult(False, "An API key is required for verification")

    url = _probe_url(kind, base_url)
    headers = {"Content-Type": "application/json"}
    if kind == ProviderKind.ANTHROPIC:
        headers["x-api-key"] = api_key
        headers["anthropic-version"] = ANTHROPIC_API_VERSION
    else:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            response = await client.get(url, headers=headers)
    except httpx.TimeoutException:
        result = ProbeResult(False, "Connection timed out")
    except httpx.TransportError:
        result = ProbeResult(False, "Unable to reach the service, check the network or base URL")
    except httpx.HTTPError as exc:
        result = ProbeResult(False, f"Connection error: {exc}")
    else:
        if response.is_success:
            result = ProbeResult(True, "Connection succeeded", datetime.now(timezone.utc).isoformat())
        elif response.status_code in (401, 403):
            result = ProbeResult(False, "Invalid API key or insufficient permissions")
        else:
            result = ProbeResult(False, f"Connection failed (HTTP {response.status_code})")

    log_event(
        logger,
        logging.INFO if result.success else logging.WARNING,
        "ai_probe_result",
        provider=kind.value,
        url=url,
        success=result.success,
        reason=result.message,
    )
    return result
