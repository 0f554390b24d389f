"""
Provider Clients

    call(stage_name, provider, payload, timeout_ms) -> raw text

HttpProviderClient talks to the configured provider endpoints with httpx.
SimulatedProviderClient returns canned JSON for development and demos.
"""

import json
import asyncio
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from src.core.config import settings
from src.core.exceptions import ProviderError, ProviderConfigError, ProviderTimeoutError
from src.core.logging import get_logger
from src.core.metrics import record_provider_call

logger = get_logger(__name__)


class ProviderClient(ABC):
    """Invokes one external AI provider for one stage."""

    @abstractmethod
    async def call(self, stage_name: str, provider: str, payload: Dict[str, Any], timeout_ms: int) -> str:
        ...

    async def aclose(self):
        return None


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Retry-After header (delta-seconds or HTTP date) in milliseconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(int(float(value) * 1000), 0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(int((when - datetime.now(timezone.utc)).total_seconds() * 1000), 0)


# =============================================================================
# Request builders / response readers per provider
# =============================================================================

def _prompt_text(stage_name: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"stage": stage_name, **payload}, default=str)


def _build_google_vision(stage_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "requests": [{
            "image": {"source": {"imageUri": payload.get("imageRef")}},
            "features": [
                {"type": "LABEL_DETECTION", "maxResults": 20},
                {"type": "TEXT_DETECTION"},
                {"type": "OBJECT_LOCALIZATION"},
            ],
        }]
    }


def _build_openai(stage_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "model": settings.OPENAI_MODEL,
        "response_format": {"type": "json_object"},
        "messages": [{"role": "user", "content": _prompt_text(stage_name, payload)}],
    }


def _build_anthropic(stage_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "model": settings.ANTHROPIC_MODEL,
        "max_tokens": 4096,
        "messages": [{"role": "user", "content": _prompt_text(stage_name, payload)}],
    }


def _read_openai(body: Dict[str, Any]) -> str:
    return body["choices"][0]["message"]["content"]


def _read_anthropic(body: Dict[str, Any]) -> str:
    return "".join(block.get("text", "") for block in body.get("content", []) if block.get("type") == "text")


def _read_google_vision(body: Dict[str, Any]) -> str:
    responses = body.get("responses") or [{}]
    return json.dumps(responses[0])


REQUEST_BUILDERS: Dict[str, Callable[[str, Dict[str, Any]], Dict[str, Any]]] = {
    "google-vision": _build_google_vision,
    "openai": _build_openai,
    "anthropic": _build_anthropic,
}

RESPONSE_READERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "google-vision": _read_google_vision,
    "openai": _read_openai,
    "anthropic": _read_anthropic,
}


class HttpProviderClient(ProviderClient):
    """
    JSON-over-HTTP provider client.

    Raises:
        ProviderConfigError: no endpoint or API key for the provider
        ProviderTimeoutError: the provider did not answer in time
        ProviderError: non-2xx status (with Retry-After) or transport failure
    """

    def __init__(
        self,
        endpoints: Optional[Dict[str, str]] = None,
        api_key_lookup: Optional[Callable[[str], Optional[str]]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoints = endpoints if endpoints is not None else settings.PROVIDER_ENDPOINTS
        self.api_key_lookup = api_key_lookup or settings.provider_api_key
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    def _auth(self, provider: str, api_key: str):
        headers = {"Content-Type": "application/json"}
        params = {}
        if provider == "google-vision":
            params["key"] = api_key
        elif provider == "anthropic":
            headers["x-api-key"] = api_key
            headers["anthropic-version"] = settings.ANTHROPIC_API_VERSION
        else:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers, params

    async def call(self, stage_name: str, provider: str, payload: Dict[str, Any], timeout_ms: int) -> str:
        url = self.endpoints.get(provider)
        if not url:
            raise ProviderConfigError(f"Provider '{provider}' is not configured", provider=provider, stage=stage_name)

        api_key = self.api_key_lookup(provider)
        if not api_key:
            raise ProviderConfigError(f"API key not configured for provider '{provider}'", provider=provider, stage=stage_name)

        build = REQUEST_BUILDERS.get(provider, _build_openai)
        read = RESPONSE_READERS.get(provider, _read_openai)
        headers, params = self._auth(provider, api_key)

        try:
            response = await self._client.post(
                url,
                json=build(stage_name, payload),
                headers=headers,
                params=params,
                timeout=timeout_ms / 1000,
            )
        except httpx.TimeoutException:
            record_provider_call(provider, "timeout")
            raise ProviderTimeoutError(provider, timeout_ms, stage=stage_name)
        except httpx.TransportError as e:
            record_provider_call(provider, "network_error")
            raise ProviderError(f"Network error calling '{provider}': {e}", provider=provider, stage=stage_name)

        if response.status_code >= 400:
            record_provider_call(provider, f"http_{response.status_code}")
            raise ProviderError(
                f"Provider '{provider}' returned {response.status_code}: {response.text[:500]}",
                provider=provider,
                http_status=response.status_code,
                retry_after_ms=parse_retry_after(response.headers.get("Retry-After")),
                stage=stage_name,
            )

        record_provider_call(provider, "success")
        try:
            return read(response.json())
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            # Let the normalizer judge whatever came back
            return response.text

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


# =============================================================================
# Simulation
# =============================================================================

SIMULATED_RESPONSES: Dict[str, Dict[str, Any]] = {
    "vision": {
        "visualAnnotations": [
            {"id": "vision-1", "x": 22, "y": 14, "type": "info", "title": "Primary navigation",
             "description": "Top navigation bar with five items detected.", "severity": "low"},
            {"id": "vision-2", "x": 64, "y": 48, "type": "issue", "title": "Low contrast text",
             "description": "Body copy over the hero image has weak contrast.", "severity": "medium"},
        ],
    },
    "analysis": {
        "visualAnnotations": [
            {"id": "analysis-1", "x": 64, "y": 48, "type": "issue", "title": "Low contrast text",
             "description": "Contrast ratio is below WCAG AA for body text.", "severity": "high"},
            {"id": "analysis-2", "x": 80, "y": 12, "type": "suggestion", "title": "Call to action",
             "description": "The primary action competes with secondary links.", "severity": "medium"},
            {"id": "analysis-3", "x": 30, "y": 75, "type": "success", "title": "Consistent spacing",
             "description": "Card grid uses a consistent spacing scale.", "severity": "low"},
        ],
        "suggestions": [
            {"id": "analysis-s1", "category": "accessibility", "title": "Increase text contrast",
             "description": "Add an overlay behind hero copy.", "impact": "high", "effort": "low",
             "actionItems": ["Add a 40% dark overlay", "Re-test contrast ratio"]},
        ],
        "summary": {
            "overallScore": 72,
            "categoryScores": {"usability": 74, "accessibility": 58, "visual": 80, "content": 76},
            "keyIssues": ["Low contrast hero text"],
            "strengths": ["Clear layout grid"],
        },
    },
    "synthesis": {
        "suggestions": [
            {"id": "synthesis-s1", "category": "accessibility", "title": "Increase text contrast",
             "description": "Add an overlay behind hero copy.", "impact": "high", "effort": "low",
             "actionItems": ["Add a 40% dark overlay", "Re-test contrast ratio"]},
            {"id": "synthesis-s2", "category": "usability", "title": "Clarify the primary action",
             "description": "Give the main call to action a distinct visual weight.", "impact": "medium",
             "effort": "low", "actionItems": ["Use the brand color for the primary button"]},
        ],
        "summary": {
            "overallScore": 74,
            "categoryScores": {"usability": 76, "accessibility": 60, "visual": 80, "content": 78},
            "keyIssues": ["Low contrast hero text", "Competing calls to action"],
            "strengths": ["Clear layout grid", "Consistent spacing"],
        },
    },
}


class SimulatedProviderClient(ProviderClient):
    """Canned provider responses for development."""

    def __init__(self, latency_ms: Optional[int] = None, responses: Optional[Dict[str, Any]] = None):
        self.latency_ms = settings.SIMULATED_LATENCY_MS if latency_ms is None else latency_ms
        self.responses = responses or SIMULATED_RESPONSES

    async def call(self, stage_name: str, provider: str, payload: Dict[str, Any], timeout_ms: int) -> str:
        logger.info("provider_simulated_call", stage=stage_name, provider=provider)
        await asyncio.sleep(self.latency_ms / 1000)
        record_provider_call(provider, "success")
        body = self.responses.get(stage_name, {"summary": {"overallScore": 50}})
        return body if isinstance(body, str) else json.dumps(body)
