import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx
import yaml
from openai import AsyncOpenAI

logger = logging.getLogger("llm.providers")

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))


class ModelProvider(Protocol):
    name: str
    model: str

    async def complete(self, system_prompt: str, user_prompt: str, *, max_tokens: int, json_mode: bool) -> str:
        ...


class OpenAICompatProvider:
    """Chat-completions provider; covers OpenAI itself and OpenAI-compatible hosts such as Groq."""

    def __init__(
        self,
        name: str,
        model: str,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.name = name
        self.model = model
        self.temperature = temperature
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    async def complete(self, system_prompt: str, user_prompt: str, *, max_tokens: int, json_mode: bool) -> str:
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise RuntimeError(f"{self.name} returned an empty completion")
        return content


class AnthropicProvider:
    def __init__(
        self,
        name: str,
        model: str,
        api_key: str,
        *,
        base_url: str = ANTHROPIC_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.name = name
        self.model = model
        self._api_key = api_key
        self._url = base_url
        self._timeout = timeout

    async def complete(self, system_prompt: str, user_prompt: str, *, max_tokens: int, json_mode: bool) -> str:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if json_mode:
            system_prompt = f"{system_prompt}\n\nRespond with a single JSON object and nothing else."
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=payload, headers=headers)
        response.raise_for_status()
        data = response.json()
        parts = [block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"]
        text = "".join(parts).strip()
        if not text:
            raise RuntimeError(f"{self.name} returned an empty completion")
        return text


PROVIDER_TYPES = {
    "openai_compat": OpenAICompatProvider,
    "anthropic": AnthropicProvider,
}


DEFAULT_CONFIG: Dict[str, Any] = {
    "retries": 1,
    "retry_base_delay": 1.0,
    "timeout_seconds": DEFAULT_TIMEOUT,
    "providers": {
        "groq": {
            "type": "openai_compat",
            "model": "llama-3.3-70b-versatile",
            "base_url": GROQ_BASE_URL,
            "api_key_env": "GROQ_API_KEY",
        },
        "claude_fast": {
            "type": "anthropic",
            "model": os.getenv("ANTHROPIC_FAST_MODEL", "claude-3-5-haiku-latest"),
            "api_key_env": "ANTHROPIC_API_KEY",
        },
        "claude_capable": {
            "type": "anthropic",
            "model": os.getenv("ANTHROPIC_CAPABLE_MODEL", "claude-3-5-sonnet-latest"),
            "api_key_env": "ANTHROPIC_API_KEY",
        },
        "openai": {
            "type": "openai_compat",
            "model": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            "api_key_env": "OPENAI_API_KEY",
        },
    },
    "tiers": {
        "fast": ["groq", "claude_fast", "openai"],
        "capable": ["claude_capable", "openai"],
    },
}


@dataclass
class GatewayConfig:
    providers: Dict[str, ModelProvider] = field(default_factory=dict)
    ranking: Dict[str, List[str]] = field(default_factory=dict)
    retries: int = 1
    retry_base_delay: float = 1.0
    timeout_seconds: float = DEFAULT_TIMEOUT


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def load_gateway_config(path: Optional[str] = None) -> GatewayConfig:
    """Build providers and tier rankings from ``DEFAULT_CONFIG`` merged with an optional YAML file.

    Providers whose API key is absent from the environment are left out of
    every ranking.
    """
    raw: Dict[str, Any] = dict(DEFAULT_CONFIG)
    config_path = path or os.getenv("LLM_PROVIDERS_CONFIG")
    if config_path:
        overrides = _load_yaml(Path(config_path))
        for key, value in overrides.items():
            if key == "providers":
                merged = dict(raw["providers"])
                merged.update(value or {})
                raw["providers"] = merged
            else:
                raw[key] = value
        logger.info("Loaded LLM provider overrides from %s", config_path)

    timeout = float(raw.get("timeout_seconds", DEFAULT_TIMEOUT))
    providers: Dict[str, ModelProvider] = {}
    for name, spec in (raw.get("providers") or {}).items():
        provider_cls = PROVIDER_TYPES.get(spec.get("type", ""))
        if provider_cls is None:
            logger.warning("Unknown provider type for %s: %s", name, spec.get("type"))
            continue
        api_key = os.getenv(spec.get("api_key_env", "")) or spec.get("api_key")
        if not api_key:
            logger.info("Provider %s not configured; skipping", name)
            continue
        kwargs: Dict[str, Any] = {"timeout": timeout}
        if spec.get("base_url"):
            kwargs["base_url"] = spec["base_url"]
        providers[name] = provider_cls(name, spec["model"], api_key, **kwargs)

    ranking = {
        tier: [name for name in names if name in providers]
        for tier, names in (raw.get("tiers") or {}).items()
    }
    return GatewayConfig(
        providers=providers,
        ranking=ranking,
        retries=int(raw.get("retries", 1)),
        retry_base_delay=float(raw.get("retry_base_delay", 1.0)),
        timeout_seconds=timeout,
    )
