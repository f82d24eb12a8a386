import asyncio
import json
import logging
import re
import time
from enum import Enum
from typing import Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from leadcapture.errors import ModelError
from leadcapture.llm.providers import GatewayConfig, ModelProvider, load_gateway_config

logger = logging.getLogger("llm.gateway")

T = TypeVar("T", bound=BaseModel)

_FENCE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


class Tier(str, Enum):
    FAST = "fast"
    CAPABLE = "capable"


def strip_fences(text: str) -> str:
    """Remove a surrounding fenced code block and any chatter around a lone JSON object."""
    cleaned = (text or "").strip()
    match = _FENCE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    if not cleaned.startswith("{"):
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start != -1 and end > start:
            cleaned = cleaned[start : end + 1]
    return cleaned


class ModelGateway:
    """Tiered access to ranked model providers with one retry per call.

    The gateway never falls back across providers on its own; callers walk
    :meth:`providers_for` and decide which provider to try next.
    """

    def __init__(
        self,
        providers: Dict[str, ModelProvider],
        ranking: Dict[str, List[str]],
        *,
        retries: int = 1,
        retry_base_delay: float = 1.0,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.providers = providers
        self.ranking = {Tier(tier).value: list(names) for tier, names in ranking.items()}
        self.retries = retries
        self.retry_base_delay = retry_base_delay
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "ModelGateway":
        return cls(
            config.providers,
            config.ranking,
            retries=config.retries,
            retry_base_delay=config.retry_base_delay,
            timeout_seconds=config.timeout_seconds,
        )

    @classmethod
    def from_env(cls) -> "ModelGateway":
        return cls.from_config(load_gateway_config())

    def providers_for(self, tier: Tier) -> List[str]:
        return list(self.ranking.get(Tier(tier).value, []))

    async def invoke(
        self,
        tier: Tier,
        system_prompt: str,
        user_prompt: str,
        output_schema: Type[T],
        *,
        provider: Optional[str] = None,
        max_tokens: int = 800,
    ) -> T:
        tier = Tier(tier)
        name = provider or next(iter(self.providers_for(tier)), None)
        if name is None:
            raise ModelError(f"No provider configured for tier '{tier.value}'", tier=tier.value)
        client = self.providers.get(name)
        if client is None:
            raise ModelError(f"Unknown provider '{name}'", tier=tier.value, provider=name)

        last_exc: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            if attempt:
                await asyncio.sleep(self.retry_base_delay * attempt)
            started = time.perf_counter()
            try:
                raw = await asyncio.wait_for(
                    client.complete(system_prompt, user_prompt, max_tokens=max_tokens, json_mode=True),
                    timeout=self.timeout_seconds,
                )
                parsed = output_schema.model_validate(json.loads(strip_fences(raw)))
            except Exception as exc:
                last_exc = exc
                self._log(tier, name, "error", attempt + 1, started, error=f"{type(exc).__name__}: {exc}")
                continue
            self._log(tier, name, "success", attempt + 1, started)
            return parsed

        raise ModelError(
            f"{name} failed after {self.retries + 1} attempts: {last_exc}",
            tier=tier.value,
            provider=name,
        ) from last_exc

    def _log(self, tier: Tier, provider: str, status: str, attempt: int, started: float, **extra) -> None:
        payload = {
            "tier": tier.value,
            "provider": provider,
            "status": status,
            "attempt": attempt,
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
        }
        payload.update(extra)
        level = logging.INFO if status == "success" else logging.WARNING
        logger.log(level, "model_call", extra={"model_call": payload})
