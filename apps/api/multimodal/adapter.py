"""
Provider adapter: bounded retries, one fallback provider, result contract checks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from config import settings
from services.errors import IncompleteAIResponse, ProviderUnavailable

from .cache import ResultCache, build_cache_key, get_result_cache
from .llm import get_openai_client
from .models import PROVIDER_KINDS, AnalysisKind, AnalysisResult, ResponseContractError, parse_analysis_result
from .providers import (
    AnalysisProvider,
    AssetPayload,
    OpenAIAudioProvider,
    OpenAIVisionProvider,
    ProviderCallAttempt,
    ProviderError,
    ProviderOutcome,
)

logger = logging.getLogger(__name__)

MAX_PROVIDERS_PER_KIND = 2  # primary plus one fallback


@dataclass
class ProviderResult:
    kind: AnalysisKind
    result: AnalysisResult
    provider: str
    attempts: List[ProviderCallAttempt] = field(default_factory=list)
    cached: bool = False
    asset_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "provider": self.provider,
            "cached": self.cached,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "result": self.result.model_dump(mode="json", exclude={"kind"}),
        }


class AnalysisAdapter:
    """Calls the provider chain for a kind and returns a validated result."""

    def __init__(
        self,
        providers_by_kind: Dict[AnalysisKind, Sequence[AnalysisProvider]],
        cache: Optional[ResultCache] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.providers_by_kind = {
            AnalysisKind(kind): list(providers)[:MAX_PROVIDERS_PER_KIND]
            for kind, providers in providers_by_kind.items()
        }
        self.cache = cache
        self._sleep = sleep

    def providers_for(self, kind: AnalysisKind) -> List[AnalysisProvider]:
        return self.providers_by_kind.get(AnalysisKind(kind), [])

    async def analyze(
        self,
        asset: Optional[AssetPayload],
        kind: AnalysisKind,
        options: Optional[Dict[str, Any]] = None,
    ) -> ProviderResult:
        kind = AnalysisKind(kind)
        options = options or {}
        chain = self.providers_for(kind)
        if not chain:
            raise ProviderUnavailable(f"No AI provider is configured for {kind.value} analysis")

        cache_key = build_cache_key(kind.value, asset.content_hash if asset else None, options)
        cached = await self._cache_get(kind, cache_key)
        if cached is not None:
            cached.asset_id = asset.asset_id if asset else None
            return cached

        attempts: List[ProviderCallAttempt] = []
        last_outcome: Optional[ProviderOutcome] = None
        for provider in chain:
            result, last_outcome = await self._call_with_retries(provider, asset, kind, options, attempts)
            if result is not None:
                provider_result = ProviderResult(
                    kind=kind,
                    result=result,
                    provider=provider.name,
                    attempts=attempts,
                    asset_id=asset.asset_id if asset else None,
                )
                await self._cache_put(cache_key, provider_result)
                return provider_result
            logger.warning(
                "Provider %s exhausted for %s analysis (last outcome %s)",
                provider.name,
                kind.value,
                last_outcome.value if last_outcome else None,
            )

        details = {"attempts": [attempt.to_dict() for attempt in attempts]}
        if last_outcome == ProviderOutcome.MALFORMED_RESPONSE:
            raise IncompleteAIResponse(
                f"AI response for {kind.value} analysis was incomplete. Please try again.",
                details=details,
            )
        raise ProviderUnavailable(
            f"AI service is temporarily unavailable for {kind.value} analysis. Please try again later.",
            details=details,
        )

    async def _call_with_retries(
        self,
        provider: AnalysisProvider,
        asset: Optional[AssetPayload],
        kind: AnalysisKind,
        options: Dict[str, Any],
        attempts: List[ProviderCallAttempt],
    ) -> Tuple[Optional[AnalysisResult], Optional[ProviderOutcome]]:
        outcome: Optional[ProviderOutcome] = None
        for attempt_number in range(1, provider.max_retries + 1):
            started = time.monotonic()
            error: Optional[str] = None
            try:
                raw = await asyncio.wait_for(
                    provider.fetch(asset, kind, options),
                    timeout=provider.timeout_seconds,
                )
                result = parse_analysis_result(kind, raw)
                outcome = ProviderOutcome.SUCCESS
            except asyncio.TimeoutError:
                outcome, error = ProviderOutcome.TIMEOUT, f"no response within {provider.timeout_seconds}s"
            except ProviderError as exc:
                outcome, error = exc.outcome, exc.message
            except ResponseContractError as exc:
                outcome, error = ProviderOutcome.MALFORMED_RESPONSE, str(exc)
            except Exception as exc:
                outcome, error = ProviderOutcome.OTHER_ERROR, f"{type(exc).__name__}: {exc}"

            attempt = ProviderCallAttempt(
                provider=provider.name,
                kind=kind.value,
                attempt_number=attempt_number,
                outcome=outcome,
                error=error,
                elapsed_seconds=time.monotonic() - started,
            )
            attempts.append(attempt)

            if outcome == ProviderOutcome.SUCCESS:
                logger.info(
                    "%s analysis succeeded via %s on attempt %s (%.2fs)",
                    kind.value,
                    provider.name,
                    attempt_number,
                    attempt.elapsed_seconds,
                )
                return result, outcome

            logger.warning(
                "%s analysis attempt %s/%s via %s failed: %s %s",
                kind.value,
                attempt_number,
                provider.max_retries,
                provider.name,
                outcome.value,
                error,
            )
            if outcome == ProviderOutcome.MALFORMED_RESPONSE:
                return None, outcome
            if attempt_number < provider.max_retries:
                await self._sleep(provider.retry_delay_seconds)

        return None, outcome

    async def _cache_get(self, kind: AnalysisKind, key: str) -> Optional[ProviderResult]:
        if self.cache is None:
            return None
        try:
            entry = await self.cache.get(key)
        except Exception as exc:
            logger.warning("Result cache read failed: %s", exc)
            return None
        if not entry:
            return None
        try:
            result = parse_analysis_result(kind, entry.get("result"))
        except ResponseContractError:
            logger.warning("Ignoring cached %s result that no longer matches the contract", kind.value)
            return None
        logger.info("%s analysis served from cache", kind.value)
        return ProviderResult(kind=kind, result=result, provider=str(entry.get("provider") or "cache"), cached=True)

    async def _cache_put(self, key: str, provider_result: ProviderResult) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.put(
                key,
                {
                    "provider": provider_result.provider,
                    "result": provider_result.result.model_dump(mode="json", exclude={"kind"}),
                },
            )
        except Exception as exc:
            logger.warning("Result cache write failed: %s", exc)


def build_default_adapter(cache: Optional[ResultCache] = None) -> AnalysisAdapter:
    """Wire the primary and secondary providers from settings."""
    policy = {
        "max_retries": settings.AI_MAX_RETRIES,
        "retry_delay_seconds": settings.AI_RETRY_DELAY_SECONDS,
    }
    providers: List[AnalysisProvider] = []

    primary = get_openai_client(settings.OPENAI_API_KEY, settings.OPENAI_BASE_URL)
    if primary is not None:
        providers.append(
            OpenAIVisionProvider(
                name="openai",
                client=primary,
                model=settings.OPENAI_VISION_MODEL,
                timeout_seconds=settings.AI_VISION_TIMEOUT_SECONDS,
                **policy,
            )
        )
        providers.append(
            OpenAIAudioProvider(
                name="openai-audio",
                client=primary,
                model=settings.OPENAI_AUDIO_MODEL,
                timeout_seconds=settings.AI_AUDIO_TIMEOUT_SECONDS,
                **policy,
            )
        )

    secondary = get_openai_client(settings.SECONDARY_AI_API_KEY, settings.SECONDARY_AI_BASE_URL)
    if secondary is not None:
        providers.append(
            OpenAIVisionProvider(
                name=settings.SECONDARY_AI_NAME,
                client=secondary,
                model=settings.SECONDARY_AI_VISION_MODEL,
                timeout_seconds=settings.AI_VISION_TIMEOUT_SECONDS,
                **policy,
            )
        )
        if settings.SECONDARY_AI_AUDIO_MODEL:
            providers.append(
                OpenAIAudioProvider(
                    name=f"{settings.SECONDARY_AI_NAME}-audio",
                    client=secondary,
                    model=settings.SECONDARY_AI_AUDIO_MODEL,
                    timeout_seconds=settings.AI_AUDIO_TIMEOUT_SECONDS,
                    **policy,
                )
            )

    if not providers:
        logger.warning("No AI provider API keys configured; analyses will fail with provider_unavailable")

    providers_by_kind = {kind: [p for p in providers if p.supports(kind)] for kind in PROVIDER_KINDS}
    return AnalysisAdapter(providers_by_kind, cache=cache if cache is not None else get_result_cache())


_default_adapter: Optional[AnalysisAdapter] = None


def get_analysis_adapter() -> AnalysisAdapter:
    """FastAPI dependency returning the process-wide adapter."""
    global _default_adapter
    if _default_adapter is None:
        _default_adapter = build_default_adapter()
    return _default_adapter
