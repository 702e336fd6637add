"""AI providers that turn one asset into a raw analysis payload."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import ffmpeg
import openai
from openai import AsyncOpenAI

from .audio import prepare_audio_payload
from .llm import build_image_message, build_system_prompt, describe_vehicle, extract_json_payload
from .models import AnalysisKind

logger = logging.getLogger(__name__)


class ProviderOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    TIMEOUT = "TIMEOUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    OTHER_ERROR = "OTHER_ERROR"


TRANSIENT_OUTCOMES = frozenset(
    {ProviderOutcome.TIMEOUT, ProviderOutcome.QUOTA_EXCEEDED, ProviderOutcome.OTHER_ERROR}
)


@dataclass
class AssetPayload:
    """Bytes of one stored asset, loaded for a provider call."""

    asset_id: str
    kind: str  # image, audio
    data: bytes
    content_hash: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    position: int = 0


@dataclass
class ProviderCallAttempt:
    provider: str
    kind: str
    attempt_number: int
    outcome: ProviderOutcome
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "kind": self.kind,
            "attempt_number": self.attempt_number,
            "outcome": self.outcome.value,
            "error": self.error,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class ProviderError(Exception):
    """A provider call failed with a classified outcome."""

    def __init__(self, provider: str, outcome: ProviderOutcome, message: str):
        self.provider = provider
        self.outcome = outcome
        self.message = message
        super().__init__(f"{provider}: {outcome.value}: {message}")


class AnalysisProvider(ABC):
    """Base class for analysis providers.

    Subclasses return the provider's raw JSON object; validation against the
    result contract happens in the adapter.
    """

    name: str = "provider"
    kinds: Sequence[AnalysisKind] = ()

    def __init__(
        self,
        *,
        timeout_seconds: float = 90.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 2.0,
    ):
        self.timeout_seconds = float(timeout_seconds)
        self.max_retries = max(int(max_retries), 1)
        self.retry_delay_seconds = max(float(retry_delay_seconds), 0.0)

    def supports(self, kind: AnalysisKind) -> bool:
        return AnalysisKind(kind) in self.kinds

    @abstractmethod
    async def fetch(
        self,
        asset: Optional[AssetPayload],
        kind: AnalysisKind,
        options: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Return the raw payload or raise ProviderError."""


def classify_openai_error(exc: Exception) -> ProviderOutcome:
    if isinstance(exc, openai.APITimeoutError):
        return ProviderOutcome.TIMEOUT
    if isinstance(exc, openai.RateLimitError):
        return ProviderOutcome.QUOTA_EXCEEDED
    return ProviderOutcome.OTHER_ERROR


class OpenAIChatProvider(AnalysisProvider):
    """Shared chat-completions call for OpenAI-compatible endpoints."""

    json_mode = True

    def __init__(self, *, name: str, client: AsyncOpenAI, model: str, **kwargs: Any):
        super().__init__(**kwargs)
        self.name = name
        self.client = client
        self.model = model

    @abstractmethod
    async def build_messages(
        self,
        asset: Optional[AssetPayload],
        kind: AnalysisKind,
        options: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        ...

    async def fetch(
        self,
        asset: Optional[AssetPayload],
        kind: AnalysisKind,
        options: Dict[str, Any],
    ) -> Dict[str, Any]:
        messages = await self.build_messages(asset, kind, options)
        logger.debug("Calling %s model %s for %s analysis", self.name, self.model, AnalysisKind(kind).value)
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": 2000,
            "timeout": self.timeout_seconds,
        }
        if self.json_mode:
            request["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**request)
        except openai.OpenAIError as exc:
            raise ProviderError(self.name, classify_openai_error(exc), str(exc)) from exc

        content = response.choices[0].message.content if response.choices else None
        try:
            return extract_json_payload(content or "")
        except ValueError as exc:
            raise ProviderError(self.name, ProviderOutcome.MALFORMED_RESPONSE, str(exc)) from exc


class OpenAIVisionProvider(OpenAIChatProvider):
    kinds = (AnalysisKind.PAINT, AnalysisKind.DAMAGE, AnalysisKind.VALUE)

    async def build_messages(self, asset, kind, options):
        image_data = asset.data if asset is not None and asset.kind == "image" else None
        mime_type = asset.mime_type if asset is not None else None
        return [
            {"role": "system", "content": build_system_prompt(kind)},
            {
                "role": "user",
                "content": build_image_message(kind, image_data, mime_type, options.get("vehicle_info")),
            },
        ]


class OpenAIAudioProvider(OpenAIChatProvider):
    kinds = (AnalysisKind.AUDIO,)
    json_mode = False

    async def build_messages(self, asset, kind, options):
        if asset is None or asset.kind != "audio":
            raise ProviderError(self.name, ProviderOutcome.OTHER_ERROR, "audio analysis needs an audio asset")
        try:
            encoded, audio_format = await asyncio.to_thread(prepare_audio_payload, asset.data, asset.filename)
        except (ffmpeg.Error, OSError) as exc:
            raise ProviderError(self.name, ProviderOutcome.OTHER_ERROR, f"could not prepare audio: {exc}") from exc
        return [
            {"role": "system", "content": build_system_prompt(kind)},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": f"Analyze this engine recording.\n{describe_vehicle(options.get('vehicle_info'))}"},
                    {"type": "input_audio", "input_audio": {"data": encoded, "format": audio_format}},
                ],
            },
        ]
