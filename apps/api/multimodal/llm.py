import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from .models import AnalysisKind

logger = logging.getLogger(__name__)


def get_openai_client(
    api_key: Optional[str],
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    # Retries are owned by the analysis adapter.
    kwargs: Dict[str, Any] = {"api_key": api_key, "max_retries": 0}
    if base_url:
        kwargs["base_url"] = base_url
    if timeout:
        kwargs["timeout"] = timeout
    return AsyncOpenAI(**kwargs)


def encode_image_bytes(data: bytes) -> str:
    """Encode image bytes to base64 string."""
    return base64.b64encode(data).decode("utf-8")


_COMMON_RULES = """
Return ONLY a strict JSON object, no markdown. Use the exact keys shown.
All scores are numbers from 0 to 100. "confidence" is your confidence (0-100).
Severity values must be one of: "low", "medium", "high", "critical".
Never invent a finding you cannot see or hear; return empty lists instead.
"""

SYSTEM_PROMPTS: Dict[AnalysisKind, str] = {
    AnalysisKind.PAINT: """
    You are an automotive paint inspector. Analyze the photo of the vehicle body
    and assess paint quality, colour consistency and surface condition.

    Schema:
    {
      "paint_quality": {"overall_score": 0-100, "gloss_level": 0-100, "finish": "string"},
      "color_analysis": {"color_name": "string", "original_paint": true, "color_match": 0-100},
      "surface_analysis": {"paint_thickness_microns": number, "uniformity": 0-100},
      "defects": [
        {"defect_type": "scratch|swirl|orange_peel|repaint|fade|rust",
         "location": "string", "severity": "low|medium|high|critical", "description": "string"}
      ],
      "confidence": 0-100
    }
    """,
    AnalysisKind.DAMAGE: """
    You are an automotive damage assessor. Identify every visible body damage
    in the photo and estimate repair cost in Turkish lira.

    Schema:
    {
      "damage_areas": [
        {"area": "front_bumper|hood|left_door|...", "damage_type": "dent|scratch|crack|deformation",
         "severity": "low|medium|high|critical", "description": "string",
         "estimated_repair_cost": number}
      ],
      "overall_assessment": {"damage_level": "none|light|moderate|heavy",
                             "total_repair_cost": number, "summary": "string"},
      "confidence": 0-100
    }
    """,
    AnalysisKind.AUDIO: """
    You are an engine diagnostics expert. Listen to the engine recording and
    assess engine health from its sound.

    Schema:
    {
      "overall_score": 0-100,
      "engine_health": "excellent|good|fair|poor",
      "rpm_analysis": {"idle_rpm": number, "rpm_stability": 0-100},
      "sound_quality": {"overall_quality": 0-100, "noise_level": 0-100},
      "detected_issues": [
        {"issue_type": "string", "severity": "low|medium|high|critical",
         "description": "string", "estimated_repair_cost": number}
      ],
      "confidence": 0-100
    }
    """,
    AnalysisKind.VALUE: """
    You are a used-car market analyst for the Turkish market. Estimate the
    current market value of the vehicle from its details and photo.

    Schema:
    {
      "estimated_value": number,
      "currency": "TRY",
      "value_range": {"minimum": number, "maximum": number},
      "market_analysis": "string",
      "depreciation_factors": ["string"],
      "confidence": 0-100
    }
    """,
}


def build_system_prompt(kind: AnalysisKind) -> str:
    return SYSTEM_PROMPTS[AnalysisKind(kind)] + _COMMON_RULES


def describe_vehicle(vehicle_info: Optional[Dict[str, Any]]) -> str:
    if not vehicle_info:
        return "Vehicle details: not provided."
    parts = []
    for key in ("make", "brand", "model", "year", "mileage", "fuel_type", "transmission"):
        value = vehicle_info.get(key)
        if value not in (None, ""):
            parts.append(f"{key}: {value}")
    return "Vehicle details: " + (", ".join(parts) if parts else "not provided.")


def build_image_message(
    kind: AnalysisKind,
    image_data: Optional[bytes],
    mime_type: Optional[str],
    vehicle_info: Optional[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    content: List[Dict[str, Any]] = [
        {"type": "text", "text": f"Run a {AnalysisKind(kind).value} analysis.\n{describe_vehicle(vehicle_info)}"}
    ]
    if image_data:
        content.append(
            {
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type or 'image/jpeg'};base64,{encode_image_bytes(image_data)}"},
            }
        )
    return content


_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json_payload(text: str) -> Dict[str, Any]:
    """Pull the JSON object out of a model reply, tolerating markdown fences."""
    if not text or not text.strip():
        raise ValueError("empty model reply")

    candidate = text.strip()
    fenced = _FENCE_PATTERN.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("model reply contains no JSON object")
        try:
            parsed = json.loads(candidate[start:end + 1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"model reply is not valid JSON: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ValueError("model reply JSON is not an object")
    return parsed
