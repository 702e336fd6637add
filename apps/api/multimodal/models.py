"""Typed result contract for provider responses, one model per analysis kind."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class AnalysisKind(str, Enum):
    PAINT = "paint"
    DAMAGE = "damage"
    AUDIO = "audio"
    VALUE = "value"
    FULL = "full"


# Kinds a provider is actually asked for; FULL is composed from these.
PROVIDER_KINDS = (AnalysisKind.PAINT, AnalysisKind.DAMAGE, AnalysisKind.AUDIO, AnalysisKind.VALUE)

Severity = Literal["low", "medium", "high", "critical"]

SEVERITY_ALIASES = {
    "minor": "low",
    "light": "low",
    "moderate": "medium",
    "major": "high",
    "severe": "high",
}


def normalize_severity(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        return SEVERITY_ALIASES.get(lowered, lowered)
    return value


class Issue(BaseModel):
    """Flattened finding used for scoring."""

    kind: str
    label: str
    severity: Severity
    description: str = ""


class Finding(BaseModel):
    model_config = ConfigDict(extra="allow")

    severity: Severity
    description: Optional[str] = ""

    @field_validator("severity", mode="before")
    @classmethod
    def lower_severity(cls, value: Any) -> Any:
        return normalize_severity(value)


class ResultModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    confidence: float = Field(ge=0, le=100)

    def issues(self) -> List[Issue]:
        return []


# Paint

class PaintQuality(BaseModel):
    model_config = ConfigDict(extra="allow")

    overall_score: float = Field(ge=0, le=100)
    gloss_level: Optional[float] = Field(default=None, ge=0, le=100)
    finish: Optional[str] = None


class ColorAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow")

    color_name: str
    original_paint: bool
    color_match: float = Field(ge=0, le=100)


class SurfaceAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow")

    paint_thickness_microns: float = Field(ge=0)
    uniformity: float = Field(ge=0, le=100)


class PaintDefect(Finding):
    defect_type: str
    location: str


class PaintResult(ResultModel):
    kind: Literal["paint"] = "paint"
    paint_quality: PaintQuality
    color_analysis: ColorAnalysis
    surface_analysis: SurfaceAnalysis
    defects: List[PaintDefect] = Field(default_factory=list)

    def issues(self) -> List[Issue]:
        return [
            Issue(kind="paint", label=f"{d.defect_type} ({d.location})", severity=d.severity, description=d.description or "")
            for d in self.defects
        ]


# Damage

class DamageArea(Finding):
    area: str
    damage_type: str
    estimated_repair_cost: float = Field(default=0, ge=0)


class DamageAssessment(BaseModel):
    model_config = ConfigDict(extra="allow")

    damage_level: str
    total_repair_cost: float = Field(ge=0)
    summary: str = ""


class DamageResult(ResultModel):
    kind: Literal["damage"] = "damage"
    damage_areas: List[DamageArea]
    overall_assessment: DamageAssessment

    def issues(self) -> List[Issue]:
        return [
            Issue(kind="damage", label=f"{a.damage_type} ({a.area})", severity=a.severity, description=a.description or "")
            for a in self.damage_areas
        ]


# Engine sound

class RpmAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow")

    idle_rpm: float = Field(ge=0)
    rpm_stability: float = Field(ge=0, le=100)


class SoundQuality(BaseModel):
    model_config = ConfigDict(extra="allow")

    overall_quality: float = Field(ge=0, le=100)
    noise_level: Optional[float] = Field(default=None, ge=0, le=100)


class EngineIssue(Finding):
    issue_type: str
    estimated_repair_cost: float = Field(default=0, ge=0)


class EngineSoundResult(ResultModel):
    kind: Literal["audio"] = "audio"
    overall_score: float = Field(ge=0, le=100)
    engine_health: str
    rpm_analysis: RpmAnalysis
    sound_quality: SoundQuality
    detected_issues: List[EngineIssue] = Field(default_factory=list)

    def issues(self) -> List[Issue]:
        return [
            Issue(kind="audio", label=i.issue_type, severity=i.severity, description=i.description or "")
            for i in self.detected_issues
        ]


# Value

class ValueRange(BaseModel):
    minimum: float = Field(ge=0)
    maximum: float = Field(ge=0)

    @model_validator(mode="after")
    def check_ordered(self) -> "ValueRange":
        if self.minimum > self.maximum:
            raise ValueError("minimum must not exceed maximum")
        return self


class ValueResult(ResultModel):
    kind: Literal["value"] = "value"
    estimated_value: float = Field(gt=0)
    currency: str = "TRY"
    value_range: ValueRange
    market_analysis: str = Field(min_length=1)
    depreciation_factors: List[str] = Field(default_factory=list)


AnalysisResult = Union[PaintResult, DamageResult, EngineSoundResult, ValueResult]

RESULT_MODELS: Dict[AnalysisKind, type] = {
    AnalysisKind.PAINT: PaintResult,
    AnalysisKind.DAMAGE: DamageResult,
    AnalysisKind.AUDIO: EngineSoundResult,
    AnalysisKind.VALUE: ValueResult,
}


class ResponseContractError(ValueError):
    """Provider payload is missing required fields or has invalid values."""

    def __init__(self, kind: AnalysisKind, message: str, fields: Optional[List[str]] = None):
        self.kind = kind
        self.fields = fields or []
        super().__init__(message)


def parse_analysis_result(kind: AnalysisKind, raw: Any) -> AnalysisResult:
    """Validate a raw provider payload against the contract for ``kind``."""
    kind = AnalysisKind(kind)
    model = RESULT_MODELS.get(kind)
    if model is None:
        raise ValueError(f"No result contract for analysis kind '{kind.value}'")
    if not isinstance(raw, dict):
        raise ResponseContractError(kind, f"{kind.value} payload is not a JSON object")

    payload = dict(raw)
    payload["kind"] = kind.value
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise ResponseContractError(
            kind,
            f"{kind.value} payload violates the result contract: {', '.join(fields)}",
            fields=fields,
        ) from exc
