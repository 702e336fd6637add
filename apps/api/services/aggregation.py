"""Merge per-asset provider results into one report document and score it."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from multimodal.adapter import ProviderResult
from multimodal.models import AnalysisKind, Issue

BASELINE_SCORE = 95
ISSUE_PENALTY = 15
SEVERE_ISSUE_PENALTY = 25
MIN_SCORE = 10
SEVERE_LEVELS = frozenset({"high", "critical"})

SECTION_COMPLETED = "completed"
SECTION_UNAVAILABLE = "unavailable"
SECTION_SKIPPED = "skipped"


@dataclass(frozen=True)
class ScoreSummary:
    score: int
    band: str
    issue_count: int
    severe_issue_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "band": self.band,
            "issue_count": self.issue_count,
            "severe_issue_count": self.severe_issue_count,
        }


def severity_band(score: int) -> str:
    if score >= 90:
        return "low"
    if score >= 70:
        return "medium"
    if score >= 40:
        return "high"
    return "critical"


def aggregate_score(issues: Iterable[Issue]) -> ScoreSummary:
    """Score a set of issues. Depends only on their count and severities."""
    issues = list(issues)
    severe = sum(1 for issue in issues if issue.severity in SEVERE_LEVELS)
    score = BASELINE_SCORE - ISSUE_PENALTY * len(issues) - SEVERE_ISSUE_PENALTY * severe
    score = max(score, MIN_SCORE)
    return ScoreSummary(score=score, band=severity_band(score), issue_count=len(issues), severe_issue_count=severe)


@dataclass
class SectionOutcome:
    """What happened to one analysis kind within a report run."""

    kind: AnalysisKind
    status: str
    results: List[ProviderResult] = field(default_factory=list)
    reason: Optional[str] = None


def _round(value: float) -> float:
    return round(float(value), 2)


def _summarize_paint(results: Sequence[ProviderResult]) -> Dict[str, Any]:
    models = [r.result for r in results]
    return {
        "average_paint_score": _round(sum(m.paint_quality.overall_score for m in models) / len(models)),
        "original_paint": all(m.color_analysis.original_paint for m in models),
        "colors": sorted({m.color_analysis.color_name for m in models}),
        "defect_count": sum(len(m.defects) for m in models),
    }


def _summarize_damage(results: Sequence[ProviderResult]) -> Dict[str, Any]:
    models = [r.result for r in results]
    return {
        "damage_area_count": sum(len(m.damage_areas) for m in models),
        "total_repair_cost": _round(sum(m.overall_assessment.total_repair_cost for m in models)),
        "damage_levels": [m.overall_assessment.damage_level for m in models],
    }


def _summarize_audio(results: Sequence[ProviderResult]) -> Dict[str, Any]:
    models = [r.result for r in results]
    worst = min(models, key=lambda m: m.overall_score)
    return {
        "engine_score": _round(worst.overall_score),
        "engine_health": worst.engine_health,
        "recordings": len(models),
        "detected_issue_count": sum(len(m.detected_issues) for m in models),
    }


def _summarize_value(results: Sequence[ProviderResult]) -> Dict[str, Any]:
    model = results[0].result
    return {
        "estimated_value": _round(model.estimated_value),
        "currency": model.currency,
        "value_range": model.value_range.model_dump(),
        "market_analysis": model.market_analysis,
    }


SUMMARIZERS = {
    AnalysisKind.PAINT: _summarize_paint,
    AnalysisKind.DAMAGE: _summarize_damage,
    AnalysisKind.AUDIO: _summarize_audio,
    AnalysisKind.VALUE: _summarize_value,
}


def merge_section(outcome: SectionOutcome, asset_positions: Dict[str, int]) -> Dict[str, Any]:
    """Deterministic per-kind merge; assets appear in upload order."""
    if outcome.status != SECTION_COMPLETED or not outcome.results:
        return {"status": outcome.status, "reason": outcome.reason, "assets": [], "issues": []}

    ordered = sorted(
        outcome.results,
        key=lambda r: (asset_positions.get(r.asset_id or "", 0), r.asset_id or ""),
    )
    issues: List[Issue] = []
    for provider_result in ordered:
        issues.extend(provider_result.result.issues())

    return {
        "status": SECTION_COMPLETED,
        "summary": SUMMARIZERS[outcome.kind](ordered),
        "confidence": _round(min(r.result.confidence for r in ordered)),
        "providers": sorted({r.provider for r in ordered}),
        "assets": [r.to_dict() for r in ordered],
        "issues": [issue.model_dump() for issue in issues],
    }


def build_report_document(
    mode: str,
    sections: Sequence[SectionOutcome],
    *,
    asset_positions: Dict[str, int],
    vehicle_info: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Compose the stored result document for a completed report."""
    merged: Dict[str, Any] = {}
    all_issues: List[Issue] = []
    for outcome in sorted(sections, key=lambda s: list(AnalysisKind).index(s.kind)):
        section = merge_section(outcome, asset_positions)
        merged[outcome.kind.value] = section
        all_issues.extend(Issue(**issue) for issue in section["issues"])

    score = aggregate_score(all_issues)
    return {
        "mode": mode,
        "vehicle_info": vehicle_info or {},
        "sections": merged,
        "issues": [issue.model_dump() for issue in all_issues],
        "score": score.to_dict(),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
