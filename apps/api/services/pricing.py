"""Single source of analysis prices, in credits."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable

from config import settings
from multimodal.models import AnalysisKind


def price_table() -> Dict[str, Decimal]:
    """Current price per analysis kind."""
    raw = {
        AnalysisKind.PAINT: settings.CREDIT_COST_PAINT,
        AnalysisKind.DAMAGE: settings.CREDIT_COST_DAMAGE,
        AnalysisKind.AUDIO: settings.CREDIT_COST_AUDIO,
        AnalysisKind.VALUE: settings.CREDIT_COST_VALUE,
        AnalysisKind.FULL: settings.CREDIT_COST_FULL,
    }
    return {kind.value: Decimal(str(max(float(cost), 0.0))).quantize(Decimal("0.01")) for kind, cost in raw.items()}


def price_for(kinds: Iterable[AnalysisKind]) -> Decimal:
    """Total cost of a request. Reports freeze this value when accepted."""
    table = price_table()
    return sum((table[AnalysisKind(kind).value] for kind in kinds), Decimal("0.00"))
