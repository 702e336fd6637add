"""Fakes and seed helpers shared by the test modules."""

import asyncio
import copy
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from models.user import User
from multimodal.models import AnalysisKind
from multimodal.providers import AnalysisProvider, ProviderError, ProviderOutcome
from services import credits
from services.analysis import add_asset, start_report

VEHICLE = {"make": "Toyota", "model": "Corolla", "year": 2019, "mileage": 84000}

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"fake-jpeg-body" * 16
MP3_BYTES = b"ID3" + b"fake-mp3-frames" * 16

VALID_PAYLOADS: Dict[AnalysisKind, Dict[str, Any]] = {
    AnalysisKind.PAINT: {
        "paint_quality": {"overall_score": 88, "gloss_level": 80, "finish": "factory"},
        "color_analysis": {"color_name": "white", "original_paint": True, "color_match": 97},
        "surface_analysis": {"paint_thickness_microns": 110, "uniformity": 92},
        "defects": [],
        "confidence": 91,
    },
    AnalysisKind.DAMAGE: {
        "damage_areas": [],
        "overall_assessment": {"damage_level": "none", "total_repair_cost": 0, "summary": "No visible damage."},
        "confidence": 90,
    },
    AnalysisKind.AUDIO: {
        "overall_score": 84,
        "engine_health": "good",
        "rpm_analysis": {"idle_rpm": 780, "rpm_stability": 90},
        "sound_quality": {"overall_quality": 85, "noise_level": 20},
        "detected_issues": [],
        "confidence": 80,
    },
    AnalysisKind.VALUE: {
        "estimated_value": 925000,
        "currency": "TRY",
        "value_range": {"minimum": 880000, "maximum": 970000},
        "market_analysis": "Demand for this model is steady.",
        "depreciation_factors": ["mileage"],
        "confidence": 75,
    },
}


def valid_payload(kind: AnalysisKind, **overrides: Any) -> Dict[str, Any]:
    payload = copy.deepcopy(VALID_PAYLOADS[AnalysisKind(kind)])
    payload.update(overrides)
    return payload


def damage_payload(*severities: str) -> Dict[str, Any]:
    areas = [
        {
            "area": f"panel_{index}",
            "damage_type": "dent",
            "severity": severity,
            "description": "Visible dent",
            "estimated_repair_cost": 1500,
        }
        for index, severity in enumerate(severities)
    ]
    return valid_payload(
        AnalysisKind.DAMAGE,
        damage_areas=areas,
        overall_assessment={"damage_level": "moderate", "total_repair_cost": 1500 * len(areas), "summary": "Dents"},
    )


def transient(provider: str = "fake", outcome: ProviderOutcome = ProviderOutcome.OTHER_ERROR) -> ProviderError:
    return ProviderError(provider, outcome, "simulated failure")


class Hang:
    """Scripted response that never returns within the provider timeout."""

    def __init__(self, seconds: float = 5.0):
        self.seconds = seconds


class FakeProvider(AnalysisProvider):
    """Scripted provider. Each call pops the next response; empty script means success."""

    def __init__(
        self,
        name: str,
        kinds: Iterable[AnalysisKind],
        responses: Optional[List[Any]] = None,
        *,
        timeout_seconds: float = 1.0,
        max_retries: int = 3,
    ):
        super().__init__(timeout_seconds=timeout_seconds, max_retries=max_retries, retry_delay_seconds=0.0)
        self.name = name
        self.kinds = tuple(AnalysisKind(k) for k in kinds)
        self.responses = list(responses or [])
        self.calls: List[Any] = []

    async def fetch(self, asset, kind, options):
        self.calls.append((asset.asset_id if asset else None, AnalysisKind(kind)))
        item = self.responses.pop(0) if self.responses else valid_payload(kind)
        if isinstance(item, Hang):
            await asyncio.sleep(item.seconds)
            return valid_payload(kind)
        if isinstance(item, BaseException):
            raise item
        return item


async def seed_user(session_maker, user_id: str, balance: Any = 0) -> None:
    async with session_maker() as db:
        db.add(User(id=user_id, email=f"{user_id}@example.test"))
        await db.commit()
        await credits.ensure_credit_account(user_id, db)
        if Decimal(str(balance)) > 0:
            await credits.purchase(user_id, balance, f"seed:{user_id}", db)


async def balance_of(session_maker, user_id: str) -> Decimal:
    async with session_maker() as db:
        return await credits.get_credit_balance(user_id, db)


async def create_report(
    session_maker,
    storage,
    user_id: str,
    kinds: List[str],
    *,
    images: int = 1,
    audio: int = 0,
    vehicle_info: Optional[Dict[str, Any]] = None,
) -> str:
    async with session_maker() as db:
        report = await start_report(user_id, kinds, db, vehicle_info=vehicle_info)
        for index in range(images):
            await add_asset(
                report.id,
                user_id,
                asset_kind="image",
                filename=f"car_{index}.jpg",
                data=JPEG_BYTES + bytes([index]),
                mime_type="image/jpeg",
                db=db,
                storage=storage,
            )
        for index in range(audio):
            await add_asset(
                report.id,
                user_id,
                asset_kind="audio",
                filename=f"engine_{index}.mp3",
                data=MP3_BYTES + bytes([index]),
                mime_type="audio/mpeg",
                db=db,
                storage=storage,
            )
        return report.id
