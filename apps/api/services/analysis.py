"""
Analysis orchestration: validate, reserve credits, call providers, aggregate,
and hand failures to compensation.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from models.analysis_asset import AnalysisAsset
from models.report import Report
from multimodal.adapter import AnalysisAdapter, ProviderResult, get_analysis_adapter
from multimodal.models import AnalysisKind
from multimodal.providers import AssetPayload
from services import credits, report_state
from services.aggregation import (
    SECTION_COMPLETED,
    SECTION_SKIPPED,
    SECTION_UNAVAILABLE,
    SectionOutcome,
    build_report_document,
)
from services.compensation import compensate
from services.errors import (
    AnalysisError,
    AssetMissing,
    BadRequest,
    IllegalTransition,
    InvalidAsset,
    NotReportOwner,
    ProviderUnavailable,
    ReportNotFound,
)
from services.pricing import price_for
from services.report_state import ReportStatus
from services.storage import AssetStorage, get_asset_storage

logger = logging.getLogger(__name__)

ASSET_IMAGE = "image"
ASSET_AUDIO = "audio"

ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic"}
ALLOWED_AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".aac", ".ogg", ".webm"}
GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream"}

IMAGE_KINDS = (AnalysisKind.PAINT, AnalysisKind.DAMAGE)
# Inside a full expertise these may fail without failing the report.
FULL_OPTIONAL_KINDS = (AnalysisKind.AUDIO, AnalysisKind.VALUE)


@dataclass
class Reservation:
    """Credits held for a report that is now PROCESSING."""

    report_id: str
    user_id: str
    amount: Decimal
    transaction_id: Optional[str]


@dataclass
class PlannedCall:
    kind: AnalysisKind
    asset: Optional[AnalysisAsset]
    required: bool


def parse_requested_kinds(kinds: Sequence[Any]) -> List[AnalysisKind]:
    if not kinds:
        raise BadRequest("Select at least one analysis type")

    parsed: List[AnalysisKind] = []
    for raw in kinds:
        try:
            kind = AnalysisKind(str(raw).strip().lower())
        except ValueError as exc:
            raise BadRequest(f"Unknown analysis type: {raw}") from exc
        if kind not in parsed:
            parsed.append(kind)

    if AnalysisKind.FULL in parsed and len(parsed) > 1:
        raise BadRequest("Full expertise already includes every analysis; request it on its own")
    return parsed


def vehicle_info_complete(vehicle_info: Optional[Dict[str, Any]]) -> bool:
    info = vehicle_info or {}
    make = info.get("make") or info.get("brand")
    return bool(make and info.get("model") and info.get("year"))


def _assets_of(report: Report, asset_kind: str) -> List[AnalysisAsset]:
    return [asset for asset in report.assets if asset.kind == asset_kind]


def validate_required_assets(report: Report, kinds: Sequence[AnalysisKind]) -> None:
    images = _assets_of(report, ASSET_IMAGE)
    audio = _assets_of(report, ASSET_AUDIO)
    missing: List[str] = []

    needs_images = any(kind in IMAGE_KINDS or kind == AnalysisKind.FULL for kind in kinds)
    needs_vehicle = any(kind in (AnalysisKind.VALUE, AnalysisKind.FULL) for kind in kinds)

    if needs_images and not images:
        missing.append("image")
    if AnalysisKind.AUDIO in kinds and not audio:
        missing.append("audio")
    if needs_vehicle and not vehicle_info_complete(report.vehicle_info):
        missing.append("vehicle_info")

    if missing:
        raise AssetMissing(
            f"Report is missing required input: {', '.join(missing)}",
            details={"missing": missing},
        )


def plan_calls(report: Report, kinds: Sequence[AnalysisKind]) -> Tuple[List[PlannedCall], List[SectionOutcome]]:
    """Expand requested kinds into one call per (kind, asset)."""
    images = _assets_of(report, ASSET_IMAGE)
    audio = _assets_of(report, ASSET_AUDIO)
    full = AnalysisKind.FULL in kinds
    effective = [AnalysisKind.PAINT, AnalysisKind.DAMAGE, AnalysisKind.AUDIO, AnalysisKind.VALUE] if full else list(kinds)

    calls: List[PlannedCall] = []
    skipped: List[SectionOutcome] = []
    for kind in effective:
        required = not (full and kind in FULL_OPTIONAL_KINDS)
        if kind in IMAGE_KINDS:
            calls.extend(PlannedCall(kind, asset, required) for asset in images)
        elif kind == AnalysisKind.AUDIO:
            if not audio:
                skipped.append(SectionOutcome(kind, SECTION_SKIPPED, reason="No engine recording was uploaded"))
            calls.extend(PlannedCall(kind, asset, required) for asset in audio)
        elif kind == AnalysisKind.VALUE:
            calls.append(PlannedCall(kind, images[0] if images else None, required))
    return calls, skipped


def _clean_vehicle_info(vehicle_info: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not vehicle_info:
        return {}
    cleaned = {str(k): v for k, v in vehicle_info.items() if v not in (None, "")}
    if "brand" in cleaned and "make" not in cleaned:
        cleaned["make"] = cleaned["brand"]
    return cleaned


async def start_report(
    user_id: str,
    kinds: Sequence[Any],
    db: AsyncSession,
    *,
    vehicle_info: Optional[Dict[str, Any]] = None,
) -> Report:
    """Create a PENDING report with its price frozen."""
    requested = parse_requested_kinds(kinds)
    report = Report(
        id=str(uuid.uuid4()),
        user_id=user_id,
        requested_kinds=[kind.value for kind in requested],
        status=ReportStatus.PENDING.value,
        cost=price_for(requested),
        vehicle_info=_clean_vehicle_info(vehicle_info),
    )
    db.add(report)
    await db.commit()
    logger.info("Report %s created for user %s: kinds=%s cost=%s", report.id, user_id, report.requested_kinds, report.cost)
    return await load_report(report.id, db)


async def load_report(report_id: str, db: AsyncSession) -> Report:
    result = await db.execute(
        select(Report)
        .options(selectinload(Report.assets))
        .where(Report.id == report_id)
        .execution_options(populate_existing=True)
    )
    report = result.scalar_one_or_none()
    if not report:
        raise ReportNotFound(f"Report {report_id} not found")
    return report


async def get_report_for_user(report_id: str, user_id: str, db: AsyncSession) -> Report:
    report = await load_report(report_id, db)
    if report.user_id != user_id:
        raise NotReportOwner("You do not have access to this report")
    return report


async def list_reports(user_id: str, db: AsyncSession, limit: int = 20) -> List[Report]:
    result = await db.execute(
        select(Report)
        .options(selectinload(Report.assets))
        .where(Report.user_id == user_id)
        .order_by(Report.created_at.desc())
        .limit(max(min(int(limit), 100), 1))
    )
    return list(result.scalars().all())


def _validate_upload(report: Report, asset_kind: str, filename: str, size: int, mime_type: Optional[str]) -> None:
    suffix = os.path.splitext(filename or "")[1].lower()
    content_type = (mime_type or "").lower()

    if asset_kind == ASSET_IMAGE:
        allowed, limit, max_count, prefix = (
            ALLOWED_IMAGE_EXTENSIONS,
            settings.MAX_IMAGE_UPLOAD_BYTES,
            settings.MAX_IMAGES_PER_REPORT,
            "image/",
        )
    elif asset_kind == ASSET_AUDIO:
        allowed, limit, max_count, prefix = (
            ALLOWED_AUDIO_EXTENSIONS,
            settings.MAX_AUDIO_UPLOAD_BYTES,
            settings.MAX_AUDIO_PER_REPORT,
            "audio/",
        )
    else:
        raise InvalidAsset(f"Unsupported asset kind '{asset_kind}'. Use image or audio.")

    if suffix not in allowed:
        raise InvalidAsset(
            f"Unsupported {asset_kind} file type. Allowed: {', '.join(sorted(allowed))}",
        )
    if content_type and content_type not in GENERIC_CONTENT_TYPES and not content_type.startswith(prefix):
        raise InvalidAsset(f"Content type {content_type} does not match an {asset_kind} upload")
    if size <= 0:
        raise InvalidAsset("Uploaded file is empty")
    if size > limit:
        raise InvalidAsset(f"{asset_kind.capitalize()} exceeds the {limit // (1024 * 1024)} MB limit")
    if len(_assets_of(report, asset_kind)) >= max_count:
        raise InvalidAsset(f"A report accepts at most {max_count} {asset_kind} files")


async def add_asset(
    report_id: str,
    user_id: str,
    *,
    asset_kind: str,
    filename: str,
    data: bytes,
    db: AsyncSession,
    mime_type: Optional[str] = None,
    storage: Optional[AssetStorage] = None,
) -> AnalysisAsset:
    """Attach an uploaded file to a PENDING report."""
    report = await get_report_for_user(report_id, user_id, db)
    if report.status != ReportStatus.PENDING.value:
        raise IllegalTransition(f"Report {report_id} is {report.status}; files can only be added before analysis")

    asset_kind = (asset_kind or "").strip().lower()
    _validate_upload(report, asset_kind, filename, len(data), mime_type)

    storage = storage or get_asset_storage()
    reference = await storage.store(data, asset_kind, filename)
    asset = AnalysisAsset(
        id=str(uuid.uuid4()),
        report_id=report.id,
        user_id=user_id,
        kind=asset_kind,
        storage_reference=reference,
        original_filename=filename,
        mime_type=mime_type,
        position=len(report.assets),
        size_bytes=len(data),
        content_hash=hashlib.sha256(data).hexdigest(),
    )
    db.add(asset)
    await db.commit()
    logger.info("Stored %s asset %s for report %s (%s bytes)", asset_kind, asset.id, report.id, asset.size_bytes)
    return asset


async def begin_analysis(
    report_id: str,
    user_id: str,
    db: AsyncSession,
    *,
    session_maker: Optional[async_sessionmaker] = None,
) -> Reservation:
    """Validate inputs, debit the report's cost and mark it PROCESSING."""
    report = await get_report_for_user(report_id, user_id, db)
    if report.status != ReportStatus.PENDING.value:
        raise IllegalTransition(
            f"Report {report_id} is {report.status}; analysis can only start from PENDING",
            details={"current_status": report.status},
        )

    kinds = parse_requested_kinds(report.requested_kinds)
    validate_required_assets(report, kinds)

    charge = await credits.debit(
        report.user_id,
        report.cost,
        report.id,
        db,
        reason=f"Analysis: {', '.join(k.value for k in kinds)}",
    )
    reservation = Reservation(
        report_id=report.id,
        user_id=report.user_id,
        amount=charge["amount"],
        transaction_id=charge["transaction_id"],
    )

    try:
        await report_state.transition(db, report.id, ReportStatus.PROCESSING)
    except IllegalTransition:
        # Another worker claimed the report; it owns the reservation now.
        logger.info("Report %s was claimed by a concurrent run", report.id)
        raise
    except asyncio.CancelledError:
        await asyncio.shield(
            compensate(
                report.id,
                report.user_id,
                reservation.amount,
                "Analysis was interrupted before it started",
                session_maker=session_maker,
            )
        )
        raise
    except Exception:
        logger.exception("Could not mark report %s PROCESSING after debit", report.id)
        await compensate(
            report.id,
            report.user_id,
            reservation.amount,
            "Analysis could not be started",
            session_maker=session_maker,
        )
        raise
    return reservation


async def _load_payloads(report: Report, storage: AssetStorage) -> Dict[str, AssetPayload]:
    async def _load(asset: AnalysisAsset) -> AssetPayload:
        return AssetPayload(
            asset_id=asset.id,
            kind=asset.kind,
            data=await storage.read(asset.storage_reference),
            content_hash=asset.content_hash,
            filename=asset.original_filename,
            mime_type=asset.mime_type,
            position=asset.position or 0,
        )

    payloads = await asyncio.gather(*(_load(asset) for asset in report.assets))
    return {payload.asset_id: payload for payload in payloads}


async def _invoke_and_aggregate(report: Report, adapter: AnalysisAdapter, storage: AssetStorage) -> Dict[str, Any]:
    kinds = parse_requested_kinds(report.requested_kinds)
    calls, sections = plan_calls(report, kinds)
    payloads = await _load_payloads(report, storage)
    options = {"vehicle_info": report.vehicle_info or {}}

    outcomes = await asyncio.gather(
        *(
            adapter.analyze(payloads[call.asset.id] if call.asset else None, call.kind, options)
            for call in calls
        ),
        return_exceptions=True,
    )

    grouped: Dict[AnalysisKind, List[Tuple[PlannedCall, Any]]] = {}
    for call, outcome in zip(calls, outcomes):
        if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
            raise outcome
        grouped.setdefault(call.kind, []).append((call, outcome))

    for kind, entries in grouped.items():
        errors = [outcome for _, outcome in entries if isinstance(outcome, Exception)]
        if not errors:
            results: List[ProviderResult] = [outcome for _, outcome in entries]
            sections.append(SectionOutcome(kind, SECTION_COMPLETED, results=results))
            continue
        if entries[0][0].required:
            raise errors[0]
        logger.warning("Optional %s analysis for report %s unavailable: %s", kind.value, report.id, errors[0])
        reason = errors[0].message if isinstance(errors[0], AnalysisError) else "Analysis failed"
        sections.append(SectionOutcome(kind, SECTION_UNAVAILABLE, reason=reason))

    mode = AnalysisKind.FULL.value if AnalysisKind.FULL in kinds else "standard"
    return build_report_document(
        mode,
        sections,
        asset_positions={asset.id: asset.position or 0 for asset in report.assets},
        vehicle_info=report.vehicle_info,
    )


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, AnalysisError):
        return f"Analysis failed: {exc.message}"
    if isinstance(exc, asyncio.CancelledError):
        return "Analysis was interrupted"
    return "Analysis failed due to an internal error"


async def execute_analysis(
    report_id: str,
    db: AsyncSession,
    *,
    adapter: Optional[AnalysisAdapter] = None,
    storage: Optional[AssetStorage] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> Report:
    """Run provider calls for a PROCESSING report and complete it.

    Any failure after this point is compensated: the reserved credits are
    refunded and the report is marked FAILED before the error propagates.
    """
    report = await load_report(report_id, db)
    if report.status != ReportStatus.PROCESSING.value:
        raise IllegalTransition(
            f"Report {report_id} is {report.status}; only PROCESSING reports can be executed",
            details={"current_status": report.status},
        )
    usage = await credits.get_usage_transaction(report.id, db)
    reserved = usage.amount if usage else None
    user_id = report.user_id

    adapter = adapter or get_analysis_adapter()
    storage = storage or get_asset_storage()

    try:
        document = await asyncio.wait_for(
            _invoke_and_aggregate(report, adapter, storage),
            timeout=settings.ANALYSIS_HARD_TIMEOUT_SECONDS,
        )
        await report_state.transition(db, report.id, ReportStatus.COMPLETED, result=document)
    except asyncio.CancelledError as exc:
        await asyncio.shield(
            compensate(report.id, user_id, reserved, _failure_reason(exc), session_maker=session_maker)
        )
        raise
    except asyncio.TimeoutError as exc:
        failure = ProviderUnavailable("Analysis did not finish in time. Please try again later.")
        await compensate(report.id, user_id, reserved, _failure_reason(failure), session_maker=session_maker)
        raise failure from exc
    except Exception as exc:
        logger.warning("Analysis for report %s failed: %s", report.id, exc)
        await compensate(report.id, user_id, reserved, _failure_reason(exc), session_maker=session_maker)
        raise

    logger.info("Report %s completed (score=%s)", report.id, document["score"]["score"])
    return await load_report(report.id, db)


async def run_analysis(
    report_id: str,
    user_id: str,
    db: AsyncSession,
    *,
    adapter: Optional[AnalysisAdapter] = None,
    storage: Optional[AssetStorage] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> Report:
    """Validate, reserve, execute. Returns the COMPLETED report."""
    await begin_analysis(report_id, user_id, db, session_maker=session_maker)
    return await execute_analysis(
        report_id,
        db,
        adapter=adapter,
        storage=storage,
        session_maker=session_maker,
    )


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def report_view(report: Report) -> Dict[str, Any]:
    return {
        "report_id": report.id,
        "status": report.status,
        "requested_kinds": list(report.requested_kinds or []),
        "cost": float(report.cost) if report.cost is not None else None,
        "vehicle_info": report.vehicle_info or {},
        "assets": [
            {
                "asset_id": asset.id,
                "kind": asset.kind,
                "filename": asset.original_filename,
                "size_bytes": asset.size_bytes,
                "position": asset.position,
            }
            for asset in report.assets
        ],
        "result": report.result_json if report.status == ReportStatus.COMPLETED.value else None,
        "notes": report.notes,
        "created_at": _iso(report.created_at),
        "started_at": _iso(report.started_at),
        "completed_at": _iso(report.completed_at),
    }
