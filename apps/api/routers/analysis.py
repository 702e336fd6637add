"""
Analysis router: create reports, upload assets, run analyses, read results.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import get_db, get_session_maker
from multimodal.adapter import AnalysisAdapter, get_analysis_adapter
from routers.auth_scope import AuthContext, ensure_user_record, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services import credits
from services.analysis import (
    add_asset,
    begin_analysis,
    get_report_for_user,
    list_reports,
    report_view,
    run_analysis,
    start_report,
)
from services.analysis_queue import enqueue_analysis_job
from services.compensation import compensate
from services.errors import ProviderUnavailable
from services.storage import AssetStorage, get_asset_storage

router = APIRouter()
logger = logging.getLogger(__name__)


class VehicleInfo(BaseModel):
    make: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = Field(default=None, ge=1950, le=2100)
    mileage: Optional[int] = Field(default=None, ge=0)
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None


class StartAnalysisRequest(BaseModel):
    kinds: List[str] = Field(min_length=1)
    vehicle_info: Optional[VehicleInfo] = None
    user_id: Optional[str] = None


class StartAnalysisResponse(BaseModel):
    report_id: str
    status: str
    requested_kinds: List[str]
    cost: float


class UploadAssetResponse(BaseModel):
    asset_id: str
    report_id: str
    kind: str
    file_name: Optional[str] = None
    size_bytes: int
    position: int


def _sanitize_filename(filename: str, default: str) -> str:
    base = os.path.basename(filename or default)
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or default


@router.post("/start", response_model=StartAnalysisResponse)
async def start_analysis(
    request: StartAnalysisRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Create a PENDING report and quote its cost."""
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user_record(db, user_id, auth.email)
    vehicle_info = request.vehicle_info.model_dump(exclude_none=True) if request.vehicle_info else None
    report = await start_report(user_id, request.kinds, db, vehicle_info=vehicle_info)
    return StartAnalysisResponse(
        report_id=report.id,
        status=report.status,
        requested_kinds=list(report.requested_kinds),
        cost=float(report.cost),
    )


@router.post("/{report_id}/upload", response_model=UploadAssetResponse)
async def upload_asset(
    report_id: str,
    file: UploadFile = File(...),
    kind: str = Form(...),
    _rate_limit: None = Depends(rate_limit("analysis_upload", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: AssetStorage = Depends(get_asset_storage),
):
    """Attach an image or engine recording to a PENDING report."""
    filename = _sanitize_filename(file.filename or "", "upload.bin")
    data = await file.read()
    asset = await add_asset(
        report_id,
        auth.user_id,
        asset_kind=kind,
        filename=filename,
        data=data,
        mime_type=file.content_type,
        db=db,
        storage=storage,
    )
    return UploadAssetResponse(
        asset_id=asset.id,
        report_id=asset.report_id,
        kind=asset.kind,
        file_name=asset.original_filename,
        size_bytes=asset.size_bytes,
        position=asset.position,
    )


@router.post("/{report_id}/analyze")
async def analyze_report(
    report_id: str,
    _rate_limit: None = Depends(rate_limit("analysis_run", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    adapter: AnalysisAdapter = Depends(get_analysis_adapter),
    storage: AssetStorage = Depends(get_asset_storage),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Reserve credits and run the analysis, inline or on the job queue."""
    if settings.ANALYSIS_EXECUTION_MODE == "queue":
        reservation = await begin_analysis(report_id, auth.user_id, db, session_maker=session_maker)
        try:
            job = enqueue_analysis_job(report_id)
        except RedisError as exc:
            logger.error("Could not enqueue analysis for report %s: %s", report_id, exc)
            await compensate(
                report_id,
                reservation.user_id,
                reservation.amount,
                "Analysis could not be queued",
                session_maker=session_maker,
            )
            raise ProviderUnavailable("Analysis queue is unavailable. Please try again later.") from exc
        return JSONResponse(
            status_code=202,
            content={"report_id": report_id, "status": "PROCESSING", "job_id": job.id},
        )

    report = await run_analysis(
        report_id,
        auth.user_id,
        db,
        adapter=adapter,
        storage=storage,
        session_maker=session_maker,
    )
    return report_view(report)


@router.get("/{report_id}")
async def get_report(
    report_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    report = await get_report_for_user(report_id, auth.user_id, db)
    return report_view(report)


@router.get("/")
async def list_user_reports(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    reports = await list_reports(auth.user_id, db, limit=limit)
    balance = await credits.get_credit_balance(auth.user_id, db)
    return {
        "reports": [report_view(report) for report in reports],
        "balance": float(balance),
    }
