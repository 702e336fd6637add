"""Billing and credits router."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import get_credit_summary, purchase

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    user_id: Optional[str] = None
    credits: float = Field(gt=0, le=100000)
    billing_reference: Optional[str] = None


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user_record(db, scoped_user_id, auth.email)
    return await get_credit_summary(scoped_user_id, db)


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    if not settings.MANUAL_TOPUP_ENABLED:
        raise HTTPException(status_code=503, detail="Manual top-up is disabled.")
    await ensure_user_record(db, scoped_user_id, auth.email)

    billing_reference = request.billing_reference or f"manual:{uuid.uuid4()}"
    result = await purchase(
        scoped_user_id,
        request.credits,
        billing_reference,
        db,
        provider="manual",
    )
    logger.info("Manual top-up for %s: %s credits (applied=%s)", scoped_user_id, request.credits, result["applied"])
    return {
        "ok": True,
        "applied": result["applied"],
        "credits_added": float(result["amount"]) if result["applied"] else 0.0,
        "balance_after": float(result["balance_after"]),
        "billing_reference": billing_reference,
    }
