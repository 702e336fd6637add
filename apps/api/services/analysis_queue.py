"""Durable analysis job queue helpers (Redis/RQ) and stalled-report recovery."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from config import settings
from database import async_session_maker, engine
from models.credit_transaction import TRANSACTION_REFUND, TRANSACTION_USAGE, CreditTransaction
from models.report import Report
from services import credits
from services.analysis import execute_analysis
from services.compensation import compensate
from services.errors import AnalysisError
from services.report_state import ReportStatus

logger = logging.getLogger(__name__)

ANALYSIS_QUEUE_NAME = "analysis_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_analysis_queue() -> Queue:
    """Return the configured analysis queue."""
    return Queue(
        name=ANALYSIS_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=settings.ANALYSIS_JOB_TIMEOUT_SECONDS,
    )


def enqueue_analysis_job(report_id: str) -> Job:
    """Enqueue execution of a PROCESSING report.

    No RQ retry: a second run of a job whose report already failed would only
    hit an illegal transition. Interrupted jobs are picked up by
    recover_stalled_reports instead.
    """
    queue = get_analysis_queue()
    return queue.enqueue(
        "services.analysis_queue.process_analysis_job",
        report_id,
        job_id=f"analysis:{report_id}",
        job_timeout=settings.ANALYSIS_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def _process_analysis_async(report_id: str) -> Dict[str, Any]:
    async with async_session_maker() as db:
        try:
            report = await execute_analysis(report_id, db)
        except AnalysisError as exc:
            logger.warning("Queued analysis for report %s failed: %s", report_id, exc.message)
            return {"report_id": report_id, "status": ReportStatus.FAILED.value, "error_code": exc.error_code}
        return {"report_id": report_id, "status": report.status}


async def _run_job(report_id: str) -> Dict[str, Any]:
    try:
        return await _process_analysis_async(report_id)
    finally:
        # Pooled connections are bound to this job's event loop.
        await engine.dispose()


def process_analysis_job(report_id: str) -> Dict[str, Any]:
    """RQ entry point."""
    return asyncio.run(_run_job(report_id))


async def recover_stalled_reports(
    max_age_minutes: Optional[int] = None,
    *,
    session_maker: Optional[async_sessionmaker] = None,
) -> int:
    """Compensate reports whose run was interrupted.

    Covers PROCESSING reports started before the cutoff, and PENDING reports
    that were debited before the cutoff but never reached PROCESSING.
    """
    session_maker = session_maker or async_session_maker
    age = max_age_minutes if max_age_minutes is not None else settings.STALLED_REPORT_MAX_AGE_MINUTES
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(int(age), 1))

    usage = aliased(CreditTransaction)
    refunded = aliased(CreditTransaction)
    async with session_maker() as db:
        result = await db.execute(
            select(Report).where(
                Report.status == ReportStatus.PROCESSING.value,
                Report.started_at < cutoff,
            )
        )
        stalled = [(report.id, report.user_id) for report in result.scalars().all()]

        result = await db.execute(
            select(Report.id, Report.user_id)
            .join(
                usage,
                and_(usage.reference_id == Report.id, usage.transaction_type == TRANSACTION_USAGE),
            )
            .where(
                Report.status == ReportStatus.PENDING.value,
                usage.created_at < cutoff,
                ~exists().where(
                    refunded.reference_id == Report.id,
                    refunded.transaction_type == TRANSACTION_REFUND,
                ),
            )
        )
        stalled.extend((row.id, row.user_id) for row in result.all())

        reserved = {}
        for report_id, _ in stalled:
            entry = await credits.get_usage_transaction(report_id, db)
            reserved[report_id] = entry.amount if entry else None

    for report_id, user_id in stalled:
        await compensate(
            report_id,
            user_id,
            reserved[report_id],
            "Analysis was interrupted before it could finish",
            session_maker=session_maker,
        )
    if stalled:
        logger.warning("Recovered %s stalled reports", len(stalled))
    return len(stalled)
