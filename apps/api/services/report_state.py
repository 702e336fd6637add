"""Report status transitions, enforced with conditional updates."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.report import Report
from services.errors import IllegalTransition, ReportNotFound

logger = logging.getLogger(__name__)


class ReportStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({ReportStatus.COMPLETED, ReportStatus.FAILED})

ALLOWED_TRANSITIONS = {
    ReportStatus.PENDING: frozenset({ReportStatus.PROCESSING, ReportStatus.FAILED}),
    ReportStatus.PROCESSING: frozenset({ReportStatus.COMPLETED, ReportStatus.FAILED}),
    ReportStatus.COMPLETED: frozenset(),
    ReportStatus.FAILED: frozenset(),
}


def can_transition(current: ReportStatus, target: ReportStatus) -> bool:
    return ReportStatus(target) in ALLOWED_TRANSITIONS[ReportStatus(current)]


def allowed_sources(target: ReportStatus) -> list:
    target = ReportStatus(target)
    return [source.value for source, targets in ALLOWED_TRANSITIONS.items() if target in targets]


async def get_status(report_id: str, db: AsyncSession) -> Optional[ReportStatus]:
    result = await db.execute(select(Report.status).where(Report.id == report_id))
    status = result.scalar_one_or_none()
    return ReportStatus(status) if status else None


async def transition(
    db: AsyncSession,
    report_id: str,
    target: ReportStatus,
    *,
    result: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None,
) -> ReportStatus:
    """Move a report to ``target`` if its current status allows it.

    The check and the write are one UPDATE, so two processes racing on the
    same report cannot both win. Terminal statuses never change again.
    """
    target = ReportStatus(target)
    if target == ReportStatus.FAILED and not (notes and notes.strip()):
        raise ValueError("A FAILED transition requires notes")
    if target != ReportStatus.FAILED and notes:
        raise ValueError("Notes are only recorded on FAILED reports")
    if result is not None and target != ReportStatus.COMPLETED:
        raise ValueError("A result document is only recorded on COMPLETED reports")

    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {"status": target.value, "updated_at": now}
    if target == ReportStatus.PROCESSING:
        values["started_at"] = now
    if target in TERMINAL_STATUSES:
        values["completed_at"] = now
    if target == ReportStatus.COMPLETED:
        values["result_json"] = result or {}
    if target == ReportStatus.FAILED:
        values["notes"] = notes.strip()

    outcome = await db.execute(
        update(Report)
        .where(Report.id == report_id, Report.status.in_(allowed_sources(target)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount == 0:
        await db.rollback()
        current = await get_status(report_id, db)
        if current is None:
            raise ReportNotFound(f"Report {report_id} not found")
        raise IllegalTransition(
            f"Report {report_id} cannot move from {current.value} to {target.value}",
            details={"current_status": current.value, "requested_status": target.value},
        )

    await db.commit()
    logger.info("Report %s -> %s", report_id, target.value)
    return target


async def update_failure_notes(db: AsyncSession, report_id: str, notes: str) -> bool:
    """Replace the notes of a FAILED report. Returns False if it is not FAILED."""
    if not (notes and notes.strip()):
        raise ValueError("Failure notes cannot be empty")
    outcome = await db.execute(
        update(Report)
        .where(Report.id == report_id, Report.status == ReportStatus.FAILED.value)
        .values(notes=notes.strip(), updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount == 0:
        await db.rollback()
        return False
    await db.commit()
    return True
