"""Compensation for analyses that failed after credits were reserved.

Refunds the reserved amount and forces the report to FAILED. Runs on its own
sessions so a broken request session cannot block it, and never raises.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import async_session_maker
from services import credits, report_state
from services.errors import IllegalTransition
from services.report_state import ReportStatus

logger = logging.getLogger(__name__)


@dataclass
class CompensationResult:
    report_id: str
    refunded: bool
    degraded: bool
    marked_failed: bool
    notes: str


def failure_note(report_id: str, reason: str, amount: Optional[Decimal], refunded: bool) -> str:
    reason = reason.strip().rstrip(".") + "."
    if amount is None or amount <= 0:
        return f"{reason} No credits were charged."
    credits_text = f"{Decimal(amount).normalize():f}"
    if refunded:
        return f"{reason} {credits_text} credits were refunded to your account."
    return (
        f"{reason} Your {credits_text} credits could not be refunded automatically. "
        f"Please contact support with report id {report_id}."
    )


async def _refund_with_retries(
    session_maker: async_sessionmaker,
    report_id: str,
    user_id: str,
    amount: Decimal,
    reason: str,
    sleep: Callable[[float], Awaitable[Any]],
) -> bool:
    attempts = max(int(settings.REFUND_MAX_ATTEMPTS), 1)
    for attempt in range(1, attempts + 1):
        try:
            async with session_maker() as db:
                await credits.refund(user_id, amount, report_id, db, reason=reason)
            return True
        except Exception as exc:
            logger.warning("Refund attempt %s/%s for report %s failed: %s", attempt, attempts, report_id, exc)
            if attempt < attempts:
                await sleep(settings.REFUND_RETRY_DELAY_SECONDS * attempt)
    return False


CLAIMED = "claimed"
ALREADY_TERMINAL = "already_terminal"
UNREACHABLE = "unreachable"


async def _mark_failed(
    session_maker: async_sessionmaker,
    report_id: str,
    notes: str,
    sleep: Callable[[float], Awaitable[Any]],
) -> str:
    attempts = max(int(settings.REFUND_MAX_ATTEMPTS), 1)
    for attempt in range(1, attempts + 1):
        try:
            async with session_maker() as db:
                await report_state.transition(db, report_id, ReportStatus.FAILED, notes=notes)
            return CLAIMED
        except IllegalTransition:
            return ALREADY_TERMINAL
        except Exception as exc:
            logger.warning("Marking report %s FAILED, attempt %s/%s failed: %s", report_id, attempt, attempts, exc)
            if attempt < attempts:
                await sleep(settings.REFUND_RETRY_DELAY_SECONDS * attempt)
    logger.error("Report %s could not be marked FAILED during compensation", report_id)
    return UNREACHABLE


async def _update_notes(session_maker: async_sessionmaker, report_id: str, notes: str) -> None:
    try:
        async with session_maker() as db:
            await report_state.update_failure_notes(db, report_id, notes)
    except Exception as exc:
        logger.error("Could not update failure notes of report %s: %s", report_id, exc)


async def compensate(
    report_id: str,
    user_id: str,
    amount: Optional[Any],
    reason: str,
    *,
    session_maker: Optional[async_sessionmaker] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> CompensationResult:
    """Refund ``amount`` for ``report_id`` and mark it FAILED.

    The report is moved to FAILED before any credit is returned, so a run
    that completes concurrently either wins (nothing is refunded) or loses
    its COMPLETED transition. The provisional note asks the user to contact
    support and is replaced once the refund lands.
    """
    session_maker = session_maker or async_session_maker
    charged = Decimal(str(amount)) if amount is not None else None

    provisional = failure_note(report_id, reason, charged, refunded=False)
    claim = await _mark_failed(session_maker, report_id, provisional, sleep)
    if claim == ALREADY_TERMINAL:
        logger.info("Report %s is already terminal; compensation skipped", report_id)
        return CompensationResult(report_id, refunded=False, degraded=False, marked_failed=False, notes="")

    refunded = False
    degraded = False
    if charged is not None and charged > 0:
        refunded = await _refund_with_retries(session_maker, report_id, user_id, charged, reason, sleep)
        if not refunded:
            try:
                async with session_maker() as db:
                    await credits.apply_refund_unlogged(user_id, charged, report_id, db, reason=reason)
                refunded = True
                degraded = True
            except Exception as exc:
                logger.error(
                    "Refund of %s credits for report %s (user %s) failed on every path; "
                    "manual reconciliation required: %s",
                    charged,
                    report_id,
                    user_id,
                    exc,
                )

    notes = failure_note(report_id, reason, charged, refunded)
    if claim == CLAIMED:
        marked = True
        if notes != provisional:
            await _update_notes(session_maker, report_id, notes)
    else:
        marked = await _mark_failed(session_maker, report_id, notes, sleep) == CLAIMED

    logger.info(
        "Compensated report %s: refunded=%s degraded=%s marked_failed=%s",
        report_id,
        refunded,
        degraded,
        marked,
    )
    return CompensationResult(report_id, refunded=refunded, degraded=degraded, marked_failed=marked, notes=notes)
