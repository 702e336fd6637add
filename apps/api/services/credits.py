"""Credit ledger: balances, usage debits and compensating refunds.

Every mutation is one database transaction: a conditional UPDATE on the
account row plus the INSERT of its transaction row, committed together. The
unique (reference_id, transaction_type) constraint makes debits and refunds
idempotent per report even across worker processes.
"""

from __future__ import annotations

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_account import CreditAccount
from models.credit_transaction import (
    TRANSACTION_COMPLETED,
    TRANSACTION_PURCHASE,
    TRANSACTION_REFUND,
    TRANSACTION_USAGE,
    CreditTransaction,
)
from services.errors import BadRequest, InsufficientFunds, LedgerError
from services.pricing import price_table

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_amount(value: Any) -> Decimal:
    """Normalise a credit amount to a positive two-decimal Decimal."""
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise BadRequest(f"Invalid credit amount: {value!r}") from exc
    if amount <= 0:
        raise BadRequest("Credit amount must be greater than 0")
    return amount


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


async def get_credit_account(user_id: str, db: AsyncSession) -> Optional[CreditAccount]:
    result = await db.execute(
        select(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_credit_account(user_id: str, db: AsyncSession) -> CreditAccount:
    """Return the user's account, creating an empty one on first use."""
    account = await get_credit_account(user_id, db)
    if account:
        return account

    account = CreditAccount(
        id=str(uuid.uuid4()),
        user_id=user_id,
        balance=ZERO,
        total_purchased=ZERO,
        total_used=ZERO,
        total_refunded=ZERO,
    )
    db.add(account)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created it first.
        await db.rollback()
        account = await get_credit_account(user_id, db)
    return account


async def get_credit_balance(user_id: str, db: AsyncSession) -> Decimal:
    result = await db.execute(select(CreditAccount.balance).where(CreditAccount.user_id == user_id))
    return _as_decimal(result.scalar())


async def _find_transaction(
    db: AsyncSession,
    reference_id: str,
    transaction_type: str,
) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.reference_id == reference_id,
            CreditTransaction.transaction_type == transaction_type,
        )
    )
    return result.scalar_one_or_none()


async def get_usage_transaction(reference_id: str, db: AsyncSession) -> Optional[CreditTransaction]:
    return await _find_transaction(db, reference_id, TRANSACTION_USAGE)


async def get_refund_transaction(reference_id: str, db: AsyncSession) -> Optional[CreditTransaction]:
    return await _find_transaction(db, reference_id, TRANSACTION_REFUND)


async def _already_applied(user_id: str, db: AsyncSession, entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "applied": False,
        "amount": _as_decimal(entry.amount),
        "balance_after": await get_credit_balance(user_id, db),
        "transaction_id": entry.id,
    }


def _new_entry(
    account: CreditAccount,
    *,
    transaction_type: str,
    amount: Decimal,
    reference_id: str,
    description: Optional[str],
    billing_provider: Optional[str] = None,
) -> CreditTransaction:
    return CreditTransaction(
        id=str(uuid.uuid4()),
        account_id=account.id,
        user_id=account.user_id,
        transaction_type=transaction_type,
        amount=amount,
        reference_id=reference_id,
        status=TRANSACTION_COMPLETED,
        description=description,
        billing_provider=billing_provider,
    )


async def _read_account_balance(db: AsyncSession, account_id: str) -> Decimal:
    result = await db.execute(select(CreditAccount.balance).where(CreditAccount.id == account_id))
    return _as_decimal(result.scalar())


async def debit(
    user_id: str,
    amount: Any,
    reference_id: str,
    db: AsyncSession,
    *,
    reason: str = "Analysis usage",
) -> Dict[str, Any]:
    """Reserve credits for a report. Rejects overdrafts, no-op on repeat."""
    debit_amount = to_amount(amount)

    existing = await _find_transaction(db, reference_id, TRANSACTION_USAGE)
    if existing:
        logger.info("Debit for reference %s already applied; skipping", reference_id)
        return await _already_applied(user_id, db, existing)

    account = await get_credit_account(user_id, db)
    if account is None:
        raise InsufficientFunds(required=debit_amount, available=ZERO)

    try:
        result = await db.execute(
            update(CreditAccount)
            .where(CreditAccount.id == account.id, CreditAccount.balance >= debit_amount)
            .values(
                balance=CreditAccount.balance - debit_amount,
                total_used=CreditAccount.total_used + debit_amount,
            )
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount
        if updated:
            balance_after = await _read_account_balance(db, account.id)
            entry = _new_entry(
                account,
                transaction_type=TRANSACTION_USAGE,
                amount=debit_amount,
                reference_id=reference_id,
                description=reason,
            )
            entry.balance_after = balance_after
            db.add(entry)
            await db.commit()
        else:
            await db.rollback()
    except IntegrityError:
        await db.rollback()
        existing = await _find_transaction(db, reference_id, TRANSACTION_USAGE)
        logger.info("Concurrent debit for reference %s lost the race; treated as already applied", reference_id)
        return await _already_applied(user_id, db, existing)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerError(f"Could not debit credits for {reference_id}") from exc

    if not updated:
        raise InsufficientFunds(required=debit_amount, available=await get_credit_balance(user_id, db))

    logger.info(
        "Debited %s credits from user %s for %s (balance_after=%s)",
        debit_amount,
        user_id,
        reference_id,
        balance_after,
    )
    return {
        "applied": True,
        "amount": debit_amount,
        "balance_after": balance_after,
        "transaction_id": entry.id,
    }


async def refund(
    user_id: str,
    amount: Any,
    reference_id: str,
    db: AsyncSession,
    *,
    reason: str = "Analysis failed",
) -> Dict[str, Any]:
    """Return credits for a failed report. Safe to call repeatedly."""
    refund_amount = to_amount(amount)

    existing = await _find_transaction(db, reference_id, TRANSACTION_REFUND)
    if existing:
        logger.info("Refund for reference %s already applied; skipping", reference_id)
        return await _already_applied(user_id, db, existing)

    account = await get_credit_account(user_id, db)
    if account is None:
        raise LedgerError(f"No credit account for user {user_id}")

    # total_used never decreases; refunds accumulate in total_refunded so that
    # balance == total_purchased - total_used + total_refunded.
    try:
        await db.execute(
            update(CreditAccount)
            .where(CreditAccount.id == account.id)
            .values(
                balance=CreditAccount.balance + refund_amount,
                total_refunded=CreditAccount.total_refunded + refund_amount,
            )
            .execution_options(synchronize_session=False)
        )
        balance_after = await _read_account_balance(db, account.id)
        entry = _new_entry(
            account,
            transaction_type=TRANSACTION_REFUND,
            amount=refund_amount,
            reference_id=reference_id,
            description=reason,
        )
        entry.balance_after = balance_after
        db.add(entry)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _find_transaction(db, reference_id, TRANSACTION_REFUND)
        logger.info("Concurrent refund for reference %s lost the race; treated as already applied", reference_id)
        return await _already_applied(user_id, db, existing)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerError(f"Could not refund credits for {reference_id}") from exc

    logger.info(
        "Refunded %s credits to user %s for %s (balance_after=%s)",
        refund_amount,
        user_id,
        reference_id,
        balance_after,
    )
    return {
        "applied": True,
        "amount": refund_amount,
        "balance_after": balance_after,
        "transaction_id": entry.id,
    }


async def apply_refund_unlogged(
    user_id: str,
    amount: Any,
    reference_id: str,
    db: AsyncSession,
    *,
    reason: str = "Analysis failed",
) -> Dict[str, Any]:
    """Degraded refund: commit the balance first, then try to log it.

    Only the compensation saga calls this, after the atomic path kept failing.
    A failed log write is reported for manual reconciliation instead of raised.
    """
    refund_amount = to_amount(amount)

    existing = await _find_transaction(db, reference_id, TRANSACTION_REFUND)
    if existing:
        return await _already_applied(user_id, db, existing)

    account = await get_credit_account(user_id, db)
    if account is None:
        raise LedgerError(f"No credit account for user {user_id}")

    try:
        await db.execute(
            update(CreditAccount)
            .where(CreditAccount.id == account.id)
            .values(
                balance=CreditAccount.balance + refund_amount,
                total_refunded=CreditAccount.total_refunded + refund_amount,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerError(f"Could not apply degraded refund for {reference_id}") from exc

    balance_after = await _read_account_balance(db, account.id)
    entry = _new_entry(
        account,
        transaction_type=TRANSACTION_REFUND,
        amount=refund_amount,
        reference_id=reference_id,
        description=f"{reason} (degraded refund path)",
    )
    entry.balance_after = balance_after
    logged = True
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logged = False
        logger.error(
            "Refund of %s credits for %s reached the balance but not the transaction log; "
            "manual reconciliation required: %s",
            refund_amount,
            reference_id,
            exc,
        )

    logger.warning(
        "Degraded refund applied for %s (user=%s, amount=%s, logged=%s)",
        reference_id,
        user_id,
        refund_amount,
        logged,
    )
    return {
        "applied": True,
        "amount": refund_amount,
        "balance_after": balance_after,
        "transaction_id": entry.id if logged else None,
        "logged": logged,
    }


async def purchase(
    user_id: str,
    amount: Any,
    billing_reference: str,
    db: AsyncSession,
    *,
    provider: str = "manual",
    reason: str = "Credit purchase",
) -> Dict[str, Any]:
    """Top up an account. Idempotent per billing reference."""
    grant = to_amount(amount)
    account = await ensure_credit_account(user_id, db)

    existing = await _find_transaction(db, billing_reference, TRANSACTION_PURCHASE)
    if existing:
        return await _already_applied(user_id, db, existing)

    try:
        await db.execute(
            update(CreditAccount)
            .where(CreditAccount.id == account.id)
            .values(
                balance=CreditAccount.balance + grant,
                total_purchased=CreditAccount.total_purchased + grant,
            )
            .execution_options(synchronize_session=False)
        )
        balance_after = await _read_account_balance(db, account.id)
        entry = _new_entry(
            account,
            transaction_type=TRANSACTION_PURCHASE,
            amount=grant,
            reference_id=billing_reference,
            description=reason,
            billing_provider=provider,
        )
        entry.balance_after = balance_after
        db.add(entry)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _find_transaction(db, billing_reference, TRANSACTION_PURCHASE)
        return await _already_applied(user_id, db, existing)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerError(f"Could not record purchase {billing_reference}") from exc

    logger.info("Added %s purchased credits for user %s (%s)", grant, user_id, billing_reference)
    return {
        "applied": True,
        "amount": grant,
        "balance_after": balance_after,
        "transaction_id": entry.id,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    account = await ensure_credit_account(user_id, db)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": float(_as_decimal(account.balance)),
        "total_purchased": float(_as_decimal(account.total_purchased)),
        "total_used": float(_as_decimal(account.total_used)),
        "total_refunded": float(_as_decimal(account.total_refunded)),
        "costs": {kind: float(cost) for kind, cost in price_table().items()},
        "recent_transactions": [
            {
                "id": entry.id,
                "transaction_type": entry.transaction_type,
                "amount": float(_as_decimal(entry.amount)),
                "balance_after": float(_as_decimal(entry.balance_after)) if entry.balance_after is not None else None,
                "reference_id": entry.reference_id,
                "description": entry.description,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
