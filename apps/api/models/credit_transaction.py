"""CreditTransaction model: append-only ledger log."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_PURCHASE = "PURCHASE"
TRANSACTION_USAGE = "USAGE"
TRANSACTION_REFUND = "REFUND"
TRANSACTION_COMPLETED = "COMPLETED"


class CreditTransaction(Base):
    """Immutable ledger entry. One USAGE and one REFUND per report at most."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("reference_id", "transaction_type", name="uq_credit_transactions_reference_type"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("credit_accounts.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    transaction_type = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=TRANSACTION_COMPLETED)
    description = Column(String, nullable=True)
    billing_provider = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("CreditAccount", back_populates="transactions")
