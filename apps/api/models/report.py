"""Report model for vehicle analysis requests."""

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Numeric, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Report(Base):
    """One analysis request. Status is owned by services.report_state."""

    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    requested_kinds = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="PENDING", index=True)  # PENDING, PROCESSING, COMPLETED, FAILED
    cost = Column(Numeric(12, 2), nullable=False)
    vehicle_info = Column(JSON, nullable=True)
    result_json = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="reports")
    assets = relationship(
        "AnalysisAsset",
        back_populates="report",
        order_by="AnalysisAsset.position",
        cascade="all, delete-orphan",
    )
