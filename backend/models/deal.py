"""
Deal model - a sales opportunity moving through the stage pipeline.

Which of the optional columns matter depends on the deal's stage; see
services.deal_pipeline for the stage/field tables.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import CheckConstraint, Date, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base
from services.deal_pipeline import STAGE_ORDER, DealStage

_STAGE_VALUES_SQL: str = ", ".join(f"'{s.value}'" for s in STAGE_ORDER)


class Deal(Base):
    """Deal model representing sales opportunities."""

    __tablename__ = "deals"
    __table_args__ = (
        CheckConstraint(f"stage IN ({_STAGE_VALUES_SQL})", name="ck_deals_stage"),
        CheckConstraint("priority IS NULL OR priority BETWEEN 1 AND 5", name="ck_deals_priority"),
        CheckConstraint(
            "probability IS NULL OR probability BETWEEN 0 AND 100", name="ck_deals_probability"
        ),
        Index("ix_deals_stage", "stage"),
        Index("ix_deals_modified_at", "modified_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )
    modified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True
    )
    # Supabase auth user ids, not resolved here
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    modified_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    deal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stage: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DealStage.LEAD.value
    )

    # Lead
    project_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lead_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lead_owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    priority: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    probability: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    internal_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Discussions
    expected_closing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    customer_need: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_challenges: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # Open | Ongoing | Done
    relationship_strength: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # Low | Medium | High

    # Qualified
    budget: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    business_value: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    decision_maker_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    is_recurring: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # Yes | No | Unclear

    # RFQ
    total_contract_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    currency_type: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    project_duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    action_items: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rfq_received_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    proposal_due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    rfq_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Offered
    current_status: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    closing: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Won
    won_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quarterly_revenue_q1: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    quarterly_revenue_q2: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    quarterly_revenue_q3: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    quarterly_revenue_q4: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    total_revenue: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    signed_contract_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    implementation_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    handoff_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Lost
    lost_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    need_improvement: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Dropped
    drop_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def field_values(self) -> dict[str, Any]:
        """Raw column values keyed by column name."""
        return {column.name: getattr(self, column.key) for column in self.__table__.columns}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        data: dict[str, Any] = {}
        for name, value in self.field_values().items():
            if isinstance(value, uuid.UUID):
                data[name] = str(value)
            elif isinstance(value, Decimal):
                data[name] = float(value)
            elif isinstance(value, (date, datetime)):
                data[name] = to_iso8601(value)
            else:
                data[name] = value
        return data
