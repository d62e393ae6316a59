"""SQLAlchemy 2.0 ORM models read and written by the ICP discovery engine.

CRM tables (populated by external connectors, read-only here):
  accounts, deals, contacts, deal_contacts, activities, conversations,
  leads, connections, custom_field_discoveries, workspace_configs

Engine output tables:
  icp_profiles, lead_scores
"""

import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ===========================================================================
# CRM records
# ===========================================================================


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(Text)
    industry: Mapped[Optional[str]] = mapped_column(Text)
    employee_count: Mapped[Optional[int]] = mapped_column(Integer)
    annual_revenue: Mapped[Optional[float]] = mapped_column(Float)
    custom_fields: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)


class Deal(Base):
    __tablename__ = "deals"
    __table_args__ = (Index("ix_deals_workspace_stage", "workspace_id", "stage_normalized"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[Optional[str]] = mapped_column(ForeignKey("accounts.id"))
    name: Mapped[Optional[str]] = mapped_column(Text)
    amount: Mapped[Optional[float]] = mapped_column(Float)
    stage_normalized: Mapped[Optional[str]] = mapped_column(String(32))
    probability: Mapped[Optional[float]] = mapped_column(Float)
    close_date: Mapped[Optional[date]] = mapped_column(Date)
    owner: Mapped[Optional[str]] = mapped_column(Text)
    custom_fields: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(Text)
    last_name: Mapped[Optional[str]] = mapped_column(Text)
    email: Mapped[Optional[str]] = mapped_column(Text)
    phone: Mapped[Optional[str]] = mapped_column(Text)
    title: Mapped[Optional[str]] = mapped_column(Text)
    custom_fields: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)


class DealContact(Base):
    """Contact-to-deal association carrying the contact's buying role."""

    __tablename__ = "deal_contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[str] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    contact_id: Mapped[str] = mapped_column(ForeignKey("contacts.id"), nullable=False, index=True)
    buying_role: Mapped[Optional[str]] = mapped_column(String(64))
    role_confidence: Mapped[Optional[float]] = mapped_column(Float)
    seniority_verified: Mapped[Optional[str]] = mapped_column(String(32))
    department_verified: Mapped[Optional[str]] = mapped_column(String(64))
    enrichment_status: Mapped[Optional[str]] = mapped_column(String(32))


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[Optional[str]] = mapped_column(ForeignKey("deals.id"), index=True)
    contact_id: Mapped[Optional[str]] = mapped_column(ForeignKey("contacts.id"))
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Conversation(Base):
    """Recorded call from a call-platform connector."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[Optional[str]] = mapped_column(ForeignKey("deals.id"), index=True)
    call_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    lead_source: Mapped[Optional[str]] = mapped_column(Text)
    is_converted: Mapped[bool] = mapped_column(Boolean, default=False)
    converted_deal_id: Mapped[Optional[str]] = mapped_column(ForeignKey("deals.id"))


class Connection(Base):
    """A connector installed in a workspace (crm, gong, fireflies, ...)."""

    __tablename__ = "connections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connector_name: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="active")


class CustomFieldDiscovery(Base):
    """Output of the external custom-field discovery job.

    result holds {"topFields": [{"fieldKey", "entityType", "icpRelevanceScore",
    "winRateByValue": {value: {"winRate", "dealCount", ...}}}]}
    """

    __tablename__ = "custom_field_discoveries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default="completed")
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class WorkspaceConfig(Base):
    __tablename__ = "workspace_configs"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # {department: [keyword, ...]} checked before the default title table
    department_patterns: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)


# ===========================================================================
# Engine output
# ===========================================================================


class IcpProfileRow(Base):
    __tablename__ = "icp_profiles"
    __table_args__ = (
        UniqueConstraint("workspace_id", "version", name="uq_icp_profiles_workspace_version"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    personas: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    buying_committees: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    company_profile: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    scoring_weights: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    scoring_method: Mapped[str] = mapped_column(String(32), nullable=False)
    model_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    deals_analyzed: Mapped[int] = mapped_column(Integer, default=0)
    won_deals: Mapped[int] = mapped_column(Integer, default=0)
    lost_deals: Mapped[int] = mapped_column(Integer, default=0)
    contacts_enriched: Mapped[int] = mapped_column(Integer, default=0)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    generated_by: Mapped[str] = mapped_column(String(64), default="icp-discovery")


class LeadScoreRow(Base):
    __tablename__ = "lead_scores"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "entity_type", "entity_id",
            name="uq_lead_scores_workspace_entity",
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False)
    score_breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    score_grade: Mapped[str] = mapped_column(String(2), nullable=False)
    scoring_method: Mapped[str] = mapped_column(String(32), nullable=False)
    icp_profile_id: Mapped[Optional[str]] = mapped_column(String(64))
    previous_score: Mapped[Optional[int]] = mapped_column(Integer)
    score_change: Mapped[Optional[int]] = mapped_column(Integer)
    scored_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
