"""SQLAlchemy models for the local CRM tables touched by the reconciliation engine.

Five models on the shared declarative Base:
- CompanyModel: Canonical business entity, unique on tax id (CNPJ)
- ContactModel: Person belonging to exactly one company; phone required
- OpportunityModel: Pipeline deal belonging to one company
- IntegrationLinkModel: (provider, entity type, external id) <-> local id bridge
- SyncJobModel: One row per engine invocation
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crm_sync.core.database import Base

COMPANY_TAX_ID_CONSTRAINT = "uq_companies_tax_id"
LINK_EXTERNAL_CONSTRAINT = "uq_integration_link_external"
LINK_LOCAL_CONSTRAINT = "uq_integration_link_local"


class CompanyModel(Base):
    """Company imported from or matched against the external CRM.

    tax_id holds the formatted CNPJ (NN.NNN.NNN/NNNN-NN); rows written by
    other tools may hold raw digits, so lookups try both forms.
    """

    __tablename__ = "companies"
    __table_args__ = (UniqueConstraint("tax_id", name=COMPANY_TAX_ID_CONSTRAINT),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    legal_name: Mapped[str] = mapped_column(String(300), nullable=False)
    trade_name: Mapped[str] = mapped_column(String(300), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address_full: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    source_segment: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ContactModel(Base):
    """Contact person; created once by the engine and never patched."""

    __tablename__ = "contacts"
    __table_args__ = (Index("ix_contacts_phone", "phone"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    full_name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    role_title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class OpportunityModel(Base):
    """Pipeline opportunity. stage and status hold closed-taxonomy values."""

    __tablename__ = "opportunities"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    primary_contact_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    stage: Mapped[str] = mapped_column(String(50), nullable=False, server_default="lead")
    status: Mapped[str] = mapped_column(String(50), nullable=False, server_default="open")
    estimated_value: Mapped[float] = mapped_column(Float, nullable=False, server_default="0")
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class IntegrationLinkModel(Base):
    """Authoritative identity bridge between a local entity and an external record.

    Unique per (provider, entity type, external id) and per (provider,
    entity type, local id). Never deleted by the engine.
    """

    __tablename__ = "integration_links"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "local_entity_type",
            "external_id",
            name=LINK_EXTERNAL_CONSTRAINT,
        ),
        UniqueConstraint(
            "provider",
            "local_entity_type",
            "local_entity_id",
            name=LINK_LOCAL_CONSTRAINT,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    local_entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    local_entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncJobModel(Base):
    """One row per engine invocation (not per logical multi-chunk sync)."""

    __tablename__ = "sync_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_scope: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default="running")
    config: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    result_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
