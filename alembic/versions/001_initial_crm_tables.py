"""Create the CRM tables reconciled by the RD Station sync.

Revision ID: 001_initial_crm
Revises:
Create Date: 2026-10-18

Creates five tables:
- companies: Unique on tax_id (formatted CNPJ)
- contacts: Belong to one company; indexed by phone for dedup lookups
- opportunities: Belong to one company; optional primary contact
- integration_links: (provider, entity type, external id) <-> local id,
  unique on both sides
- sync_jobs: One row per engine invocation with config and result snapshot
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_crm"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # ── companies table ─────────────────────────────────────────────────

    op.create_table(
        "companies",
        _id_column(),
        sa.Column("legal_name", sa.String(300), nullable=False),
        sa.Column("trade_name", sa.String(300), nullable=False),
        sa.Column("tax_id", sa.String(32), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("address_full", sa.Text(), nullable=True),
        sa.Column("city", sa.String(120), nullable=True),
        sa.Column("state", sa.String(2), nullable=True),
        sa.Column("source_segment", sa.String(100), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at", nullable=True),
        sa.UniqueConstraint("tax_id", name="uq_companies_tax_id"),
    )
    op.create_index("ix_companies_source_segment", "companies", ["source_segment"])

    # ── contacts table ──────────────────────────────────────────────────

    op.create_table(
        "contacts",
        _id_column(),
        sa.Column(
            "company_id",
            UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("full_name", sa.String(300), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("role_title", sa.String(200), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_contacts_company_id", "contacts", ["company_id"])
    op.create_index("ix_contacts_phone", "contacts", ["phone"])

    # ── opportunities table ─────────────────────────────────────────────

    op.create_table(
        "opportunities",
        _id_column(),
        sa.Column(
            "company_id",
            UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "primary_contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("stage", sa.String(50), server_default="lead", nullable=False),
        sa.Column("status", sa.String(50), server_default="open", nullable=False),
        sa.Column("estimated_value", sa.Float(), server_default="0", nullable=False),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at", nullable=True),
    )
    op.create_index("ix_opportunities_company_id", "opportunities", ["company_id"])

    # ── integration_links table ─────────────────────────────────────────

    op.create_table(
        "integration_links",
        _id_column(),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("local_entity_type", sa.String(30), nullable=False),
        sa.Column("local_entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=False),
        _timestamp("last_synced_at", nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "provider",
            "local_entity_type",
            "external_id",
            name="uq_integration_link_external",
        ),
        sa.UniqueConstraint(
            "provider",
            "local_entity_type",
            "local_entity_id",
            name="uq_integration_link_local",
        ),
    )

    # ── sync_jobs table ─────────────────────────────────────────────────

    op.create_table(
        "sync_jobs",
        _id_column(),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("resource_scope", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="running", nullable=False),
        sa.Column(
            "config",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=True,
        ),
        sa.Column("result_snapshot", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("started_at"),
        _timestamp("finished_at", nullable=True),
    )
    op.create_index("ix_sync_jobs_provider", "sync_jobs", ["provider"])


def downgrade() -> None:
    op.drop_index("ix_sync_jobs_provider", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    op.drop_table("integration_links")
    op.drop_index("ix_opportunities_company_id", table_name="opportunities")
    op.drop_table("opportunities")
    op.drop_index("ix_contacts_phone", table_name="contacts")
    op.drop_index("ix_contacts_company_id", table_name="contacts")
    op.drop_table("contacts")
    op.drop_index("ix_companies_source_segment", table_name="companies")
    op.drop_table("companies")
