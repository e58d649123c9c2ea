"""PostgreSQL implementation of the CRMStore contract.

PostgresStore uses the session_factory callable pattern: every operation
opens its own AsyncSession, commits, and converts SQLAlchemy models to the
pydantic read schemas. IntegrityError with SQLSTATE 23505 is translated to
UniqueViolationError carrying the violated constraint name.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.sync.errors import StoreError, UniqueViolationError
from src.crm_sync.sync.models import (
    LINK_LOCAL_CONSTRAINT,
    CompanyModel,
    ContactModel,
    IntegrationLinkModel,
    OpportunityModel,
    SyncJobModel,
)
from src.crm_sync.sync.normalizers import format_tax_id, normalize_tax_id
from src.crm_sync.sync.schemas import (
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactRead,
    IntegrationLinkRead,
    JobStatus,
    LocalEntityType,
    OpportunityCreate,
    OpportunityRead,
    OpportunityStage,
    OpportunityStatus,
    OpportunityUpdate,
    SyncJobRead,
)
from src.crm_sync.sync.store import CRMStore

logger = structlog.get_logger(__name__)

UNIQUE_VIOLATION_SQLSTATE = "23505"


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_company(model: CompanyModel) -> CompanyRead:
    return CompanyRead(
        id=str(model.id),
        legal_name=model.legal_name,
        trade_name=model.trade_name,
        tax_id=model.tax_id,
        email=model.email,
        phone=model.phone,
        address_full=model.address_full,
        city=model.city,
        state=model.state,
        source_segment=model.source_segment,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_contact(model: ContactModel) -> ContactRead:
    return ContactRead(
        id=str(model.id),
        company_id=str(model.company_id),
        full_name=model.full_name,
        email=model.email,
        phone=model.phone,
        role_title=model.role_title,
        created_at=model.created_at,
    )


def _model_to_opportunity(model: OpportunityModel) -> OpportunityRead:
    """Convert OpportunityModel to OpportunityRead, tolerating legacy taxonomy values."""
    try:
        stage = OpportunityStage(model.stage)
    except ValueError:
        stage = OpportunityStage.LEAD
    try:
        status = OpportunityStatus(model.status)
    except ValueError:
        status = OpportunityStatus.OPEN
    return OpportunityRead(
        id=str(model.id),
        company_id=str(model.company_id),
        primary_contact_id=str(model.primary_contact_id) if model.primary_contact_id else None,
        title=model.title,
        stage=stage,
        status=status,
        estimated_value=model.estimated_value or 0.0,
        expected_close_date=(
            model.expected_close_date.isoformat() if model.expected_close_date else None
        ),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_link(model: IntegrationLinkModel) -> IntegrationLinkRead:
    return IntegrationLinkRead(
        id=str(model.id),
        provider=model.provider,
        local_entity_type=LocalEntityType(model.local_entity_type),
        local_entity_id=str(model.local_entity_id),
        external_id=model.external_id,
        last_synced_at=model.last_synced_at,
    )


def _model_to_job(model: SyncJobModel) -> SyncJobRead:
    return SyncJobRead(
        id=str(model.id),
        provider=model.provider,
        resource_scope=model.resource_scope,
        status=JobStatus(model.status),
        config=model.config or {},
        result_snapshot=model.result_snapshot,
        started_at=model.started_at,
        finished_at=model.finished_at,
        error_message=model.error_message,
    )


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value)


def _optional_uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _translate_integrity_error(exc: IntegrityError) -> Exception:
    """Map a driver IntegrityError onto the store error taxonomy."""
    orig = exc.orig
    cause = getattr(orig, "__cause__", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(cause, "sqlstate", None)
    if sqlstate == UNIQUE_VIOLATION_SQLSTATE:
        constraint = getattr(cause, "constraint_name", None) or ""
        return UniqueViolationError(constraint=constraint, message=str(orig))
    return StoreError(str(orig))


# ── Store ───────────────────────────────────────────────────────────────────


class PostgresStore(CRMStore):
    """CRMStore backed by PostgreSQL via SQLAlchemy async sessions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Integration links ───────────────────────────────────────────────────

    async def find_linked_local_id(
        self,
        provider: str,
        entity_type: LocalEntityType,
        external_id: str,
    ) -> str | None:
        async for session in self._session_factory():
            stmt = select(IntegrationLinkModel.local_entity_id).where(
                IntegrationLinkModel.provider == provider,
                IntegrationLinkModel.local_entity_type == entity_type.value,
                IntegrationLinkModel.external_id == external_id,
            )
            result = await session.execute(stmt)
            local_id = result.scalar_one_or_none()
            return str(local_id) if local_id else None

    async def find_links_for_local_ids(
        self,
        provider: str,
        entity_type: LocalEntityType,
        local_ids: list[str],
    ) -> dict[str, str]:
        if not local_ids:
            return {}
        async for session in self._session_factory():
            stmt = select(
                IntegrationLinkModel.local_entity_id,
                IntegrationLinkModel.external_id,
            ).where(
                IntegrationLinkModel.provider == provider,
                IntegrationLinkModel.local_entity_type == entity_type.value,
                IntegrationLinkModel.local_entity_id.in_([uuid.UUID(i) for i in local_ids]),
            )
            result = await session.execute(stmt)
            return {str(local_id): external_id for local_id, external_id in result.all()}

    async def upsert_link(
        self,
        provider: str,
        entity_type: LocalEntityType,
        local_id: str,
        external_id: str,
    ) -> IntegrationLinkRead:
        """Create or refresh a link by external id, else insert a new one.

        A local entity already linked to another external id is never
        re-pointed; UniqueViolationError is raised instead.

        Args:
            provider: Integration provider key (e.g. "rdstation").
            entity_type: Local entity kind.
            local_id: Local entity UUID string.
            external_id: External record identifier.

        Returns:
            IntegrationLinkRead for the refreshed or inserted row.
        """
        now = datetime.now(timezone.utc)
        local_uuid = uuid.UUID(local_id)
        async for session in self._session_factory():
            base = select(IntegrationLinkModel).where(
                IntegrationLinkModel.provider == provider,
                IntegrationLinkModel.local_entity_type == entity_type.value,
            )
            by_external = (
                await session.execute(base.where(IntegrationLinkModel.external_id == external_id))
            ).scalar_one_or_none()
            if by_external is not None:
                by_external.local_entity_id = local_uuid
                by_external.last_synced_at = now
                model = by_external
            else:
                by_local = (
                    await session.execute(
                        base.where(IntegrationLinkModel.local_entity_id == local_uuid)
                    )
                ).scalar_one_or_none()
                if by_local is not None:
                    raise UniqueViolationError(
                        constraint=LINK_LOCAL_CONSTRAINT,
                        message=f"{local_id} already linked to {by_local.external_id}",
                    )
                model = IntegrationLinkModel(
                    provider=provider,
                    local_entity_type=entity_type.value,
                    local_entity_id=local_uuid,
                    external_id=external_id,
                    last_synced_at=now,
                )
                session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _translate_integrity_error(exc) from exc
            await session.refresh(model)
            return _model_to_link(model)

    # ── Companies ───────────────────────────────────────────────────────────

    async def get_company(self, company_id: str) -> CompanyRead | None:
        async for session in self._session_factory():
            model = await session.get(CompanyModel, uuid.UUID(company_id))
            return _model_to_company(model) if model else None

    async def find_company_by_tax_id(self, tax_id: str) -> CompanyRead | None:
        digits = normalize_tax_id(tax_id)
        if not digits:
            return None
        candidates = [digits, format_tax_id(digits)]
        async for session in self._session_factory():
            stmt = select(CompanyModel).where(CompanyModel.tax_id.in_(candidates)).limit(1)
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_company(model) if model else None

    async def insert_company(self, data: CompanyCreate) -> CompanyRead:
        async for session in self._session_factory():
            model = CompanyModel(**data.model_dump())
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _translate_integrity_error(exc) from exc
            await session.refresh(model)
            logger.info("postgres_store.company_created", company_id=str(model.id))
            return _model_to_company(model)

    async def update_company(self, company_id: str, data: CompanyUpdate) -> CompanyRead | None:
        async for session in self._session_factory():
            model = await session.get(CompanyModel, uuid.UUID(company_id))
            if model is None:
                return None
            for field, value in data.model_dump(exclude_none=True).items():
                setattr(model, field, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_company(model)

    async def list_companies_by_source(
        self,
        source_segment: str,
        limit: int,
    ) -> list[CompanyRead]:
        async for session in self._session_factory():
            stmt = (
                select(CompanyModel)
                .where(CompanyModel.source_segment == source_segment)
                .order_by(
                    CompanyModel.updated_at.desc().nulls_last(),
                    CompanyModel.created_at.desc(),
                )
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_company(m) for m in result.scalars().all()]

    # ── Contacts ────────────────────────────────────────────────────────────

    async def find_contact_by_phones(self, phones: list[str]) -> ContactRead | None:
        if not phones:
            return None
        async for session in self._session_factory():
            stmt = select(ContactModel).where(ContactModel.phone.in_(phones)).limit(1)
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_contact(model) if model else None

    async def insert_contact(self, data: ContactCreate) -> ContactRead:
        async for session in self._session_factory():
            model = ContactModel(
                company_id=uuid.UUID(data.company_id),
                full_name=data.full_name,
                email=data.email,
                phone=data.phone,
                role_title=data.role_title,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _translate_integrity_error(exc) from exc
            await session.refresh(model)
            return _model_to_contact(model)

    # ── Opportunities ───────────────────────────────────────────────────────

    async def get_opportunity(self, opportunity_id: str) -> OpportunityRead | None:
        async for session in self._session_factory():
            model = await session.get(OpportunityModel, uuid.UUID(opportunity_id))
            return _model_to_opportunity(model) if model else None

    async def list_opportunities_for_company(self, company_id: str) -> list[OpportunityRead]:
        async for session in self._session_factory():
            stmt = (
                select(OpportunityModel)
                .where(OpportunityModel.company_id == uuid.UUID(company_id))
                .order_by(OpportunityModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_opportunity(m) for m in result.scalars().all()]

    async def insert_opportunity(self, data: OpportunityCreate) -> OpportunityRead:
        async for session in self._session_factory():
            model = OpportunityModel(
                company_id=uuid.UUID(data.company_id),
                primary_contact_id=_optional_uuid(data.primary_contact_id),
                title=data.title,
                stage=data.stage.value,
                status=data.status.value,
                estimated_value=data.estimated_value,
                expected_close_date=_parse_date(data.expected_close_date),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _translate_integrity_error(exc) from exc
            await session.refresh(model)
            return _model_to_opportunity(model)

    async def update_opportunity(
        self,
        opportunity_id: str,
        data: OpportunityUpdate,
    ) -> OpportunityRead | None:
        async for session in self._session_factory():
            model = await session.get(OpportunityModel, uuid.UUID(opportunity_id))
            if model is None:
                return None
            values: dict[str, Any] = data.model_dump(exclude_none=True)
            if "company_id" in values:
                values["company_id"] = uuid.UUID(values["company_id"])
            if "primary_contact_id" in values:
                values["primary_contact_id"] = uuid.UUID(values["primary_contact_id"])
            if "stage" in values:
                values["stage"] = data.stage.value
            if "status" in values:
                values["status"] = data.status.value
            if "expected_close_date" in values:
                values["expected_close_date"] = _parse_date(values["expected_close_date"])
            for field, value in values.items():
                setattr(model, field, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_opportunity(model)

    # ── Sync jobs ───────────────────────────────────────────────────────────

    async def create_sync_job(
        self,
        provider: str,
        resource_scope: str,
        config: dict[str, Any],
    ) -> SyncJobRead:
        async for session in self._session_factory():
            model = SyncJobModel(
                provider=provider,
                resource_scope=resource_scope,
                status=JobStatus.RUNNING.value,
                config=config,
                started_at=datetime.now(timezone.utc),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_job(model)

    async def finish_sync_job(
        self,
        job_id: str,
        status: JobStatus,
        result_snapshot: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        async for session in self._session_factory():
            model = await session.get(SyncJobModel, uuid.UUID(job_id))
            if model is None:
                logger.warning("postgres_store.sync_job_missing", sync_job_id=job_id)
                return
            model.status = status.value
            model.result_snapshot = result_snapshot
            model.error_message = error_message
            model.finished_at = datetime.now(timezone.utc)
            await session.commit()
