"""Cursor/job orchestrator for one RD Station sync invocation.

SyncOrchestrator.run(request) is a pure step function over the cursor:
(cursor, budget) -> (next cursor, summary). Each call:

1. Records a sync job row in running status
2. Walks organizations -> contacts -> deals from the cursor position,
   fetching at most page_chunk_size pages and stopping once the execution
   guard elapses (checked before each page; a page in flight completes)
3. Parses, resolves and upserts every item, sampling per-record failures
4. Runs a bounded enrichment sweep when time remains
5. Marks the job success with the result snapshot, or error with the
   partial summary before raising SyncJobFailed

The returned next_cursor resumes exactly at the next page (or cursor token)
of the resource that was interrupted.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.sync.enrichment import CompanyEnricher
from src.crm_sync.sync.errors import SyncJobFailed
from src.crm_sync.sync.matching import MatchingThresholds
from src.crm_sync.sync.parsers import parse_contact, parse_deal, parse_organization
from src.crm_sync.sync.rdstation.auth import AuthState, build_auth_state
from src.crm_sync.sync.rdstation.client import RDStationClient
from src.crm_sync.sync.registry import CompanyRegistryClient
from src.crm_sync.sync.resolver import IdentityResolver
from src.crm_sync.sync.schemas import (
    RESOURCE_ORDER,
    JobStatus,
    PageResult,
    ResourceName,
    StopReason,
    SyncCursor,
    SyncRequest,
    SyncResult,
    SyncScope,
    SyncSummary,
)
from src.crm_sync.sync.store import CRMStore
from src.crm_sync.sync.upsert import UpsertEngine

logger = structlog.get_logger(__name__)

_SCOPE_RESOURCES: dict[SyncScope, tuple[ResourceName, ...]] = {
    SyncScope.CUSTOMERS_WHATSAPP_ONLY: (ResourceName.ORGANIZATIONS, ResourceName.CONTACTS),
    SyncScope.FULL: tuple(RESOURCE_ORDER),
    SyncScope.SOUTH_CNPJ_ONLY: (ResourceName.ORGANIZATIONS,),
}


class SyncOrchestrator:
    """Drives one invocation of the RD Station reconciliation engine.

    Args:
        store: CRMStore for all reads and writes.
        settings: Application settings; defaults to get_settings().
        client_factory: Builds the CRM client from an access token.
        registry: Company registry client; a fresh one per run when omitted.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        store: CRMStore,
        settings: Settings | None = None,
        client_factory: Callable[[str], RDStationClient] | None = None,
        registry: CompanyRegistryClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._client_factory = client_factory or (
            lambda token: RDStationClient(token, settings=self._settings)
        )
        self._registry = registry
        self._clock = clock

    # ── Effective settings ──────────────────────────────────────────────────

    def _effective_page_size(self, request: SyncRequest) -> int:
        if request.dry_run:
            return request.records_per_page
        return min(request.records_per_page, self._settings.LIVE_MAX_RECORDS_PER_PAGE)

    def _effective_chunk_size(self, request: SyncRequest) -> int:
        if request.dry_run:
            return request.page_chunk_size
        return min(request.page_chunk_size, self._settings.LIVE_MAX_PAGE_CHUNK_SIZE)

    def _initial_cursor(self, request: SyncRequest) -> SyncCursor:
        if request.cursor is not None:
            return request.cursor.model_copy(deep=True)
        cursor = SyncCursor()
        if request.deals_only:
            cursor.resource_index = RESOURCE_ORDER.index(ResourceName.DEALS)
        return cursor

    @staticmethod
    def _job_config(
        request: SyncRequest,
        api_url: str,
        auth_state: AuthState,
        page_size: int,
        chunk_size: int,
        cursor: SyncCursor,
    ) -> dict[str, Any]:
        return {
            "api_url": api_url,
            "auth_mode": auth_state.mode.value,
            "sync_scope": request.sync_scope.value,
            "dry_run": request.dry_run,
            "records_per_page": page_size,
            "max_pages": request.max_pages,
            "page_chunk_size": chunk_size,
            "execution_guard_ms": request.execution_guard_ms,
            "deals_only": request.deals_only,
            "deal_stage_filter": request.deal_stage_filter,
            "deal_pipeline_filter": request.deal_pipeline_filter,
            "deals_limit": request.deals_limit,
            "allowed_states": request.allowed_states,
            "cursor": cursor.model_dump(),
        }

    # ── Run ─────────────────────────────────────────────────────────────────

    async def run(self, request: SyncRequest) -> SyncResult:
        """Run one budgeted invocation.

        Args:
            request: Validated sync request (token already sanitized).

        Returns:
            SyncResult with counters, continuation and effective settings.

        Raises:
            SyncJobFailed: Fatal failure; the job row is already marked error.
        """
        started_at = datetime.now(timezone.utc)
        started = self._clock()
        deadline = started + request.execution_guard_ms / 1000

        api_url = request.api_url or self._settings.RDSTATION_API_URL
        auth_state = build_auth_state(
            request.auth_mode, api_url, self._settings.RDSTATION_LEGACY_API_URL
        )
        page_size = self._effective_page_size(request)
        chunk_size = self._effective_chunk_size(request)
        cursor = self._initial_cursor(request)

        job = await self._store.create_sync_job(
            provider=self._settings.RDSTATION_PROVIDER,
            resource_scope=request.sync_scope.value,
            config=self._job_config(request, api_url, auth_state, page_size, chunk_size, cursor),
        )
        log = logger.bind(sync_job_id=job.id, sync_scope=request.sync_scope.value)
        log.info(
            "sync.invocation_started",
            resource_index=cursor.resource_index,
            dry_run=request.dry_run,
            page_chunk_size=chunk_size,
        )

        summary = SyncSummary()
        registry = self._registry or CompanyRegistryClient(self._settings)
        try:
            stop_reason = await self._walk(
                request, cursor, auth_state, registry, summary, page_size, chunk_size, deadline
            )
            if (
                not request.dry_run
                and stop_reason != StopReason.EXECUTION_GUARD
                and self._clock() < deadline
            ):
                await self._enrichment_sweep(request, registry, summary, deadline)
        except Exception as exc:
            log.error("sync.invocation_failed", error=str(exc), error_type=type(exc).__name__)
            partial = summary.model_dump(mode="json")
            partial["next_cursor"] = cursor.model_dump()
            await self._finish_job(job.id, JobStatus.ERROR, partial, str(exc) or type(exc).__name__)
            raise SyncJobFailed(job.id, exc, partial) from exc

        if auth_state.fallback_activated:
            summary.add_error(
                "Authentication switched automatically to the legacy RD CRM token mode.",
                self._settings.MAX_SAMPLED_ERRORS,
            )

        has_more = stop_reason != StopReason.DEALS_LIMIT and not self._is_drained(request, cursor)
        result = SyncResult(
            **summary.model_dump(),
            sync_job_id=job.id,
            has_more=has_more,
            next_cursor=cursor if has_more else None,
            next_resource=cursor.current_resource if has_more else None,
            stop_reason=stop_reason,
            sync_scope=request.sync_scope,
            api_url=api_url,
            api_url_used=auth_state.api_url,
            auth_mode_used=auth_state.mode,
            dry_run=request.dry_run,
            records_per_page=page_size,
            max_pages=request.max_pages,
            page_chunk_size=chunk_size,
            execution_guard_ms=request.execution_guard_ms,
            deals_only=request.deals_only,
            deal_stage_filter=request.deal_stage_filter,
            deal_pipeline_filter=request.deal_pipeline_filter,
            deals_limit=request.deals_limit,
            allowed_states=request.allowed_states,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        await self._finish_job(job.id, JobStatus.SUCCESS, result.model_dump(mode="json"))
        log.info(
            "sync.invocation_complete",
            stop_reason=stop_reason.value,
            has_more=has_more,
            pages_processed=summary.pages_processed,
            processed=summary.processed,
            elapsed_ms=int((self._clock() - started) * 1000),
        )
        return result

    @staticmethod
    def _deals_limit_reached(
        request: SyncRequest, resource: ResourceName, cursor: SyncCursor
    ) -> bool:
        return (
            resource == ResourceName.DEALS
            and request.deals_limit > 0
            and cursor.deals_imported >= request.deals_limit
        )

    @staticmethod
    def _is_drained(request: SyncRequest, cursor: SyncCursor) -> bool:
        resource = cursor.current_resource
        return resource is None or resource not in _SCOPE_RESOURCES[request.sync_scope]

    async def _walk(
        self,
        request: SyncRequest,
        cursor: SyncCursor,
        auth_state: AuthState,
        registry: CompanyRegistryClient,
        summary: SyncSummary,
        page_size: int,
        chunk_size: int,
        deadline: float,
    ) -> StopReason:
        """Page loop; mutates cursor and summary, returns the stop reason."""
        client = self._client_factory(request.access_token)
        resolver = IdentityResolver(
            self._store,
            provider=self._settings.RDSTATION_PROVIDER,
            thresholds=MatchingThresholds.from_settings(self._settings),
        )
        engine = UpsertEngine(
            store=self._store,
            resolver=resolver,
            enricher=CompanyEnricher(self._store, registry, self._settings.MAX_SAMPLED_ERRORS),
            registry=registry,
            summary=summary,
            provider=self._settings.RDSTATION_PROVIDER,
            dry_run=request.dry_run,
            allowed_states=request.allowed_states,
            stage_filter=request.normalized_stage_filter,
            pipeline_filter=request.normalized_pipeline_filter,
        )
        scope_resources = _SCOPE_RESOURCES[request.sync_scope]
        pages_this_run = 0

        while not cursor.is_exhausted:
            resource = cursor.current_resource
            if resource not in scope_resources:
                if resource == ResourceName.DEALS:
                    summary.bump("opportunities_skipped_by_scope")
                cursor.resource_index = len(RESOURCE_ORDER)
                break
            if self._clock() >= deadline:
                return StopReason.EXECUTION_GUARD
            if pages_this_run >= chunk_size:
                return StopReason.PAGE_CHUNK_LIMIT
            if self._deals_limit_reached(request, resource, cursor):
                return StopReason.DEALS_LIMIT

            page = cursor.page_for(resource)
            if page > request.max_pages:
                summary.add_error(
                    f"Page limit reached for {resource.value}.",
                    self._settings.MAX_SAMPLED_ERRORS,
                )
                cursor.advance_resource(resource)
                continue

            result = await client.fetch_page(
                resource, page, page_size, cursor.token_for(resource), auth_state
            )
            pages_this_run += 1
            summary.bump("pages_processed")
            summary.bump("records_received", len(result.items))

            limit_hit = await self._process_items(request, resource, result, engine, cursor, summary)
            self._advance(request, resource, page, result, cursor, summary)
            if limit_hit:
                return StopReason.DEALS_LIMIT

        return StopReason.COMPLETED

    async def _process_items(
        self,
        request: SyncRequest,
        resource: ResourceName,
        result: PageResult,
        engine: UpsertEngine,
        cursor: SyncCursor,
        summary: SyncSummary,
    ) -> bool:
        """Upsert every item of a page. Returns True when deals_limit was reached."""
        for raw in result.items:
            if self._deals_limit_reached(request, resource, cursor):
                return True
            try:
                if resource == ResourceName.ORGANIZATIONS:
                    await engine.upsert_company(parse_organization(raw))
                elif resource == ResourceName.CONTACTS:
                    await engine.upsert_contact(parse_contact(raw))
                else:
                    before = summary.opportunities_processed
                    await engine.upsert_opportunity(parse_deal(raw))
                    if summary.opportunities_processed > before:
                        cursor.deals_imported += 1
                summary.bump("processed")
            except Exception as exc:
                logger.warning(
                    "sync.item_failed",
                    resource=resource.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                summary.add_error(
                    f"{resource.value}: {exc}" if str(exc) else f"{resource.value}: item failed",
                    self._settings.MAX_SAMPLED_ERRORS,
                )
                summary.bump("skipped_invalid_payload")

        return self._deals_limit_reached(request, resource, cursor)

    def _advance(
        self,
        request: SyncRequest,
        resource: ResourceName,
        page: int,
        result: PageResult,
        cursor: SyncCursor,
        summary: SyncSummary,
    ) -> None:
        if result.has_next and page < request.max_pages:
            cursor.advance_page(resource, result.next_page, result.next_cursor)
            return
        if result.has_next:
            summary.add_error(
                f"{resource.value} truncated at the {request.max_pages} page limit.",
                self._settings.MAX_SAMPLED_ERRORS,
            )
        cursor.advance_resource(resource)

    async def _enrichment_sweep(
        self,
        request: SyncRequest,
        registry: CompanyRegistryClient,
        summary: SyncSummary,
        deadline: float,
    ) -> None:
        batch_limit = (
            request.enrichment_batch_limit
            if request.enrichment_batch_limit is not None
            else self._settings.ENRICHMENT_BATCH_LIMIT
        )
        if batch_limit <= 0:
            return
        enricher = CompanyEnricher(self._store, registry, self._settings.MAX_SAMPLED_ERRORS)
        await enricher.sweep(
            summary,
            scan_limit=self._settings.ENRICHMENT_SCAN_LIMIT,
            batch_limit=batch_limit,
            has_time=lambda: self._clock() < deadline,
        )

    async def _finish_job(
        self,
        job_id: str,
        status: JobStatus,
        snapshot: dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        try:
            await self._store.finish_sync_job(job_id, status, snapshot, error_message)
        except Exception as exc:
            logger.error("sync.job_update_failed", sync_job_id=job_id, error=str(exc))
