"""Unit tests for SyncRunner: multi-round driving, aggregation and retries."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.crm_sync.sync.errors import RDStationAuthError, RDStationHTTPError, SyncJobFailed
from src.crm_sync.sync.orchestrator import SyncOrchestrator
from src.crm_sync.sync.runner import SyncRunner
from src.crm_sync.sync.schemas import StopReason, SyncCursor, SyncRequest, SyncResult
from tests.fakes import FakeRDStationClient, make_tax_id


def _result(job_id: str, has_more: bool, cursor: SyncCursor | None = None, **counters) -> SyncResult:
    return SyncResult(
        sync_job_id=job_id,
        has_more=has_more,
        next_cursor=cursor,
        stop_reason=StopReason.PAGE_CHUNK_LIMIT if has_more else StopReason.COMPLETED,
        **counters,
    )


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def request_() -> SyncRequest:
    return SyncRequest.model_validate({"access_token": "tok-123"})


class TestRunUntilComplete:
    @pytest.mark.asyncio
    async def test_feeds_cursor_forward_and_sums_counters(self, request_):
        cursor = SyncCursor(page_by_resource={"organizations": 2, "contacts": 1, "deals": 1})
        orchestrator = AsyncMock()
        orchestrator.run.side_effect = [
            _result("job-1", True, cursor, processed=3, companies_created=2, errors=["a"]),
            _result("job-2", False, processed=1, companies_created=1, errors=["b"]),
        ]

        report = await SyncRunner(orchestrator, sleep=_no_sleep).run_until_complete(request_)

        assert report.rounds == 2
        assert not report.has_more
        assert report.next_cursor is None
        assert report.processed == 4
        assert report.companies_created == 3
        assert report.errors == ["a", "b"]
        assert report.sync_job_ids == ["job-1", "job-2"]
        second_request = orchestrator.run.call_args_list[1].args[0]
        assert second_request.cursor == cursor

    @pytest.mark.asyncio
    async def test_round_budget(self, request_):
        orchestrator = AsyncMock()
        orchestrator.run.return_value = _result("job", True, SyncCursor())

        report = await SyncRunner(orchestrator, sleep=_no_sleep).run_until_complete(
            request_, max_rounds=3
        )

        assert report.rounds == 3
        assert report.has_more
        assert report.next_cursor is not None

    @pytest.mark.asyncio
    async def test_missing_continuation_stops(self, request_):
        orchestrator = AsyncMock()
        orchestrator.run.return_value = _result("job", True, None)

        report = await SyncRunner(orchestrator, sleep=_no_sleep).run_until_complete(request_)

        assert report.rounds == 1
        assert not report.has_more
        assert any("continuation" in message for message in report.errors)

    @pytest.mark.asyncio
    async def test_server_failure_is_retried_once(self, request_):
        sleeps: list[float] = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        orchestrator = AsyncMock()
        orchestrator.run.side_effect = [
            SyncJobFailed("job-1", RDStationHTTPError(503, "busy")),
            _result("job-2", False, processed=1),
        ]

        report = await SyncRunner(orchestrator, sleep=record_sleep).run_until_complete(request_)

        assert report.processed == 1
        assert orchestrator.run.call_count == 2
        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_client_failure_is_not_retried(self, request_):
        orchestrator = AsyncMock()
        orchestrator.run.side_effect = SyncJobFailed("job-1", RDStationAuthError("invalid_token"))

        with pytest.raises(SyncJobFailed):
            await SyncRunner(orchestrator, sleep=_no_sleep).run_until_complete(request_)

        assert orchestrator.run.call_count == 1


class TestRunnerWithOrchestrator:
    @pytest.mark.asyncio
    async def test_drains_organizations_across_rounds(self, store, registry, settings):
        orgs = [
            {"id": f"org-{seed}", "name": f"Empresa {seed}", "cnpj": make_tax_id(seed), "uf": "SC"}
            for seed in range(1, 6)
        ]
        client = FakeRDStationClient({"organizations": [orgs[0:2], orgs[2:4], orgs[4:]]})
        orchestrator = SyncOrchestrator(
            store, settings=settings, client_factory=lambda token: client, registry=registry
        )
        request = SyncRequest.model_validate(
            {"access_token": "tok-123", "syncScope": "south", "recordsPerPage": 2}
        )

        report = await SyncRunner(orchestrator, sleep=_no_sleep).run_until_complete(request)

        assert report.rounds == 3
        assert not report.has_more
        assert report.companies_created == 5
        assert len(store.companies) == 5
        assert len(store.jobs) == 3
