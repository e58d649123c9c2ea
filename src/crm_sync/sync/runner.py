"""Multi-invocation driver for a logical RD Station sync.

SyncRunner repeatedly invokes the orchestrator, feeding each round's
next_cursor into the next round, until the sync drains, the round budget is
spent, or the continuation is invalid. Counters are summed across rounds
and sampled errors are merged under the usual cap. A round that fails with
a non-client error is retried once after a short pause.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from pydantic import Field

from src.crm_sync.sync.errors import SyncJobFailed
from src.crm_sync.sync.orchestrator import SyncOrchestrator
from src.crm_sync.sync.schemas import StopReason, SyncCursor, SyncRequest, SyncResult, SyncSummary

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ROUNDS = 120
ROUND_RETRY_DELAY_SECONDS = 1.2


class SyncRunReport(SyncSummary):
    """Aggregated outcome of a multi-round sync."""

    rounds: int = 0
    has_more: bool = False
    next_cursor: SyncCursor | None = None
    last_stop_reason: StopReason | None = None
    sync_job_ids: list[str] = Field(default_factory=list)

    def absorb(self, result: SyncResult, max_errors: int = 30) -> None:
        for name, value in result.counters().items():
            if name in SyncSummary.model_fields and isinstance(value, int):
                self.bump(name, value)
        for message in result.errors:
            self.add_error(message, max_errors)
        self.sync_job_ids.append(result.sync_job_id)
        self.last_stop_reason = result.stop_reason


class SyncRunner:
    """Runs a logical sync to completion across budgeted invocations.

    Args:
        orchestrator: Orchestrator executing single invocations.
        max_errors: Cap on the merged error sample.
        sleep: Awaitable sleep used between retry attempts.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        max_errors: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._orchestrator = orchestrator
        self._max_errors = max_errors
        self._sleep = sleep

    async def _run_round(self, request: SyncRequest) -> SyncResult:
        try:
            return await self._orchestrator.run(request)
        except SyncJobFailed as exc:
            if exc.is_client_error:
                raise
            logger.warning(
                "sync_runner.round_retry",
                sync_job_id=exc.sync_job_id,
                error=str(exc),
            )
            await self._sleep(ROUND_RETRY_DELAY_SECONDS)
            return await self._orchestrator.run(request)

    async def run_until_complete(
        self,
        request: SyncRequest,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
    ) -> SyncRunReport:
        """Invoke the orchestrator until the sync drains or the round budget ends.

        Args:
            request: Request for the first round; its cursor (if any) is the
                starting point.
            max_rounds: Maximum number of invocations.

        Returns:
            SyncRunReport with summed counters and the final continuation.

        Raises:
            SyncJobFailed: A round failed with a client error, or failed twice.
        """
        report = SyncRunReport(has_more=True)
        cursor = request.cursor

        while report.has_more and report.rounds < max_rounds:
            report.rounds += 1
            round_request = request.model_copy(update={"cursor": cursor})
            result = await self._run_round(round_request)
            report.absorb(result, self._max_errors)

            report.has_more = result.has_more
            if result.has_more and result.next_cursor is not None:
                cursor = result.next_cursor
            elif result.has_more:
                report.has_more = False
                report.add_error(
                    "Invalid RD Station continuation. Run the sync again to restart.",
                    self._max_errors,
                )

            logger.info(
                "sync_runner.round_complete",
                round=report.rounds,
                stop_reason=result.stop_reason.value,
                has_more=report.has_more,
            )

        report.next_cursor = cursor if report.has_more else None
        logger.info(
            "sync_runner.complete",
            rounds=report.rounds,
            has_more=report.has_more,
            processed=report.processed,
        )
        return report
