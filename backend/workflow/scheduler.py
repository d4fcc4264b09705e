"""
Delay Scheduler.

Resumes suspended runs once their ``resume_at`` has passed. Wake-up
times live on the run rows, so nothing is lost when the process
restarts: the next sweep after startup picks up every run that came due
while it was down.

Each due run is claimed with a compare-and-set on ``lock_version``
before it is resumed. When several schedulers sweep the same database,
exactly one of them wins each run; the others count it as lost and move
on. If resuming a claimed run raises, the run goes back to suspended and
the next sweep tries again.

The same sweep also takes over runs left ``running`` by a crashed
process (no state change for ``RUN_STALE_AFTER_SECONDS``) and advances
them from the node they were on.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from core.utils import utcnow_naive
from workflow.engine import RunExecutor
from workflow.run_store import ClaimCandidate, RunStore

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """Result of one scheduler sweep."""

    due: int = 0
    claimed: int = 0
    lost: int = 0
    recovered: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "due": self.due,
            "claimed": self.claimed,
            "lost": self.lost,
            "recovered": self.recovered,
            "errors": self.errors,
        }


class DelayScheduler:
    """Claims and resumes due runs.

    Args:
        store: Run persistence
        executor: Resumes claimed runs
        batch_size: Max runs considered per sweep
        max_concurrency: Max runs resumed at the same time
        stale_after_seconds: Age after which a running run counts as orphaned
        clock: Returns the current naive-UTC time
    """

    def __init__(
        self,
        store: RunStore,
        executor: RunExecutor,
        batch_size: int = 100,
        max_concurrency: int = 10,
        stale_after_seconds: int = 900,
        clock: Callable = utcnow_naive,
    ):
        self.store = store
        self.executor = executor
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

    async def sweep(self, now=None) -> SweepReport:
        """Resume every suspended run that is due at ``now``."""
        now = now or self.clock()
        report = SweepReport()

        candidates = await self.store.due_runs(now, self.batch_size)
        report.due = len(candidates)
        if candidates:
            await self._claim_and_run(
                candidates, report, self.store.claim_suspended, self.executor.resume, release_at=now
            )

        report.recovered = await self.recover_stale(now, report)

        if report.due or report.recovered or report.errors:
            logger.info("scheduler_sweep", **report.to_dict())
        return report

    async def recover_stale(self, now=None, report: Optional[SweepReport] = None) -> int:
        """Advance runs stuck in ``running`` since before the stale cutoff."""
        now = now or self.clock()
        report = report if report is not None else SweepReport()
        cutoff = now - timedelta(seconds=self.stale_after_seconds)

        candidates = await self.store.stale_running(cutoff, self.batch_size)
        if not candidates:
            return 0

        before = report.claimed
        await self._claim_and_run(candidates, report, self.store.claim_stale, self.executor.advance)
        recovered = report.claimed - before
        report.claimed = before
        if recovered:
            logger.warning("stale_runs_recovered", count=recovered, cutoff=cutoff.isoformat())
        return recovered

    async def _claim_and_run(
        self,
        candidates: list[ClaimCandidate],
        report: SweepReport,
        claim: Callable,
        run: Callable,
        release_at: Optional[datetime] = None,
    ) -> None:
        """Claim each candidate and run it.

        With ``release_at``, a run whose ``run`` call raised after the claim
        goes back to suspended, due at ``release_at``. Otherwise it stays
        running until stale recovery picks it up.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def handle(candidate: ClaimCandidate) -> None:
            async with semaphore:
                claimed = False
                try:
                    if not await claim(candidate):
                        report.lost += 1
                        return
                    claimed = True
                    report.claimed += 1
                    await run(candidate.run_id)
                except Exception as e:
                    report.errors.append(f"{candidate.run_id}: {e}")
                    logger.error("scheduler_run_failed", run_id=candidate.run_id, error=str(e), exc_info=True)
                    if claimed and release_at is not None:
                        await self._release(candidate, release_at)

        await asyncio.gather(*(handle(c) for c in candidates))

    async def _release(self, candidate: ClaimCandidate, resume_at: datetime) -> None:
        try:
            released = await self.store.release(candidate, resume_at)
        except Exception as e:
            logger.error("scheduler_release_failed", run_id=candidate.run_id, error=str(e), exc_info=True)
            return
        if released:
            logger.warning("run_released", run_id=candidate.run_id, resume_at=resume_at.isoformat())

    async def run_forever(self, interval: float, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sweep every ``interval`` seconds until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("scheduler_started", interval=interval)
        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error("scheduler_sweep_failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("scheduler_stopped")
