import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from bundler.config import WorkerSettings
from bundler.constants import OrderingMode, TaskStatus
from bundler.gateway import RateLimitedGateway
from bundler.ledger import Ledger
from bundler.models import Account, Asset, StageSelection, StageSummary, WorkerTask
from bundler.worker import AccountWorker

log = logging.getLogger("bundler.dispatcher")


class Dispatcher:
    """Runs one worker per selected account and joins them all.

    A failing account never cancels its siblings; workers turn every failure
    into a FAILED task instead of raising.
    """

    def __init__(
        self,
        *,
        ledger: Ledger,
        gateway: RateLimitedGateway,
        asset: Asset,
        settings: WorkerSettings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.asset = asset
        self.settings = settings or WorkerSettings()
        self._sleep = sleep
        self._clock = clock
        self.history: list[StageSummary] = []
        self.active: dict[str, WorkerTask] = {}

    def _worker(self, account: Account, selection: StageSelection, *, designated: bool) -> AccountWorker:
        task = WorkerTask(account=account, stage=selection.stage.name, is_designated=designated)
        self.active[account.address] = task
        delay = self.settings.designated_delay if designated and self.settings.ordering == OrderingMode.DELAY else 0.0
        return AccountWorker(
            task,
            ledger=self.ledger,
            gateway=self.gateway,
            asset=self.asset,
            settings=self.settings,
            submit_delay=delay,
            sleep=self._sleep,
        )

    async def _join(self, workers: list[AccountWorker]) -> list[WorkerTask]:
        async with asyncio.TaskGroup() as tg:
            for w in workers:
                tg.create_task(w.run(), name=f"worker-{w.short}")
        return [w.task for w in workers]

    async def dispatch(self, selection: StageSelection) -> StageSummary:
        stage = selection.stage.name
        if selection.skipped:
            summary = StageSummary(stage=stage, tasks=[], succeeded=0, failed=0, duration=0.0, skipped=True)
            self.history.append(summary)
            log.info("%s skipped: nothing to dispatch", stage)
            return summary

        start = self._clock()
        ordinary = [self._worker(a, selection, designated=False) for a in selection.accounts]
        last = self._worker(selection.designated, selection, designated=True) if selection.designated else None

        log.info("%s: dispatching %s workers (%s ordering)", stage, len(selection), self.settings.ordering)
        try:
            if self.settings.ordering == OrderingMode.BARRIER:
                tasks = await self._join(ordinary)
                if last is not None:
                    log.debug("%s: ordinary accounts joined, dispatching designated %s", stage, last.short)
                    tasks += await self._join([last])
            else:
                tasks = await self._join([*ordinary, *([last] if last else [])])
        finally:
            for w in [*ordinary, *([last] if last else [])]:
                self.active.pop(w.task.account.address, None)

        succeeded = sum(1 for t in tasks if t.status == TaskStatus.SUCCEEDED)
        failed = sum(1 for t in tasks if t.status == TaskStatus.FAILED)
        summary = StageSummary(
            stage=stage, tasks=tasks, succeeded=succeeded, failed=failed, duration=self._clock() - start
        )
        self.history.append(summary)
        self._log_summary(summary)
        return summary

    @staticmethod
    def _log_summary(summary: StageSummary) -> None:
        log.info("=" * 60)
        log.info("%s SUMMARY", str(summary.stage).upper())
        log.info("=" * 60)
        log.info("  %s/%s succeeded, %s failed, %.2fs",
                 summary.succeeded, len(summary.tasks), summary.failed, summary.duration)
        for t in summary.tasks:
            if t.status == TaskStatus.FAILED:
                log.info("  FAILED %s in %s after %s attempts: %s", t.account.short, t.state, t.attempts, t.last_error)
        log.info("=" * 60)

    def snapshot(self) -> dict[str, Any]:
        return {
            "active": [t.to_dict() for t in self.active.values()],
            "history": [s.to_dict() for s in self.history],
        }
