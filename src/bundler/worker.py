"""Per-account sell state machine.

    DISCOVER_ACCOUNT -> AWAIT_BALANCE -> BUILD_ACTION -> SUBMIT -> DONE
                                 (any state) -> FAILED once attempts run out

Each visit to a state costs one attempt from a budget shared by all states. A
state that is not ready yet (no holding, zero balance, no market, failed send)
is retried in place after `retry_delay`; the machine never moves backwards.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import bundler.constants as C
from bundler.config import WorkerSettings
from bundler.constants import TaskStatus, WorkerState
from bundler.errors import BundlerError, NetworkError
from bundler.gateway import RateLimitedGateway
from bundler.ledger import Ledger
from bundler.models import Asset, WorkerTask

log = logging.getLogger("bundler.worker")


class AccountWorker:
    def __init__(
        self,
        task: WorkerTask,
        *,
        ledger: Ledger,
        gateway: RateLimitedGateway,
        asset: Asset,
        settings: WorkerSettings | None = None,
        submit_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.task = task
        self.ledger = ledger
        self.gateway = gateway
        self.asset = asset
        self.settings = settings or WorkerSettings()
        self.submit_delay = submit_delay
        self._sleep = sleep
        self._delayed = False
        self._handlers: dict[WorkerState, Callable[[], Awaitable[bool]]] = {
            WorkerState.DISCOVER_ACCOUNT: self._discover,
            WorkerState.AWAIT_BALANCE: self._await_balance,
            WorkerState.BUILD_ACTION: self._build_action,
            WorkerState.SUBMIT: self._submit,
        }

    @property
    def short(self) -> str:
        return self.task.account.short

    async def run(self) -> WorkerTask:
        task = self.task
        while task.state not in C.TERMINAL_WORKER_STATES:
            if task.attempts >= self.settings.max_attempts:
                self._fail(f"attempt budget exhausted in {task.state}")
                break

            task.attempts += 1
            state = task.state
            try:
                advanced = await self._handlers[state]()
            except NetworkError as e:
                task.last_error = str(e)
                advanced = False
            except BundlerError as e:
                # Not transient; retrying the same state cannot help.
                task.last_error = f"{e.__class__.__name__}: {e}"
                self._fail(f"non-retryable error in {state}")
                break

            if not advanced:
                self._log_retry(state)
                await self._sleep(self.settings.retry_delay)
        return task

    # ---- states ----

    async def _discover(self) -> bool:
        task = self.task
        holding = await self.gateway.call(lambda: self.ledger.find_holding(task.account, self.asset))
        if holding is None:
            task.last_error = f"no {self.asset} holding yet"
            return False
        task.holding = holding
        task.state = WorkerState.AWAIT_BALANCE
        log.debug("%s: holding found", self.short)
        return True

    async def _await_balance(self) -> bool:
        task = self.task
        balance = await self.gateway.call(lambda: self.ledger.get_holding_balance(task.holding))
        if not balance or balance <= 0:
            task.last_error = "balance not positive yet"
            return False
        task.balance = balance
        task.holding.balance = balance
        task.state = WorkerState.BUILD_ACTION
        log.debug("%s: balance %s", self.short, balance)
        return True

    async def _build_action(self) -> bool:
        task = self.task
        action = await self.gateway.call(
            lambda: self.ledger.build_sell(task.account, task.holding, task.balance, self.settings.fee_level)
        )
        if action is None:
            task.last_error = "market not ready"
            return False
        task.action = action
        task.state = WorkerState.SUBMIT
        return True

    async def _submit(self) -> bool:
        task = self.task
        if self.submit_delay and not self._delayed:
            self._delayed = True
            await self._sleep(self.submit_delay)
        task.tx_hash = await self.gateway.call(lambda: self.ledger.submit(task.account, task.action))
        task.state = WorkerState.DONE
        task.status = TaskStatus.SUCCEEDED
        task.last_error = None
        task.finished_at = time.time()
        log.info("%s: sold %s after %s attempts tx=%s", self.short, task.balance, task.attempts, task.tx_hash)
        return True

    # ---- helpers ----

    def _fail(self, reason: str) -> None:
        task = self.task
        task.state = WorkerState.FAILED
        task.status = TaskStatus.FAILED
        task.finished_at = time.time()
        task.last_error = task.last_error or reason
        log.warning(
            "%s: FAILED after %s attempts: %s (last error: %s)", self.short, task.attempts, reason, task.last_error
        )

    def _log_retry(self, state: WorkerState) -> None:
        task = self.task
        if task.attempts % C.PROGRESS_LOG_EVERY == 0:
            log.info("%s: still in %s (attempt %s/%s): %s",
                     self.short, state, task.attempts, self.settings.max_attempts, task.last_error)
        else:
            log.debug("%s: retry %s (attempt %s): %s", self.short, state, task.attempts, task.last_error)


async def run_worker(task: WorkerTask, **kwargs) -> WorkerTask:
    return await AccountWorker(task, **kwargs).run()
