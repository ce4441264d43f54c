"""Sweep what the run's accounts still hold back to the funding account.

Tokens go first, then every XRP above `keep_xrp`. An account that fails is
reported in the summary and never stops the others.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

import bundler.constants as C
from bundler.errors import BundlerError
from bundler.gateway import RateLimitedGateway
from bundler.ledger import Ledger
from bundler.models import Account, Asset, GatherResult, GatherSummary

log = logging.getLogger("bundler.gather")


class FundGatherer:
    def __init__(
        self,
        *,
        ledger: Ledger,
        gateway: RateLimitedGateway,
        asset: Asset,
        funding_account: Account,
        keep_xrp: float = C.GATHER_KEEP_XRP,
        concurrency: int = C.GATHER_CONCURRENCY,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.asset = asset
        self.funding_account = funding_account
        self.keep_xrp = keep_xrp
        self.concurrency = max(1, concurrency)
        self._clock = clock

    @property
    def destination(self) -> str:
        return self.funding_account.address

    async def _sweep_tokens(self, account: Account, result: GatherResult) -> None:
        holding = await self.gateway.call(lambda: self.ledger.find_holding(account, self.asset))
        if holding is None:
            return
        tokens = await self.gateway.call(lambda: self.ledger.get_holding_balance(holding))
        if tokens <= 0:
            return
        tx_hash = await self.gateway.call(
            lambda: self.ledger.transfer_token(account, self.destination, self.asset, tokens)
        )
        result.tokens = tokens
        result.tx_hashes.append(tx_hash)
        log.info("%s: moved %s %s tx=%s", account.short, tokens, self.asset.currency, tx_hash)

    async def _sweep_xrp(self, account: Account, result: GatherResult) -> None:
        balance = await self.gateway.call(lambda: self.ledger.get_balance(account.address))
        amount = balance - self.keep_xrp
        if amount <= 0:
            log.info("%s: %.6f XRP is within the %.6f XRP kept back, skipping", account.short, balance, self.keep_xrp)
            return
        tx_hash = await self.gateway.call(lambda: self.ledger.transfer(account, self.destination, amount))
        result.xrp = amount
        result.tx_hashes.append(tx_hash)
        log.info("%s: moved %.6f XRP tx=%s", account.short, amount, tx_hash)

    async def gather_one(self, account: Account) -> GatherResult:
        result = GatherResult(account=account)
        try:
            await self._sweep_tokens(account, result)
            await self._sweep_xrp(account, result)
        except BundlerError as e:
            result.error = f"{e.__class__.__name__}: {e}"
            log.error("%s: gather failed: %s", account.short, result.error)
        return result

    async def gather(self, accounts: Sequence[Account], *, new_only: bool = False) -> GatherSummary:
        picked = [a for a in accounts if a.address != self.destination]
        log.info("Gathering from %s accounts to %s (%s at a time)",
                 len(picked), self.funding_account.short, self.concurrency)
        sem = asyncio.Semaphore(self.concurrency)

        async def bounded(account: Account) -> GatherResult:
            async with sem:
                return await self.gather_one(account)

        start = self._clock()
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(bounded(a), name=f"gather-{a.short}") for a in picked]
        summary = GatherSummary(
            destination=self.destination,
            results=[t.result() for t in tasks],
            duration=self._clock() - start,
            new_only=new_only,
        )
        log.info("Gathered %s tokens and %.6f XRP from %s accounts, %s failed, %.2fs",
                 sum(r.tokens for r in summary.results), sum(r.xrp for r in summary.results),
                 len(summary.results), summary.failed, summary.duration)
        return summary
