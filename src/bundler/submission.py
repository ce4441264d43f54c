import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import bundler.constants as C
from bundler.constants import SubmissionMode
from bundler.errors import BundlerError, NetworkError
from bundler.gateway import RateLimitedGateway
from bundler.ledger import Ledger
from bundler.models import BundlePlan, SignedUnit, SubmissionResult, TransactionUnit
from bundler.relay import RelayClient

log = logging.getLogger("bundler.submission")


class SubmissionPipeline:
    """Submits a packed plan in exactly one mode.

    relay:      sign every unit, hand all blobs to the relay as one atomic bundle.
    sequential: sign, submit and wait for validation unit by unit; the first
                failure fails the plan.

    Nothing is resubmitted here. Re-running the launch is the recovery path.
    """

    def __init__(
        self,
        *,
        ledger: Ledger,
        gateway: RateLimitedGateway,
        mode: SubmissionMode = SubmissionMode.RELAY,
        relay: RelayClient | None = None,
        validation_timeout: float = C.VALIDATION_TIMEOUT,
        poll_interval: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if mode == SubmissionMode.RELAY and relay is None:
            raise ValueError("relay mode needs a RelayClient")
        self.ledger = ledger
        self.gateway = gateway
        self.mode = SubmissionMode(mode)
        self.relay = relay
        self.validation_timeout = validation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def submit(self, plan: BundlePlan) -> SubmissionResult:
        if not plan.units:
            log.error("Nothing to submit: empty plan")
            return SubmissionResult(ok=False, mode=self.mode, error="empty plan")
        try:
            if self.mode == SubmissionMode.RELAY:
                return await self._submit_relay(plan)
            return await self._submit_sequential(plan)
        except BundlerError as e:
            log.error("Launch submission failed (%s): %s", self.mode, e)
            return SubmissionResult(ok=False, mode=self.mode, error=f"{e.__class__.__name__}: {e}")

    async def _sign(self, unit: TransactionUnit) -> SignedUnit:
        return await self.gateway.call(lambda: self.ledger.sign_unit(unit))

    async def _submit_relay(self, plan: BundlePlan) -> SubmissionResult:
        signed = [await self._sign(u) for u in plan.units]
        for u, s in zip(plan.units, signed):
            log.debug("%s unit signed by %s signers tx=%s", u.kind, len(u.signers), s.tx_hash)
        bundle_id = await self.relay.send_bundle([s.blob for s in signed])
        return SubmissionResult(ok=True, mode=self.mode, identifier=bundle_id)

    async def _await_validation(self, tx_hash: str) -> bool:
        try:
            async with asyncio.timeout(self.validation_timeout):
                while True:
                    try:
                        status = await self.gateway.call(lambda: self.ledger.validation_status(tx_hash))
                    except NetworkError as e:
                        log.debug("Validation poll for %s failed: %s", tx_hash, e)
                        status = None
                    if status is not None:
                        return status
                    await self._sleep(self.poll_interval)
        except TimeoutError:
            log.warning("Validation timeout tx=%s after %.1fs", tx_hash, self.validation_timeout)
            return False

    async def _submit_sequential(self, plan: BundlePlan) -> SubmissionResult:
        tx_hash = None
        for n, unit in enumerate(plan.units, start=1):
            signed = await self._sign(unit)
            tx_hash = await self.gateway.call(lambda: self.ledger.submit_signed(signed))
            log.info("Unit %s/%s (%s) submitted tx=%s", n, len(plan), unit.kind, tx_hash)
            if not await self._await_validation(tx_hash):
                return SubmissionResult(
                    ok=False, mode=self.mode, identifier=tx_hash,
                    error=f"unit {n}/{len(plan)} ({unit.kind}) not validated",
                )
            log.info("Unit %s/%s validated", n, len(plan))
        return SubmissionResult(ok=True, mode=self.mode, identifier=tx_hash)
