import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import bundler.constants as C
from bundler.config import (
    BudgetSettings,
    StageSettings,
    WorkerSettings,
    _number,
    allocation_amounts,
    submission_mode,
)
from bundler.constants import Provenance, StageName, SubmissionMode
from bundler.dispatcher import Dispatcher
from bundler.errors import NetworkError, PreflightError
from bundler.funding import FundingChecker
from bundler.gateway import RateLimitedGateway
from bundler.gather import FundGatherer
from bundler.inventory import Inventory, load_inventory
from bundler.ledger import Ledger
from bundler.models import Account, GatherSummary, LaunchResult, StageSummary
from bundler.packer import TransactionPacker
from bundler.partitioner import build_allocation_plan, select_stage
from bundler.relay import RelayClient
from bundler.submission import SubmissionPipeline

log = logging.getLogger("bundler.orchestrator")


class Orchestrator:
    """Owns the shared gateway and wires the sell and launch paths around it."""

    def __init__(
        self,
        conf: Mapping[str, Any],
        *,
        ledger: Ledger,
        inventory: Inventory,
        funding_account: Account,
        gateway: RateLimitedGateway | None = None,
        relay: RelayClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.conf = conf
        self.ledger = ledger
        self.inventory = inventory
        self.asset = inventory.asset
        self.funding_account = funding_account
        self.relay = relay
        self._sleep = sleep

        ledger_cfg = conf.get("ledger", {})
        rate = _number(
            ledger_cfg.get("max_calls_per_second", C.MAX_CALLS_PER_SECOND),
            C.MAX_CALLS_PER_SECOND,
            "max_calls_per_second",
        )
        self.gateway = gateway or RateLimitedGateway(rate or C.MAX_CALLS_PER_SECOND)
        self.stage_settings = StageSettings.from_cfg(conf)
        self.worker_settings = WorkerSettings.from_cfg(conf)
        self.budgets = BudgetSettings.from_cfg(conf)
        self.mode = submission_mode(conf)

        alloc = conf.get("allocation", {})
        self.default_amount = float(alloc.get("default_amount", C.DEFAULT_ALLOCATION_AMOUNT))
        amounts = inventory.amounts or allocation_amounts(conf)
        self.plan = build_allocation_plan(inventory.wallets, amounts, self.default_amount)

        self.dispatcher = Dispatcher(
            ledger=ledger,
            gateway=self.gateway,
            asset=self.asset,
            settings=self.worker_settings,
            sleep=sleep,
        )
        self.last_launch: LaunchResult | None = None
        self.last_gather: GatherSummary | None = None

    @property
    def designated(self) -> Account:
        return self.inventory.designated

    # =========================================================================
    # Sell path
    # =========================================================================

    async def wait_for_threshold(self, stage: StageName) -> bool:
        """Poll market depth until it reaches the stage threshold. False on timeout."""
        threshold = self.stage_settings.stage(stage).threshold
        settings = self.stage_settings
        try:
            async with asyncio.timeout(settings.threshold_timeout):
                while True:
                    try:
                        depth = await self.gateway.call(lambda: self.ledger.market_depth(self.asset))
                    except NetworkError as e:
                        log.debug("Market depth poll failed: %s", e)
                        depth = None
                    if depth is not None and depth >= threshold:
                        log.info("%s: market depth %.2f XRP reached threshold %s", stage, depth, threshold)
                        return True
                    log.debug("%s: market depth %s < %s, waiting", stage, depth, threshold)
                    await self._sleep(settings.poll_interval)
        except TimeoutError:
            log.warning("%s: threshold %s not reached after %.0fs, selling anyway",
                        stage, threshold, settings.threshold_timeout)
            return False

    async def run_stage(self, stage: StageName | str, *, wait_for_threshold: bool | None = None) -> StageSummary:
        stage = StageName(stage)
        selection = select_stage(self.plan, stage, self.stage_settings, self.designated)
        wait = self.stage_settings.wait_for_threshold if wait_for_threshold is None else wait_for_threshold
        if wait and not selection.skipped:
            await self.wait_for_threshold(stage)
        return await self.dispatcher.dispatch(selection)

    # =========================================================================
    # Launch path
    # =========================================================================

    def _submission_pipeline(self, mode: SubmissionMode) -> SubmissionPipeline:
        ledger_cfg = self.conf.get("ledger", {})
        return SubmissionPipeline(
            ledger=self.ledger,
            gateway=self.gateway,
            mode=mode,
            relay=self.relay,
            validation_timeout=float(ledger_cfg.get("validation_timeout", C.VALIDATION_TIMEOUT)),
            sleep=self._sleep,
        )

    async def launch(self, mode: SubmissionMode | str | None = None) -> LaunchResult:
        """Fund the designated account, pack every buy, submit in one mode.

        PreflightError propagates. Submission failures come back in the result.
        """
        mode = SubmissionMode(mode) if mode else self.mode
        if mode == SubmissionMode.RELAY and self.relay is None:
            raise PreflightError("relay submission selected but no relay endpoints are configured")
        funding_cfg = self.conf.get("funding", {})
        base = self.inventory.designated_amount or self.default_amount

        checker = FundingChecker(
            ledger=self.ledger,
            gateway=self.gateway,
            funding_account=self.funding_account,
            buffer=float(funding_cfg.get("buffer", C.FUNDING_BUFFER)),
            margin=float(funding_cfg.get("margin", C.FUNDING_MARGIN)),
        )
        funding = await checker.ensure_funded(self.designated, base)

        creation = None
        if self.inventory.issuer is not None:
            creation = self.ledger.creation_instructions(self.inventory.issuer, self.asset)
        else:
            log.info("No issuer key in inventory, the market must already exist")
        designated = (self.designated, self.ledger.buy_instructions(self.designated, self.asset, base))
        ordinary = [
            (e.account, self.ledger.buy_instructions(e.account, self.asset, e.amount))
            for e in self.plan.entries
        ]

        packer = TransactionPacker(
            ledger=self.ledger,
            gateway=self.gateway,
            asset=self.asset,
            budgets=self.budgets,
            lookup_table_key=self.conf.get("launch", {}).get("lookup_table") or None,
        )
        plan = await packer.pack(creation, designated, ordinary)

        submission = await self._submission_pipeline(mode).submit(plan)
        result = LaunchResult(funding=funding, plan=plan, submission=submission)
        self.last_launch = result
        if submission.ok:
            log.info("Launch submitted (%s): %s", mode, submission.identifier)
        else:
            log.error("Launch failed (%s): %s", mode, submission.error)
        return result

    # =========================================================================
    # Gather
    # =========================================================================

    async def gather(self, *, new_only: bool = False) -> GatherSummary:
        """Return leftover tokens and XRP to the funding account.

        With `new_only`, accounts the operator supplied keep their funds.
        """
        accounts = [*self.inventory.wallets, self.designated]
        if new_only:
            accounts = [a for a in accounts if a.provenance == Provenance.AUTO_CREATED]
        g = self.conf.get("gather", {})
        gatherer = FundGatherer(
            ledger=self.ledger,
            gateway=self.gateway,
            asset=self.asset,
            funding_account=self.funding_account,
            keep_xrp=_number(g.get("keep_xrp", C.GATHER_KEEP_XRP), C.GATHER_KEEP_XRP, "gather.keep_xrp"),
            concurrency=int(_number(g.get("concurrency", C.GATHER_CONCURRENCY), C.GATHER_CONCURRENCY,
                                    "gather.concurrency")),
        )
        self.last_gather = await gatherer.gather(accounts, new_only=new_only)
        return self.last_gather

    async def bundle_status(self, bundle_id: str) -> dict[str, Any] | None:
        if self.relay is None:
            raise NetworkError("no relay configured")
        return await self.relay.bundle_status(bundle_id)

    def snapshot(self) -> dict[str, Any]:
        return {
            "asset": str(self.asset),
            "accounts": len(self.plan),
            "designated": self.designated.address,
            "ordering": str(self.worker_settings.ordering),
            "submission_mode": str(self.mode),
            "gateway": self.gateway.snapshot(),
            "stages": self.dispatcher.snapshot(),
            "last_launch": self.last_launch.to_dict() if self.last_launch else None,
            "last_gather": self.last_gather.to_dict() if self.last_gather else None,
        }


# =============================================================================
# Wiring from config
# =============================================================================


def build_relay(conf: Mapping[str, Any]) -> RelayClient | None:
    r = conf.get("relay", {})
    urls = r.get("urls") or []
    if not urls:
        return None
    return RelayClient(
        urls,
        timeout=float(r.get("timeout", 10.0)),
        max_retries=int(r.get("max_retries", 5)),
        initial_backoff=float(r.get("initial_backoff", 2.0)),
        max_backoff=float(r.get("max_backoff", 20.0)),
        cooldown_file=r.get("cooldown_file") or None,
        cooldown_seconds=float(r.get("cooldown_seconds", 120)),
    )


def from_config(conf: Mapping[str, Any], inventory_path: str | None = None) -> Orchestrator:
    """Build the real XRPL-backed orchestrator. Raises PreflightError on bad inventory."""
    from xrpl.asyncio.clients import AsyncJsonRpcClient
    from xrpl.wallet import Wallet

    from bundler.ledger import XrplLedger

    inventory = load_inventory(inventory_path or conf.get("inventory", {}).get("path", "inventory.json"))

    ledger_cfg = conf.get("ledger", {})
    launch_cfg = conf.get("launch", {})
    client = AsyncJsonRpcClient(ledger_cfg.get("rpc_url", "http://localhost:5005"))
    ledger = XrplLedger(
        client,
        rpc_timeout=float(ledger_cfg.get("rpc_timeout", C.RPC_TIMEOUT)),
        horizon=int(ledger_cfg.get("horizon", C.HORIZON)),
        creation_xrp=float(launch_cfg.get("creation_xrp", 100)),
        creation_token_value=str(launch_cfg.get("creation_token_value", "1000000")),
        trading_fee=int(launch_cfg.get("trading_fee", 500)),
    )

    seed = conf["funding"]["seed"]
    try:
        funding_wallet = Wallet.from_seed(seed)
    except Exception as e:
        raise PreflightError(f"invalid funding seed ({e.__class__.__name__})") from e
    funding_account = Account(address=funding_wallet.address, secret=seed, provenance=Provenance.FUNDING)

    return Orchestrator(
        conf,
        ledger=ledger,
        inventory=inventory,
        funding_account=funding_account,
        relay=build_relay(conf),
    )
