import logging

import bundler.constants as C
from bundler.constants import Provenance
from bundler.errors import InsufficientFundingBalance
from bundler.gateway import RateLimitedGateway
from bundler.ledger import Ledger
from bundler.models import Account, FundingResult

log = logging.getLogger("bundler.funding")


class FundingChecker:
    """Tops up an auto-created designated account before the launch is packed.

    Only accounts this tool created get topped up. Supplied accounts are
    the operator's responsibility; a shortfall there is only reported.
    Any failure here is fatal for the run and is never retried.
    """

    def __init__(
        self,
        *,
        ledger: Ledger,
        gateway: RateLimitedGateway,
        funding_account: Account,
        buffer: float = C.FUNDING_BUFFER,
        margin: float = C.FUNDING_MARGIN,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.funding_account = funding_account
        self.buffer = buffer
        self.margin = margin

    async def ensure_funded(self, designated: Account, base_amount: float) -> FundingResult:
        required = base_amount + self.buffer
        balance = await self.gateway.call(lambda: self.ledger.get_balance(designated.address))
        log.info("Designated %s holds %.6f XRP, requires %.6f", designated.short, balance, required)

        if balance >= required:
            return FundingResult(account=designated, required=required, balance=balance)

        shortfall = required - balance
        if designated.provenance != Provenance.AUTO_CREATED:
            log.warning(
                "Designated %s (%s) is %.6f XRP short; not funding an account this tool did not create",
                designated.short, designated.provenance, shortfall,
            )
            return FundingResult(account=designated, required=required, balance=balance, shortfall=shortfall)

        funding_balance = await self.gateway.call(lambda: self.ledger.get_balance(self.funding_account.address))
        if funding_balance < shortfall + self.margin:
            log.error(
                "Funding account %s holds %.6f XRP, needs %.6f to cover the shortfall",
                self.funding_account.short, funding_balance, shortfall + self.margin,
            )
            raise InsufficientFundingBalance(funding_balance=funding_balance, shortfall=shortfall, margin=self.margin)

        tx_hash = await self.gateway.call(
            lambda: self.ledger.transfer(self.funding_account, designated.address, shortfall)
        )
        log.info("Funded designated %s with %.6f XRP tx=%s", designated.short, shortfall, tx_hash)
        return FundingResult(
            account=designated,
            required=required,
            balance=balance,
            shortfall=shortfall,
            transferred=True,
            tx_hash=tx_hash,
        )
