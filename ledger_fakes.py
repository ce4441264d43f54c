"""In-memory stand-ins for the ledger and relay used across the test modules."""

import asyncio

from bundler.constants import Provenance, Role, UnitKind
from bundler.errors import RelayError
from bundler.gateway import RateLimitedGateway
from bundler.models import Account, Asset, Holding, Instruction, LookupTable, SignedUnit, TransactionUnit

ASSET = Asset(currency="BND", issuer="rIssuerXXXXXXXXXXXXXXXXXXXXXXXXXX")


def make_account(name: str, **kw) -> Account:
    return Account(address=f"r{name}".ljust(26, "x"), secret=f"s{name}", **kw)


def make_accounts(n: int, prefix: str = "Ord") -> list[Account]:
    return [make_account(f"{prefix}{i:02d}") for i in range(n)]


def make_designated(provenance: Provenance = Provenance.AUTO_CREATED) -> Account:
    return make_account("Dev", role=Role.DESIGNATED_LAST, provenance=provenance)


def fast_gateway() -> RateLimitedGateway:
    return RateLimitedGateway(max_calls_per_second=1_000_000)


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    """Manual clock; `sleep` advances it instead of waiting."""

    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


def _countdown(table: dict[str, int], key: str) -> bool:
    n = table.get(key, 0)
    if n > 0:
        table[key] = n - 1
        return True
    return False


class FakeLedger:
    """Scriptable ledger.

    `holdings` maps address -> token balance; addresses absent from it never
    get a holding. The *_for tables make an operation "not ready" for that many
    calls before it starts succeeding.
    """

    def __init__(self, *, holdings=None, xrp=None, market: bool = True, depth: float = 0.0):
        self.holdings: dict[str, float] = dict(holdings or {})
        self.xrp: dict[str, float] = dict(xrp or {})
        self.market = market
        self.depth = depth
        self.depths: list[float] = []
        self.missing_for: dict[str, int] = {}
        self.zero_for: dict[str, int] = {}
        self.not_ready_for: dict[str, int] = {}
        self.submit_errors: dict[str, int] = {}
        self.lookup_tables: dict[str, LookupTable] = {}
        self.lookup_error = False
        self.validation: dict[str, bool | None] = {}
        self.sign_errors: dict[UnitKind, Exception] = {}
        self.transfer_errors: set[str] = set()

        self.calls: list[tuple[str, str]] = []
        self.submitted: list[str] = []
        self.transfers: list[tuple[str, str, float]] = []
        self.token_transfers: list[tuple[str, str, float]] = []
        self.signed: list[TransactionUnit] = []
        self.submitted_signed: list[SignedUnit] = []

    # ---- sell path ----

    async def find_holding(self, account: Account, asset: Asset) -> Holding | None:
        self.calls.append(("find_holding", account.address))
        if account.address not in self.holdings or _countdown(self.missing_for, account.address):
            return None
        return Holding(account=account, asset=asset, balance=self.holdings[account.address])

    async def get_holding_balance(self, holding: Holding) -> float:
        address = holding.account.address
        self.calls.append(("get_holding_balance", address))
        if _countdown(self.zero_for, address):
            return 0.0
        return self.holdings[address]

    async def build_sell(self, account, holding, balance, fee_level):
        self.calls.append(("build_sell", account.address))
        if _countdown(self.not_ready_for, account.address):
            return None
        return {"sell": account.address, "amount": balance, "fee_level": str(fee_level)}

    async def submit(self, account: Account, action) -> str:
        self.calls.append(("submit", account.address))
        if _countdown(self.submit_errors, account.address):
            raise RuntimeError("connection reset")
        self.submitted.append(account.address)
        return f"TX-{account.address}"

    # ---- funding ----

    async def get_balance(self, address: str) -> float:
        self.calls.append(("get_balance", address))
        return self.xrp.get(address, 0.0)

    async def transfer(self, source: Account, destination: str, amount: float) -> str:
        self.calls.append(("transfer", source.address))
        if source.address in self.transfer_errors:
            raise RuntimeError("tecUNFUNDED_PAYMENT")
        self.transfers.append((source.address, destination, amount))
        self.xrp[source.address] = self.xrp.get(source.address, 0.0) - amount
        self.xrp[destination] = self.xrp.get(destination, 0.0) + amount
        return "TX-transfer"

    async def transfer_token(self, source: Account, destination: str, asset: Asset, amount: float) -> str:
        self.calls.append(("transfer_token", source.address))
        self.token_transfers.append((source.address, destination, amount))
        self.holdings[source.address] = self.holdings.get(source.address, 0.0) - amount
        return "TX-token"

    # ---- market ----

    async def market_exists(self, asset: Asset) -> bool:
        self.calls.append(("market_exists", asset.currency))
        return self.market

    async def market_depth(self, asset: Asset) -> float:
        self.calls.append(("market_depth", asset.currency))
        if self.depths:
            return self.depths.pop(0)
        return self.depth

    # ---- launch path ----

    def creation_instructions(self, issuer: Account, asset: Asset) -> list[Instruction]:
        return [Instruction(issuer, {"create": asset.currency})]

    def buy_instructions(self, account: Account, asset: Asset, amount: float) -> list[Instruction]:
        return [
            Instruction(account, {"trust": asset.currency}),
            Instruction(account, {"buy": amount}),
        ]

    async def resolve_lookup_table(self, key: str) -> LookupTable | None:
        self.calls.append(("resolve_lookup_table", key))
        if self.lookup_error:
            raise RuntimeError("ledger_entry timed out")
        return self.lookup_tables.get(key)

    async def sign_unit(self, unit: TransactionUnit) -> SignedUnit:
        self.calls.append(("sign_unit", str(unit.kind)))
        if unit.kind in self.sign_errors:
            raise self.sign_errors[unit.kind]
        self.signed.append(unit)
        n = len(self.signed)
        return SignedUnit(tx_hash=f"HASH{n}", blob=f"BLOB{n}")

    async def submit_signed(self, signed: SignedUnit) -> str:
        self.calls.append(("submit_signed", signed.tx_hash))
        self.submitted_signed.append(signed)
        return signed.tx_hash

    async def validation_status(self, tx_hash: str) -> bool | None:
        self.calls.append(("validation_status", tx_hash))
        return self.validation.get(tx_hash, True)

    def count(self, op: str, address: str | None = None) -> int:
        return sum(1 for o, a in self.calls if o == op and (address is None or a == address))


class FakeRelay:
    def __init__(self, bundle_id: str = "bundle-1", error: Exception | None = None):
        self.bundle_id = bundle_id
        self.error = error
        self.sent: list[list[str]] = []
        self.statuses: dict[str, dict] = {}

    async def send_bundle(self, blobs) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append(list(blobs))
        return self.bundle_id

    async def bundle_status(self, bundle_id: str):
        if self.error is not None:
            raise RelayError(str(self.error))
        return self.statuses.get(bundle_id)
