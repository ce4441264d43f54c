"""Ledger operations the orchestrator depends on.

Core components only see the `Ledger` protocol and call each operation through
the shared gateway. `XrplLedger` implements it against rippled JSON-RPC with
xrpl-py; tests use in-memory fakes.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, replace
from typing import Any, Protocol

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.addresscodec import decode_classic_address
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models import SubmitOnly, Transaction
from xrpl.models.currencies import XRP
from xrpl.models.requests import AccountInfo, AccountLines, AMMInfo, Fee, LedgerEntry, ServerState, Tx
from xrpl.utils import drops_to_xrp
from xrpl.wallet import Wallet

import bundler.constants as C
from bundler.constants import FeeLevel, InstructionKind
from bundler.errors import FeeBudgetExceeded, NetworkError, SubmitRejected
from bundler.models import Account, Asset, Holding, Instruction, LookupTable, SignedUnit, TransactionUnit
from bundler.txn_factory.builder import (
    batch_inner,
    build_amm_create,
    build_batch,
    build_buy_offer,
    build_payment,
    build_sell_offer,
    build_token_payment,
    build_trustset,
    issued,
    lookup_table_memo,
    unit_fee,
    update_transaction,
)

log = logging.getLogger("bundler.ledger")


class Ledger(Protocol):
    # ---- sell path ----
    async def find_holding(self, account: Account, asset: Asset) -> Holding | None: ...
    async def get_holding_balance(self, holding: Holding) -> float: ...
    async def build_sell(self, account: Account, holding: Holding, balance: float, fee_level: FeeLevel) -> Any | None: ...
    async def submit(self, account: Account, action: Any) -> str: ...

    # ---- funding ----
    async def get_balance(self, address: str) -> float: ...
    async def transfer(self, source: Account, destination: str, amount: float) -> str: ...
    async def transfer_token(self, source: Account, destination: str, asset: Asset, amount: float) -> str: ...

    # ---- market ----
    async def market_exists(self, asset: Asset) -> bool: ...
    async def market_depth(self, asset: Asset) -> float: ...

    # ---- launch path ----
    def creation_instructions(self, issuer: Account, asset: Asset) -> list[Instruction]: ...
    def buy_instructions(self, account: Account, asset: Asset, amount: float) -> list[Instruction]: ...
    async def resolve_lookup_table(self, key: str) -> LookupTable | None: ...
    async def sign_unit(self, unit: TransactionUnit) -> SignedUnit: ...
    async def submit_signed(self, signed: SignedUnit) -> str: ...
    async def validation_status(self, tx_hash: str) -> bool | None: ...


# ============================================================================
# XRPL
# ============================================================================

ACCEPTED_RESULTS = {"tesSUCCESS", "terQUEUED"}
MAX_FEE_DROPS = 1000  # autofilled fee cap (base is 10)


@dataclass
class AccountRecord:
    lock: asyncio.Lock
    next_seq: int | None = None


@dataclass
class FeeInfo:
    """Fee escalation state from the rippled fee command. All fees in drops."""

    base_fee: int
    minimum_fee: int
    open_ledger_fee: int

    @classmethod
    def from_fee_result(cls, result: dict) -> "FeeInfo":
        drops = result["drops"]
        return cls(
            base_fee=int(drops["base_fee"]),
            minimum_fee=int(drops["minimum_fee"]),
            open_ledger_fee=int(drops["open_ledger_fee"]),
        )


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def _error(result: dict) -> str | None:
    return result.get("error") if isinstance(result, dict) else None


class XrplLedger:
    def __init__(
        self,
        client: AsyncJsonRpcClient,
        *,
        rpc_timeout: float = C.RPC_TIMEOUT,
        horizon: int = C.HORIZON,
        creation_xrp: float = 100,
        creation_token_value: str = "1000000",
        trading_fee: int = 500,
    ):
        self.client = client
        self.rpc_timeout = rpc_timeout
        self.horizon = horizon
        self.creation_xrp = creation_xrp
        self.creation_token_value = creation_token_value
        self.trading_fee = trading_fee
        self.accounts: dict[str, AccountRecord] = {}
        self._wallets: dict[str, Wallet] = {}

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _rpc(self, req, *, t: float | None = None):
        return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)

    def wallet(self, account: Account) -> Wallet:
        w = self._wallets.get(account.address)
        if w is None:
            w = Wallet.from_seed(account.secret)
            if w.address != account.address:
                raise ValueError(f"secret for {account.short} derives {w.address}")
            self._wallets[account.address] = w
        return w

    def _record_for(self, addr: str) -> AccountRecord:
        rec = self.accounts.get(addr)
        if rec is None:
            rec = AccountRecord(lock=asyncio.Lock(), next_seq=None)
            self.accounts[addr] = rec
        return rec

    async def alloc_seq(self, addr: str) -> int:
        rec = self._record_for(addr)
        async with rec.lock:
            if rec.next_seq is None:
                ai = await self._rpc(AccountInfo(account=addr, ledger_index="current", strict=True))
                if not ai.is_successful():
                    raise NetworkError(f"account_info {addr}: {_error(ai.result)}")
                rec.next_seq = ai.result["account_data"]["Sequence"]
            s = rec.next_seq
            rec.next_seq += 1
            return s

    async def reset_seq(self, *addrs: str) -> None:
        """Forget cached sequences so the next allocation re-reads the ledger."""
        for addr in addrs:
            rec = self._record_for(addr)
            async with rec.lock:
                rec.next_seq = None

    async def _last_ledger_sequence(self) -> int:
        ss = await self._rpc(ServerState())
        return ss.result["state"]["validated_ledger"]["seq"] + self.horizon

    async def get_fee_info(self) -> FeeInfo:
        r = await self._rpc(Fee())
        return FeeInfo.from_fee_result(r.result)

    async def _open_ledger_fee(self) -> int:
        fee_info = await self.get_fee_info()
        fee = fee_info.minimum_fee
        if fee > fee_info.base_fee:
            log.warning("Queue fees escalated: minimum=%s open_ledger=%s base=%s",
                        fee_info.minimum_fee, fee_info.open_ledger_fee, fee_info.base_fee)
        if fee > MAX_FEE_DROPS:
            raise ValueError(f"Fee too high ({fee} drops > {MAX_FEE_DROPS} max), queue is full")
        return fee

    def _sign_json(self, tx: dict, wallet: Wallet) -> SignedUnit:
        if tx.get("Flags") == 0:
            del tx["Flags"]
        tx["SigningPubKey"] = wallet.public_key
        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, wallet.private_key)
        blob = encode(tx)
        return SignedUnit(tx_hash=_txid_from_signed_blob_hex(blob), blob=blob)

    async def _sign_single(self, txn: Transaction, account: Account, fee: int | None = None) -> SignedUnit:
        tx = txn.to_xrpl()
        if not tx.get("Sequence"):
            tx["Sequence"] = await self.alloc_seq(account.address)
        if not tx.get("Fee"):
            tx["Fee"] = str(fee if fee is not None else await self._open_ledger_fee())
        tx["LastLedgerSequence"] = await self._last_ledger_sequence()
        return self._sign_json(tx, self.wallet(account))

    async def submit_signed(self, signed: SignedUnit, *, accounts: tuple[str, ...] = ()) -> str:
        resp = await self._rpc(SubmitOnly(tx_blob=signed.blob))
        res = resp.result
        if not resp.is_successful():
            raise NetworkError(f"submit failed: {_error(res)}")
        er = res.get("engine_result")
        if er not in ACCEPTED_RESULTS:
            if accounts:
                await self.reset_seq(*accounts)
            raise SubmitRejected(er, f"{er}: {res.get('engine_result_message', '')}".strip())
        srv_txid = res.get("tx_json", {}).get("hash")
        return srv_txid or signed.tx_hash

    # =========================================================================
    # Sell path
    # =========================================================================

    async def _trust_line(self, address: str, asset: Asset) -> dict | None:
        r = await self._rpc(AccountLines(account=address, peer=asset.issuer, ledger_index="validated"))
        if not r.is_successful():
            if _error(r.result) == "actNotFound":
                return None
            raise NetworkError(f"account_lines {address}: {_error(r.result)}")
        for line in r.result.get("lines", []):
            if line.get("currency") == asset.currency and line.get("account") == asset.issuer:
                return line
        return None

    async def find_holding(self, account: Account, asset: Asset) -> Holding | None:
        line = await self._trust_line(account.address, asset)
        if line is None:
            return None
        return Holding(account=account, asset=asset, balance=float(line["balance"]))

    async def get_holding_balance(self, holding: Holding) -> float:
        line = await self._trust_line(holding.account.address, holding.asset)
        return float(line["balance"]) if line else 0.0

    async def build_sell(self, account: Account, holding: Holding, balance: float, fee_level: FeeLevel) -> Any | None:
        if not await self.market_exists(holding.asset):
            return None
        return build_sell_offer(account.address, holding.asset, balance, C.FEE_LEVEL_DROPS[FeeLevel(fee_level)])

    async def submit(self, account: Account, action: Transaction) -> str:
        signed = await self._sign_single(action, account)
        return await self.submit_signed(signed, accounts=(account.address,))

    # =========================================================================
    # Funding
    # =========================================================================

    async def get_balance(self, address: str) -> float:
        r = await self._rpc(AccountInfo(account=address, ledger_index="validated"))
        if not r.is_successful():
            if _error(r.result) == "actNotFound":
                return 0.0
            raise NetworkError(f"account_info {address}: {_error(r.result)}")
        return float(drops_to_xrp(r.result["account_data"]["Balance"]))

    async def transfer(self, source: Account, destination: str, amount: float) -> str:
        signed = await self._sign_single(build_payment(source.address, destination, amount), source)
        return await self.submit_signed(signed, accounts=(source.address,))

    async def transfer_token(self, source: Account, destination: str, asset: Asset, amount: float) -> str:
        """Issued-asset payment. A destination other than the issuer needs a trust line."""
        signed = await self._sign_single(build_token_payment(source.address, destination, asset, amount), source)
        return await self.submit_signed(signed, accounts=(source.address,))

    # =========================================================================
    # Market
    # =========================================================================

    async def _amm(self, asset: Asset) -> dict | None:
        r = await self._rpc(AMMInfo(asset=XRP(), asset2=issued(asset)))
        if not r.is_successful():
            if _error(r.result) in ("actNotFound", "ammNotFound", "objectNotFound"):
                return None
            raise NetworkError(f"amm_info {asset}: {_error(r.result)}")
        return r.result.get("amm")

    async def market_exists(self, asset: Asset) -> bool:
        return await self._amm(asset) is not None

    async def market_depth(self, asset: Asset) -> float:
        """XRP side of the pool, in XRP. Zero when there is no pool."""
        amm = await self._amm(asset)
        if not amm:
            return 0.0
        for side in (amm.get("amount"), amm.get("amount2")):
            if isinstance(side, str):
                return float(drops_to_xrp(side))
        return 0.0

    # =========================================================================
    # Launch path
    # =========================================================================

    def creation_instructions(self, issuer: Account, asset: Asset) -> list[Instruction]:
        amm = build_amm_create(issuer.address, asset, self.creation_xrp, self.creation_token_value, self.trading_fee)
        return [Instruction(issuer, amm)]

    def buy_instructions(self, account: Account, asset: Asset, amount: float) -> list[Instruction]:
        return [
            Instruction(account, build_trustset(account.address, asset)),
            Instruction(account, build_buy_offer(account.address, asset, amount)),
        ]

    async def resolve_lookup_table(self, key: str) -> LookupTable | None:
        r = await self._rpc(LedgerEntry(index=key, ledger_index="validated"))
        if not r.is_successful():
            if _error(r.result) in ("entryNotFound", "invalidParams", "malformedRequest"):
                return None
            raise NetworkError(f"ledger_entry {key}: {_error(r.result)}")
        return LookupTable(key=key, entry=r.result.get("node", {}))

    def _batch_signers(self, batch, accounts: list[Account]):
        from xrpl.transaction import sign_multiaccount_batch

        signers = []
        for account in accounts:
            signed = sign_multiaccount_batch(self.wallet(account), batch)
            signers.extend(signed.batch_signers or [])
        signers.sort(key=lambda s: decode_classic_address(s.account))
        return replace(batch, batch_signers=signers)

    async def sign_unit(self, unit: TransactionUnit) -> SignedUnit:
        actions = unit.actions
        limit = unit.budget(InstructionKind.BUDGET_LIMIT)
        price = unit.budget(InstructionKind.BUDGET_PRICE)
        if limit is None or price is None:
            raise ValueError(f"{unit.kind} unit is missing its budget pair")

        extra_signers = unit.signers[1:]
        plain = len(actions) == 1 and not extra_signers
        fee = unit_fee(price, len(actions), len(extra_signers))
        if fee > limit:
            raise FeeBudgetExceeded(f"{unit.kind} unit needs {fee} drops, limit is {limit}")

        memos = [lookup_table_memo(unit.lookup_table.key)] if unit.lookup_table else None
        if plain:
            txn = actions[0].payload
            if memos:
                txn = update_transaction(txn, Memos=[m.to_xrpl() for m in memos])
            return await self._sign_single(txn, unit.payer, fee)

        outer_seq = await self.alloc_seq(unit.payer.address)
        inner = [batch_inner(i.payload, await self.alloc_seq(i.signer.address)) for i in actions]
        batch = build_batch(unit.payer.address, outer_seq, inner, memos)
        if extra_signers:
            batch = self._batch_signers(batch, extra_signers)
        tx = batch.to_xrpl()
        tx["Fee"] = str(fee)
        tx["LastLedgerSequence"] = await self._last_ledger_sequence()
        signed = self._sign_json(tx, self.wallet(unit.payer))
        log.debug("Signed %s Batch: %s inner, %s signers, fee %s tx=%s",
                  unit.kind, len(inner), len(unit.signers), fee, signed.tx_hash)
        return signed

    async def validation_status(self, tx_hash: str) -> bool | None:
        """True validated with tesSUCCESS, False validated with anything else, None not final yet."""
        r = await self._rpc(Tx(transaction=tx_hash))
        if not r.is_successful():
            if _error(r.result) == "txnNotFound":
                return None
            raise NetworkError(f"tx {tx_hash}: {_error(r.result)}")
        result = r.result
        if not result.get("validated"):
            return None
        meta = result.get("meta") or result.get("metaData") or {}
        outcome = meta.get("TransactionResult")
        if outcome != "tesSUCCESS":
            log.warning("tx %s validated with %s", tx_hash, outcome)
        return outcome == "tesSUCCESS"
