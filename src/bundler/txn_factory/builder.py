from decimal import ROUND_UP, Decimal
import logging

from xrpl.models import IssuedCurrency, TransactionFlag
from xrpl.models.amounts import IssuedCurrencyAmount
from xrpl.models.transactions import (
    AMMCreate,
    Batch,
    BatchFlag,
    Memo,
    OfferCreate,
    OfferCreateFlag,
    Payment,
    Transaction,
    TrustSet,
)
from xrpl.utils import str_to_hex

import bundler.constants as C
from bundler.models import Asset

log = logging.getLogger("bundler.txn")

# Quality-agnostic floor for IOC offers: take whatever the book gives.
MIN_XRP_OUT = "1"  # drops
MIN_TOKEN_OUT = "0.000001"

LOOKUP_TABLE_MEMO_TYPE = "lookup_table"


def to_drops(xrp: float | Decimal | str) -> str:
    """XRP -> drops string, rounded up to the nearest drop."""
    drops = (Decimal(str(xrp)) * 1_000_000).to_integral_value(rounding=ROUND_UP)
    return str(int(drops))


def issued(asset: Asset) -> IssuedCurrency:
    return IssuedCurrency(currency=asset.currency, issuer=asset.issuer)


def token_amount(asset: Asset, value: float | str) -> IssuedCurrencyAmount:
    return IssuedCurrencyAmount(currency=asset.currency, issuer=asset.issuer, value=str(value))


def build_trustset(account: str, asset: Asset, limit: str = C.TRUSTLINE_LIMIT) -> TrustSet:
    return TrustSet(account=account, limit_amount=token_amount(asset, limit))


def build_sell_offer(account: str, asset: Asset, balance: float, fee_drops: int | None = None) -> OfferCreate:
    """Immediate-or-cancel offer that sells the whole token balance for XRP.

    TakerGets is what we give up (the tokens), TakerPays is the XRP floor.
    """
    return OfferCreate(
        account=account,
        taker_gets=token_amount(asset, balance),
        taker_pays=MIN_XRP_OUT,
        flags=OfferCreateFlag.TF_IMMEDIATE_OR_CANCEL | OfferCreateFlag.TF_SELL,
        fee=str(fee_drops) if fee_drops is not None else None,
    )


def build_buy_offer(account: str, asset: Asset, xrp_amount: float) -> OfferCreate:
    """Spend exactly `xrp_amount` XRP on the token, immediate-or-cancel."""
    return OfferCreate(
        account=account,
        taker_gets=to_drops(xrp_amount),
        taker_pays=token_amount(asset, MIN_TOKEN_OUT),
        flags=OfferCreateFlag.TF_IMMEDIATE_OR_CANCEL | OfferCreateFlag.TF_SELL,
    )


def build_amm_create(issuer: str, asset: Asset, xrp_amount: float, token_value: str, trading_fee: int) -> AMMCreate:
    """Seed the XRP/token pool. Fee must be at least one owner reserve."""
    return AMMCreate(
        account=issuer,
        amount=to_drops(xrp_amount),
        amount2=token_amount(asset, token_value),
        trading_fee=trading_fee,
    )


def build_payment(source: str, destination: str, xrp_amount: float) -> Payment:
    return Payment(account=source, destination=destination, amount=to_drops(xrp_amount))


def build_token_payment(source: str, destination: str, asset: Asset, value: float) -> Payment:
    return Payment(account=source, destination=destination, amount=token_amount(asset, value))


def lookup_table_memo(key: str) -> Memo:
    return Memo(memo_type=str_to_hex(LOOKUP_TABLE_MEMO_TYPE), memo_data=str_to_hex(key))


def update_transaction(transaction: Transaction, **kwargs) -> Transaction:
    """Update an existing transaction with new fields."""
    payload = transaction.to_xrpl()
    payload.update(kwargs)
    return type(transaction).from_xrpl(payload)


def batch_inner(transaction: Transaction, sequence: int) -> Transaction:
    """Turn a standalone transaction into a Batch inner transaction.

    Inner transactions carry no fee and no signature of their own.
    """
    payload = transaction.to_xrpl()
    flags = payload.get("Flags", 0)
    if not isinstance(flags, int):
        raise TypeError(f"expected integer Flags on {payload.get('TransactionType')}, got {flags!r}")
    payload.update(
        Flags=flags | TransactionFlag.TF_INNER_BATCH_TXN,
        Fee="0",
        SigningPubKey="",
        Sequence=sequence,
    )
    return type(transaction).from_xrpl(payload)


def unit_fee(price: int, inner_count: int, batch_signers: int) -> int:
    """Fee for one packed unit.

    A plain transaction pays one slot. A Batch pays two slots for itself, one per
    inner transaction and one per extra account signature.
    """
    if inner_count <= 1 and batch_signers == 0:
        return price
    return price * (2 + inner_count + batch_signers)


def build_batch(payer: str, sequence: int, inner: list[Transaction], memos: list[Memo] | None = None) -> Batch:
    payload = {
        "TransactionType": "Batch",
        "Account": payer,
        "Sequence": sequence,
        "Flags": BatchFlag.TF_ALL_OR_NOTHING,
        "RawTransactions": [{"RawTransaction": t.to_xrpl()} for t in inner],
    }
    if memos:
        payload["Memos"] = [m.to_xrpl() for m in memos]
    log.debug("Batch from %s: %s inner txns", payer, len(inner))
    return Batch.from_xrpl(payload)
