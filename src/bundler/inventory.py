"""Read-only wallet inventory.

    {
      "asset": {"currency": "BND", "issuer": "r..."},
      "issuer_seed": "s...",                                  # optional
      "designated": {"seed": "s...", "address": "r...", "provenance": "auto-created", "amount": 0.3},
      "wallets": [{"seed": "s...", "address": "r..."}, ...],
      "amounts": [0.5, 0.4, ...]                             # optional, positional
    }

Addresses are optional; when present they must match the seed.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from xrpl.wallet import Wallet

from bundler.constants import Provenance, Role
from bundler.errors import AssetMismatchError, InventoryError
from bundler.models import Account, Asset

log = logging.getLogger("bundler.inventory")


@dataclass(slots=True)
class Inventory:
    asset: Asset
    designated: Account
    wallets: list[Account]
    issuer: Account | None = None
    amounts: list[float | None] = field(default_factory=list)
    designated_amount: float | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "asset": {"currency": self.asset.currency, "issuer": self.asset.issuer},
            "designated": self.designated.address,
            "wallets": len(self.wallets),
            "issuer_key": self.issuer is not None,
        }


def _account(entry: Any, where: str, *, role: Role = Role.ORDINARY, provenance: Provenance = Provenance.SUPPLIED) -> Account:
    if isinstance(entry, str):
        entry = {"seed": entry}
    if not isinstance(entry, dict) or not entry.get("seed"):
        raise InventoryError(f"{where}: expected an object with a seed")
    try:
        wallet = Wallet.from_seed(entry["seed"])
    except Exception as e:
        raise InventoryError(f"{where}: invalid seed ({e.__class__.__name__})") from e
    address = entry.get("address")
    if address and address != wallet.address:
        raise InventoryError(f"{where}: address {address} does not match its seed ({wallet.address})")
    if "provenance" in entry:
        try:
            provenance = Provenance(entry["provenance"])
        except ValueError:
            raise InventoryError(f"{where}: unknown provenance {entry['provenance']!r}") from None
    return Account(address=wallet.address, secret=entry["seed"], role=role, provenance=provenance)


def _amounts(raw: Any) -> list[float | None]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InventoryError("amounts: expected a list")
    out: list[float | None] = []
    for a in raw:
        try:
            out.append(float(a))
        except (TypeError, ValueError):
            log.warning("Ignoring inventory amount %r", a)
            out.append(None)
    return out


def parse_inventory(data: dict[str, Any]) -> Inventory:
    if not isinstance(data, dict):
        raise InventoryError("inventory must be a JSON object")

    asset_raw = data.get("asset")
    if not isinstance(asset_raw, dict) or not asset_raw.get("currency") or not asset_raw.get("issuer"):
        raise InventoryError("asset: currency and issuer are required")
    asset = Asset(currency=asset_raw["currency"], issuer=asset_raw["issuer"])

    issuer = None
    if data.get("issuer_seed"):
        issuer = _account(data["issuer_seed"], "issuer_seed")
        if issuer.address != asset.issuer:
            raise AssetMismatchError(f"issuer key derives {issuer.address}, expected asset issuer {asset.issuer}")

    if not data.get("designated"):
        raise InventoryError("designated: required")
    designated = _account(data["designated"], "designated", role=Role.DESIGNATED_LAST)
    designated_amount = None
    if isinstance(data["designated"], dict) and data["designated"].get("amount") is not None:
        designated_amount = _amounts([data["designated"]["amount"]])[0]
        if designated_amount is None or not designated_amount > 0:
            raise InventoryError(f"designated: amount must be a positive number, got {data['designated']['amount']!r}")

    wallets_raw = data.get("wallets") or []
    if not isinstance(wallets_raw, list):
        raise InventoryError("wallets: expected a list")
    raw_amounts = _amounts(data.get("amounts"))
    wallets, amounts = [], []
    seen = {designated.address}
    for n, entry in enumerate(wallets_raw):
        account = _account(entry, f"wallets[{n}]")
        if account.address in seen:
            log.warning("wallets[%s] %s listed twice or is the designated account, skipping", n, account.short)
            continue
        seen.add(account.address)
        wallets.append(account)
        amounts.append(raw_amounts[n] if n < len(raw_amounts) else None)

    # amounts stay positional with the kept wallets
    if not raw_amounts:
        amounts = []
    return Inventory(
        asset=asset,
        designated=designated,
        wallets=wallets,
        issuer=issuer,
        amounts=amounts,
        designated_amount=designated_amount,
    )


def load_inventory(path: str | Path) -> Inventory:
    p = Path(path)
    if not p.is_file():
        raise InventoryError(f"inventory file not found: {p}")
    try:
        data = json.loads(p.read_text())
    except json.JSONDecodeError as e:
        raise InventoryError(f"inventory {p} is not valid JSON: {e}") from e
    inv = parse_inventory(data)
    log.info("Loaded inventory %s: %s wallets + designated %s, asset %s",
             p, len(inv.wallets), inv.designated.short, inv.asset)
    return inv
