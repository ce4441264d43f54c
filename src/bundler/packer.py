"""Groups per-account instructions into signer-bounded transaction units.

Plan order is fixed: the one-time creation unit (only if the market does not
exist yet), then the designated account's own unit, then ordinary accounts in
allocation order, `capacity` signers per unit. Every unit opens with its budget
pair (limit, then price) ahead of the functional instructions.
"""

import logging
from collections.abc import Sequence

import bundler.constants as C
from bundler.config import BudgetSettings
from bundler.constants import InstructionKind, UnitKind
from bundler.errors import NetworkError
from bundler.gateway import RateLimitedGateway
from bundler.ledger import Ledger
from bundler.models import (
    Account,
    AccountInstructions,
    Asset,
    BundlePlan,
    Instruction,
    LookupTable,
    TransactionUnit,
)

log = logging.getLogger("bundler.packer")


def chunked(items: Sequence, size: int) -> list[list]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def unit_signers(instructions: Sequence[Instruction]) -> list[Account]:
    """Distinct signers in first-appearance order."""
    seen: dict[str, Account] = {}
    for i in instructions:
        if i.signer is not None and i.signer.address not in seen:
            seen[i.signer.address] = i.signer
    return list(seen.values())


class TransactionPacker:
    def __init__(
        self,
        *,
        ledger: Ledger,
        gateway: RateLimitedGateway,
        asset: Asset,
        budgets: BudgetSettings | None = None,
        lookup_table_key: str | None = None,
        capacity: int = C.SIGNERS_PER_UNIT,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.ledger = ledger
        self.gateway = gateway
        self.asset = asset
        self.budgets = budgets or BudgetSettings()
        self.lookup_table_key = lookup_table_key or None
        self.capacity = capacity

    async def _lookup_table(self) -> LookupTable | None:
        if not self.lookup_table_key:
            return None
        key = self.lookup_table_key
        try:
            table = await self.gateway.call(lambda: self.ledger.resolve_lookup_table(key))
        except NetworkError as e:
            log.warning("Lookup table %s unavailable (%s), building units without it", key, e)
            return None
        if table is None:
            log.warning("Lookup table %s not found, building units without it", key)
        return table

    def _unit(self, kind: UnitKind, instructions: Sequence[Instruction], table: LookupTable | None) -> TransactionUnit:
        signers = unit_signers(instructions)
        if not signers:
            raise ValueError(f"{kind} unit has no signer")
        if len(signers) > self.capacity:
            raise ValueError(f"{kind} unit needs {len(signers)} signers, capacity is {self.capacity}")
        budget = self.budgets.for_kind(kind)
        body = [
            Instruction(None, budget.limit, InstructionKind.BUDGET_LIMIT),
            Instruction(None, budget.price, InstructionKind.BUDGET_PRICE),
            *instructions,
        ]
        return TransactionUnit(kind=kind, instructions=body, signers=signers, lookup_table=table)

    async def pack(
        self,
        creation: Sequence[Instruction] | None,
        designated: tuple[Account, Sequence[Instruction]] | None,
        ordinary: AccountInstructions,
    ) -> BundlePlan:
        table = await self._lookup_table()
        units: list[TransactionUnit] = []

        if creation:
            exists = await self.gateway.call(lambda: self.ledger.market_exists(self.asset))
            if exists:
                log.info("Market for %s already exists, no creation unit", self.asset)
            else:
                units.append(self._unit(UnitKind.CREATION, creation, table))

        designated_address = None
        if designated is not None:
            account, instructions = designated
            designated_address = account.address
            if instructions:
                units.append(self._unit(UnitKind.DESIGNATED, instructions, table))
            else:
                log.warning("Designated account %s has no instructions, no unit built", account.short)

        pending: list[tuple[Account, Sequence[Instruction]]] = []
        for account, instructions in ordinary:
            if account.address == designated_address:
                log.warning("%s is the designated account, not packing it with ordinary accounts", account.short)
                continue
            if not instructions:
                log.warning("%s has no instructions, skipping", account.short)
                continue
            pending.append((account, instructions))

        for group in chunked(pending, self.capacity):
            body = [i for _, instructions in group for i in instructions]
            units.append(self._unit(UnitKind.ORDINARY, body, table))

        plan = BundlePlan(units)
        log.info(
            "Packed %s units: %s (lookup table: %s)",
            len(plan),
            ", ".join(f"{u.kind}[{len(u.signers)}]" for u in units),
            table.key if table else "none",
        )
        return plan
