"""Stage partitioning.

Ordinary accounts are ranked by allocation amount, largest first, and cut into
stage1 / stage2 / remainder by percentage. The designated account is never part
of the ranking and only ever appears at the tail of the final stage.
"""

import logging
import math
from collections.abc import Sequence

import bundler.constants as C
from bundler.config import StageSettings
from bundler.constants import StageName
from bundler.models import Account, AllocationEntry, AllocationPlan, StageSelection

log = logging.getLogger("bundler.partitioner")


def build_allocation_plan(
    accounts: Sequence[Account],
    amounts: Sequence[float | None] | None = None,
    default_amount: float = C.DEFAULT_ALLOCATION_AMOUNT,
) -> AllocationPlan:
    """Pair accounts with amounts by position and sort descending.

    Missing, None or non-positive amounts fall back to `default_amount`.
    Ties keep inventory order.
    """
    amounts = list(amounts or [])
    entries = []
    for idx, account in enumerate(accounts):
        amount = amounts[idx] if idx < len(amounts) else None
        if amount is None or not amount > 0:
            amount = default_amount
        entries.append(AllocationEntry(account=account, amount=float(amount), index=idx))
    entries.sort(key=lambda e: e.amount, reverse=True)  # stable
    return AllocationPlan(entries)


def stage_counts(total: int, settings: StageSettings) -> tuple[int, int, int]:
    """(stage1, stage2, remainder) sizes for `total` ordinary accounts."""
    n1 = min(total, math.ceil(total * settings.stage1_percentage / 100))
    n2 = min(total - n1, math.ceil(total * settings.stage2_percentage / 100))
    return n1, n2, total - n1 - n2


def select_stage(
    plan: AllocationPlan,
    stage: StageName | str,
    settings: StageSettings,
    designated: Account | None = None,
) -> StageSelection:
    stage = StageName(stage)
    target = settings.stage(stage)
    designated_address = designated.address if designated else None

    ordinary = [e.account for e in plan.entries if e.account.address != designated_address]
    n1, n2, _ = stage_counts(len(ordinary), settings)

    match stage:
        case StageName.STAGE1:
            picked = ordinary[:n1]
        case StageName.STAGE2:
            picked = ordinary[n1:n1 + n2]
        case StageName.STAGE3:
            picked = ordinary[n1 + n2:]
        case StageName.ALL:
            picked = ordinary

    if stage in C.FINAL_STAGES:
        sel = StageSelection(stage=target, accounts=picked, designated=designated)
    else:
        sel = StageSelection(stage=target, accounts=picked, skipped=not picked)

    if sel.skipped:
        log.info("%s: no ordinary accounts to sell, skipping", stage)
    else:
        log.info(
            "%s: %s accounts (%.1f%%, threshold %s)%s",
            stage,
            len(sel),
            target.percentage,
            target.threshold,
            f", designated {designated.short} last" if sel.designated else "",
        )
    return sel
