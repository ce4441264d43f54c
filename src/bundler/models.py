"""Domain data structures shared by the sell and launch paths."""

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from bundler.constants import (
    InstructionKind,
    Provenance,
    Role,
    StageName,
    SubmissionMode,
    TaskStatus,
    UnitKind,
    WorkerState,
)


@dataclass(frozen=True, slots=True)
class Asset:
    """The target issued asset, identified by currency code and issuer address."""

    currency: str
    issuer: str

    def __str__(self):
        return f"{self.currency}.{self.issuer[:8]}"


@dataclass(frozen=True, slots=True)
class Account:
    address: str
    secret: str = field(repr=False)
    role: Role = Role.ORDINARY
    provenance: Provenance = Provenance.SUPPLIED

    @property
    def short(self) -> str:
        return self.address[:8]

    @property
    def is_designated(self) -> bool:
        return self.role == Role.DESIGNATED_LAST


@dataclass(frozen=True, slots=True)
class AllocationEntry:
    account: Account
    amount: float
    index: int  # position in the inventory


@dataclass(slots=True)
class AllocationPlan:
    entries: list[AllocationEntry]

    def __len__(self):
        return len(self.entries)

    @property
    def accounts(self) -> list[Account]:
        return [e.account for e in self.entries]

    def amount_for(self, account: Account) -> float | None:
        for e in self.entries:
            if e.account.address == account.address:
                return e.amount
        return None


@dataclass(frozen=True, slots=True)
class Stage:
    name: StageName
    percentage: float
    threshold: float


@dataclass(slots=True)
class StageSelection:
    """Accounts picked for one stage, in dispatch order.

    `accounts` holds only ordinary accounts. The designated account, when the
    stage includes it, is kept apart so the dispatcher can order it last.
    """

    stage: Stage
    accounts: list[Account]
    designated: Account | None = None
    skipped: bool = False

    @property
    def ordered(self) -> list[Account]:
        return [*self.accounts, self.designated] if self.designated else list(self.accounts)

    def __len__(self):
        return len(self.accounts) + (1 if self.designated else 0)


@dataclass(slots=True)
class Holding:
    """An account's on-ledger position in the target asset."""

    account: Account
    asset: Asset
    balance: float = 0.0


@dataclass(slots=True)
class WorkerTask:
    account: Account
    stage: StageName
    is_designated: bool = False
    state: WorkerState = WorkerState.DISCOVER_ACCOUNT
    status: TaskStatus = TaskStatus.PENDING
    holding: Holding | None = None
    balance: float = 0.0
    action: Any = None
    attempts: int = 0
    tx_hash: str | None = None
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def __str__(self):
        return f"{self.account.short} -- {self.state} -- {self.attempts} attempts"

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account.address,
            "stage": str(self.stage),
            "designated": self.is_designated,
            "state": str(self.state),
            "status": str(self.status),
            "balance": self.balance,
            "attempts": self.attempts,
            "tx_hash": self.tx_hash,
            "last_error": self.last_error,
        }


@dataclass(frozen=True, slots=True)
class Instruction:
    """One step inside a transaction unit.

    Budget instructions carry an int payload (drops) and no signer. Action
    instructions carry a ledger-specific payload signed by `signer`.
    """

    signer: Account | None
    payload: Any
    kind: InstructionKind = InstructionKind.ACTION

    @property
    def is_budget(self) -> bool:
        return self.kind != InstructionKind.ACTION


@dataclass(frozen=True, slots=True)
class LookupTable:
    key: str
    entry: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TransactionUnit:
    kind: UnitKind
    instructions: list[Instruction]
    signers: list[Account]
    lookup_table: LookupTable | None = None

    @property
    def payer(self) -> Account:
        return self.signers[0]

    @property
    def actions(self) -> list[Instruction]:
        return [i for i in self.instructions if not i.is_budget]

    def budget(self, kind: InstructionKind) -> int | None:
        for i in self.instructions:
            if i.kind == kind:
                return int(i.payload)
        return None


@dataclass(slots=True)
class BundlePlan:
    units: list[TransactionUnit] = field(default_factory=list)

    def __len__(self):
        return len(self.units)

    def __iter__(self):
        return iter(self.units)

    def summary(self) -> dict[str, Any]:
        return {
            "units": len(self.units),
            "kinds": [str(u.kind) for u in self.units],
            "signers": [len(u.signers) for u in self.units],
        }


@dataclass(frozen=True, slots=True)
class SignedUnit:
    tx_hash: str
    blob: str


@dataclass(slots=True)
class StageSummary:
    stage: StageName
    tasks: list[WorkerTask]
    succeeded: int
    failed: int
    duration: float  # seconds
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": str(self.stage),
            "total": len(self.tasks),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration": round(self.duration, 3),
            "failed_accounts": [t.account.address for t in self.tasks if t.status == TaskStatus.FAILED],
        }


@dataclass(frozen=True, slots=True)
class FundingResult:
    account: Account
    required: float
    balance: float
    shortfall: float = 0.0
    transferred: bool = False
    tx_hash: str | None = None


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    ok: bool
    mode: SubmissionMode
    identifier: str | None = None
    error: str | None = None


@dataclass(slots=True)
class LaunchResult:
    funding: FundingResult | None
    plan: BundlePlan
    submission: SubmissionResult

    @property
    def ok(self) -> bool:
        return self.submission.ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "mode": str(self.submission.mode),
            "identifier": self.submission.identifier,
            "error": self.submission.error,
            "funded": bool(self.funding and self.funding.transferred),
            "plan": self.plan.summary(),
        }


@dataclass(slots=True)
class GatherResult:
    account: Account
    tokens: float = 0.0  # asset units moved
    xrp: float = 0.0
    tx_hashes: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account.address,
            "tokens": self.tokens,
            "xrp": round(self.xrp, 6),
            "tx_hashes": list(self.tx_hashes),
            "error": self.error,
        }


@dataclass(slots=True)
class GatherSummary:
    destination: str
    results: list[GatherResult]
    duration: float
    new_only: bool = False

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "destination": self.destination,
            "new_only": self.new_only,
            "accounts": len(self.results),
            "failed": self.failed,
            "tokens": sum(r.tokens for r in self.results),
            "xrp": round(sum(r.xrp for r in self.results), 6),
            "duration": round(self.duration, 3),
            "results": [r.to_dict() for r in self.results],
        }


AccountInstructions = Sequence[tuple[Account, Sequence[Instruction]]]
