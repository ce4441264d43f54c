from typing import Final
from enum import StrEnum


class Role(StrEnum):
    ORDINARY        = "ordinary"
    DESIGNATED_LAST = "designated-last"


class Provenance(StrEnum):
    AUTO_CREATED = "auto-created"
    SUPPLIED     = "supplied"
    FUNDING      = "funding"


class StageName(StrEnum):
    STAGE1 = "stage1"
    STAGE2 = "stage2"
    STAGE3 = "stage3"
    ALL    = "all"


# Stages where the designated account takes part (always last).
FINAL_STAGES = {StageName.STAGE3, StageName.ALL}


class WorkerState(StrEnum):
    DISCOVER_ACCOUNT = "DISCOVER_ACCOUNT"
    AWAIT_BALANCE    = "AWAIT_BALANCE"
    BUILD_ACTION     = "BUILD_ACTION"
    SUBMIT           = "SUBMIT"
    DONE             = "DONE"
    FAILED           = "FAILED"


class TaskStatus(StrEnum):
    PENDING   = "pending"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"


TERMINAL_WORKER_STATES = {WorkerState.DONE, WorkerState.FAILED}


class InstructionKind(StrEnum):
    ACTION       = "action"
    BUDGET_LIMIT = "budget-limit"
    BUDGET_PRICE = "budget-price"


class UnitKind(StrEnum):
    CREATION   = "creation"
    DESIGNATED = "designated"
    ORDINARY   = "ordinary"


class SubmissionMode(StrEnum):
    RELAY      = "relay"
    SEQUENTIAL = "sequential"


class OrderingMode(StrEnum):
    BARRIER = "barrier"  # ordinary accounts joined before the designated account starts
    DELAY   = "delay"    # everyone at once, designated waits a little before submitting


class FeeLevel(StrEnum):
    HIGH   = "high"
    MEDIUM = "medium"
    LOW    = "low"
    NONE   = "none"


MAX_CALLS_PER_SECOND = 45
MAX_ATTEMPTS = 500
RETRY_DELAY = 0.020  # seconds
DESIGNATED_SUBMIT_DELAY = 0.050  # seconds
PROGRESS_LOG_EVERY = 20

SIGNERS_PER_UNIT: Final = 4

DEFAULT_STAGE_PERCENTAGES: Final = {StageName.STAGE1: 30.0, StageName.STAGE2: 30.0}
DEFAULT_STAGE_THRESHOLDS: Final = {StageName.STAGE1: 5.0, StageName.STAGE2: 10.0, StageName.STAGE3: 20.0}
DEFAULT_ALLOCATION_AMOUNT = 0.3  # XRP

FUNDING_BUFFER = 0.05  # XRP on top of the designated account's base allocation
FUNDING_MARGIN = 0.01  # XRP the funding account must hold beyond the shortfall

GATHER_KEEP_XRP = 1.2  # left in each swept account: base reserve plus one trust line
GATHER_CONCURRENCY = 5

# Drops per fee-bearing slot for sell transactions. NONE leaves it to autofill.
FEE_LEVEL_DROPS: Final = {
    FeeLevel.HIGH: 5_000,
    FeeLevel.MEDIUM: 500,
    FeeLevel.LOW: 50,
    FeeLevel.NONE: None,
}

HORIZON = 20  # ledgers a signed unit stays valid
RPC_TIMEOUT = 2.0
VALIDATION_TIMEOUT = 60.0
TRUSTLINE_LIMIT = "1000000000000"

__all__ = [
    "DEFAULT_ALLOCATION_AMOUNT",
    "DEFAULT_STAGE_PERCENTAGES",
    "DEFAULT_STAGE_THRESHOLDS",
    "DESIGNATED_SUBMIT_DELAY",
    "FEE_LEVEL_DROPS",
    "FINAL_STAGES",
    "FUNDING_BUFFER",
    "FUNDING_MARGIN",
    "GATHER_CONCURRENCY",
    "GATHER_KEEP_XRP",
    "HORIZON",
    "MAX_ATTEMPTS",
    "MAX_CALLS_PER_SECOND",
    "PROGRESS_LOG_EVERY",
    "RETRY_DELAY",
    "RPC_TIMEOUT",
    "SIGNERS_PER_UNIT",
    "TERMINAL_WORKER_STATES",
    "TRUSTLINE_LIMIT",
    "VALIDATION_TIMEOUT",

    ######
    "FeeLevel",
    "InstructionKind",
    "OrderingMode",
    "Provenance",
    "Role",
    "StageName",
    "SubmissionMode",
    "TaskStatus",
    "UnitKind",
    "WorkerState",
]
