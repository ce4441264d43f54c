"""Exception hierarchy.

Transient network trouble is a NetworkError and gets retried by whoever owns the
retry loop (workers retry inside their current state). PreflightError means the
run must stop before anything is dispatched or packed.
"""


class BundlerError(Exception):
    """Base for everything raised on purpose by this package."""


class NetworkError(BundlerError):
    """A call to the ledger or the relay failed."""


class SubmitRejected(NetworkError):
    """The ledger answered but did not accept the transaction."""

    def __init__(self, engine_result: str, message: str | None = None):
        self.engine_result = engine_result
        super().__init__(message or f"submission rejected: {engine_result}")


class RelayError(NetworkError):
    """No relay endpoint accepted the bundle."""


class FeeBudgetExceeded(BundlerError):
    """A unit's computed fee is above its budget limit."""


class PreflightError(BundlerError):
    """Fatal precondition; the whole run aborts."""


class InventoryError(PreflightError):
    """Wallet inventory missing or malformed."""


class AssetMismatchError(PreflightError):
    """The issuer credential does not belong to the expected target asset."""


class InsufficientFundingBalance(PreflightError):
    def __init__(self, *, funding_balance: float, shortfall: float, margin: float):
        self.funding_balance = funding_balance
        self.shortfall = shortfall
        self.margin = margin
        super().__init__(
            f"funding account holds {funding_balance:.6f} XRP but {shortfall + margin:.6f} XRP is needed "
            f"({shortfall:.6f} shortfall + {margin:.6f} margin)"
        )
