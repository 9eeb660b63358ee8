"""
Execution errors.

Pollers raise these typed errors and the step executor lets them propagate
to the caller, who decides whether to resume, abandon or surface them.
"""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from ...providers.tenderly import TenderlyErrorInfo
    from .models import Receipt


class ExecutionError(Exception):
    """Base exception for execution errors."""
    pass


class APIError(ExecutionError):
    """A backend call returned a non-success HTTP status."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        body: Any = None,
        endpoint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def __str__(self) -> str:
        return f"{self.message} (status {self.status_code})"


class TransactionConfirmationError(ExecutionError):
    """A submitted transaction did not reach a successful terminal receipt."""

    def __init__(
        self,
        message: str,
        receipt: Optional["Receipt"] = None,
        trace: Optional["TenderlyErrorInfo"] = None,
        tx_hash: Optional[str] = None,
        chain_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.receipt = receipt
        self.trace = trace
        self.tx_hash = tx_hash
        self.chain_id = chain_id

    @property
    def revert_reason(self) -> Optional[str]:
        if self.trace is None:
            return None
        return self.trace.error_message or self.trace.error


class DepositTransactionTimeoutError(ExecutionError):
    """The deposit leg was never observed in the required state within its budget."""

    def __init__(self, tx_hash: str, request_id: str, attempt_count: int):
        super().__init__(
            f"Deposit transaction with hash '{tx_hash}' and request id '{request_id}' "
            f"is pending after {attempt_count} attempt(s)."
        )
        self.tx_hash = tx_hash
        self.request_id = request_id
        self.attempt_count = attempt_count


class SolverStatusTimeoutError(ExecutionError):
    """The off-chain completion check never reported success within its budget."""

    def __init__(self, tx_hash: str, request_id: str, attempt_count: int):
        super().__init__(
            f"Failed to receive a successful response for solver status check with hash "
            f"'{tx_hash}' and request id '{request_id}' after {attempt_count} attempt(s)."
        )
        self.tx_hash = tx_hash
        self.request_id = request_id
        self.attempt_count = attempt_count


class SolverExecutionError(ExecutionError):
    """The status endpoint reported a definitive failure or refund."""

    def __init__(self, status: str, request_id: Optional[str] = None, details: Optional[str] = None):
        message = details or ("Transaction failed: Refunded" if status == "refund" else "Transaction failed")
        super().__init__(message)
        self.status = status
        self.request_id = request_id
        self.details = details

    @property
    def refunded(self) -> bool:
        return self.status == "refund"


class ExecutionAbortedError(ExecutionError):
    """The caller aborted the execution."""
    pass


class InvalidTransitionError(ExecutionError):
    """A step item status transition violated monotonicity."""
    pass


class WalletCapabilityError(ExecutionError):
    """The wallet lacks a capability the requested operation needs."""
    pass
