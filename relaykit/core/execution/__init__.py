"""
Quote Step Execution

Drives an already-computed cross-chain quote to completion:
- StepExecutor / execute: sequences steps and items, emits progress
- ConfirmationPoller: waits for submitted hashes through the wallet
- SolverStatusPoller: waits for the solver to fill deposit steps
- GaslessBatchExecutor: one EIP-712 signature for a batch of calls

Usage:
    from relaykit.core.execution import execute, ExecutionOptions
    from relaykit.wallets import EvmWallet

    wallet = EvmWallet(private_key, rpc_url=..., chain_id=8453)
    quote = await execute(quote_json, wallet, on_progress=print)
"""

from .abort import AbortSignal

from .errors import (
    APIError,
    DepositTransactionTimeoutError,
    ExecutionAbortedError,
    ExecutionError,
    InvalidTransitionError,
    SolverExecutionError,
    SolverStatusTimeoutError,
    TransactionConfirmationError,
    WalletCapabilityError,
)

from .models import (
    BatchCall,
    BitcoinReceipt,
    CheckRequest,
    CheckStatus,
    EvmReceipt,
    Execute,
    ItemStatus,
    PostData,
    ProgressData,
    ProgressState,
    Receipt,
    SignatureKind,
    SignData,
    Step,
    StepItem,
    StepKind,
    SuiReceipt,
    SvmReceipt,
    TransactionData,
    TronReceipt,
    TxHash,
    VmType,
)

from .wallet import (
    AdaptedWallet,
    EoaStatus,
    WalletCapabilities,
)

from .confirmation import ConfirmationPoller, ConfirmationResult
from .solver_status import SolverStatusPoller, SolverStatusResult

from .batch_executor import (
    BatchExecutorConfig,
    BatchSubmission,
    BatchSubmitMode,
    GaslessBatchExecutor,
    estimate_batch_gas,
)
from .calibur import CALIBUR_ADDRESS, create_calibur_executor

from .executor import (
    ExecutionOptions,
    ExecutionState,
    StepExecutor,
    execute,
)

__all__ = [
    # Cancellation
    "AbortSignal",
    # Errors
    "APIError",
    "DepositTransactionTimeoutError",
    "ExecutionAbortedError",
    "ExecutionError",
    "InvalidTransitionError",
    "SolverExecutionError",
    "SolverStatusTimeoutError",
    "TransactionConfirmationError",
    "WalletCapabilityError",
    # Models
    "BatchCall",
    "BitcoinReceipt",
    "CheckRequest",
    "CheckStatus",
    "EvmReceipt",
    "Execute",
    "ItemStatus",
    "PostData",
    "ProgressData",
    "ProgressState",
    "Receipt",
    "SignatureKind",
    "SignData",
    "Step",
    "StepItem",
    "StepKind",
    "SuiReceipt",
    "SvmReceipt",
    "TransactionData",
    "TronReceipt",
    "TxHash",
    "VmType",
    # Wallet
    "AdaptedWallet",
    "EoaStatus",
    "WalletCapabilities",
    # Pollers
    "ConfirmationPoller",
    "ConfirmationResult",
    "SolverStatusPoller",
    "SolverStatusResult",
    # Batching
    "BatchExecutorConfig",
    "BatchSubmission",
    "BatchSubmitMode",
    "GaslessBatchExecutor",
    "estimate_batch_gas",
    "CALIBUR_ADDRESS",
    "create_calibur_executor",
    # Executor
    "ExecutionOptions",
    "ExecutionState",
    "StepExecutor",
    "execute",
]
