"""
Confirmation poller.

Turns a submitted transaction hash into a terminal receipt, or into a
``TransactionConfirmationError`` carrying the last known receipt and, on EVM
chains, a best-effort revert reason from a call-trace lookup. The wait itself
is the wallet's ``handle_confirm_transaction_step``; it is called once and
never retried here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional, Set, Tuple

from .abort import AbortSignal
from .errors import ExecutionAbortedError, ExecutionError, TransactionConfirmationError
from .models import Receipt, VmType
from .wallet import AdaptedWallet

if TYPE_CHECKING:
    from ...providers.tenderly import TenderlyProvider


logger = logging.getLogger(__name__)

TRACEABLE_VMS = {VmType.EVM, VmType.HYPEVM}


@dataclass
class ConfirmationResult:
    receipt: Receipt
    tx_hash: str                     # final hash after any replacement
    original_tx_hash: str
    replaced_hashes: List[str] = field(default_factory=list)

    @property
    def was_replaced(self) -> bool:
        return self.tx_hash != self.original_tx_hash


class ConfirmationPoller:
    """
    Wraps wallet confirmation with replacement tracking and error classification.

    One poller is shared by every item of an execution call; it refuses to
    start a second confirmation for a ``(chain_id, tx_hash)`` that is already
    being confirmed.
    """

    def __init__(
        self,
        *,
        tenderly: Optional["TenderlyProvider"] = None,
        signal: Optional[AbortSignal] = None,
    ) -> None:
        self._tenderly = tenderly
        self.signal = signal or AbortSignal()
        self._active: Set[Tuple[int, str]] = set()

    def is_active(self, chain_id: int, tx_hash: str) -> bool:
        return (int(chain_id), tx_hash.lower()) in self._active

    def _get_tenderly(self) -> "TenderlyProvider":
        if self._tenderly is None:
            from ...providers.tenderly import get_tenderly_provider

            self._tenderly = get_tenderly_provider()
        return self._tenderly

    async def _failure(
        self,
        message: str,
        wallet: AdaptedWallet,
        chain_id: int,
        tx_hash: str,
        receipt: Optional[Receipt] = None,
    ) -> TransactionConfirmationError:
        trace = None
        if wallet.vm_type in TRACEABLE_VMS:
            tenderly = self._get_tenderly()
            if await tenderly.ready():
                trace = await tenderly.get_error_details(chain_id, tx_hash)
        error = TransactionConfirmationError(message, receipt=receipt, trace=trace, tx_hash=tx_hash, chain_id=chain_id)
        if error.revert_reason:
            logger.warning(f"Transaction {tx_hash} on chain {chain_id} failed: {error.revert_reason}")
        return error

    async def confirm(
        self,
        wallet: AdaptedWallet,
        tx_hash: str,
        chain_id: int,
        on_replaced: Optional[Callable[[str, str], None]] = None,
    ) -> ConfirmationResult:
        """
        Wait for ``tx_hash`` to reach a successful terminal receipt.

        ``on_replaced(old_hash, new_hash)`` is invoked synchronously from the
        wallet's replacement callback so callers can record the new hash
        before confirmation finishes.
        """
        key = (int(chain_id), tx_hash.lower())
        if key in self._active:
            raise ExecutionError(f"Transaction {tx_hash} on chain {chain_id} is already being confirmed")
        self._active.add(key)

        result_hashes: List[str] = []
        current = {"hash": tx_hash, "key": key, "cancelled": False}

        def handle_replaced(new_hash: str) -> None:
            old_hash = current["hash"]
            logger.info(f"Transaction {old_hash} replaced by {new_hash} on chain {chain_id}")
            self._active.discard(current["key"])
            current["hash"] = new_hash
            current["key"] = (int(chain_id), new_hash.lower())
            self._active.add(current["key"])
            result_hashes.append(new_hash)
            if on_replaced is not None:
                on_replaced(old_hash, new_hash)

        def handle_cancelled() -> None:
            logger.warning(f"Transaction {current['hash']} on chain {chain_id} was cancelled")
            current["cancelled"] = True

        try:
            try:
                receipt = await self.signal.run(
                    wallet.handle_confirm_transaction_step(
                        tx_hash, chain_id, handle_replaced, handle_cancelled
                    )
                )
            except (ExecutionAbortedError, asyncio.CancelledError):
                raise
            except Exception as exc:
                message = "Transaction cancelled" if current["cancelled"] else str(exc) or exc.__class__.__name__
                raise await self._failure(
                    message, wallet, chain_id, current["hash"], getattr(exc, "receipt", None)
                ) from exc

            if current["cancelled"]:
                raise await self._failure("Transaction cancelled", wallet, chain_id, current["hash"], receipt)

            reason = receipt.failure_reason() if receipt is not None else "No receipt returned"
            if reason:
                raise await self._failure(reason, wallet, chain_id, current["hash"], receipt)
        finally:
            self._active.discard(current["key"])
            self._active.discard(key)

        logger.info(f"Transaction {current['hash']} confirmed on chain {chain_id}")
        return ConfirmationResult(
            receipt=receipt,
            tx_hash=current["hash"],
            original_tx_hash=tx_hash,
            replaced_hashes=result_hashes,
        )
