"""
Solana wallet adapter.

Transaction building and signing stay with the caller's wallet; this adapter
hands it the quoted instructions and confirms the returned signature over
JSON-RPC ``getSignatureStatuses``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Optional

from ..config import settings
from ..core.execution.errors import ExecutionError, WalletCapabilityError
from ..core.execution.models import Step, StepItem, SvmReceipt, TransactionData, VmType
from ..core.execution.wallet import AdaptedWallet, CancelledCallback, ReplacedCallback
from ..providers.rpc import JsonRpcClient


logger = logging.getLogger(__name__)

SOLANA_CHAIN_ID = 792703809

BASE58_SIGNATURE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")

POLL_INTERVAL_SECONDS = 0.2
MAX_POLL_DURATION_SECONDS = 120.0

SignAndSend = Callable[[TransactionData], Awaitable[str]]


def assert_base58_signature(signature: Optional[str]) -> str:
    if not isinstance(signature, str) or not signature or not BASE58_SIGNATURE.match(signature):
        raise ExecutionError("Invalid Solana signature: expected base58.")
    return signature


class SolanaWallet(AdaptedWallet):
    vm_type = VmType.SVM

    def __init__(
        self,
        wallet_address: str,
        sign_and_send: SignAndSend,
        *,
        chain_id: int = SOLANA_CHAIN_ID,
        rpc_url: Optional[str] = None,
        rpc: Optional[JsonRpcClient] = None,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        timeout_seconds: float = MAX_POLL_DURATION_SECONDS,
    ) -> None:
        self.wallet_address = wallet_address
        self._sign_and_send = sign_and_send
        self._chain_id = chain_id
        self.rpc = rpc or JsonRpcClient(rpc_url or settings.solana_rpc_url)
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds

    async def get_chain_id(self) -> int:
        return self._chain_id

    async def address(self) -> str:
        return self.wallet_address

    async def switch_chain(self, chain_id: int) -> None:
        self._chain_id = chain_id

    async def handle_sign_message_step(self, item: StepItem, step: Step) -> Optional[str]:
        raise WalletCapabilityError("Message signing not implemented for Solana")

    async def handle_send_transaction_step(self, chain_id: int, item: StepItem, step: Step) -> Optional[str]:
        if item.data is None or not item.data.instructions:
            raise ExecutionError("Transaction item has no Solana instructions")
        signature = assert_base58_signature(await self._sign_and_send(item.data))
        logger.debug(f"Transaction signature obtained: {signature}")
        return signature

    async def handle_confirm_transaction_step(
        self,
        tx_hash: str,
        chain_id: int,
        on_replaced: ReplacedCallback,
        on_cancelled: CancelledCallback,
    ) -> SvmReceipt:
        # Solana has no replacement or cancellation by nonce
        assert_base58_signature(tx_hash)
        deadline = time.monotonic() + self.timeout_seconds

        while time.monotonic() < deadline:
            result = await self.rpc.call("getSignatureStatuses", [[tx_hash], {"searchTransactionHistory": True}])
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]

            if status and status.get("err") is not None:
                return SvmReceipt(tx_hash=tx_hash, raw=status, block_number=status.get("slot"), err=status["err"])

            if status and status.get("confirmationStatus") in ("confirmed", "finalized"):
                slot = status.get("slot")
                return SvmReceipt(
                    tx_hash=tx_hash,
                    raw=status,
                    block_hash=str(slot),
                    block_number=slot,
                )

            await asyncio.sleep(self.poll_interval_seconds)

        raise ExecutionError(f"Transaction confirmation timed out after {self.timeout_seconds:g}s: {tx_hash}")
