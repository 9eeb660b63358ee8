"""
Tron wallet adapter.

Signing and broadcasting are delegated to the caller's wallet; confirmation
reads TronGrid's transaction info and the current block height.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..config import settings
from ..core.execution.errors import ExecutionError, WalletCapabilityError
from ..core.execution.models import Step, StepItem, TransactionData, TronReceipt, VmType
from ..core.execution.wallet import AdaptedWallet, CancelledCallback, ReplacedCallback
from ..providers.base import Provider


logger = logging.getLogger(__name__)

TRON_CHAIN_ID = 728126428

TX_ID = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")

POLL_INTERVAL_SECONDS = 1.5
MAX_POLL_DURATION_SECONDS = 60.0
REQUIRED_CONFIRMATIONS = 1

SignAndBroadcast = Callable[[TransactionData], Awaitable[str]]


def _decode_message(res_message: Optional[str]) -> Optional[str]:
    if not res_message:
        return None
    try:
        return bytes.fromhex(res_message).decode("utf-8", errors="replace")
    except ValueError:
        return res_message


class TronGridClient(Provider):
    name = "trongrid"
    timeout_s = 15

    def __init__(self, full_host: Optional[str] = None, *, api_key: Optional[str] = None) -> None:
        self.full_host = (full_host or settings.tron_full_host).rstrip("/")
        self.api_key = api_key
        self._client: Optional[httpx.AsyncClient] = None

    async def ready(self) -> bool:
        return bool(self.full_host)

    async def health_check(self) -> Dict[str, Any]:
        try:
            block = await self.get_now_block()
            return {"status": "healthy", "block": block.get("block_header", {}).get("raw_data", {}).get("number")}
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}

    async def post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"TRON-PRO-API-KEY": self.api_key} if self.api_key else None
        response = await self._get_client().post(f"{self.full_host}{path}", json=body, headers=headers)
        response.raise_for_status()
        return response.json() or {}

    async def get_transaction_info(self, tx_id: str) -> Dict[str, Any]:
        return await self.post("/wallet/gettransactioninfobyid", {"value": tx_id})

    async def get_now_block(self) -> Dict[str, Any]:
        return await self.post("/wallet/getnowblock", {})


class TronWallet(AdaptedWallet):
    vm_type = VmType.TVM

    def __init__(
        self,
        wallet_address: str,
        sign_and_broadcast: SignAndBroadcast,
        *,
        chain_id: int = TRON_CHAIN_ID,
        client: Optional[TronGridClient] = None,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        timeout_seconds: float = MAX_POLL_DURATION_SECONDS,
        confirmations: int = REQUIRED_CONFIRMATIONS,
    ) -> None:
        self.wallet_address = wallet_address
        self._sign_and_broadcast = sign_and_broadcast
        self._chain_id = chain_id
        self.client = client or TronGridClient()
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.confirmations = confirmations

    async def get_chain_id(self) -> int:
        return self._chain_id

    async def address(self) -> str:
        return self.wallet_address

    async def switch_chain(self, chain_id: int) -> None:
        self._chain_id = chain_id

    async def handle_sign_message_step(self, item: StepItem, step: Step) -> Optional[str]:
        raise WalletCapabilityError("Message signing not implemented for Tron")

    async def handle_send_transaction_step(self, chain_id: int, item: StepItem, step: Step) -> Optional[str]:
        if item.data is None:
            raise ExecutionError("Transaction item has no Tron call data")
        tx_id = await self._sign_and_broadcast(item.data)
        if not isinstance(tx_id, str) or not TX_ID.match(tx_id):
            raise ExecutionError(f"Invalid Tron transaction id: {tx_id!r}")
        return tx_id[2:] if tx_id.startswith("0x") else tx_id

    async def handle_confirm_transaction_step(
        self,
        tx_hash: str,
        chain_id: int,
        on_replaced: ReplacedCallback,
        on_cancelled: CancelledCallback,
    ) -> TronReceipt:
        deadline = time.monotonic() + self.timeout_seconds

        while time.monotonic() < deadline:
            info = await self.client.get_transaction_info(tx_hash)
            block_number = info.get("blockNumber")
            if block_number is not None:
                now = await self.client.get_now_block()
                current = now.get("block_header", {}).get("raw_data", {}).get("number") or 0
                if current - block_number >= self.confirmations:
                    receipt = info.get("receipt") or {}
                    return TronReceipt(
                        tx_hash=tx_hash,
                        raw=info,
                        block_number=block_number,
                        result=receipt.get("result"),
                        execution_result=info.get("result"),
                        res_message=_decode_message(info.get("resMessage")),
                        fee=info.get("fee"),
                    )
            await asyncio.sleep(self.poll_interval_seconds)

        raise ExecutionError(f"Tron transaction {tx_hash} not confirmed after {self.timeout_seconds:g}s")
