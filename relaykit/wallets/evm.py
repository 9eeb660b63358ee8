"""
Local-key EVM wallet.

Signs with an ``eth_account`` key and talks to chains through plain JSON-RPC.
Replacement and cancellation are detected by watching the sender's nonce:
once the nonce has moved past a pending hash that no longer exists, the
transaction that consumed the nonce is looked up in the blocks mined since
the original was sent.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_utils import keccak, to_bytes, to_checksum_address, to_hex

from ..config import settings
from ..core.execution.errors import ExecutionError
from ..core.execution.models import EvmReceipt, SignatureKind, Step, StepItem, VmType, parse_int
from ..core.execution.wallet import AdaptedWallet, CancelledCallback, EoaStatus, ReplacedCallback
from ..providers.rpc import JsonRpcClient


logger = logging.getLogger(__name__)

HASH_MESSAGE = re.compile(r"^0x[0-9a-fA-F]{64}$")
BALANCE_OF_SELECTOR = keccak(text="balanceOf(address)")[:4]
# Upper bound on blocks fetched per replacement lookup
MAX_REPLACEMENT_SCAN_BLOCKS = 64

_DOMAIN_FIELD_TYPES = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
    ("salt", "bytes32"),
)


@dataclass
class PendingTransaction:
    chain_id: int
    nonce: int
    to: Optional[str]
    value: int
    data: str
    # First block that may hold a replacement
    scan_from: int = 0


def _domain_types(domain: Dict[str, Any]) -> List[Dict[str, str]]:
    return [{"name": name, "type": kind} for name, kind in _DOMAIN_FIELD_TYPES if name in domain]


class EvmWallet(AdaptedWallet):
    """
    ``AdaptedWallet`` backed by a private key.

    Usage:
        wallet = EvmWallet(os.environ["PRIVATE_KEY"], chain_id=8453, rpc_url="https://...")
    """

    vm_type = VmType.EVM

    def __init__(
        self,
        private_key: str,
        *,
        chain_id: int,
        rpc_url: Optional[str] = None,
        rpc_urls: Optional[Dict[int, str]] = None,
        use_gas_fee_estimations: Optional[bool] = None,
        poll_interval_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.account = Account.from_key(private_key)
        self._chain_id = int(chain_id)
        self._rpc_urls: Dict[int, str] = {**settings.rpc_urls, **(rpc_urls or {})}
        if rpc_url:
            self._rpc_urls[self._chain_id] = rpc_url
        self._clients: Dict[int, JsonRpcClient] = {}
        self.use_gas_fee_estimations = (
            settings.use_gas_fee_estimations if use_gas_fee_estimations is None else use_gas_fee_estimations
        )
        self.poll_interval_seconds = poll_interval_seconds or settings.confirmation_polling_interval_seconds
        self.timeout_seconds = timeout_seconds or settings.confirmation_timeout_seconds
        self._pending: Dict[str, PendingTransaction] = {}

    def rpc(self, chain_id: int) -> JsonRpcClient:
        chain_id = int(chain_id)
        if chain_id not in self._clients:
            rpc_url = self._rpc_urls.get(chain_id)
            if not rpc_url:
                raise ExecutionError(f"No RPC URL configured for chain {chain_id}")
            self._clients[chain_id] = JsonRpcClient(rpc_url)
        return self._clients[chain_id]

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    async def get_chain_id(self) -> int:
        return self._chain_id

    async def address(self) -> str:
        return self.account.address

    async def switch_chain(self, chain_id: int) -> None:
        if int(chain_id) not in self._rpc_urls:
            raise ExecutionError(f"Wallet does not support chain {chain_id}")
        self._chain_id = int(chain_id)

    # =========================================================================
    # Signing
    # =========================================================================

    async def handle_sign_message_step(self, item: StepItem, step: Step) -> Optional[str]:
        sign = item.sign
        if sign is None:
            return None

        if sign.signature_kind == SignatureKind.EIP191:
            message = sign.message or ""
            logger.debug("Signing with eip191")
            if HASH_MESSAGE.match(message):
                # A hash is signed as its raw bytes
                signable = encode_defunct(hexstr=message)
            else:
                signable = encode_defunct(text=message)
        else:
            domain = dict(sign.domain or {})
            types = dict(sign.types or {})
            types.setdefault("EIP712Domain", _domain_types(domain))
            logger.debug(f"Signing with eip712 ({sign.primary_type})")
            signable = encode_typed_data(
                full_message={
                    "types": types,
                    "primaryType": sign.primary_type,
                    "domain": domain,
                    "message": sign.value or {},
                }
            )

        signed = self.account.sign_message(signable)
        return to_hex(signed.signature)

    async def sign_authorization(self, chain_id: int, contract_address: str, nonce: Optional[int] = None) -> Dict[str, Any]:
        """Sign an EIP-7702 authorization delegating this account to ``contract_address``."""
        if nonce is None:
            nonce = await self._transaction_count(chain_id, "pending")
        signed = self.account.sign_authorization(
            {"chainId": int(chain_id), "address": to_checksum_address(contract_address), "nonce": nonce}
        )
        return {
            "chainId": int(signed.chain_id),
            "address": to_checksum_address(signed.address),
            "nonce": int(signed.nonce),
            "yParity": int(signed.y_parity),
            "r": to_hex(signed.r),
            "s": to_hex(signed.s),
        }

    # =========================================================================
    # Sending
    # =========================================================================

    async def _transaction_count(self, chain_id: int, block: str) -> int:
        return parse_int(await self.rpc(chain_id).call("eth_getTransactionCount", [self.account.address, block])) or 0

    async def _fees(self, chain_id: int) -> Dict[str, int]:
        rpc = self.rpc(chain_id)
        block = await rpc.call("eth_getBlockByNumber", ["latest", False]) or {}
        base_fee = parse_int(block.get("baseFeePerGas")) or 0
        priority = parse_int(await rpc.call("eth_maxPriorityFeePerGas", [])) or 0
        return {"maxFeePerGas": base_fee * 2 + priority, "maxPriorityFeePerGas": priority}

    async def handle_send_transaction_step(self, chain_id: int, item: StepItem, step: Step) -> Optional[str]:
        data = item.data
        if data is None or not data.to:
            raise ExecutionError("Transaction item has no call data")

        rpc = self.rpc(chain_id)
        nonce = await self._transaction_count(chain_id, "pending")
        tx: Dict[str, Any] = {
            "chainId": int(chain_id),
            "nonce": nonce,
            "to": to_checksum_address(data.to),
            "value": int(data.value),
            "data": data.data or "0x",
        }

        hints = self.use_gas_fee_estimations
        if hints and data.max_fee_per_gas and data.max_priority_fee_per_gas:
            tx["maxFeePerGas"] = data.max_fee_per_gas
            tx["maxPriorityFeePerGas"] = data.max_priority_fee_per_gas
        else:
            tx.update(await self._fees(chain_id))

        authorizations = data.extra.get("authorizationList")
        if authorizations:
            tx["authorizationList"] = [await self._authorization_for(chain_id, a, nonce) for a in authorizations]

        if hints and data.gas:
            tx["gas"] = data.gas
        else:
            estimate_tx = {"from": self.account.address, "to": tx["to"], "value": hex(tx["value"]), "data": tx["data"]}
            tx["gas"] = parse_int(await rpc.call("eth_estimateGas", [estimate_tx]))

        signed = self.account.sign_transaction(tx)
        sent_at = parse_int(await rpc.call("eth_blockNumber", [])) or 0
        tx_hash = await rpc.call("eth_sendRawTransaction", [to_hex(signed.raw_transaction)])
        self._pending[tx_hash.lower()] = PendingTransaction(
            chain_id=int(chain_id),
            nonce=nonce,
            to=tx["to"],
            value=tx["value"],
            data=tx["data"],
            scan_from=sent_at,
        )
        logger.info(f"Sent transaction {tx_hash} on chain {chain_id} (nonce {nonce})")
        return tx_hash

    async def _authorization_for(self, chain_id: int, authorization: Dict[str, Any], tx_nonce: int) -> Dict[str, Any]:
        # A self-sponsored authorization must use the nonce after the transaction's own
        if int(authorization.get("nonce", -1)) == tx_nonce:
            return await self.sign_authorization(chain_id, authorization["address"], nonce=tx_nonce + 1)
        return authorization

    # =========================================================================
    # Confirmation
    # =========================================================================

    async def _find_replacement(self, pending: PendingTransaction) -> Optional[Dict[str, Any]]:
        """Scan blocks mined since the last lookup for the sender's transaction at ``pending.nonce``."""
        rpc = self.rpc(pending.chain_id)
        latest = parse_int(await rpc.call("eth_blockNumber", [])) or 0
        start = max(pending.scan_from, latest - MAX_REPLACEMENT_SCAN_BLOCKS + 1, 0)
        sender = self.account.address.lower()
        for number in range(start, latest + 1):
            block = await rpc.call("eth_getBlockByNumber", [hex(number), True]) or {}
            for tx in block.get("transactions") or []:
                if (
                    isinstance(tx, dict)
                    and (tx.get("from") or "").lower() == sender
                    and parse_int(tx.get("nonce")) == pending.nonce
                ):
                    return tx
        pending.scan_from = latest + 1
        return None

    def _is_cancellation(self, replacement: Dict[str, Any]) -> bool:
        return (
            (replacement.get("to") or "").lower() == self.account.address.lower()
            and (parse_int(replacement.get("value")) or 0) == 0
            and replacement.get("input", "0x") in ("0x", "")
        )

    async def handle_confirm_transaction_step(
        self,
        tx_hash: str,
        chain_id: int,
        on_replaced: ReplacedCallback,
        on_cancelled: CancelledCallback,
    ) -> EvmReceipt:
        rpc = self.rpc(chain_id)
        current = tx_hash
        deadline = time.monotonic() + self.timeout_seconds

        while time.monotonic() < deadline:
            receipt = await rpc.call("eth_getTransactionReceipt", [current])
            if receipt:
                self._pending.pop(current.lower(), None)
                return EvmReceipt.from_rpc(receipt)

            pending = self._pending.get(current.lower())
            if pending is not None and await self._transaction_count(chain_id, "latest") > pending.nonce:
                if await rpc.call("eth_getTransactionByHash", [current]) is None:
                    replacement = await self._find_replacement(pending)
                    if replacement is not None:
                        if self._is_cancellation(replacement):
                            on_cancelled()
                            raise ExecutionError("Transaction cancelled")
                        new_hash = replacement["hash"]
                        logger.info(f"Transaction {current} replaced by {new_hash}")
                        on_replaced(new_hash)
                        self._pending.pop(current.lower(), None)
                        current = new_hash

            await asyncio.sleep(self.poll_interval_seconds)

        raise ExecutionError(f"Timed out waiting for transaction {current} on chain {chain_id}")

    # =========================================================================
    # Optional capabilities
    # =========================================================================

    async def get_balance(self, chain_id: int, wallet_address: str, token_address: Optional[str] = None) -> Optional[int]:
        rpc = self.rpc(chain_id)
        try:
            if not token_address or int(token_address, 16) == 0:
                return parse_int(await rpc.call("eth_getBalance", [wallet_address, "latest"]))
            data = to_hex(BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(wallet_address)]))
            result = await rpc.eth_call(to_checksum_address(token_address), data)
            (balance,) = decode(["uint256"], to_bytes(hexstr=result))
            return int(balance)
        except Exception as exc:
            logger.warning(f"Balance lookup failed on chain {chain_id}: {exc}")
            return None

    async def is_eoa(self, chain_id: int) -> EoaStatus:
        code = await self.rpc(chain_id).call("eth_getCode", [self.account.address, "latest"])
        has_code = bool(code) and code != "0x"
        delegated = bool(code) and code.lower().startswith("0xef01")
        return EoaStatus(is_eoa=not has_code or delegated, is_eip7702_delegated=delegated)
