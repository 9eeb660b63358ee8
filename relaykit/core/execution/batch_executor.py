"""
Gasless batch execution.

Several calls on one chain are authorized with a single EIP-712 signature
over the batch executor's ``SignedBatchedCall`` and executed from the user's
EIP-7702 delegated account, either submitted directly by the wallet or
relayed through ``POST /execute`` so the backend pays origin gas.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from eth_abi import encode
from eth_utils import to_bytes

from ...config import settings
from .errors import ExecutionError
from .models import BatchCall, SignatureKind, SignData, Step, StepItem, TransactionData, parse_int
from .wallet import AdaptedWallet, WalletCapabilities

if TYPE_CHECKING:
    from ...providers.relay import RelayProvider
    from ...providers.rpc import JsonRpcClient


logger = logging.getLogger(__name__)

DELEGATION_PREFIX = "0xef0100"


@dataclass
class BatchExecutorConfig:
    """Static descriptor of one batching scheme, chosen by the caller."""
    address: str
    abi: List[Dict[str, Any]]
    eip712_types: Dict[str, List[Dict[str, str]]]
    eip712_primary_type: str
    salt: str
    build_sign_domain: Callable[[int, str], Dict[str, Any]]
    build_sign_message: Callable[[List[BatchCall], int], Dict[str, Any]]
    encode_execute: Callable[[Dict[str, Any], bytes], str]
    get_nonce: Callable[["JsonRpcClient", str], Awaitable[int]]
    origin_gas_overhead: Optional[int] = None


class BatchSubmitMode(str, Enum):
    RELAY = "relay"    # POST /execute, backend submits and pays gas
    DIRECT = "direct"  # wallet sends the execute call to its own address


@dataclass
class BatchSubmission:
    """Result of one batch submission; every batched item shares it."""
    tx_hash: Optional[str]
    request_id: Optional[str]
    gas_estimate: int
    call_count: int
    relayed: bool = False
    authorization_list: List[Dict[str, Any]] = field(default_factory=list)


def estimate_batch_gas(calls: List[BatchCall], overhead: int) -> int:
    """Summed per-call gas plus the executor's own dispatch overhead."""
    return sum(call.gas or 0 for call in calls) + overhead


def is_delegated_to(code: Optional[str], executor_address: str) -> bool:
    if not code:
        return False
    code = code.lower()
    return code.startswith(DELEGATION_PREFIX) and code[len(DELEGATION_PREFIX):] == executor_address[2:].lower()


def wrap_signature(signature: str, hook_data: bytes = b"") -> bytes:
    """``abi.encode(signature, hookData)`` as expected by ``execute``."""
    return encode(["bytes", "bytes"], [to_bytes(hexstr=signature), hook_data])


class GaslessBatchExecutor:
    """Collects a step's calls into one signed batch and submits it."""

    def __init__(
        self,
        config: BatchExecutorConfig,
        *,
        mode: BatchSubmitMode = BatchSubmitMode.RELAY,
        relay: Optional["RelayProvider"] = None,
        rpc: Optional["JsonRpcClient"] = None,
        subsidize_fees: bool = False,
        origin_gas_overhead: Optional[int] = None,
    ) -> None:
        self.config = config
        self.mode = BatchSubmitMode(mode)
        self.relay = relay
        self.rpc = rpc
        self.subsidize_fees = subsidize_fees
        if origin_gas_overhead is not None:
            self.origin_gas_overhead = origin_gas_overhead
        elif config.origin_gas_overhead is not None:
            self.origin_gas_overhead = config.origin_gas_overhead
        else:
            self.origin_gas_overhead = settings.batch_origin_gas_overhead

    def _rpc_for(self, chain_id: int) -> Optional["JsonRpcClient"]:
        if self.rpc is not None:
            return self.rpc
        rpc_url = settings.get_rpc_url(chain_id)
        if not rpc_url:
            return None
        from ...providers.rpc import JsonRpcClient

        self.rpc = JsonRpcClient(rpc_url)
        return self.rpc

    def _relay(self) -> "RelayProvider":
        if self.relay is None:
            from ...providers.relay import get_relay_provider

            self.relay = get_relay_provider()
        return self.relay

    async def _is_delegated(
        self,
        rpc: Optional["JsonRpcClient"],
        capabilities: WalletCapabilities,
        chain_id: int,
        user_address: str,
    ) -> bool:
        if rpc is not None:
            try:
                code = await rpc.call("eth_getCode", [user_address, "latest"])
                return is_delegated_to(code, self.config.address)
            except Exception as exc:
                logger.warning(f"Could not read code for {user_address}: {exc}")
        if capabilities.is_eoa is not None:
            status = await capabilities.is_eoa(chain_id)
            return status.is_eip7702_delegated
        return False

    async def submit(
        self,
        wallet: AdaptedWallet,
        capabilities: WalletCapabilities,
        chain_id: int,
        step: Step,
        items: List[StepItem],
        request_id: Optional[str] = None,
    ) -> BatchSubmission:
        calls = [BatchCall.from_item(item) for item in items]
        if not calls:
            raise ExecutionError("No transaction calls to batch")

        user_address = await wallet.address()
        rpc = self._rpc_for(chain_id)
        logger.info(
            f"Gasless batch: {len(calls)} calls on chain {chain_id} for {user_address} "
            f"via {self.config.address} ({self.mode.value})"
        )

        authorization_list: List[Dict[str, Any]] = []
        if not await self._is_delegated(rpc, capabilities, chain_id, user_address):
            sign_authorization = capabilities.require("sign_authorization")
            auth_kwargs: Dict[str, Any] = {}
            if self.mode == BatchSubmitMode.DIRECT and rpc is not None:
                # The carrying transaction consumes the current nonce first
                tx_count = parse_int(await rpc.call("eth_getTransactionCount", [user_address, "pending"])) or 0
                auth_kwargs["nonce"] = tx_count + 1
            authorization = await sign_authorization(chain_id, self.config.address, **auth_kwargs)
            authorization_list.append(authorization)
            logger.info(f"Gasless batch: signed 7702 authorization for {user_address}")

        nonce = await self.config.get_nonce(rpc, user_address) if rpc is not None else 0
        logger.debug(f"Gasless batch: executor nonce {nonce}")

        message = self.config.build_sign_message(calls, nonce)
        domain = self.config.build_sign_domain(chain_id, user_address)
        sign_item = StepItem(
            sign=SignData(
                signature_kind=SignatureKind.EIP712,
                domain=domain,
                types=self.config.eip712_types,
                primary_type=self.config.eip712_primary_type,
                value=message,
            ),
            request_id=request_id,
        )
        signature = await wallet.handle_sign_message_step(sign_item, step)
        if not signature:
            raise ExecutionError("Wallet returned no signature for the batch")

        calldata = self.config.encode_execute(message, wrap_signature(signature))
        gas_estimate = estimate_batch_gas(calls, self.origin_gas_overhead)

        if self.mode == BatchSubmitMode.DIRECT:
            extra: Dict[str, Any] = {}
            if authorization_list:
                extra["authorizationList"] = authorization_list
            tx_item = StepItem(
                data=TransactionData(
                    chain_id=chain_id,
                    from_address=user_address,
                    to=user_address,
                    value=0,
                    data=calldata,
                    gas=gas_estimate,
                    extra=extra,
                ),
                request_id=request_id,
            )
            tx_hash = await wallet.handle_send_transaction_step(chain_id, tx_item, step)
            if not tx_hash:
                raise ExecutionError("Wallet returned no hash for the batch transaction")
            logger.info(f"Gasless batch: submitted {tx_hash}")
            return BatchSubmission(
                tx_hash=tx_hash,
                request_id=request_id,
                gas_estimate=gas_estimate,
                call_count=len(calls),
                authorization_list=authorization_list,
            )

        relay = self._relay()
        tx_data: Dict[str, Any] = {
            "chainId": chain_id,
            "to": user_address,
            "data": calldata,
            "value": "0",
        }
        if authorization_list:
            tx_data["authorizationList"] = authorization_list
        body: Dict[str, Any] = {
            "executionKind": "rawCalls",
            "data": tx_data,
            "executionOptions": {
                "referrer": relay.source or "",
                "subsidizeFees": self.subsidize_fees,
            },
            "originGasOverhead": self.origin_gas_overhead,
        }
        if request_id:
            body["requestId"] = request_id

        response = await relay.execute(body)
        final_request_id = response.get("requestId") or request_id
        logger.info(f"Gasless batch: relayed, requestId {final_request_id}")
        return BatchSubmission(
            tx_hash=response.get("txHash"),
            request_id=final_request_id,
            gas_estimate=gas_estimate,
            call_count=len(calls),
            relayed=True,
            authorization_list=authorization_list,
        )
