"""
Calibur batch executor scheme.

Calibur is a minimal batch executor for EIP-7702 delegated EOAs, deployed at
the same address on every supported chain. Once an EOA delegates to it, a
list of calls signed with the account owner's key can be executed in one
transaction by anyone.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List

from eth_abi import decode, encode
from eth_utils import keccak, to_bytes, to_checksum_address

from .batch_executor import BatchExecutorConfig
from .models import BatchCall

if TYPE_CHECKING:
    from ...providers.rpc import JsonRpcClient


logger = logging.getLogger(__name__)


CALIBUR_ADDRESS = "0x000000009B1D0aF20D8C6d0A44e162d11F9b8f00"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# bytes32(0): the root key, i.e. the EOA owner's own key
ROOT_KEY_HASH = "0x" + "00" * 32

# Left-padded implementation address
CALIBUR_SALT = "0x" + CALIBUR_ADDRESS[2:].lower().rjust(64, "0")

CALIBUR_ORIGIN_GAS_OVERHEAD = 80_000

SIGNED_BATCHED_CALL_TYPE = "(((address,uint256,bytes)[],bool),uint256,bytes32,address,uint256)"
EXECUTE_SIGNATURE = f"execute({SIGNED_BATCHED_CALL_TYPE},bytes)"
GET_SEQ_SIGNATURE = "getSeq(uint256)"

EXECUTE_SELECTOR = keccak(text=EXECUTE_SIGNATURE)[:4]
GET_SEQ_SELECTOR = keccak(text=GET_SEQ_SIGNATURE)[:4]

CALIBUR_ABI: List[Dict[str, Any]] = [
    {
        "name": "execute",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "signedBatchedCall",
                "type": "tuple",
                "components": [
                    {
                        "name": "batchedCall",
                        "type": "tuple",
                        "components": [
                            {
                                "name": "calls",
                                "type": "tuple[]",
                                "components": [
                                    {"name": "to", "type": "address"},
                                    {"name": "value", "type": "uint256"},
                                    {"name": "data", "type": "bytes"},
                                ],
                            },
                            {"name": "revertOnFailure", "type": "bool"},
                        ],
                    },
                    {"name": "nonce", "type": "uint256"},
                    {"name": "keyHash", "type": "bytes32"},
                    {"name": "executor", "type": "address"},
                    {"name": "deadline", "type": "uint256"},
                ],
            },
            {"name": "wrappedSignature", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "getSeq",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "key", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

CALIBUR_EIP712_TYPES: Dict[str, List[Dict[str, str]]] = {
    "SignedBatchedCall": [
        {"name": "batchedCall", "type": "BatchedCall"},
        {"name": "nonce", "type": "uint256"},
        {"name": "keyHash", "type": "bytes32"},
        {"name": "executor", "type": "address"},
        {"name": "deadline", "type": "uint256"},
    ],
    "BatchedCall": [
        {"name": "calls", "type": "Call[]"},
        {"name": "revertOnFailure", "type": "bool"},
    ],
    "Call": [
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "data", "type": "bytes"},
    ],
}


def build_sign_domain(chain_id: int, verifying_contract: str) -> Dict[str, Any]:
    return {
        "name": "Calibur",
        "version": "1.0.0",
        "chainId": int(chain_id),
        "verifyingContract": to_checksum_address(verifying_contract),
        "salt": CALIBUR_SALT,
    }


def build_sign_message(calls: List[BatchCall], nonce: int) -> Dict[str, Any]:
    return {
        "batchedCall": {
            "calls": [
                {"to": to_checksum_address(c.to), "value": int(c.value), "data": c.data or "0x"}
                for c in calls
            ],
            "revertOnFailure": True,
        },
        "nonce": int(nonce),
        "keyHash": ROOT_KEY_HASH,
        "executor": ZERO_ADDRESS,
        "deadline": 0,
    }


def encode_execute(signed_message: Dict[str, Any], wrapped_signature: bytes) -> str:
    """ABI-encode ``execute(signedBatchedCall, wrappedSignature)`` calldata."""
    batched = signed_message["batchedCall"]
    calls = [
        (to_checksum_address(c["to"]), int(c["value"]), to_bytes(hexstr=c["data"] or "0x"))
        for c in batched["calls"]
    ]
    signed_batched_call = (
        (calls, bool(batched["revertOnFailure"])),
        int(signed_message["nonce"]),
        to_bytes(hexstr=signed_message["keyHash"]),
        to_checksum_address(signed_message["executor"]),
        int(signed_message["deadline"]),
    )
    encoded = encode([SIGNED_BATCHED_CALL_TYPE, "bytes"], [signed_batched_call, wrapped_signature])
    return "0x" + (EXECUTE_SELECTOR + encoded).hex()


async def get_nonce(rpc: "JsonRpcClient", user_address: str) -> int:
    """Read ``getSeq(0)`` from the delegated account; zero when it cannot be read."""
    data = "0x" + (GET_SEQ_SELECTOR + encode(["uint256"], [0])).hex()
    try:
        result = await rpc.eth_call(to_checksum_address(user_address), data)
        if not result or result == "0x":
            return 0
        (seq,) = decode(["uint256"], to_bytes(hexstr=result))
        return int(seq)
    except Exception as exc:
        logger.debug(f"getSeq read failed for {user_address}, defaulting to 0: {exc}")
        return 0


def create_calibur_executor() -> BatchExecutorConfig:
    return BatchExecutorConfig(
        address=CALIBUR_ADDRESS,
        abi=CALIBUR_ABI,
        eip712_types=CALIBUR_EIP712_TYPES,
        eip712_primary_type="SignedBatchedCall",
        salt=CALIBUR_SALT,
        origin_gas_overhead=CALIBUR_ORIGIN_GAS_OVERHEAD,
        build_sign_domain=build_sign_domain,
        build_sign_message=build_sign_message,
        encode_execute=encode_execute,
        get_nonce=get_nonce,
    )
