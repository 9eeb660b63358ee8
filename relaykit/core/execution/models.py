"""
Quote, step and progress models.

A quote (``Execute``) arrives from the quote API as camelCase JSON. It is
parsed once at the boundary by ``Execute.from_api`` and rendered back with
``to_dict`` for callers that persist or display it.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse


class VmType(str, Enum):
    """Blockchain execution environment families."""
    EVM = "evm"
    SVM = "svm"
    BVM = "bvm"
    TVM = "tvm"
    SUIVM = "suivm"
    HYPEVM = "hypevm"


class StepKind(str, Enum):
    SIGNATURE = "signature"
    TRANSACTION = "transaction"


class SignatureKind(str, Enum):
    EIP191 = "eip191"  # Raw personal message
    EIP712 = "eip712"  # Structured typed data


class ItemStatus(str, Enum):
    """Step item lifecycle status. Transitions are monotonic."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ProgressState(str, Enum):
    """Transient sub-state surfaced to progress observers."""
    SIGNING = "signing"
    POSTING = "posting"
    SENDING = "sending"
    CONFIRMING = "confirming"
    VALIDATING = "validating"
    COMPLETE = "complete"


class CheckStatus(str, Enum):
    """Last status reported by the solver status endpoint."""
    WAITING = "waiting"
    PENDING = "pending"
    SUBMITTED = "submitted"
    SUCCESS = "success"
    FAILURE = "failure"
    REFUND = "refund"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "CheckStatus":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


# API status strings mapped onto ItemStatus
_API_ITEM_STATUS = {
    "incomplete": ItemStatus.PENDING,
    "complete": ItemStatus.CONFIRMED,
}


def parse_int(value: Any) -> Optional[int]:
    """Parse an int from an int, a 0x-prefixed hex string or a decimal string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16) if len(text) > 2 else 0
    return int(text)


@dataclass
class TxHash:
    tx_hash: str
    chain_id: int
    is_batch_tx: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"txHash": self.tx_hash, "chainId": self.chain_id}
        if self.is_batch_tx:
            data["isBatchTx"] = True
        return data

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TxHash":
        return cls(
            tx_hash=data["txHash"],
            chain_id=int(data.get("chainId") or 0),
            is_batch_tx=bool(data.get("isBatchTx", False)),
        )


@dataclass
class CheckRequest:
    """Status endpoint to poll once an item has been submitted."""
    endpoint: str
    method: str = "GET"

    @property
    def request_id(self) -> Optional[str]:
        query = parse_qs(urlparse(self.endpoint).query)
        values = query.get("requestId")
        return values[0] if values else None


@dataclass
class SignData:
    signature_kind: SignatureKind
    message: Optional[str] = None
    domain: Optional[Dict[str, Any]] = None
    types: Optional[Dict[str, Any]] = None
    primary_type: Optional[str] = None
    value: Optional[Dict[str, Any]] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SignData":
        return cls(
            signature_kind=SignatureKind(data.get("signatureKind", SignatureKind.EIP191.value)),
            message=data.get("message"),
            domain=data.get("domain"),
            types=data.get("types"),
            primary_type=data.get("primaryType"),
            value=data.get("value"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"signatureKind": self.signature_kind.value}
        if self.signature_kind == SignatureKind.EIP191:
            data["message"] = self.message
        else:
            data.update(
                domain=self.domain,
                types=self.types,
                primaryType=self.primary_type,
                value=self.value,
            )
        return data


@dataclass
class PostData:
    endpoint: str
    method: str = "POST"
    body: Optional[Dict[str, Any]] = None


_TX_KEYS = {
    "chainId", "from", "to", "value", "data", "gas", "maxFeePerGas",
    "maxPriorityFeePerGas", "instructions", "addressLookupTableAddresses",
    "parameter", "psbt",
}


@dataclass
class TransactionData:
    """VM-native call parameters for a transaction item."""
    chain_id: Optional[int] = None
    from_address: Optional[str] = None
    to: Optional[str] = None
    value: int = 0
    data: Optional[str] = None
    gas: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    # SVM
    instructions: Optional[List[Dict[str, Any]]] = None
    address_lookup_table_addresses: Optional[List[str]] = None

    # TVM
    parameter: Optional[Dict[str, Any]] = None

    # BVM
    psbt: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TransactionData":
        chain_id = parse_int(data.get("chainId"))
        return cls(
            chain_id=chain_id,
            from_address=data.get("from"),
            to=data.get("to"),
            value=parse_int(data.get("value")) or 0,
            data=data.get("data"),
            gas=parse_int(data.get("gas")),
            max_fee_per_gas=parse_int(data.get("maxFeePerGas")),
            max_priority_fee_per_gas=parse_int(data.get("maxPriorityFeePerGas")),
            instructions=data.get("instructions"),
            address_lookup_table_addresses=data.get("addressLookupTableAddresses"),
            parameter=data.get("parameter"),
            psbt=data.get("psbt"),
            extra={k: v for k, v in data.items() if k not in _TX_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        pairs = {
            "chainId": self.chain_id,
            "from": self.from_address,
            "to": self.to,
            "data": self.data,
            "gas": str(self.gas) if self.gas is not None else None,
            "maxFeePerGas": str(self.max_fee_per_gas) if self.max_fee_per_gas is not None else None,
            "maxPriorityFeePerGas": (
                str(self.max_priority_fee_per_gas) if self.max_priority_fee_per_gas is not None else None
            ),
            "instructions": self.instructions,
            "addressLookupTableAddresses": self.address_lookup_table_addresses,
            "parameter": self.parameter,
            "psbt": self.psbt,
        }
        data.update({k: v for k, v in pairs.items() if v is not None})
        data["value"] = str(self.value)
        return data

    @property
    def is_evm_call(self) -> bool:
        return bool(self.to) and self.instructions is None and self.parameter is None and self.psbt is None


# =============================================================================
# Receipts
# =============================================================================

@dataclass
class Receipt:
    """VM-specific success record; opaque apart from its failure code."""
    tx_hash: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def failure_reason(self) -> Optional[str]:
        return None


@dataclass
class EvmReceipt(Receipt):
    status: str = "success"
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None

    def failure_reason(self) -> Optional[str]:
        if str(self.status).lower() in {"reverted", "0x0", "0"}:
            return "Transaction reverted"
        return None

    @classmethod
    def from_rpc(cls, receipt: Dict[str, Any]) -> "EvmReceipt":
        status = parse_int(receipt.get("status", "0x1"))
        return cls(
            tx_hash=receipt.get("transactionHash"),
            raw=receipt,
            status="success" if status == 1 else "reverted",
            block_number=parse_int(receipt.get("blockNumber")),
            block_hash=receipt.get("blockHash"),
            gas_used=parse_int(receipt.get("gasUsed")),
            effective_gas_price=parse_int(receipt.get("effectiveGasPrice")),
        )


@dataclass
class SvmReceipt(Receipt):
    block_hash: Optional[str] = None
    block_number: Optional[int] = None
    err: Any = None

    def failure_reason(self) -> Optional[str]:
        if self.err is not None:
            return f"Transaction failed: {self.err}"
        return None


@dataclass
class TronReceipt(Receipt):
    block_number: Optional[int] = None
    result: Optional[str] = None            # receipt.result, e.g. SUCCESS or OUT_OF_ENERGY
    execution_result: Optional[str] = None  # top-level result, "FAILED" when execution failed
    res_message: Optional[str] = None
    fee: Optional[int] = None

    def failure_reason(self) -> Optional[str]:
        if self.execution_result == "FAILED" or (self.result and self.result != "SUCCESS"):
            reason = self.res_message or self.result or "FAILED"
            return f"Transaction failed: {reason}"
        return None


@dataclass
class BitcoinReceipt(Receipt):
    confirmations: int = 0
    block_hash: Optional[str] = None


@dataclass
class SuiReceipt(Receipt):
    digest: Optional[str] = None
    status: str = "success"

    def failure_reason(self) -> Optional[str]:
        if self.status != "success":
            return f"Transaction failed: {self.status}"
        return None


# =============================================================================
# Plan
# =============================================================================

@dataclass
class StepItem:
    status: ItemStatus = ItemStatus.PENDING
    data: Optional[TransactionData] = None
    sign: Optional[SignData] = None
    post: Optional[PostData] = None
    check: Optional[CheckRequest] = None
    request_id: Optional[str] = None
    batchable: bool = True

    # Runtime annotations
    tx_hashes: List[TxHash] = field(default_factory=list)
    internal_tx_hashes: List[TxHash] = field(default_factory=list)
    signature: Optional[str] = None
    check_status: Optional[CheckStatus] = None
    progress_state: Optional[ProgressState] = None
    receipt: Optional[Receipt] = None
    # Origin leg went through (confirmed on-chain, relayed, or posted); a retry
    # only waits on the solver
    origin_confirmed: bool = False
    error: Optional[str] = None
    order_data: Optional[List[Dict[str, Any]]] = None

    @property
    def is_complete(self) -> bool:
        return self.status == ItemStatus.CONFIRMED

    @property
    def can_batch(self) -> bool:
        return self.batchable and self.data is not None and self.data.is_evm_call

    @classmethod
    def from_api(cls, data: Dict[str, Any], kind: StepKind) -> "StepItem":
        raw_status = str(data.get("status", "incomplete")).lower()
        status = _API_ITEM_STATUS.get(raw_status)
        if status is None:
            status = ItemStatus(raw_status)

        payload = data.get("data") or {}
        check = data.get("check")
        item = cls(
            status=status,
            check=CheckRequest(check["endpoint"], check.get("method", "GET")) if check else None,
            batchable=bool(data.get("batchable", True)),
            tx_hashes=[TxHash.from_api(h) for h in data.get("txHashes") or []],
            internal_tx_hashes=[TxHash.from_api(h) for h in data.get("internalTxHashes") or []],
            signature=data.get("signature"),
            check_status=CheckStatus.parse(data["checkStatus"]) if data.get("checkStatus") else None,
            origin_confirmed=bool(data.get("originConfirmed", False)),
            error=data.get("error"),
            order_data=data.get("orderData"),
        )
        if kind == StepKind.SIGNATURE:
            if payload.get("sign"):
                item.sign = SignData.from_api(payload["sign"])
            if payload.get("post"):
                post = payload["post"]
                item.post = PostData(post["endpoint"], post.get("method", "POST"), post.get("body"))
        elif payload:
            item.data = TransactionData.from_api(payload)
        item.request_id = data.get("requestId") or (item.check.request_id if item.check else None)
        return item

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": "complete" if self.status == ItemStatus.CONFIRMED else self.status.value,
        }
        if self.data is not None:
            data["data"] = self.data.to_dict()
        elif self.sign or self.post:
            payload: Dict[str, Any] = {}
            if self.sign:
                payload["sign"] = self.sign.to_dict()
            if self.post:
                payload["post"] = {"endpoint": self.post.endpoint, "method": self.post.method, "body": self.post.body}
            data["data"] = payload
        if self.check:
            data["check"] = {"endpoint": self.check.endpoint, "method": self.check.method}
        if self.request_id:
            data["requestId"] = self.request_id
        if self.tx_hashes:
            data["txHashes"] = [h.to_dict() for h in self.tx_hashes]
        if self.internal_tx_hashes:
            data["internalTxHashes"] = [h.to_dict() for h in self.internal_tx_hashes]
        for key, value in (
            ("signature", self.signature),
            ("checkStatus", self.check_status.value if self.check_status else None),
            ("progressState", self.progress_state.value if self.progress_state else None),
            ("error", self.error),
            ("orderData", self.order_data),
        ):
            if value is not None:
                data[key] = value
        if self.origin_confirmed:
            data["originConfirmed"] = True
        return data


@dataclass
class Step:
    id: str
    kind: StepKind
    items: List[StepItem] = field(default_factory=list)
    action: str = ""
    description: str = ""
    request_id: Optional[str] = None
    deposit_address: Optional[str] = None

    # Completion depends on an off-chain solver fill
    is_deposit: bool = False
    # Request expedited settlement once the deposit is observed
    accelerate: bool = False

    @property
    def is_complete(self) -> bool:
        return all(item.is_complete for item in self.items)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Step":
        step_id = str(data.get("id", ""))
        kind = StepKind(data.get("kind", StepKind.TRANSACTION.value))
        is_deposit = bool(data.get("isDeposit", step_id == "deposit"))
        step = cls(
            id=step_id,
            kind=kind,
            action=data.get("action", ""),
            description=data.get("description", ""),
            request_id=data.get("requestId"),
            deposit_address=data.get("depositAddress"),
            is_deposit=is_deposit,
            accelerate=bool(data.get("accelerate", is_deposit)),
        )
        step.items = [StepItem.from_api(item, kind) for item in data.get("items") or []]
        for item in step.items:
            if item.request_id is None:
                item.request_id = step.request_id
        return step

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "action": self.action,
            "description": self.description,
            "items": [item.to_dict() for item in self.items],
        }
        if self.request_id:
            data["requestId"] = self.request_id
        if self.deposit_address:
            data["depositAddress"] = self.deposit_address
        data["isDeposit"] = self.is_deposit
        data["accelerate"] = self.accelerate
        return data


@dataclass
class Execute:
    """A quote: an ordered plan of steps plus opaque fee/time metadata."""
    steps: List[Step] = field(default_factory=list)
    fees: Optional[Dict[str, Any]] = None
    breakdown: Optional[Any] = None
    details: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    refunded: Optional[bool] = None
    request: Optional[Dict[str, Any]] = None

    @property
    def origin_chain_id(self) -> Optional[int]:
        currency_in = (self.details or {}).get("currencyIn") or {}
        return parse_int((currency_in.get("currency") or {}).get("chainId"))

    @property
    def sender(self) -> Optional[str]:
        return (self.details or {}).get("sender")

    @property
    def recipient(self) -> Optional[str]:
        return (self.details or {}).get("recipient")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Execute":
        return cls(
            steps=[Step.from_api(step) for step in data.get("steps") or []],
            fees=data.get("fees"),
            breakdown=data.get("breakdown"),
            details=data.get("details"),
            error=data.get("error"),
            refunded=data.get("refunded"),
            request=data.get("request"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"steps": [step.to_dict() for step in self.steps]}
        for key in ("fees", "breakdown", "details", "error", "refunded", "request"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class ProgressData:
    """Read-only snapshot pushed to the progress observer after every transition."""
    steps: List[Step]
    current_step: Optional[Step] = None
    current_step_item: Optional[StepItem] = None
    tx_hashes: List[TxHash] = field(default_factory=list)
    error: Optional[BaseException] = None
    fees: Optional[Dict[str, Any]] = None
    breakdown: Optional[Any] = None
    details: Optional[Dict[str, Any]] = None
    refunded: Optional[bool] = None

    @classmethod
    def snapshot(cls, quote: Execute, error: Optional[BaseException] = None) -> "ProgressData":
        steps = copy.deepcopy(quote.steps)
        current_step, current_item = current_step_data(steps)
        tx_hashes = [h for step in steps for item in step.items for h in item.tx_hashes]
        return cls(
            steps=steps,
            current_step=current_step,
            current_step_item=current_item,
            tx_hashes=tx_hashes,
            error=error,
            fees=copy.deepcopy(quote.fees),
            breakdown=copy.deepcopy(quote.breakdown),
            details=copy.deepcopy(quote.details),
            refunded=quote.refunded,
        )


def current_step_data(steps: List[Step]) -> "tuple[Optional[Step], Optional[StepItem]]":
    """Return the first step and item that are not yet confirmed."""
    for step in steps:
        for item in step.items:
            if not item.is_complete:
                return step, item
    return None, None


@dataclass
class BatchCall:
    to: str
    value: int
    data: str
    gas: Optional[int] = None

    @classmethod
    def from_item(cls, item: StepItem) -> "BatchCall":
        if item.data is None or not item.data.to:
            raise ValueError("Step item has no call data to batch")
        return cls(
            to=item.data.to,
            value=item.data.value,
            data=item.data.data or "0x",
            gas=item.data.gas,
        )
