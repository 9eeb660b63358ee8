"""
Shared fakes for execution tests.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from relaykit.core.execution import (
    AbortSignal,
    AdaptedWallet,
    EvmReceipt,
    Execute,
    StepItem,
    VmType,
)


USER = "0x1111111111111111111111111111111111111111"
TARGET = "0x2222222222222222222222222222222222222222"
SIGNATURE = "0x" + "ab" * 65


def tx_hash_for(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeWallet(AdaptedWallet):
    """In-memory wallet that records every call the executor makes."""

    vm_type = VmType.EVM

    def __init__(self, chain_id: int = 1, address: str = USER):
        self.chain_id = chain_id
        self._address = address
        self.signed: List[StepItem] = []
        self.sent: List[StepItem] = []
        self.confirmed: List[str] = []
        self.switched: List[int] = []
        self.send_errors: Dict[int, Exception] = {}
        self.confirm_hooks: Dict[str, Callable] = {}
        self.events: List[str] = []

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def address(self) -> str:
        return self._address

    async def handle_sign_message_step(self, item, step):
        self.signed.append(item)
        self.events.append(f"sign:{step.id}")
        return SIGNATURE

    async def handle_send_transaction_step(self, chain_id, item, step):
        index = len(self.sent)
        self.sent.append(item)
        self.events.append(f"send:{step.id}")
        if index in self.send_errors:
            raise self.send_errors[index]
        return tx_hash_for(index + 1)

    async def handle_confirm_transaction_step(self, tx_hash, chain_id, on_replaced, on_cancelled):
        self.confirmed.append(tx_hash)
        self.events.append(f"confirm:{tx_hash}")
        hook = self.confirm_hooks.get(tx_hash)
        if hook is not None:
            return await hook(tx_hash, on_replaced, on_cancelled)
        return EvmReceipt(tx_hash=tx_hash, status="success", block_number=1)

    async def switch_chain(self, chain_id):
        self.switched.append(chain_id)
        self.chain_id = chain_id


class BatchingWallet(FakeWallet):
    """Fake wallet that also supports atomic batches and 7702 authorization."""

    def __init__(self, *args, batch_supported: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.batch_supported = batch_supported
        self.batches: List[List[StepItem]] = []
        self.authorizations: List[str] = []
        self.authorization_nonces: List[Optional[int]] = []

    async def supports_atomic_batch(self, chain_id):
        return self.batch_supported

    async def handle_batch_transaction_step(self, chain_id, items):
        self.batches.append(list(items))
        self.events.append("batch")
        return tx_hash_for(1000 + len(self.batches))

    async def sign_authorization(self, chain_id, contract_address, nonce=None):
        self.authorizations.append(contract_address)
        self.authorization_nonces.append(nonce)
        return {
            "chainId": chain_id,
            "address": contract_address,
            "nonce": nonce or 0,
            "yParity": 0,
            "r": "0x01",
            "s": "0x02",
        }


class RecordingSignal(AbortSignal):
    """Abort signal whose sleeps return at once and are recorded."""

    def __init__(self, abort_after: Optional[int] = None):
        super().__init__()
        self.sleeps: List[float] = []
        self.abort_after = abort_after

    async def sleep(self, seconds: float) -> None:
        self.raise_if_aborted()
        self.sleeps.append(seconds)
        if self.abort_after is not None and len(self.sleeps) >= self.abort_after:
            self.abort("Stopped by caller")
        self.raise_if_aborted()


class ScriptedSocket:
    """Status socket double that replays fixed updates, then errors, hangs or closes."""

    def __init__(self, updates=(), error: Optional[BaseException] = None, hang: bool = False):
        self.script = list(updates)
        self.error = error
        self.hang = hang
        self.requests: List[str] = []
        self.closed = False

    async def updates(self, request_id):
        self.requests.append(request_id)
        try:
            for update in self.script:
                yield update
            if self.error is not None:
                raise self.error
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed = True


def tx_item(
    to: str = TARGET,
    data: str = "0x",
    value: str = "0",
    chain_id: int = 1,
    gas: Optional[str] = None,
    status: str = "incomplete",
    **extra: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"from": USER, "to": to, "data": data, "value": value, "chainId": chain_id}
    if gas is not None:
        payload["gas"] = gas
    return {"status": status, "data": payload, **extra}


def quote_json(
    steps: List[Dict[str, Any]],
    chain_id: int = 1,
    sender: str = USER,
    recipient: str = USER,
) -> Dict[str, Any]:
    return {
        "steps": steps,
        "fees": {"gas": {"amount": "1"}},
        "details": {
            "sender": sender,
            "recipient": recipient,
            "currencyIn": {"currency": {"chainId": chain_id, "symbol": "ETH"}},
        },
    }


def build_quote(steps: List[Dict[str, Any]], **kwargs: Any) -> Execute:
    return Execute.from_api(quote_json(steps, **kwargs))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def batching_wallet() -> BatchingWallet:
    return BatchingWallet()


@pytest.fixture
def signal() -> RecordingSignal:
    return RecordingSignal()


@pytest.fixture
def relay() -> MagicMock:
    """Relay API double; every endpoint is an AsyncMock."""
    mock = MagicMock()
    mock.source = "relaykit-tests"
    mock.get_status = AsyncMock(return_value={"status": "success"})
    mock.check = AsyncMock(return_value={"status": "success"})
    mock.fast_fill = AsyncMock(return_value={})
    mock.post_step_data = AsyncMock(return_value={})
    mock.execute = AsyncMock(return_value={"requestId": "0xrelayed"})
    mock.get_requests = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def tenderly() -> MagicMock:
    """Trace lookup double that reports itself disabled."""
    mock = MagicMock()
    mock.ready = AsyncMock(return_value=False)
    mock.get_error_details = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def make_quote() -> Callable[..., Execute]:
    return build_quote


@pytest.fixture
def make_tx_item() -> Callable[..., Dict[str, Any]]:
    return tx_item


@pytest.fixture
def make_socket() -> Callable[..., ScriptedSocket]:
    return ScriptedSocket


@pytest.fixture
def aborting_signal() -> Callable[[int], RecordingSignal]:
    """Factory for a signal that aborts after ``n`` recorded sleeps."""
    return lambda n: RecordingSignal(abort_after=n)
