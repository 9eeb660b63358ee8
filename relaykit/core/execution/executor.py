"""
Step executor.

Drives a quote's steps to completion against an ``AdaptedWallet``:

- Steps run strictly in order; items within a step run in order, or as one
  combined operation when batching is requested and possible
- Every sent hash goes through the confirmation poller exactly once
- Deposit steps carrying a request id wait for the solver to fill
- A read-only progress snapshot is pushed after every transition

Item status lives in an ``ExecutionState`` table owned by one executor. It
is seeded from the statuses recorded on the quote, so calling ``execute``
again with a partially completed quote resumes at the first item that is not
confirmed. A failed item whose origin transaction already confirmed is never
sent again; the retry only waits on the solver.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog

from ...config import settings
from .abort import AbortSignal
from .batch_executor import BatchSubmission, GaslessBatchExecutor
from .confirmation import ConfirmationPoller
from .errors import ExecutionAbortedError, ExecutionError, InvalidTransitionError
from .models import (
    Execute,
    ItemStatus,
    ProgressData,
    ProgressState,
    Step,
    StepItem,
    StepKind,
    TxHash,
)
from .solver_status import SolverStatusPoller
from .wallet import AdaptedWallet, WalletCapabilities

if TYPE_CHECKING:
    from ...providers.relay import RelayProvider
    from ...providers.relay_websocket import RelayStatusSocket
    from ...providers.tenderly import TenderlyProvider


logger = logging.getLogger(__name__)

DEAD_ADDRESSES = {
    "0x000000000000000000000000000000000000dead",
    "1nc1nerator11111111111111111111111111111111",
}

ProgressCallback = Callable[[ProgressData], Any]
TransactionReceivedCallback = Callable[[Dict[str, Any]], Any]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


@dataclass
class ExecutionOptions:
    """Caller choices for one execution call."""
    on_progress: Optional[ProgressCallback] = None

    # Batching: gasless batch executor takes priority over wallet atomic batching
    batch_executor: Optional[GaslessBatchExecutor] = None
    atomic_batch: bool = False

    # Best-effort acceleration of accelerated (deposit) steps
    fast_fill: bool = False
    solver_input_currency_amount: Optional[str] = None

    # Solver status polling overrides
    polling_interval_seconds: Optional[float] = None
    max_polling_attempts: Optional[int] = None
    # Follow status over a WebSocket first; polling takes over if it drops
    status_socket: Optional["RelayStatusSocket"] = None

    # Post-execution request metadata lookup
    enrich_request_metadata: bool = False
    on_transaction_received: Optional[TransactionReceivedCallback] = None


class ExecutionState:
    """
    Item status table keyed by ``(step_index, item_index)``.

    Only the executor that owns it writes to it. Every accepted transition is
    mirrored onto the quote's item so a later call can resume from it.
    """

    TRANSITIONS: Dict[ItemStatus, Set[ItemStatus]] = {
        ItemStatus.PENDING: {ItemStatus.SUBMITTED, ItemStatus.FAILED},
        ItemStatus.SUBMITTED: {ItemStatus.CONFIRMED, ItemStatus.FAILED},
        ItemStatus.CONFIRMED: set(),
        ItemStatus.FAILED: set(),
    }

    def __init__(self, quote: Execute) -> None:
        self.quote = quote
        self._statuses: Dict[Tuple[int, int], ItemStatus] = {}
        for step_index, step in enumerate(quote.steps):
            for item_index, item in enumerate(step.items):
                self._seed(step_index, item_index, item)

    def _seed(self, step_index: int, item_index: int, item: StepItem) -> ItemStatus:
        status = item.status
        if status == ItemStatus.FAILED:
            # Items whose origin leg went through only wait on the solver again;
            # the rest are retried from the start
            status = ItemStatus.SUBMITTED if item.origin_confirmed else ItemStatus.PENDING
            item.status = status
            item.error = None
        self._statuses[(step_index, item_index)] = status
        return status

    def status(self, step_index: int, item_index: int) -> ItemStatus:
        key = (step_index, item_index)
        if key not in self._statuses:
            # Steps appended during execution
            return self._seed(step_index, item_index, self.quote.steps[step_index].items[item_index])
        return self._statuses[key]

    def item(self, step_index: int, item_index: int) -> StepItem:
        return self.quote.steps[step_index].items[item_index]

    def transition(
        self,
        step_index: int,
        item_index: int,
        to_status: ItemStatus,
        error: Optional[str] = None,
    ) -> None:
        from_status = self.status(step_index, item_index)
        if to_status not in self.TRANSITIONS[from_status]:
            raise InvalidTransitionError(
                f"Invalid transition for step {step_index} item {item_index}: "
                f"{from_status.value} -> {to_status.value}"
            )
        self._statuses[(step_index, item_index)] = to_status
        item = self.item(step_index, item_index)
        item.status = to_status
        if error is not None:
            item.error = error
        logger.debug(f"Step {step_index} item {item_index}: {from_status.value} -> {to_status.value}")

    def pending_indices(self, step_index: int) -> List[int]:
        step = self.quote.steps[step_index]
        return [i for i in range(len(step.items)) if self.status(step_index, i) != ItemStatus.CONFIRMED]

    def snapshot(self, error: Optional[BaseException] = None) -> ProgressData:
        return ProgressData.snapshot(self.quote, error)


class StepExecutor:
    """Runs one quote against one wallet. Not reusable across calls."""

    def __init__(
        self,
        quote: Execute,
        wallet: AdaptedWallet,
        options: Optional[ExecutionOptions] = None,
        *,
        relay: Optional["RelayProvider"] = None,
        tenderly: Optional["TenderlyProvider"] = None,
        signal: Optional[AbortSignal] = None,
    ) -> None:
        if wallet is None:
            raise ValueError("A wallet is required to execute a quote")
        self.quote = quote
        self.wallet = wallet
        self.options = options or ExecutionOptions()
        self.signal = signal or AbortSignal()
        self._relay = relay
        self.capabilities = WalletCapabilities.resolve(wallet)
        self.state = ExecutionState(quote)
        self.confirmations = ConfirmationPoller(tenderly=tenderly, signal=self.signal)
        self.solver = SolverStatusPoller(
            relay,
            interval_seconds=self.options.polling_interval_seconds,
            max_attempts=self.options.max_polling_attempts,
            signal=self.signal,
            socket=self.options.status_socket,
        )
        self.batch_submissions: List[BatchSubmission] = []

    @property
    def relay(self) -> "RelayProvider":
        if self._relay is None:
            from ...providers.relay import get_relay_provider

            self._relay = get_relay_provider()
            self.solver._relay = self._relay
        return self._relay

    def abort(self, reason: str = "Execution aborted") -> None:
        """Stop in-flight polls; no progress is emitted afterwards."""
        logger.info(f"Aborting execution: {reason}")
        self.signal.abort(reason)

    # =========================================================================
    # Progress
    # =========================================================================

    async def _emit(self, error: Optional[BaseException] = None) -> None:
        if self.signal.aborted or self.options.on_progress is None:
            return
        await _maybe_await(self.options.on_progress(self.state.snapshot(error)))

    async def _set_progress(self, items: List[StepItem], progress: ProgressState) -> None:
        for item in items:
            item.progress_state = progress
        await self._emit()

    # =========================================================================
    # Entry
    # =========================================================================

    def _preflight(self) -> None:
        if self.quote.origin_chain_id is None:
            raise ExecutionError("Missing origin chain id in quote details")
        for role, address in (("sender", self.quote.sender), ("recipient", self.quote.recipient)):
            if address and address.lower() in DEAD_ADDRESSES:
                raise ExecutionError(f"Quote {role} is a burn address: {address}")

    def _request_id(self) -> Optional[str]:
        for step in self.quote.steps:
            if step.request_id:
                return step.request_id
            for item in step.items:
                if item.request_id:
                    return item.request_id
        return None

    async def run(self) -> Execute:
        self._preflight()

        with structlog.contextvars.bound_contextvars(
            request_id=self._request_id(),
            origin_chain_id=self.quote.origin_chain_id,
        ):
            logger.info(f"Executing quote with {len(self.quote.steps)} steps")
            try:
                step_index = 0
                # Signature posts may append steps, so the length is re-read
                while step_index < len(self.quote.steps):
                    step = self.quote.steps[step_index]
                    if self.state.pending_indices(step_index):
                        with structlog.contextvars.bound_contextvars(step_id=step.id):
                            if step.kind == StepKind.SIGNATURE:
                                await self._run_signature_step(step_index, step)
                            else:
                                await self._run_transaction_step(step_index, step)
                    step_index += 1
            except ExecutionAbortedError:
                logger.info("Execution aborted")
                raise
            except Exception as exc:
                logger.error(f"Execution failed: {exc}")
                await self._emit(error=exc)
                raise

            logger.info("Execution complete")
            await self._emit()

            if self.options.enrich_request_metadata:
                await self._enrich_request_metadata()

        return self.quote

    # =========================================================================
    # Signature steps
    # =========================================================================

    async def _run_signature_step(self, step_index: int, step: Step) -> None:
        for item_index in self.state.pending_indices(step_index):
            item = step.items[item_index]
            try:
                appended = False
                if self.state.status(step_index, item_index) == ItemStatus.PENDING:
                    appended = await self._sign_and_post(step_index, item_index, step, item)

                # Appended steps carry the rest of the flow
                if item.check is not None and not appended:
                    await self._set_progress([item], ProgressState.VALIDATING)
                    await self.solver.poll(item, on_update=lambda _: self._emit())

                item.progress_state = ProgressState.COMPLETE
                self.state.transition(step_index, item_index, ItemStatus.CONFIRMED)
                await self._emit()
            except (ExecutionAbortedError, asyncio.CancelledError):
                raise
            except Exception as exc:
                self._fail(step_index, [item_index], exc)
                raise

    async def _sign_and_post(self, step_index: int, item_index: int, step: Step, item: StepItem) -> bool:
        """Sign and post one item. Returns True when the post appended steps."""
        signature = None
        appended = False
        if item.sign is not None:
            await self._set_progress([item], ProgressState.SIGNING)
            signature = await self.wallet.handle_sign_message_step(item, step)
            if not signature:
                raise ExecutionError("Wallet returned no signature")
            item.signature = signature

        if item.post is not None:
            await self._set_progress([item], ProgressState.POSTING)
            params = {"signature": signature} if signature else None
            response = await self.relay.post_step_data(item.post, params)
            new_steps = response.get("steps")
            if isinstance(new_steps, list):
                logger.info(f"Post returned {len(new_steps)} additional steps")
                self.quote.steps.extend(Step.from_api(s) for s in new_steps)
                appended = True
            else:
                if response.get("results") is not None:
                    item.order_data = response["results"]
                elif response.get("orderId"):
                    item.order_data = [
                        {
                            "orderId": response["orderId"],
                            "crossPostingOrderId": response.get("crossPostingOrderId"),
                            "orderIndex": response.get("orderIndex") or 0,
                        }
                    ]
                if not item.request_id and response.get("requestId"):
                    item.request_id = response["requestId"]

        item.origin_confirmed = True
        self.state.transition(step_index, item_index, ItemStatus.SUBMITTED)
        await self._emit()
        return appended

    # =========================================================================
    # Transaction steps
    # =========================================================================

    def _chain_id_for(self, step: Step, indices: List[int]) -> int:
        for index in indices:
            data = step.items[index].data
            if data is not None and data.chain_id:
                return data.chain_id
        return self.quote.origin_chain_id

    async def _ensure_chain(self, chain_id: int) -> None:
        current = await self.wallet.get_chain_id()
        if current != chain_id:
            logger.info(f"Switching wallet from chain {current} to {chain_id}")
            await self.wallet.switch_chain(chain_id)

    async def _run_transaction_step(self, step_index: int, step: Step) -> None:
        indices = self.state.pending_indices(step_index)
        chain_id = self._chain_id_for(step, indices)
        await self._ensure_chain(chain_id)

        # Items submitted by an earlier call resume at confirmation, grouped by hash.
        # Items already confirmed on the origin chain skip straight to the solver.
        resumed: "OrderedDict[Tuple[Optional[str], bool], List[int]]" = OrderedDict()
        fresh: List[int] = []
        for index in indices:
            item = step.items[index]
            if self.state.status(step_index, index) == ItemStatus.SUBMITTED:
                last_hash = item.tx_hashes[0].tx_hash if item.tx_hashes else None
                resumed.setdefault((last_hash, item.origin_confirmed), []).append(index)
            else:
                fresh.append(index)

        for (tx_hash, confirmed), group in resumed.items():
            logger.info(
                f"Resuming {len(group)} submitted item(s) at {'solver status' if confirmed else 'confirmation'}"
            )
            await self._finish_items(
                step_index,
                step,
                group,
                tx_hash,
                chain_id,
                solver_only=tx_hash is None,
                origin_confirmed=confirmed,
            )

        if not fresh:
            return

        items = [step.items[i] for i in fresh]
        batchable = all(item.can_batch for item in items)

        if self.options.batch_executor is not None and batchable:
            await self._run_gasless_batch(step_index, step, fresh, chain_id)
        elif (
            self.options.atomic_batch
            and len(fresh) > 1
            and batchable
            and await self.capabilities.atomic_batch_supported(chain_id)
        ):
            await self._run_atomic_batch(step_index, step, fresh, chain_id)
        else:
            for index in fresh:
                await self._run_single(step_index, step, index, chain_id)

    async def _run_single(self, step_index: int, step: Step, index: int, chain_id: int) -> None:
        item = step.items[index]
        try:
            await self._set_progress([item], ProgressState.SENDING)
            tx_hash = await self.wallet.handle_send_transaction_step(chain_id, item, step)
            if not tx_hash:
                raise ExecutionError("Wallet returned no transaction hash")
            item.tx_hashes = [TxHash(tx_hash=tx_hash, chain_id=chain_id)]
            self.state.transition(step_index, index, ItemStatus.SUBMITTED)
            await self._emit()
        except (ExecutionAbortedError, asyncio.CancelledError):
            raise
        except Exception as exc:
            self._fail(step_index, [index], exc)
            raise

        await self._fast_fill(step, [item])
        await self._finish_items(step_index, step, [index], tx_hash, chain_id)

    async def _run_atomic_batch(self, step_index: int, step: Step, indices: List[int], chain_id: int) -> None:
        items = [step.items[i] for i in indices]
        logger.info(f"Submitting {len(items)} items as one wallet batch on chain {chain_id}")
        try:
            await self._set_progress(items, ProgressState.SENDING)
            tx_hash = await self.capabilities.handle_batch_transaction_step(chain_id, items)
            if not tx_hash:
                raise ExecutionError("Wallet returned no hash for the batch")
            self._mark_batch_submitted(step_index, indices, tx_hash, chain_id)
            await self._emit()
        except (ExecutionAbortedError, asyncio.CancelledError):
            raise
        except Exception as exc:
            self._fail(step_index, indices, exc)
            raise

        await self._fast_fill(step, items)
        await self._finish_items(step_index, step, indices, tx_hash, chain_id)

    async def _run_gasless_batch(self, step_index: int, step: Step, indices: List[int], chain_id: int) -> None:
        items = [step.items[i] for i in indices]
        request_id = step.request_id or next((i.request_id for i in items if i.request_id), None)
        try:
            await self._set_progress(items, ProgressState.SIGNING)
            submission = await self.options.batch_executor.submit(
                self.wallet, self.capabilities, chain_id, step, items, request_id=request_id
            )
            self.batch_submissions.append(submission)
            if submission.request_id:
                for item in items:
                    item.request_id = item.request_id or submission.request_id
            if submission.tx_hash:
                self._mark_batch_submitted(step_index, indices, submission.tx_hash, chain_id)
            else:
                for index in indices:
                    # Accepted by the relayer; only the solver can report on it now
                    self.state.item(step_index, index).origin_confirmed = True
                    self.state.transition(step_index, index, ItemStatus.SUBMITTED)
            await self._emit()
        except (ExecutionAbortedError, asyncio.CancelledError):
            raise
        except Exception as exc:
            self._fail(step_index, indices, exc)
            raise

        await self._fast_fill(step, items)
        # A relayed batch without a hash is only observable through the solver
        await self._finish_items(
            step_index,
            step,
            indices,
            submission.tx_hash,
            chain_id,
            solver_only=submission.tx_hash is None,
        )

    def _mark_batch_submitted(self, step_index: int, indices: List[int], tx_hash: str, chain_id: int) -> None:
        for index in indices:
            item = self.state.item(step_index, index)
            item.tx_hashes = [TxHash(tx_hash=tx_hash, chain_id=chain_id, is_batch_tx=True)]
            self.state.transition(step_index, index, ItemStatus.SUBMITTED)

    async def _finish_items(
        self,
        step_index: int,
        step: Step,
        indices: List[int],
        tx_hash: Optional[str],
        chain_id: int,
        solver_only: bool = False,
        origin_confirmed: bool = False,
    ) -> None:
        """Confirm one hash shared by ``indices``, then settle each item."""
        items = [step.items[i] for i in indices]
        try:
            if tx_hash and not solver_only and not origin_confirmed:
                await self._set_progress(items, ProgressState.CONFIRMING)

                def on_replaced(old_hash: str, new_hash: str) -> None:
                    for item in items:
                        for entry in item.tx_hashes:
                            if entry.tx_hash == old_hash:
                                entry.tx_hash = new_hash

                result = await self.confirmations.confirm(self.wallet, tx_hash, chain_id, on_replaced)
                for item in items:
                    item.receipt = result.receipt
                    item.origin_confirmed = True

            for index, item in zip(indices, items):
                if item.request_id and (step.is_deposit or solver_only):
                    await self._set_progress([item], ProgressState.VALIDATING)
                    origin_hash = item.tx_hashes[0].tx_hash if item.tx_hashes else None
                    await self.solver.poll(
                        item,
                        request_id=item.request_id,
                        tx_hash=origin_hash,
                        chain_id=chain_id,
                        on_update=lambda _: self._emit(),
                    )
                elif solver_only:
                    raise ExecutionError("Submitted item has neither a hash nor a request id to track")

                item.progress_state = ProgressState.COMPLETE
                self.state.transition(step_index, index, ItemStatus.CONFIRMED)
                await self._emit()
        except (ExecutionAbortedError, asyncio.CancelledError):
            raise
        except Exception as exc:
            self._fail(step_index, indices, exc)
            raise

    def _fail(self, step_index: int, indices: List[int], exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        for index in indices:
            if self.state.status(step_index, index) in (ItemStatus.PENDING, ItemStatus.SUBMITTED):
                self.state.transition(step_index, index, ItemStatus.FAILED, error=message)

    # =========================================================================
    # Best-effort side calls
    # =========================================================================

    async def _fast_fill(self, step: Step, items: List[StepItem]) -> None:
        if not (step.accelerate and self.options.fast_fill):
            return
        request_ids = list(OrderedDict.fromkeys(i.request_id for i in items if i.request_id))
        for request_id in request_ids:
            try:
                await self.relay.fast_fill(request_id, self.options.solver_input_currency_amount)
                logger.info(f"Fast-fill requested for {request_id}")
            except Exception as exc:
                logger.warning(f"Fast-fill failed for {request_id}: {exc}")

    async def _enrich_request_metadata(self) -> None:
        request_id = self._request_id()
        if not request_id:
            return
        try:
            for attempt in range(1, settings.request_metadata_max_attempts + 1):
                try:
                    requests = await self.relay.get_requests(request_id)
                except ExecutionAbortedError:
                    raise
                except Exception as exc:
                    logger.warning(f"Request metadata lookup failed for {request_id}: {exc}")
                    requests = []

                request = requests[0] if requests else None
                metadata = ((request or {}).get("data") or {}).get("metadata") or {}
                if metadata.get("currencyOut"):
                    details = dict(self.quote.details or {})
                    details["currencyOut"] = metadata["currencyOut"]
                    self.quote.details = details
                    if self.options.on_transaction_received is not None:
                        await _maybe_await(self.options.on_transaction_received(request))
                    await self._emit()
                    return

                if attempt < settings.request_metadata_max_attempts:
                    await self.signal.sleep(settings.request_metadata_polling_interval_seconds)
            logger.info(f"No request metadata for {request_id} after polling")
        except ExecutionAbortedError:
            logger.info("Request metadata polling aborted")


async def execute(
    quote: Union[Execute, Dict[str, Any]],
    wallet: AdaptedWallet,
    *,
    on_progress: Optional[ProgressCallback] = None,
    options: Optional[ExecutionOptions] = None,
    relay: Optional["RelayProvider"] = None,
    tenderly: Optional["TenderlyProvider"] = None,
    signal: Optional[AbortSignal] = None,
) -> Execute:
    """
    Execute a quote to completion.

    Args:
        quote: Parsed ``Execute`` or the raw quote JSON. Raw JSON is updated
            in place with the recorded statuses, even when the call raises.
            Pass the same object again after a failure to resume.
        wallet: Wallet adapter for the origin chain's VM.
        on_progress: Shortcut for ``options.on_progress``.
        options: Batching, fast-fill and polling choices.
        signal: Abort signal; ``signal.abort()`` stops in-flight polls.

    Returns:
        The quote with every item confirmed.
    """
    raw: Optional[Dict[str, Any]] = None
    if isinstance(quote, dict):
        raw = quote
        quote = Execute.from_api(raw)
    options = options or ExecutionOptions()
    if on_progress is not None:
        options = replace(options, on_progress=on_progress)

    executor = StepExecutor(quote, wallet, options, relay=relay, tenderly=tenderly, signal=signal)
    try:
        return await executor.run()
    finally:
        if raw is not None:
            # Recorded statuses go back into the caller's JSON so it can resume
            raw.update(quote.to_dict())
