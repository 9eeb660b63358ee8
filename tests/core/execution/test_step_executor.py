"""
Tests for the step executor.

Covers ordering, resumption, replacement/cancellation handling, the deposit
solver wait, fast-fill, batching selection, signature steps and abort.
"""

from unittest.mock import AsyncMock

import pytest

from relaykit.core.execution import (
    APIError,
    ExecutionAbortedError,
    ExecutionError,
    ExecutionOptions,
    ExecutionState,
    Execute,
    EvmReceipt,
    InvalidTransitionError,
    ItemStatus,
    ProgressState,
    StepExecutor,
    SolverStatusTimeoutError,
    TransactionConfirmationError,
    execute,
)


USER = "0x1111111111111111111111111111111111111111"
SIGNATURE = "0x" + "ab" * 65


def _hash(n: int) -> str:
    return "0x" + format(n, "064x")


def _progress_recorder():
    events = []

    def on_progress(progress):
        events.append(progress)

    return events, on_progress


def _deposit_step(make_tx_item, **extra):
    return {
        "id": "deposit",
        "kind": "transaction",
        "requestId": "0xreq",
        "items": [make_tx_item(value="1000")],
        **extra,
    }


# =============================================================================
# Ordering and resumption
# =============================================================================

class TestOrdering:

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        quote = make_quote(
            [
                {"id": "approve", "kind": "transaction", "items": [make_tx_item(data="0x095ea7b3")]},
                {"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0x12345678")]},
            ]
        )

        result = await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert wallet.events == [
            "send:approve",
            f"confirm:{_hash(1)}",
            "send:swap",
            f"confirm:{_hash(2)}",
        ]
        assert all(item.status == ItemStatus.CONFIRMED for step in result.steps for item in step.items)
        relay.get_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_items_within_step_run_in_order(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        quote = make_quote(
            [{"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0x01"), make_tx_item(data="0x02")]}]
        )

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert [item.data.data for item in wallet.sent] == ["0x01", "0x02"]
        assert wallet.confirmed == [_hash(1), _hash(2)]

    @pytest.mark.asyncio
    async def test_resume_skips_confirmed_items(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        quote = make_quote(
            [
                {"id": "approve", "kind": "transaction", "items": [make_tx_item(status="complete")]},
                {"id": "swap", "kind": "transaction", "items": [make_tx_item()]},
            ]
        )

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert wallet.events == ["send:swap", f"confirm:{_hash(1)}"]

    @pytest.mark.asyncio
    async def test_resume_submitted_item_at_confirmation(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        submitted = make_tx_item(status="submitted", txHashes=[{"txHash": _hash(77), "chainId": 1}])
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [submitted]}])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert wallet.sent == []
        assert wallet.confirmed == [_hash(77)]
        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_accepts_raw_quote_json(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        raw = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}]).to_dict()

        result = await execute(raw, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert isinstance(result, Execute)
        assert result.steps[0].items[0].status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_failed_items_are_retried_on_next_call(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}])
        wallet.send_errors[0] = RuntimeError("User rejected the request")

        with pytest.raises(RuntimeError):
            await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)
        assert quote.steps[0].items[0].status == ItemStatus.FAILED

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED
        assert quote.steps[0].items[0].error is None
        assert len(wallet.sent) == 2

    @pytest.mark.asyncio
    async def test_solver_timeout_resume_does_not_resend_deposit(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        relay.get_status = AsyncMock(return_value={"status": "pending"})
        quote = make_quote([_deposit_step(make_tx_item)])
        options = ExecutionOptions(max_polling_attempts=2)

        with pytest.raises(SolverStatusTimeoutError):
            await execute(quote, wallet, options=options, relay=relay, tenderly=tenderly, signal=signal)
        item = quote.steps[0].items[0]
        assert item.status == ItemStatus.FAILED
        assert item.origin_confirmed is True

        relay.get_status = AsyncMock(return_value={"status": "success"})
        await execute(quote, wallet, options=options, relay=relay, tenderly=tenderly, signal=signal)

        assert len(wallet.sent) == 1
        assert wallet.confirmed == [_hash(1)]
        assert item.status == ItemStatus.CONFIRMED
        relay.get_status.assert_awaited_once_with("0xreq")

    @pytest.mark.asyncio
    async def test_cancelled_deposit_is_sent_again(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        async def cancelled(tx_hash, on_replaced, on_cancelled):
            on_cancelled()
            raise RuntimeError("Transaction cancelled")

        wallet.confirm_hooks[_hash(1)] = cancelled
        quote = make_quote([_deposit_step(make_tx_item)])

        with pytest.raises(TransactionConfirmationError):
            await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)
        assert quote.steps[0].items[0].origin_confirmed is False

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert len(wallet.sent) == 2
        assert wallet.confirmed == [_hash(1), _hash(2)]
        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_raw_quote_json_records_progress(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        raw = make_quote(
            [
                {"id": "approve", "kind": "transaction", "items": [make_tx_item(data="0x01")]},
                {"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0x02")]},
            ]
        ).to_dict()
        wallet.send_errors[1] = RuntimeError("User rejected the request")

        with pytest.raises(RuntimeError):
            await execute(raw, wallet, relay=relay, tenderly=tenderly, signal=signal)
        assert raw["steps"][0]["items"][0]["status"] == "complete"
        assert raw["steps"][1]["items"][0]["status"] == "failed"

        await execute(raw, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert [item.data.data for item in wallet.sent] == ["0x01", "0x02", "0x02"]
        assert raw["steps"][1]["items"][0]["status"] == "complete"

    @pytest.mark.asyncio
    async def test_raw_quote_json_keeps_confirmed_deposit(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        relay.get_status = AsyncMock(return_value={"status": "pending"})
        raw = make_quote([_deposit_step(make_tx_item)]).to_dict()
        options = ExecutionOptions(max_polling_attempts=1)

        with pytest.raises(SolverStatusTimeoutError):
            await execute(raw, wallet, options=options, relay=relay, tenderly=tenderly, signal=signal)
        assert raw["steps"][0]["items"][0]["originConfirmed"] is True

        relay.get_status = AsyncMock(return_value={"status": "success"})
        result = await execute(raw, wallet, options=options, relay=relay, tenderly=tenderly, signal=signal)

        assert len(wallet.sent) == 1
        assert result.steps[0].items[0].status == ItemStatus.CONFIRMED


# =============================================================================
# Confirmation outcomes
# =============================================================================

class TestConfirmationOutcomes:

    @pytest.mark.asyncio
    async def test_replacement_updates_recorded_hash(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        replacement = _hash(500)

        async def replaced(tx_hash, on_replaced, on_cancelled):
            on_replaced(replacement)
            return EvmReceipt(tx_hash=replacement, status="success")

        wallet.confirm_hooks[_hash(1)] = replaced
        quote = make_quote([_deposit_step(make_tx_item)])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        item = quote.steps[0].items[0]
        assert [h.tx_hash for h in item.tx_hashes] == [replacement]
        assert item.status == ItemStatus.CONFIRMED
        relay.get_status.assert_awaited_once_with("0xreq")

    @pytest.mark.asyncio
    async def test_cancellation_fails_item_without_solver_poll(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        async def cancelled(tx_hash, on_replaced, on_cancelled):
            on_cancelled()
            raise RuntimeError("Transaction cancelled")

        wallet.confirm_hooks[_hash(1)] = cancelled
        events, on_progress = _progress_recorder()
        quote = make_quote([_deposit_step(make_tx_item)])

        with pytest.raises(TransactionConfirmationError):
            await execute(quote, wallet, on_progress=on_progress, relay=relay, tenderly=tenderly, signal=signal)

        item = quote.steps[0].items[0]
        assert item.status == ItemStatus.FAILED
        assert "cancelled" in item.error
        relay.get_status.assert_not_awaited()
        assert isinstance(events[-1].error, TransactionConfirmationError)

    @pytest.mark.asyncio
    async def test_send_failure_is_reported_in_snapshot(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        wallet.send_errors[0] = RuntimeError("User rejected the request")
        events, on_progress = _progress_recorder()
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}])

        with pytest.raises(RuntimeError, match="User rejected"):
            await execute(quote, wallet, on_progress=on_progress, relay=relay, tenderly=tenderly, signal=signal)

        final = events[-1]
        assert str(final.error) == "User rejected the request"
        assert final.steps[0].items[0].status == ItemStatus.FAILED
        assert wallet.confirmed == []


# =============================================================================
# Deposit steps
# =============================================================================

class TestDepositSteps:

    @pytest.mark.asyncio
    async def test_deposit_waits_for_solver(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        relay.get_status = AsyncMock(side_effect=[{"status": "pending"}, {"status": "success"}])
        quote = make_quote([_deposit_step(make_tx_item)])
        options = ExecutionOptions(polling_interval_seconds=0.5, max_polling_attempts=10)

        await execute(quote, wallet, options=options, relay=relay, tenderly=tenderly, signal=signal)

        assert relay.get_status.await_count == 2
        assert signal.sleeps == [0.5]
        item = quote.steps[0].items[0]
        assert item.status == ItemStatus.CONFIRMED
        assert item.progress_state == ProgressState.COMPLETE

    @pytest.mark.asyncio
    async def test_non_deposit_step_skips_solver(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        step = {"id": "approve", "kind": "transaction", "requestId": "0xreq", "items": [make_tx_item()]}
        quote = make_quote([step])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        relay.get_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fast_fill_failure_does_not_fail_execution(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        relay.fast_fill = AsyncMock(side_effect=APIError("Internal error", 500))
        quote = make_quote([_deposit_step(make_tx_item)])
        options = ExecutionOptions(fast_fill=True, solver_input_currency_amount="990")

        await execute(quote, wallet, options=options, relay=relay, tenderly=tenderly, signal=signal)

        relay.fast_fill.assert_awaited_once_with("0xreq", "990")
        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_fast_fill_only_for_accelerated_steps(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        quote = make_quote([_deposit_step(make_tx_item, accelerate=False)])

        await execute(
            quote, wallet, options=ExecutionOptions(fast_fill=True), relay=relay, tenderly=tenderly, signal=signal
        )

        relay.fast_fill.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_abort_during_solver_wait(self, wallet, relay, tenderly, aborting_signal, make_quote, make_tx_item):
        relay.get_status = AsyncMock(return_value={"status": "pending"})
        signal = aborting_signal(1)
        seen_after_abort = []

        def on_progress(progress):
            seen_after_abort.append(signal.aborted)

        quote = make_quote([_deposit_step(make_tx_item)])

        with pytest.raises(ExecutionAbortedError):
            await execute(quote, wallet, on_progress=on_progress, relay=relay, tenderly=tenderly, signal=signal)

        assert quote.steps[0].items[0].status == ItemStatus.SUBMITTED
        assert seen_after_abort and not any(seen_after_abort)
        assert relay.get_status.await_count == 1

    @pytest.mark.asyncio
    async def test_status_socket_reports_fill(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item, make_socket
    ):
        socket = make_socket([{"status": "pending"}, {"status": "success"}])
        quote = make_quote([_deposit_step(make_tx_item)])

        await execute(
            quote,
            wallet,
            options=ExecutionOptions(status_socket=socket),
            relay=relay,
            tenderly=tenderly,
            signal=signal,
        )

        assert socket.requests == ["0xreq"]
        relay.get_status.assert_not_awaited()
        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED


# =============================================================================
# Progress
# =============================================================================

class TestProgress:

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        events = []

        async def on_progress(progress):
            events.append(progress)

        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}])

        await execute(quote, wallet, on_progress=on_progress, relay=relay, tenderly=tenderly, signal=signal)

        assert len(events) >= 3
        assert events[-1].current_step is None
        assert events[-1].error is None
        assert [h.tx_hash for h in events[-1].tx_hashes] == [_hash(1)]

    @pytest.mark.asyncio
    async def test_snapshots_are_detached(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        events, on_progress = _progress_recorder()
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}])

        await execute(quote, wallet, on_progress=on_progress, relay=relay, tenderly=tenderly, signal=signal)

        statuses = [event.steps[0].items[0].status for event in events]
        assert statuses[0] == ItemStatus.PENDING
        assert statuses[-1] == ItemStatus.CONFIRMED


# =============================================================================
# Batching
# =============================================================================

class TestAtomicBatching:

    @pytest.mark.asyncio
    async def test_atomic_batch_used_when_supported(
        self, batching_wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        quote = make_quote(
            [{"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0x01"), make_tx_item(data="0x02")]}]
        )

        await execute(
            quote,
            batching_wallet,
            options=ExecutionOptions(atomic_batch=True),
            relay=relay,
            tenderly=tenderly,
            signal=signal,
        )

        assert len(batching_wallet.batches) == 1
        assert len(batching_wallet.batches[0]) == 2
        assert batching_wallet.sent == []
        assert batching_wallet.confirmed == [_hash(1001)]
        for item in quote.steps[0].items:
            assert item.status == ItemStatus.CONFIRMED
            assert item.tx_hashes[0].is_batch_tx is True

    @pytest.mark.asyncio
    async def test_falls_back_to_sequential_when_unsupported(
        self, batching_wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        wallet = batching_wallet
        wallet.batch_supported = False
        quote = make_quote(
            [{"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0x01"), make_tx_item(data="0x02")]}]
        )

        await execute(
            quote, wallet, options=ExecutionOptions(atomic_batch=True), relay=relay, tenderly=tenderly, signal=signal
        )

        assert wallet.batches == []
        assert len(wallet.sent) == 2

    @pytest.mark.asyncio
    async def test_plain_wallet_never_batches(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        quote = make_quote(
            [{"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0x01"), make_tx_item(data="0x02")]}]
        )

        await execute(
            quote, wallet, options=ExecutionOptions(atomic_batch=True), relay=relay, tenderly=tenderly, signal=signal
        )

        assert len(wallet.sent) == 2


# =============================================================================
# Signature steps
# =============================================================================

class TestSignatureSteps:

    @pytest.mark.asyncio
    async def test_sign_post_and_append_steps(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        relay.post_step_data = AsyncMock(
            return_value={
                "steps": [{"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0xfeed")]}],
                "results": [{"orderId": "order-1"}],
            }
        )
        signature_step = {
            "id": "authorize",
            "kind": "signature",
            "items": [
                {
                    "status": "incomplete",
                    "data": {
                        "sign": {"signatureKind": "eip191", "message": "0x" + "cd" * 32},
                        "post": {"endpoint": "/execute/permits", "method": "POST", "body": {"kind": "permit"}},
                    },
                }
            ],
        }
        quote = make_quote([signature_step])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        signed_item = quote.steps[0].items[0]
        relay.post_step_data.assert_awaited_once_with(signed_item.post, {"signature": SIGNATURE})
        assert signed_item.signature == SIGNATURE
        assert signed_item.order_data is None
        assert [step.id for step in quote.steps] == ["authorize", "swap"]
        assert wallet.events[:2] == ["sign:authorize", "send:swap"]
        assert quote.steps[1].items[0].status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_signature_with_check_polls_solver(self, wallet, relay, tenderly, signal, make_quote):
        step = {
            "id": "authorize",
            "kind": "signature",
            "items": [
                {
                    "status": "incomplete",
                    "data": {"sign": {"signatureKind": "eip191", "message": "hello"}},
                    "check": {"endpoint": "/intents/status?requestId=0xsig", "method": "GET"},
                }
            ],
        }
        quote = make_quote([step])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        relay.check.assert_awaited_once()
        relay.post_step_data.assert_not_awaited()
        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_appended_steps_skip_signature_check(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        relay.post_step_data = AsyncMock(
            return_value={"steps": [{"id": "swap", "kind": "transaction", "items": [make_tx_item(data="0xfeed")]}]}
        )
        step = {
            "id": "authorize",
            "kind": "signature",
            "items": [
                {
                    "status": "incomplete",
                    "data": {
                        "sign": {"signatureKind": "eip191", "message": "hello"},
                        "post": {"endpoint": "/execute/permits", "method": "POST", "body": {}},
                    },
                    "check": {"endpoint": "/intents/status?requestId=0xsig", "method": "GET"},
                }
            ],
        }
        quote = make_quote([step])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        relay.check.assert_not_awaited()
        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED
        assert quote.steps[1].items[0].status == ItemStatus.CONFIRMED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response, order_data",
        [
            ({"results": [{"orderId": "order-1"}]}, [{"orderId": "order-1"}]),
            (
                {"orderId": "order-2", "crossPostingOrderId": "x-2"},
                [{"orderId": "order-2", "crossPostingOrderId": "x-2", "orderIndex": 0}],
            ),
        ],
    )
    async def test_post_records_order_data(
        self, wallet, relay, tenderly, signal, make_quote, response, order_data
    ):
        relay.post_step_data = AsyncMock(return_value={**response, "requestId": "0xposted"})
        step = {
            "id": "order",
            "kind": "signature",
            "items": [
                {
                    "status": "incomplete",
                    "data": {
                        "sign": {"signatureKind": "eip191", "message": "hello"},
                        "post": {"endpoint": "/execute/permits", "method": "POST", "body": {}},
                    },
                }
            ],
        }
        quote = make_quote([step])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        item = quote.steps[0].items[0]
        assert item.order_data == order_data
        assert item.request_id == "0xposted"
        assert item.status == ItemStatus.CONFIRMED


# =============================================================================
# Preflight and chain selection
# =============================================================================

class TestPreflight:

    @pytest.mark.asyncio
    async def test_missing_origin_chain(self, wallet, relay, tenderly, signal, make_tx_item):
        quote = Execute.from_api(
            {"steps": [{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}], "details": {}}
        )

        with pytest.raises(ExecutionError, match="origin chain"):
            await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)
        assert wallet.sent == []

    @pytest.mark.asyncio
    async def test_burn_recipient_rejected(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        quote = make_quote(
            [{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}],
            recipient="0x000000000000000000000000000000000000dEaD",
        )

        with pytest.raises(ExecutionError, match="burn address"):
            await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)
        assert wallet.sent == []

    def test_wallet_required(self, make_quote):
        with pytest.raises(ValueError):
            StepExecutor(make_quote([]), None)

    @pytest.mark.asyncio
    async def test_switches_to_item_chain(self, wallet, relay, tenderly, signal, make_quote, make_tx_item):
        wallet.chain_id = 10
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item(chain_id=8453)]}])

        await execute(quote, wallet, relay=relay, tenderly=tenderly, signal=signal)

        assert wallet.switched == [8453]


# =============================================================================
# State table
# =============================================================================

class TestExecutionState:

    def test_transitions_are_monotonic(self, make_quote, make_tx_item):
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}])
        state = ExecutionState(quote)

        with pytest.raises(InvalidTransitionError):
            state.transition(0, 0, ItemStatus.CONFIRMED)

        state.transition(0, 0, ItemStatus.SUBMITTED)
        state.transition(0, 0, ItemStatus.CONFIRMED)
        assert quote.steps[0].items[0].status == ItemStatus.CONFIRMED

        with pytest.raises(InvalidTransitionError):
            state.transition(0, 0, ItemStatus.PENDING)

    def test_failed_items_reseeded_as_pending(self, make_quote, make_tx_item):
        failed = make_tx_item(status="failed", error="boom")
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [failed]}])

        state = ExecutionState(quote)

        assert state.status(0, 0) == ItemStatus.PENDING
        assert quote.steps[0].items[0].error is None

    def test_failed_items_with_confirmed_origin_reseeded_as_submitted(self, make_quote, make_tx_item):
        failed = make_tx_item(
            status="failed",
            error="timeout",
            originConfirmed=True,
            txHashes=[{"txHash": _hash(9), "chainId": 1}],
        )
        quote = make_quote([{"id": "deposit", "kind": "transaction", "items": [failed]}])

        state = ExecutionState(quote)

        assert state.status(0, 0) == ItemStatus.SUBMITTED
        assert quote.steps[0].items[0].error is None

    def test_error_recorded_on_failure(self, make_quote, make_tx_item):
        quote = make_quote([{"id": "swap", "kind": "transaction", "items": [make_tx_item()]}])
        state = ExecutionState(quote)

        state.transition(0, 0, ItemStatus.FAILED, error="rejected")

        assert quote.steps[0].items[0].error == "rejected"
        assert state.pending_indices(0) == [0]


# =============================================================================
# Request metadata
# =============================================================================

class TestRequestMetadata:

    @pytest.mark.asyncio
    async def test_currency_out_merged_into_details(
        self, wallet, relay, tenderly, signal, make_quote, make_tx_item
    ):
        request = {"id": "0xreq", "data": {"metadata": {"currencyOut": {"amount": "995"}}}}
        relay.get_requests = AsyncMock(return_value=[request])
        received = []
        options = ExecutionOptions(enrich_request_metadata=True, on_transaction_received=received.append)
        quote = make_quote([_deposit_step(make_tx_item)])

        result = await execute(quote, wallet, options=options, relay=relay, tenderly=tenderly, signal=signal)

        assert result.details["currencyOut"] == {"amount": "995"}
        assert received == [request]
        relay.get_requests.assert_awaited_once_with("0xreq")
