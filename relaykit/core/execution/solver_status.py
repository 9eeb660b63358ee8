"""
Solver status poller.

Polls the intents status endpoint at a fixed interval until the solver
reports a terminal state or the attempt budget runs out. There is no backoff.

When a status socket is configured the request is followed over WebSocket
first. A ``failure`` seen there is held for a short grace period because the
solver may still move on to a refund. If the socket cannot connect, errors or
closes before a terminal status, polling takes over.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
from websockets.exceptions import WebSocketException

from ...config import settings
from .abort import AbortSignal
from .errors import (
    APIError,
    DepositTransactionTimeoutError,
    SolverExecutionError,
    SolverStatusTimeoutError,
)
from .models import CheckStatus, StepItem, TxHash

if TYPE_CHECKING:
    from ...providers.relay import RelayProvider
    from ...providers.relay_websocket import RelayStatusSocket


logger = logging.getLogger(__name__)

# Statuses that mean the solver has seen the deposit
_DEPOSIT_OBSERVED = {CheckStatus.PENDING, CheckStatus.SUBMITTED, CheckStatus.SUCCESS}


@dataclass
class SolverStatusResult:
    status: CheckStatus
    attempts: int
    response: Dict[str, Any] = field(default_factory=dict)


def _merge_hashes(existing: List[TxHash], hashes: List[Any], chain_id: Optional[int]) -> List[TxHash]:
    merged = list(existing)
    seen = {h.tx_hash.lower() for h in merged}
    for raw in hashes:
        if isinstance(raw, dict):
            entry = TxHash.from_api(raw)
        else:
            entry = TxHash(tx_hash=str(raw), chain_id=int(chain_id or 0))
        if entry.tx_hash.lower() not in seen:
            seen.add(entry.tx_hash.lower())
            merged.append(entry)
    return merged


async def _next_update(updates: AsyncIterator[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    try:
        return await updates.__anext__()
    except StopAsyncIteration:
        return None


class SolverStatusPoller:
    """
    Repeatedly queries the status endpoint for one request.

    ``success`` returns, ``failure``/``refund`` raise ``SolverExecutionError``
    at once, a 4xx raises ``APIError`` at once. 5xx responses and transport
    errors are transient and use up one attempt each.
    """

    def __init__(
        self,
        relay: Optional["RelayProvider"] = None,
        *,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        signal: Optional[AbortSignal] = None,
        socket: Optional["RelayStatusSocket"] = None,
        failure_grace_seconds: Optional[float] = None,
    ) -> None:
        self._relay = relay
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.polling_interval_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_polling_attempts
        self.signal = signal or AbortSignal()
        self.socket = socket
        self.failure_grace_seconds = (
            failure_grace_seconds if failure_grace_seconds is not None else settings.websocket_failure_grace_seconds
        )

    @property
    def relay(self) -> "RelayProvider":
        if self._relay is None:
            from ...providers.relay import get_relay_provider

            self._relay = get_relay_provider()
        return self._relay

    async def _query(self, item: StepItem, request_id: Optional[str]) -> Dict[str, Any]:
        if item.check is not None:
            return await self.relay.check(item.check)
        return await self.relay.get_status(request_id)

    def _apply(self, item: StepItem, status: CheckStatus, response: Dict[str, Any], chain_id: Optional[int]) -> None:
        item.check_status = status
        if response.get("inTxHashes"):
            item.internal_tx_hashes = _merge_hashes(
                item.internal_tx_hashes,
                response["inTxHashes"],
                response.get("originChainId") or chain_id,
            )
        if response.get("txHashes"):
            item.tx_hashes = _merge_hashes(
                item.tx_hashes,
                response["txHashes"],
                response.get("destinationChainId"),
            )

    async def _notify(self, item: StepItem, on_update: Optional[Callable[[StepItem], Any]]) -> None:
        if on_update is not None:
            result = on_update(item)
            if inspect.isawaitable(result):
                await result

    async def _watch(
        self,
        item: StepItem,
        request_id: str,
        chain_id: Optional[int],
        on_update: Optional[Callable[[StepItem], Any]],
    ) -> Optional[SolverStatusResult]:
        """Follow ``request_id`` over the status socket; ``None`` means fall back to polling."""
        updates = self.socket.updates(request_id)
        failed_response: Optional[Dict[str, Any]] = None
        received = 0
        # A silent socket gets no longer than the polling budget would
        idle_timeout = self.interval_seconds * self.max_attempts
        try:
            while True:
                timeout = self.failure_grace_seconds if failed_response is not None else idle_timeout
                self.signal.raise_if_aborted()
                try:
                    response = await self.signal.run(asyncio.wait_for(_next_update(updates), timeout))
                except asyncio.TimeoutError:
                    if failed_response is None:
                        raise
                    logger.error(f"Status socket for {request_id}: failure stood for {timeout}s")
                    raise SolverExecutionError(CheckStatus.FAILURE.value, request_id, failed_response.get("details"))

                if response is None:
                    logger.info(f"Status socket for {request_id} closed before a final status, polling instead")
                    return None

                received += 1
                status = CheckStatus.parse(response.get("status"))
                logger.debug(f"Status socket for {request_id} status={status.value}")
                self._apply(item, status, response, chain_id)
                await self._notify(item, on_update)

                if status == CheckStatus.SUCCESS:
                    return SolverStatusResult(status=status, attempts=received, response=response)
                if status == CheckStatus.REFUND:
                    raise SolverExecutionError(status.value, request_id, response.get("details"))
                if status == CheckStatus.FAILURE:
                    logger.info(f"Status socket for {request_id} reported failure, waiting {self.failure_grace_seconds}s")
                    failed_response = response
                else:
                    failed_response = None
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            logger.warning(f"Status socket for {request_id} unavailable, polling instead: {exc!r}")
            return None
        finally:
            await updates.aclose()

    async def poll(
        self,
        item: StepItem,
        *,
        request_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
        chain_id: Optional[int] = None,
        on_update: Optional[Callable[[StepItem], Any]] = None,
    ) -> SolverStatusResult:
        request_id = request_id or item.request_id or (item.check.request_id if item.check else None)
        if item.check is None and not request_id:
            raise ValueError("Solver status polling needs a request id or a check endpoint")
        if tx_hash is None and item.tx_hashes:
            tx_hash = item.tx_hashes[0].tx_hash

        if self.socket is not None and request_id:
            watched = await self._watch(item, request_id, chain_id, on_update)
            if watched is not None:
                return watched

        last_status: Optional[CheckStatus] = None
        last_response: Dict[str, Any] = {}

        for attempt in range(1, self.max_attempts + 1):
            self.signal.raise_if_aborted()
            try:
                response = await self._query(item, request_id)
            except APIError as exc:
                if not exc.is_server_error:
                    raise
                logger.warning(f"Status check for {request_id} failed [{attempt}/{self.max_attempts}]: {exc}")
            except httpx.RequestError as exc:
                logger.warning(f"Status check for {request_id} failed [{attempt}/{self.max_attempts}]: {exc!r}")
            else:
                last_response = response or {}
                status = CheckStatus.parse(last_response.get("status"))
                last_status = status
                logger.debug(f"Status check for {request_id} [{attempt}/{self.max_attempts}] status={status.value}")

                self._apply(item, status, last_response, chain_id)
                await self._notify(item, on_update)

                if status == CheckStatus.SUCCESS:
                    return SolverStatusResult(status=status, attempts=attempt, response=last_response)
                if status in (CheckStatus.FAILURE, CheckStatus.REFUND):
                    raise SolverExecutionError(status.value, request_id, last_response.get("details"))

            if attempt < self.max_attempts:
                await self.signal.sleep(self.interval_seconds)

        tx_hash = tx_hash or ""
        request_id = request_id or ""
        if last_status is None or last_status not in _DEPOSIT_OBSERVED:
            raise DepositTransactionTimeoutError(tx_hash, request_id, self.max_attempts)
        raise SolverStatusTimeoutError(tx_hash, request_id, self.max_attempts)
