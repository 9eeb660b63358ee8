"""
Tenderly public call-trace lookup, used only to enrich confirmation errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .base import Provider
from ..config import settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenderlyErrorInfo:
    error_message: Optional[str] = None
    error: Optional[str] = None


def _error_from_call_trace(call_trace: Dict[str, Any]) -> Optional[TenderlyErrorInfo]:
    """Depth-first search for the first call carrying an error message."""
    if call_trace.get("error_message"):
        return TenderlyErrorInfo(error_message=call_trace["error_message"], error=call_trace.get("error"))

    for nested in call_trace.get("calls") or []:
        if isinstance(nested, dict):
            found = _error_from_call_trace(nested)
            if found:
                return found
    return None


def extract_error_info(payload: Dict[str, Any]) -> Optional[TenderlyErrorInfo]:
    for trace in payload.get("stack_trace") or []:
        if isinstance(trace, dict) and trace.get("error_message"):
            return TenderlyErrorInfo(error_message=trace["error_message"], error=trace.get("error"))

    call_trace = payload.get("call_trace")
    if isinstance(call_trace, dict):
        found = _error_from_call_trace(call_trace)
        if found:
            return found
        if call_trace.get("error"):
            return TenderlyErrorInfo(error=call_trace["error"])
    return None


class TenderlyProvider(Provider):
    name = "tenderly"

    def __init__(self, *, base_url: Optional[str] = None, timeout_s: Optional[float] = None) -> None:
        self.base_url = (base_url or settings.tenderly_base_url).rstrip("/")
        self.timeout_s = timeout_s or settings.tenderly_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def ready(self) -> bool:
        return settings.enable_trace_lookup

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy" if await self.ready() else "disabled"}

    async def get_error_details(self, chain_id: int, tx_hash: str) -> Optional[TenderlyErrorInfo]:
        """
        Look up the revert reason for a failed transaction.

        Never raises: trace lookup is diagnostic only and must not block
        error reporting.
        """
        url = f"{self.base_url}/api/v1/public-contract/{chain_id}/trace/{tx_hash}"
        try:
            response = await self._get_client().get(url)
            response.raise_for_status()
            payload = response.json()
        except Exception as exc:
            logger.warning(f"Tenderly api failed for {tx_hash}: {exc}")
            return None

        if not isinstance(payload, dict):
            return None
        return extract_error_info(payload)


_tenderly_provider: Optional[TenderlyProvider] = None


def get_tenderly_provider() -> TenderlyProvider:
    global _tenderly_provider
    if _tenderly_provider is None:
        _tenderly_provider = TenderlyProvider()
    return _tenderly_provider
