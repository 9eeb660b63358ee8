"""Async client for the Relay API endpoints the execution engine talks to."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import Provider
from ..config import settings
from ..core.execution.errors import APIError, ExecutionError
from ..core.execution.models import CheckRequest, Execute, PostData


logger = logging.getLogger(__name__)

STATUS_PATH = "/intents/status"
STATUS_V3_PATH = "/intents/status/v3"


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body.get("details") or default)
    return default


class RelayProvider(Provider):
    """Thin wrapper around the Relay API (quote, status, fast-fill, batch relay)."""

    name = "relay"

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        fallback_base_urls: Optional[List[str]] = None,
        api_key: Optional[str] = None,
        source: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        configured = (base_url or settings.relay_base_url).rstrip("/")
        self.base_urls: List[str] = [configured] + [u.rstrip("/") for u in fallback_base_urls or []]
        self.api_key = settings.relay_api_key if api_key is None else api_key
        self.source = settings.relay_source if source is None else source
        self.timeout_s = timeout_s or settings.request_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return self.base_urls[0]

    async def ready(self) -> bool:
        return bool(self.base_url)

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self._request("GET", "/chains")
            return {"status": "healthy", "base_url": self.base_url}
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}

    def _headers(self, base_url: str) -> Dict[str, str]:
        headers = {
            "accept": "application/json, text/plain, */*",
            "content-type": "application/json",
            "relay-sdk-version": settings.sdk_version,
        }
        if self.api_key and settings.is_relay_api_url(base_url):
            headers["x-api-key"] = self.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        last_error: Optional[Exception] = None

        for index, base_url in enumerate(self.base_urls):
            url = path if path.startswith("http") else f"{base_url}{path}"
            merged_headers = {**self._headers(base_url), **(headers or {})}
            try:
                response = await self._get_client().request(
                    method.upper(), url, json=json, params=params, headers=merged_headers
                )
                if response.headers.get("Deprecation") == "true":
                    logger.warning(f"API {url} is deprecated. Stability and performance may be affected.")
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code in (404, 405) and index < len(self.base_urls) - 1:
                    last_error = exc
                    continue
                try:
                    body = exc.response.json()
                except ValueError:
                    body = exc.response.text
                raise APIError(
                    _error_message(body, f"Request to {path} failed"),
                    exc.response.status_code,
                    body,
                    endpoint=url,
                ) from exc
            except httpx.RequestError as exc:
                last_error = exc
                continue

        if last_error is not None:
            raise last_error
        raise RuntimeError("All Relay hosts failed without providing an error response")

    def _require_api_key(self, action: str) -> None:
        if not self.api_key:
            raise ExecutionError(f"API key is required for {action}. Set RELAY_API_KEY.")

    async def quote(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Request a quote. The engine consumes the result as a black box."""
        resp = await self._request("POST", "/quote", json=payload)
        return resp.json()

    async def get_quote(self, payload: Dict[str, Any]) -> Execute:
        return Execute.from_api(await self.quote(payload))

    async def get_status(self, request_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", STATUS_V3_PATH, params={"requestId": request_id})
        return resp.json()

    async def check(self, check: CheckRequest) -> Dict[str, Any]:
        """Poll an item's check endpoint, upgrading status checks to v3."""
        endpoint = check.endpoint
        if STATUS_PATH in endpoint and STATUS_V3_PATH not in endpoint:
            endpoint = endpoint.replace(STATUS_PATH, STATUS_V3_PATH, 1)
        resp = await self._request(check.method or "GET", endpoint)
        return resp.json()

    async def post_step_data(self, post: PostData, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = dict(post.body) if post.body else None
        if body is not None and not body.get("referrer"):
            body["referrer"] = self.source
        resp = await self._request(post.method or "POST", post.endpoint, json=body, params=params)
        if not resp.content:
            return {}
        return resp.json()

    async def fast_fill(
        self,
        request_id: str,
        solver_input_currency_amount: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Ask the solver for expedited settlement of a request."""
        self._require_api_key("fast-fill")
        body: Dict[str, Any] = {"requestId": request_id}
        if solver_input_currency_amount is not None:
            body["solverInputCurrencyAmount"] = solver_input_currency_amount
        resp = await self._request("POST", "/fast-fill", json=body)
        return resp.json()

    async def execute(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Relay a signed batch through the backend, which pays origin gas."""
        self._require_api_key("gasless batch execution")
        resp = await self._request("POST", "/execute", json=body)
        return resp.json()

    async def get_requests(self, request_id: str) -> List[Dict[str, Any]]:
        resp = await self._request(
            "GET",
            "/requests/v2",
            params={
                "id": request_id,
                "limit": 1,
                "sortBy": "updatedAt",
                "sortDirection": "desc",
            },
        )
        return (resp.json() or {}).get("requests") or []


_relay_provider: Optional[RelayProvider] = None


def get_relay_provider() -> RelayProvider:
    global _relay_provider
    if _relay_provider is None:
        _relay_provider = RelayProvider()
    return _relay_provider
