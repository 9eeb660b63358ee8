"""
Minimal JSON-RPC 2.0 client over httpx.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from .base import Provider


class RpcError(Exception):
    """JSON-RPC error response."""

    def __init__(self, error: Any, method: str = ""):
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        super().__init__(f"RPC error{f' in {method}' if method else ''}: {message}")
        self.error = error
        self.method = method
        self.code = error.get("code") if isinstance(error, dict) else None


class JsonRpcClient(Provider):
    name = "rpc"
    timeout_s = 30

    def __init__(self, rpc_url: str, *, timeout_s: Optional[float] = None) -> None:
        self.rpc_url = rpc_url
        if timeout_s is not None:
            self.timeout_s = timeout_s
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "RPC URL not configured"}
        try:
            result = await self.call("eth_chainId", [])
            return {"status": "healthy", "chainId": result}
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}

    async def call(self, method: str, params: List[Any]) -> Any:
        """Make an RPC call and return its ``result`` member."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        response = await self._get_client().post(
            self.rpc_url,
            json=payload,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        data = response.json()

        if data.get("error") is not None:
            raise RpcError(data["error"], method)
        return data.get("result")

    async def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, block])
