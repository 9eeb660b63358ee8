from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: float = 10

    _client: Optional[httpx.AsyncClient] = None

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
