"""
Relay request status over WebSocket.

Subscribes to ``request.status.updated`` events for one request id and
yields each status payload as it arrives. The socket is a faster path in
front of status polling, never a replacement: callers fall back to polling
when it cannot connect or closes early.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

import websockets

from ..config import settings


logger = logging.getLogger(__name__)

STATUS_EVENT = "request.status.updated"


def subscribe_message(request_id: str) -> Dict[str, Any]:
    return {"type": "subscribe", "event": STATUS_EVENT, "filters": {"id": request_id}}


class RelayStatusSocket:
    """
    Status event stream for Relay requests.

    Usage:
        socket = RelayStatusSocket()
        async for update in socket.updates("0xrequest"):
            print(update["status"])
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        open_timeout: Optional[float] = None,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.url = url or settings.relay_websocket_url
        self.open_timeout = open_timeout if open_timeout is not None else settings.websocket_open_timeout_seconds
        self._connect = connect or websockets.connect

    async def updates(self, request_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield status payloads for ``request_id`` until the server closes the socket."""
        async with self._connect(self.url, open_timeout=self.open_timeout) as ws:
            await ws.send(json.dumps(subscribe_message(request_id)))
            logger.info(f"Subscribed to status updates for {request_id}")

            async for message in ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON received: {str(message)[:100]}")
                    continue

                if not isinstance(data, dict) or data.get("event") != STATUS_EVENT:
                    continue
                payload = data.get("data")
                if not isinstance(payload, dict):
                    continue
                if payload.get("id") not in (None, request_id):
                    continue
                yield payload
