"""A client WebSocket bound to one channel."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect

if TYPE_CHECKING:
    from .registry import ConnectionRegistry

LOG = logging.getLogger(__name__)

PING_FRAME = "ping"


class ReplySender(Protocol):
    async def reply(self, channel: str, target_id: str, text: str) -> None: ...


def split_command(frame: str) -> tuple[str, str]:
    """Split ``"<replyTargetID> <message>"``; the message may be empty."""
    target_id, _, message = frame.partition(" ")
    return target_id, message


class Session:
    """Runs the read loop for an authorized client connection.

    Writes are serialized per connection because the registry (deliveries) and the
    read loop (pongs) both send on it.
    """

    def __init__(
        self,
        channel: str,
        websocket: WebSocket,
        registry: "ConnectionRegistry",
        bridge: ReplySender,
    ):
        self.channel = channel
        self._websocket = websocket
        self._registry = registry
        self._bridge = bridge
        self._write_lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f"Session(channel={self.channel!r}, closed={self._closed})"

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_json(self, payload: Any) -> None:
        async with self._write_lock:
            await self._websocket.send_json(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        async with self._write_lock:
            try:
                await self._websocket.close()
            except Exception as exc:  # noqa: BLE001 - peer may already be gone
                LOG.debug("Closing session for channel %s failed: %s", self.channel, exc)

    async def run(self) -> None:
        """Register, then serve client frames until the connection ends."""
        try:
            await self._registry.register(self)
            while True:
                frame = await self._read_frame()
                if frame == PING_FRAME:
                    await self.send_json({"pong": "pong"})
                    continue
                target_id, message = split_command(frame)
                await self._bridge.reply(self.channel, target_id, message)
        except WebSocketDisconnect as exc:
            LOG.info("Client for channel %s disconnected (code %s)", self.channel, exc.code)
        except Exception:
            LOG.exception("Session for channel %s failed", self.channel)
        finally:
            try:
                await self._registry.unregister(self)
            except Exception:
                LOG.exception("Failed to unregister session for channel %s", self.channel)
            await self.close()

    async def _read_frame(self) -> str:
        message = await self._websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")
