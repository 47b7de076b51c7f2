"""Typed message channel between browser contexts.

A responder context (redirect target, popup, bridge page) posts messages
through a MessagePort; the initiating context receives them as Envelopes
carrying the sender's origin.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from .telemetry import get_logger


@dataclass(frozen=True)
class Envelope:
    """A received message and the origin it came from."""

    origin: str
    data: Any


class MessageChannel:
    """Queue of messages addressed to the initiating context.

    Messages may be posted from other threads (for example the relay
    backend's request handlers); they are handed to the owning event loop.
    """

    def __init__(self, origin: str) -> None:
        """Initialize channel.

        Args:
            origin: Origin of the receiving (initiating) context.
        """
        self.origin = origin.rstrip("/")
        self._queue: asyncio.Queue[Envelope] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None

    def port(self, sender_origin: str) -> MessagePort:
        """Create a port for a sending context at ``sender_origin``."""
        return MessagePort(self, sender_origin)

    def put(self, envelope: Envelope) -> None:
        """Enqueue an envelope from any thread."""
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if loop is not None and running is not loop and not loop.is_closed():
            loop.call_soon_threadsafe(self._queue.put_nowait, envelope)
        else:
            self._queue.put_nowait(envelope)

    async def get(self) -> Envelope:
        """Wait for the next envelope."""
        self._loop = asyncio.get_running_loop()
        return await self._queue.get()

    def get_nowait(self) -> Envelope | None:
        """Return the next envelope if one is queued."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


class MessagePort:
    """Sending side of a MessageChannel, modelled on ``window.postMessage``."""

    def __init__(self, channel: MessageChannel, sender_origin: str) -> None:
        self._channel = channel
        self.sender_origin = sender_origin.rstrip("/")

    def post_message(self, data: Any, target_origin: str) -> bool:
        """Post ``data`` to the receiving context.

        Like ``postMessage``, a message whose ``target_origin`` does not match
        the receiver's origin is not delivered.

        Returns:
            Whether the message was delivered.
        """
        if target_origin != "*" and target_origin.rstrip("/") != self._channel.origin:
            get_logger().warning(
                "Message not delivered: target origin does not match receiver",
                target_origin=target_origin,
                receiver_origin=self._channel.origin,
            )
            return False
        self._channel.put(Envelope(origin=self.sender_origin, data=data))
        return True
