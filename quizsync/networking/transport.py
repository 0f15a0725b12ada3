"""Transport interface and local broadcast implementation.

Transport is the interface between the replicator and the network. The
replicator codes against this interface only; it never knows whether
envelopes travel through the relay socket or the local broadcast channel.

BroadcastTransport lets several nodes on one machine play (or be tested)
without a relay: it uses only the same-origin broadcast channel.
RelayTransport (ws_transport.py) is the networked implementation with the
full fallback chain.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from quizsync.config import (
    BROADCAST_CHANNEL_NAME,
    MESSAGE_BUFFER_SIZE,
    QUALITY_GOOD_MS,
    QUALITY_UNSTABLE_MS,
    SYNC_SETTLE_DELAY_MS,
)
from quizsync.networking.channels import BroadcastChannel, ChannelHub, default_hub
from quizsync.networking.protocol import (
    CRITICAL_TYPES,
    Envelope,
    EnvelopeType,
    Payload,
    SyncRequest,
    now_ms,
)
from quizsync.networking.serialization import decode_envelope, encode_envelope

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[Envelope], None]


class ConnectionQuality(str, Enum):
    GOOD = "good"
    UNSTABLE = "unstable"
    POOR = "poor"


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    """Transport health as shown to the user. Advisory only."""
    is_connected: bool
    quality: ConnectionQuality
    reconnect_attempts: int = 0
    buffered_messages: int = 0
    is_reconnecting: bool = False
    using_fallback: bool = False


def classify_quality(elapsed_ms: float | None) -> ConnectionQuality:
    """Link quality from the age of the last received envelope.

    None (nothing received yet) counts as poor.
    """
    if elapsed_ms is None:
        return ConnectionQuality.POOR
    if elapsed_ms < QUALITY_GOOD_MS:
        return ConnectionQuality.GOOD
    if elapsed_ms < QUALITY_UNSTABLE_MS:
        return ConnectionQuality.UNSTABLE
    return ConnectionQuality.POOR


class CriticalBuffer:
    """Bounded FIFO of envelopes held while no channel is available.

    Only CRITICAL_TYPES are kept. When full, the oldest entry is dropped.
    """

    def __init__(self, capacity: int = MESSAGE_BUFFER_SIZE) -> None:
        self._queue: deque[Envelope] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._queue)

    def offer(self, envelope: Envelope) -> bool:
        """Buffer the envelope if it is critical. Returns True if kept."""
        if envelope.envelope_type not in CRITICAL_TYPES:
            return False
        # deque(maxlen) discards from the left on overflow
        self._queue.append(envelope)
        return True

    def drain(self) -> list[Envelope]:
        """Remove and return all buffered envelopes, oldest first."""
        items = list(self._queue)
        self._queue.clear()
        return items


class Transport(ABC):
    """Moves envelopes between nodes.

    Subclasses implement the channels; the base class owns the pieces every
    channel shares: envelope construction, self-echo filtering, the critical
    buffer and receive-time tracking for link quality.
    """

    def __init__(self, device_id: str, buffer_size: int = MESSAGE_BUFFER_SIZE) -> None:
        self._device_id = device_id
        self._handlers: list[EnvelopeHandler] = []
        self._buffer = CriticalBuffer(buffer_size)
        self._last_recv_time: float | None = None

    @property
    def device_id(self) -> str:
        return self._device_id

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel(s). Returns once the first attempt has been made."""
        ...

    @abstractmethod
    def send(self, envelope_type: EnvelopeType, payload: Payload) -> bool:
        """Send an envelope to every other node.

        Returns:
            True if it was handed to a live channel, False if it was
            buffered or dropped. Never raises for transport conditions.
        """
        ...

    @abstractmethod
    def status(self) -> ConnectionStatus:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Tear down channels and cancel every timer the transport owns."""
        ...

    def on_envelope(self, handler: EnvelopeHandler) -> None:
        """Register a handler for envelopes from other nodes."""
        self._handlers.append(handler)

    def time_since_last_recv(self) -> float | None:
        """Seconds since the last envelope arrived, or None if none has."""
        if self._last_recv_time is None:
            return None
        return time.monotonic() - self._last_recv_time

    def quality(self) -> ConnectionQuality:
        elapsed = self.time_since_last_recv()
        return classify_quality(None if elapsed is None else elapsed * 1000)

    def _make_envelope(self, envelope_type: EnvelopeType, payload: Payload) -> Envelope:
        return Envelope(
            envelope_type=envelope_type,
            data=payload,
            timestamp=now_ms(),
            device_id=self._device_id,
        )

    def _buffer_or_drop(self, envelope: Envelope) -> bool:
        if self._buffer.offer(envelope):
            logger.debug(
                "No channel, buffered %s (%d pending)",
                envelope.envelope_type.value, len(self._buffer),
            )
        else:
            logger.debug("No channel, dropped %s", envelope.envelope_type.value)
        return False

    def _handle_text(self, text: str | bytes, source: str) -> None:
        """Decode one inbound frame and hand it to the handlers."""
        try:
            envelope = decode_envelope(text)
        except ValueError as e:
            logger.warning("Malformed envelope via %s: %s", source, e)
            return
        if envelope.device_id == self._device_id:
            return
        self._last_recv_time = time.monotonic()
        logger.debug("Received %s via %s", envelope.envelope_type.value, source)
        for handler in list(self._handlers):
            handler(envelope)


class BroadcastTransport(Transport):
    """Transport over the same-origin broadcast channel only."""

    def __init__(
        self,
        device_id: str,
        hub: ChannelHub = default_hub,
        channel_name: str = BROADCAST_CHANNEL_NAME,
        sync_delay: float = SYNC_SETTLE_DELAY_MS / 1000,
        buffer_size: int = MESSAGE_BUFFER_SIZE,
    ) -> None:
        super().__init__(device_id, buffer_size)
        self._hub = hub
        self._channel_name = channel_name
        self._sync_delay = sync_delay
        self._channel: BroadcastChannel | None = None
        self._sync_timer: asyncio.TimerHandle | None = None

    async def connect(self) -> None:
        if self._channel is not None:
            return
        try:
            self._channel = self._hub.join(
                self._channel_name, lambda text: self._handle_text(text, "broadcast"),
            )
        except OSError as e:
            logger.error("Cannot join broadcast channel %r: %s", self._channel_name, e)
            return
        logger.info("Joined broadcast channel %r", self._channel_name)
        for envelope in self._buffer.drain():
            self._channel.post_message(encode_envelope(envelope))
        self._sync_timer = asyncio.get_running_loop().call_later(
            self._sync_delay, self.send, EnvelopeType.SYNC_REQUEST, SyncRequest(),
        )

    def send(self, envelope_type: EnvelopeType, payload: Payload) -> bool:
        envelope = self._make_envelope(envelope_type, payload)
        if self._channel is None:
            return self._buffer_or_drop(envelope)
        self._channel.post_message(encode_envelope(envelope))
        return True

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            is_connected=self._channel is not None,
            quality=self.quality(),
            buffered_messages=len(self._buffer),
            using_fallback=True,
        )

    async def close(self) -> None:
        if self._sync_timer is not None:
            self._sync_timer.cancel()
            self._sync_timer = None
        if self._channel is not None:
            self._channel.close()
            self._channel = None
