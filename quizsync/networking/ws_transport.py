"""WebSocket-based Transport implementation.

Connects to the relay and degrades through a fixed chain when it cannot:

    relay socket -> backoff retries -> local broadcast channel -> buffer

Reconnect delays grow by RECONNECT_MULTIPLIER per attempt with a little
random jitter and never exceed RECONNECT_MAX_DELAY_MS. Once the attempts are
used up, or the relay address does not even accept a TCP connection, the
transport switches to the broadcast channel for the rest of its life.
"""

from __future__ import annotations

import asyncio
import logging
import random
from urllib.parse import urlsplit

import websockets
from websockets.exceptions import WebSocketException

from quizsync.config import (
    BROADCAST_CHANNEL_NAME,
    MAX_RECONNECT_ATTEMPTS,
    MESSAGE_BUFFER_SIZE,
    RECONNECT_BASE_DELAY_MS,
    RECONNECT_JITTER_RATIO,
    RECONNECT_MAX_DELAY_MS,
    RECONNECT_MULTIPLIER,
    RELAY_OPEN_TIMEOUT_MS,
    RELAY_PROBE_TIMEOUT_MS,
    SYNC_SETTLE_DELAY_MS,
)
from quizsync.networking.channels import BroadcastChannel, ChannelHub, default_hub
from quizsync.networking.protocol import Envelope, EnvelopeType, Payload, SyncRequest
from quizsync.networking.serialization import encode_envelope
from quizsync.networking.transport import ConnectionStatus, Transport

logger = logging.getLogger(__name__)


def reconnect_delay(
    attempt: int,
    base_ms: float = RECONNECT_BASE_DELAY_MS,
    multiplier: float = RECONNECT_MULTIPLIER,
    max_ms: float = RECONNECT_MAX_DELAY_MS,
    jitter_ratio: float = RECONNECT_JITTER_RATIO,
    rng: random.Random | None = None,
) -> float:
    """Delay in ms before reconnect attempt number `attempt` (0-based).

    Jitter adds at most jitter_ratio of the raw delay. With a ratio below
    multiplier - 1 the sequence stays non-decreasing, and it is capped at
    max_ms after jitter.
    """
    raw = min(base_ms * multiplier ** attempt, max_ms)
    jitter = (rng or random).random() * jitter_ratio * raw
    return min(raw + jitter, max_ms)


def _relay_address(url: str) -> tuple[str, int]:
    parts = urlsplit(url)
    if parts.scheme not in ("ws", "wss") or not parts.hostname:
        raise ValueError(f"Not a WebSocket URL: {url}")
    port = parts.port or (443 if parts.scheme == "wss" else 80)
    return parts.hostname, port


class RelayTransport(Transport):
    """Transport over a relay WebSocket with broadcast-channel fallback."""

    def __init__(
        self,
        url: str,
        device_id: str,
        hub: ChannelHub = default_hub,
        channel_name: str = BROADCAST_CHANNEL_NAME,
        sync_delay: float = SYNC_SETTLE_DELAY_MS / 1000,
        probe_timeout: float = RELAY_PROBE_TIMEOUT_MS / 1000,
        open_timeout: float = RELAY_OPEN_TIMEOUT_MS / 1000,
        base_delay_ms: float = RECONNECT_BASE_DELAY_MS,
        max_delay_ms: float = RECONNECT_MAX_DELAY_MS,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        buffer_size: int = MESSAGE_BUFFER_SIZE,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(device_id, buffer_size)
        self._url = url
        self._hub = hub
        self._channel_name = channel_name
        self._sync_delay = sync_delay
        self._probe_timeout = probe_timeout
        self._open_timeout = open_timeout
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._max_attempts = max_attempts
        self._rng = rng or random.Random()

        self._ws = None  # open relay connection, if any
        self._fallback: BroadcastChannel | None = None
        self._task: asyncio.Task | None = None
        self._first_attempt = asyncio.Event()
        self._sync_timer: asyncio.TimerHandle | None = None
        self._pending_sends: set[asyncio.Task] = set()
        self._attempts = 0
        self._reconnecting = False
        self._closed = False

    @property
    def using_fallback(self) -> bool:
        return self._fallback is not None

    async def connect(self) -> None:
        """Probe the relay and start the connection loop.

        Returns after the first connection attempt has either opened or
        failed (or immediately after switching to the fallback channel).
        """
        if self._task is not None or self._fallback is not None:
            return
        if not await self._probe():
            logger.warning("Relay %s unreachable, using broadcast channel", self._url)
            self._activate_fallback()
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        await self._first_attempt.wait()

    async def _probe(self) -> bool:
        """TCP pre-check of the relay address."""
        try:
            host, port = _relay_address(self._url)
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), self._probe_timeout,
            )
        except (OSError, asyncio.TimeoutError, ValueError) as e:
            logger.debug("Relay probe failed: %s", e)
            return False
        writer.close()
        return True

    async def _run(self) -> None:
        """Connection loop: connect, read until closed, back off, repeat."""
        while not self._closed:
            try:
                async with websockets.connect(
                    self._url, open_timeout=self._open_timeout,
                ) as ws:
                    self._on_open(ws)
                    async for message in ws:
                        try:
                            self._handle_text(message, "relay")
                        except Exception:
                            logger.exception("Dropped frame from relay")
                logger.info("Relay closed the connection")
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning("Relay connection failed: %s", e)
            finally:
                self._on_close()
                self._first_attempt.set()

            if self._closed:
                break
            if self._attempts >= self._max_attempts:
                logger.warning(
                    "Giving up on relay after %d attempts, using broadcast channel",
                    self._attempts,
                )
                self._activate_fallback()
                break
            delay_ms = reconnect_delay(
                self._attempts,
                base_ms=self._base_delay_ms,
                max_ms=self._max_delay_ms,
                rng=self._rng,
            )
            self._attempts += 1
            self._reconnecting = True
            logger.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay_ms / 1000, self._attempts, self._max_attempts,
            )
            await asyncio.sleep(delay_ms / 1000)

    def _on_open(self, ws) -> None:
        logger.info("Connected to relay %s", self._url)
        self._ws = ws
        self._attempts = 0
        self._reconnecting = False
        for envelope in self._buffer.drain():
            self._spawn_send(ws, envelope)
        self._schedule_sync_request()
        self._first_attempt.set()

    def _on_close(self) -> None:
        self._ws = None
        self._cancel_sync_request()

    def _activate_fallback(self) -> None:
        if self._fallback is not None:
            return
        self._reconnecting = False
        try:
            self._fallback = self._hub.join(
                self._channel_name, lambda text: self._handle_text(text, "broadcast"),
            )
        except OSError as e:
            logger.error("Cannot join broadcast channel %r, buffering only: %s",
                         self._channel_name, e)
            return
        for envelope in self._buffer.drain():
            self._fallback.post_message(encode_envelope(envelope))
        self._schedule_sync_request()

    def _schedule_sync_request(self) -> None:
        self._cancel_sync_request()
        self._sync_timer = asyncio.get_running_loop().call_later(
            self._sync_delay, self.send, EnvelopeType.SYNC_REQUEST, SyncRequest(),
        )

    def _cancel_sync_request(self) -> None:
        if self._sync_timer is not None:
            self._sync_timer.cancel()
            self._sync_timer = None

    def send(self, envelope_type: EnvelopeType, payload: Payload) -> bool:
        envelope = self._make_envelope(envelope_type, payload)
        if self._ws is not None:
            self._spawn_send(self._ws, envelope)
            return True
        if self._fallback is not None:
            self._fallback.post_message(encode_envelope(envelope))
            return True
        return self._buffer_or_drop(envelope)

    def _spawn_send(self, ws, envelope: Envelope) -> None:
        # Tasks start in creation order, so frames keep their send order.
        task = asyncio.get_running_loop().create_task(self._send_ws(ws, envelope))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send_ws(self, ws, envelope: Envelope) -> None:
        try:
            await ws.send(encode_envelope(envelope))
        except (OSError, WebSocketException) as e:
            logger.warning("Send of %s failed: %s", envelope.envelope_type.value, e)
            self._buffer.offer(envelope)

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            is_connected=self._ws is not None or self._fallback is not None,
            quality=self.quality(),
            reconnect_attempts=self._attempts,
            buffered_messages=len(self._buffer),
            is_reconnecting=self._reconnecting,
            using_fallback=self._fallback is not None,
        )

    async def close(self) -> None:
        self._closed = True
        self._cancel_sync_request()
        if self._pending_sends:
            # Let queued frames such as PLAYER_DISCONNECT reach the relay.
            await asyncio.wait(set(self._pending_sends), timeout=self._open_timeout)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._fallback is not None:
            self._fallback.close()
            self._fallback = None
        self._reconnecting = False
