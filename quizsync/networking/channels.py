"""Same-origin broadcast channels.

The local fallback for nodes without a relay. Like a browser
BroadcastChannel, a post reaches every OTHER member subscribed to the same
name, never the poster, and is delivered asynchronously on the event loop so
a handler never runs inside the sender's call stack.

Two hubs implement this:

- BroadcastHub connects members inside one process (tests, or several
  nodes sharing one loop).
- SocketBroadcastHub connects processes on the same machine. Each member
  binds a Unix datagram socket in a per-channel directory, and a post is
  one datagram to every other socket found there.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import tempfile
import uuid
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Callable

from quizsync.config import (
    BROADCAST_BACKLOG_SIZE,
    BROADCAST_MAX_DATAGRAM,
    BROADCAST_RETRY_MS,
    BROADCAST_SOCKET_DIR,
)

logger = logging.getLogger(__name__)

SOCKET_SUFFIX = ".sock"


class BroadcastChannel(ABC):
    """One node's membership in a named channel."""

    name: str

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    def post_message(self, text: str) -> None:
        """Deliver `text` to every other member. Requires a running loop."""

    @abstractmethod
    def close(self) -> None:
        ...


class ChannelHub(ABC):
    """Registry of named channels. One hub is one "origin"."""

    @abstractmethod
    def join(self, name: str, on_message: Callable[[str], None]) -> BroadcastChannel:
        """Subscribe to channel `name`. Messages arrive as JSON text.

        Raises OSError if the hub cannot host the membership.
        """


class BroadcastHub(ChannelHub):
    """In-process hub."""

    def __init__(self) -> None:
        self._members: dict[str, list[LocalBroadcastChannel]] = {}

    def join(self, name: str, on_message: Callable[[str], None]) -> LocalBroadcastChannel:
        channel = LocalBroadcastChannel(self, name, on_message)
        self._members.setdefault(name, []).append(channel)
        return channel

    def members(self, name: str) -> list[LocalBroadcastChannel]:
        return list(self._members.get(name, []))

    def _leave(self, channel: LocalBroadcastChannel) -> None:
        members = self._members.get(channel.name, [])
        if channel in members:
            members.remove(channel)
        if not members:
            self._members.pop(channel.name, None)


class LocalBroadcastChannel(BroadcastChannel):

    def __init__(
        self,
        hub: BroadcastHub,
        name: str,
        on_message: Callable[[str], None],
    ) -> None:
        self._hub = hub
        self.name = name
        self._on_message = on_message
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def post_message(self, text: str) -> None:
        if self._closed:
            raise RuntimeError(f"Channel {self.name!r} is closed")
        loop = asyncio.get_running_loop()
        for member in self._hub.members(self.name):
            if member is not self:
                loop.call_soon(member._deliver, text)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._hub._leave(self)

    def _deliver(self, text: str) -> None:
        # Posts scheduled before close() may still land here.
        if self._closed:
            return
        self._on_message(text)


class SocketBroadcastHub(ChannelHub):
    """Machine-wide hub over Unix datagram sockets.

    Members live at <root>/<channel name>/<random id>.sock. A socket file
    whose owner died is removed by the first sender that finds it refusing
    datagrams.
    """

    def __init__(
        self,
        root: str | os.PathLike | None = None,
        max_datagram: int = BROADCAST_MAX_DATAGRAM,
        backlog_size: int = BROADCAST_BACKLOG_SIZE,
        retry_delay: float = BROADCAST_RETRY_MS / 1000,
    ) -> None:
        if root is None:
            root = Path(tempfile.gettempdir()) / BROADCAST_SOCKET_DIR
        self.root = Path(root)
        self._max_datagram = max_datagram
        self._backlog_size = backlog_size
        self._retry_delay = retry_delay

    def join(self, name: str, on_message: Callable[[str], None]) -> SocketBroadcastChannel:
        if not name or name.startswith(".") or "/" in name or os.sep in name:
            raise ValueError(f"Bad channel name {name!r}")
        directory = self.root / name
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        path = directory / f"{uuid.uuid4().hex[:12]}{SOCKET_SUFFIX}"
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        try:
            sock.bind(str(path))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        logger.debug("Bound %s", path)
        return SocketBroadcastChannel(
            self, name, sock, path, on_message,
            max_datagram=self._max_datagram,
            backlog_size=self._backlog_size,
            retry_delay=self._retry_delay,
        )

    def members(self, name: str) -> list[Path]:
        """Socket paths currently registered under `name`."""
        return sorted((self.root / name).glob(f"*{SOCKET_SUFFIX}"))


class SocketBroadcastChannel(BroadcastChannel):
    """Membership backed by one bound datagram socket.

    A member whose receive queue is full gets later datagrams from a
    bounded per-member backlog, retried on a short timer, so posts to it
    keep their order.
    """

    def __init__(
        self,
        hub: SocketBroadcastHub,
        name: str,
        sock: socket.socket,
        path: Path,
        on_message: Callable[[str], None],
        max_datagram: int = BROADCAST_MAX_DATAGRAM,
        backlog_size: int = BROADCAST_BACKLOG_SIZE,
        retry_delay: float = BROADCAST_RETRY_MS / 1000,
    ) -> None:
        self._hub = hub
        self.name = name
        self.path = path
        self._sock = sock
        self._on_message = on_message
        self._max_datagram = max_datagram
        self._backlog_size = backlog_size
        self._retry_delay = retry_delay
        self._backlog: dict[Path, deque[bytes]] = {}
        self._retry: asyncio.TimerHandle | None = None
        self._closed = False
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(sock.fileno(), self._poll)

    @property
    def closed(self) -> bool:
        return self._closed

    def post_message(self, text: str) -> None:
        if self._closed:
            raise RuntimeError(f"Channel {self.name!r} is closed")
        data = text.encode("utf-8")
        if len(data) > self._max_datagram:
            logger.warning("Message of %d bytes too large for channel %r", len(data), self.name)
            return
        for path in self._hub.members(self.name):
            if path != self.path:
                self._send(path, data)

    def close(self) -> None:
        if self._closed:
            return
        if self._backlog:
            self._flush_backlog()
        self._closed = True
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        self._backlog.clear()
        self._loop.remove_reader(self._sock.fileno())
        self._sock.close()
        self.path.unlink(missing_ok=True)

    def _send(self, path: Path, data: bytes) -> None:
        if path in self._backlog:
            self._enqueue(path, data)
            return
        try:
            self._sock.sendto(data, str(path))
        except BlockingIOError:
            self._enqueue(path, data)
        except (ConnectionRefusedError, FileNotFoundError):
            self._forget(path)
        except OSError as e:
            logger.warning("Send to %s failed: %s", path.name, e)

    def _enqueue(self, path: Path, data: bytes) -> None:
        queue = self._backlog.setdefault(path, deque(maxlen=self._backlog_size))
        if len(queue) == queue.maxlen:
            logger.warning("Backlog for %s full, dropping oldest message", path.name)
        queue.append(data)
        if self._retry is None:
            self._retry = self._loop.call_later(self._retry_delay, self._flush_backlog)

    def _flush_backlog(self) -> None:
        self._retry = None
        for path in list(self._backlog):
            queue = self._backlog[path]
            while queue:
                try:
                    self._sock.sendto(queue[0], str(path))
                except BlockingIOError:
                    break
                except (ConnectionRefusedError, FileNotFoundError):
                    self._forget(path)
                    break
                except OSError as e:
                    logger.warning("Send to %s failed: %s", path.name, e)
                queue.popleft()
            if not queue:
                self._backlog.pop(path, None)
        if self._backlog and not self._closed:
            self._retry = self._loop.call_later(self._retry_delay, self._flush_backlog)

    def _forget(self, path: Path) -> None:
        # Nobody is bound there any more.
        self._backlog.pop(path, None)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug("Cannot remove stale socket %s: %s", path, e)
            return
        logger.debug("Removed stale member %s", path.name)

    def _poll(self) -> None:
        """Read all pending datagrams and hand them to the subscriber."""
        while not self._closed:
            try:
                data = self._sock.recv(self._max_datagram)
            except BlockingIOError:
                break
            except OSError:
                break
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Malformed datagram on channel %r", self.name)
                continue
            self._on_message(text)


def _default_hub() -> ChannelHub:
    if hasattr(socket, "AF_UNIX"):
        return SocketBroadcastHub()
    return BroadcastHub()


# The hub shared by every node on this machine.
default_hub: ChannelHub = _default_hub()
