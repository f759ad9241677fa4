"""Client sessions of the collaboration hub and their reader/writer pumps.

A session is one attached bidirectional connection.  Its outbound queue has a
single producer (the hub loop) and a single consumer (the session's writer
task).  The reader task owns the session's mutable presence state
(``last_seen``, ``status``).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from devcollab.errors import ValidationError
from devcollab.events import Event, decode_frame

if TYPE_CHECKING:
    from devcollab.hub import Hub

__all__ = [
    "SessionStatus",
    "SessionState",
    "QueueClosed",
    "ConnectionClosed",
    "OutboundQueue",
    "ClientSession",
    "Transport",
    "read_pump",
    "write_pump",
]

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_PING_INTERVAL = 54.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_WRITE_TIMEOUT = 10.0


class SessionStatus(str, Enum):
    online = "online"
    away = "away"
    busy = "busy"
    offline = "offline"


class SessionState(str, Enum):
    """``handshaking -> attached -> detaching -> detached``."""

    handshaking = "handshaking"
    attached = "attached"
    detaching = "detaching"
    detached = "detached"


class QueueClosed(Exception):
    """The outbound queue was closed; no more events will be produced."""


class ConnectionClosed(Exception):
    """The peer went away or the transport failed."""

    def __init__(self, code: int | None = None, reason: str = "") -> None:
        super().__init__(reason or f"connection closed (code {code})")
        self.code = code


class OutboundQueue:
    """Bounded FIFO of events awaiting delivery to one session.

    ``put_nowait`` never blocks: the hub loop treats a full queue as a slow
    consumer.  After :meth:`close`, :meth:`get` hands out what is left and then
    raises :class:`QueueClosed`.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._items: deque[Event] = deque()
        self._closed = False
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def put_nowait(self, event: Event) -> None:
        """Enqueue *event*.

        Raises:
            QueueClosed: When the queue is closed.
            asyncio.QueueFull: When the queue holds ``maxsize`` events.
        """
        if self._closed:
            raise QueueClosed()
        if len(self._items) >= self.maxsize:
            raise asyncio.QueueFull()
        self._items.append(event)
        self._ready.set()

    def get_nowait(self) -> Event:
        if self._items:
            return self._items.popleft()
        if self._closed:
            raise QueueClosed()
        raise asyncio.QueueEmpty()

    async def get(self) -> Event:
        while not self._items:
            if self._closed:
                raise QueueClosed()
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def close(self, *, discard: bool = False) -> None:
        """Stop accepting events.

        Args:
            discard: Drop the events still queued instead of letting the
                consumer drain them.
        """
        self._closed = True
        if discard:
            self._items.clear()
        self._ready.set()


class ClientSession:
    """One attached connection and the identity recorded at handshake.

    Args:
        user_id: Authenticated user id from the handshake.
        username: Display name from the handshake.
        room_id: Project id the session joins.
        avatar: Optional avatar URL.
        queue_size: Bound of the outbound queue.
    """

    def __init__(
        self,
        user_id: int,
        username: str,
        room_id: int,
        avatar: str = "",
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.session_id = f"{user_id}_{room_id}_{uuid.uuid4().hex[:12]}"
        self.user_id = user_id
        self.username = username
        self.avatar = avatar
        self.room_id = room_id
        self.status = SessionStatus.online
        self.last_seen = datetime.now(tz=timezone.utc)
        self.state = SessionState.handshaking
        self.outbound = OutboundQueue(queue_size)

    def __repr__(self) -> str:
        return (
            f"ClientSession({self.session_id!r}, user={self.username!r}, "
            f"room={self.room_id}, state={self.state.value})"
        )

    def touch(self) -> None:
        self.last_seen = datetime.now(tz=timezone.utc)

    def occupant(self) -> dict[str, Any]:
        """Snapshot of the public presence fields."""
        return {
            "user_id": self.user_id,
            "username": self.username,
            "avatar": self.avatar,
            "status": self.status.value,
            "last_seen": self.last_seen.isoformat(),
        }


class Transport(Protocol):
    """The bidirectional connection underneath a session."""

    async def receive_text(self) -> str:
        """Return the next text frame; raise :class:`ConnectionClosed` when gone."""
        ...

    async def send_text(self, text: str) -> None: ...

    async def ping(self) -> None:
        """Emit a transport-level keepalive."""
        ...

    async def close(self, code: int = 1000) -> None: ...


async def read_pump(
    session: ClientSession,
    hub: Hub,
    transport: Transport,
    read_timeout: float | None = DEFAULT_READ_TIMEOUT,
) -> None:
    """Feed inbound frames to the hub until the connection ends.

    Each frame refreshes the read deadline.  Pass ``read_timeout=None`` when
    the server underneath already drops peers whose pongs stop arriving; an
    idle peer that still answers pings then stays attached.  The session is
    detached on exit, whatever the reason.
    """
    try:
        while True:
            try:
                raw = await asyncio.wait_for(transport.receive_text(), timeout=read_timeout)
            except asyncio.TimeoutError:
                logger.info("Read deadline exceeded for %s", session.session_id)
                break
            session.touch()
            try:
                frame = decode_frame(raw)
            except ValidationError as exc:
                logger.info("Closing %s after malformed frame: %s", session.session_id, exc)
                break
            if frame is None:
                continue
            await hub.submit(session, frame.type, frame.data)
    except ConnectionClosed as exc:
        logger.debug("Connection %s closed by peer: %s", session.session_id, exc)
    finally:
        await hub.detach(session)


async def write_pump(
    session: ClientSession,
    transport: Transport,
    ping_interval: float = DEFAULT_PING_INTERVAL,
    write_timeout: float = DEFAULT_WRITE_TIMEOUT,
) -> None:
    """Deliver the session's outbound events in dequeue order.

    Sends a keepalive every *ping_interval* seconds.  Ends when the outbound
    queue is closed or a write fails or exceeds *write_timeout*; in every case
    the transport is closed so the reader observes the end too.
    """
    loop = asyncio.get_running_loop()
    next_ping = loop.time() + ping_interval
    try:
        while True:
            try:
                event = await asyncio.wait_for(
                    session.outbound.get(), timeout=max(next_ping - loop.time(), 0)
                )
            except asyncio.TimeoutError:
                await asyncio.wait_for(transport.ping(), timeout=write_timeout)
                next_ping = loop.time() + ping_interval
                continue
            except QueueClosed:
                logger.debug("Outbound queue of %s closed", session.session_id)
                break
            await asyncio.wait_for(transport.send_text(event.to_wire()), timeout=write_timeout)
    except asyncio.TimeoutError:
        logger.info("Write deadline exceeded for %s", session.session_id)
    except ConnectionClosed as exc:
        logger.debug("Write to %s failed: %s", session.session_id, exc)
    finally:
        await transport.close()
