"""Room-scoped fan-out hub.

All membership changes and broadcasts go through one bounded command queue
consumed by a single loop task, so the hub's room map is only ever mutated
from that task and every recipient observes events in the order the loop
handled them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

from devcollab.errors import NotFoundError, ValidationError
from devcollab.events import (
    SYSTEM_USER_ID,
    SYSTEM_USERNAME,
    Event,
    EventType,
    parse_event_type,
)
from devcollab.session import ClientSession, QueueClosed, SessionState, SessionStatus

__all__ = ["Room", "RoomDirectory", "Hub"]

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_QUEUE_SIZE = 1024


class Room:
    """The sessions attached to one project."""

    def __init__(self, room_id: int) -> None:
        self.room_id = room_id
        self.sessions: dict[str, ClientSession] = {}
        self.created_at = datetime.now(tz=timezone.utc)

    def __len__(self) -> int:
        return len(self.sessions)

    def __contains__(self, session: object) -> bool:
        return isinstance(session, ClientSession) and session.session_id in self.sessions

    def members(self, exclude: str | None = None) -> list[ClientSession]:
        return [s for sid, s in self.sessions.items() if sid != exclude]

    def occupants(self, exclude: str | None = None) -> list[dict[str, Any]]:
        return [s.occupant() for s in self.members(exclude)]


class RoomDirectory:
    """Maps room ids to rooms.  Rooms exist while they have members."""

    def __init__(self) -> None:
        self._rooms: dict[int, Room] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def get(self, room_id: int) -> Room | None:
        return self._rooms.get(room_id)

    def get_or_create(self, room_id: int) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = self._rooms[room_id] = Room(room_id)
            logger.debug("Room %s created", room_id)
        return room

    def remove_if_empty(self, room_id: int) -> bool:
        room = self._rooms.get(room_id)
        if room is None or len(room):
            return False
        del self._rooms[room_id]
        logger.debug("Room %s removed", room_id)
        return True

    def rooms(self) -> list[Room]:
        return list(self._rooms.values())

    def clear(self) -> None:
        self._rooms.clear()


class _CommandKind(str, Enum):
    register = "register"
    unregister = "unregister"
    broadcast = "broadcast"
    barrier = "barrier"


class _Command(NamedTuple):
    kind: _CommandKind
    session: ClientSession | None = None
    event: Event | None = None
    exclude: str | None = None
    done: asyncio.Future[None] | None = None


class Hub:
    """Fan events out to the sessions of a room.

    Args:
        command_queue_size: Bound of the command queue between session tasks
            and the hub loop.  Submitters wait while it is full.
    """

    def __init__(self, command_queue_size: int = DEFAULT_COMMAND_QUEUE_SIZE) -> None:
        self._commands: asyncio.Queue[_Command] = asyncio.Queue(maxsize=command_queue_size)
        self._rooms = RoomDirectory()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the hub loop on the running event loop.  No-op when running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="devcollab-hub")
        logger.info("Hub started")

    async def stop(self) -> None:
        """Stop the loop, discard pending commands and detach every session."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        discarded = self._discard_pending()

        sessions = [s for room in self._rooms.rooms() for s in room.members()]
        for session in sessions:
            self._close_session(session)
        self._rooms.clear()
        logger.info(
            "Hub stopped: %d session(s) detached, %d pending command(s) discarded",
            len(sessions),
            discarded,
        )

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def attach(self, session: ClientSession) -> None:
        """Add *session* to its room and announce it.

        Returns once the hub loop has handled the registration, so the
        session's outbound queue already holds the online-users snapshot.

        Raises:
            ValidationError: When *session* has been attached before.
            RuntimeError: When the hub is not running.
        """
        if session.state is not SessionState.handshaking:
            raise ValidationError(f"Session {session.session_id} was already attached")
        await self._call(_CommandKind.register, session)

    async def detach(self, session: ClientSession) -> None:
        """Remove *session* from its room.  Safe to call more than once."""
        if session.state is SessionState.detached:
            return
        if not self.running:
            self._close_session(session)
            return
        session.state = SessionState.detaching
        await self._call(_CommandKind.unregister, session)

    async def flush(self) -> None:
        """Wait until every command submitted so far has been handled."""
        await self._call(_CommandKind.barrier)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def submit(
        self, session: ClientSession, event_type: EventType | str, data: Any = None
    ) -> Event | None:
        """Broadcast an event from *session* to the other sessions in its room.

        The origin fields and the timestamp come from the session, never from
        the client.  ``heartbeat`` only refreshes the session's last-seen time.

        Returns:
            The event queued for broadcast, or ``None`` when nothing is sent.

        Raises:
            ValidationError: When *event_type* is not a known tag.
            RuntimeError: When the hub is not running or stops before the event
                is queued.
        """
        event_type = parse_event_type(event_type)
        session.touch()
        if event_type is EventType.heartbeat:
            return None
        if session.state is not SessionState.attached:
            logger.debug("Ignoring %s from unattached %s", event_type.value, session.session_id)
            return None
        if event_type is EventType.user_status:
            self._update_status(session, data)

        event = Event(
            type=event_type,
            project_id=session.room_id,
            user_id=session.user_id,
            username=session.username,
            avatar=session.avatar,
            data=data,
        )
        command = _Command(_CommandKind.broadcast, session, event, exclude=session.session_id)
        if not await self._enqueue(command):
            raise RuntimeError("Hub stopped before the event was queued")
        return event

    async def post_system_event(
        self, room_id: int, event_type: EventType | str, payload: Any = None
    ) -> Event:
        """Broadcast a system-originated event to every session in *room_id*.

        Raises:
            ValidationError: For unknown tags and for ``heartbeat``.
            RuntimeError: When the hub is not running or stops before the event
                is queued.
        """
        event_type = parse_event_type(event_type)
        if event_type is EventType.heartbeat:
            raise ValidationError("heartbeat events cannot be broadcast")
        event = _system_event(room_id, event_type, payload)
        if not await self._enqueue(_Command(_CommandKind.broadcast, event=event)):
            raise RuntimeError("Hub stopped before the event was queued")
        return event

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def room_occupants(self, room_id: int) -> list[dict[str, Any]]:
        """Snapshot of ``{user_id, username, avatar, status, last_seen}`` per session.

        Raises:
            NotFoundError: When no session is attached to *room_id*.
        """
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFoundError(f"Room not found: {room_id}")
        return room.occupants()

    def room_count(self) -> int:
        return len(self._rooms)

    # ------------------------------------------------------------------
    # Hub loop
    # ------------------------------------------------------------------

    def _ensure_running(self) -> None:
        if not self.running:
            raise RuntimeError("Hub is not running")

    async def _enqueue(self, command: _Command) -> bool:
        """Queue *command* for the loop; ``False`` when the hub stopped meanwhile.

        A producer blocked on a full queue may resume after :meth:`stop` has
        drained it.  Such late commands are settled here the way :meth:`stop`
        settles pending ones, so no caller waits on a queue nobody reads.
        """
        self._ensure_running()
        await self._commands.put(command)
        if self.running:
            return True
        self._discard_pending()
        return False

    def _discard_pending(self) -> int:
        discarded = 0
        while not self._commands.empty():
            command = self._commands.get_nowait()
            discarded += 1
            if command.session is not None and command.kind is not _CommandKind.broadcast:
                self._close_session(command.session)
            if command.done is not None and not command.done.done():
                command.done.set_result(None)
        return discarded

    async def _call(self, kind: _CommandKind, session: ClientSession | None = None) -> None:
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if not await self._enqueue(_Command(kind, session, done=done)):
            if kind is _CommandKind.register:
                raise RuntimeError("Hub stopped before the session was attached")
            return
        await done

    async def _run(self) -> None:
        while True:
            command = await self._commands.get()
            try:
                self._handle(command)
            except Exception:
                logger.exception("Hub failed to handle %s command", command.kind.value)
            finally:
                if command.done is not None and not command.done.done():
                    command.done.set_result(None)

    def _handle(self, command: _Command) -> None:
        if command.kind is _CommandKind.register:
            self._register(command.session)
        elif command.kind is _CommandKind.unregister:
            self._unregister(command.session)
        elif command.kind is _CommandKind.broadcast:
            self._broadcast(command.event, exclude=command.exclude)

    def _register(self, session: ClientSession) -> None:
        room = self._rooms.get_or_create(session.room_id)
        others = room.occupants()
        room.sessions[session.session_id] = session
        session.state = SessionState.attached
        logger.info(
            "%s (user %s) joined room %s (%d online)",
            session.username,
            session.user_id,
            room.room_id,
            len(room),
        )

        self._broadcast(
            Event(
                type=EventType.user_join,
                project_id=room.room_id,
                user_id=session.user_id,
                username=session.username,
                avatar=session.avatar,
                data={
                    "status": session.status.value,
                    "last_active": session.last_seen.isoformat(),
                },
            ),
            exclude=session.session_id,
        )
        self._deliver(
            session,
            _system_event(room.room_id, EventType.user_status, {"online_users": others}),
        )

    def _unregister(self, session: ClientSession) -> None:
        room = self._rooms.get(session.room_id)
        if room is None or session not in room:
            self._close_session(session)
            return
        self._remove(room, session)
        logger.info("%s (user %s) left room %s", session.username, session.user_id, room.room_id)

    def _broadcast(self, event: Event, exclude: str | None = None) -> None:
        room = self._rooms.get(event.project_id)
        if room is None:
            logger.debug("Dropping %s for empty room %s", event.type.value, event.project_id)
            return
        evicted = [s for s in room.members(exclude) if not self._deliver(s, event)]
        for session in evicted:
            if session in room:
                logger.warning(
                    "Evicting slow consumer %s from room %s", session.session_id, room.room_id
                )
                self._remove(room, session, discard=True)

    def _deliver(self, session: ClientSession, event: Event) -> bool:
        try:
            session.outbound.put_nowait(event)
        except (asyncio.QueueFull, QueueClosed):
            return False
        return True

    def _remove(self, room: Room, session: ClientSession, *, discard: bool = False) -> None:
        del room.sessions[session.session_id]
        self._close_session(session, discard=discard)
        if self._rooms.remove_if_empty(room.room_id):
            return
        self._broadcast(
            Event(
                type=EventType.user_leave,
                project_id=room.room_id,
                user_id=session.user_id,
                username=session.username,
                avatar=session.avatar,
                data={"last_active": session.last_seen.isoformat()},
            )
        )

    @staticmethod
    def _close_session(session: ClientSession, *, discard: bool = False) -> None:
        session.outbound.close(discard=discard)
        session.status = SessionStatus.offline
        session.state = SessionState.detached

    @staticmethod
    def _update_status(session: ClientSession, data: Any) -> None:
        status = data.get("status") if isinstance(data, dict) else None
        try:
            session.status = SessionStatus(status)
        except ValueError:
            logger.debug("Ignoring unknown status %r from %s", status, session.session_id)


def _system_event(room_id: int, event_type: EventType, payload: Any) -> Event:
    return Event(
        type=event_type,
        project_id=room_id,
        user_id=SYSTEM_USER_ID,
        username=SYSTEM_USERNAME,
        data=payload,
    )
