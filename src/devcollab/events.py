"""Event taxonomy and wire framing for the collaboration hub.

Every frame on the wire is a JSON object::

    {"type": <tag>, "project_id": <int>, "user_id": <int>, "username": <str>,
     "avatar": <str>, "data": <payload>, "timestamp": <RFC3339>}

Inbound frames only contribute ``type`` and ``data``; the hub overwrites the
origin fields and the timestamp.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field

from devcollab.errors import ValidationError

__all__ = [
    "EventType",
    "Event",
    "InboundFrame",
    "SYSTEM_USER_ID",
    "SYSTEM_USERNAME",
    "decode_frame",
    "parse_event_type",
]

logger = logging.getLogger(__name__)

SYSTEM_USER_ID = 0
SYSTEM_USERNAME = "system"


class EventType(str, Enum):
    """Event tags.

    Payload shapes by tag:

    * ``task_update`` / ``task_create`` / ``task_delete``: ``{task_id, title,
      description, status_id, priority, assignee_id, due_date}``
    * ``user_join`` / ``user_status``: ``{status, last_active}``; the system
      ``user_status`` sent on join carries ``{online_users: [...]}``
    * ``chat_message``: ``{message, message_id}``
    * ``typing``: ``{is_typing, task_id}``
    * ``user_leave``, ``project_update``, ``heartbeat``: free-form
    """

    task_update = "task_update"
    task_create = "task_create"
    task_delete = "task_delete"
    user_join = "user_join"
    user_leave = "user_leave"
    user_status = "user_status"
    project_update = "project_update"
    chat_message = "chat_message"
    typing = "typing"
    heartbeat = "heartbeat"


class Event(BaseModel):
    """An event as delivered to sessions, with server-set origin and timestamp."""

    type: EventType
    project_id: int
    user_id: int
    username: str
    avatar: str = ""
    data: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def is_system(self) -> bool:
        return self.user_id == SYSTEM_USER_ID and self.username == SYSTEM_USERNAME

    def to_wire(self) -> str:
        return self.model_dump_json()


class InboundFrame(NamedTuple):
    type: EventType
    data: Any


def parse_event_type(value: str | EventType) -> EventType:
    """Return the :class:`EventType` for *value*.

    Raises:
        ValidationError: When *value* is not a known tag.
    """
    try:
        return EventType(value)
    except ValueError:
        raise ValidationError(f"Unknown event type: {value!r}") from None


def decode_frame(raw: str | bytes) -> InboundFrame | None:
    """Decode one inbound frame.

    Returns ``None`` for frames whose ``type`` is missing or unknown; those are
    dropped without closing the connection.

    Raises:
        ValidationError: When *raw* is not a JSON object.
    """
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise ValidationError(f"Malformed frame: {exc}") from exc
    if not isinstance(body, dict):
        raise ValidationError("Frame must be a JSON object")

    tag = body.get("type")
    if not isinstance(tag, str):
        logger.debug("Dropping frame without a type")
        return None
    try:
        event_type = EventType(tag)
    except ValueError:
        logger.debug("Dropping frame with unknown type %r", tag)
        return None
    return InboundFrame(event_type, body.get("data"))
