"""
Domain events and the dispatcher that delivers them.

Every event produced from a console stream is a small pydantic model tagged
with an ``RCEEvent`` kind. Consumers register handlers per kind on an
``EventDispatcher``; the manager owns exactly one dispatcher and every
component publishes through it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import Server

logger = logging.getLogger("rce-manager.events")


class RCEEvent(str, Enum):
    """Kinds of event a handler can subscribe to."""

    PLAYERLIST_UPDATE = "playerlist_update"
    MESSAGE = "message"
    PLAYER_KILL = "player_kill"
    QUICK_CHAT = "quick_chat"
    PLAYER_JOINED = "player_joined"
    PLAYER_ROLE_ADD = "player_role_add"
    NOTE_EDIT = "note_edit"
    EVENT_START = "event_start"
    SERVICE_SENSOR = "service_sensor"
    SERVER_READY = "server_ready"
    ERROR = "error"


class Event(BaseModel):
    """Base for every emitted event."""

    kind: ClassVar[RCEEvent]

    server: Optional[Server] = None


class PopulationUpdate(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.PLAYERLIST_UPDATE

    players: list[str] = Field(default_factory=list)


class Message(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.MESSAGE

    message: str


class PlayerKill(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.PLAYER_KILL

    victim: str
    killer: str


class QuickChat(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.QUICK_CHAT

    type: Literal["local", "server"]
    name: str
    message: str


class PlayerJoined(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.PLAYER_JOINED

    name: str
    platform: Literal["XBL", "PS"]


class PlayerRoleAdd(Event):
    """A player was granted a role.

    ``name`` and ``role`` carry the bracketed log tokens with the brackets
    stripped, e.g. ``Alice`` and ``Admin`` rather than ``[Alice]`` and
    ``[Admin]``.
    """

    kind: ClassVar[RCEEvent] = RCEEvent.PLAYER_ROLE_ADD

    name: str
    role: str


class NoteEdit(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.NOTE_EDIT

    name: str
    old_content: str
    new_content: str


class EventStart(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.EVENT_START

    label: str


class ServiceSensor(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.SERVICE_SENSOR

    cpu_percentage: float
    memory_used: float


class ServerReady(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.SERVER_READY

    ready: bool


class ErrorEvent(Event):
    kind: ClassVar[RCEEvent] = RCEEvent.ERROR

    error: str


Handler = Callable[[Any], Any]


class EventDispatcher:
    """
    Publish/subscribe hub for domain events.

    Handlers are called in registration order. A handler may be a coroutine
    function; its coroutine is scheduled as a task on the running loop and
    tracked until it finishes. Exceptions raised by handlers are logged and
    never reach the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[RCEEvent, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(
        self, kind: Union[RCEEvent, str], handler: Handler
    ) -> Callable[[], bool]:
        """
        Register a handler for one kind of event.

        Args:
            kind: An ``RCEEvent`` member or its string value
            handler: Callable receiving the event

        Returns:
            A zero-argument callable that removes the handler again
        """
        event_kind = RCEEvent(kind)
        self._handlers[event_kind].append(handler)
        return lambda: self.unsubscribe(event_kind, handler)

    def unsubscribe(self, kind: Union[RCEEvent, str], handler: Handler) -> bool:
        """Remove a handler; returns False if it was not registered."""
        handlers = self._handlers.get(RCEEvent(kind), [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def handler_count(self, kind: Union[RCEEvent, str]) -> int:
        return len(self._handlers.get(RCEEvent(kind), []))

    def emit(self, event: Event) -> int:
        """
        Deliver an event to every handler registered for its kind.

        Returns:
            Number of handlers invoked
        """
        handlers = list(self._handlers.get(event.kind, []))
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.error(f"Event handler for {event.kind.value} failed: {e}")
        return len(handlers)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async event handler failed: {exc}")

    async def drain(self) -> None:
        """Wait for every in-flight async handler to finish."""
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)

    def clear(self) -> None:
        """Remove all handlers and cancel in-flight async handlers."""
        self._handlers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


__all__ = [
    "RCEEvent",
    "Event",
    "PopulationUpdate",
    "Message",
    "PlayerKill",
    "QuickChat",
    "PlayerJoined",
    "PlayerRoleAdd",
    "NoteEdit",
    "EventStart",
    "ServiceSensor",
    "ServerReady",
    "ErrorEvent",
    "EventDispatcher",
]
