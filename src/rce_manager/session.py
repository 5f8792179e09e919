"""
Persistent websocket session to the G-Portal console gateway.

ConnectionSession authenticates through the TokenManager, opens the
``graphql-ws`` websocket and keeps it open: it sends the init frame and a
keep-alive every heartbeat interval, drains operations queued while the
socket was down, replays subscriptions through its open hooks, and
reconnects with bounded exponential backoff when the socket fails. The
backoff is reset once the gateway acknowledges the connection or delivers
data, not merely when the handshake completes.

Inbound frames are decoded one at a time; a malformed frame is logged and
dropped without affecting the frames that follow.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import WebSocketException

from .auth import TokenManager
from .constants import (
    AUTH_RETRY_DELAY,
    DEFAULT_CONNECT_TIMEOUT,
    HEARTBEAT_INTERVAL,
    WEBSOCKET_SUBPROTOCOL,
    FrameType,
    GPortalRoutes,
)
from .errors import ParseError, TransportError
from .events import ErrorEvent, EventDispatcher, PopulationUpdate, ServerReady
from .models import SubscriptionStream
from .parser import LogEventParser, parse_service_sensors
from .registry import ServerRegistry, SubscriptionRegistry
from .scheduler import Backoff, TaskScheduler

logger = logging.getLogger("rce-manager.session")

HEARTBEAT_TASK = "heartbeat"
AUTHENTICATE_TASK = "authenticate"

QueuedOperation = Callable[[], Awaitable[Any]]
OpenHook = Callable[[], Awaitable[Any]]


class ConnectionSession:
    """
    Owns the websocket and everything tied to its lifetime.

    Attributes:
        _ws: The open websocket, or None while disconnected
        _queue: Operations deferred until the socket opens, in FIFO order
        _open_hooks: Coroutine functions run after the queue is drained
        _runner: Task running the connect/read/reconnect loop
        _tasks: Heartbeat and authentication retry timers
    """

    def __init__(
        self,
        token_manager: TokenManager,
        servers: ServerRegistry,
        subscriptions: SubscriptionRegistry,
        dispatcher: EventDispatcher,
        *,
        parser: Optional[LogEventParser] = None,
        url: str = GPortalRoutes.WEBSOCKET,
        origin: str = GPortalRoutes.ORIGIN,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        auth_retry_delay: float = AUTH_RETRY_DELAY,
        backoff: Optional[Backoff] = None,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._token_manager = token_manager
        self._servers = servers
        self._subscriptions = subscriptions
        self._dispatcher = dispatcher
        self._parser = parser or LogEventParser()
        self._url = url
        self._origin = origin
        self._heartbeat_interval = heartbeat_interval
        self._auth_retry_delay = auth_retry_delay
        self._backoff = backoff or Backoff()
        self._connect = connect or websocket_connect

        self._ws: Any = None
        self._queue: deque[QueuedOperation] = deque()
        self._open_hooks: list[OpenHook] = []
        self._runner: Optional[asyncio.Task] = None
        self._opened = asyncio.Event()
        self._closed = False
        self._timeout = DEFAULT_CONNECT_TIMEOUT
        self._tasks = TaskScheduler("session")

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def add_open_hook(self, hook: OpenHook) -> None:
        """Run ``hook`` after every successful open, once the queue is drained."""
        self._open_hooks.append(hook)

    def enqueue(self, operation: QueuedOperation) -> None:
        """Defer an operation until the websocket is open again."""
        self._queue.append(operation)
        logger.debug(f"Queued operation ({len(self._queue)} pending)")

    async def connect(self, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> bool:
        """
        Authenticate and start the websocket runner.

        If authentication fails the whole sequence is retried after the
        auth retry delay.

        Args:
            timeout: Seconds allowed for each opening handshake

        Returns:
            True if the runner was started
        """
        if self._closed:
            logger.error("Cannot connect: session has been closed")
            return False

        self._timeout = timeout
        logger.debug("Attempting to authenticate")
        if not await self._token_manager.refresh():
            logger.error(
                f"Failed to authenticate; retrying in {self._auth_retry_delay:.0f}s"
            )
            self._tasks.call_later(
                AUTHENTICATE_TASK, self._auth_retry_delay, lambda: self.connect(timeout)
            )
            return False

        logger.info("Authenticated successfully")
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())
        return True

    async def wait_until_open(self, timeout: Optional[float] = None) -> bool:
        """Wait until the socket is open and its queue has been drained."""
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def send(self, frame: dict[str, Any]) -> None:
        """
        Send one JSON frame.

        Raises:
            TransportError: If the socket is not open or the send fails
        """
        ws = self._ws
        if ws is None:
            raise TransportError("No websocket connection")
        try:
            await ws.send(json.dumps(frame))
        except (WebSocketException, OSError) as e:
            raise TransportError(f"Failed to send frame: {e}") from None

    async def close(self) -> None:
        """Stop reconnecting, cancel every timer and close the socket."""
        if self._closed:
            return
        self._closed = True
        self._tasks.cancel_all()
        self._queue.clear()

        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                logger.warning(f"Error closing websocket: {e}")

        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        logger.info("Session closed")

    async def _run(self) -> None:
        while not self._closed:
            try:
                await self._connect_once()
            except (WebSocketException, OSError, asyncio.TimeoutError, TransportError) as e:
                logger.error(f"Websocket error: {e}")
            except Exception:
                logger.exception("Unexpected websocket failure")
            finally:
                self._on_transport_lost()

            if self._closed:
                break
            delay = self._backoff.next_delay()
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._backoff.attempts})")
            await asyncio.sleep(delay)

    async def _connect_once(self) -> None:
        logger.debug("Connecting to websocket")
        async with self._connect(
            self._url,
            subprotocols=[WEBSOCKET_SUBPROTOCOL],
            origin=self._origin,
            open_timeout=self._timeout,
        ) as ws:
            self._ws = ws
            logger.debug("Websocket connection established")
            await self._on_open()
            self._opened.set()

            async for raw in ws:
                self._handle_frame(raw)

        if not self._closed:
            logger.error("Websocket closed by remote")

    async def _on_open(self) -> None:
        await self._authenticate_transport()
        self._tasks.call_every(HEARTBEAT_TASK, self._heartbeat_interval, self._send_keepalive)
        await self._process_queue()
        for hook in list(self._open_hooks):
            try:
                await hook()
            except Exception as e:
                logger.error(f"Open hook failed: {e}")

    async def _authenticate_transport(self) -> None:
        logger.debug("Attempting to authenticate websocket")
        token = self._token_manager.access_token
        if not token:
            logger.error("Failed to authenticate websocket: No access token")
            return
        await self.send({
            "type": FrameType.INIT.value,
            "payload": {"authorization": token},
        })

    async def _send_keepalive(self) -> None:
        if not self.is_open:
            return
        logger.debug("Sending keep-alive message")
        try:
            await self.send({"type": FrameType.KEEP_ALIVE.value})
        except TransportError as e:
            logger.warning(f"Keep-alive failed: {e}")

    async def _process_queue(self) -> None:
        if self._queue:
            logger.debug(f"Processing {len(self._queue)} queued operations")
        while self._queue:
            operation = self._queue.popleft()
            try:
                await operation()
            except Exception as e:
                logger.error(f"Queued operation failed: {e}")

    def _on_transport_lost(self) -> None:
        self._ws = None
        self._opened.clear()
        self._tasks.cancel(HEARTBEAT_TASK)
        for server in self._servers.mark_all_unsubscribed():
            self._dispatcher.emit(ServerReady(server=server, ready=False))

    def _handle_frame(self, raw: Any) -> None:
        try:
            message = self._decode(raw)
            self._dispatch(message)
        except (ParseError, TypeError, ValueError, ValidationError) as e:
            logger.error(f"Failed to handle message: {e}")

    @staticmethod
    def _decode(raw: Any) -> dict[str, Any]:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ParseError(f"Invalid JSON frame: {e}") from None
        if not isinstance(message, dict):
            raise ParseError(f"Frame must be an object, got {type(message).__name__}")
        return message

    def _dispatch(self, message: dict[str, Any]) -> None:
        frame_type = message.get("type")
        if frame_type == FrameType.KEEP_ALIVE:
            return

        logger.debug(f"Received frame: type={frame_type} id={message.get('id')}")

        if frame_type == FrameType.ERROR:
            payload = message.get("payload")
            detail = payload.get("message") if isinstance(payload, dict) else payload
            logger.error(f"Websocket error: {detail}")
            self._dispatcher.emit(ErrorEvent(error=f"Websocket error: {detail}"))
        elif frame_type == FrameType.CONNECTION_ACK:
            self._backoff.reset()
            logger.debug("Websocket authenticated successfully")
        elif frame_type == FrameType.COMPLETE:
            logger.debug(f"Subscription {message.get('id')} completed")
        elif frame_type == FrameType.DATA:
            self._backoff.reset()
            self._handle_data(message)
        else:
            logger.debug(f"Ignoring frame of type {frame_type}")

    def _handle_data(self, message: dict[str, Any]) -> None:
        correlation_id = message.get("id")
        if not isinstance(correlation_id, str):
            raise ParseError(f"Data frame id must be a string, got {type(correlation_id).__name__}")
        subscription = self._subscriptions.resolve(correlation_id)
        if subscription is None:
            logger.error(f"Failed to handle message: No request found for ID {correlation_id}")
            return

        server = self._servers.get(subscription.identifier)
        if server is None:
            logger.error(
                f"Failed to handle message: No server found for ID {subscription.identifier}"
            )
            return

        payload = message.get("payload")
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ParseError(f"Data frame {correlation_id} carries no data")

        if subscription.stream is SubscriptionStream.SERVICE_SENSORS:
            events = [parse_service_sensors(data, server)]
        else:
            console = data.get("consoleMessages")
            if not isinstance(console, dict) or "message" not in console:
                raise ParseError(f"Data frame {correlation_id} has no consoleMessages")
            events = self._parser.parse(console["message"], server)

        for event in events:
            if isinstance(event, PopulationUpdate):
                self._servers.update_players(server.identifier, event.players)
            self._dispatcher.emit(event)


__all__ = [
    "ConnectionSession",
    "QueuedOperation",
]
