"""
Out-of-band GraphQL calls and server registration.

CommandChannel talks to the G-Portal GraphQL endpoint over HTTP to resolve
a game server's sid and to send console commands, and uses the websocket
session to start and stop the live subscriptions for each registered
server. Calls made while the websocket is down are queued on the session
and replayed, in order, when it reopens.

Commands are fire-and-forget: the caller learns only whether the HTTP call
succeeded.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .auth import TokenManager
from .constants import (
    CONSOLE_MESSAGES_SUBSCRIPTION,
    LIST_PLAYERS_COMMAND,
    REQUEST_TIMEOUT,
    SEND_CONSOLE_MESSAGE_MUTATION,
    SERVICE_SENSORS_SUBSCRIPTION,
    SID_QUERY,
    FrameType,
    GPortalRoutes,
)
from .errors import CommandError, TransportError
from .events import ErrorEvent, EventDispatcher, ServerReady
from .models import (
    PendingSubscription,
    RemoteId,
    Server,
    ServerOptions,
    SubscriptionStream,
    correlation_id_for,
)
from .registry import ServerRegistry, SubscriptionRegistry
from .scheduler import TaskScheduler
from .session import ConnectionSession

logger = logging.getLogger("rce-manager.commands")

# stream -> (operationName, subscription document)
SUBSCRIPTION_DOCUMENTS = {
    SubscriptionStream.CONSOLE: ("consoleMessages", CONSOLE_MESSAGES_SUBSCRIPTION),
    SubscriptionStream.SERVICE_SENSORS: ("serviceSensors", SERVICE_SENSORS_SUBSCRIPTION),
}


def refresh_task_name(identifier: str) -> str:
    return f"refresh-players:{identifier}"


class CommandChannel:
    """
    Registers servers and sends console commands.

    Attributes:
        _session: Websocket session used for subscription frames and queueing
        _servers: Registry of known servers
        _subscriptions: Registry used to route inbound frames
        _tasks: Per-server player refresh timers
    """

    def __init__(
        self,
        token_manager: TokenManager,
        session: ConnectionSession,
        servers: ServerRegistry,
        subscriptions: SubscriptionRegistry,
        dispatcher: EventDispatcher,
        http: httpx.AsyncClient,
        *,
        command_url: str = GPortalRoutes.COMMAND,
        request_timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._token_manager = token_manager
        self._session = session
        self._servers = servers
        self._subscriptions = subscriptions
        self._dispatcher = dispatcher
        self._http = http
        self._command_url = command_url
        self._request_timeout = request_timeout
        self._tasks = TaskScheduler("commands")

        session.add_open_hook(self.resubscribe)

    async def _graphql(
        self, operation_name: str, variables: dict[str, Any], query: str
    ) -> dict[str, Any]:
        """
        POST one GraphQL operation.

        Raises:
            CommandError: If there is no access token, the request fails, or
                the response is not a JSON object
        """
        if not self._token_manager.access_token:
            raise CommandError("No access token")

        try:
            response = await self._http.post(
                self._command_url,
                json={
                    "operationName": operation_name,
                    "variables": variables,
                    "query": query,
                },
                headers={"Authorization": self._token_manager.authorization},
                timeout=self._request_timeout,
            )
        except httpx.RequestError as e:
            raise CommandError(f"Request failed: {e}") from None

        if response.is_error:
            raise CommandError(f"HTTP {response.status_code} {response.reason_phrase}")

        try:
            body = response.json()
        except ValueError:
            raise CommandError("Response is not valid JSON") from None
        if not isinstance(body, dict):
            raise CommandError("Response is not a JSON object")
        return body

    async def resolve_remote_id(self, region: str, server_id: RemoteId) -> Optional[RemoteId]:
        """
        Look up the sid G-Portal uses for a game server.

        Returns:
            The sid, or None if it could not be resolved
        """
        try:
            body = await self._graphql(
                "sid",
                {"gameserverId": server_id, "region": region},
                SID_QUERY,
            )
        except CommandError as e:
            logger.error(f"Failed to resolve server ID: {e}")
            return None

        data = body.get("data")
        sid = data.get("sid") if isinstance(data, dict) else None
        if sid is None:
            logger.error(f"Failed to resolve server ID: no sid for {region}/{server_id}")
        return sid

    async def send_command(
        self,
        identifier: str,
        command: str,
        *,
        queue_if_disconnected: bool = True,
    ) -> bool:
        """
        Send a console command to a registered server.

        While the websocket is down the command is queued and replayed once
        it reopens; the call itself then returns False.

        Args:
            identifier: The server identifier
            command: Console command text, sent verbatim
            queue_if_disconnected: Defer the command instead of dropping it

        Returns:
            True if G-Portal accepted the request
        """
        if not self._session.is_open:
            if queue_if_disconnected:
                self._session.enqueue(
                    lambda: self.send_command(identifier, command, queue_if_disconnected=False)
                )
                logger.warning(
                    f'Command "{command}" for {identifier} queued: no websocket connection'
                )
            else:
                logger.error("Failed to send command: No websocket connection")
            return False

        if not self._token_manager.access_token:
            logger.error("Failed to send command: No access token")
            return False

        server = self._servers.get(identifier)
        if server is None:
            logger.error(f"Failed to send command: No server found for ID {identifier}")
            return False

        logger.debug(f'Sending command "{command}" to {server.identifier}')
        try:
            body = await self._graphql(
                "sendConsoleMessage",
                {"sid": server.remote_id, "region": server.region, "message": command},
                SEND_CONSOLE_MESSAGE_MUTATION,
            )
        except CommandError as e:
            logger.error(f"Failed to send command: {e}")
            self._dispatcher.emit(
                ErrorEvent(server=server, error=f'Failed to send command "{command}": {e}')
            )
            return False

        data = body.get("data")
        result = data.get("sendConsoleMessage") if isinstance(data, dict) else None
        if isinstance(result, dict) and result.get("ok") is False:
            logger.warning(f'Command "{command}" was not acknowledged by {server.identifier}')
        logger.debug(f'Command "{command}" sent successfully')
        return True

    async def add_server(self, opts: ServerOptions) -> None:
        """
        Register a server and subscribe to its console.

        If the websocket is down, the server is recorded and the call is
        queued until the socket reopens.
        """
        if not self._session.is_open:
            if not self._servers.has(opts.identifier):
                self._servers.add(Server.from_options(opts))
            self._session.enqueue(lambda: self.add_server(opts))
            logger.warning(
                f'Failed to add server "{opts.identifier}" due to no websocket connection; '
                "added to queue"
            )
            return

        logger.debug(f'Adding server "{opts.identifier}"')
        remote_id = await self.resolve_remote_id(opts.region, opts.server_id)

        server = self._servers.get(opts.identifier)
        if server is None:
            server = self._servers.add(Server.from_options(opts))
        elif server.subscribed:
            await self._stop_subscriptions(server.identifier)
            server.subscribed = False

        server.server_id = opts.server_id
        server.region = opts.region
        server.refresh_players = opts.refresh_players
        server.service_sensors = opts.service_sensors
        server.remote_id = remote_id

        if remote_id is None:
            self._dispatcher.emit(
                ErrorEvent(server=server, error=f'Failed to resolve server "{server.identifier}"')
            )
            return

        try:
            await self._subscribe(server, SubscriptionStream.CONSOLE)
            if server.service_sensors:
                await self._subscribe(server, SubscriptionStream.SERVICE_SENSORS)
        except TransportError as e:
            logger.error(f'Failed to subscribe server "{server.identifier}": {e}')
            return

        server.subscribed = True
        self._dispatcher.emit(ServerReady(server=server, ready=True))

        task_name = refresh_task_name(server.identifier)
        if server.refresh_players:
            await self._refresh_players(server.identifier)
            self._tasks.call_every(
                task_name,
                server.refresh_players * 60,
                lambda: self._refresh_players(opts.identifier),
            )
        else:
            self._tasks.cancel(task_name)

        logger.info(f'Server "{server.identifier}" added successfully')

    async def remove_server(self, identifier: str) -> bool:
        """
        Unregister a server, stopping its subscriptions and refresh timer.

        Returns:
            False if the server was not registered
        """
        server = self._servers.get(identifier)
        if server is None:
            logger.warning(f"Cannot remove server: No server found for ID {identifier}")
            return False

        self._tasks.cancel(refresh_task_name(identifier))
        await self._stop_subscriptions(identifier)
        self._servers.remove(identifier)
        server.subscribed = False
        self._dispatcher.emit(ServerReady(server=server, ready=False))
        logger.info(f'Server "{identifier}" removed')
        return True

    async def resubscribe(self) -> None:
        """Subscribe every registered server that has no live subscription."""
        for server in self._servers.unsubscribed():
            if not self._session.is_open:
                break
            await self.add_server(server.to_options())

    def close(self) -> None:
        """Cancel every player refresh timer."""
        self._tasks.cancel_all()

    async def _subscribe(self, server: Server, stream: SubscriptionStream) -> None:
        correlation_id = correlation_id_for(server.identifier, stream)
        operation_name, query = SUBSCRIPTION_DOCUMENTS[stream]
        self._subscriptions.register(
            PendingSubscription(
                correlation_id=correlation_id,
                identifier=server.identifier,
                remote_id=server.remote_id,
                region=server.region,
                stream=stream,
            )
        )
        await self._session.send({
            "type": FrameType.START.value,
            "id": correlation_id,
            "payload": {
                "variables": {"sid": server.remote_id, "region": server.region},
                "extensions": {},
                "operationName": operation_name,
                "query": query,
            },
        })

    async def _stop_subscriptions(self, identifier: str) -> None:
        removed = self._subscriptions.remove_server(identifier)
        if not self._session.is_open:
            return
        for subscription in removed:
            try:
                await self._session.send({
                    "type": FrameType.STOP.value,
                    "id": subscription.correlation_id,
                })
            except TransportError as e:
                logger.warning(f"Failed to stop subscription {subscription.correlation_id}: {e}")

    async def _refresh_players(self, identifier: str) -> None:
        if not self._servers.has(identifier):
            self._tasks.cancel(refresh_task_name(identifier))
            return
        await self.send_command(identifier, LIST_PLAYERS_COMMAND, queue_if_disconnected=False)


__all__ = [
    "CommandChannel",
    "refresh_task_name",
]
