"""
RCEManager: the public entry point.

Wires one TokenManager, ConnectionSession and CommandChannel around shared
registries and a single EventDispatcher, and exposes the operations an
application needs: start, stop, register servers, send commands and
subscribe to events.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Union

import httpx

from .auth import CredentialStore, TokenManager
from .commands import CommandChannel
from .config import ManagerConfig, setup_logging
from .constants import DEFAULT_CONNECT_TIMEOUT
from .events import EventDispatcher, RCEEvent
from .models import Server, ServerOptions
from .parser import LogEventParser
from .registry import ServerRegistry, SubscriptionRegistry
from .scheduler import Backoff
from .session import ConnectionSession

logger = logging.getLogger("rce-manager")


class RCEManager:
    """
    Manages live console sessions for several G-Portal game servers.

    Usage:
        manager = RCEManager(ManagerConfig(refresh_token="..."))
        manager.subscribe(RCEEvent.PLAYER_KILL, on_kill)
        await manager.init()
        await manager.add_server(ServerOptions(identifier="eu-1", server_id=123, region="EU"))
        await manager.send_command("eu-1", "say hello")
        await manager.close()

    Attributes:
        config: Settings this manager was built from
        events: Dispatcher every event is published on
        servers: Registered servers by identifier
        subscriptions: Live subscriptions by correlation id
        auth: Credential lifecycle
        session: Websocket session
        commands: GraphQL command channel
    """

    def __init__(
        self,
        config: ManagerConfig,
        *,
        http: Optional[httpx.AsyncClient] = None,
        connect: Optional[Callable[..., Any]] = None,
        configure_logging: bool = True,
    ) -> None:
        self.config = config
        if configure_logging:
            setup_logging(config.log_level, config.log_file)

        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=config.request_timeout)

        self.events = EventDispatcher()
        self.servers = ServerRegistry()
        self.subscriptions = SubscriptionRegistry()

        store = CredentialStore(config.auth_file) if config.save_auth else None
        self.auth = TokenManager(
            config.refresh_token,
            self._http,
            store=store,
            token_url=config.token_url,
            retry_delay=config.auth_retry_delay,
            request_timeout=config.request_timeout,
        )
        self.session = ConnectionSession(
            self.auth,
            self.servers,
            self.subscriptions,
            self.events,
            parser=LogEventParser(),
            url=config.websocket_url,
            origin=config.origin,
            heartbeat_interval=config.heartbeat_interval,
            auth_retry_delay=config.auth_retry_delay,
            backoff=Backoff(
                initial=config.reconnect_initial_delay,
                maximum=config.reconnect_max_delay,
            ),
            connect=connect,
        )
        self.commands = CommandChannel(
            self.auth,
            self.session,
            self.servers,
            self.subscriptions,
            self.events,
            self._http,
            command_url=config.command_url,
            request_timeout=config.request_timeout,
        )

        for opts in config.servers:
            self.servers.add(Server.from_options(opts))

    async def init(self, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> bool:
        """
        Log in to G-Portal and open the websocket.

        Servers from the config are subscribed as soon as the socket opens.
        A failed login is retried automatically.

        Args:
            timeout: Seconds allowed for the websocket handshake

        Returns:
            True if authentication succeeded and the socket is being opened
        """
        return await self.session.connect(timeout)

    async def close(self) -> None:
        """Cancel every timer, close the websocket and release the HTTP client."""
        self.commands.close()
        self.auth.close()
        await self.session.close()
        await self.events.drain()
        if self._owns_http:
            await self._http.aclose()

    async def add_server(self, opts: Union[ServerOptions, dict[str, Any]]) -> None:
        if not isinstance(opts, ServerOptions):
            opts = ServerOptions.model_validate(opts)
        await self.commands.add_server(opts)

    async def remove_server(self, identifier: str) -> bool:
        return await self.commands.remove_server(identifier)

    async def send_command(self, identifier: str, command: str) -> bool:
        """Send a console command; see CommandChannel.send_command."""
        return await self.commands.send_command(identifier, command)

    def get_server(self, identifier: str) -> Optional[Server]:
        return self.servers.get(identifier)

    def subscribe(
        self, kind: Union[RCEEvent, str], handler: Callable[[Any], Any]
    ) -> Callable[[], bool]:
        """Register an event handler; returns a callable that removes it."""
        return self.events.subscribe(kind, handler)

    async def __aenter__(self) -> "RCEManager":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = [
    "RCEManager",
]
