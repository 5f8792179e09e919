"""
In-memory stores for registered servers and their subscriptions.

Both registries are mutated only from the manager's event loop, so they
carry no locks.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from .models import PendingSubscription, Server

logger = logging.getLogger("rce-manager.registry")


class ServerRegistry:
    """
    Maps server identifiers to Server records.

    Attributes:
        _servers: Dict mapping identifier -> Server, in registration order
    """

    def __init__(self) -> None:
        self._servers: dict[str, Server] = {}

    def add(self, server: Server) -> Server:
        """Store a server, replacing any record with the same identifier."""
        self._servers[server.identifier] = server
        return server

    def get(self, identifier: str) -> Optional[Server]:
        return self._servers.get(identifier)

    def has(self, identifier: str) -> bool:
        return identifier in self._servers

    def remove(self, identifier: str) -> Optional[Server]:
        return self._servers.pop(identifier, None)

    def update_players(self, identifier: str, players: list[str]) -> bool:
        """
        Replace a server's player list with a population snapshot.

        Returns:
            False if the server is not registered
        """
        server = self._servers.get(identifier)
        if server is None:
            return False
        server.players = list(players)
        return True

    def unsubscribed(self) -> list[Server]:
        return [server for server in self._servers.values() if not server.subscribed]

    def mark_all_unsubscribed(self) -> list[Server]:
        """
        Flag every server as needing a new subscription.

        Returns:
            The servers that were subscribed before the call
        """
        previously = [server for server in self._servers.values() if server.subscribed]
        for server in previously:
            server.subscribed = False
        return previously

    def __iter__(self) -> Iterator[Server]:
        return iter(list(self._servers.values()))

    def __len__(self) -> int:
        return len(self._servers)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._servers


class SubscriptionRegistry:
    """
    Maps websocket correlation ids to the subscription that opened them.

    Registering an id that is already present replaces the earlier entry,
    so each id resolves to exactly one server.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, PendingSubscription] = {}

    def register(self, subscription: PendingSubscription) -> bool:
        """
        Store a subscription.

        Returns:
            True if the correlation id was new, False if it replaced an entry
        """
        is_new = subscription.correlation_id not in self._subscriptions
        self._subscriptions[subscription.correlation_id] = subscription
        if not is_new:
            logger.debug(f"Replaced subscription {subscription.correlation_id}")
        return is_new

    def resolve(self, correlation_id: Optional[str]) -> Optional[PendingSubscription]:
        if correlation_id is None:
            return None
        return self._subscriptions.get(correlation_id)

    def for_server(self, identifier: str) -> list[PendingSubscription]:
        return [sub for sub in self._subscriptions.values() if sub.identifier == identifier]

    def remove(self, correlation_id: str) -> Optional[PendingSubscription]:
        return self._subscriptions.pop(correlation_id, None)

    def remove_server(self, identifier: str) -> list[PendingSubscription]:
        """Drop every subscription belonging to a server."""
        removed = self.for_server(identifier)
        for sub in removed:
            del self._subscriptions[sub.correlation_id]
        return removed

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._subscriptions


__all__ = [
    "ServerRegistry",
    "SubscriptionRegistry",
]
