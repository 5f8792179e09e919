"""
Pydantic models for the manager's state.

Credential mirrors the token endpoint's JSON body so it can be validated
straight from the response and written back to the credential store
unchanged. Server and PendingSubscription are the per-console records kept
by the registries.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

RemoteId = Union[int, list[int]]
Region = Literal["EU", "US"]


class Credential(BaseModel):
    """The access/refresh token pair used for every outbound call."""

    refresh_token: str = Field(default="", description="Token used to obtain a new access token")
    access_token: str = Field(default="", description="Bearer token for API and websocket calls")
    token_type: str = Field(default="Bearer", description="Authorization scheme prefix")
    expires_in: int = Field(default=0, ge=0, description="Seconds until the access token expires")

    @property
    def authorization(self) -> str:
        """Value of the ``Authorization`` header for GraphQL calls."""
        return f"{self.token_type} {self.access_token}"


class ServerOptions(BaseModel):
    """Caller-supplied options for registering a game server."""

    identifier: str = Field(min_length=1, description="Caller-assigned unique key")
    server_id: RemoteId = Field(description="G-Portal game server id")
    region: Region = Field(description="Hosting region: EU or US")
    refresh_players: int = Field(
        default=0,
        ge=0,
        description="Minutes between 'Users' refreshes; 0 disables refreshing",
    )
    service_sensors: bool = Field(
        default=False,
        description="Also subscribe to CPU/memory sensor readings",
    )

    @field_validator("region", mode="before")
    @classmethod
    def normalize_region(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().upper()
        return v


class Server(BaseModel):
    """A registered remote console tracked by the manager."""

    identifier: str
    server_id: RemoteId
    region: Region
    remote_id: Optional[RemoteId] = Field(
        default=None,
        description="Resolved sid used in subscriptions and commands",
    )
    players: list[str] = Field(default_factory=list)
    subscribed: bool = False
    refresh_players: int = 0
    service_sensors: bool = False

    @classmethod
    def from_options(cls, opts: ServerOptions, remote_id: Optional[RemoteId] = None) -> "Server":
        return cls(
            identifier=opts.identifier,
            server_id=opts.server_id,
            region=opts.region,
            remote_id=remote_id,
            refresh_players=opts.refresh_players,
            service_sensors=opts.service_sensors,
        )

    def to_options(self) -> ServerOptions:
        """Rebuild the options this server was registered with."""
        return ServerOptions(
            identifier=self.identifier,
            server_id=self.server_id,
            region=self.region,
            refresh_players=self.refresh_players,
            service_sensors=self.service_sensors,
        )


class SubscriptionStream(str, Enum):
    """Which live stream a subscription carries."""

    CONSOLE = "console"
    SERVICE_SENSORS = "service_sensors"


def correlation_id_for(identifier: str, stream: SubscriptionStream) -> str:
    """Return the websocket ``id`` used for a server's stream.

    The console stream uses the server identifier itself.
    """
    if stream is SubscriptionStream.CONSOLE:
        return identifier
    return f"{identifier}:sensors"


class PendingSubscription(BaseModel):
    """Maps an inbound frame's ``id`` back to the server it belongs to."""

    correlation_id: str
    identifier: str
    remote_id: Optional[RemoteId] = None
    region: Region
    stream: SubscriptionStream = SubscriptionStream.CONSOLE


__all__ = [
    "Credential",
    "ServerOptions",
    "Server",
    "SubscriptionStream",
    "PendingSubscription",
    "correlation_id_for",
    "RemoteId",
    "Region",
]
