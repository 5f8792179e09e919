"""
Test doubles for the G-Portal HTTP API and the websocket transport.

GPortalStub answers token and GraphQL requests through httpx.MockTransport.
FakeConnector replaces ``websockets.asyncio.client.connect`` and hands out
FakeWebSocket objects whose inbound frames are fed by the test.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, Callable, Optional, Union
from urllib.parse import parse_qs

import httpx

from rce_manager.events import EventDispatcher, RCEEvent


class GPortalStub:
    """
    Scripted G-Portal endpoints.

    Attributes:
        token_statuses: Status codes returned by successive token requests
            (200 once exhausted)
        refresh_tokens_seen: refresh_token form values in request order
        graphql: Decoded GraphQL request bodies in request order
        authorizations: Authorization headers sent with GraphQL requests
    """

    def __init__(self) -> None:
        self.token_statuses: deque[int] = deque()
        self.token_error: Optional[Exception] = None
        self.refresh_tokens_seen: list[str] = []
        self.token_count = 0
        self.expires_in = 300
        self.graphql: list[dict[str, Any]] = []
        self.authorizations: list[str] = []
        self.sid: Any = 4242
        self.command_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.g-portal.com":
            return self._token(request)
        return self._graphql(request)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_error is not None:
            raise self.token_error
        form = parse_qs(request.content.decode())
        self.refresh_tokens_seen.append(form["refresh_token"][0])
        status = self.token_statuses.popleft() if self.token_statuses else 200
        if status >= 400:
            return httpx.Response(status, json={"error": "invalid_grant"})
        self.token_count += 1
        return httpx.Response(200, json={
            "access_token": f"access-{self.token_count}",
            "refresh_token": f"refresh-{self.token_count}",
            "token_type": "Bearer",
            "expires_in": self.expires_in,
        })

    def _graphql(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.graphql.append(body)
        self.authorizations.append(request.headers.get("Authorization", ""))
        if body["operationName"] == "sid":
            return httpx.Response(200, json={"data": {"sid": self.sid}})
        if body["operationName"] == "sendConsoleMessage":
            return httpx.Response(
                self.command_status,
                json={"data": {"sendConsoleMessage": {"ok": True, "__typename": "ok"}}},
            )
        return httpx.Response(400, json={"errors": [{"message": "unknown operation"}]})

    def operations(self) -> list[str]:
        return [body["operationName"] for body in self.graphql]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeWebSocket:
    """In-memory websocket: records sent frames, yields fed frames."""

    def __init__(self, preload: Optional[list[str]] = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        for raw in preload or []:
            self._incoming.put_nowait(raw)

    async def send(self, data: str) -> None:
        if self.closed:
            raise OSError("socket is closed")
        self.sent.append(json.loads(data))

    def feed(self, frame: Union[dict[str, Any], str]) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate the remote end closing the connection."""
        self._incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            self.closed = True
            raise StopAsyncIteration
        return item

    def frames(self, frame_type: str) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("type") == frame_type]


class _FakeConnection:
    def __init__(self, connector: "FakeConnector") -> None:
        self._connector = connector

    async def __aenter__(self) -> FakeWebSocket:
        if self._connector.failures > 0:
            self._connector.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(self._connector.preload)
        self._connector.preload = []
        self._connector.sockets.append(ws)
        return ws

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class FakeConnector:
    """
    Drop-in for the websocket ``connect`` factory.

    Attributes:
        calls: (url, kwargs) for every connection attempt
        sockets: FakeWebSocket per successful attempt
        failures: Number of upcoming attempts that raise OSError
        preload: Frames queued on the next socket before it is returned
    """

    def __init__(self, failures: int = 0) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.sockets: list[FakeWebSocket] = []
        self.failures = failures
        self.preload: list[str] = []

    def __call__(self, url: str, **kwargs: Any) -> _FakeConnection:
        self.calls.append((url, kwargs))
        return _FakeConnection(self)

    def queue_frame(self, frame: dict[str, Any]) -> None:
        self.preload.append(json.dumps(frame))

    @property
    def current(self) -> FakeWebSocket:
        return self.sockets[-1]


def console_frame(correlation_id: str, message: str) -> dict[str, Any]:
    """Build an inbound ``data`` frame carrying console text."""
    return {
        "type": "data",
        "id": correlation_id,
        "payload": {"data": {"consoleMessages": {"stream": "stdout", "message": message}}},
    }


def collect(dispatcher: EventDispatcher, kind: Union[RCEEvent, str]) -> list[Any]:
    """Subscribe a list-appending handler and return the list."""
    received: list[Any] = []
    dispatcher.subscribe(kind, received.append)
    return received


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
