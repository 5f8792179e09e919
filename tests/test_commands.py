"""
Tests for CommandChannel.

The websocket session is a MagicMock so start/stop frames and queued
operations can be inspected directly; GraphQL calls go to GPortalStub.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from rce_manager.auth import TokenManager
from rce_manager.commands import CommandChannel, refresh_task_name
from rce_manager.errors import TransportError
from rce_manager.events import EventDispatcher, RCEEvent
from rce_manager.models import Server, ServerOptions, SubscriptionStream
from rce_manager.registry import ServerRegistry, SubscriptionRegistry
from rce_manager.scheduler import TaskScheduler
from rce_manager.session import ConnectionSession

from .helpers import collect


class Harness:
    """A CommandChannel wired to a fake session and the stub API."""

    def __init__(self, gportal, is_open=True):
        self.gportal = gportal
        self.session = MagicMock(spec=ConnectionSession)
        self.session.is_open = is_open
        self.session.send = AsyncMock()
        self.queued = []
        self.session.enqueue.side_effect = self.queued.append

        self.auth = TokenManager("refresh", gportal.client(), scheduler=MagicMock(spec=TaskScheduler))
        self.auth.credential.access_token = "tok"
        self.servers = ServerRegistry()
        self.subscriptions = SubscriptionRegistry()
        self.events = EventDispatcher()
        self.channel = CommandChannel(
            self.auth,
            self.session,
            self.servers,
            self.subscriptions,
            self.events,
            gportal.client(),
        )

    def frames(self, frame_type=None):
        sent = [c.args[0] for c in self.session.send.await_args_list]
        if frame_type is None:
            return sent
        return [frame for frame in sent if frame["type"] == frame_type]

    async def replay_queue(self):
        self.session.is_open = True
        while self.queued:
            await self.queued.pop(0)()


@pytest.fixture
def harness(gportal):
    return Harness(gportal)


@pytest.fixture
def registered(harness):
    harness.servers.add(Server(identifier="eu-main", server_id=1234567, region="EU", remote_id=4242))
    return harness


class TestSendCommand:
    """Tests for CommandChannel.send_command."""

    @pytest.mark.asyncio
    async def test_sends_console_message(self, registered):
        assert await registered.channel.send_command("eu-main", "say hello") is True

        body = registered.gportal.graphql[-1]
        assert body["operationName"] == "sendConsoleMessage"
        assert body["variables"] == {"sid": 4242, "region": "EU", "message": "say hello"}
        assert "sendConsoleMessage" in body["query"]
        assert registered.gportal.authorizations[-1] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_unknown_server(self, harness):
        assert await harness.channel.send_command("missing", "say hello") is False
        assert harness.gportal.graphql == []

    @pytest.mark.asyncio
    async def test_no_access_token(self, registered):
        registered.auth.credential.access_token = ""

        assert await registered.channel.send_command("eu-main", "say hello") is False
        assert registered.gportal.graphql == []

    @pytest.mark.asyncio
    async def test_http_error_emits_error_event(self, registered):
        registered.gportal.command_status = 500
        errors = collect(registered.events, RCEEvent.ERROR)

        assert await registered.channel.send_command("eu-main", "say hello") is False
        assert len(errors) == 1
        assert errors[0].server.identifier == "eu-main"
        assert "say hello" in errors[0].error

    @pytest.mark.asyncio
    async def test_queued_while_disconnected(self, registered):
        registered.session.is_open = False

        assert await registered.channel.send_command("eu-main", "say one") is False
        assert await registered.channel.send_command("eu-main", "say two") is False
        assert registered.gportal.graphql == []
        assert len(registered.queued) == 2

        await registered.replay_queue()

        messages = [body["variables"]["message"] for body in registered.gportal.graphql]
        assert messages == ["say one", "say two"]

    @pytest.mark.asyncio
    async def test_not_queued_when_disabled(self, registered):
        registered.session.is_open = False

        result = await registered.channel.send_command(
            "eu-main", "Users", queue_if_disconnected=False
        )

        assert result is False
        assert registered.queued == []


class TestAddServer:
    """Tests for CommandChannel.add_server."""

    @pytest.mark.asyncio
    async def test_resolves_and_subscribes(self, harness, eu_server):
        ready = collect(harness.events, RCEEvent.SERVER_READY)

        await harness.channel.add_server(eu_server)

        lookup = harness.gportal.graphql[0]
        assert lookup["operationName"] == "sid"
        assert lookup["variables"] == {"gameserverId": 1234567, "region": "EU"}

        start = harness.frames("start")
        assert len(start) == 1
        assert start[0]["id"] == "eu-main"
        assert start[0]["payload"]["variables"] == {"sid": 4242, "region": "EU"}
        assert start[0]["payload"]["operationName"] == "consoleMessages"
        assert start[0]["payload"]["extensions"] == {}

        server = harness.servers.get("eu-main")
        assert server.remote_id == 4242
        assert server.subscribed is True
        assert harness.subscriptions.resolve("eu-main").identifier == "eu-main"
        assert [event.ready for event in ready] == [True]

    @pytest.mark.asyncio
    async def test_service_sensors_subscription(self, harness):
        opts = ServerOptions(identifier="eu-main", server_id=1, region="EU", service_sensors=True)

        await harness.channel.add_server(opts)

        ids = [frame["id"] for frame in harness.frames("start")]
        assert ids == ["eu-main", "eu-main:sensors"]
        assert harness.subscriptions.resolve("eu-main:sensors").stream is SubscriptionStream.SERVICE_SENSORS

    @pytest.mark.asyncio
    async def test_adding_twice_replaces_subscription(self, harness, eu_server):
        await harness.channel.add_server(eu_server)
        harness.servers.update_players("eu-main", ["Alice"])
        await harness.channel.add_server(eu_server)

        assert [frame["type"] for frame in harness.frames()] == ["start", "stop", "start"]
        assert len(harness.subscriptions) == 1
        assert len(harness.servers) == 1
        assert harness.servers.get("eu-main").players == ["Alice"]

    @pytest.mark.asyncio
    async def test_unresolved_server_not_subscribed(self, harness, eu_server):
        harness.gportal.sid = None
        errors = collect(harness.events, RCEEvent.ERROR)

        await harness.channel.add_server(eu_server)

        assert harness.frames() == []
        assert harness.servers.get("eu-main").subscribed is False
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_subscribe_failure_leaves_server_unsubscribed(self, harness, eu_server):
        harness.session.send.side_effect = TransportError("No websocket connection")

        await harness.channel.add_server(eu_server)

        assert harness.servers.get("eu-main").subscribed is False

    @pytest.mark.asyncio
    async def test_queued_while_disconnected(self, gportal, eu_server):
        harness = Harness(gportal, is_open=False)

        await harness.channel.add_server(eu_server)

        assert harness.servers.get("eu-main").subscribed is False
        assert gportal.graphql == []
        assert len(harness.queued) == 1

        await harness.replay_queue()
        assert harness.servers.get("eu-main").subscribed is True
        assert len(harness.frames("start")) == 1

    @pytest.mark.asyncio
    async def test_player_refresh(self, harness):
        opts = ServerOptions(identifier="eu-main", server_id=1, region="EU", refresh_players=5)

        await harness.channel.add_server(opts)

        assert harness.gportal.operations() == ["sid", "sendConsoleMessage"]
        assert harness.gportal.graphql[-1]["variables"]["message"] == "Users"
        assert harness.channel._tasks.is_scheduled(refresh_task_name("eu-main"))

        harness.channel.close()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_refresh_disabled_on_readd(self, harness):
        await harness.channel.add_server(
            ServerOptions(identifier="eu-main", server_id=1, region="EU", refresh_players=5)
        )
        await harness.channel.add_server(ServerOptions(identifier="eu-main", server_id=1, region="EU"))
        await asyncio.sleep(0)

        assert not harness.channel._tasks.is_scheduled(refresh_task_name("eu-main"))


class TestRemoveServer:
    """Tests for CommandChannel.remove_server."""

    @pytest.mark.asyncio
    async def test_stops_subscriptions(self, harness):
        await harness.channel.add_server(
            ServerOptions(identifier="eu-main", server_id=1, region="EU", service_sensors=True)
        )
        ready = collect(harness.events, RCEEvent.SERVER_READY)

        assert await harness.channel.remove_server("eu-main") is True

        stopped = sorted(frame["id"] for frame in harness.frames("stop"))
        assert stopped == ["eu-main", "eu-main:sensors"]
        assert len(harness.subscriptions) == 0
        assert not harness.servers.has("eu-main")
        assert [event.ready for event in ready] == [False]

    @pytest.mark.asyncio
    async def test_unknown_server(self, harness):
        assert await harness.channel.remove_server("missing") is False


class TestResubscribe:
    """Tests for CommandChannel.resubscribe."""

    def test_registered_as_open_hook(self, harness):
        harness.session.add_open_hook.assert_called_once_with(harness.channel.resubscribe)

    @pytest.mark.asyncio
    async def test_only_unsubscribed_servers(self, harness):
        harness.servers.add(Server(identifier="live", server_id=1, region="EU", subscribed=True))
        harness.servers.add(Server(identifier="stale", server_id=2, region="US"))

        await harness.channel.resubscribe()

        assert [frame["id"] for frame in harness.frames("start")] == ["stale"]
        assert harness.servers.get("stale").subscribed is True
