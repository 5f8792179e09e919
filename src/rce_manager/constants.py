"""
G-Portal endpoints, websocket frame types and GraphQL documents.
"""

from enum import Enum


class GPortalRoutes:
    """Provider URLs used by the manager."""

    REFRESH = "https://auth.g-portal.com/auth/realms/master/protocol/openid-connect/token"
    COMMAND = "https://www.g-portal.com/ngpapi/"
    WEBSOCKET = "wss://www.g-portal.com/ngpapi/"
    ORIGIN = "https://www.g-portal.com"


class FrameType(str, Enum):
    """graphql-ws frame types exchanged over the websocket."""

    INIT = "connection_init"
    KEEP_ALIVE = "ka"
    START = "start"
    STOP = "stop"
    CONNECTION_ACK = "connection_ack"
    DATA = "data"
    ERROR = "error"
    COMPLETE = "complete"


WEBSOCKET_SUBPROTOCOL = "graphql-ws"

# Client id the provider expects on refresh_token grants
TOKEN_CLIENT_ID = "website"

# Timing defaults, in seconds
HEARTBEAT_INTERVAL = 30.0
AUTH_RETRY_DELAY = 60.0
DEFAULT_CONNECT_TIMEOUT = 60.0
REQUEST_TIMEOUT = 10.0
RECONNECT_INITIAL_DELAY = 1.0
RECONNECT_MAX_DELAY = 60.0

# Console command used for periodic player list refreshes
LIST_PLAYERS_COMMAND = "Users"

SID_QUERY = (
    "query sid($gameserverId: Int!, $region: REGION!) {\n"
    "  sid(gameserverId: $gameserverId, region: $region)\n"
    "}"
)

SEND_CONSOLE_MESSAGE_MUTATION = (
    "mutation sendConsoleMessage($sid: Int!, $region: REGION!, $message: String!) {\n"
    "  sendConsoleMessage(rsid: {id: $sid, region: $region}, message: $message) {\n"
    "    ok\n"
    "    __typename\n"
    "  }\n"
    "}"
)

CONSOLE_MESSAGES_SUBSCRIPTION = (
    "subscription consoleMessages($sid: Int!, $region: REGION!) {\n"
    "  consoleMessages(rsid: {id: $sid, region: $region}) {\n"
    "    stream\n"
    "    message\n"
    "    __typename\n"
    "  }\n"
    "}"
)

SERVICE_SENSORS_SUBSCRIPTION = (
    "subscription serviceSensors($sid: Int!, $region: REGION!) {\n"
    "  serviceSensors(rsid: {id: $sid, region: $region}) {\n"
    "    cpuTotal\n"
    "    memory {\n"
    "      used\n"
    "      __typename\n"
    "    }\n"
    "    __typename\n"
    "  }\n"
    "}"
)
