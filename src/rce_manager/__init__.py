"""
rce-manager - live G-Portal console sessions for Rust Console Edition servers.
"""

from .config import ManagerConfig, setup_logging
from .errors import AuthError, CommandError, ParseError, RCEError, TransportError
from .events import (
    ErrorEvent,
    Event,
    EventDispatcher,
    EventStart,
    Message,
    NoteEdit,
    PlayerJoined,
    PlayerKill,
    PlayerRoleAdd,
    PopulationUpdate,
    QuickChat,
    RCEEvent,
    ServerReady,
    ServiceSensor,
)
from .manager import RCEManager
from .models import Credential, Server, ServerOptions
from .parser import LogEventParser

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("rce-manager")
except Exception:
    __version__ = "0.1.0"  # Fallback if metadata unavailable

__all__ = [
    "RCEManager",
    "ManagerConfig",
    "ServerOptions",
    "Server",
    "Credential",
    "LogEventParser",
    "setup_logging",
    # Events
    "RCEEvent",
    "Event",
    "EventDispatcher",
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
    # Errors
    "RCEError",
    "AuthError",
    "TransportError",
    "CommandError",
    "ParseError",
]
