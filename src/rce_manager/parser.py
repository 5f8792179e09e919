"""
Console log parsing.

Turns one raw ``consoleMessages`` payload into an ordered list of events.
Parsing is pure: nothing here performs I/O or mutates the server passed in;
the session applies PopulationUpdate events to the registry itself.

Each recognizer is a row in ``LOG_RULES``: a predicate deciding whether a
line is relevant and an extractor building the event. Rows are evaluated
independently in table order, except the population row which consumes the
whole line.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import ParseError
from .events import (
    Event,
    EventStart,
    Message,
    NoteEdit,
    PlayerJoined,
    PlayerKill,
    PlayerRoleAdd,
    PopulationUpdate,
    QuickChat,
    ServiceSensor,
)
from .models import Server

logger = logging.getLogger("rce-manager.parser")

# Every console entry starts with this prefix; a payload carrying more than
# one entry is dropped.
LOG_PREFIX_PATTERN = re.compile(
    r"^\d{2}/\d{2}/\d{4} \d{2}:\d{2}:\d{2}:LOG:DEFAULT: ", re.MULTILINE
)

SYSTEM_COMMAND_PREFIX = "Executing console system command"

QUOTED_PATTERN = re.compile(r'"(.*?)"')
BRACKET_PATTERN = re.compile(r"\[(.*?)\]")
NOTE_EDIT_PATTERN = re.compile(
    r"\[NOTE PANEL\] Player \[ ([^\]]+) \] changed name from "
    r"\[\s*([\s\S]*?)\s*\] to \[\s*([\s\S]*?)\s*\]"
)

KILL_DELIMITER = " was killed by "
CHAT_DELIMITER = " : "
CHAT_TAGS = {
    "[CHAT LOCAL]": "local",
    "[CHAT SERVER]": "server",
}

# Later entries win when a line names several events
WORLD_EVENTS = (
    ("event_airdrop", "Airdrop"),
    ("event_cargoship", "Cargo Ship"),
    ("event_cargoheli", "Chinook"),
    ("event_helicopter", "Patrol Helicopter"),
)


@dataclass(frozen=True)
class LogRule:
    """A single recognizer: ``extract`` runs only when ``matches`` is true."""

    name: str
    matches: Callable[[str], bool]
    extract: Callable[[str, Optional[Server]], Optional[Event]]
    exclusive: bool = False


def is_population(line: str) -> bool:
    return line.startswith("<slot:")


def extract_population(line: str, server: Optional[Server] = None) -> PopulationUpdate:
    """The first quoted entry is the header placeholder and is dropped."""
    players = QUOTED_PATTERN.findall(line)[1:]
    return PopulationUpdate(server=server, players=players)


def extract_message(line: str, server: Optional[Server] = None) -> Message:
    return Message(server=server, message=line)


def is_kill(line: str) -> bool:
    return KILL_DELIMITER in line


def extract_kill(line: str, server: Optional[Server] = None) -> PlayerKill:
    victim, killer = line.split(KILL_DELIMITER, 1)
    return PlayerKill(server=server, victim=victim.strip(), killer=killer.strip())


def is_quick_chat(line: str) -> bool:
    return any(tag in line for tag in CHAT_TAGS)


def extract_quick_chat(line: str, server: Optional[Server] = None) -> QuickChat:
    tag = "[CHAT LOCAL]" if "[CHAT LOCAL]" in line else "[CHAT SERVER]"
    _, _, message = line.partition(CHAT_DELIMITER)
    after_tag = line.split(tag, 1)[1]
    name = after_tag.split(CHAT_DELIMITER, 1)[0].strip()
    return QuickChat(server=server, type=CHAT_TAGS[tag], name=name, message=message)


def is_player_joined(line: str) -> bool:
    return "joined [xboxone]" in line or "joined [ps4]" in line


def extract_player_joined(line: str, server: Optional[Server] = None) -> PlayerJoined:
    name = line.split(" joined ", 1)[0]
    platform = "XBL" if "[xboxone]" in line else "PS"
    return PlayerJoined(server=server, name=name, platform=platform)


def is_role_add(line: str) -> bool:
    return "Added" in line and BRACKET_PATTERN.search(line) is not None


def extract_role_add(line: str, server: Optional[Server] = None) -> Optional[PlayerRoleAdd]:
    """
    Name and role are the 2nd and 3rd bracketed tokens of the whole line.

    Both are returned without their surrounding brackets: ``[Alice]`` is
    reported as ``Alice``.
    """
    tokens = BRACKET_PATTERN.findall(line)
    if len(tokens) < 3:
        return None
    return PlayerRoleAdd(server=server, name=tokens[1], role=tokens[2])


def is_note_edit(line: str) -> bool:
    return NOTE_EDIT_PATTERN.search(line) is not None


def extract_note_edit(line: str, server: Optional[Server] = None) -> Optional[NoteEdit]:
    match = NOTE_EDIT_PATTERN.search(line)
    if match is None:
        return None
    return NoteEdit(
        server=server,
        name=match.group(1).strip(),
        old_content=match.group(2).strip(),
        new_content=match.group(3).strip(),
    )


def is_event_start(line: str) -> bool:
    return "[event]" in line


def extract_event_start(line: str, server: Optional[Server] = None) -> Optional[EventStart]:
    label = None
    for marker, name in WORLD_EVENTS:
        if marker in line:
            label = name
    if label is None:
        return None
    return EventStart(server=server, label=label)


LOG_RULES: tuple[LogRule, ...] = (
    LogRule("population", is_population, extract_population, exclusive=True),
    LogRule("message", lambda line: True, extract_message),
    LogRule("player_kill", is_kill, extract_kill),
    LogRule("quick_chat", is_quick_chat, extract_quick_chat),
    LogRule("player_joined", is_player_joined, extract_player_joined),
    LogRule("player_role_add", is_role_add, extract_role_add),
    LogRule("note_edit", is_note_edit, extract_note_edit),
    LogRule("event_start", is_event_start, extract_event_start),
)


def split_payload(payload: str) -> list[str]:
    """
    Split a console payload into trimmed log lines.

    Returns an empty list when the payload bundles more than one prefixed
    entry, and drops blank lines and echoed system commands.
    """
    segments = LOG_PREFIX_PATTERN.split(payload)
    if len(segments) > 2:
        logger.debug(f"Discarding batched console payload ({len(segments)} segments)")
        return []

    lines = []
    for segment in segments:
        line = segment.strip()
        if not line or line.startswith(SYSTEM_COMMAND_PREFIX):
            continue
        lines.append(line)
    return lines


class LogEventParser:
    """
    Applies a rule table to console payloads.

    Attributes:
        rules: Ordered recognizers; defaults to ``LOG_RULES``
    """

    def __init__(self, rules: tuple[LogRule, ...] = LOG_RULES) -> None:
        self.rules = rules

    def parse(self, payload: str, server: Optional[Server] = None) -> list[Event]:
        """
        Parse one raw payload.

        Args:
            payload: ``consoleMessages.message`` text
            server: Server the payload belongs to, attached to every event

        Returns:
            Events in line order, then rule order within a line
        """
        if not isinstance(payload, str):
            raise ParseError(f"Console payload must be a string, got {type(payload).__name__}")

        events: list[Event] = []
        for line in split_payload(payload):
            events.extend(self.parse_line(line, server))
        return events

    def parse_line(self, line: str, server: Optional[Server] = None) -> list[Event]:
        events: list[Event] = []
        for rule in self.rules:
            if not rule.matches(line):
                continue
            event = rule.extract(line, server)
            if event is not None:
                events.append(event)
            if rule.exclusive:
                break
        return events


def parse_service_sensors(data: dict[str, Any], server: Optional[Server] = None) -> ServiceSensor:
    """
    Build a ServiceSensor event from a ``serviceSensors`` data payload.

    Raises:
        ParseError: If the payload lacks cpuTotal or memory.used
    """
    try:
        sensors = data["serviceSensors"]
        cpu_total = float(sensors["cpuTotal"])
        memory_used = float(sensors["memory"]["used"])
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError(f"Malformed serviceSensors payload: {e}") from None

    return ServiceSensor(
        server=server,
        cpu_percentage=round(cpu_total, 2),
        memory_used=memory_used,
    )


__all__ = [
    "LogRule",
    "LOG_RULES",
    "LogEventParser",
    "split_payload",
    "parse_service_sensors",
]
