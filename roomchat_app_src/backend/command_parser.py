import re
import unicodedata
from dataclasses import dataclass, field
from typing import List, Optional, Union

@dataclass(frozen=True)
class CommandContext:
    """Who sent a line and in which room."""
    room_code: str
    sender_id: str
    username: str

@dataclass(frozen=True)
class ListCommands:
    context: CommandContext
    text: str

@dataclass(frozen=True)
class CompleteTask:
    context: CommandContext
    text: str
    fields: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class AddSchedule:
    context: CommandContext
    text: str
    fields: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class AddProject:
    context: CommandContext
    text: str
    name: str = ""

@dataclass(frozen=True)
class AddTask:
    context: CommandContext
    text: str
    fields: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class UnrecognizedCommand:
    """Plain chat: echoed, never interpreted."""
    context: CommandContext
    text: str

Command = Union[ListCommands, CompleteTask, AddSchedule, AddProject, AddTask, UnrecognizedCommand]

COMMAND_PREFIXES = {
    ListCommands: ("!commands", "!help", "!명령어"),
    CompleteTask: ("!done", "!과제완료"),
    AddSchedule: ("!schedule", "!일정"),
    AddProject: ("!project", "!프로젝트"),
    AddTask: ("!task", "!과제"),
}

# Longest first so "!과제완료" wins over "!과제"
_PREFIX_TABLE = sorted(
    ((prefix, kind) for kind, prefixes in COMMAND_PREFIXES.items() for prefix in prefixes),
    key=lambda item: len(item[0]),
    reverse=True,
)

def normalize_line(raw: str) -> str:
    """Drop line breaks, apply NFKC and trim, like the chat input box does."""
    line = re.sub(r"[\r\n]", "", raw or "")
    return unicodedata.normalize("NFKC", line).strip()

def split_fields(remainder: str) -> List[str]:
    remainder = remainder.strip()
    if not remainder:
        return []
    return [part.strip() for part in remainder.split(",")]

def match_prefix(line: str) -> Optional[tuple]:
    for prefix, kind in _PREFIX_TABLE:
        if not line.startswith(prefix):
            continue
        rest = line[len(prefix):]
        # "!tasks" is chat, "!task x" and "!task" are commands
        if rest and not rest[0].isspace():
            continue
        return kind, rest
    return None

def parse_command(raw: str, context: CommandContext) -> Command:
    """Classify a chat line by prefix and split its remainder on commas."""
    line = normalize_line(raw)
    matched = match_prefix(line)
    if matched is None:
        return UnrecognizedCommand(context=context, text=line)

    kind, rest = matched
    if kind is ListCommands:
        return ListCommands(context=context, text=line)
    if kind is AddProject:
        return AddProject(context=context, text=line, name=rest.strip())
    return kind(context=context, text=line, fields=split_fields(rest))
