import logging
from datetime import datetime
from typing import Callable, Optional
from fastapi import WebSocket
from sqlalchemy.exc import SQLAlchemyError

from db import Message
from command_parser import (
    CommandContext, Command, parse_command,
    ListCommands, CompleteTask, AddSchedule, AddProject, AddTask,
)
from errors import RoomChatError, PersistenceError, format_notice
from project_handler import ProjectCommandHandler, TASK_USAGE
from schedule_handler import add_schedule, schedule_saved_notice, SCHEDULE_USAGE
from websocket_manager import ConnectionManager

logger = logging.getLogger(__name__)

COMMAND_HELP = [
    {
        "command": "!commands",
        "format": "!commands",
        "description": "Show every available command.",
    },
    {
        "command": "!schedule",
        "format": SCHEDULE_USAGE,
        "description": "Add a new schedule to the room calendar.",
    },
    {
        "command": "!project",
        "format": "!project [project name]",
        "description": "Register a new project (or check that it exists).",
    },
    {
        "command": "!task",
        "format": TASK_USAGE,
        "description": "Add a task to a project, or update the task with that title.",
    },
    {
        "command": "!done",
        "format": "!done [project], [task title]",
        "description": "Mark a task as completed.",
    },
]

def help_text() -> str:
    lines = ["📖 Available commands"]
    for entry in COMMAND_HELP:
        lines.append(f"{entry['command']}: {entry['format']}")
        lines.append(f"    {entry['description']}")
    return "\n".join(lines)

def system_payload(text: str) -> dict:
    return {"type": "system", "message": text}

class CommandDispatcher:
    """
    Routes chat lines from a room connection to their handlers.

    Every failure turns into a notice: input problems go to the sender only
    unless the error says otherwise, and nothing is raised back to the socket
    loop.
    """

    def __init__(self, manager: ConnectionManager, session_factory: Callable, projects: Optional[ProjectCommandHandler] = None):
        self.manager = manager
        self.session_factory = session_factory
        self.projects = projects or ProjectCommandHandler()

    async def notify(self, websocket: WebSocket, room_code: str, text: str, room_wide: bool):
        if room_wide:
            await self.manager.broadcast(room_code, system_payload(text))
        else:
            await self.manager.send_personal(websocket, system_payload(text))

    async def handle_line(self, websocket: WebSocket, context: CommandContext, raw: str, now: Optional[datetime] = None) -> Command:
        """Parse one line and apply it. Returns the parsed command."""
        command = parse_command(raw, context)
        if not command.text:
            return command

        try:
            if isinstance(command, ListCommands):
                await self.manager.send_personal(websocket, system_payload(help_text()))
            elif isinstance(command, AddSchedule):
                await self._add_schedule(command, now)
            elif isinstance(command, AddProject):
                await self._add_project(command)
            elif isinstance(command, AddTask):
                await self._add_task(command)
            elif isinstance(command, CompleteTask):
                await self._complete_task(websocket, command)
            else:
                await self._post_chat(websocket, command.context, command.text)
        except RoomChatError as e:
            logger.info("Command %r in room %s rejected: %s", command.text, context.room_code, e.message)
            await self.notify(websocket, context.room_code, format_notice(e), e.room_wide)
        except SQLAlchemyError as e:
            logger.exception("Unexpected storage failure for %r in room %s", command.text, context.room_code)
            await self.notify(websocket, context.room_code, format_notice(PersistenceError(str(e))), False)
        return command

    async def _add_schedule(self, command: AddSchedule, now: Optional[datetime]):
        async with self.session_factory() as session:
            schedule = await add_schedule(session, command, now)
        room_code = command.context.room_code
        await self.manager.broadcast(room_code, system_payload(schedule_saved_notice(schedule, command.context.username)))
        await self.manager.broadcast(room_code, {"type": "schedules_updated"})

    async def _add_project(self, command: AddProject):
        async with self.session_factory() as session:
            result = await self.projects.create_project(session, command)
        room_code = command.context.room_code
        await self.manager.broadcast(room_code, system_payload(result.notice))
        if result.changed:
            await self.manager.broadcast(room_code, {"type": "projects_updated"})

    async def _add_task(self, command: AddTask):
        async with self.session_factory() as session:
            result = await self.projects.upsert_task(session, command)
        room_code = command.context.room_code
        await self.manager.broadcast(room_code, system_payload(result.notice))
        await self.manager.broadcast(room_code, {"type": "projects_updated"})

    async def _complete_task(self, websocket: WebSocket, command: CompleteTask):
        async with self.session_factory() as session:
            result = await self.projects.complete_task_command(session, command.context, command.fields)
        await self.announce_completion(command.context.room_code, result)
        await self.manager.send_personal(websocket, system_payload(
            f"[Task completed] Task '{result.task.title}' of project '{result.project.name}' is now completed."
        ))

    async def announce_completion(self, room_code: str, result):
        await self.manager.broadcast(room_code, system_payload(result.notice))
        await self.manager.broadcast(room_code, {"type": "projects_updated"})

    async def _post_chat(self, websocket: WebSocket, context: CommandContext, content: str):
        """Persist a chat line and echo it to the other members of the room."""
        async with self.session_factory() as session:
            msg = Message(
                room_code=context.room_code,
                sender_id=context.sender_id,
                username=context.username,
                content=content,
                timestamp=datetime.now(),
            )
            try:
                session.add(msg)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.exception("Saving chat message in room %s failed", context.room_code)
                raise PersistenceError("your message was not saved") from e
        await self.manager.broadcast(context.room_code, {"type": "chat", "message": msg.to_dict()}, exclude=websocket)
