import os
import json
import logging
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import select, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from dotenv import load_dotenv

from db import SessionLocal, init_db, User, Message, Schedule, Project
from auth import register, authenticate
from errors import (
    RoomChatError, ValidationError, NotFoundError, DuplicateError, AuthError, PersistenceError,
    format_notice,
)
from command_parser import CommandContext
from command_dispatcher import CommandDispatcher, COMMAND_HELP, system_payload
from digest import build_digest, render_digest
from schedule_handler import delete_schedule
from websocket_manager import ConnectionManager

load_dotenv()

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "50"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Room Chat Scheduler")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

manager = ConnectionManager()
dispatcher = CommandDispatcher(manager, SessionLocal)

# --------- Schemas ---------
class AuthPayload(BaseModel):
    username: str
    password: str

class CompleteTaskPayload(BaseModel):
    room: str
    project_name: str
    task_title: str

# --------- Dependencies ---------
async def get_db() -> AsyncSession:
    async with dispatcher.session_factory() as session:
        yield session

def require_room(room: Optional[str]) -> str:
    if not room or not room.strip():
        raise HTTPException(status_code=400, detail="room code is required")
    return room.strip()

# --------- Utilities ---------
ERROR_STATUS = {
    ValidationError: 400,
    DuplicateError: 400,
    AuthError: 401,
    NotFoundError: 404,
    PersistenceError: 503,
}

def to_http_error(e: RoomChatError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(type(e), 500), detail=format_notice(e))

# --------- Routes ---------
@app.on_event("startup")
async def on_startup():
    await init_db()
    logger.info("Database ready")

@app.post("/api/register")
async def register_user(payload: AuthPayload, session: AsyncSession = Depends(get_db)):
    try:
        user = await register(session, payload.username, payload.password)
    except RoomChatError as e:
        raise to_http_error(e)
    return {"success": True, "user_id": user.user_id, "username": user.username}

@app.post("/api/login")
async def login(payload: AuthPayload, session: AsyncSession = Depends(get_db)):
    try:
        user = await authenticate(session, payload.username, payload.password)
    except RoomChatError as e:
        raise to_http_error(e)
    return {"success": True, "user_id": user.user_id, "username": user.username}

@app.get("/api/messages/history")
async def get_history(room: Optional[str] = None, session: AsyncSession = Depends(get_db)):
    room = require_room(room)
    try:
        res = await session.execute(
            select(Message).where(Message.room_code == room)
            .order_by(desc(Message.timestamp), desc(Message.id)).limit(HISTORY_LIMIT)
        )
    except SQLAlchemyError as e:
        logger.exception("Loading history for room %s failed", room)
        raise to_http_error(PersistenceError("could not load the chat history")) from e
    items = list(reversed(res.scalars().all()))
    return {"success": True, "messages": [m.to_dict() for m in items]}

@app.get("/api/schedules")
async def get_schedules(room: Optional[str] = None, session: AsyncSession = Depends(get_db)):
    """Upcoming events of a room, earliest first."""
    room = require_room(room)
    try:
        res = await session.execute(
            select(Schedule).where(Schedule.room_code == room, Schedule.start_time > datetime.now())
            .order_by(Schedule.start_time, Schedule.id)
        )
    except SQLAlchemyError as e:
        logger.exception("Loading schedules for room %s failed", room)
        raise to_http_error(PersistenceError("could not load the schedules")) from e
    return {"success": True, "schedules": [s.to_dict() for s in res.scalars().all()]}

@app.delete("/api/schedules/{schedule_id}")
async def remove_schedule(schedule_id: int, session: AsyncSession = Depends(get_db)):
    try:
        schedule = await delete_schedule(session, schedule_id)
    except RoomChatError as e:
        raise to_http_error(e)
    await manager.broadcast(schedule.room_code, {"type": "schedules_updated"})
    return {"success": True, "message": "schedule deleted"}

@app.get("/api/projects")
async def get_projects(room: Optional[str] = None, session: AsyncSession = Depends(get_db)):
    room = require_room(room)
    try:
        res = await session.execute(select(Project).where(Project.room_code == room).order_by(Project.name))
    except SQLAlchemyError as e:
        logger.exception("Loading projects for room %s failed", room)
        raise to_http_error(PersistenceError("could not load the projects")) from e
    return {"success": True, "projects": [p.to_dict() for p in res.scalars().all()]}

@app.post("/api/tasks/complete")
async def complete_task(payload: CompleteTaskPayload, session: AsyncSession = Depends(get_db)):
    """Mark a task completed; the room hears about it over the socket."""
    room = payload.room.strip()
    try:
        result = await dispatcher.projects.complete_task(session, room, payload.project_name, payload.task_title)
    except RoomChatError as e:
        raise to_http_error(e)
    await dispatcher.announce_completion(room, result)
    return {
        "success": True,
        "message": "task completed",
        "project_name": result.project.name,
        "task_title": result.task.title,
        "progress": result.project.progress,
    }

@app.get("/api/digest")
async def get_digest(room: Optional[str] = None):
    room = require_room(room)
    return await build_digest(dispatcher.session_factory, room)

@app.get("/api/commands")
async def get_commands():
    return {"commands": COMMAND_HELP}

# --------- WebSocket ---------
async def join_room(websocket: WebSocket, data: dict) -> Optional[CommandContext]:
    """Validate a join frame, register the connection and greet it."""
    room = (data.get("room") or "").strip()
    user_id = data.get("user_id")
    if not room or not user_id:
        await manager.send_personal(websocket, system_payload(
            format_notice(ValidationError("room and user_id are required to join"))))
        return None

    try:
        async with dispatcher.session_factory() as session:
            res = await session.execute(select(User).where(User.user_id == user_id))
            user = res.scalar_one_or_none()
    except SQLAlchemyError:
        logger.exception("Looking up user %s failed", user_id)
        await manager.send_personal(websocket, system_payload(
            format_notice(PersistenceError("could not join the room"))))
        return None
    if not user:
        await manager.send_personal(websocket, system_payload(
            format_notice(NotFoundError("unknown user, please log in again"))))
        return None

    manager.join(websocket, room)
    await manager.send_personal(websocket, {"type": "joined", "room": room})
    await manager.send_personal(websocket, system_payload(f"🎉 Joined room [{room}]."))
    digest = await build_digest(dispatcher.session_factory, room)
    await manager.send_personal(websocket, system_payload(render_digest(digest)))
    return CommandContext(room_code=room, sender_id=user.user_id, username=user.username)

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    context: Optional[CommandContext] = None
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            if not isinstance(data, dict):
                await manager.send_personal(websocket, system_payload(
                    format_notice(ValidationError("frames must be JSON objects"))))
                continue

            frame_type = data.get("type")
            if frame_type == "join":
                joined = await join_room(websocket, data)
                context = joined or context
            elif frame_type == "chat":
                if context is None:
                    await manager.send_personal(websocket, system_payload(
                        format_notice(ValidationError("join a room before chatting"))))
                    continue
                await dispatcher.handle_line(websocket, context, str(data.get("content") or ""))
            else:
                await manager.send_personal(websocket, system_payload(
                    format_notice(ValidationError(f"unknown frame type {frame_type!r}"))))
    except WebSocketDisconnect:
        logger.info("Connection closed")
    except Exception:
        logger.exception("Connection dropped after an unexpected error")
        raise
    finally:
        manager.disconnect(websocket)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host=APP_HOST, port=APP_PORT)
