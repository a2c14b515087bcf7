import logging
import re
from datetime import datetime, date, timedelta
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db import Schedule, DEFAULT_SCHEDULE_COLOR
from command_parser import AddSchedule
from errors import ValidationError, NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

RELATIVE_DAYS = {
    "tomorrow": 1,
    "내일": 1,
    "day-after-tomorrow": 2,
    "모레": 2,
}

SCHEDULE_USAGE = "!schedule [title], [tomorrow/day-after-tomorrow/YYYYMMDD], [HH:MM], [color (optional)]"

def resolve_date(token: str, today: date) -> date:
    """Turn a date token into a calendar date relative to ``today``."""
    token = token.strip()
    offset = RELATIVE_DAYS.get(token.lower())
    if offset is not None:
        return today + timedelta(days=offset)
    if re.fullmatch(r"\d{8}", token):
        try:
            return date(int(token[:4]), int(token[4:6]), int(token[6:8]))
        except ValueError:
            raise ValidationError("bad date")
    raise ValidationError("bad date")

def resolve_time(token: str) -> tuple:
    """Parse ``HH:MM`` into (hour, minute)."""
    parts = token.strip().split(":")
    if len(parts) != 2:
        raise ValidationError("bad time")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValidationError("bad time")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationError("bad time")
    return hour, minute

def resolve_start_time(date_token: str, time_token: str, now: datetime) -> datetime:
    day = resolve_date(date_token, now.date())
    hour, minute = resolve_time(time_token)
    return datetime(day.year, day.month, day.day, hour, minute, 0, 0)

def format_start_time(start_time: datetime) -> str:
    return start_time.strftime("%Y-%m-%d %H:%M")

async def add_schedule(session: AsyncSession, command: AddSchedule, now: Optional[datetime] = None) -> Schedule:
    """
    Validate and persist a schedule command.

    Raises:
        ValidationError: fewer than 3 fields, bad date or bad time token
        PersistenceError: the insert failed
    """
    if len(command.fields) < 3:
        raise ValidationError(f"missing fields. Usage: {SCHEDULE_USAGE}")

    title, date_token, time_token = command.fields[:3]
    color = command.fields[3] if len(command.fields) > 3 and command.fields[3] else DEFAULT_SCHEDULE_COLOR
    if not title:
        raise ValidationError(f"missing fields. Usage: {SCHEDULE_USAGE}")

    start_time = resolve_start_time(date_token, time_token, now or datetime.now())

    schedule = Schedule(
        room_code=command.context.room_code,
        sender_id=command.context.sender_id,
        title=title,
        start_time=start_time,
        color=color,
    )
    try:
        session.add(schedule)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("Saving schedule %r for room %s failed", title, command.context.room_code)
        raise PersistenceError("could not save the schedule") from e

    logger.info("Schedule %s saved for room %s at %s", schedule.id, schedule.room_code, start_time)
    return schedule

def schedule_saved_notice(schedule: Schedule, username: str) -> str:
    return f"✅ Schedule saved: [{schedule.title}] {format_start_time(schedule.start_time)} (by {username})"

async def delete_schedule(session: AsyncSession, schedule_id: int) -> Schedule:
    """Delete an event by id and return the deleted row."""
    try:
        schedule = await session.get(Schedule, schedule_id)
        if not schedule:
            raise NotFoundError(f"schedule {schedule_id} does not exist")
        await session.delete(schedule)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("Deleting schedule %s failed", schedule_id)
        raise PersistenceError("could not delete the schedule") from e
    logger.info("Schedule %s deleted from room %s", schedule_id, schedule.room_code)
    return schedule
