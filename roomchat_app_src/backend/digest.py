import logging
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from db import Schedule, Project, ProgressStatus

logger = logging.getLogger(__name__)

TASK_PREVIEW_LIMIT = 3
UNASSIGNED = "unassigned"

async def closest_schedule(session, room_code: str, now: datetime) -> Optional[Dict[str, Any]]:
    """Earliest event of the room strictly after ``now``."""
    res = await session.execute(
        select(Schedule)
        .where(Schedule.room_code == room_code, Schedule.start_time > now)
        .order_by(Schedule.start_time, Schedule.id)
        .limit(1)
    )
    schedule = res.scalar_one_or_none()
    return schedule.to_dict() if schedule else None

def summarize_project(project) -> Dict[str, Any]:
    tasks = list(project.tasks)
    return {
        "name": project.name,
        "progress": project.progress,
        "status": project.status.value,
        "tasks": [
            {
                "title": t.title,
                "status": t.status.value,
                "assignee": t.assignee or UNASSIGNED,
            }
            for t in tasks[:TASK_PREVIEW_LIMIT]
        ],
        "remaining": max(len(tasks) - TASK_PREVIEW_LIMIT, 0),
    }

async def project_summary(session, room_code: str) -> list:
    res = await session.execute(
        select(Project).where(Project.room_code == room_code).order_by(Project.name)
    )
    return [summarize_project(p) for p in res.scalars().all()]

async def build_digest(session_factory, room_code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Announcement-bar view for a room: next event and project progress.

    Each half runs in its own session; if one fails it is replaced with
    ``{"error": ...}`` and the other is still returned.
    """
    now = now or datetime.now()
    digest: Dict[str, Any] = {"room": room_code}

    try:
        async with session_factory() as session:
            digest["closest_schedule"] = await closest_schedule(session, room_code, now)
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Closest schedule for room %s unavailable: %s", room_code, e)
        digest["closest_schedule"] = {"error": "schedule load failed"}

    try:
        async with session_factory() as session:
            digest["projects"] = await project_summary(session, room_code)
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Project summary for room %s unavailable: %s", room_code, e)
        digest["projects"] = {"error": "project load failed"}

    return digest

def render_digest(digest: Dict[str, Any]) -> str:
    """Plain-text version of a digest, for posting into the chat."""
    lines = []

    schedule = digest.get("closest_schedule")
    if isinstance(schedule, dict) and "error" in schedule:
        lines.append("❌ Schedule load error.")
    elif schedule:
        start = datetime.fromisoformat(schedule["start_time"])
        lines.append(f"📅 Next: {start.strftime('%m/%d %H:%M')} {schedule['title']}")
    else:
        lines.append("📅 No upcoming schedule.")

    projects = digest.get("projects")
    if isinstance(projects, dict):
        lines.append("❌ Project list load error.")
    elif not projects:
        lines.append("🏗️ No projects yet. Command: !project [name]")
    else:
        lines.append(f"🏗️ Projects ({len(projects)})")
        for p in projects:
            icon = "✅" if p["status"] == ProgressStatus.COMPLETED.value else "🚧"
            lines.append(f"{icon} {p['name']} ({p['progress']}%)")
            for t in p["tasks"]:
                mark = "✅" if t["status"] == ProgressStatus.COMPLETED.value else "➡️"
                lines.append(f"   {mark} {t['title']} ({t['assignee']})")
            if p["remaining"]:
                lines.append(f"   ... and {p['remaining']} more")
    return "\n".join(lines)
