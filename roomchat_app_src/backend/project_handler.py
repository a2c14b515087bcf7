import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db import Project, Task, ProgressStatus
from command_parser import AddProject, AddTask, CommandContext
from errors import ValidationError, NotFoundError, PersistenceError
from progress import recompute

logger = logging.getLogger(__name__)

COMPLETED_TOKENS = {"completed", "complete", "done", "완료"}

TASK_USAGE = "!task [project], [task title], [assignee], [completed/in progress (optional)]"

def parse_status(token: Optional[str]) -> ProgressStatus:
    if token and token.strip().lower() in COMPLETED_TOKENS:
        return ProgressStatus.COMPLETED
    return ProgressStatus.IN_PROGRESS

def status_label(status: ProgressStatus) -> str:
    return "completed" if status == ProgressStatus.COMPLETED else "in progress"

@dataclass
class ProjectResult:
    """What a project/task mutation did, plus the notice to announce it."""
    project: Project
    notice: str
    changed: bool = True
    task: Optional[Task] = None

async def find_project(session: AsyncSession, room_code: str, name: str) -> Optional[Project]:
    res = await session.execute(
        select(Project).where(Project.room_code == room_code, Project.name == name)
    )
    return res.scalar_one_or_none()

def find_task(project: Project, title: str) -> Optional[Task]:
    for task in project.tasks:
        if task.title == title:
            return task
    return None

class ProjectCommandHandler:
    """
    Creates projects and upserts/completes their tasks.

    Every read-modify-write of a project runs under an asyncio lock keyed by
    (room_code, project_name), so concurrent task commands inside this process
    apply one after another instead of overwriting each other's progress.
    Writers in other processes are still last-write-wins. A lock is dropped
    once nobody holds or waits for it.
    """

    def __init__(self):
        # (room_code, project_name) -> [lock, holders + waiters]
        self._locks = {}

    @asynccontextmanager
    async def lock_for(self, room_code: str, project_name: str):
        key = (room_code, project_name)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    async def create_project(self, session: AsyncSession, command: AddProject) -> ProjectResult:
        name = command.name.strip()
        if not name:
            raise ValidationError("empty name. Usage: !project [project name]")
        ctx = command.context

        async with self.lock_for(ctx.room_code, name):
            try:
                project = await find_project(session, ctx.room_code, name)
                if project:
                    return ProjectResult(
                        project=project,
                        notice=f"🔄 Project [{name}] already exists.",
                        changed=False,
                    )
                now = datetime.now()
                project = Project(
                    room_code=ctx.room_code,
                    name=name,
                    status=ProgressStatus.IN_PROGRESS,
                    progress=0,
                    created_at=now,
                    updated_at=now,
                )
                project.tasks = []
                session.add(project)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.exception("Saving project %r for room %s failed", name, ctx.room_code)
                raise PersistenceError("could not save the project") from e

        logger.info("Project %r created in room %s by %s", name, ctx.room_code, ctx.username)
        return ProjectResult(
            project=project,
            notice=f"✅ Project [{name}] created. (by {ctx.username})",
        )

    async def upsert_task(self, session: AsyncSession, command: AddTask) -> ProjectResult:
        """
        Update the task with the given title, or append it when the project has none.

        Raises:
            ValidationError: fewer than 3 fields
            NotFoundError: unknown project (announced to the whole room)
            PersistenceError: the save failed
        """
        if len(command.fields) < 3 or not all(command.fields[:3]):
            raise ValidationError(f"missing fields. Usage: {TASK_USAGE}")

        project_name, title, assignee = command.fields[:3]
        status = parse_status(command.fields[3] if len(command.fields) > 3 else None)
        ctx = command.context

        async with self.lock_for(ctx.room_code, project_name):
            try:
                project = await find_project(session, ctx.room_code, project_name)
                if not project:
                    raise NotFoundError(f"project '{project_name}' does not exist", room_wide=True)

                now = datetime.now()
                task = find_task(project, title)
                created = task is None
                if created:
                    task = Task(
                        title=title,
                        status=status,
                        assignee=assignee,
                        owner_id=ctx.sender_id,
                        created_at=now,
                        updated_at=now,
                    )
                    project.tasks.append(task)
                else:
                    task.assignee = assignee
                    task.status = status
                    task.updated_at = now

                recompute(project)
                project.updated_at = now
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.exception("Saving task %r in project %r failed", title, project_name)
                raise PersistenceError("could not save the task") from e

        logger.info("Task %r %s in project %r (room %s), progress %s%%",
                    title, "created" if created else "updated", project_name, ctx.room_code, project.progress)
        if created:
            notice = (f"✅ Task '{title}' added to project '{project_name}' "
                      f"(assignee: {assignee}, status: {status_label(status)}). "
                      f"Project progress: {project.progress}%")
        else:
            notice = (f"✅ Task '{title}' in project '{project_name}' updated "
                      f"(assignee: {assignee}, status: {status_label(status)}). "
                      f"Project progress: {project.progress}%")
        return ProjectResult(project=project, notice=notice, task=task)

    async def complete_task(self, session: AsyncSession, room_code: str, project_name: str, task_title: str) -> ProjectResult:
        """Mark one task COMPLETED and recompute its project."""
        room_code = (room_code or "").strip()
        project_name = (project_name or "").strip()
        task_title = (task_title or "").strip()
        if not room_code or not project_name or not task_title:
            raise ValidationError("room code, project name and task title are all required. "
                                  "Usage: !done [project], [task title]")

        async with self.lock_for(room_code, project_name):
            try:
                project = await find_project(session, room_code, project_name)
                if not project:
                    raise NotFoundError(f"project '{project_name}' does not exist")
                task = find_task(project, task_title)
                if not task:
                    raise NotFoundError(f"task '{task_title}' does not exist in project '{project_name}'")

                now = datetime.now()
                task.status = ProgressStatus.COMPLETED
                task.updated_at = now
                recompute(project)
                project.updated_at = now
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.exception("Completing task %r in project %r failed", task_title, project_name)
                raise PersistenceError("could not complete the task") from e

        logger.info("Task %r in project %r (room %s) completed, progress %s%%",
                    task_title, project_name, room_code, project.progress)
        return ProjectResult(
            project=project,
            task=task,
            notice=(f"✅ Task [{task_title}] of project [{project_name}] is completed! "
                    f"(Project progress: {project.progress}%)"),
        )

    async def complete_task_command(self, session: AsyncSession, context: CommandContext, fields: list) -> ProjectResult:
        project_name = fields[0] if len(fields) > 0 else ""
        task_title = fields[1] if len(fields) > 1 else ""
        return await self.complete_task(session, context.room_code, project_name, task_title)
