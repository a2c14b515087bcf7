from db import ProgressStatus

def percent_complete(completed: int, total: int) -> int:
    """Integer percentage rounded half up, 0 for an empty list."""
    if total <= 0:
        return 0
    # (2*100*c + t) // (2*t) == floor(100*c/t + 0.5) without float error
    percent = (200 * completed + total) // (2 * total)
    # 100 is reserved for "every task done" (199/200 would round up to it)
    if completed < total:
        percent = min(percent, 99)
    return percent

def recompute(project):
    """
    Recalculate a project's progress and status from its tasks, in place.

    Args:
        project: anything with ``tasks`` (each having ``status``), ``progress``
            and ``status`` attributes

    Returns:
        The same project, for chaining.
    """
    tasks = list(project.tasks)
    if not tasks:
        project.progress = 0
        project.status = ProgressStatus.IN_PROGRESS
        return project

    completed = len([t for t in tasks if t.status == ProgressStatus.COMPLETED])
    total = len(tasks)

    project.progress = percent_complete(completed, total)
    project.status = ProgressStatus.COMPLETED if completed == total else ProgressStatus.IN_PROGRESS
    return project
