"""
Dependency wave scheduler.

Groups tasks into waves of mutually independent work: wave 0 holds every task
with no dependencies, wave n holds the tasks whose dependencies were all
scheduled in earlier waves. Tasks keep their plan order inside a wave.
"""
from __future__ import annotations

import logging
from typing import Sequence

from .models import Task

logger = logging.getLogger("commander.scheduler")


def resolve_waves(tasks: Sequence[Task]) -> list[list[Task]]:
    """
    Partition tasks into ordered waves.

    A dependency cycle cannot be satisfied; when an iteration schedules
    nothing while tasks remain, all remaining tasks go into one final wave so
    the run degrades instead of deadlocking.
    """
    remaining = list(tasks)
    known = {t.id for t in remaining}
    scheduled: set[str] = set()
    waves: list[list[Task]] = []

    while remaining:
        wave = [
            t for t in remaining
            if all(dep in scheduled or dep not in known for dep in t.depends_on)
        ]
        if not wave:
            logger.warning(
                f"Dependency cycle among {[t.id for t in remaining]}; "
                "running them as a final wave"
            )
            waves.append(remaining)
            break
        waves.append(wave)
        scheduled.update(t.id for t in wave)
        remaining = [t for t in remaining if t.id not in scheduled]

    return waves
