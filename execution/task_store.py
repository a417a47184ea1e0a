"""Persistent map of scheduled tasks, rewritten in full on every mutation."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from shared.models import ScheduledTask

logger = logging.getLogger(__name__)


class ScheduledTaskStore:
    """JSON document keyed by task id.

    Entries that fail validation are not scheduled, but they are written
    back unchanged on every save so a bad edit never erases a task.
    """

    def __init__(self, path: str | Path = "data/scheduled_tasks.json"):
        self.path = Path(path)
        self._unparsed: dict[str, Any] = {}

    def load(self) -> dict[str, ScheduledTask]:
        self._unparsed = {}
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to load scheduled tasks from %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.error("Scheduled task file %s must hold a JSON object", self.path)
            return {}

        tasks: dict[str, ScheduledTask] = {}
        for task_id, entry in raw.items():
            try:
                task = ScheduledTask.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Skipping invalid scheduled task '%s': %s", task_id, exc)
                self._unparsed[task_id] = entry
                continue
            tasks[task.id] = task
        return tasks

    def save(self, tasks: dict[str, ScheduledTask]) -> bool:
        payload: dict[str, Any] = {
            task_id: entry for task_id, entry in self._unparsed.items() if task_id not in tasks
        }
        payload.update({task_id: task.model_dump(mode="json") for task_id, task in tasks.items()})
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to save scheduled tasks to %s: %s", self.path, exc)
            return False
        return True

    def discard_unparsed(self, task_id: str) -> bool:
        """Forget an invalid entry so the next save drops it."""
        return self._unparsed.pop(task_id, None) is not None
