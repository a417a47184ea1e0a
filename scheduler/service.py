"""
Scheduler.

Responsibility:
- Hold scheduled tasks keyed by id and persist the full map on each mutation
- Poll on a fixed tick and decide which tasks are due (daily/interval/cron)
- Execute due tasks by entering the workflow graph past its triggers, with a
  synthetic event and a target-bound capability set
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Callable

from croniter import croniter
from pydantic import ValidationError

from execution.task_store import ScheduledTaskStore
from observability.logger import Observability
from shared.capabilities import ReplyCapabilities
from shared.models import MessageEvent, OperationResult, ScheduledTask, Workflow
from workflow.runner import GraphRunner
from workflow.templates import js_weekday

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 60.0
MIN_INTERVAL_SECONDS = 60
VIRTUAL_USER_ID = "scheduled"

_DAILY_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

CapabilityFactory = Callable[[str, str], ReplyCapabilities]


def _local_naive(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone().replace(tzinfo=None)
    return moment


class SchedulerService:
    """Time-based entry into workflows."""

    def __init__(
        self,
        runner: GraphRunner,
        get_workflow: Callable[[str], Workflow | None],
        task_store: ScheduledTaskStore,
        caps_factory: CapabilityFactory,
        now: Callable[[], datetime] = datetime.now,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        obs: Observability | None = None,
    ):
        self.runner = runner
        self.get_workflow = get_workflow
        self.task_store = task_store
        self.caps_factory = caps_factory
        self.now = now
        self.tick_seconds = tick_seconds
        self.obs = obs or Observability("scheduler")
        self.tasks: dict[str, ScheduledTask] = task_store.load()
        self._loop_task: asyncio.Task | None = None
        logger.info("Scheduler loaded %d task(s)", len(self.tasks))

    # ─── due check ────────────────────────────────────────────

    def is_due(self, task: ScheduledTask, moment: datetime) -> bool:
        moment = _local_naive(moment)
        last_run = _local_naive(task.last_run) if task.last_run else None

        if task.task_type == "daily":
            if task.daily_time != moment.strftime("%H:%M"):
                return False
            if task.weekdays and js_weekday(moment) not in task.weekdays:
                return False
            return last_run is None or last_run.date() != moment.date()

        if task.task_type == "interval":
            if not task.interval_seconds or task.interval_seconds <= 0:
                return False
            if last_run is None:
                return True
            return (moment - last_run).total_seconds() >= task.interval_seconds

        if task.task_type == "cron":
            if not task.cron_expression:
                return False
            try:
                matches = croniter.match(task.cron_expression, moment)
            except (ValueError, KeyError) as exc:
                logger.warning("Task '%s' has an invalid cron expression: %s", task.id, exc)
                return False
            if not matches:
                return False
            minute = moment.replace(second=0, microsecond=0)
            return last_run is None or last_run.replace(second=0, microsecond=0) != minute

        return False

    async def tick(self) -> list[str]:
        """Run every enabled task that is due now; returns the executed ids."""
        moment = self.now()
        executed: list[str] = []
        with self.obs.measure("scheduler_tick", {"tasks": len(self.tasks)}):
            for task in list(self.tasks.values()):
                if not task.enabled or not self.is_due(task, moment):
                    continue
                if await self.execute_task(task.id):
                    executed.append(task.id)
        return executed

    # ─── execution ────────────────────────────────────────────

    async def execute_task(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            return False

        workflow = self.get_workflow(task.workflow_id)
        if workflow is None or not workflow.enabled:
            logger.info("Task '%s' skipped: workflow '%s' missing or disabled", task.id, task.workflow_id)
            return False

        event = MessageEvent(
            user_id=task.trigger_user_id or VIRTUAL_USER_ID,
            group_id=task.target_id if task.target_type == "group" else None,
            message_type=task.target_type,
            raw_message="",
        )
        caps = self.caps_factory(task.target_type, task.target_id)
        try:
            ctx = await self.runner.execute_from_trigger(workflow, event, caps)
        except Exception as exc:
            self.obs.log_event(
                "scheduled_task_failed",
                {"task_id": task.id, "workflow_id": workflow.id, "error": str(exc)},
                level="ERROR",
            )
            return False

        current = self.tasks.get(task_id, task)
        self.tasks[task_id] = current.model_copy(
            update={"last_run": self.now(), "run_count": current.run_count + 1}
        )
        self.task_store.save(self.tasks)
        self.obs.log_event(
            "scheduled_task_executed",
            {
                "task_id": task.id,
                "workflow_id": workflow.id,
                "trace_id": ctx.trace_id,
                "executed_nodes": ctx.executed_nodes,
            },
        )
        return True

    async def run_now(self, task_id: str) -> OperationResult:
        """Execute a task immediately, ignoring its schedule."""
        if task_id not in self.tasks:
            return OperationResult(success=False, error="任务不存在")
        await self.execute_task(task_id)
        return OperationResult(success=True, message="已执行")

    # ─── CRUD ─────────────────────────────────────────────────

    def add_task(self, payload: dict[str, Any]) -> OperationResult:
        for field_name in ("id", "workflow_id", "target_id", "target_type", "task_type"):
            if not payload.get(field_name):
                return OperationResult(success=False, error="缺少必要参数")

        task_type = payload.get("task_type")
        if task_type == "daily" and not _DAILY_TIME_PATTERN.match(str(payload.get("daily_time") or "")):
            return OperationResult(success=False, error="每日任务需要指定 daily_time (HH:MM)")
        if task_type == "interval":
            try:
                interval = int(payload.get("interval_seconds") or 0)
            except (TypeError, ValueError):
                interval = 0
            if interval < MIN_INTERVAL_SECONDS:
                return OperationResult(success=False, error="间隔任务需要 interval_seconds >= 60")
        if task_type == "cron" and not croniter.is_valid(str(payload.get("cron_expression") or "")):
            return OperationResult(success=False, error="cron 任务需要有效的 cron_expression")

        document = {
            **payload,
            "enabled": payload.get("enabled") is not False,
            "last_run": None,
            "run_count": 0,
        }
        try:
            task = ScheduledTask.model_validate(document)
        except ValidationError as exc:
            logger.info("Rejected scheduled task payload: %s", exc)
            return OperationResult(success=False, error=f"任务参数无效: {exc.error_count()} 处校验失败")

        self.tasks[task.id] = task
        self.task_store.save(self.tasks)
        return OperationResult(success=True, message=f"定时任务 [{task.id}] 已添加")

    def remove_task(self, task_id: str) -> OperationResult:
        if self.tasks.pop(task_id, None) is None and not self.task_store.discard_unparsed(task_id):
            return OperationResult(success=False, error="任务不存在")
        self.task_store.save(self.tasks)
        return OperationResult(success=True, message="已删除")

    def toggle_task(self, task_id: str) -> OperationResult:
        task = self.tasks.get(task_id)
        if task is None:
            return OperationResult(success=False, error="任务不存在")
        self.tasks[task_id] = task.model_copy(update={"enabled": not task.enabled})
        self.task_store.save(self.tasks)
        return OperationResult(success=True, data={"enabled": not task.enabled})

    def list_tasks(self) -> list[ScheduledTask]:
        return list(self.tasks.values())

    def get_task(self, task_id: str) -> ScheduledTask | None:
        return self.tasks.get(task_id)

    # ─── loop ─────────────────────────────────────────────────

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Scheduler tick crashed: %s", exc)
            await asyncio.sleep(self.tick_seconds)

    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("Scheduler started (tick=%ss)", self.tick_seconds)

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        logger.info("Scheduler stopped")
