import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from execution.task_store import ScheduledTaskStore
from memory.store import SQLiteKeyValueStore
from scheduler.service import SchedulerService
from shared.models import ScheduledTask, Workflow
from workflow.runner import GraphRunner

MORNING = Workflow.model_validate(
    {
        "id": "wf_morning",
        "nodes": [
            {"id": "t", "type": "trigger", "data": {"trigger_type": "scheduled"}},
            {"id": "r", "type": "action", "data": {"action_type": "reply_text", "action_value": "早安 {user_id}"}},
        ],
        "connections": [{"from_node": "t", "to_node": "r"}],
    }
)


class _Harness:
    def __init__(self, tmp_path: Path, start: datetime):
        self.clock = {"now": start}
        self.kv = SQLiteKeyValueStore(db_path=str(tmp_path / "kv.db"))
        self.workflows = {MORNING.id: MORNING}
        self.targets: list[tuple[str, str]] = []
        self.caps = AsyncMock()
        self.task_path = tmp_path / "tasks.json"
        self.scheduler = self.build()

    def build(self) -> SchedulerService:
        runner = GraphRunner(self.kv, now=self.now)
        return SchedulerService(
            runner,
            self.workflows.get,
            ScheduledTaskStore(self.task_path),
            self.caps_factory,
            now=self.now,
        )

    def now(self) -> datetime:
        return self.clock["now"]

    def caps_factory(self, target_type: str, target_id: str):
        self.targets.append((target_type, target_id))
        return self.caps

    def tick_at(self, moment: datetime) -> list[str]:
        self.clock["now"] = moment
        return asyncio.run(self.scheduler.tick())

    def replies(self) -> list[str]:
        return [call.args[0] for call in self.caps.reply.await_args_list]


@pytest.fixture
def harness(tmp_path: Path):
    h = _Harness(tmp_path, datetime(2024, 5, 6, 7, 59))  # Monday
    yield h
    h.kv.close()


def _daily(**overrides) -> dict:
    payload = {
        "id": "morning",
        "workflow_id": "wf_morning",
        "task_type": "daily",
        "daily_time": "08:00",
        "target_type": "group",
        "target_id": "g1",
    }
    payload.update(overrides)
    return payload


def test_daily_task_fires_once_per_day(harness) -> None:
    assert harness.scheduler.add_task(_daily()).success is True

    assert harness.tick_at(datetime(2024, 5, 6, 7, 59)) == []
    assert harness.tick_at(datetime(2024, 5, 6, 8, 0, 0)) == ["morning"]
    assert harness.tick_at(datetime(2024, 5, 6, 8, 0, 40)) == []
    assert harness.tick_at(datetime(2024, 5, 7, 8, 0, 5)) == ["morning"]

    task = harness.scheduler.get_task("morning")
    assert task.run_count == 2
    assert task.last_run == datetime(2024, 5, 7, 8, 0, 5)
    assert harness.replies() == ["早安 scheduled", "早安 scheduled"]
    assert harness.targets == [("group", "g1"), ("group", "g1")]


def test_daily_task_respects_weekday_filter(harness) -> None:
    harness.scheduler.add_task(_daily(weekdays=[0, 6]))
    assert harness.tick_at(datetime(2024, 5, 6, 8, 0)) == []
    assert harness.tick_at(datetime(2024, 5, 11, 8, 0)) == ["morning"]  # Saturday


def test_interval_task(harness) -> None:
    harness.scheduler.add_task(
        {
            "id": "every_minute",
            "workflow_id": "wf_morning",
            "task_type": "interval",
            "interval_seconds": 60,
            "target_type": "private",
            "target_id": "u42",
            "trigger_user_id": "robot",
        }
    )
    start = datetime(2024, 5, 6, 9, 0, 0)
    assert harness.tick_at(start) == ["every_minute"]
    assert harness.tick_at(start + timedelta(seconds=59)) == []
    assert harness.tick_at(start + timedelta(seconds=60)) == ["every_minute"]
    assert harness.replies() == ["早安 robot", "早安 robot"]
    assert harness.targets[0] == ("private", "u42")


def test_cron_task_fires_once_per_matching_minute(harness) -> None:
    result = harness.scheduler.add_task(
        {
            "id": "quarterly",
            "workflow_id": "wf_morning",
            "task_type": "cron",
            "cron_expression": "*/15 * * * *",
            "target_type": "group",
            "target_id": "g1",
        }
    )
    assert result.success is True
    assert harness.tick_at(datetime(2024, 5, 6, 10, 15, 0)) == ["quarterly"]
    assert harness.tick_at(datetime(2024, 5, 6, 10, 15, 30)) == []
    assert harness.tick_at(datetime(2024, 5, 6, 10, 16, 0)) == []
    assert harness.tick_at(datetime(2024, 5, 6, 10, 30, 0)) == ["quarterly"]


@pytest.mark.parametrize(
    ("overrides", "error"),
    [
        ({"workflow_id": ""}, "缺少必要参数"),
        ({"daily_time": "8am"}, "每日任务需要指定 daily_time (HH:MM)"),
        ({"task_type": "interval", "interval_seconds": 30}, "间隔任务需要 interval_seconds >= 60"),
        ({"task_type": "cron", "cron_expression": "every monday"}, "cron 任务需要有效的 cron_expression"),
    ],
)
def test_add_task_validation(harness, overrides: dict, error: str) -> None:
    result = harness.scheduler.add_task(_daily(**overrides))
    assert result.success is False
    assert result.error == error
    assert harness.scheduler.list_tasks() == []


def test_add_task_resets_run_count(harness) -> None:
    harness.scheduler.add_task(_daily(run_count=99, last_run="2024-01-01T00:00:00"))
    task = harness.scheduler.get_task("morning")
    assert task.run_count == 0
    assert task.last_run is None


def test_run_now_bypasses_schedule(harness) -> None:
    harness.scheduler.add_task(_daily(daily_time="23:59"))
    result = asyncio.run(harness.scheduler.run_now("morning"))
    assert result.success is True
    assert harness.replies() == ["早安 scheduled"]
    assert harness.scheduler.get_task("morning").run_count == 1

    missing = asyncio.run(harness.scheduler.run_now("nope"))
    assert missing.success is False
    assert missing.error == "任务不存在"


def test_missing_or_disabled_workflow_is_skipped(harness) -> None:
    harness.scheduler.add_task(_daily(workflow_id="wf_gone"))
    assert harness.tick_at(datetime(2024, 5, 6, 8, 0)) == []
    assert harness.scheduler.get_task("morning").last_run is None

    harness.workflows[MORNING.id] = MORNING.model_copy(update={"enabled": False})
    harness.scheduler.add_task(_daily(id="second"))
    assert harness.tick_at(datetime(2024, 5, 6, 8, 0)) == []
    harness.caps.reply.assert_not_awaited()


def test_toggle_remove_and_persistence(harness) -> None:
    harness.scheduler.add_task(_daily())
    toggled = harness.scheduler.toggle_task("morning")
    assert toggled.success is True
    assert toggled.data == {"enabled": False}
    assert harness.tick_at(datetime(2024, 5, 6, 8, 0)) == []

    harness.scheduler.toggle_task("morning")
    harness.tick_at(datetime(2024, 5, 6, 8, 0))

    reloaded = harness.build()
    task = reloaded.get_task("morning")
    assert isinstance(task, ScheduledTask)
    assert task.enabled is True
    assert task.run_count == 1

    assert reloaded.remove_task("morning").success is True
    assert reloaded.remove_task("morning").error == "任务不存在"
    assert harness.build().list_tasks() == []


def test_aware_last_run_is_compared_in_local_time(harness) -> None:
    harness.scheduler.add_task(_daily())
    task = harness.scheduler.get_task("morning")
    local_run = datetime(2024, 5, 6, 8, 0).astimezone()
    harness.scheduler.tasks["morning"] = task.model_copy(update={"last_run": local_run})
    assert harness.scheduler.is_due(harness.scheduler.tasks["morning"], datetime(2024, 5, 6, 8, 0, 30)) is False


def test_invalid_stored_task_is_kept_until_removed(harness) -> None:
    broken = {"id": "broken", "workflow_id": "wf_morning", "task_type": "weekly", "target_type": "group"}
    harness.task_path.write_text(json.dumps({"broken": broken}), encoding="utf-8")
    scheduler = harness.build()
    assert scheduler.list_tasks() == []

    assert scheduler.add_task(_daily()).success is True
    on_disk = json.loads(harness.task_path.read_text(encoding="utf-8"))
    assert on_disk["broken"] == broken
    assert "morning" in on_disk

    assert scheduler.remove_task("broken").success is True
    on_disk = json.loads(harness.task_path.read_text(encoding="utf-8"))
    assert list(on_disk) == ["morning"]
    assert scheduler.remove_task("broken").error == "任务不存在"
