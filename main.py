"""
Workflow Bot: Main CLI Entrypoint.

Wires the workflow runtime (stores, graph runner, scheduler, OneBot client)
and exposes admin commands plus the HTTP server.
"""

import argparse
import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from entry.onebot import OneBotClient, TargetReplyCapabilities
from execution.task_store import ScheduledTaskStore
from execution.workflow_store import WorkflowStore
from memory.store import SQLiteKeyValueStore
from observability.logger import Observability
from scheduler.service import SchedulerService
from workflow.actions import ClientFactory
from workflow.runner import GraphRunner, WorkflowDispatcher

# ─── Configuration ──────────────────────────────────────────────

logger = logging.getLogger(__name__)

# Ensure local .env is loaded before reading runtime configuration.
load_dotenv(override=False)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


WORKFLOW_DATA_DIR = os.getenv("WORKFLOW_DATA_DIR", "data")
WORKFLOW_ENABLED = _env_flag("WORKFLOW_ENABLED", "true")
WORKFLOW_DEBUG = _env_flag("WORKFLOW_DEBUG", "false")
MASTER_PASSWORD = os.getenv("MASTER_PASSWORD", "").strip()
ONEBOT_API_URL = os.getenv("ONEBOT_API_URL", "http://127.0.0.1:3000")
ONEBOT_ACCESS_TOKEN = os.getenv("ONEBOT_ACCESS_TOKEN", "").strip()
ONEBOT_TIMEOUT_SECONDS = float(os.getenv("ONEBOT_TIMEOUT_SECONDS", "10"))
SCHEDULER_TICK_SECONDS = float(os.getenv("SCHEDULER_TICK_SECONDS", "60"))
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8090"))
LOG_LEVEL = logging.DEBUG if WORKFLOW_DEBUG else logging.INFO

# ─── Rich Console ───────────────────────────────────────────────

console = Console()


def setup_logging() -> None:
    """Configure logging."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@dataclass
class Runtime:
    kv_store: SQLiteKeyValueStore
    workflows: WorkflowStore
    runner: GraphRunner
    dispatcher: WorkflowDispatcher
    scheduler: SchedulerService
    onebot: OneBotClient
    obs: Observability
    master_password: str = ""

    def close(self) -> None:
        self.kv_store.close()


def build_runtime(
    data_dir: str | Path | None = None,
    *,
    enabled: bool | None = None,
    master_password: str | None = None,
    onebot_transport: httpx.AsyncBaseTransport | None = None,
    client_factory: ClientFactory = httpx.AsyncClient,
    now: Callable[[], datetime] = datetime.now,
) -> Runtime:
    """Build every component of the workflow runtime."""
    base = Path(data_dir if data_dir is not None else WORKFLOW_DATA_DIR)
    base.mkdir(parents=True, exist_ok=True)

    obs = Observability("workflow")
    kv_store = SQLiteKeyValueStore(db_path=str(base / "workflow_data.db"))
    workflows = WorkflowStore(base / "workflows.json")
    onebot = OneBotClient(
        ONEBOT_API_URL,
        access_token=ONEBOT_ACCESS_TOKEN,
        timeout_seconds=ONEBOT_TIMEOUT_SECONDS,
        transport=onebot_transport,
    )
    runner = GraphRunner(kv_store, now=now, client_factory=client_factory, obs=obs)
    dispatcher = WorkflowDispatcher(
        runner,
        workflows.load_all,
        enabled=WORKFLOW_ENABLED if enabled is None else enabled,
    )
    scheduler = SchedulerService(
        runner,
        workflows.get,
        ScheduledTaskStore(base / "scheduled_tasks.json"),
        lambda target_type, target_id: TargetReplyCapabilities(onebot, target_type, target_id),
        now=now,
        tick_seconds=SCHEDULER_TICK_SECONDS,
    )
    logger.info("Workflow runtime ready (data_dir=%s)", base)
    return Runtime(
        kv_store=kv_store,
        workflows=workflows,
        runner=runner,
        dispatcher=dispatcher,
        scheduler=scheduler,
        onebot=onebot,
        obs=obs,
        master_password=MASTER_PASSWORD if master_password is None else master_password,
    )


# ─── Admin commands ─────────────────────────────────────────────


def serve(host: str = API_HOST, port: int = API_PORT) -> None:
    import uvicorn

    console.print(f"[bold green]Workflow bot listening on[/] http://{host}:{port}")
    uvicorn.run("api.server:app", host=host, port=port, log_level="debug" if WORKFLOW_DEBUG else "info")


def admin_list_workflows() -> None:
    runtime = build_runtime()
    try:
        table = Table(title="Workflows")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="magenta")
        table.add_column("Triggers", style="white")
        table.add_column("Nodes", style="dim")
        table.add_column("Enabled", style="green")
        table.add_column("Stop", style="yellow")

        for wf in runtime.workflows.load_all():
            triggers = ", ".join(
                f"{node.data.trigger_type}:{node.data.pattern}" for node in wf.trigger_nodes()
            )
            table.add_row(wf.id, wf.name, triggers, str(len(wf.nodes)), str(wf.enabled), str(wf.stop_propagation))

        console.print(table)
    finally:
        runtime.close()


def admin_list_tasks() -> None:
    runtime = build_runtime()
    try:
        table = Table(title="Scheduled Tasks")
        table.add_column("ID", style="cyan")
        table.add_column("Workflow", style="magenta")
        table.add_column("Schedule", style="white")
        table.add_column("Target", style="white")
        table.add_column("Enabled", style="green")
        table.add_column("Runs", style="dim")
        table.add_column("Last run", style="dim")

        for task in runtime.scheduler.list_tasks():
            if task.task_type == "daily":
                schedule = f"daily {task.daily_time}"
                if task.weekdays:
                    schedule += f" {task.weekdays}"
            elif task.task_type == "interval":
                schedule = f"every {task.interval_seconds}s"
            else:
                schedule = f"cron {task.cron_expression}"
            table.add_row(
                task.id,
                task.workflow_id,
                schedule,
                f"{task.target_type}:{task.target_id}",
                str(task.enabled),
                str(task.run_count),
                task.last_run.strftime("%Y-%m-%d %H:%M:%S") if task.last_run else "-",
            )

        console.print(table)
    finally:
        runtime.close()


def admin_run_task(task_id: str) -> None:
    runtime = build_runtime()
    try:
        result = asyncio.run(runtime.scheduler.run_now(task_id))
        if result.success:
            console.print(f"[bold green]Task executed:[/] {task_id}")
        else:
            console.print(f"[bold red]Error:[/] {result.error}")
    finally:
        runtime.close()


def _parse_json_or_text(raw_value: str) -> Any:
    value = raw_value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def admin_data_set(key: str, value: str, user_id: str | None = None) -> None:
    runtime = build_runtime()
    try:
        parsed = _parse_json_or_text(value)
        if user_id:
            saved = runtime.kv_store.set_user(user_id, key, parsed)
            scope = f"user:{user_id}"
        else:
            saved = runtime.kv_store.set_global(key, parsed)
            scope = "global"
        if saved:
            console.print(f"[bold green]Saved:[/] {scope}/{key} = {json.dumps(parsed, ensure_ascii=False)}")
        else:
            console.print(f"[bold red]Failed to save:[/] {scope}/{key}")
    finally:
        runtime.close()


def admin_data_get(key: str, user_id: str | None = None) -> None:
    runtime = build_runtime()
    try:
        if user_id:
            value = runtime.kv_store.get_user(user_id, key)
            scope = f"user:{user_id}"
        else:
            value = runtime.kv_store.get_global(key)
            scope = "global"
        if value is None:
            console.print(f"[bold yellow]Not found:[/] {scope}/{key}")
            return
        console.print(f"[bold cyan]{scope}/{key}[/]: {json.dumps(value, ensure_ascii=False)}")
    finally:
        runtime.close()


def main() -> None:
    """Entrypoint with CLI args."""
    setup_logging()

    parser = argparse.ArgumentParser(description="Workflow Bot")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API, OneBot ingress and scheduler")
    serve_parser.add_argument("--host", default=API_HOST, help=f"Bind host (default: {API_HOST})")
    serve_parser.add_argument("--port", type=int, default=API_PORT, help=f"Bind port (default: {API_PORT})")

    subparsers.add_parser("workflow-list", help="List stored workflows")
    subparsers.add_parser("task-list", help="List scheduled tasks")

    run_parser = subparsers.add_parser("task-run", help="Run a scheduled task now")
    run_parser.add_argument("id", help="Task id")

    data_set_parser = subparsers.add_parser("data-set", help="Set a stored value")
    data_set_parser.add_argument("key", help="Data key")
    data_set_parser.add_argument("value", help="Value (JSON or text)")
    data_set_parser.add_argument("--user", default=None, help="User id (default: global scope)")

    data_get_parser = subparsers.add_parser("data-get", help="Get a stored value")
    data_get_parser.add_argument("key", help="Data key")
    data_get_parser.add_argument("--user", default=None, help="User id (default: global scope)")

    args = parser.parse_args()

    if args.command == "serve":
        try:
            serve(args.host, args.port)
        except KeyboardInterrupt:
            pass
    elif args.command == "workflow-list":
        admin_list_workflows()
    elif args.command == "task-list":
        admin_list_tasks()
    elif args.command == "task-run":
        admin_run_task(args.id)
    elif args.command == "data-set":
        admin_data_set(args.key, args.value, user_id=args.user)
    elif args.command == "data-get":
        admin_data_get(args.key, user_id=args.user)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
