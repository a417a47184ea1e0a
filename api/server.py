"""
HTTP API for the workflow bot.

Endpoints:
- POST /onebot/event: OneBot-11 event ingress (HTTP post mode)
- /api/config, /api/verify_master: editor bootstrap and master password check
- /api/workflows...: workflow CRUD
- /api/test_api: editor helper that tries a custom HTTP request once
- /api/scheduled...: scheduled task CRUD and manual run (master only)
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Request
from pydantic import BaseModel, Field

from entry.onebot import MessageReplyCapabilities, parse_event
from main import Runtime, build_runtime
from shared.models import OperationResult
from workflow.actions import BODY_METHODS, DEFAULT_HEADERS, DEFAULT_HTTP_TIMEOUT_SECONDS, parse_headers
from workflow.triggers import SCHEDULED_TRIGGER_TYPES

logger = logging.getLogger(__name__)

MASTER_ONLY_TRIGGERS = sorted(SCHEDULED_TRIGGER_TYPES)


class IdRequest(BaseModel):
    id: str = ""
    master_password: str = ""


class VerifyMasterRequest(BaseModel):
    password: str = ""


class EditorHttpRequest(BaseModel):
    url: str = ""
    method: str = "GET"
    headers: dict[str, Any] | str = Field(default_factory=dict)
    body: str | None = None


def workflow_needs_master(payload: dict[str, Any]) -> bool:
    """Workflows with timer-style triggers may only be saved by the master."""
    if str(payload.get("trigger_type") or "") in SCHEDULED_TRIGGER_TYPES:
        return True
    nodes = payload.get("nodes") or []
    if isinstance(nodes, dict):
        nodes = list(nodes.values())
    for node in nodes:
        if not isinstance(node, dict) or node.get("type") != "trigger":
            continue
        if str((node.get("data") or {}).get("trigger_type") or "") in SCHEDULED_TRIGGER_TYPES:
            return True
    return False


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _master_denied(runtime: Runtime, request: Request, password: str | None) -> dict[str, Any] | None:
    if not runtime.master_password:
        return None
    supplied = password or request.query_params.get("master_password", "")
    if supplied == runtime.master_password:
        return None
    return {"success": False, "error": "需要主人权限，请验证密码", "need_auth": True}


def _result(result: OperationResult) -> dict[str, Any]:
    return result.model_dump(mode="json")


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if getattr(_app.state, "runtime", None) is None:
            _app.state.runtime = build_runtime()
        active: Runtime = _app.state.runtime
        active.scheduler.start()
        yield
        await active.scheduler.stop()
        active.close()

    app = FastAPI(
        title="Workflow Bot API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/onebot/event")
    async def onebot_event(request: Request, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        runtime = _runtime(request)
        event = parse_event(payload)
        if event is None:
            return {"success": True, "handled": False}
        caps = MessageReplyCapabilities(runtime.onebot, event)
        with runtime.obs.measure("handle_message", {"user_id": event.user_id}):
            handled = await runtime.dispatcher.handle_message(event, caps)
        return {"success": True, "handled": handled}

    @app.get("/api/config")
    def get_config(request: Request) -> dict[str, Any]:
        runtime = _runtime(request)
        return {
            "success": True,
            "enabled": runtime.dispatcher.enabled,
            "require_master": bool(runtime.master_password),
            "master_only_triggers": MASTER_ONLY_TRIGGERS,
        }

    @app.post("/api/verify_master")
    def verify_master(request: Request, body: VerifyMasterRequest) -> dict[str, Any]:
        runtime = _runtime(request)
        if not runtime.master_password or body.password == runtime.master_password:
            return {"success": True, "message": "验证成功"}
        return {"success": False, "error": "密码错误"}

    # ─── workflows ────────────────────────────────────────────

    @app.get("/api/workflows")
    def list_workflows(request: Request) -> dict[str, Any]:
        workflows = _runtime(request).workflows.load_all()
        return {"success": True, "workflows": [wf.model_dump(mode="json") for wf in workflows]}

    @app.post("/api/workflows/save")
    def save_workflow(request: Request, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        runtime = _runtime(request)
        if workflow_needs_master(payload):
            denied = _master_denied(runtime, request, payload.get("master_password"))
            if denied:
                return denied
        document = {key: value for key, value in payload.items() if key != "master_password"}
        return _result(runtime.workflows.save_workflow(document))

    @app.post("/api/workflows/delete")
    def delete_workflow(request: Request, body: IdRequest) -> dict[str, Any]:
        if not body.id:
            return {"success": False, "error": "缺少ID"}
        return {"success": _runtime(request).workflows.delete(body.id), "message": "已删除"}

    @app.post("/api/workflows/toggle")
    def toggle_workflow(request: Request, body: IdRequest) -> dict[str, Any]:
        if not body.id:
            return {"success": False, "error": "缺少ID"}
        return {"success": _runtime(request).workflows.toggle(body.id), "message": "状态已更新"}

    @app.post("/api/test_api")
    async def test_custom_api(request: Request, body: EditorHttpRequest) -> dict[str, Any]:
        if not body.url:
            return {"success": False, "error": "缺少URL"}
        method = (body.method or "GET").upper()
        headers = {**DEFAULT_HEADERS, **parse_headers(body.headers)}
        content = body.body if method in BODY_METHODS else None
        client_factory = _runtime(request).runner.actions.client_factory
        try:
            async with client_factory(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS) as client:
                response = await client.request(method, body.url, headers=headers, content=content)
        except Exception as e:
            logger.warning("Editor API trial for '%s' failed: %r", body.url, e)
            return {"success": False, "error": str(e) or "请求失败"}

        content_type = response.headers.get("content-type", "")
        if any(kind in content_type for kind in ("image", "audio", "video")):
            return {"success": True, "status_code": response.status_code, "is_binary": True, "response": "[二进制数据]"}
        if "application/json" in content_type:
            try:
                data = response.json()
            except ValueError:
                data = None
            if data is not None:
                return {
                    "success": True,
                    "status_code": response.status_code,
                    "is_json": True,
                    "json_data": data,
                    "response": json.dumps(data, ensure_ascii=False),
                }
        return {"success": True, "status_code": response.status_code, "response": response.text[:5000]}

    # ─── scheduled tasks ──────────────────────────────────────

    @app.get("/api/scheduled")
    def list_scheduled(request: Request) -> dict[str, Any]:
        tasks = _runtime(request).scheduler.list_tasks()
        return {"success": True, "tasks": [task.model_dump(mode="json") for task in tasks]}

    @app.post("/api/scheduled/add")
    def add_scheduled(request: Request, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        runtime = _runtime(request)
        denied = _master_denied(runtime, request, payload.get("master_password"))
        if denied:
            return denied
        document = {key: value for key, value in payload.items() if key != "master_password"}
        return _result(runtime.scheduler.add_task(document))

    @app.post("/api/scheduled/delete")
    def delete_scheduled(request: Request, body: IdRequest) -> dict[str, Any]:
        runtime = _runtime(request)
        denied = _master_denied(runtime, request, body.master_password)
        if denied:
            return denied
        if not body.id:
            return {"success": False, "error": "缺少ID"}
        return _result(runtime.scheduler.remove_task(body.id))

    @app.post("/api/scheduled/toggle")
    def toggle_scheduled(request: Request, body: IdRequest) -> dict[str, Any]:
        runtime = _runtime(request)
        denied = _master_denied(runtime, request, body.master_password)
        if denied:
            return denied
        if not body.id:
            return {"success": False, "error": "缺少ID"}
        return _result(runtime.scheduler.toggle_task(body.id))

    @app.post("/api/scheduled/run")
    async def run_scheduled(request: Request, body: IdRequest) -> dict[str, Any]:
        runtime = _runtime(request)
        denied = _master_denied(runtime, request, body.master_password)
        if denied:
            return denied
        if not body.id:
            return {"success": False, "error": "缺少ID"}
        return _result(await runtime.scheduler.run_now(body.id))

    return app


app = create_app()
