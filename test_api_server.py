import json
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from api.server import create_app, workflow_needs_master
from main import build_runtime

PING_WORKFLOW = {
    "name": "ping",
    "nodes": [
        {"id": "t", "type": "trigger", "data": {"trigger_type": "exact", "trigger_content": "ping"}},
        {"id": "r", "type": "action", "data": {"action_type": "reply_text", "action_value": "pong {user_id}"}},
    ],
    "connections": [{"from_node": "t", "to_node": "r", "from_output": "output_1"}],
}

SCHEDULED_WORKFLOW = {
    "name": "早安",
    "nodes": [
        {"id": "t", "type": "trigger", "data": {"trigger_type": "scheduled"}},
        {"id": "r", "type": "action", "data": {"action_type": "reply_text", "action_value": "早安"}},
    ],
    "connections": [{"from_node": "t", "to_node": "r"}],
}


class _OneBotRecorder:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.url.path.rsplit("/", 1)[-1], json.loads(request.content)))
        return httpx.Response(200, json={"status": "ok", "retcode": 0, "data": {"message_id": 1}})


@pytest.fixture
def onebot() -> _OneBotRecorder:
    return _OneBotRecorder()


def _client(tmp_path: Path, onebot: _OneBotRecorder, master_password: str = "") -> TestClient:
    runtime = build_runtime(
        tmp_path,
        enabled=True,
        master_password=master_password,
        onebot_transport=httpx.MockTransport(onebot),
    )
    return TestClient(create_app(runtime))


def test_health_and_config(tmp_path: Path, onebot) -> None:
    with _client(tmp_path, onebot, master_password="s3cret") as client:
        assert client.get("/health").json() == {"status": "ok"}
        config = client.get("/api/config").json()
        assert config["require_master"] is True
        assert config["master_only_triggers"] == ["scheduled", "timer"]

        assert client.post("/api/verify_master", json={"password": "nope"}).json()["success"] is False
        assert client.post("/api/verify_master", json={"password": "s3cret"}).json()["success"] is True


def test_webhook_runs_matching_workflow(tmp_path: Path, onebot) -> None:
    with _client(tmp_path, onebot) as client:
        saved = client.post("/api/workflows/save", json=PING_WORKFLOW).json()
        assert saved["success"] is True

        response = client.post(
            "/onebot/event",
            json={
                "post_type": "message",
                "message_type": "group",
                "user_id": 123,
                "group_id": 456,
                "raw_message": "ping",
            },
        )
        assert response.json() == {"success": True, "handled": False}

        ignored = client.post("/onebot/event", json={"post_type": "meta_event", "meta_event_type": "heartbeat"})
        assert ignored.json() == {"success": True, "handled": False}

    assert onebot.calls == [
        ("send_group_msg", {"group_id": "456", "message": [{"type": "text", "data": {"text": "pong 123"}}]})
    ]


def test_workflow_crud(tmp_path: Path, onebot) -> None:
    with _client(tmp_path, onebot) as client:
        workflow_id = client.post("/api/workflows/save", json=PING_WORKFLOW).json()["data"]["id"]

        listed = client.get("/api/workflows").json()["workflows"]
        assert [wf["id"] for wf in listed] == [workflow_id]

        assert client.post("/api/workflows/toggle", json={"id": workflow_id}).json()["success"] is True
        assert client.get("/api/workflows").json()["workflows"][0]["enabled"] is False

        assert client.post("/api/workflows/save", json={"name": "empty"}).json()["error"] == "缺少节点数据"
        assert client.post("/api/workflows/delete", json={}).json()["error"] == "缺少ID"
        assert client.post("/api/workflows/delete", json={"id": workflow_id}).json()["success"] is True
        assert client.get("/api/workflows").json()["workflows"] == []


def test_master_guard_on_timer_workflows_and_tasks(tmp_path: Path, onebot) -> None:
    with _client(tmp_path, onebot, master_password="s3cret") as client:
        denied = client.post("/api/workflows/save", json=SCHEDULED_WORKFLOW).json()
        assert denied == {"success": False, "error": "需要主人权限，请验证密码", "need_auth": True}

        assert client.post("/api/workflows/save", json=PING_WORKFLOW).json()["success"] is True

        allowed = client.post("/api/workflows/save", json={**SCHEDULED_WORKFLOW, "master_password": "s3cret"}).json()
        assert allowed["success"] is True
        workflow_id = allowed["data"]["id"]

        task = {
            "id": "morning",
            "workflow_id": workflow_id,
            "task_type": "daily",
            "daily_time": "08:00",
            "target_type": "group",
            "target_id": "g1",
        }
        assert client.post("/api/scheduled/add", json=task).json()["need_auth"] is True
        added = client.post("/api/scheduled/add", json={**task, "master_password": "s3cret"}).json()
        assert added == {"success": True, "message": "定时任务 [morning] 已添加", "error": "", "data": {}}

        tasks = client.get("/api/scheduled").json()["tasks"]
        assert [t["id"] for t in tasks] == ["morning"]
        assert "master_password" not in tasks[0]

        assert client.post("/api/scheduled/run", json={"id": "morning"}).json()["need_auth"] is True
        ran = client.post("/api/scheduled/run", json={"id": "morning", "master_password": "s3cret"}).json()
        assert ran["success"] is True

        toggled = client.post(
            "/api/scheduled/toggle", params={"master_password": "s3cret"}, json={"id": "morning"}
        ).json()
        assert toggled["data"] == {"enabled": False}

        assert client.post("/api/scheduled/delete", json={"id": "", "master_password": "s3cret"}).json()["error"] == "缺少ID"
        assert client.post("/api/scheduled/delete", json={"id": "morning", "master_password": "s3cret"}).json()["success"] is True

    assert onebot.calls == [("send_group_msg", {"group_id": "g1", "message": [{"type": "text", "data": {"text": "早安"}}]})]


def test_workflow_needs_master() -> None:
    assert workflow_needs_master(SCHEDULED_WORKFLOW) is True
    assert workflow_needs_master({"trigger_type": "timer", "nodes": []}) is True
    assert workflow_needs_master(PING_WORKFLOW) is False
    assert workflow_needs_master({"nodes": {"t": SCHEDULED_WORKFLOW["nodes"][0]}}) is True


def test_editor_api_trial(tmp_path: Path, onebot) -> None:
    seen: list[httpx.Request] = []

    def remote(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/cat.png":
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        return httpx.Response(200, json={"weather": "晴", "temp": 21})

    runtime = build_runtime(
        tmp_path,
        enabled=True,
        onebot_transport=httpx.MockTransport(onebot),
        client_factory=lambda **kwargs: httpx.AsyncClient(transport=httpx.MockTransport(remote), **kwargs),
    )
    with TestClient(create_app(runtime)) as client:
        assert client.post("/api/test_api", json={"url": ""}).json() == {"success": False, "error": "缺少URL"}

        result = client.post(
            "/api/test_api",
            json={"url": "https://api.example/weather", "method": "post", "headers": "X-Key: abc", "body": "city=sh"},
        ).json()
        assert result["success"] is True
        assert result["is_json"] is True
        assert result["json_data"] == {"weather": "晴", "temp": 21}
        assert json.loads(result["response"]) == {"weather": "晴", "temp": 21}
        assert seen[0].method == "POST"
        assert seen[0].headers["X-Key"] == "abc"
        assert seen[0].headers["User-Agent"] == "Mozilla/5.0"
        assert seen[0].content == b"city=sh"

        image = client.post("/api/test_api", json={"url": "https://img.example/cat.png", "body": "ignored"}).json()
        assert image["is_binary"] is True
        assert seen[1].content == b""
