"""Workflow document store.

Workflows live in one JSON array on disk. Reads go through an in-memory
cache that is revalidated against the file's etag (mtime + size) so edits
made outside the process take effect without a restart.
"""

from __future__ import annotations

import json
import logging
import random
import string
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from shared.models import OperationResult, Workflow

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(number: int) -> str:
    if number <= 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_workflow_id() -> str:
    suffix = "".join(random.choice(_BASE36) for _ in range(6))
    return f"wf_{_to_base36(int(time.time() * 1000))}{suffix}"


class WorkflowStore:
    """JSON-file backed, ordered list of workflows."""

    def __init__(self, path: str | Path = "data/workflows.json"):
        self.path = Path(path)
        self._cache: list[Workflow] | None = None
        self._etag: tuple[int, int] | None = None
        # (position, raw document) for entries that failed validation; kept on disk untouched.
        self._unparsed: list[tuple[int, Any]] = []

    def _current_etag(self) -> tuple[int, int] | None:
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def invalidate(self) -> None:
        """Drop the read cache; the next read goes to disk."""
        self._cache = None
        self._etag = None
        self._unparsed = []

    def load_all(self) -> list[Workflow]:
        etag = self._current_etag()
        if self._cache is not None and etag == self._etag:
            return list(self._cache)

        workflows: list[Workflow] = []
        unparsed: list[tuple[int, Any]] = []
        if etag is not None:
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.error("Failed to read workflows from %s: %s", self.path, exc)
                raw = []
            if not isinstance(raw, list):
                logger.error("Workflow file %s must hold a JSON array", self.path)
                raw = []
            for index, entry in enumerate(raw):
                try:
                    workflows.append(Workflow.model_validate(entry))
                except ValidationError as exc:
                    logger.warning("Skipping invalid workflow at index %d: %s", index, exc)
                    unparsed.append((index, entry))

        self._cache = workflows
        self._etag = etag
        self._unparsed = unparsed
        return list(workflows)

    @staticmethod
    def _raw_id(entry: Any) -> str | None:
        if isinstance(entry, dict) and entry.get("id") not in (None, ""):
            return str(entry["id"])
        return None

    def save(self, workflows: list[Workflow]) -> bool:
        """Write ``workflows``; documents that failed validation are written back unchanged."""
        self.load_all()
        saved_ids = {workflow.id for workflow in workflows}
        unparsed = [(index, entry) for index, entry in self._unparsed if self._raw_id(entry) not in saved_ids]

        payload: list[Any] = [workflow.model_dump(mode="json") for workflow in workflows]
        for index, entry in unparsed:
            payload.insert(min(index, len(payload)), entry)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to write workflows to %s: %s", self.path, exc)
            return False
        self._cache = list(workflows)
        self._etag = self._current_etag()
        self._unparsed = unparsed
        return True

    def get(self, workflow_id: str) -> Workflow | None:
        for workflow in self.load_all():
            if workflow.id == workflow_id:
                return workflow
        return None

    def delete(self, workflow_id: str) -> bool:
        workflows = self.load_all()
        remaining = [workflow for workflow in workflows if workflow.id != workflow_id]
        unparsed = [(index, entry) for index, entry in self._unparsed if self._raw_id(entry) != workflow_id]
        if len(remaining) == len(workflows) and len(unparsed) == len(self._unparsed):
            return False
        self._unparsed = unparsed
        return self.save(remaining)

    def toggle(self, workflow_id: str) -> bool:
        workflows = self.load_all()
        for index, workflow in enumerate(workflows):
            if workflow.id == workflow_id:
                workflows[index] = workflow.model_copy(update={"enabled": not workflow.enabled})
                return self.save(workflows)
        return False

    def save_workflow(self, payload: dict[str, Any]) -> OperationResult:
        """Insert or update one workflow from an editor payload."""
        nodes = payload.get("nodes")
        if not nodes:
            return OperationResult(success=False, error="缺少节点数据")
        if isinstance(nodes, dict):
            nodes = list(nodes.values())
        if not isinstance(nodes, list) or not nodes:
            return OperationResult(success=False, error="节点列表为空")

        workflows = self.load_all()
        workflow_id = str(payload.get("id") or "").strip()
        position = next((i for i, wf in enumerate(workflows) if workflow_id and wf.id == workflow_id), None)

        if position is not None:
            previous = workflows[position]
            document = {
                **previous.model_dump(mode="json"),
                "name": payload.get("name") or previous.name,
                "trigger_type": payload.get("trigger_type") or previous.trigger_type,
                "trigger_content": payload.get("trigger_content", previous.trigger_content),
                "enabled": payload.get("enabled", previous.enabled),
            }
        else:
            document = {
                "id": workflow_id or generate_workflow_id(),
                "name": payload.get("name") or "未命名",
                "trigger_type": payload.get("trigger_type") or "exact",
                "trigger_content": payload.get("trigger_content") or "",
                "enabled": payload.get("enabled") is not False,
            }
        document["stop_propagation"] = bool(payload.get("stop_propagation", False))
        document["nodes"] = nodes
        document["connections"] = payload.get("connections") or []

        try:
            workflow = Workflow.model_validate(document)
        except ValidationError as exc:
            logger.info("Rejected workflow payload: %s", exc)
            return OperationResult(success=False, error=f"工作流格式错误: {exc.error_count()} 处校验失败")

        if position is not None:
            workflows[position] = workflow
        else:
            workflows.append(workflow)

        if not self.save(workflows):
            return OperationResult(success=False, error="保存文件失败")
        logger.info("Workflow [%s] saved", workflow.name)
        return OperationResult(success=True, message="已保存", data={"id": workflow.id})
