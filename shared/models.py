"""
Shared Pydantic models for all layers.
Workflow definitions and scheduled tasks are immutable (frozen) after creation;
updates go through ``model_copy(update=...)``.
"""

from __future__ import annotations

from datetime import datetime
import json
import math
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator


# ─── Entry Layer ───────────────────────────────────────────────

class MessageEvent(BaseModel):
    """Normalized inbound chat message (or synthetic scheduler event)."""
    model_config = {"frozen": True, "coerce_numbers_to_str": True}

    user_id: str
    group_id: str | None = None
    message_type: Literal["group", "private"] = "private"
    raw_message: str = ""
    message: list[Any] = Field(default_factory=list, description="Structured message segments")
    message_id: str = ""
    self_id: str = ""
    sender: dict[str, Any] = Field(default_factory=dict)


# ─── Node payloads ─────────────────────────────────────────────

_PAYLOAD_CONFIG = {
    "frozen": True,
    "extra": "allow",
    "coerce_numbers_to_str": True,
}

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})


def _loose_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return value is True or (isinstance(value, (int, float)) and value == 1)


def _loose_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


class _EditorPayload(BaseModel):
    """Node payload as written by the editor.

    Editor values are loosely typed: null or empty fields take the field
    default, numbers and booleans may arrive as strings, and an unknown
    enum value falls back to the default instead of rejecting the workflow.
    """
    model_config = _PAYLOAD_CONFIG

    @field_validator("*", mode="before")
    @classmethod
    def loosen_editor_value(cls, value: Any, info: ValidationInfo) -> Any:
        field = cls.model_fields[info.field_name]
        annotation = field.annotation
        if value is None:
            return field.get_default(call_default_factory=True)
        if annotation is Any:
            return value
        if annotation is str:
            if isinstance(value, bool):
                return "true" if value else "false"
            if isinstance(value, (dict, list)):
                return json.dumps(value, ensure_ascii=False)
            return value
        if isinstance(value, str) and not value.strip():
            return field.get_default(call_default_factory=True)
        if annotation is bool:
            return _loose_bool(value)
        if annotation in (int, float):
            number = _loose_number(value)
            if number is None:
                return field.get_default(call_default_factory=True)
            return int(number) if annotation is int else number
        if get_origin(annotation) is Literal and value not in get_args(annotation):
            return field.get_default(call_default_factory=True)
        return value


class TriggerData(_EditorPayload):
    trigger_type: str = "exact"
    trigger_content: str = ""
    trigger_value: str = ""

    @property
    def pattern(self) -> str:
        return self.trigger_content or self.trigger_value


class ConditionData(_EditorPayload):
    condition_type: str = "contains"
    condition_value: str = ""
    var_name: str = ""


class ActionData(_EditorPayload):
    action_type: str = "reply_text"
    action_value: str = ""

    # media / reply extras
    image_text: str = ""
    file_name: str = ""
    music_type: str = "qq"

    # group moderation
    target_user: str = "{user_id}"
    ban_duration: str = "600"
    card_value: str = ""
    reject_add: bool = False
    enable_ban: bool = False
    enable_admin: bool = False

    # generic host api
    api_action: str = ""
    api_params: str = "{}"
    result_var: str = ""

    # math
    math_type: str = "add"
    operand1: str = "0"
    operand2: str = "0"

    # string_op
    string_type: str = "concat"
    input1: str = ""
    input2: str = ""
    target: str = ""

    # custom http
    api_url: str = ""
    api_method: str = "GET"
    api_headers: str = ""
    api_body: str = ""
    api_timeout: float = 10.0
    response_type: str = "json"
    reply_type: str = "text"
    api_reply: str = ""


class DelayData(_EditorPayload):
    seconds: float = 1.0


class SetVarData(_EditorPayload):
    var_name: str = ""
    var_value: str = ""


class StorageData(_EditorPayload):
    storage_type: Literal["get", "set", "incr", "decr", "delete"] = "get"
    storage_key: str = ""
    storage_value: str = ""
    result_var: str = "data_result"
    default_value: Any = 0


class GlobalStorageData(_EditorPayload):
    storage_type: Literal["get", "set", "incr", "decr"] = "get"
    storage_key: str = ""
    storage_value: str = ""
    result_var: str = "global_result"
    default_value: Any = 0


class LeaderboardData(_EditorPayload):
    leaderboard_type: Literal["top", "my_rank", "count"] = "top"
    leaderboard_key: str = "score"
    limit: int = 10
    ascending: bool = False

    @field_validator("limit")
    @classmethod
    def positive_limit(cls, value: int) -> int:
        return value if value >= 1 else 10


class ListRandomData(_EditorPayload):
    list_items: str = ""
    weights: str = ""
    result_var: str = "list_result"
    index_var: str = "list_index"


# ─── Workflow graph ────────────────────────────────────────────

class _NodeBase(BaseModel):
    model_config = {"frozen": True, "extra": "allow", "coerce_numbers_to_str": True}

    id: str
    x: float | None = None
    y: float | None = None

    @field_validator("x", "y", mode="before")
    @classmethod
    def loose_position(cls, value: Any) -> float | None:
        return None if value is None else _loose_number(value)

    @field_validator("data", mode="before", check_fields=False)
    @classmethod
    def missing_payload(cls, value: Any) -> Any:
        return {} if value is None else value


class TriggerNode(_NodeBase):
    type: Literal["trigger"]
    data: TriggerData = Field(default_factory=TriggerData)


class ConditionNode(_NodeBase):
    type: Literal["condition"]
    data: ConditionData = Field(default_factory=ConditionData)


class ActionNode(_NodeBase):
    type: Literal["action"]
    data: ActionData = Field(default_factory=ActionData)


class DelayNode(_NodeBase):
    type: Literal["delay"]
    data: DelayData = Field(default_factory=DelayData)


class SetVarNode(_NodeBase):
    type: Literal["set_var"]
    data: SetVarData = Field(default_factory=SetVarData)


class StorageNode(_NodeBase):
    type: Literal["storage"]
    data: StorageData = Field(default_factory=StorageData)


class GlobalStorageNode(_NodeBase):
    type: Literal["global_storage"]
    data: GlobalStorageData = Field(default_factory=GlobalStorageData)


class LeaderboardNode(_NodeBase):
    type: Literal["leaderboard"]
    data: LeaderboardData = Field(default_factory=LeaderboardData)


class ListRandomNode(_NodeBase):
    type: Literal["list_random"]
    data: ListRandomData = Field(default_factory=ListRandomData)


WorkflowNode = Annotated[
    Union[
        TriggerNode,
        ConditionNode,
        ActionNode,
        DelayNode,
        SetVarNode,
        StorageNode,
        GlobalStorageNode,
        LeaderboardNode,
        ListRandomNode,
    ],
    Field(discriminator="type"),
]

OutputSlot = Literal["output_1", "output_2"]

_OUTPUT_ALIASES = {
    "output": "output_1",
    "output-1": "output_1",
    "output_1": "output_1",
    "output-2": "output_2",
    "output_2": "output_2",
}


class WorkflowConnection(BaseModel):
    """Directed edge from a node's output slot to another node."""
    model_config = {"frozen": True}

    from_node: str
    to_node: str
    from_output: OutputSlot = "output_1"

    @model_validator(mode="before")
    @classmethod
    def normalize_legacy_fields(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        payload = dict(value)
        if "from_node" not in payload and "from" in payload:
            payload["from_node"] = payload.pop("from")
        if "to_node" not in payload and "to" in payload:
            payload["to_node"] = payload.pop("to")
        raw_output = payload.get("from_output") or payload.get("port") or "output_1"
        payload["from_output"] = _OUTPUT_ALIASES.get(str(raw_output).strip(), str(raw_output).strip())
        payload.pop("port", None)
        for key in ("from_node", "to_node"):
            if key in payload and payload[key] is not None:
                payload[key] = str(payload[key])
        return payload


class Workflow(BaseModel):
    """Workflow document as stored by the document store."""
    model_config = {"frozen": True, "extra": "allow", "coerce_numbers_to_str": True}

    id: str
    name: str = "未命名"
    trigger_type: str = "exact"
    trigger_content: str = ""
    enabled: bool = True
    stop_propagation: bool = False
    nodes: list[WorkflowNode] = Field(default_factory=list)
    connections: list[WorkflowConnection] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def coerce_node_mapping(cls, value: Any) -> Any:
        # Editors may persist nodes as an id-keyed mapping.
        if isinstance(value, dict) and isinstance(value.get("nodes"), dict):
            value = dict(value)
            value["nodes"] = list(value["nodes"].values())
        return value

    @model_validator(mode="after")
    def validate_graph(self) -> "Workflow":
        node_ids = [node.id for node in self.nodes]
        if len(set(node_ids)) != len(node_ids):
            raise ValueError("Workflow node ids must be unique")
        return self

    def trigger_nodes(self) -> list[TriggerNode]:
        return [node for node in self.nodes if isinstance(node, TriggerNode)]


# ─── Scheduler ────────────────────────────────────────────────

class ScheduledTask(BaseModel):
    """Time-based entry into a workflow, bypassing trigger matching."""
    model_config = {"frozen": True, "coerce_numbers_to_str": True}

    id: str
    workflow_id: str
    task_type: Literal["daily", "interval", "cron"]
    daily_time: str | None = Field(default=None, description="HH:MM, local time")
    interval_seconds: int | None = None
    weekdays: list[int] | None = Field(default=None, description="0=Sunday .. 6=Saturday")
    cron_expression: str | None = None
    target_type: Literal["group", "private"]
    target_id: str
    trigger_user_id: str | None = Field(default=None, description="Virtual actor id")
    enabled: bool = True
    last_run: datetime | None = None
    run_count: int = 0
    description: str = ""


# ─── Operation results ────────────────────────────────────────

class OperationResult(BaseModel):
    """Structured success/failure result of a mutating operation."""
    model_config = {"frozen": True}

    success: bool
    message: str = ""
    error: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
