"""Executors for data-manipulating node kinds.

Each executor reads its validated payload, resolves templates, mutates the
execution context and (for storage kinds) the key-value store.
"""

from __future__ import annotations

import logging
import math
import random
import re
from typing import Any

from memory.store import KeyValueStore, round_number, to_number
from shared.models import (
    ActionData,
    GlobalStorageData,
    LeaderboardData,
    ListRandomData,
    MessageEvent,
    SetVarData,
    StorageData,
)
from workflow.context import ExecutionContext
from workflow.templates import TemplateEngine

logger = logging.getLogger(__name__)

MAX_REPEAT = 100

_INT_PATTERN = re.compile(r"^-?\d+$")
_FLOAT_PATTERN = re.compile(r"^-?\d+\.\d+$")


def parse_scalar(value: str) -> Any:
    """Store numbers and booleans typed; everything else as text."""
    if _INT_PATTERN.match(value):
        return int(value)
    if _FLOAT_PATTERN.match(value):
        return float(value)
    if value == "true":
        return True
    if value == "false":
        return False
    return value


def _step_amount(value: str) -> float:
    amount = to_number(value)
    if math.isnan(amount) or amount == 0:
        return 1.0
    return amount


def _power(base: float, exponent: float) -> float:
    """``base ** exponent`` with IEEE results instead of exceptions."""
    try:
        result = base ** exponent
    except OverflowError:
        negative = base < 0 and exponent.is_integer() and exponent % 2 == 1
        return -math.inf if negative else math.inf
    except ZeroDivisionError:
        return math.inf
    if isinstance(result, complex):
        return math.nan
    return result


def _format_score(value: int | float) -> str:
    if isinstance(value, float) and not value.is_integer():
        return f"{value:.2f}"
    return str(value)


def _leading_int(text: str, default: int | None = None) -> int | None:
    found = re.match(r"^\s*([+-]?\d+)", text or "")
    return int(found.group(1)) if found else default


class NodeBodyLibrary:
    def __init__(
        self,
        store: KeyValueStore,
        templates: TemplateEngine,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.templates = templates
        self.rng = rng or random.Random()

    def _render(self, text: str, event: MessageEvent, content: str, ctx: ExecutionContext) -> str:
        return self.templates.render(text, event, content, ctx)

    # ─── variables / storage ──────────────────────────────────

    def set_var(self, data: SetVarData, event: MessageEvent, content: str, ctx: ExecutionContext) -> None:
        if data.var_name:
            ctx[data.var_name] = self._render(data.var_value, event, content, ctx)

    def storage(self, data: StorageData, event: MessageEvent, content: str, ctx: ExecutionContext) -> None:
        key = self._render(data.storage_key, event, content, ctx)
        if not key:
            return
        value = self._render(data.storage_value, event, content, ctx)
        default = data.default_value if data.default_value is not None else 0
        user_id = event.user_id
        kind = data.storage_type

        if kind == "get":
            ctx[data.result_var] = self.store.get_user(user_id, key, default)
        elif kind == "set":
            self.store.set_user(user_id, key, parse_scalar(value))
            ctx[data.result_var] = value
        elif kind == "incr":
            ctx[data.result_var] = self.store.incr_user(user_id, key, _step_amount(value), to_number(default, 0.0))
        elif kind == "decr":
            ctx[data.result_var] = self.store.incr_user(user_id, key, -_step_amount(value), to_number(default, 0.0))
        elif kind == "delete":
            self.store.delete_user(user_id, key)
            ctx[data.result_var] = ""

    def global_storage(
        self,
        data: GlobalStorageData,
        event: MessageEvent,
        content: str,
        ctx: ExecutionContext,
    ) -> None:
        key = self._render(data.storage_key, event, content, ctx)
        if not key:
            return
        value = self._render(data.storage_value, event, content, ctx)
        default = data.default_value if data.default_value is not None else 0
        kind = data.storage_type

        if kind == "get":
            ctx[data.result_var] = self.store.get_global(key, default)
        elif kind == "set":
            self.store.set_global(key, parse_scalar(value))
            ctx[data.result_var] = value
        elif kind == "incr":
            ctx[data.result_var] = self.store.incr_global(key, _step_amount(value), to_number(default, 0.0))
        elif kind == "decr":
            ctx[data.result_var] = self.store.incr_global(key, -_step_amount(value), to_number(default, 0.0))

    def leaderboard(self, data: LeaderboardData, event: MessageEvent, content: str, ctx: ExecutionContext) -> None:
        key = self._render(data.leaderboard_key, event, content, ctx) or "score"
        kind = data.leaderboard_type

        if kind == "top":
            rows = self.store.get_leaderboard(key, data.limit, data.ascending)
            ctx["leaderboard"] = "\n".join(
                f"{index + 1}. {owner[:8]}... : {_format_score(value)}" for index, (owner, value) in enumerate(rows)
            )
            ctx["leaderboard_list"] = [[owner, value] for owner, value in rows]
        elif kind == "my_rank":
            rank = self.store.get_user_rank(event.user_id, key, data.ascending)
            ctx["my_rank"] = rank["rank"]
            ctx["my_value"] = rank["value"]
            ctx["total_users"] = rank["total"]
        elif kind == "count":
            ctx["user_count"] = self.store.count_users_with_key(key)

    # ─── math / string ────────────────────────────────────────

    def math_op(self, data: ActionData, event: MessageEvent, content: str, ctx: ExecutionContext) -> None:
        a = to_number(self._render(data.operand1 or "0", event, content, ctx))
        b = to_number(self._render(data.operand2 or "0", event, content, ctx))
        kind = data.math_type or "add"

        if kind == "add":
            result = a + b
        elif kind == "sub":
            result = a - b
        elif kind == "mul":
            result = a * b
        elif kind == "div":
            result = a / b if b != 0 else 0.0
        elif kind == "mod":
            result = math.fmod(a, b) if b != 0 else 0.0
        elif kind == "pow":
            result = _power(a, b)
        elif kind == "min":
            result = min(a, b)
        elif kind == "max":
            result = max(a, b)
        elif kind == "random":
            if math.isnan(a) or math.isnan(b):
                result = math.nan
            else:
                low, high = sorted((math.ceil(a), math.floor(b)))
                result = float(self.rng.randint(int(low), int(high)))
        else:
            result = a

        ctx[data.result_var or "math_result"] = round_number(result)

    def string_op(self, data: ActionData, event: MessageEvent, content: str, ctx: ExecutionContext) -> None:
        first = self._render(data.input1, event, content, ctx)
        second = self._render(data.input2, event, content, ctx)
        kind = data.string_type or "concat"
        result: str | int

        if kind == "concat":
            result = first + second
        elif kind == "replace":
            result = re.sub(data.target or "", lambda _match: second, first) if data.target else first
        elif kind == "split":
            parts = first.split(second or "|")
            ctx["split_list"] = parts
            ctx["split_count"] = len(parts)
            result = parts[0] if parts else ""
        elif kind in ("substr", "substring"):
            start_text, _, end_text = (second or "0").partition(",")
            start = _leading_int(start_text, 0)
            end = _leading_int(end_text)
            result = first[start:end] if end else first[start:]
        elif kind == "length":
            result = len(first)
        elif kind == "upper":
            result = first.upper()
        elif kind == "lower":
            result = first.lower()
        elif kind == "trim":
            result = first.strip()
        elif kind == "contains":
            found = second in first
            result = "1" if found else "0"
            ctx["contains"] = found
        elif kind == "repeat":
            times = _leading_int(second) or 1
            result = first * max(0, min(times, MAX_REPEAT))
        else:
            result = first

        ctx[data.result_var or "string_result"] = result

    # ─── random pick ──────────────────────────────────────────

    def list_random(self, data: ListRandomData, event: MessageEvent, content: str, ctx: ExecutionContext) -> None:
        rendered = self._render(data.list_items, event, content, ctx)
        items = [item.strip() for item in rendered.split("|") if item.strip()]
        if not items:
            ctx[data.result_var] = ""
            ctx[data.index_var] = -1
            return

        index = self._weighted_index(data.weights, len(items))
        if index is None:
            index = self.rng.randrange(len(items))
        ctx[data.result_var] = items[index]
        ctx[data.index_var] = index

    def _weighted_index(self, weights_text: str, count: int) -> int | None:
        if not weights_text:
            return None
        weights = [to_number(item) for item in weights_text.split("|")]
        if len(weights) != count or any(math.isnan(weight) or weight < 0 for weight in weights):
            return None
        total = sum(weights)
        if total <= 0:
            return None
        draw = self.rng.random() * total
        cumulative = 0.0
        for index, weight in enumerate(weights):
            cumulative += weight
            if draw < cumulative:
                return index
        return None
