"""Condition node predicates.

``ConditionEvaluator.evaluate`` is a pure boolean function of the node
payload, the event, the message content and the execution context (plus
reads from the key-value store). Unknown condition kinds fail open.
"""

from __future__ import annotations

import logging
import math
import random
import re
from datetime import datetime
from typing import Callable

from memory.store import KeyValueStore, to_number
from shared.models import ConditionData, MessageEvent
from shared.safe_eval import safe_eval_bool
from workflow.context import ExecutionContext
from workflow.templates import TemplateEngine, js_weekday, render_value

logger = logging.getLogger(__name__)

WEEKDAY_ALIASES: dict[str, int] = {
    "周日": 0,
    "周一": 1,
    "周二": 2,
    "周三": 3,
    "周四": 4,
    "周五": 5,
    "周六": 6,
    "星期日": 0,
    "星期天": 0,
    "星期一": 1,
    "星期二": 2,
    "星期三": 3,
    "星期四": 4,
    "星期五": 5,
    "星期六": 6,
}


def _split_operand(value: str, separator: str) -> tuple[str, str | None]:
    parts = value.split(separator)
    key = parts[0].strip()
    operand = parts[1].strip() if len(parts) > 1 else None
    return key, operand


def _greater(left: float, right: float) -> bool:
    if math.isnan(left) or math.isnan(right):
        return False
    return left > right


def _parse_int(text: str) -> int | None:
    found = re.match(r"^\s*([+-]?\d+)", text or "")
    return int(found.group(1)) if found else None


class ConditionEvaluator:
    def __init__(
        self,
        store: KeyValueStore,
        templates: TemplateEngine,
        now: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.templates = templates
        self.now = now
        self.rng = rng or random.Random()

    def evaluate(
        self,
        data: ConditionData,
        event: MessageEvent,
        content: str,
        ctx: ExecutionContext,
    ) -> bool:
        kind = data.condition_type or "contains"
        value = self.templates.render(data.condition_value, event, content, ctx)
        var_name = data.var_name
        user_id = event.user_id

        if kind == "contains":
            return value in content
        if kind == "equals":
            return content == value
        if kind == "regex":
            try:
                return re.search(value, content) is not None
            except re.error:
                return False
        if kind == "random":
            return self.rng.random() * 100 < to_number(value, default=-math.inf)
        if kind == "user_id":
            return user_id == value
        if kind == "group_id":
            return event.group_id is not None and event.group_id == value

        if kind == "var_equals":
            return render_value(ctx.get(var_name)) == value
        if kind == "var_gt":
            return _greater(to_number(ctx.get(var_name) or 0), to_number(value))
        if kind == "var_lt":
            return _greater(to_number(value), to_number(ctx.get(var_name) or 0))

        if kind == "data_equals":
            key, operand = _split_operand(value, "=")
            if operand is None:
                return False
            return render_value(self.store.get_user(user_id, key, "")) == operand
        if kind == "data_gt":
            key, operand = _split_operand(value, ">")
            if operand is None:
                return False
            return _greater(to_number(self.store.get_user(user_id, key, 0)), to_number(operand))
        if kind == "data_lt":
            key, operand = _split_operand(value, "<")
            if operand is None:
                return False
            return _greater(to_number(operand), to_number(self.store.get_user(user_id, key, 0)))
        if kind == "data_is_today":
            stored = render_value(self.store.get_user(user_id, value.strip(), ""))
            return stored == self.now().strftime("%Y-%m-%d")

        if kind == "cooldown":
            key, operand = _split_operand(value, ",")
            threshold = to_number(operand or 0)
            last_use = to_number(self.store.get_user(user_id, key, 0))
            elapsed = self.now().timestamp() - last_use
            if math.isnan(threshold) or math.isnan(elapsed):
                return False
            return elapsed >= threshold
        if kind == "time_range":
            start_text, _, end_text = value.partition("-")
            start, end = _parse_int(start_text), _parse_int(end_text)
            if start is None or end is None:
                return False
            hour = self.now().hour
            if start <= end:
                return start <= hour <= end
            return hour >= start or hour <= end
        if kind == "weekday_in":
            today = js_weekday(self.now())
            for item in value.split("|"):
                day = item.strip()
                number = WEEKDAY_ALIASES.get(day)
                if number is None:
                    number = _parse_int(day)
                if number == today:
                    return True
            return False

        if kind == "global_equals":
            key, operand = _split_operand(value, "=")
            if operand is None:
                return False
            return render_value(self.store.get_global(key, "")) == operand
        if kind == "global_gt":
            key, operand = _split_operand(value, ">")
            if operand is None:
                return False
            return _greater(to_number(self.store.get_global(key, 0)), to_number(operand))

        if kind == "expression":
            return safe_eval_bool(value, ctx.expression_scope(), default=False)

        logger.debug("Unknown condition type '%s', passing", kind)
        return True
