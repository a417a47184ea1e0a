"""Template substitution for ``{name}`` placeholders.

Resolution order for each token (single pass, substituted text is never
re-expanded):

1. built-ins: actor/group/message ids, content, date/time parts, random
   numbers, the at-mention formatter
2. positional captures ``{$1}``..``{$n}`` from the trigger match
3. execution context variables (internal keys excluded)
4. ``{storage.<key>}``: the invoking actor's persisted value

Unresolved tokens are left verbatim. ``render_response_template`` adds a
second pass resolving ``{json.path[0]}`` against the last HTTP response.
"""

from __future__ import annotations

import json
import random
import re
from datetime import datetime
from typing import Any, Callable

from memory.store import KeyValueStore
from shared.models import MessageEvent
from workflow.context import ExecutionContext

_TOKEN_PATTERN = re.compile(r"\{([^{}]+)\}")
_CAPTURE_PATTERN = re.compile(r"^\$(\d+)$")
_PATH_PART_PATTERN = re.compile(r"^([^\[]+)?(?:\[(\d+)\])?$")

WEEKDAY_NAMES_CN = ["周日", "周一", "周二", "周三", "周四", "周五", "周六"]

# Names the response pass must not treat as JSON paths.
RESPONSE_RESERVED_NAMES = frozenset(
    {"user_id", "group_id", "content", "message", "api_response", "api_status"}
)


def js_weekday(moment: datetime) -> int:
    """Weekday number with 0 = Sunday."""
    return (moment.weekday() + 1) % 7


def render_value(value: Any) -> str:
    """Render a context value the way templates display it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bytes):
        return ""
    return str(value)


def extract_json_path(data: Any, path: str) -> Any:
    """Resolve ``a.b[0].c`` style paths; missing segments yield ''."""
    result = data
    for part in path.split("."):
        found = _PATH_PART_PATTERN.match(part)
        if not found or (found.group(1) is None and found.group(2) is None):
            return ""
        name, index = found.group(1), found.group(2)
        if name is not None:
            if isinstance(result, dict):
                result = result.get(name)
            elif isinstance(result, list) and name.isdigit():
                position = int(name)
                result = result[position] if position < len(result) else None
            else:
                result = None
        if index is not None:
            position = int(index)
            if isinstance(result, list) and position < len(result):
                result = result[position]
            else:
                result = None
    return "" if result is None else result


class TemplateEngine:
    """Resolves placeholders against the layered variable namespaces."""

    def __init__(
        self,
        store: KeyValueStore,
        now: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.now = now
        self.rng = rng or random.Random()

    def builtins(self, event: MessageEvent, content: str) -> dict[str, str]:
        moment = self.now()
        date_text = moment.strftime("%Y-%m-%d")
        random100 = str(self.rng.randint(1, 100))
        return {
            "user_id": event.user_id,
            "group_id": event.group_id or "",
            "message_id": event.message_id,
            "content": content,
            "message": content,
            "date": date_text,
            "today": date_text,
            "time": moment.strftime("%H:%M:%S"),
            "datetime": moment.strftime("%Y-%m-%d %H:%M:%S"),
            "timestamp": str(int(moment.timestamp())),
            "year": str(moment.year),
            "month": str(moment.month),
            "day": str(moment.day),
            "hour": str(moment.hour),
            "minute": str(moment.minute),
            "weekday": str(js_weekday(moment)),
            "weekday_cn": WEEKDAY_NAMES_CN[js_weekday(moment)],
            "random": random100,
            "random100": random100,
            "random10": str(self.rng.randint(1, 10)),
            "random6": str(self.rng.randint(1, 6)),
            "at_user": f"[CQ:at,qq={event.user_id}]",
        }

    def render(self, text: str, event: MessageEvent, content: str, ctx: ExecutionContext) -> str:
        if not text or "{" not in text:
            return text or ""

        builtins = self.builtins(event, content)
        variables = dict(ctx.template_items())

        def _resolve(match: re.Match[str]) -> str:
            name = match.group(1)
            if name in builtins:
                return builtins[name]
            capture = _CAPTURE_PATTERN.match(name)
            if capture:
                position = int(capture.group(1)) - 1
                if 0 <= position < len(ctx.captures):
                    return ctx.captures[position] or ""
                return match.group(0)
            if name in variables:
                return render_value(variables[name])
            if name.startswith("storage.") and len(name) > len("storage."):
                stored = self.store.get_user(event.user_id, name[len("storage."):], "")
                return render_value(stored)
            return match.group(0)

        return _TOKEN_PATTERN.sub(_resolve, text)

    def render_response_template(
        self,
        text: str,
        event: MessageEvent,
        content: str,
        ctx: ExecutionContext,
    ) -> str:
        result = self.render(text, event, content, ctx)
        api_json = ctx.get("api_json")
        if api_json is None:
            return result

        def _resolve_path(match: re.Match[str]) -> str:
            path = match.group(1)
            if path in RESPONSE_RESERVED_NAMES or path.startswith("$"):
                return match.group(0)
            return render_value(extract_json_path(api_json, path.strip()))

        return _TOKEN_PATTERN.sub(_resolve_path, result)
