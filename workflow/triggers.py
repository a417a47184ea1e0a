"""Trigger matching against inbound message text.

``match_trigger`` returns ``None`` when the trigger does not fire, or the
ordered list of regex captures (empty for non-regex kinds) when it does.
Scheduled/timer triggers never match text: the scheduler enters the graph
past the trigger node instead.
"""

from __future__ import annotations

import logging
import re

from shared.models import TriggerNode

logger = logging.getLogger(__name__)

SCHEDULED_TRIGGER_TYPES = frozenset({"scheduled", "timer"})


def match(trigger_type: str, content: str, value: str) -> list[str] | None:
    kind = (trigger_type or "exact").strip()
    if kind in SCHEDULED_TRIGGER_TYPES:
        return None
    if not value:
        return None

    if kind == "exact":
        return [] if content == value else None
    if kind == "contains":
        return [] if value in content else None
    if kind == "startswith":
        return [] if content.startswith(value) else None
    if kind == "regex":
        try:
            found = re.search(value, content)
        except re.error as exc:
            logger.debug("Invalid trigger regex %r: %s", value, exc)
            return None
        if found is None:
            return None
        return [group if group is not None else "" for group in found.groups()]
    if kind == "any":
        keywords = [item.strip() for item in value.split("|") if item.strip()]
        return [] if any(keyword in content for keyword in keywords) else None

    logger.debug("Unknown trigger type '%s'", kind)
    return None


def match_trigger(node: TriggerNode, content: str) -> list[str] | None:
    return match(node.data.trigger_type, content, node.data.pattern)


def first_matching_trigger(
    triggers: list[TriggerNode],
    content: str,
) -> tuple[TriggerNode, list[str]] | None:
    """Positional evaluation; the first match short-circuits the rest."""
    for trigger in triggers:
        captures = match_trigger(trigger, content)
        if captures is not None:
            return trigger, captures
    return None
