"""
Action Dispatcher.

Responsibility:
- Execute outward side effects of ``action`` nodes through the injected
  capability set (replies, moderation, host API calls)
- Run the custom HTTP node (httpx) and reply with a template over its response
- Swallow capability failures at the boundary; only the custom HTTP node
  reports failures back to the chat as an error reply
"""

from __future__ import annotations

import json
import logging
import random
import re
from typing import Any, Awaitable, Callable

import httpx

from shared.capabilities import ReplyCapabilities
from shared.models import ActionData, MessageEvent
from workflow.context import ExecutionContext
from workflow.node_bodies import NodeBodyLibrary
from workflow.templates import TemplateEngine, render_value

logger = logging.getLogger(__name__)

ActionHandler = Callable[[ActionData, str, MessageEvent, str, ExecutionContext, ReplyCapabilities], Awaitable[None]]
ClientFactory = Callable[..., httpx.AsyncClient]

DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
MAX_HTTP_TIMEOUT_SECONDS = 60.0
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
VARIANT_SEPARATOR = "|||"
DEFAULT_HEADERS = {"User-Agent": "Mozilla/5.0", "Accept": "*/*"}


def split_variants(text: str) -> list[str]:
    return [item.strip() for item in text.split(VARIANT_SEPARATOR) if item.strip()]


def parse_headers(raw: str | dict[str, Any] | None) -> dict[str, str]:
    """Header pairs from a mapping, a JSON object or ``Key: value`` lines."""
    if isinstance(raw, dict):
        return {str(key): render_value(value) for key, value in raw.items()}
    raw = raw or ""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return {str(key): render_value(value) for key, value in parsed.items()}
    headers: dict[str, str] = {}
    for line in raw.splitlines():
        key, _, header_value = line.partition(":")
        if key.strip() and header_value.strip():
            headers[key.strip()] = header_value.strip()
    return headers


def _leading_int(text: str, default: int) -> int:
    found = re.match(r"^\s*([+-]?\d+)", text or "")
    return int(found.group(1)) if found else default


class ActionDispatcher:
    """Dispatches ``action_type`` to a registered async handler."""

    def __init__(
        self,
        templates: TemplateEngine,
        bodies: NodeBodyLibrary,
        client_factory: ClientFactory = httpx.AsyncClient,
        rng: random.Random | None = None,
    ):
        self.templates = templates
        self.bodies = bodies
        self.client_factory = client_factory
        self.rng = rng or random.Random()
        self.handlers: dict[str, ActionHandler] = {
            "reply_text": self._reply_text,
            "reply_image": self._reply_image,
            "reply_voice": self._reply_voice,
            "reply_video": self._reply_video,
            "reply_at": self._reply_at,
            "reply_face": self._reply_face,
            "reply_poke": self._reply_poke,
            "reply_json": self._reply_json,
            "reply_file": self._reply_file,
            "reply_music": self._reply_music,
            "reply_forward": self._reply_forward,
            "recall_msg": self._recall_msg,
            "custom_api": self._custom_api,
            "math": self._math,
            "string_op": self._string_op,
            "group_sign": self._group_sign,
            "group_ban": self._group_ban,
            "group_kick": self._group_kick,
            "group_whole_ban": self._group_whole_ban,
            "group_set_card": self._group_set_card,
            "group_set_admin": self._group_set_admin,
            "group_notice": self._group_notice,
            "call_api": self._call_api,
        }

    def register_handler(self, action_type: str, handler: ActionHandler) -> None:
        """Register (or override) the handler for an action type."""
        key = str(action_type).strip()
        if not key:
            raise ValueError("action_type must not be empty")
        self.handlers[key] = handler

    async def dispatch(
        self,
        data: ActionData,
        event: MessageEvent,
        content: str,
        ctx: ExecutionContext,
        caps: ReplyCapabilities,
    ) -> None:
        action_type = data.action_type or "reply_text"
        handler = self.handlers.get(action_type)
        if handler is None:
            logger.debug("Unknown action type '%s', skipping", action_type)
            return
        value = self._render(data.action_value, event, content, ctx)
        await handler(data, value, event, content, ctx, caps)

    # ─── helpers ──────────────────────────────────────────────

    def _render(self, text: str, event: MessageEvent, content: str, ctx: ExecutionContext) -> str:
        return self.templates.render(text, event, content, ctx)

    async def _safe(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except Exception as exc:
            logger.warning("Capability '%s' failed: %s", operation, exc)
            return None

    # ─── replies ──────────────────────────────────────────────

    async def _reply_text(self, data, value, event, content, ctx, caps) -> None:
        variants = split_variants(value)
        text = self.rng.choice(variants) if variants else value
        if not text:
            logger.debug("Empty reply_text, nothing sent")
            return
        await self._safe("reply", caps.reply(text))

    async def _reply_image(self, data, value, event, content, ctx, caps) -> None:
        caption = self._render(data.image_text, event, content, ctx) or None
        await self._safe("reply_image", caps.reply_image(value, caption))

    async def _reply_voice(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("reply_voice", caps.reply_voice(value))

    async def _reply_video(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("reply_video", caps.reply_video(value))

    async def _reply_at(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("reply_at", caps.reply_at(value))

    async def _reply_face(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("reply_face", caps.reply_face(_leading_int(value, 0)))

    async def _reply_poke(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("reply_poke", caps.reply_poke(value or event.user_id))

    async def _reply_json(self, data, value, event, content, ctx, caps) -> None:
        try:
            payload = json.loads(value)
        except ValueError:
            await self._safe("reply", caps.reply(value))
            return
        await self._safe("reply_json", caps.reply_json(payload))

    async def _reply_file(self, data, value, event, content, ctx, caps) -> None:
        name = self._render(data.file_name, event, content, ctx) or None
        await self._safe("reply_file", caps.reply_file(value, name))

    async def _reply_music(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("reply_music", caps.reply_music(data.music_type or "qq", value))

    async def _reply_forward(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("reply_forward", caps.reply_forward(split_variants(value)))

    async def _recall_msg(self, data, value, event, content, ctx, caps) -> None:
        message_id = value or event.message_id
        if not message_id:
            logger.debug("recall_msg without a message id, skipping")
            return
        await self._safe("recall_msg", caps.recall_msg(message_id))

    # ─── data ops (run as action types) ───────────────────────

    async def _math(self, data, value, event, content, ctx, caps) -> None:
        self.bodies.math_op(data, event, content, ctx)

    async def _string_op(self, data, value, event, content, ctx, caps) -> None:
        self.bodies.string_op(data, event, content, ctx)

    # ─── group moderation ─────────────────────────────────────

    def _target_user(self, data: ActionData, event: MessageEvent, content: str, ctx: ExecutionContext) -> str:
        return self._render(data.target_user or "{user_id}", event, content, ctx)

    async def _group_sign(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("group_sign", caps.group_sign())

    async def _group_ban(self, data, value, event, content, ctx, caps) -> None:
        duration = _leading_int(self._render(data.ban_duration or "600", event, content, ctx), 600) or 600
        await self._safe("group_ban", caps.group_ban(self._target_user(data, event, content, ctx), duration))

    async def _group_kick(self, data, value, event, content, ctx, caps) -> None:
        await self._safe(
            "group_kick",
            caps.group_kick(self._target_user(data, event, content, ctx), bool(data.reject_add)),
        )

    async def _group_whole_ban(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("group_whole_ban", caps.group_whole_ban(bool(data.enable_ban)))

    async def _group_set_card(self, data, value, event, content, ctx, caps) -> None:
        card = self._render(data.card_value, event, content, ctx)
        await self._safe(
            "group_set_card",
            caps.group_set_card(self._target_user(data, event, content, ctx), card),
        )

    async def _group_set_admin(self, data, value, event, content, ctx, caps) -> None:
        await self._safe(
            "group_set_admin",
            caps.group_set_admin(self._target_user(data, event, content, ctx), bool(data.enable_admin)),
        )

    async def _group_notice(self, data, value, event, content, ctx, caps) -> None:
        await self._safe("group_notice", caps.group_notice(value))

    # ─── host api ─────────────────────────────────────────────

    async def _call_api(self, data, value, event, content, ctx, caps) -> None:
        action = self._render(data.api_action, event, content, ctx)
        params: dict[str, Any] = {}
        try:
            parsed = json.loads(self._render(data.api_params or "{}", event, content, ctx))
            if isinstance(parsed, dict):
                params = parsed
        except ValueError:
            logger.debug("call_api params are not valid JSON, sending {}")
        result = await self._safe("call_api", caps.call_api(action, params))
        if data.result_var:
            ctx[data.result_var] = result

    # ─── custom http ──────────────────────────────────────────

    def _build_headers(self, raw: str, event: MessageEvent, content: str, ctx: ExecutionContext) -> dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        for key, header_value in parse_headers(raw).items():
            headers[key] = self._render(header_value, event, content, ctx)
        return headers

    @staticmethod
    def _timeout(data: ActionData) -> float:
        seconds = data.api_timeout if data.api_timeout and data.api_timeout > 0 else DEFAULT_HTTP_TIMEOUT_SECONDS
        return min(float(seconds), MAX_HTTP_TIMEOUT_SECONDS)

    async def _custom_api(self, data, value, event, content, ctx, caps) -> None:
        url = self._render(data.api_url, event, content, ctx)
        method = (data.api_method or "GET").upper()
        headers = self._build_headers(data.api_headers, event, content, ctx)
        body = None
        if data.api_body and method in BODY_METHODS:
            body = self._render(data.api_body, event, content, ctx)
        response_type = data.response_type or "json"

        try:
            logger.info("Custom API call: %s %s", method, url)
            async with self.client_factory(timeout=self._timeout(data)) as client:
                response = await client.request(method, url, headers=headers, content=body)
        except httpx.TimeoutException as exc:
            logger.warning("Custom API timeout calling '%s': %r", url, exc)
            await self._safe("reply", caps.reply("API调用失败: 请求超时"))
            return
        except Exception as exc:
            logger.warning("Custom API error calling '%s': %r", url, exc)
            await self._safe("reply", caps.reply(f"API调用失败: {str(exc) or '请求超时'}"))
            return

        ctx["api_status"] = response.status_code
        ctx["api_json"] = None
        ctx["api_binary"] = None
        if response_type == "json":
            try:
                ctx["api_json"] = response.json()
                ctx["api_response"] = json.dumps(ctx["api_json"], ensure_ascii=False)
            except ValueError:
                ctx["api_response"] = response.text
        elif response_type == "binary":
            ctx["api_binary"] = response.content
            ctx["api_response"] = url
        else:
            ctx["api_response"] = response.text

        if data.api_reply:
            text = self.templates.render_response_template(data.api_reply, event, content, ctx)
        else:
            text = render_value(ctx["api_response"])

        binary = ctx.get("api_binary") if response_type == "binary" else None
        media: str | bytes = binary if binary else text
        reply_type = data.reply_type or "text"

        if reply_type == "text":
            await self._safe("reply", caps.reply(text))
        elif reply_type == "image":
            caption = self._render(data.image_text, event, content, ctx) or None
            await self._safe("reply_image", caps.reply_image(media, caption))
        elif reply_type == "voice":
            await self._safe("reply_voice", caps.reply_voice(media))
        elif reply_type == "video":
            await self._safe("reply_video", caps.reply_video(media))
        elif reply_type == "forward":
            await self._safe("reply_forward", caps.reply_forward(split_variants(text)))
        else:
            logger.debug("Unknown custom API reply type '%s'", reply_type)
