"""
OneBot-11 Entry Adapter.

Responsibility:
- Normalize incoming OneBot message posts to MessageEvent
- Call OneBot HTTP actions (send_group_msg, set_group_ban, ...)
- Provide the outbound capability set, bound either to the inbound message
  or to a fixed scheduled target
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from shared.capabilities import MediaSource
from shared.models import MessageEvent

logger = logging.getLogger(__name__)

FORWARD_NICKNAME = "工作流"
DEFAULT_FORWARD_USER_ID = "10000"


def media_file(source: MediaSource) -> str:
    """OneBot ``file`` value for a URL/path or raw bytes."""
    if isinstance(source, (bytes, bytearray)):
        return "base64://" + base64.b64encode(bytes(source)).decode("ascii")
    return source


def text_segment(text: str) -> dict[str, Any]:
    return {"type": "text", "data": {"text": text}}


def parse_event(payload: dict[str, Any]) -> MessageEvent | None:
    """Convert a OneBot post into a MessageEvent; non-message posts yield None."""
    if payload.get("post_type") != "message":
        return None
    message_type = payload.get("message_type")
    if message_type not in ("group", "private"):
        return None
    if payload.get("user_id") in (None, ""):
        return None

    message = payload.get("message")
    try:
        return MessageEvent(
            user_id=payload["user_id"],
            group_id=payload.get("group_id") if message_type == "group" else None,
            message_type=message_type,
            raw_message=payload.get("raw_message") or "",
            message=message if isinstance(message, list) else [],
            message_id=payload.get("message_id") or "",
            self_id=payload.get("self_id") or "",
            sender=payload.get("sender") or {},
        )
    except ValidationError as exc:
        logger.warning("Ignoring malformed OneBot event: %s", exc)
        return None


class OneBotClient:
    """Minimal OneBot-11 HTTP action client."""

    def __init__(
        self,
        api_url: str,
        access_token: str = "",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.access_token = access_token.strip()
        self.timeout_seconds = float(timeout_seconds)
        self.transport = transport

    async def call(self, action: str, params: dict[str, Any]) -> Any:
        """Invoke an action; returns its ``data`` or None on any failure."""
        if not action:
            return None
        headers = {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
        url = f"{self.api_url}/{action}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(url, json=params, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except Exception as e:
            logger.error("OneBot action '%s' error: %s", action, e)
            return None

        if not isinstance(payload, dict):
            return None
        if payload.get("status") == "failed":
            logger.warning("OneBot action '%s' failed: retcode=%s %s", action, payload.get("retcode"), payload.get("message", ""))
            return None
        return payload.get("data")


class _OneBotReplies:
    """Capability set that sends to one chat (group or private)."""

    def __init__(self, client: OneBotClient, message_type: str, group_id: str | None, user_id: str, self_id: str = ""):
        self.client = client
        self.message_type = message_type
        self.group_id = group_id if message_type == "group" else None
        self.user_id = user_id
        self.self_id = self_id

    def _destination(self) -> dict[str, str]:
        if self.group_id:
            return {"group_id": self.group_id}
        return {"user_id": self.user_id}

    async def _send(self, message: list[dict[str, Any]]) -> None:
        action = "send_group_msg" if self.group_id else "send_private_msg"
        await self.client.call(action, {**self._destination(), "message": message})

    async def _group_call(self, action: str, params: dict[str, Any]) -> None:
        if not self.group_id:
            return
        await self.client.call(action, {"group_id": self.group_id, **params})

    async def reply(self, text: str) -> None:
        await self._send([text_segment(text)])

    async def reply_image(self, source: MediaSource, text: str | None = None) -> None:
        message = [{"type": "image", "data": {"file": media_file(source)}}]
        if text:
            message.append(text_segment(text))
        await self._send(message)

    async def reply_voice(self, source: MediaSource) -> None:
        await self._send([{"type": "record", "data": {"file": media_file(source)}}])

    async def reply_video(self, source: MediaSource) -> None:
        await self._send([{"type": "video", "data": {"file": media_file(source)}}])

    async def reply_file(self, url: str, name: str | None = None) -> None:
        await self._send([{"type": "file", "data": {"file": url, "name": name or "file"}}])

    async def reply_forward(self, messages: list[str]) -> None:
        nodes = [
            {
                "type": "node",
                "data": {
                    "user_id": self.self_id or DEFAULT_FORWARD_USER_ID,
                    "nickname": FORWARD_NICKNAME,
                    "content": [text_segment(content)],
                },
            }
            for content in messages
        ]
        action = "send_group_forward_msg" if self.group_id else "send_private_forward_msg"
        await self.client.call(action, {**self._destination(), "messages": nodes})

    async def reply_at(self, text: str) -> None:
        await self._send([{"type": "at", "data": {"qq": self.user_id}}, text_segment(" " + text)])

    async def reply_face(self, face_id: int) -> None:
        await self._send([{"type": "face", "data": {"id": str(face_id)}}])

    async def reply_poke(self, user_id: str) -> None:
        await self._send([{"type": "poke", "data": {"qq": user_id}}])

    async def reply_json(self, data: Any) -> None:
        await self._send([{"type": "json", "data": {"data": json.dumps(data, ensure_ascii=False)}}])

    async def reply_music(self, music_type: str, music_id: str) -> None:
        await self._send([{"type": "music", "data": {"type": music_type, "id": music_id}}])

    async def recall_msg(self, message_id: str) -> None:
        await self.client.call("delete_msg", {"message_id": message_id})

    async def group_sign(self) -> None:
        await self._group_call("send_group_sign", {})

    async def group_ban(self, user_id: str, duration: int) -> None:
        await self._group_call("set_group_ban", {"user_id": user_id, "duration": duration})

    async def group_kick(self, user_id: str, reject_add: bool = False) -> None:
        await self._group_call("set_group_kick", {"user_id": user_id, "reject_add_request": reject_add})

    async def group_whole_ban(self, enable: bool) -> None:
        await self._group_call("set_group_whole_ban", {"enable": enable})

    async def group_set_card(self, user_id: str, card: str) -> None:
        await self._group_call("set_group_card", {"user_id": user_id, "card": card})

    async def group_set_admin(self, user_id: str, enable: bool) -> None:
        await self._group_call("set_group_admin", {"user_id": user_id, "enable": enable})

    async def group_notice(self, content: str) -> None:
        await self._group_call("_send_group_notice", {"content": content})

    async def call_api(self, action: str, params: dict[str, Any]) -> Any:
        return await self.client.call(action, params)


class MessageReplyCapabilities(_OneBotReplies):
    """Replies to the chat an inbound message came from."""

    def __init__(self, client: OneBotClient, event: MessageEvent):
        super().__init__(client, event.message_type, event.group_id, event.user_id, event.self_id)


class TargetReplyCapabilities(_OneBotReplies):
    """Sends to a configured scheduled-task target.

    There is no sender to mention or poke, so ``reply_at`` sends plain text
    and ``reply_poke`` does nothing.
    """

    def __init__(self, client: OneBotClient, target_type: str, target_id: str):
        group_id = target_id if target_type == "group" else None
        super().__init__(client, target_type, group_id, target_id)

    async def reply_at(self, text: str) -> None:
        await self.reply(text)

    async def reply_poke(self, user_id: str) -> None:
        return None
