"""Outbound capability set consumed by the action dispatcher.

Implementations live with the transport (see ``entry/onebot.py``). All
methods are coroutines; ``call_api`` returns ``None`` on failure.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

MediaSource = str | bytes


@runtime_checkable
class ReplyCapabilities(Protocol):
    async def reply(self, text: str) -> None: ...

    async def reply_image(self, source: MediaSource, text: str | None = None) -> None: ...

    async def reply_voice(self, source: MediaSource) -> None: ...

    async def reply_video(self, source: MediaSource) -> None: ...

    async def reply_file(self, url: str, name: str | None = None) -> None: ...

    async def reply_forward(self, messages: list[str]) -> None: ...

    async def reply_at(self, text: str) -> None: ...

    async def reply_face(self, face_id: int) -> None: ...

    async def reply_poke(self, user_id: str) -> None: ...

    async def reply_json(self, data: Any) -> None: ...

    async def reply_music(self, music_type: str, music_id: str) -> None: ...

    async def recall_msg(self, message_id: str) -> None: ...

    async def group_sign(self) -> None: ...

    async def group_ban(self, user_id: str, duration: int) -> None: ...

    async def group_kick(self, user_id: str, reject_add: bool = False) -> None: ...

    async def group_whole_ban(self, enable: bool) -> None: ...

    async def group_set_card(self, user_id: str, card: str) -> None: ...

    async def group_set_admin(self, user_id: str, enable: bool) -> None: ...

    async def group_notice(self, content: str) -> None: ...

    async def call_api(self, action: str, params: dict[str, Any]) -> Any: ...
