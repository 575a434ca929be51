from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from coursebot.core.config import settings
from coursebot.core.errors import ChannelError
from coursebot.models.course import MediaType
from coursebot.services.repository import Media

log = logging.getLogger(__name__)

# Bot API method and payload field per media kind.
_MEDIA_METHODS: dict[MediaType, tuple[str, str]] = {
    MediaType.photo: ("sendPhoto", "photo"),
    MediaType.video: ("sendVideo", "video"),
}


class Channel(Protocol):
    def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_markup: dict | None = None,
        parse_mode: str | None = None,
    ) -> dict: ...

    def send_media(
        self,
        chat_id: str,
        media: Media,
        *,
        caption: str | None = None,
        reply_markup: dict | None = None,
    ) -> dict: ...

    def answer_callback(self, callback_id: str, text: str | None = None) -> None: ...

    def set_commands(self, commands: list[tuple[str, str]]) -> None: ...


class TelegramChannel:
    """Telegram Bot API client over httpx."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.telegram.org",
        timeout_connect: float = 3.0,
        timeout_read: float = 15.0,
    ):
        self.token = token
        self.base_url = str(base_url or "").rstrip("/")
        self.timeout_connect = float(timeout_connect)
        self.timeout_read = float(timeout_read)

    @classmethod
    def from_settings(cls) -> TelegramChannel:
        return cls(
            settings.bot_token,
            base_url=settings.telegram_api_base_url,
            timeout_connect=settings.telegram_timeout_connect,
            timeout_read=settings.telegram_timeout_read,
        )

    def _call(self, method: str, payload: dict[str, Any]) -> Any:
        if not self.token:
            raise ChannelError(method, "bot token is not configured")

        url = f"{self.base_url}/bot{self.token}/{method}"
        timeout = httpx.Timeout(
            connect=self.timeout_connect,
            read=self.timeout_read,
            write=self.timeout_read,
            pool=3.0,
        )
        try:
            with httpx.Client(timeout=timeout) as client:
                r = client.post(url, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as e:
            status = int(e.response.status_code)
            description = None
            try:
                description = (e.response.json() or {}).get("description")
            except ValueError:
                description = None
            raise ChannelError(method, str(description or e.response.text[:300] or "http error"), status=status) from e
        except httpx.HTTPError as e:
            raise ChannelError(method, f"request failed: {type(e).__name__}") from e
        except ValueError as e:
            raise ChannelError(method, "invalid json response") from e

        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise ChannelError(method, str(description or "request rejected"))
        return data.get("result")

    def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_markup: dict | None = None,
        parse_mode: str | None = None,
    ) -> dict:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return self._call("sendMessage", payload) or {}

    def send_media(
        self,
        chat_id: str,
        media: Media,
        *,
        caption: str | None = None,
        reply_markup: dict | None = None,
    ) -> dict:
        method, field = _MEDIA_METHODS[media.kind]
        payload: dict[str, Any] = {"chat_id": chat_id, field: media.url}
        if caption:
            payload["caption"] = caption
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        return self._call(method, payload) or {}

    def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        self._call("answerCallbackQuery", payload)

    def set_commands(self, commands: list[tuple[str, str]]) -> None:
        self._call(
            "setMyCommands",
            {"commands": [{"command": c, "description": d} for c, d in commands]},
        )

    def set_webhook(self, url: str, *, secret_token: str | None = None) -> None:
        payload: dict[str, Any] = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if secret_token:
            payload["secret_token"] = secret_token
        self._call("setWebhook", payload)
        log.info("telegram webhook set url=%s", url)
