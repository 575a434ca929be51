from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _TelegramModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TelegramUser(_TelegramModel):
    id: int
    is_bot: bool = False
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class Chat(_TelegramModel):
    id: int
    type: str | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class Contact(_TelegramModel):
    phone_number: str
    first_name: str | None = None
    user_id: int | None = None


class Message(_TelegramModel):
    message_id: int
    chat: Chat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    text: str | None = None
    contact: Contact | None = None


class CallbackQuery(_TelegramModel):
    id: str
    from_user: TelegramUser = Field(alias="from")
    message: Message | None = None
    data: str | None = None


class Update(_TelegramModel):
    update_id: int
    message: Message | None = None
    callback_query: CallbackQuery | None = None
