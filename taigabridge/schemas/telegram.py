"""Telegram webhook schemas."""

from pydantic import BaseModel, ConfigDict, Field


class TelegramUser(BaseModel):
    """Telegram user object."""
    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: str | None = None
    username: str | None = None
    language_code: str | None = None


class TelegramChat(BaseModel):
    """Telegram chat object."""
    id: int
    type: str  # "private", "group", "supergroup", "channel"
    title: str | None = None
    username: str | None = None

    @property
    def is_private(self) -> bool:
        return self.type == "private"


class TelegramMessage(BaseModel):
    """Telegram message object."""
    message_id: int
    date: int = 0
    chat: TelegramChat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    text: str | None = None
    reply_to_message: "TelegramMessage | None" = None

    model_config = ConfigDict(populate_by_name=True)


class TelegramCallbackQuery(BaseModel):
    """Telegram callback query from inline button."""
    id: str
    from_user: TelegramUser = Field(alias="from")
    message: TelegramMessage | None = None
    chat_instance: str = ""
    data: str | None = None  # Callback data from button

    model_config = ConfigDict(populate_by_name=True)


class TelegramUpdate(BaseModel):
    """Telegram webhook update."""
    update_id: int
    message: TelegramMessage | None = None
    callback_query: TelegramCallbackQuery | None = None


class InlineKeyboardButton(BaseModel):
    """Inline keyboard button."""
    text: str
    callback_data: str | None = None
    url: str | None = None


class InlineKeyboardMarkup(BaseModel):
    """Inline keyboard markup."""
    inline_keyboard: list[list[InlineKeyboardButton]]


class ParsedCallback(BaseModel):
    """Raw callback data split into its action and parameters."""
    action: str
    params: list[str] = Field(default_factory=list)

    @classmethod
    def parse(cls, data: str) -> "ParsedCallback":
        """Parse callback_data string like 'action:param1:param2'."""
        parts = data.split(":")
        return cls(action=parts[0], params=parts[1:] if len(parts) > 1 else [])
