from __future__ import annotations

from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from herald.core.logging import get_logger
from herald.core.supabase_rest import select_user_notification_preferences

logger = get_logger("notifications.preferences")

Category = Literal["auctions", "orders", "listings", "messages", "offers", "onboarding", "marketing", "admin"]

DEFAULT_TIMEZONE = "America/Chicago"


class QuietHours(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    start_hour: int = Field(default=21, ge=0, le=23)
    end_hour: int = Field(default=8, ge=0, le=23)


class ChannelToggles(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: bool = True
    push: bool = False
    in_app: bool = True


class CategoryToggles(BaseModel):
    model_config = ConfigDict(extra="ignore")

    auctions: bool = True
    orders: bool = True
    listings: bool = True
    messages: bool = True
    offers: bool = True
    onboarding: bool = True
    marketing: bool = False
    admin: bool = True


class NotificationPreferences(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timezone: str = DEFAULT_TIMEZONE
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    channels: ChannelToggles = Field(default_factory=ChannelToggles)
    categories: CategoryToggles = Field(default_factory=CategoryToggles)

    @field_validator("timezone", mode="before")
    @classmethod
    def _known_timezone(cls, value: object) -> str:
        if not isinstance(value, str) or not value.strip():
            return DEFAULT_TIMEZONE
        try:
            ZoneInfo(value.strip())
        except (ZoneInfoNotFoundError, ValueError):
            return DEFAULT_TIMEZONE
        return value.strip()

    def channel_enabled(self, channel: str) -> bool:
        return bool(getattr(self.channels, channel, False))

    def category_enabled(self, category: str) -> bool:
        return bool(getattr(self.categories, category, False))


def default_preferences() -> NotificationPreferences:
    return NotificationPreferences()


def preferences_from_row(row: dict[str, Any] | None) -> NotificationPreferences:
    """Merge a stored row over the defaults; unparseable sections fall back."""
    if not isinstance(row, dict):
        return default_preferences()

    candidate = {
        key: row[key]
        for key in ("timezone", "quiet_hours", "channels", "categories")
        if isinstance(row.get(key), str | dict)
    }
    try:
        return NotificationPreferences.model_validate(candidate)
    except ValidationError:
        logger.warning(
            "preferences.invalid_row",
            extra={"component": "worker", "user_id": row.get("user_id")},
        )
        return default_preferences()


async def load_user_preferences(user_id: str) -> NotificationPreferences:
    row = await select_user_notification_preferences(user_id)
    return preferences_from_row(row)
