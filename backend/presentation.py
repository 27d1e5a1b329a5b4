from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

from backend.db import as_utc

HEX_COLOR_PATTERN = r"^#(?:[0-9a-fA-F]{3}){1,2}$"


class TagVisualStyle(BaseModel):
    emoji: Optional[str] = Field(None, max_length=16)
    emoji_only: bool = False
    foreground_color: str = Field("#1f2937", pattern=HEX_COLOR_PATTERN)
    background_color: str = Field("#e5e7eb", pattern=HEX_COLOR_PATTERN)


class TagVisualStylePatch(BaseModel):
    emoji: Optional[str] = Field(None, max_length=16)
    emoji_only: Optional[bool] = None
    foreground_color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    background_color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)


DEFAULT_TAG_STYLE = TagVisualStyle()


def merge_with_default_tag_style(
    style: Optional[Union[TagVisualStylePatch, Dict[str, object]]],
) -> TagVisualStyle:
    if style is None:
        return DEFAULT_TAG_STYLE.model_copy()
    if isinstance(style, dict):
        style = TagVisualStylePatch.model_validate(style)
    merged = DEFAULT_TAG_STYLE.model_dump()
    for key, value in style.model_dump().items():
        if value is not None:
            merged[key] = value
    emoji = (merged["emoji"] or "").strip() or None
    merged["emoji"] = emoji
    # emoji_only has nothing to show without an emoji
    merged["emoji_only"] = bool(merged["emoji_only"] and emoji)
    return TagVisualStyle(**merged)


def merge_tag_style_map(styles: Optional[Dict[str, object]]) -> Dict[str, TagVisualStyle]:
    return {
        tag_id: merge_with_default_tag_style(value if isinstance(value, dict) else None)
        for tag_id, value in (styles or {}).items()
    }


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'} ago"


def format_relative_time(
    value: Union[datetime, str],
    now: Optional[datetime] = None,
) -> str:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    value = as_utc(value)
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    seconds = (now - value).total_seconds()
    if seconds < 60:
        return "just now"
    minutes = int(seconds // 60)
    if minutes < 60:
        return _plural(minutes, "minute")
    hours = minutes // 60
    if hours < 24:
        return _plural(hours, "hour")
    days = (now.date() - value.date()).days
    if days <= 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    return f"{value:%b} {value.day}, {value.year}"
