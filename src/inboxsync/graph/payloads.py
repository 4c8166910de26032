"""Typed shapes for upstream Graph API responses and Meta push events.

Only the fields the engine reads are modelled; everything else is kept in
``raw`` for diagnosis and never consulted by business logic.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

def _id_to_str(v: Any) -> Any:
    # Graph IDs occasionally arrive as JSON numbers
    return str(v) if isinstance(v, int) and not isinstance(v, bool) else v


# Epoch values above this are milliseconds, below it seconds.
_EPOCH_MS_THRESHOLD = 10**12

_BASIC_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_graph_time(value: Any) -> datetime | None:
    """Parse an epoch (s or ms) or ISO-8601 timestamp into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        number = float(value)
        if number > _EPOCH_MS_THRESHOLD:
            number /= 1000
        return datetime.fromtimestamp(number, tz=timezone.utc)
    elif isinstance(value, str):
        # Graph emits "+0000"; normalise to "+00:00"
        text = _BASIC_OFFSET.sub(r"\1:\2", value.strip().replace("Z", "+00:00"))
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_profile_pic_url(raw: dict[str, Any] | None) -> str | None:
    """Pick the profile picture URL out of whichever field the API used."""
    if not raw:
        return None

    for key in ("profile_pic", "profile_pic_url", "profile_picture_url"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value

    picture = raw.get("picture")
    if isinstance(picture, dict):
        data = picture.get("data")
        if isinstance(data, dict) and data.get("url"):
            return data["url"]
        if picture.get("url"):
            return picture["url"]

    data = raw.get("data")
    if isinstance(data, dict) and data.get("url"):
        return data["url"]

    return None


# ═══════════════════════════════════════════════════════════════════════════════
# PULL API
# ═══════════════════════════════════════════════════════════════════════════════

class Party(BaseModel):
    """A sender, recipient, or thread participant."""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str | None = None
    profile_pic: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return _id_to_str(v)


class ConversationSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    updated_time: datetime | None = None

    @field_validator("updated_time", mode="before")
    @classmethod
    def _parse_updated(cls, v: Any) -> datetime | None:
        return parse_graph_time(v)


class GraphMessage(BaseModel):
    """One message from a conversation detail response."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    sender: Party | None = Field(default=None, alias="from")
    to: list[Party] = Field(default_factory=list)
    message: str | None = None
    created_time: datetime | None = None
    attachments: Any = None

    @field_validator("to", mode="before")
    @classmethod
    def _flatten_to(cls, v: Any) -> Any:
        # `to` arrives as {"data": [...]}, a single {"id": ...}, or a list
        if v is None:
            return []
        if isinstance(v, dict):
            return v.get("data", [v]) if "data" in v else [v]
        return v

    @field_validator("created_time", mode="before")
    @classmethod
    def _parse_created(cls, v: Any) -> datetime | None:
        return parse_graph_time(v)

    @property
    def from_id(self) -> str | None:
        return self.sender.id if self.sender else None

    @property
    def to_id(self) -> str | None:
        return self.to[0].id if self.to else None


class ConversationDetail(BaseModel):
    """Participants plus messages for a single conversation."""

    model_config = ConfigDict(extra="ignore")

    id: str
    participants: list[Party] = Field(default_factory=list)
    messages: list[GraphMessage] = Field(default_factory=list)
    updated_time: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_edges(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for edge in ("participants", "messages"):
            value = data.get(edge)
            if isinstance(value, dict):
                data[edge] = value.get("data", [])
        return data

    @field_validator("updated_time", mode="before")
    @classmethod
    def _parse_updated(cls, v: Any) -> datetime | None:
        return parse_graph_time(v)


class ParticipantProfile(BaseModel):
    """Display identity for a messaging user."""

    name: str | None = None
    username: str | None = None
    profile_pic_url: str | None = None
    follower_count: int | None = None
    is_user_follow_business: bool | None = None
    is_business_follow_user: bool | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> ParticipantProfile:
        return cls(
            name=data.get("name") or None,
            username=data.get("username") or None,
            profile_pic_url=normalize_profile_pic_url(data),
            follower_count=data.get("follower_count"),
            is_user_follow_business=data.get("is_user_follow_business"),
            is_business_follow_user=data.get("is_business_follow_user"),
            raw=data,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.name or self.username or self.profile_pic_url)


# ═══════════════════════════════════════════════════════════════════════════════
# PUSH EVENTS
# ═══════════════════════════════════════════════════════════════════════════════

class PushMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    text: str | None = None
    attachments: Any = None
    is_echo: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_mid(cls, data: Any) -> Any:
        # Meta delivers the message ID as `mid`
        if isinstance(data, dict) and not data.get("id") and data.get("mid"):
            data = {**data, "id": data["mid"]}
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return _id_to_str(v)


class ConversationRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return _id_to_str(v)


class PushEvent(BaseModel):
    """A single messaging event from the push channel."""

    model_config = ConfigDict(extra="ignore")

    sender: Party | None = None
    recipient: Party | None = None
    timestamp: datetime | None = None
    message: PushMessage | None = None
    conversation: ConversationRef | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, v: Any) -> datetime | None:
        return parse_graph_time(v)

    @property
    def conversation_id(self) -> str | None:
        if self.conversation and self.conversation.id:
            return self.conversation.id
        return None

    @property
    def sender_id(self) -> str | None:
        return self.sender.id if self.sender else None

    @property
    def recipient_id(self) -> str | None:
        return self.recipient.id if self.recipient else None
