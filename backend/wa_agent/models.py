from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

DEFAULT_STAGE = "start"
DEFAULT_LEAD_TYPE = "unknown"
SUMMARY_MAX_CHARS = 2000
SETTING_KEYS = ("system_prompt", "site_url", "candidate_link", "agency_link", "tone")


def utc_now() -> datetime:
    return datetime.utcnow()


class MessageDirection(str, Enum):
    inbound = "in"
    outbound = "out"


class ReplyStatus(str, Enum):
    pending = "pending"
    replied = "replied"
    retry_pending = "retry_pending"
    failed = "failed"


class ContactRecord(BaseModel):
    id: str
    chat_id: str
    stage: str = DEFAULT_STAGE
    lead_type: str = DEFAULT_LEAD_TYPE
    summary: str = ""
    opt_out: bool = False
    created_at_utc: datetime
    updated_at_utc: datetime


class MessageRecord(BaseModel):
    id: str
    contact_id: str
    direction: MessageDirection
    provider_message_id: str
    text: str
    reply_status: Optional[ReplyStatus] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at_utc: datetime


class BotSettings(BaseModel):
    system_prompt: str = ""
    site_url: str = ""
    candidate_link: str = ""
    agency_link: str = ""
    tone: str = ""

    @classmethod
    def from_pairs(cls, pairs: dict[str, Optional[str]]) -> "BotSettings":
        return cls(**{key: pairs.get(key) or "" for key in SETTING_KEYS})


class InboundMessage(BaseModel):
    chat_id: str
    message_id: str
    text: str


class UnrecognizedNotification(BaseModel):
    reason: str


NormalizedDelivery = Union[InboundMessage, UnrecognizedNotification]


class MemoryEntry(BaseModel):
    direction: MessageDirection
    text: str


class ConversationMemory(BaseModel):
    summary: str = ""
    recent: list[MemoryEntry] = Field(default_factory=list)


class ReplyRequest(BaseModel):
    system_prompt: str
    user_text: str
    memory: ConversationMemory
    stage: str


class GeneratorReply(BaseModel):
    reply: str = ""
    next_stage: Optional[str] = None
    lead_type: Optional[str] = None
    need_link: bool = False
    memory_update: Optional[str] = None

    @field_validator("reply", mode="before")
    @classmethod
    def coerce_reply(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value)

    @field_validator("next_stage", "lead_type", "memory_update", mode="before")
    @classmethod
    def blank_to_none(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("need_link", mode="before")
    @classmethod
    def coerce_need_link(cls, value: object) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes"}
        return bool(value)


class WebhookResponse(BaseModel):
    ok: bool
    ignored: Optional[bool] = None
    opted_out: Optional[bool] = None
    dedup: Optional[bool] = None
    error: Optional[str] = None


class SettingsUpdateRequest(BaseModel):
    system_prompt: Optional[str] = None
    site_url: Optional[str] = None
    candidate_link: Optional[str] = None
    agency_link: Optional[str] = None
    tone: Optional[str] = None


class HistoryContact(BaseModel):
    chat_id: str
    lead_type: str
    stage: str


class HistoryItem(BaseModel):
    id: str
    created_at_utc: datetime
    direction: MessageDirection
    text: str
    contact: Optional[HistoryContact] = None


class HistoryResponse(BaseModel):
    items: list[HistoryItem]
