from __future__ import annotations

from dataclasses import dataclass

from backend.wa_agent.models import (
    DEFAULT_STAGE,
    BotSettings,
    ContactRecord,
    ConversationMemory,
    MemoryEntry,
    MessageRecord,
    ReplyRequest,
)


@dataclass(frozen=True)
class AssembledContext:
    system_prompt: str
    memory: ConversationMemory
    stage: str


def compose_system_prompt(settings: BotSettings) -> str:
    annotations = [
        ("Тон общения", settings.tone),
        ("Основной сайт", settings.site_url),
        ("Ссылка для кандидата", settings.candidate_link),
        ("Ссылка для агентства", settings.agency_link),
    ]
    parts = [settings.system_prompt.strip()] if settings.system_prompt.strip() else []
    parts.extend(f"{label}: {value.strip()}" for label, value in annotations if value.strip())
    return "\n\n".join(parts)


def assemble_context(
    *,
    settings: BotSettings,
    contact: ContactRecord,
    recent_messages: list[MessageRecord],
) -> AssembledContext:
    memory = ConversationMemory(
        summary=contact.summary or "",
        recent=[
            MemoryEntry(direction=message.direction, text=message.text)
            for message in recent_messages
        ],
    )
    return AssembledContext(
        system_prompt=compose_system_prompt(settings),
        memory=memory,
        stage=contact.stage or DEFAULT_STAGE,
    )


def build_reply_request(context: AssembledContext, *, user_text: str) -> ReplyRequest:
    return ReplyRequest(
        system_prompt=context.system_prompt,
        user_text=user_text,
        memory=context.memory,
        stage=context.stage,
    )
