"""
Inbound delivery pipeline.

Each delivery runs to completion as a strict sequence with no state kept
between calls; coordination between concurrent deliveries happens only
through the store's uniqueness rules on ``chat_id`` and
``provider_message_id``. The inbound insert is the claim on a provider
message: whoever inserts it (or re-claims a ``retry_pending`` row) owns the
reply, everyone else is a duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from backend.wa_agent.models import (
    DEFAULT_LEAD_TYPE,
    DEFAULT_STAGE,
    SUMMARY_MAX_CHARS,
    ContactRecord,
    GeneratorReply,
    InboundMessage,
    MessageDirection,
    MessageRecord,
    ReplyStatus,
    UnrecognizedNotification,
    utc_now,
)
from backend.wa_agent.services.context import assemble_context, build_reply_request
from backend.wa_agent.services.gateway import DispatchError, MessageGateway
from backend.wa_agent.services.generator import GeneratorError, ReplyGenerator, finalize_reply
from backend.wa_agent.services.pacing import DelayStrategy
from backend.wa_agent.services.payload import normalize_payload
from backend.wa_agent.services.text import has_opt_out, normalize_text
from backend.wa_agent.store import ConversationStore, StoreConflictError, StoreError, new_id

logger = logging.getLogger("wa_agent.pipeline")

OUTBOUND_ID_PREFIX = "out:"


class DeliveryOutcome(str, Enum):
    replied = "replied"
    ignored = "ignored"
    opted_out = "opted_out"
    dedup = "dedup"


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DeliveryOutcome
    contact_id: Optional[str] = None
    reply_text: Optional[str] = None


def outbound_message_id(provider_message_id: str) -> str:
    return f"{OUTBOUND_ID_PREFIX}{provider_message_id}"


def merge_summary(summary: str, memory_update: Optional[str]) -> str:
    if not memory_update:
        return summary[:SUMMARY_MAX_CHARS]
    merged = f"{summary}\n{memory_update}" if summary else memory_update
    return merged[:SUMMARY_MAX_CHARS]


class ConversationPipeline:
    def __init__(
        self,
        *,
        store: ConversationStore,
        generator: ReplyGenerator,
        gateway: MessageGateway,
        delay: DelayStrategy,
        pacing_min_ms: int = 1000,
        pacing_max_ms: int = 5000,
        history_window: int = 30,
        max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.generator = generator
        self.gateway = gateway
        self.delay = delay
        self.pacing_min_ms = pacing_min_ms
        self.pacing_max_ms = pacing_max_ms
        self.history_window = history_window
        self.max_attempts = max_attempts

    def process(self, body: dict[str, Any]) -> DeliveryResult:
        normalized = normalize_payload(body)
        if isinstance(normalized, UnrecognizedNotification):
            logger.info(
                "delivery_ignored reason=%s type=%s",
                normalized.reason,
                body.get("typeWebhook"),
            )
            return DeliveryResult(outcome=DeliveryOutcome.ignored)
        return self.process_message(normalized)

    def process_message(self, inbound: InboundMessage) -> DeliveryResult:
        user_text = normalize_text(inbound.text)

        if has_opt_out(user_text):
            contact = self.store.upsert_contact(inbound.chat_id, opt_out=True)
            logger.info("contact_opted_out contact_id=%s chat_id=%s", contact.id, inbound.chat_id)
            return DeliveryResult(outcome=DeliveryOutcome.opted_out, contact_id=contact.id)

        contact = self.resolve_contact(inbound.chat_id)
        if contact.opt_out:
            logger.info("delivery_ignored reason=opted_out contact_id=%s", contact.id)
            return DeliveryResult(outcome=DeliveryOutcome.ignored, contact_id=contact.id)

        claimed = self.claim_inbound(contact, inbound.message_id, user_text)
        if claimed is None:
            logger.info(
                "delivery_dedup contact_id=%s provider_message_id=%s",
                contact.id,
                inbound.message_id,
            )
            return DeliveryResult(outcome=DeliveryOutcome.dedup, contact_id=contact.id)

        try:
            generated, reply_text = self._generate_reply(contact, user_text)
        except (StoreError, GeneratorError) as exc:
            self._release_claim(claimed, exc)
            raise

        delay_seconds = self.delay.delay_before_send(self.pacing_min_ms, self.pacing_max_ms)

        try:
            self.gateway.send_message(inbound.chat_id, reply_text)
        except DispatchError as exc:
            self._mark_failed(claimed, exc)
            raise

        self.record_reply(contact, claimed, reply_text, generated)
        logger.info(
            "reply_sent contact_id=%s provider_message_id=%s attempt=%s delay_s=%.2f",
            contact.id,
            claimed.provider_message_id,
            claimed.attempts,
            delay_seconds,
        )
        return DeliveryResult(
            outcome=DeliveryOutcome.replied,
            contact_id=contact.id,
            reply_text=reply_text,
        )

    def resolve_contact(self, chat_id: str) -> ContactRecord:
        contact = self.store.get_contact(chat_id)
        if contact:
            return contact
        try:
            return self.store.create_contact(chat_id)
        except StoreConflictError:
            logger.info("contact_create_conflict chat_id=%s action=reread", chat_id)
            contact = self.store.get_contact(chat_id)
            if contact is None:
                raise StoreError(f"contact vanished after create conflict: {chat_id}") from None
            return contact

    def claim_inbound(
        self, contact: ContactRecord, provider_message_id: str, text: str
    ) -> Optional[MessageRecord]:
        record = MessageRecord(
            id=new_id("msg"),
            contact_id=contact.id,
            direction=MessageDirection.inbound,
            provider_message_id=provider_message_id,
            text=text,
            reply_status=ReplyStatus.pending,
            attempts=1,
            created_at_utc=utc_now(),
        )
        stored, inserted = self.store.insert_message_if_absent(record)
        if inserted:
            return stored
        reclaimed = self.store.reclaim_inbound_message(
            provider_message_id, max_attempts=self.max_attempts
        )
        if reclaimed:
            logger.info(
                "delivery_retry provider_message_id=%s attempt=%s",
                provider_message_id,
                reclaimed.attempts,
            )
        return reclaimed

    def record_reply(
        self,
        contact: ContactRecord,
        inbound: MessageRecord,
        reply_text: str,
        generated: GeneratorReply,
    ) -> ContactRecord:
        self.store.insert_message_if_absent(
            MessageRecord(
                id=new_id("msg"),
                contact_id=contact.id,
                direction=MessageDirection.outbound,
                provider_message_id=outbound_message_id(inbound.provider_message_id),
                text=reply_text,
                created_at_utc=utc_now(),
            )
        )
        updated = self.store.update_contact_state(
            contact.id,
            stage=generated.next_stage or contact.stage or DEFAULT_STAGE,
            summary=merge_summary(contact.summary or "", generated.memory_update),
            lead_type=generated.lead_type or DEFAULT_LEAD_TYPE,
        )
        self.store.set_reply_status(inbound.provider_message_id, ReplyStatus.replied)
        return updated

    def _generate_reply(
        self, contact: ContactRecord, user_text: str
    ) -> tuple[GeneratorReply, str]:
        bot_settings = self.store.get_settings()
        recent = self.store.list_recent_messages(contact.id, self.history_window)
        context = assemble_context(settings=bot_settings, contact=contact, recent_messages=recent)
        generated = self.generator.generate(build_reply_request(context, user_text=user_text))
        return generated, finalize_reply(generated, bot_settings)

    def _release_claim(self, claimed: MessageRecord, exc: Exception) -> None:
        status = (
            ReplyStatus.retry_pending
            if claimed.attempts < self.max_attempts
            else ReplyStatus.failed
        )
        logger.warning(
            "reply_aborted provider_message_id=%s attempt=%s status=%s error=%s",
            claimed.provider_message_id,
            claimed.attempts,
            status.value,
            exc,
        )
        self._set_status_quietly(claimed, status, str(exc))

    def _mark_failed(self, claimed: MessageRecord, exc: Exception) -> None:
        logger.error(
            "dispatch_failed provider_message_id=%s error=%s",
            claimed.provider_message_id,
            exc,
        )
        self._set_status_quietly(claimed, ReplyStatus.failed, str(exc))

    def _set_status_quietly(self, claimed: MessageRecord, status: ReplyStatus, error: str) -> None:
        # The caller re-raises the pipeline failure; a status write error is only logged.
        try:
            self.store.set_reply_status(claimed.provider_message_id, status, error=error)
        except StoreError:
            logger.exception(
                "reply_status_write_failed provider_message_id=%s status=%s",
                claimed.provider_message_id,
                status.value,
            )
