from __future__ import annotations

from threading import RLock
from typing import Optional, Protocol
from uuid import uuid4

from backend.wa_agent.models import (
    DEFAULT_LEAD_TYPE,
    DEFAULT_STAGE,
    SETTING_KEYS,
    BotSettings,
    ContactRecord,
    MessageRecord,
    ReplyStatus,
    utc_now,
)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreError(Exception):
    pass


class StoreConflictError(StoreError):
    pass


class StoreNotFoundError(StoreError):
    pass


class ConversationStore(Protocol):
    """Durable conversation state shared by independent webhook deliveries.

    Every cross-delivery guarantee rests on two uniqueness rules enforced
    here: one contact per ``chat_id`` and one message per
    ``provider_message_id``.
    """

    def ping(self) -> bool: ...

    def get_contact(self, chat_id: str) -> Optional[ContactRecord]: ...

    def get_contact_by_id(self, contact_id: str) -> ContactRecord: ...

    def create_contact(self, chat_id: str) -> ContactRecord:
        """Insert a contact with default state; StoreConflictError if chat_id exists."""
        ...

    def upsert_contact(self, chat_id: str, *, opt_out: bool) -> ContactRecord: ...

    def update_contact_state(
        self,
        contact_id: str,
        *,
        stage: str,
        summary: str,
        lead_type: str,
    ) -> ContactRecord: ...

    def insert_message_if_absent(self, record: MessageRecord) -> tuple[MessageRecord, bool]:
        """Atomically insert unless provider_message_id exists.

        Returns the stored row and whether this call inserted it.
        """
        ...

    def reclaim_inbound_message(
        self, provider_message_id: str, *, max_attempts: int
    ) -> Optional[MessageRecord]:
        """Move a ``retry_pending`` row back to ``pending`` if attempts remain."""
        ...

    def set_reply_status(
        self,
        provider_message_id: str,
        status: ReplyStatus,
        *,
        error: Optional[str] = None,
    ) -> None: ...

    def list_recent_messages(self, contact_id: str, limit: int) -> list[MessageRecord]:
        """Newest ``limit`` messages for the contact, returned oldest first."""
        ...

    def get_settings(self) -> BotSettings: ...

    def save_settings(self, settings: BotSettings) -> None: ...

    def list_history(
        self, limit: int = 200
    ) -> list[tuple[MessageRecord, Optional[ContactRecord]]]: ...


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self.contacts: dict[str, ContactRecord] = {}
        self.contact_ids_by_chat: dict[str, str] = {}
        self.messages: list[MessageRecord] = []
        self.messages_by_provider_id: dict[str, MessageRecord] = {}
        self.settings: dict[str, str] = {}

    def ping(self) -> bool:
        return True

    def get_contact(self, chat_id: str) -> Optional[ContactRecord]:
        with self._lock:
            contact_id = self.contact_ids_by_chat.get(chat_id)
            if not contact_id:
                return None
            return self.contacts[contact_id]

    def get_contact_by_id(self, contact_id: str) -> ContactRecord:
        with self._lock:
            contact = self.contacts.get(contact_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return contact

    def create_contact(self, chat_id: str) -> ContactRecord:
        with self._lock:
            if chat_id in self.contact_ids_by_chat:
                raise StoreConflictError(f"contact already exists: {chat_id}")
            return self._insert_contact(chat_id, opt_out=False)

    def upsert_contact(self, chat_id: str, *, opt_out: bool) -> ContactRecord:
        with self._lock:
            existing = self.get_contact(chat_id)
            if not existing:
                return self._insert_contact(chat_id, opt_out=opt_out)
            updated = existing.model_copy(
                update={"opt_out": opt_out, "updated_at_utc": utc_now()}
            )
            self.contacts[updated.id] = updated
            return updated

    def update_contact_state(
        self,
        contact_id: str,
        *,
        stage: str,
        summary: str,
        lead_type: str,
    ) -> ContactRecord:
        with self._lock:
            contact = self.get_contact_by_id(contact_id)
            updated = contact.model_copy(
                update={
                    "stage": stage,
                    "summary": summary,
                    "lead_type": lead_type,
                    "updated_at_utc": utc_now(),
                }
            )
            self.contacts[contact_id] = updated
            return updated

    def insert_message_if_absent(self, record: MessageRecord) -> tuple[MessageRecord, bool]:
        with self._lock:
            existing = self.messages_by_provider_id.get(record.provider_message_id)
            if existing:
                return existing, False
            self.messages.append(record)
            self.messages_by_provider_id[record.provider_message_id] = record
            return record, True

    def reclaim_inbound_message(
        self, provider_message_id: str, *, max_attempts: int
    ) -> Optional[MessageRecord]:
        with self._lock:
            existing = self.messages_by_provider_id.get(provider_message_id)
            if (
                not existing
                or existing.reply_status != ReplyStatus.retry_pending
                or existing.attempts >= max_attempts
            ):
                return None
            claimed = existing.model_copy(
                update={"reply_status": ReplyStatus.pending, "attempts": existing.attempts + 1}
            )
            self._replace_message(claimed)
            return claimed

    def set_reply_status(
        self,
        provider_message_id: str,
        status: ReplyStatus,
        *,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            existing = self.messages_by_provider_id.get(provider_message_id)
            if not existing:
                raise StoreNotFoundError(f"message not found: {provider_message_id}")
            self._replace_message(
                existing.model_copy(update={"reply_status": status, "last_error": error})
            )

    def list_recent_messages(self, contact_id: str, limit: int) -> list[MessageRecord]:
        with self._lock:
            owned = [message for message in self.messages if message.contact_id == contact_id]
        return owned[-limit:] if limit > 0 else []

    def get_settings(self) -> BotSettings:
        with self._lock:
            return BotSettings.from_pairs(self.settings)

    def save_settings(self, settings: BotSettings) -> None:
        with self._lock:
            for key in SETTING_KEYS:
                self.settings[key] = getattr(settings, key)

    def list_history(
        self, limit: int = 200
    ) -> list[tuple[MessageRecord, Optional[ContactRecord]]]:
        safe_limit = max(1, min(limit, 500))
        with self._lock:
            newest = list(reversed(self.messages))[:safe_limit]
            return [(message, self.contacts.get(message.contact_id)) for message in newest]

    def _insert_contact(self, chat_id: str, *, opt_out: bool) -> ContactRecord:
        now = utc_now()
        contact = ContactRecord(
            id=new_id("cnt"),
            chat_id=chat_id,
            stage=DEFAULT_STAGE,
            lead_type=DEFAULT_LEAD_TYPE,
            summary="",
            opt_out=opt_out,
            created_at_utc=now,
            updated_at_utc=now,
        )
        self.contacts[contact.id] = contact
        self.contact_ids_by_chat[chat_id] = contact.id
        return contact

    def _replace_message(self, record: MessageRecord) -> None:
        self.messages_by_provider_id[record.provider_message_id] = record
        for index, message in enumerate(self.messages):
            if message.id == record.id:
                self.messages[index] = record
                break
