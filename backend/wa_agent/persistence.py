from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.wa_agent.models import (
    DEFAULT_LEAD_TYPE,
    DEFAULT_STAGE,
    SETTING_KEYS,
    BotSettings,
    ContactRecord,
    MessageDirection,
    MessageRecord,
    ReplyStatus,
    utc_now,
)
from backend.wa_agent.store import (
    StoreConflictError,
    StoreError,
    StoreNotFoundError,
    new_id,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlConversationStore:
    """
    Conversation store on SQLAlchemy Core. Works with SQLite and PostgreSQL URLs.

    Uniqueness of ``contacts.chat_id`` and ``messages.provider_message_id`` is
    enforced by the database; conflicting inserts surface as IntegrityError
    and are never pre-checked with a read.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.contacts = Table(
            "contacts",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("chat_id", String(120), nullable=False, unique=True),
            Column("stage", String(80), nullable=False, default=DEFAULT_STAGE),
            Column("lead_type", String(80), nullable=False, default=DEFAULT_LEAD_TYPE),
            Column("summary", Text, nullable=False, default=""),
            Column("opt_out", Boolean, nullable=False, default=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.messages = Table(
            "messages",
            self.metadata,
            Column("seq", Integer, primary_key=True, autoincrement=True),
            Column("id", String(40), nullable=False, unique=True),
            Column("contact_id", String(40), nullable=False, index=True),
            Column("direction", String(8), nullable=False),
            Column("provider_message_id", String(255), nullable=False, unique=True),
            Column("text", Text, nullable=False),
            Column("reply_status", String(20), nullable=True),
            Column("attempts", Integer, nullable=False, default=0),
            Column("last_error", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.settings = Table(
            "settings",
            self.metadata,
            Column("key", String(80), primary_key=True),
            Column("value", Text, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def get_contact(self, chat_id: str) -> Optional[ContactRecord]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.contacts).where(self.contacts.c.chat_id == chat_id)
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"contact lookup failed: {exc}") from exc
        return self._contact_from_row(row) if row else None

    def get_contact_by_id(self, contact_id: str) -> ContactRecord:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.contacts).where(self.contacts.c.id == contact_id)
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"contact lookup failed: {exc}") from exc
        if not row:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return self._contact_from_row(row)

    def create_contact(self, chat_id: str) -> ContactRecord:
        return self._insert_contact(chat_id, opt_out=False)

    def upsert_contact(self, chat_id: str, *, opt_out: bool) -> ContactRecord:
        try:
            return self._insert_contact(chat_id, opt_out=opt_out)
        except StoreConflictError:
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        self.contacts.update()
                        .where(self.contacts.c.chat_id == chat_id)
                        .values(opt_out=opt_out, updated_at_utc=utc_now())
                    )
            except SQLAlchemyError as exc:
                raise StoreError(f"contact update failed: {exc}") from exc
        contact = self.get_contact(chat_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {chat_id}")
        return contact

    def _insert_contact(self, chat_id: str, *, opt_out: bool) -> ContactRecord:
        contact = self._new_contact(chat_id, opt_out=opt_out)
        try:
            with self.engine.begin() as conn:
                conn.execute(self.contacts.insert().values(**contact.model_dump()))
        except IntegrityError as exc:
            raise StoreConflictError(f"contact already exists: {chat_id}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"contact insert failed: {exc}") from exc
        return contact

    def update_contact_state(
        self,
        contact_id: str,
        *,
        stage: str,
        summary: str,
        lead_type: str,
    ) -> ContactRecord:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.contacts.update()
                    .where(self.contacts.c.id == contact_id)
                    .values(
                        stage=stage,
                        summary=summary,
                        lead_type=lead_type,
                        updated_at_utc=utc_now(),
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"contact update failed: {exc}") from exc
        if result.rowcount == 0:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return self.get_contact_by_id(contact_id)

    def insert_message_if_absent(self, record: MessageRecord) -> tuple[MessageRecord, bool]:
        values = record.model_dump()
        values["direction"] = record.direction.value
        values["reply_status"] = record.reply_status.value if record.reply_status else None
        try:
            with self.engine.begin() as conn:
                conn.execute(self.messages.insert().values(**values))
            return record, True
        except IntegrityError:
            existing = self._get_message(record.provider_message_id)
            if existing is None:
                raise StoreError(
                    f"message insert conflicted on a different key: {record.id}"
                ) from None
            return existing, False
        except SQLAlchemyError as exc:
            raise StoreError(f"message insert failed: {exc}") from exc

    def reclaim_inbound_message(
        self, provider_message_id: str, *, max_attempts: int
    ) -> Optional[MessageRecord]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.messages.update()
                    .where(
                        self.messages.c.provider_message_id == provider_message_id,
                        self.messages.c.reply_status == ReplyStatus.retry_pending.value,
                        self.messages.c.attempts < max_attempts,
                    )
                    .values(
                        reply_status=ReplyStatus.pending.value,
                        attempts=self.messages.c.attempts + 1,
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"message reclaim failed: {exc}") from exc
        if result.rowcount != 1:
            return None
        return self._get_message(provider_message_id)

    def set_reply_status(
        self,
        provider_message_id: str,
        status: ReplyStatus,
        *,
        error: Optional[str] = None,
    ) -> None:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.messages.update()
                    .where(self.messages.c.provider_message_id == provider_message_id)
                    .values(reply_status=status.value, last_error=error)
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"message status update failed: {exc}") from exc
        if result.rowcount == 0:
            raise StoreNotFoundError(f"message not found: {provider_message_id}")

    def list_recent_messages(self, contact_id: str, limit: int) -> list[MessageRecord]:
        if limit <= 0:
            return []
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.messages)
                    .where(self.messages.c.contact_id == contact_id)
                    .order_by(self.messages.c.created_at_utc.desc(), self.messages.c.seq.desc())
                    .limit(limit)
                ).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"message history read failed: {exc}") from exc
        return [self._message_from_row(row) for row in reversed(rows)]

    def get_settings(self) -> BotSettings:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.settings.c.key, self.settings.c.value).where(
                        self.settings.c.key.in_(SETTING_KEYS)
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"settings read failed: {exc}") from exc
        return BotSettings.from_pairs({row.key: row.value for row in rows})

    def save_settings(self, settings: BotSettings) -> None:
        try:
            with self.engine.begin() as conn:
                existing = {
                    row.key
                    for row in conn.execute(
                        select(self.settings.c.key).where(self.settings.c.key.in_(SETTING_KEYS))
                    )
                }
                for key in SETTING_KEYS:
                    value = getattr(settings, key)
                    if key in existing:
                        conn.execute(
                            self.settings.update()
                            .where(self.settings.c.key == key)
                            .values(value=value)
                        )
                    else:
                        conn.execute(self.settings.insert().values(key=key, value=value))
        except SQLAlchemyError as exc:
            raise StoreError(f"settings write failed: {exc}") from exc

    def list_history(
        self, limit: int = 200
    ) -> list[tuple[MessageRecord, Optional[ContactRecord]]]:
        safe_limit = max(1, min(limit, 500))
        try:
            with self.engine.connect() as conn:
                message_rows = conn.execute(
                    select(self.messages)
                    .order_by(self.messages.c.created_at_utc.desc(), self.messages.c.seq.desc())
                    .limit(safe_limit)
                ).all()
                contact_ids = {row.contact_id for row in message_rows}
                contact_rows = (
                    conn.execute(
                        select(self.contacts).where(self.contacts.c.id.in_(contact_ids))
                    ).all()
                    if contact_ids
                    else []
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"history read failed: {exc}") from exc

        contacts = {row.id: self._contact_from_row(row) for row in contact_rows}
        return [
            (self._message_from_row(row), contacts.get(row.contact_id)) for row in message_rows
        ]

    def _get_message(self, provider_message_id: str) -> Optional[MessageRecord]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.messages).where(
                        self.messages.c.provider_message_id == provider_message_id
                    )
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"message lookup failed: {exc}") from exc
        return self._message_from_row(row) if row else None

    @staticmethod
    def _new_contact(chat_id: str, *, opt_out: bool) -> ContactRecord:
        now = utc_now()
        return ContactRecord(
            id=new_id("cnt"),
            chat_id=chat_id,
            stage=DEFAULT_STAGE,
            lead_type=DEFAULT_LEAD_TYPE,
            summary="",
            opt_out=opt_out,
            created_at_utc=now,
            updated_at_utc=now,
        )

    @staticmethod
    def _contact_from_row(row: Row) -> ContactRecord:
        return ContactRecord(
            id=row.id,
            chat_id=row.chat_id,
            stage=row.stage or DEFAULT_STAGE,
            lead_type=row.lead_type or DEFAULT_LEAD_TYPE,
            summary=row.summary or "",
            opt_out=bool(row.opt_out),
            created_at_utc=row.created_at_utc or utc_now(),
            updated_at_utc=row.updated_at_utc or utc_now(),
        )

    @staticmethod
    def _message_from_row(row: Row) -> MessageRecord:
        return MessageRecord(
            id=row.id,
            contact_id=row.contact_id,
            direction=MessageDirection(row.direction),
            provider_message_id=row.provider_message_id,
            text=row.text,
            reply_status=ReplyStatus(row.reply_status) if row.reply_status else None,
            attempts=row.attempts or 0,
            last_error=row.last_error,
            created_at_utc=row.created_at_utc or utc_now(),
        )
