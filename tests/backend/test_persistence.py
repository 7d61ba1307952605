from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.wa_agent.main import create_app
from backend.wa_agent.models import (
    BotSettings,
    GeneratorReply,
    MessageDirection,
    MessageRecord,
    ReplyStatus,
)
from backend.wa_agent.persistence import SqlConversationStore
from backend.wa_agent.services.pacing import NoDelay
from backend.wa_agent.store import StoreConflictError


def build_message(
    provider_message_id: str,
    contact_id: str,
    *,
    direction: MessageDirection = MessageDirection.inbound,
    offset_seconds: int = 0,
    reply_status: ReplyStatus = ReplyStatus.pending,
) -> MessageRecord:
    return MessageRecord(
        id=f"msg_{provider_message_id.replace(':', '_')}",
        contact_id=contact_id,
        direction=direction,
        provider_message_id=provider_message_id,
        text=f"text {provider_message_id}",
        reply_status=reply_status if direction == MessageDirection.inbound else None,
        attempts=1,
        created_at_utc=datetime(2026, 1, 1, 12, 0, 0) + timedelta(seconds=offset_seconds),
    )


@pytest.fixture()
def sql_store(tmp_path) -> SqlConversationStore:
    return SqlConversationStore(f"sqlite:///{(tmp_path / 'wa_agent.sqlite3').as_posix()}")


def _new_client(monkeypatch, db_path: Path, generator, gateway) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    monkeypatch.setenv("WEBHOOK_SECRET", "test-secret")
    app = create_app()
    app.state.generator = generator
    app.state.gateway = gateway
    app.state.delay = NoDelay()
    return TestClient(app)


def test_create_contact_conflicts_on_duplicate_chat_id(sql_store) -> None:
    created = sql_store.create_contact("79990001111")
    assert created.stage == "start"
    assert created.lead_type == "unknown"
    assert created.summary == ""
    assert created.opt_out is False
    with pytest.raises(StoreConflictError):
        sql_store.create_contact("79990001111")
    assert sql_store.get_contact("79990001111").id == created.id


def test_upsert_contact_creates_and_updates(sql_store) -> None:
    created = sql_store.upsert_contact("chat-a", opt_out=True)
    assert created.opt_out is True

    existing = sql_store.create_contact("chat-b")
    updated = sql_store.upsert_contact("chat-b", opt_out=True)
    assert updated.id == existing.id
    assert updated.opt_out is True


def test_insert_message_if_absent_is_unique(sql_store) -> None:
    contact = sql_store.create_contact("chat-a")
    first, inserted = sql_store.insert_message_if_absent(build_message("p-1", contact.id))
    assert inserted is True

    duplicate = build_message("p-1", contact.id).model_copy(update={"id": "msg_other"})
    stored, inserted_again = sql_store.insert_message_if_absent(duplicate)
    assert inserted_again is False
    assert stored.id == first.id
    assert len(sql_store.list_recent_messages(contact.id, 10)) == 1


def test_reclaim_only_retry_pending_rows_with_attempts_left(sql_store) -> None:
    contact = sql_store.create_contact("chat-a")
    sql_store.insert_message_if_absent(build_message("p-1", contact.id))

    assert sql_store.reclaim_inbound_message("p-1", max_attempts=3) is None

    sql_store.set_reply_status("p-1", ReplyStatus.retry_pending, error="timeout")
    reclaimed = sql_store.reclaim_inbound_message("p-1", max_attempts=3)
    assert reclaimed is not None
    assert reclaimed.reply_status == ReplyStatus.pending
    assert reclaimed.attempts == 2
    assert reclaimed.last_error == "timeout"

    assert sql_store.reclaim_inbound_message("p-1", max_attempts=3) is None
    sql_store.set_reply_status("p-1", ReplyStatus.retry_pending)
    assert sql_store.reclaim_inbound_message("p-1", max_attempts=2) is None


def test_recent_messages_are_newest_window_in_ascending_order(sql_store) -> None:
    contact = sql_store.create_contact("chat-a")
    other = sql_store.create_contact("chat-b")
    for index in range(5):
        sql_store.insert_message_if_absent(
            build_message(f"p-{index}", contact.id, offset_seconds=index)
        )
    sql_store.insert_message_if_absent(build_message("p-other", other.id, offset_seconds=10))

    recent = sql_store.list_recent_messages(contact.id, 3)
    assert [message.provider_message_id for message in recent] == ["p-2", "p-3", "p-4"]


def test_update_contact_state(sql_store) -> None:
    contact = sql_store.create_contact("chat-a")
    updated = sql_store.update_contact_state(
        contact.id, stage="qualifying", summary="факт", lead_type="agency"
    )
    assert updated.stage == "qualifying"
    assert updated.summary == "факт"
    assert updated.lead_type == "agency"
    assert updated.updated_at_utc >= contact.updated_at_utc


def test_settings_round_trip(sql_store) -> None:
    assert sql_store.get_settings() == BotSettings()
    sql_store.save_settings(BotSettings(system_prompt="v1", tone="деловой"))
    sql_store.save_settings(BotSettings(system_prompt="v2", site_url="https://x"))
    assert sql_store.get_settings() == BotSettings(system_prompt="v2", site_url="https://x")


def test_history_joins_contacts_newest_first(sql_store) -> None:
    contact = sql_store.create_contact("chat-a")
    sql_store.insert_message_if_absent(build_message("p-1", contact.id, offset_seconds=1))
    sql_store.insert_message_if_absent(
        build_message(
            "out:p-1", contact.id, direction=MessageDirection.outbound, offset_seconds=2
        )
    )

    history = sql_store.list_history(limit=10)
    assert [message.provider_message_id for message, _ in history] == ["out:p-1", "p-1"]
    assert all(item_contact.chat_id == "chat-a" for _, item_contact in history)


def test_conversation_persists_across_restart(
    monkeypatch, tmp_path, fake_generator, fake_gateway
) -> None:
    db_path = tmp_path / "wa_agent.sqlite3"
    payload = {
        "idMessage": "persist-1",
        "senderData": {"chatId": "79990001111"},
        "messageData": {"textMessageData": {"textMessage": "Привет"}},
    }
    fake_generator.replies = [GeneratorReply(reply="Здравствуйте!", next_stage="qualifying")]

    first_client = _new_client(monkeypatch, db_path, fake_generator, fake_gateway)
    first = first_client.post("/api/wa/webhook", json=payload, headers={"x-webhook-secret": "test-secret"})
    assert first.json() == {"ok": True}

    restarted_client = _new_client(monkeypatch, db_path, fake_generator, fake_gateway)
    second = restarted_client.post(
        "/api/wa/webhook", json=payload, headers={"x-webhook-secret": "test-secret"}
    )
    assert second.json() == {"ok": True, "dedup": True}
    assert len(fake_gateway.sent) == 1

    store = restarted_client.app.state.store
    assert store.get_contact("79990001111").stage == "qualifying"


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "wa_agent.sqlite3"
    persistence = SqlConversationStore(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()
