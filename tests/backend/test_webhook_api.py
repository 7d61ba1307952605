from __future__ import annotations

import http.client
import json

from fastapi.testclient import TestClient

from backend.wa_agent.main import create_app
from backend.wa_agent.models import GeneratorReply, ReplyStatus
from backend.wa_agent.services import gateway as gateway_module
from backend.wa_agent.services import generator as generator_module
from backend.wa_agent.services.gateway import DispatchError, GreenApiGateway
from backend.wa_agent.services.generator import GeminiReplyGenerator, GeneratorError
from backend.wa_agent.store import StoreError

SECRET_HEADERS = {"x-webhook-secret": "test-secret"}


def build_notification(
    text: str = "Привет", message_id: str = "BAE5-1", chat_id: str = "79990001111"
) -> dict:
    return {
        "typeWebhook": "incomingMessageReceived",
        "idMessage": message_id,
        "senderData": {"chatId": chat_id},
        "messageData": {"textMessageData": {"textMessage": text}},
    }


def test_missing_secret_is_rejected(client, fake_generator) -> None:
    response = client.post("/api/wa/webhook", json=build_notification())
    assert response.status_code == 401
    assert response.json() == {"ok": False, "error": "unauthorized"}
    assert client.app.state.store.contacts == {}
    assert fake_generator.requests == []


def test_wrong_secret_is_rejected(client) -> None:
    response = client.post(
        "/api/wa/webhook",
        json=build_notification(),
        headers={"x-webhook-secret": "nope"},
    )
    assert response.status_code == 401


def test_secret_accepted_from_query_parameter(client) -> None:
    response = client.post("/api/wa/webhook?secret=test-secret", json=build_notification())
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_empty_configured_secret_rejects_everything(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("WEBHOOK_SECRET", "")
    client = TestClient(create_app())
    response = client.post("/api/wa/webhook?secret=", json=build_notification())
    assert response.status_code == 401


def test_invalid_json_body(client) -> None:
    response = client.post(
        "/api/wa/webhook",
        content=b"{not json",
        headers={**SECRET_HEADERS, "content-type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "invalid json"}


def test_non_object_json_body(client) -> None:
    response = client.post("/api/wa/webhook", json=[1, 2, 3], headers=SECRET_HEADERS)
    assert response.status_code == 400


def test_unrecognized_notification_is_acknowledged(client) -> None:
    response = client.post(
        "/api/wa/webhook",
        json={"typeWebhook": "outgoingMessageStatus", "idMessage": "x", "status": "read"},
        headers=SECRET_HEADERS,
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "ignored": True}


def test_full_pipeline_then_dedup(client, fake_generator, fake_gateway) -> None:
    fake_generator.replies = [
        GeneratorReply(
            reply="Здравствуйте!",
            next_stage="qualifying",
            lead_type="candidate",
            need_link=False,
        )
    ]
    first = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    second = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)

    assert first.status_code == 200
    assert first.json() == {"ok": True}
    assert second.status_code == 200
    assert second.json() == {"ok": True, "dedup": True}
    assert fake_gateway.sent == [("79990001111", "Здравствуйте!")]

    store = client.app.state.store
    contact = store.get_contact("79990001111")
    assert contact.stage == "qualifying"
    assert contact.lead_type == "candidate"
    assert len(store.messages) == 2


def test_whatsapp_alias_route(client) -> None:
    response = client.post("/webhooks/whatsapp", json=build_notification(), headers=SECRET_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_opt_out_then_ignored(client, fake_gateway) -> None:
    opted = client.post(
        "/api/wa/webhook",
        json=build_notification(text="Стоп", message_id="m-1"),
        headers=SECRET_HEADERS,
    )
    later = client.post(
        "/api/wa/webhook",
        json=build_notification(text="Привет", message_id="m-2"),
        headers=SECRET_HEADERS,
    )
    assert opted.json() == {"ok": True, "opted_out": True}
    assert later.json() == {"ok": True, "ignored": True}
    assert fake_gateway.sent == []


def test_dispatch_failure_returns_500(client, fake_gateway) -> None:
    fake_gateway.error = DispatchError("Green-API sendMessage failed: 502 bad gateway")
    response = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    assert response.status_code == 500
    assert response.json() == {
        "ok": False,
        "error": "Green-API sendMessage failed: 502 bad gateway",
    }


def test_generator_failure_returns_500_without_fallback(client, fake_generator, fake_gateway) -> None:
    fake_generator.replies = [GeneratorError("generator request failed")]
    response = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    assert response.status_code == 500
    assert response.json()["error"] == "generator request failed"
    assert fake_gateway.sent == []


def test_contact_store_failure_returns_500(client, monkeypatch) -> None:
    store = client.app.state.store

    def broken_create(chat_id: str):
        raise StoreError("contact insert failed: disk full")

    monkeypatch.setattr(store, "create_contact", broken_create)
    response = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "contact insert failed: disk full"}
    assert store.messages == []


def test_delivery_outcomes_are_counted(client) -> None:
    client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    client.post("/api/wa/webhook", json=build_notification())

    body = client.get("/metrics").text
    assert 'wa_agent_deliveries_total{outcome="replied"} 1' in body
    assert 'wa_agent_deliveries_total{outcome="dedup"} 1' in body
    assert 'wa_agent_deliveries_total{outcome="unauthorized"} 1' in body


class _GeminiResponse:
    def __init__(self, reply: str) -> None:
        text = json.dumps({"reply": reply}, ensure_ascii=False)
        self._body = json.dumps(
            {"candidates": [{"content": {"parts": [{"text": text}]}}]}
        ).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_GeminiResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def test_dropped_generator_connection_is_retried_on_redelivery(client, fake_gateway, monkeypatch) -> None:
    client.app.state.generator = GeminiReplyGenerator(api_key="k", model="m")
    calls: list[str] = []

    def flaky_urlopen(req, timeout):
        calls.append(req.full_url)
        if len(calls) == 1:
            raise http.client.RemoteDisconnected("Remote end closed connection without response")
        return _GeminiResponse("Здравствуйте!")

    monkeypatch.setattr(generator_module.request, "urlopen", flaky_urlopen)

    first = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    assert first.status_code == 500
    assert first.headers["content-type"].startswith("application/json")
    assert first.json()["ok"] is False
    assert "RemoteDisconnected" in first.json()["error"]
    store = client.app.state.store
    assert store.messages_by_provider_id["BAE5-1"].reply_status == ReplyStatus.retry_pending

    second = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    assert second.status_code == 200
    assert second.json() == {"ok": True}
    assert fake_gateway.sent == [("79990001111", "Здравствуйте!")]
    assert store.messages_by_provider_id["BAE5-1"].reply_status == ReplyStatus.replied


def test_dropped_gateway_connection_marks_message_failed(client, monkeypatch) -> None:
    client.app.state.gateway = GreenApiGateway(
        base_url="https://api.green-api.com", id_instance="1101000001", api_token="tok"
    )

    def broken_urlopen(req, timeout):
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(gateway_module.request, "urlopen", broken_urlopen)

    first = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    assert first.status_code == 500
    assert first.headers["content-type"].startswith("application/json")
    assert "RemoteDisconnected" in first.json()["error"]
    store = client.app.state.store
    inbound = store.messages_by_provider_id["BAE5-1"]
    assert inbound.reply_status == ReplyStatus.failed
    assert "RemoteDisconnected" in inbound.last_error

    second = client.post("/api/wa/webhook", json=build_notification(), headers=SECRET_HEADERS)
    assert second.json() == {"ok": True, "dedup": True}
