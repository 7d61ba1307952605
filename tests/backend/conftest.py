from __future__ import annotations

from typing import Optional, Union

import pytest
from fastapi.testclient import TestClient

from backend.wa_agent.main import create_app
from backend.wa_agent.models import GeneratorReply, ReplyRequest
from backend.wa_agent.services.pacing import NoDelay
from backend.wa_agent.services.pipeline import ConversationPipeline
from backend.wa_agent.store import InMemoryStore

WEBHOOK_SECRET = "test-secret"


class FakeGenerator:
    """Returns queued replies in order; the last one repeats."""

    def __init__(self) -> None:
        self.replies: list[Union[GeneratorReply, Exception]] = [
            GeneratorReply(reply="Здравствуйте!")
        ]
        self.requests: list[ReplyRequest] = []

    def generate(self, reply_request: ReplyRequest) -> GeneratorReply:
        self.requests.append(reply_request)
        item = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeGateway:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.error: Optional[Exception] = None

    def send_message(self, chat_id: str, text: str) -> dict:
        if self.error:
            raise self.error
        self.sent.append((chat_id, text))
        return {"idMessage": f"sent-{len(self.sent)}"}


@pytest.fixture()
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def pipeline(
    store: InMemoryStore, fake_generator: FakeGenerator, fake_gateway: FakeGateway
) -> ConversationPipeline:
    return ConversationPipeline(
        store=store,
        generator=fake_generator,
        gateway=fake_gateway,
        delay=NoDelay(),
        history_window=30,
        max_attempts=3,
    )


@pytest.fixture()
def client(
    monkeypatch: pytest.MonkeyPatch,
    fake_generator: FakeGenerator,
    fake_gateway: FakeGateway,
) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("ADMIN_AUTH_ENABLED", "false")
    monkeypatch.setenv("WEBHOOK_SECRET", WEBHOOK_SECRET)
    app = create_app()
    app.state.generator = fake_generator
    app.state.gateway = fake_gateway
    app.state.delay = NoDelay()
    return TestClient(app)
