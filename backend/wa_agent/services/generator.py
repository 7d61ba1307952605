from __future__ import annotations

import http.client
import json
import logging
import re
from typing import Any, Optional, Protocol
from urllib import parse, request
from urllib.error import HTTPError

from pydantic import ValidationError

from backend.wa_agent.models import BotSettings, GeneratorReply, ReplyRequest
from backend.wa_agent.services.text import normalize_text

logger = logging.getLogger("wa_agent.generator")

FALLBACK_REPLY = "Понял. Напиши, пожалуйста: страна и какая работа интересует."
LINK_LABEL = "Анкета/регистрация"

RESPONSE_CONTRACT = (
    "Ответь строго одним JSON-объектом без пояснений и без markdown со схемой: "
    '{"reply": string, "next_stage": string, "lead_type": "candidate" | "agency" | "unknown", '
    '"need_link": boolean, "memory_update": string}. '
    "reply - текст ответа собеседнику; next_stage - следующий этап диалога; "
    "memory_update - короткая заметка о новых фактах для памяти."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class GeneratorError(Exception):
    pass


class ReplyGenerator(Protocol):
    def generate(self, reply_request: ReplyRequest) -> GeneratorReply: ...


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_generator_output(raw_text: str) -> GeneratorReply:
    cleaned = _strip_fences(raw_text)
    if not cleaned:
        raise GeneratorError("generator returned an empty response")
    try:
        decoded = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise GeneratorError("generator response was not valid json") from exc
    if not isinstance(decoded, dict):
        raise GeneratorError("generator response must be a json object")
    try:
        return GeneratorReply.model_validate(decoded)
    except ValidationError as exc:
        raise GeneratorError(f"invalid generator response: {exc.errors()}") from exc


class GeminiReplyGenerator:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout_seconds: int = 20,
        temperature: float = 0.7,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature

    def build_payload(self, reply_request: ReplyRequest) -> dict[str, Any]:
        system_text = "\n\n".join(
            part for part in (reply_request.system_prompt, RESPONSE_CONTRACT) if part
        )
        user_content = {
            "stage": reply_request.stage,
            "memory": reply_request.memory.model_dump(mode="json"),
            "user_text": reply_request.user_text,
        }
        return {
            "systemInstruction": {"parts": [{"text": system_text}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": json.dumps(user_content, ensure_ascii=False)}],
                }
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "responseMimeType": "application/json",
            },
        }

    def generate(self, reply_request: ReplyRequest) -> GeneratorReply:
        if not self.api_key:
            raise GeneratorError("missing GEMINI_API_KEY")
        url = (
            f"{self.base_url}/v1beta/models/{parse.quote(self.model)}:generateContent"
            f"?key={parse.quote(self.api_key)}"
        )
        encoded = json.dumps(self.build_payload(reply_request)).encode("utf-8")
        req = request.Request(
            url,
            data=encoded,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:300]
            raise GeneratorError(f"generator request failed: {exc.code} {detail}") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise GeneratorError(f"generator request failed: {type(exc).__name__}") from exc

        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise GeneratorError("generator response was not valid json") from exc
        return parse_generator_output(self._candidate_text(decoded))

    @staticmethod
    def _candidate_text(decoded: Any) -> str:
        if not isinstance(decoded, dict):
            raise GeneratorError("generator response was not a json object")
        candidates = decoded.get("candidates") or []
        if not candidates:
            feedback = decoded.get("promptFeedback")
            block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            raise GeneratorError(f"generator returned no candidates: {block_reason or 'unknown'}")
        first = candidates[0] if isinstance(candidates, list) else None
        content = first.get("content") if isinstance(first, dict) else None
        if not isinstance(content, dict):
            raise GeneratorError("generator candidate has no content")
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            raise GeneratorError("generator candidate has no parts")
        return "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))


def select_link(settings: BotSettings, lead_type: Optional[str]) -> str:
    chosen = settings.agency_link if lead_type == "agency" else settings.candidate_link
    return (chosen or "").strip() or settings.site_url.strip()


def finalize_reply(generated: GeneratorReply, settings: BotSettings) -> str:
    reply = normalize_text(generated.reply)
    if not reply:
        logger.info("generator_empty_reply fallback=true")
        reply = FALLBACK_REPLY
    if generated.need_link:
        link = select_link(settings, generated.lead_type)
        if link:
            reply = f"{reply}\n\n{LINK_LABEL}: {link}"
    return reply
