"""
Reduces Green-API webhook notifications to the (chat, message, text) triple.

The provider nests these fields differently per notification type, so each
field is resolved from an ordered list of candidate paths; the first present,
non-empty value wins. Anything that does not resolve all three is not a user
text message and is acknowledged without processing.
"""

from __future__ import annotations

from typing import Any, Optional

from backend.wa_agent.models import InboundMessage, NormalizedDelivery, UnrecognizedNotification

CHAT_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("senderData", "chatId"),
    ("chatId",),
    ("chatID",),
    ("data", "chatId"),
)

MESSAGE_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("idMessage",),
    ("messageId",),
    ("id",),
    ("data", "idMessage"),
    ("senderData", "idMessage"),
)

TEXT_PATHS: tuple[tuple[str, ...], ...] = (
    ("messageData", "textMessageData", "textMessage"),
    ("messageData", "extendedTextMessageData", "text"),
    ("messageData", "quotedMessage", "textMessageData", "textMessage"),
    ("text",),
    ("data", "text"),
)


def get_nested_value(data: Any, keys: tuple[str, ...]) -> Any:
    current = data
    for key in keys:
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


def first_present(data: dict[str, Any], paths: tuple[tuple[str, ...], ...]) -> Optional[str]:
    for path in paths:
        value = get_nested_value(data, path)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def normalize_payload(body: dict[str, Any]) -> NormalizedDelivery:
    chat_id = first_present(body, CHAT_ID_PATHS)
    if not chat_id:
        return UnrecognizedNotification(reason="missing chat id")
    message_id = first_present(body, MESSAGE_ID_PATHS)
    if not message_id:
        return UnrecognizedNotification(reason="missing message id")
    text = first_present(body, TEXT_PATHS)
    if not text:
        return UnrecognizedNotification(reason="missing text")
    return InboundMessage(chat_id=chat_id, message_id=message_id, text=text)
