from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def build_notification(kind: str, *, chat_id: str, message_id: str, text: str) -> dict:
    base = {
        "typeWebhook": "incomingMessageReceived",
        "instanceData": {"idInstance": 1101000001, "wid": "79990000000@c.us"},
        "idMessage": message_id,
        "senderData": {"chatId": chat_id, "sender": chat_id, "senderName": "Mock Contact"},
    }
    if kind == "text":
        base["messageData"] = {
            "typeMessage": "textMessage",
            "textMessageData": {"textMessage": text},
        }
    elif kind == "extended":
        base["messageData"] = {
            "typeMessage": "extendedTextMessage",
            "extendedTextMessageData": {"text": text, "description": "", "title": ""},
        }
    elif kind == "quoted":
        base["messageData"] = {
            "typeMessage": "quotedMessage",
            "quotedMessage": {"textMessageData": {"textMessage": text}},
        }
    else:
        base["typeWebhook"] = "outgoingMessageStatus"
        base["status"] = "delivered"
        base.pop("senderData")
        base["chatId"] = chat_id
    return base


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock Green-API notifications to local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--secret", default="")
    parser.add_argument("--secret-in-query", action="store_true")
    parser.add_argument("--kind", choices=["text", "extended", "quoted", "status"], default="text")
    parser.add_argument("--chat-id", default="79990001111@c.us")
    parser.add_argument("--count", type=int, default=3)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--text", default="Привет! Ищу работу за границей.")
    parser.add_argument(
        "--repeat",
        type=int,
        default=1,
        help="send every notification this many times to exercise dedup",
    )
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/api/wa/webhook"
    headers: dict[str, str] = {}
    query: Optional[str] = None
    if args.secret:
        if args.secret_in_query:
            query = urllib.parse.urlencode({"secret": args.secret})
        else:
            headers["X-Webhook-Secret"] = args.secret
    url = f"{endpoint}?{query}" if query else endpoint

    for index in range(args.start_index, args.start_index + args.count):
        message_id = f"MOCK{index:012d}"
        payload = build_notification(
            args.kind,
            chat_id=args.chat_id,
            message_id=message_id,
            text=f"{args.text} ({index})",
        )
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        for _ in range(max(1, args.repeat)):
            status_code, response = post_json(url, body, headers)
            print(f"{status_code} {message_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
