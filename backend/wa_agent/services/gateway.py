from __future__ import annotations

import http.client
import json
from typing import Any, Protocol
from urllib import request
from urllib.error import HTTPError


class DispatchError(Exception):
    pass


class MessageGateway(Protocol):
    def send_message(self, chat_id: str, text: str) -> Any: ...


class GreenApiGateway:
    def __init__(
        self,
        *,
        base_url: str,
        id_instance: str,
        api_token: str,
        timeout_seconds: int = 15,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.id_instance = id_instance
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds

    def send_message(self, chat_id: str, text: str) -> Any:
        if not self.id_instance or not self.api_token:
            raise DispatchError("missing GREEN_API_ID_INSTANCE / GREEN_API_TOKEN")
        url = f"{self.base_url}/waInstance{self.id_instance}/sendMessage/{self.api_token}"
        encoded = json.dumps({"chatId": chat_id, "message": text}, ensure_ascii=False).encode(
            "utf-8"
        )
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
            detail = exc.read().decode("utf-8", errors="replace")
            raise DispatchError(f"Green-API sendMessage failed: {exc.code} {detail}") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise DispatchError(
                f"Green-API sendMessage failed: {type(exc).__name__} {exc}"
            ) from exc

        try:
            return json.loads(body)
        except json.JSONDecodeError:
            return body
