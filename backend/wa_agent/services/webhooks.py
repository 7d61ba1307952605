from __future__ import annotations

import hmac
from typing import Optional

from starlette.datastructures import Headers, QueryParams

SECRET_HEADERS = ["x-webhook-secret"]
SECRET_QUERY_PARAMS = ["secret"]


class WebhookAuthorizationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value
    return None


def _query_value(query_params: QueryParams, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = query_params.get(key)
        if value:
            return value
    return None


def presented_secret(headers: Headers, query_params: QueryParams) -> Optional[str]:
    return _header_value(headers, SECRET_HEADERS) or _query_value(
        query_params, SECRET_QUERY_PARAMS
    )


def verify_webhook_secret(headers: Headers, query_params: QueryParams, secret: str) -> None:
    if not secret:
        raise WebhookAuthorizationError("webhook secret is not configured")
    provided = presented_secret(headers, query_params)
    if not provided:
        raise WebhookAuthorizationError("missing webhook secret")
    if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise WebhookAuthorizationError("invalid webhook secret")
