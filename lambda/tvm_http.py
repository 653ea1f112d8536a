from __future__ import annotations

import base64
import json
from typing import Any
from urllib.parse import parse_qs

from token_vending import MissingParameterError, Outcome

STATUS_BY_OUTCOME = {
    Outcome.OK: 200,
    Outcome.BAD_REQUEST: 400,
    Outcome.UNAUTHORIZED: 401,
    Outcome.CONFLICT: 406,
    Outcome.STALE: 408,
    Outcome.INTERNAL: 500,
}

_MESSAGES = {
    400: "Bad Request",
    401: "Unauthorized",
    406: "Not Acceptable",
    408: "Request Timeout",
    500: "Internal Server Error",
}


def status_for(outcome: Outcome) -> int:
    return STATUS_BY_OUTCOME[outcome]


def response(status_code: int, body: str, *, content_type: str = "text/plain; charset=UTF-8") -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"content-type": content_type, "cache-control": "no-store"},
        "body": body,
    }


def error_response(status_code: int) -> dict[str, Any]:
    return response(status_code, _MESSAGES.get(status_code, "Error"))


def json_response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return response(status_code, json.dumps(body), content_type="application/json")


def get_header(event: dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    if not isinstance(headers, dict):
        return ""
    # API Gateway can canonicalize headers; treat them case-insensitively.
    for k, v in headers.items():
        if isinstance(k, str) and k.lower() == name.lower():
            return str(v) if v is not None else ""
    return ""


def get_request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return ""
    return str(rc.get("requestId") or "")


def _body_params(event: dict[str, Any]) -> dict[str, str]:
    raw = event.get("body")
    if raw is None:
        return {}
    text = str(raw)
    if event.get("isBase64Encoded"):
        try:
            text = base64.b64decode(text).decode("utf-8")
        except ValueError:
            return {}
    if not text.strip():
        return {}
    if "json" in get_header(event, "content-type").lower() or text.lstrip().startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): str(v) for k, v in parsed.items() if v is not None}
    return {k: v[0] for k, v in parse_qs(text, keep_blank_values=True).items() if v}


def request_params(event: dict[str, Any]) -> dict[str, str]:
    """Query string parameters overlaid with form or JSON body parameters."""

    params: dict[str, str] = {}
    query = event.get("queryStringParameters") or {}
    if isinstance(query, dict):
        params.update({str(k): str(v) for k, v in query.items() if v is not None})
    params.update(_body_params(event))
    return params


def required_param(params: dict[str, str], name: str) -> str:
    value = (params.get(name) or "").strip()
    if not value:
        raise MissingParameterError(name)
    return value


def endpoint_host(event: dict[str, Any]) -> str:
    """The host the client addressed; part of the password salt."""

    rc = event.get("requestContext") or {}
    domain = str(rc.get("domainName") or "") if isinstance(rc, dict) else ""
    host = domain or get_header(event, "host")
    # Drop any port; the salt only uses the server name.
    return host.split(":", 1)[0].strip().lower()
