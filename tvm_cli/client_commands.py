from __future__ import annotations

import argparse
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import tvm_crypto

from . import auth_inputs
from .cli_shared import (
    TVM_DEVICE_UID,
    TVM_KEY_CACHE,
    GlobalOpts,
    OpError,
    UsageError,
    _env_or_none,
    _load_json_object,
    _print_json,
    _write_secure_json,
)

DEFAULT_KEY_CACHE = ".tvm/device.json"

_STATUS_HINTS = {
    400: "bad request (missing or malformed parameters)",
    401: "unauthorized (wrong signature, unknown user or unknown device)",
    406: "not acceptable (username already taken)",
    408: "request timestamp outside the accepted window (check the local clock)",
    500: "token vending machine internal error",
}


def _utc_timestamp(now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m-%dT%H:%M:%S.") + f"{current.microsecond // 1000:03d}Z"


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def _get(url: str, params: dict[str, str]) -> tuple[int, str]:
    status, _hdrs, data = _http_request(
        method="GET",
        url=f"{url}?{urlencode(params)}",
        headers={"accept": "text/plain"},
    )
    return status, data.decode("utf-8", errors="replace")


def _raise_for_status(status: int, *, action: str) -> None:
    if status == 200:
        return
    raise OpError(f"{action} failed: HTTP {status}: {_STATUS_HINTS.get(status, 'unexpected response')}")


def _resolve_endpoint(args: argparse.Namespace) -> str:
    try:
        return auth_inputs.resolve_endpoint(endpoint=args.endpoint, env_or_none=_env_or_none)
    except auth_inputs.AuthInputError as e:
        raise UsageError(str(e)) from e


def _salt_host(args: argparse.Namespace, endpoint: str) -> str:
    return str(getattr(args, "salt_host", "") or "").strip().lower() or auth_inputs.endpoint_salt_host(endpoint)


def _user_credentials(args: argparse.Namespace) -> auth_inputs.UserCredentials:
    try:
        return auth_inputs.resolve_user_credentials(
            username=args.username,
            password=args.password,
            env_or_none=_env_or_none,
        )
    except auth_inputs.AuthInputError as e:
        raise UsageError(str(e)) from e


def _key_cache_path(args: argparse.Namespace) -> Path:
    raw = str(getattr(args, "key_cache", "") or "").strip() or _env_or_none(TVM_KEY_CACHE) or DEFAULT_KEY_CACHE
    return Path(raw).expanduser()


def _cached_device(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    return _load_json_object(raw=path.read_text(encoding="utf-8"), label=f"key cache {path}")


def _decrypt(payload: str, key: str, *, label: str) -> str:
    try:
        return tvm_crypto.unwrap_and_decrypt(payload, key)
    except ValueError as e:
        raise OpError(f"unable to decrypt {label}: {e}") from e


def cmd_sign(args: argparse.Namespace, g: GlobalOpts) -> int:
    key = str(args.key or "")
    if not key:
        raise UsageError("key cannot be empty")
    content = str(args.content or "") or _utc_timestamp()
    _print_json({"content": content, "signature": tvm_crypto.sign(content, key)}, pretty=g.pretty)
    return 0


def cmd_password_hash(args: argparse.Namespace, g: GlobalOpts) -> int:
    creds = _user_credentials(args)
    endpoint = _resolve_endpoint(args)
    host = _salt_host(args, endpoint)
    digest = tvm_crypto.salted_password_hash(creds.username, creds.password, host, g.app_name)
    _print_json({"username": creds.username, "endpointHost": host, "hash": digest}, pretty=g.pretty)
    return 0


def cmd_register(args: argparse.Namespace, g: GlobalOpts) -> int:
    creds = _user_credentials(args)
    if not tvm_crypto.is_valid_username(creds.username):
        raise UsageError("username must be 3-128 letters, digits, '_' or '.'")
    if not tvm_crypto.is_valid_password(creds.password):
        raise UsageError("password must be 6-128 characters")
    endpoint = _resolve_endpoint(args)
    status, _hdrs, data = _http_request(
        method="POST",
        url=f"{endpoint}/registeruser",
        headers={"content-type": "application/x-www-form-urlencoded", "accept": "application/json"},
        body=urlencode({"username": creds.username, "password": creds.password}).encode("utf-8"),
    )
    _raise_for_status(status, action="register")
    try:
        out = json.loads(data.decode("utf-8"))
    except ValueError:
        out = {}
    _print_json({"username": creds.username, "registered": True, "next": str(out.get("next") or "")}, pretty=g.pretty)
    return 0


def cmd_login(args: argparse.Namespace, g: GlobalOpts) -> int:
    creds = _user_credentials(args)
    endpoint = _resolve_endpoint(args)
    uid = str(args.uid or "").strip() or _env_or_none(TVM_DEVICE_UID) or uuid.uuid4().hex
    password_hash = tvm_crypto.salted_password_hash(
        creds.username, creds.password, _salt_host(args, endpoint), g.app_name
    )
    timestamp = _utc_timestamp()
    status, body = _get(
        f"{endpoint}/login",
        {
            "username": creds.username,
            "uid": uid,
            "timestamp": timestamp,
            "signature": tvm_crypto.sign(timestamp, password_hash),
        },
    )
    _raise_for_status(status, action="login")
    payload = _load_json_object(raw=_decrypt(body, password_hash, label="login response"), label="login payload")
    key = str(payload.get("key") or "")
    if not key:
        raise OpError("login response did not contain a device key")

    path = _key_cache_path(args)
    _write_secure_json(path=path, obj={"uid": uid, "key": key, "username": creds.username})
    out: dict[str, Any] = {"username": creds.username, "uid": uid, "keyCache": str(path)}
    if args.show_key:
        out["key"] = key
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_token(args: argparse.Namespace, g: GlobalOpts) -> int:
    endpoint = _resolve_endpoint(args)
    cached = _cached_device(_key_cache_path(args))
    try:
        device = auth_inputs.resolve_device_credentials(
            uid=args.uid or str(cached.get("uid") or "") or None,
            key=args.key or str(cached.get("key") or "") or None,
            env_or_none=_env_or_none,
        )
    except auth_inputs.AuthInputError as e:
        raise UsageError(str(e)) from e

    timestamp = _utc_timestamp()
    status, body = _get(
        f"{endpoint}/gettoken",
        {"uid": device.uid, "timestamp": timestamp, "signature": tvm_crypto.sign(timestamp, device.key)},
    )
    _raise_for_status(status, action="gettoken")
    creds = _load_json_object(raw=_decrypt(body, device.key, label="token response"), label="token payload")

    if args.credential_process:
        expiration_ms = int(str(creds.get("expirationDate") or "0"))
        expiration = datetime.fromtimestamp(expiration_ms / 1000, tz=timezone.utc)
        _print_json(
            {
                "Version": 1,
                "AccessKeyId": str(creds.get("accessKey") or ""),
                "SecretAccessKey": str(creds.get("secretKey") or ""),
                "SessionToken": str(creds.get("securityToken") or ""),
                "Expiration": expiration.isoformat().replace("+00:00", "Z"),
            },
            pretty=g.pretty,
        )
        return 0
    _print_json(creds, pretty=g.pretty)
    return 0


def cmd_decrypt(args: argparse.Namespace, g: GlobalOpts) -> int:
    del g
    payload = str(args.payload or "").strip()
    key = str(args.key or "").strip()
    if not payload or not key:
        raise UsageError("payload and key are required")
    print(_decrypt(payload, key, label="payload"))
    return 0
