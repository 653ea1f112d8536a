from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence
from urllib.parse import urlparse


class AuthInputError(ValueError):
    """Raised when CLI auth inputs are missing or conflicting."""


class MissingEndpointError(AuthInputError):
    """Raised when an endpoint is required but missing."""


class InvalidDeviceKeyError(AuthInputError):
    """Raised when a supplied device key is not a 32-char hex token."""


@dataclass(frozen=True)
class UserCredentials:
    username: str
    password: str


@dataclass(frozen=True)
class DeviceCredentials:
    uid: str
    key: str


def _require_non_empty(val: str | None, *, name: str, hint: str) -> str:
    out = (val or "").strip()
    if not out:
        raise AuthInputError(f"missing {name} ({hint})")
    return out


def resolve_user_credentials(
    *,
    username: str | None,
    password: str | None,
    env_or_none: Callable[..., str | None],
    username_env_names: Sequence[str] = ("TVM_USERNAME",),
    password_env_names: Sequence[str] = ("TVM_PASSWORD",),
) -> UserCredentials:
    username_hint_env = str(username_env_names[0]).strip() if username_env_names else "TVM_USERNAME"
    password_hint_env = str(password_env_names[0]).strip() if password_env_names else "TVM_PASSWORD"
    resolved_username = _require_non_empty(
        username or env_or_none(*username_env_names),
        name="username",
        hint=f"--username or env {username_hint_env}",
    )
    # Passwords may legitimately carry surrounding spaces; only emptiness is checked.
    resolved_password = password or env_or_none(*password_env_names) or ""
    if not resolved_password:
        raise AuthInputError(f"missing password (--password or env {password_hint_env})")
    return UserCredentials(username=resolved_username, password=resolved_password)


def resolve_device_credentials(
    *,
    uid: str | None,
    key: str | None,
    env_or_none: Callable[..., str | None],
    uid_env_names: Sequence[str] = ("TVM_DEVICE_UID",),
    key_env_names: Sequence[str] = ("TVM_DEVICE_KEY",),
) -> DeviceCredentials:
    resolved_uid = _require_non_empty(
        uid or env_or_none(*uid_env_names),
        name="uid",
        hint=f"--uid or env {uid_env_names[0] if uid_env_names else 'TVM_DEVICE_UID'}",
    )
    resolved_key = _require_non_empty(
        key or env_or_none(*key_env_names),
        name="device key",
        hint="--key, a login key cache, or env "
        f"{key_env_names[0] if key_env_names else 'TVM_DEVICE_KEY'}",
    )
    if len(resolved_key) != 32 or any(c not in "0123456789abcdefABCDEF" for c in resolved_key):
        raise InvalidDeviceKeyError("device key must be 32 hex characters")
    return DeviceCredentials(uid=resolved_uid, key=resolved_key)


def resolve_endpoint(
    *,
    endpoint: str | None,
    env_or_none: Callable[..., str | None],
    endpoint_env_names: Sequence[str] = ("TVM_ENDPOINT",),
) -> str:
    """Resolve the TVM base URL and reject anything that is not http(s)."""

    hint_env = endpoint_env_names[0] if endpoint_env_names else "TVM_ENDPOINT"
    value = (endpoint or env_or_none(*endpoint_env_names) or "").strip().rstrip("/")
    if not value:
        raise MissingEndpointError(f"missing endpoint (--endpoint or env {hint_env})")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise MissingEndpointError(f"endpoint must be an http(s) URL; got {value!r}")
    return value


def endpoint_salt_host(endpoint: str) -> str:
    """The host part of the endpoint, as the server folds it into password hashes."""

    return (urlparse(endpoint).hostname or "").lower()
