from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import boto3

from tvm_config import DEFAULT_APP_NAME, DEFAULT_DOMAIN_PREFIX


class TvmOpsError(Exception):
    pass


class UsageError(TvmOpsError):
    pass


class OpError(TvmOpsError):
    pass


TVM_APP_NAME = "TVM_APP_NAME"
TVM_DOMAIN_PREFIX = "TVM_DOMAIN_PREFIX"
TVM_ENDPOINT = "TVM_ENDPOINT"
TVM_USERNAME = "TVM_USERNAME"
TVM_PASSWORD = "TVM_PASSWORD"
TVM_DEVICE_UID = "TVM_DEVICE_UID"
TVM_DEVICE_KEY = "TVM_DEVICE_KEY"
TVM_KEY_CACHE = "TVM_KEY_CACHE"


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    app_name: str
    domain_prefix: str
    pretty: bool
    quiet: bool
    sdb_endpoint: str = ""


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _aws_profile_region_from_env() -> tuple[str, str]:
    profile = (os.environ.get("AWS_PROFILE") or "").strip()
    region = (os.environ.get("AWS_REGION") or "").strip()
    if not region:
        raise UsageError("missing AWS_REGION (set env or pass --region)")
    return profile, region


def _account_session() -> Any:
    profile, region = _aws_profile_region_from_env()
    if profile:
        return boto3.session.Session(profile_name=profile, region_name=region)
    return boto3.session.Session(region_name=region)


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _load_json_object(*, raw: str, label: str) -> dict[str, Any]:
    try:
        val = json.loads(raw)
    except Exception as e:
        raise OpError(f"invalid {label}: {e}") from e
    if not isinstance(val, dict):
        raise OpError(f"invalid {label}: expected JSON object")
    return val


def _write_secure_json(*, path: Path, obj: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except Exception as e:
        raise OpError(f"failed to apply 0600 permissions to {path}: {e}") from e
