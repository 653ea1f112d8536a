from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

DEFAULT_APP_NAME = "mymobileappname"
DEFAULT_DOMAIN_PREFIX = "TokenVendingMachine"
DEFAULT_SESSION_DURATION_SECONDS = 86400
DEFAULT_SDB_REGION = "us-east-1"
DEFAULT_SCHEMA_VERSION = "2026-10-19"
DEFAULT_POLICY_FILE = str(Path(__file__).resolve().parent / "tvm_policy.json")

# GetFederationToken accepts 900..129600 seconds.
MIN_SESSION_DURATION_SECONDS = 900
MAX_SESSION_DURATION_SECONDS = 129600


class ConfigError(Exception):
    pass


def domain_names(domain_prefix: str, app_name: str) -> tuple[str, str]:
    base = f"{domain_prefix}_{app_name.lower()}"
    return f"{base}_USERS", f"{base}_DEVICES"


@dataclass(frozen=True)
class TvmConfig:
    app_name: str
    domain_prefix: str
    account_id: str
    session_duration_seconds: int
    sdb_region: str
    sdb_endpoint: str = ""
    issuer_role_arn: str = ""
    policy_file: str = DEFAULT_POLICY_FILE
    register_success_hint: str = "/success"
    register_error_hint: str = "/error"
    schema_version: str = DEFAULT_SCHEMA_VERSION

    @property
    def users_domain(self) -> str:
        return domain_names(self.domain_prefix, self.app_name)[0]

    @property
    def devices_domain(self) -> str:
        return domain_names(self.domain_prefix, self.app_name)[1]


def _env(environ: Mapping[str, str], name: str, default: str = "") -> str:
    return str(environ.get(name) or default).strip()


def _session_duration(raw: str) -> int:
    try:
        duration = int(raw)
    except ValueError as e:
        raise ConfigError(f"TVM_SESSION_DURATION_SECONDS must be an integer, got {raw!r}") from e
    if duration < MIN_SESSION_DURATION_SECONDS or duration > MAX_SESSION_DURATION_SECONDS:
        raise ConfigError(
            "TVM_SESSION_DURATION_SECONDS must be between "
            f"{MIN_SESSION_DURATION_SECONDS} and {MAX_SESSION_DURATION_SECONDS}"
        )
    return duration


def load_config(environ: Mapping[str, str] | None = None) -> TvmConfig:
    """
    Build the process-wide configuration from environment variables.

    Everything is validated here so a misconfigured deployment fails on the
    first request instead of half-way through a flow. The account id may be
    left empty; the caller resolves it with sts:GetCallerIdentity.
    """

    env = os.environ if environ is None else environ

    app_name = _env(env, "TVM_APP_NAME", DEFAULT_APP_NAME).lower()
    if not app_name or not all(c.isalnum() or c in "_-." for c in app_name):
        raise ConfigError(f"TVM_APP_NAME has invalid characters: {app_name!r}")

    domain_prefix = _env(env, "TVM_DOMAIN_PREFIX", DEFAULT_DOMAIN_PREFIX)
    if not all(c.isalnum() or c in "_-." for c in domain_prefix):
        raise ConfigError(f"TVM_DOMAIN_PREFIX has invalid characters: {domain_prefix!r}")

    account_id = _env(env, "TVM_ACCOUNT_ID")
    if account_id and not (len(account_id) == 12 and account_id.isdigit()):
        raise ConfigError(f"TVM_ACCOUNT_ID must be a 12-digit account id, got {account_id!r}")

    sdb_region = (
        _env(env, "TVM_SDB_REGION")
        or _env(env, "AWS_REGION")
        or _env(env, "AWS_DEFAULT_REGION")
        or DEFAULT_SDB_REGION
    )

    issuer_role_arn = _env(env, "ISSUER_ROLE_ARN")
    if issuer_role_arn and not issuer_role_arn.startswith("arn:"):
        raise ConfigError(f"ISSUER_ROLE_ARN is not an ARN: {issuer_role_arn!r}")

    policy_file = _env(env, "TVM_POLICY_FILE", DEFAULT_POLICY_FILE)
    if not Path(policy_file).is_file():
        raise ConfigError(f"policy template not found: {policy_file}")

    return TvmConfig(
        app_name=app_name,
        domain_prefix=domain_prefix,
        account_id=account_id,
        session_duration_seconds=_session_duration(
            _env(env, "TVM_SESSION_DURATION_SECONDS", str(DEFAULT_SESSION_DURATION_SECONDS))
        ),
        sdb_region=sdb_region,
        sdb_endpoint=_env(env, "TVM_SDB_ENDPOINT"),
        issuer_role_arn=issuer_role_arn,
        policy_file=policy_file,
        register_success_hint=_env(env, "TVM_REGISTER_SUCCESS_HINT", "/success"),
        register_error_hint=_env(env, "TVM_REGISTER_ERROR_HINT", "/error"),
        schema_version=_env(env, "SCHEMA_VERSION", DEFAULT_SCHEMA_VERSION),
    )
