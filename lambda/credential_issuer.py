from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

import tvm_crypto
from tvm_config import TvmConfig
from tvm_log import EventLog

# The issuer role is assumed from the Lambda role session; chained role
# sessions are capped at one hour regardless of MaxSessionDuration.
MAX_ASSUME_ROLE_SECONDS = 3600

_PLACEHOLDERS = (
    "__ACCOUNT_ID__",
    "__REGION__",
    "__USERS_DOMAIN__",
    "__DEVICE_DOMAIN__",
    "__USERNAME__",
)


@dataclass(frozen=True)
class SessionCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime

    @property
    def expiration_millis(self) -> int:
        return int(self.expiration.timestamp() * 1000)


def load_policy_template(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def _federated_name(username: str) -> str:
    # GetFederationToken Name: 2-32 chars of [\w+=,.@-].
    sanitized = re.sub(r"[^\w+=,.@-]", "", username, flags=re.ASCII)
    return (sanitized[:32] or "tvm-user").ljust(2, "_")


def _session_name(username: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9+=,.@_-]", "", f"tvm-{username}")
    return sanitized[:64] or "tvm-session"


class CredentialIssuer:
    """
    Requests time-boxed credentials scoped to a single user.

    Without ISSUER_ROLE_ARN the issuer calls sts:GetFederationToken, which
    needs long-term IAM user credentials. With it, the issuer assumes that role
    and passes the rendered policy as a session policy.
    """

    def __init__(self, sts_client: Any, *, config: TvmConfig, log: EventLog, policy_template: str | None = None) -> None:
        self._sts = sts_client
        self._config = config
        self._log = log
        self._template = (
            policy_template if policy_template is not None else load_policy_template(config.policy_file)
        )

    def render_policy(self, username: str) -> str:
        # The username lands inside an ARN in a JSON document; the format check
        # keeps quotes, wildcards and slashes out of it.
        if not tvm_crypto.is_valid_username(username):
            raise ValueError("invalid username for policy")
        if not self._config.account_id:
            raise ValueError("account id is not configured")
        values = {
            "__ACCOUNT_ID__": self._config.account_id,
            "__REGION__": self._config.sdb_region,
            "__USERS_DOMAIN__": self._config.users_domain,
            "__DEVICE_DOMAIN__": self._config.devices_domain,
            "__USERNAME__": username,
        }
        rendered = self._template
        for placeholder in _PLACEHOLDERS:
            rendered = rendered.replace(placeholder, values[placeholder])
        # Packed policy size counts against the STS limit; drop whitespace.
        return json.dumps(json.loads(rendered), separators=(",", ":"))

    def _duration_seconds(self) -> int:
        duration = self._config.session_duration_seconds
        if self._config.issuer_role_arn:
            return min(duration, MAX_ASSUME_ROLE_SECONDS)
        return duration

    def _request(self, username: str, policy: str) -> dict[str, Any]:
        if self._config.issuer_role_arn:
            return self._sts.assume_role(
                RoleArn=self._config.issuer_role_arn,
                RoleSessionName=_session_name(username),
                Policy=policy,
                DurationSeconds=self._duration_seconds(),
                Tags=[{"Key": "username", "Value": username[:256]}],
            )
        return self._sts.get_federation_token(
            Name=_federated_name(username),
            Policy=policy,
            DurationSeconds=self._duration_seconds(),
        )

    def issue(self, username: str) -> SessionCredentials | None:
        try:
            policy = self.render_policy(username)
            out = self._request(username, policy)
        except (ValueError, BotoCoreError, ClientError) as e:
            self._log.error("tvm_issue_credentials_failed", e, username=username)
            return None

        creds = out.get("Credentials") or {}
        expiration = creds.get("Expiration")
        if not (
            creds.get("AccessKeyId")
            and creds.get("SecretAccessKey")
            and creds.get("SessionToken")
            and isinstance(expiration, datetime)
        ):
            self._log.error("tvm_issue_credentials_incomplete", username=username)
            return None
        return SessionCredentials(
            access_key_id=str(creds["AccessKeyId"]),
            secret_access_key=str(creds["SecretAccessKey"]),
            session_token=str(creds["SessionToken"]),
            expiration=expiration,
        )
