from __future__ import annotations

import dataclasses
import enum
import json
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import tvm_crypto
from credential_issuer import CredentialIssuer, SessionCredentials
from device_directory import DeviceDirectory
from identity_store import IdentityStore, sdb_client
from tvm_config import ConfigError, TvmConfig
from tvm_log import EventLog
from user_directory import UserDirectory


class Outcome(enum.Enum):
    OK = "ok"
    BAD_REQUEST = "bad_request"
    STALE = "stale"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class MissingParameterError(ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"missing required parameter: {name}")
        self.name = name


@dataclass(frozen=True)
class VendResult:
    outcome: Outcome
    body: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


def classify_failure(error: BaseException) -> Outcome:
    """Map an exception that escaped a flow onto an outcome."""

    if isinstance(error, MissingParameterError):
        return Outcome.BAD_REQUEST
    return Outcome.INTERNAL


def credentials_payload(creds: SessionCredentials) -> str:
    return json.dumps(
        {
            "accessKey": creds.access_key_id,
            "secretKey": creds.secret_access_key,
            "securityToken": creds.session_token,
            "expirationDate": str(creds.expiration_millis),
        },
        separators=(",", ":"),
    )


def key_payload(key: str) -> str:
    return json.dumps({"key": key}, separators=(",", ":"))


class TokenVendingMachine:
    """
    Device token issuance, login/key issuance and self-registration.

    Nothing here holds per-request state; everything persistent lives in the
    two directories. `trace` is the caller's wide event and only ever receives
    non-secret stage markers.
    """

    def __init__(
        self,
        *,
        users: UserDirectory,
        devices: DeviceDirectory,
        issuer: CredentialIssuer,
        log: EventLog,
    ) -> None:
        self.users = users
        self.devices = devices
        self.issuer = issuer
        self._log = log

    def request_device_token(
        self, uid: str, signature: str, timestamp: str, trace: dict[str, Any] | None = None
    ) -> VendResult:
        trace = {} if trace is None else trace
        if not tvm_crypto.is_timestamp_valid(timestamp):
            trace["stage"] = "validate_timestamp"
            return VendResult(Outcome.STALE)

        # A missing device is reported exactly like a wrong key.
        key = self.devices.get_key(uid)
        if key is None or not tvm_crypto.constant_time_equals(signature, tvm_crypto.sign(timestamp, key)):
            trace["stage"] = "verify_signature"
            return VendResult(Outcome.UNAUTHORIZED)

        trace["stage"] = "issue_credentials"
        username = self.users.username_for_userid(self.devices.get_owning_userid(uid) or "")
        if username is None:
            self._log.error("tvm_device_owner_missing", uid=uid)
            return VendResult(Outcome.INTERNAL)

        creds = self.issuer.issue(username)
        if creds is None:
            return VendResult(Outcome.INTERNAL)

        trace["stage"] = "encrypt"
        trace["username"] = username
        return VendResult(Outcome.OK, tvm_crypto.encrypt_and_wrap(credentials_payload(creds), key))

    def login(
        self, username: str, uid: str, signature: str, timestamp: str, trace: dict[str, Any] | None = None
    ) -> VendResult:
        trace = {} if trace is None else trace
        if not tvm_crypto.is_timestamp_valid(timestamp):
            trace["stage"] = "validate_timestamp"
            return VendResult(Outcome.STALE)

        userid = self.users.authenticate_by_signature(username, timestamp, signature)
        if userid is None:
            trace["stage"] = "verify_user_signature"
            return VendResult(Outcome.UNAUTHORIZED)

        trace["stage"] = "register_device"
        if not self.devices.register_or_rotate(uid, tvm_crypto.random_token(), userid):
            self._log.error("tvm_device_register_rejected", uid=uid, username=username)
            return VendResult(Outcome.INTERNAL)

        device = self.devices.get_device(uid)
        device_userid = device.get("userid")
        key = device.get("key")
        if not device_userid or not key:
            self._log.error("tvm_device_attributes_missing", uid=uid)
            return VendResult(Outcome.INTERNAL)

        trace["stage"] = "check_ownership"
        if device_userid != userid:
            self._log.warning("tvm_device_ownership_mismatch", uid=uid, username=username)
            return VendResult(Outcome.UNAUTHORIZED)

        password_hash = self.users.get_password_hash(username)
        if not password_hash:
            return VendResult(Outcome.INTERNAL)

        trace["stage"] = "encrypt"
        return VendResult(Outcome.OK, tvm_crypto.encrypt_and_wrap(key_payload(key), password_hash))

    def register_user(
        self, username: str, password: str, endpoint: str, trace: dict[str, Any] | None = None
    ) -> VendResult:
        trace = {} if trace is None else trace
        if not tvm_crypto.is_valid_username(username) or not tvm_crypto.is_valid_password(password):
            trace["stage"] = "validate_format"
            return VendResult(Outcome.BAD_REQUEST)

        trace["stage"] = "register"
        if not self.users.register(username, password, endpoint):
            return VendResult(Outcome.CONFLICT)
        return VendResult(Outcome.OK)


def resolve_account_id(config: TvmConfig, sts_client: Any) -> TvmConfig:
    if config.account_id:
        return config
    try:
        account_id = str(sts_client.get_caller_identity().get("Account") or "")
    except (BotoCoreError, ClientError) as e:
        raise ConfigError(f"unable to resolve account id: {e}") from e
    if not account_id:
        raise ConfigError("unable to resolve account id: empty GetCallerIdentity response")
    return dataclasses.replace(config, account_id=account_id)


def build_machine(config: TvmConfig, log: EventLog, *, sdb: Any = None, sts: Any = None) -> TokenVendingMachine:
    """Wire the directories and issuer for one process. Creates missing domains."""

    sts = sts if sts is not None else boto3.client("sts", region_name=config.sdb_region)
    sdb = sdb if sdb is not None else sdb_client(region=config.sdb_region, endpoint=config.sdb_endpoint)
    config = resolve_account_id(config, sts)

    store = IdentityStore(sdb)
    users = UserDirectory(store, domain=config.users_domain, app_name=config.app_name, log=log)
    devices = DeviceDirectory(store, domain=config.devices_domain, log=log)
    users.ensure_domain()
    devices.ensure_domain()
    return TokenVendingMachine(
        users=users,
        devices=devices,
        issuer=CredentialIssuer(sts, config=config, log=log),
        log=log,
    )
