import dataclasses
import json
from datetime import timedelta

import pytest

import tvm_crypto
from conftest import now_iso
from device_directory import DeviceDirectory
from token_vending import (
    MissingParameterError,
    Outcome,
    classify_failure,
    resolve_account_id,
)
from tvm_config import ConfigError

ENDPOINT = "api.example.com"


def _login(machine, username="alice", password="Secret1", uid="phone1", timestamp=None, password_hash=None):
    timestamp = timestamp or now_iso()
    password_hash = password_hash or tvm_crypto.salted_password_hash(username, password, ENDPOINT, "myapp")
    return machine.login(username, uid, tvm_crypto.sign(timestamp, password_hash), timestamp), password_hash


def _device_key(machine, password="Secret1", uid="phone1"):
    result, password_hash = _login(machine, password=password, uid=uid)
    assert result.outcome is Outcome.OK
    return json.loads(tvm_crypto.unwrap_and_decrypt(result.body, password_hash))["key"]


def test_build_machine_creates_domains(machine, sdb):
    assert set(sdb.domains) == {"TokenVendingMachine_myapp_USERS", "TokenVendingMachine_myapp_DEVICES"}


def test_register_user_outcomes(machine):
    assert machine.register_user("alice", "Secret1", ENDPOINT).outcome is Outcome.OK
    assert machine.register_user("alice", "Secret1", ENDPOINT).outcome is Outcome.CONFLICT
    assert machine.register_user("al", "Secret1", ENDPOINT).outcome is Outcome.BAD_REQUEST
    assert machine.register_user("bob", "123", ENDPOINT).outcome is Outcome.BAD_REQUEST
    assert machine.register_user("bob smith", "Secret1", ENDPOINT).outcome is Outcome.BAD_REQUEST


def test_login_end_to_end_returns_key_encrypted_with_password_hash(machine, sdb):
    machine.register_user("alice", "Secret1", ENDPOINT)
    trace: dict = {}
    timestamp = now_iso()
    password_hash = tvm_crypto.salted_password_hash("alice", "Secret1", ENDPOINT, "myapp")
    result = machine.login("alice", "phone1", tvm_crypto.sign(timestamp, password_hash), timestamp, trace=trace)

    assert result.outcome is Outcome.OK
    payload = json.loads(tvm_crypto.unwrap_and_decrypt(result.body, password_hash))
    stored = sdb.domains["TokenVendingMachine_myapp_DEVICES"]["phone1"]
    assert payload == {"key": stored["key"][0]}
    assert len(payload["key"]) == 32
    assert stored["userid"] == sdb.domains["TokenVendingMachine_myapp_USERS"]["alice"]["userid"]
    assert trace["stage"] == "encrypt"


def test_login_replay_twenty_minutes_later_is_stale(machine):
    machine.register_user("alice", "Secret1", ENDPOINT)
    result, _ = _login(machine, timestamp=now_iso(-timedelta(minutes=20)))
    assert result.outcome is Outcome.STALE


def test_login_with_wrong_hash_is_unauthorized(machine):
    machine.register_user("alice", "Secret1", ENDPOINT)
    result, _ = _login(machine, password_hash=tvm_crypto.sign("x", "y"))
    assert result.outcome is Outcome.UNAUTHORIZED
    result, _ = _login(machine, username="nobody")
    assert result.outcome is Outcome.UNAUTHORIZED


def test_login_rotates_device_key(machine):
    machine.register_user("alice", "Secret1", ENDPOINT)
    first = _device_key(machine)
    second = _device_key(machine)
    assert first != second


def test_login_on_device_owned_by_someone_else_fails(machine, sdb):
    machine.register_user("alice", "Secret1", ENDPOINT)
    machine.register_user("mallory", "Secret2", ENDPOINT)
    _device_key(machine)
    owner = sdb.domains["TokenVendingMachine_myapp_DEVICES"]["phone1"]["userid"]

    result, _ = _login(machine, username="mallory", password="Secret2")
    assert result.outcome is Outcome.INTERNAL
    assert sdb.domains["TokenVendingMachine_myapp_DEVICES"]["phone1"]["userid"] == owner


def test_login_device_claimed_after_write_is_unauthorized(machine, sdb, log_sink):
    machine.register_user("alice", "Secret1", ENDPOINT)
    machine.register_user("mallory", "Secret2", ENDPOINT)
    mallory_id = sdb.domains["TokenVendingMachine_myapp_USERS"]["mallory"]["userid"][0]

    class RacingDevices(DeviceDirectory):
        def register_or_rotate(self, uid, new_key, userid):
            accepted = super().register_or_rotate(uid, new_key, userid)
            # Another login rebinds the device before the owner is re-read.
            self._store.put(self.domain, uid, {"key": new_key, "userid": mallory_id})
            return accepted

    devices = machine.devices
    machine.devices = RacingDevices(devices._store, domain=devices.domain, log=devices._log)
    trace: dict = {}
    timestamp = now_iso()
    password_hash = tvm_crypto.salted_password_hash("alice", "Secret1", ENDPOINT, "myapp")

    result = machine.login("alice", "phone1", tvm_crypto.sign(timestamp, password_hash), timestamp, trace=trace)

    assert result.outcome is Outcome.UNAUTHORIZED
    assert result.body == ""
    assert trace["stage"] == "check_ownership"
    assert log_sink.events()[-1]["event"] == "tvm_device_ownership_mismatch"


def test_login_lost_device_write_is_internal(machine, sdb):
    machine.register_user("alice", "Secret1", ENDPOINT)
    sdb.drop_reads.add(("TokenVendingMachine_myapp_DEVICES", "phone1"))
    result, _ = _login(machine)
    assert result.outcome is Outcome.INTERNAL


def test_gettoken_with_issued_key(machine, sts):
    machine.register_user("alice", "Secret1", ENDPOINT)
    key = _device_key(machine)
    timestamp = now_iso()
    trace: dict = {}

    result = machine.request_device_token("phone1", tvm_crypto.sign(timestamp, key), timestamp, trace=trace)

    assert result.outcome is Outcome.OK
    creds = json.loads(tvm_crypto.unwrap_and_decrypt(result.body, key))
    assert creds == {
        "accessKey": "ASIAFAKE",
        "secretKey": "fake-secret",
        "securityToken": "fake-session-token",
        "expirationDate": "1893456000000",
    }
    assert trace["username"] == "alice"
    op, kwargs = sts.calls[-1]
    assert op == "get_federation_token"
    assert "domain/alice" in kwargs["Policy"]


def test_gettoken_with_any_other_key_is_unauthorized(machine, sts):
    machine.register_user("alice", "Secret1", ENDPOINT)
    _device_key(machine)
    timestamp = now_iso()
    other = tvm_crypto.random_token()

    assert machine.request_device_token("phone1", tvm_crypto.sign(timestamp, other), timestamp).outcome is (
        Outcome.UNAUTHORIZED
    )
    assert machine.request_device_token("unknown", tvm_crypto.sign(timestamp, other), timestamp).outcome is (
        Outcome.UNAUTHORIZED
    )
    assert not [op for op, _ in sts.calls if op == "get_federation_token"]


def test_gettoken_stale_timestamp(machine):
    machine.register_user("alice", "Secret1", ENDPOINT)
    key = _device_key(machine)
    timestamp = now_iso(timedelta(minutes=16))
    assert machine.request_device_token("phone1", tvm_crypto.sign(timestamp, key), timestamp).outcome is Outcome.STALE


def test_gettoken_issuer_failure_is_internal(machine, sts):
    machine.register_user("alice", "Secret1", ENDPOINT)
    key = _device_key(machine)
    sts.fail = True
    timestamp = now_iso()
    assert machine.request_device_token("phone1", tvm_crypto.sign(timestamp, key), timestamp).outcome is (
        Outcome.INTERNAL
    )


def test_gettoken_orphaned_device_is_internal(machine, sdb):
    machine.register_user("alice", "Secret1", ENDPOINT)
    key = _device_key(machine)
    sdb.domains["TokenVendingMachine_myapp_USERS"].pop("alice")
    timestamp = now_iso()
    assert machine.request_device_token("phone1", tvm_crypto.sign(timestamp, key), timestamp).outcome is (
        Outcome.INTERNAL
    )


def test_classify_failure():
    assert classify_failure(MissingParameterError("uid")) is Outcome.BAD_REQUEST
    assert classify_failure(ValueError("bad padding")) is Outcome.INTERNAL
    assert classify_failure(RuntimeError("boom")) is Outcome.INTERNAL


def test_resolve_account_id(config, sts):
    resolved = resolve_account_id(dataclasses.replace(config, account_id=""), sts)
    assert resolved.account_id == "123456789012"
    assert resolve_account_id(config, sts) is config

    sts.account = ""
    with pytest.raises(ConfigError):
        resolve_account_id(dataclasses.replace(config, account_id=""), sts)
