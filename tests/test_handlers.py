import base64
import json
from datetime import timedelta
from urllib.parse import urlencode

import pytest

import get_token_handler
import login_handler
import register_user_handler
import tvm_crypto
import tvm_runtime
from conftest import now_iso
from tvm_http import endpoint_host, request_params

HOST = "abc123.execute-api.us-east-1.amazonaws.com"


@pytest.fixture
def rt(monkeypatch, config, machine, event_log):
    runtime = tvm_runtime.Runtime(config=config, machine=machine)
    monkeypatch.setattr(tvm_runtime, "_runtime", runtime)
    monkeypatch.setattr(tvm_runtime, "_log", event_log)
    return runtime


def _event(*, query=None, body=None, headers=None, base64_body=False):
    event = {
        "queryStringParameters": query,
        "headers": {"Host": HOST, **(headers or {})},
        "requestContext": {"requestId": "req-1", "domainName": HOST},
        "body": body,
        "isBase64Encoded": base64_body,
    }
    return event


def _register(username="alice", password="Secret1"):
    return register_user_handler.handler(
        _event(
            body=urlencode({"username": username, "password": password}),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        ),
        None,
    )


def _login_query(username="alice", password="Secret1", uid="phone1", timestamp=None):
    timestamp = timestamp or now_iso()
    password_hash = tvm_crypto.salted_password_hash(username, password, HOST, "myapp")
    return {
        "username": username,
        "uid": uid,
        "timestamp": timestamp,
        "signature": tvm_crypto.sign(timestamp, password_hash),
    }, password_hash


def test_register_login_gettoken_over_http(rt):
    resp = _register()
    assert resp["statusCode"] == 200
    assert json.loads(resp["body"]) == {"registered": True, "next": "/success"}

    query, password_hash = _login_query()
    resp = login_handler.handler(_event(query=query), None)
    assert resp["statusCode"] == 200
    assert resp["headers"]["cache-control"] == "no-store"
    key = json.loads(tvm_crypto.unwrap_and_decrypt(resp["body"], password_hash))["key"]

    timestamp = now_iso()
    resp = get_token_handler.handler(
        _event(query={"uid": "phone1", "timestamp": timestamp, "signature": tvm_crypto.sign(timestamp, key)}),
        None,
    )
    assert resp["statusCode"] == 200
    assert json.loads(tvm_crypto.unwrap_and_decrypt(resp["body"], key))["accessKey"] == "ASIAFAKE"


def test_register_duplicate_is_406_with_error_hint(rt):
    _register()
    resp = _register()
    assert resp["statusCode"] == 406
    assert json.loads(resp["body"]) == {"registered": False, "next": "/error"}


def test_register_bad_format_is_400(rt):
    assert _register(username="a b")["statusCode"] == 400


def test_stale_login_is_408(rt):
    _register()
    query, _ = _login_query(timestamp=now_iso(-timedelta(minutes=20)))
    resp = login_handler.handler(_event(query=query), None)
    assert resp["statusCode"] == 408
    assert resp["body"] == "Request Timeout"


def test_bad_signature_is_401_without_detail(rt):
    _register()
    query, _ = _login_query(password="WrongPassword")
    resp = login_handler.handler(_event(query=query), None)
    assert resp["statusCode"] == 401
    assert resp["body"] == "Unauthorized"


@pytest.mark.parametrize("missing", ["uid", "signature", "timestamp"])
def test_gettoken_missing_param_is_400(rt, log_sink, missing):
    query = {"uid": "phone1", "timestamp": now_iso(), "signature": "abc"}
    query.pop(missing)
    resp = get_token_handler.handler(_event(query=query), None)
    assert resp["statusCode"] == 400

    event = log_sink.events()[-1]
    assert event["outcome"] == "bad_request"
    assert missing in event["rejected"]
    assert "error" not in event


def test_wide_event_has_no_secrets(rt, log_sink):
    _register()
    query, password_hash = _login_query()
    login_handler.handler(_event(query=query), None)

    event = log_sink.events()[-1]
    assert event["event"] == "tvm_login"
    assert event["request_id"] == "req-1"
    assert event["outcome"] == "ok"
    assert event["status_code"] == 200
    assert event["username"] == "alice"
    assert event["uid"] == "phone1"
    assert event["schema_version"] == "test"
    assert isinstance(event["duration_ms"], int)
    joined = "\n".join(log_sink.lines)
    assert "Secret1" not in joined
    assert password_hash not in joined
    assert query["signature"] not in joined


def test_unexpected_exception_is_500_and_logged(rt, monkeypatch, log_sink):
    def boom(*_args, **_kwargs):
        raise RuntimeError("store exploded")

    monkeypatch.setattr(rt.machine, "request_device_token", boom)
    resp = get_token_handler.handler(
        _event(query={"uid": "phone1", "timestamp": now_iso(), "signature": "abc"}), None
    )
    assert resp["statusCode"] == 500
    event = log_sink.events()[-1]
    assert event["outcome"] == "internal"
    assert event["error"] == {"type": "RuntimeError", "message": "store exploded"}


def test_runtime_config_error_is_500(monkeypatch, event_log, log_sink):
    monkeypatch.setattr(tvm_runtime, "_runtime", None)
    monkeypatch.setattr(tvm_runtime, "_log", event_log)
    monkeypatch.setenv("TVM_ACCOUNT_ID", "not-an-account")
    resp = register_user_handler.handler(_event(body="username=alice&password=Secret1"), None)
    assert resp["statusCode"] == 500
    assert json.loads(resp["body"]) == {"registered": False, "next": ""}
    assert log_sink.events()[-1]["error"]["type"] == "ConfigError"


def test_request_params_merges_query_and_bodies():
    assert request_params(_event(query={"a": "1"}, body='{"b": "2"}')) == {"a": "1", "b": "2"}
    assert request_params(_event(query={"a": "1"}, body="a=3&c=4")) == {"a": "3", "c": "4"}
    encoded = base64.b64encode(b"uid=phone1").decode()
    assert request_params(_event(body=encoded, base64_body=True)) == {"uid": "phone1"}
    assert request_params(_event(body="[1, 2]", headers={"content-type": "application/json"})) == {}
    assert request_params({"queryStringParameters": None, "body": None}) == {}


def test_endpoint_host_prefers_request_context_and_strips_port():
    assert endpoint_host(_event()) == HOST
    assert endpoint_host({"headers": {"host": "API.Example.com:443"}}) == "api.example.com"
