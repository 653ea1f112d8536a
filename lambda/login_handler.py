from __future__ import annotations

from typing import Any

from token_vending import VendResult
from tvm_http import required_param
from tvm_runtime import Runtime, handle


def _flow(rt: Runtime, params: dict[str, str], _event: dict[str, Any], wide_event: dict[str, Any]) -> VendResult:
    username = required_param(params, "username")
    timestamp = required_param(params, "timestamp")
    signature = required_param(params, "signature")
    uid = required_param(params, "uid")
    wide_event["username"] = username
    wide_event["uid"] = uid
    return rt.machine.login(username, uid, signature, timestamp, trace=wide_event)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return handle(event, name="tvm_login", flow=_flow)
