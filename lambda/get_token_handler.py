from __future__ import annotations

from typing import Any

from token_vending import VendResult
from tvm_http import required_param
from tvm_runtime import Runtime, handle


def _flow(rt: Runtime, params: dict[str, str], _event: dict[str, Any], wide_event: dict[str, Any]) -> VendResult:
    uid = required_param(params, "uid")
    signature = required_param(params, "signature")
    timestamp = required_param(params, "timestamp")
    wide_event["uid"] = uid
    return rt.machine.request_device_token(uid, signature, timestamp, trace=wide_event)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return handle(event, name="tvm_get_token", flow=_flow)
