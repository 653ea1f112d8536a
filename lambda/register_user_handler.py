from __future__ import annotations

from typing import Any

from token_vending import Outcome, VendResult
from tvm_http import endpoint_host, json_response, required_param, status_for
from tvm_runtime import Runtime, handle


def _flow(rt: Runtime, params: dict[str, str], event: dict[str, Any], wide_event: dict[str, Any]) -> VendResult:
    username = required_param(params, "username")
    password = required_param(params, "password")
    endpoint = endpoint_host(event)
    wide_event["username"] = username
    wide_event["endpoint"] = endpoint
    return rt.machine.register_user(username, password, endpoint, trace=wide_event)


def _render(rt: Runtime | None, result: VendResult) -> dict[str, Any]:
    registered = result.outcome is Outcome.OK
    hint = ""
    if rt is not None:
        hint = rt.config.register_success_hint if registered else rt.config.register_error_hint
    return json_response(status_for(result.outcome), {"registered": registered, "next": hint})


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return handle(event, name="tvm_register_user", flow=_flow, render=_render)
