from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Callable

from token_vending import Outcome, TokenVendingMachine, VendResult, build_machine, classify_failure
from tvm_config import DEFAULT_SCHEMA_VERSION, TvmConfig, load_config
from tvm_http import error_response, get_request_id, request_params, response, status_for
from tvm_log import EventLog


@dataclass(frozen=True)
class Runtime:
    config: TvmConfig
    machine: TokenVendingMachine


_log: EventLog | None = None
_runtime: Runtime | None = None


def event_log() -> EventLog:
    global _log
    if _log is None:
        _log = EventLog(schema_version=os.environ.get("SCHEMA_VERSION", DEFAULT_SCHEMA_VERSION))
    return _log


def runtime() -> Runtime:
    """Built once per Lambda process on the first request, then reused."""

    global _runtime
    if _runtime is None:
        config = load_config()
        _runtime = Runtime(config=config, machine=build_machine(config, event_log()))
    return _runtime


Flow = Callable[[Runtime, dict[str, str], dict[str, Any], dict[str, Any]], VendResult]
Render = Callable[[Runtime | None, VendResult], dict[str, Any]]


def default_render(_rt: Runtime | None, result: VendResult) -> dict[str, Any]:
    if result.ok:
        return response(200, result.body)
    return error_response(status_for(result.outcome))


def handle(event: dict[str, Any], *, name: str, flow: Flow, render: Render = default_render) -> dict[str, Any]:
    log = event_log()
    with log.request(name, request_id=get_request_id(event)) as wide_event:
        rt: Runtime | None = None
        try:
            rt = runtime()
            result = flow(rt, request_params(event), event, wide_event)
        except Exception as exc:
            outcome = classify_failure(exc)
            if outcome is Outcome.INTERNAL:
                wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
            else:
                wide_event["rejected"] = str(exc)
            result = VendResult(outcome)
        wide_event["outcome"] = result.outcome.value
        wide_event["status_code"] = status_for(result.outcome)
        return render(rt, result)
