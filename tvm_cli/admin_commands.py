from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from device_directory import DeviceDirectory
from identity_store import IdentityStore
from tvm_config import DEFAULT_SCHEMA_VERSION, domain_names
from tvm_log import EventLog
from user_directory import UserDirectory

from .cli_shared import (
    GlobalOpts,
    OpError,
    UsageError,
    _account_session,
    _eprint,
    _print_json,
)

_AWS_ERRORS = (BotoCoreError, ClientError)


@dataclass
class AdminContext:
    session: Any
    store: IdentityStore
    users: UserDirectory
    devices: DeviceDirectory


def _stderr_log(g: GlobalOpts) -> EventLog:
    def sink(line: str) -> None:
        if not g.quiet:
            _eprint(line)

    return EventLog(schema_version=DEFAULT_SCHEMA_VERSION, sink=sink)


def _sdb_client(session: Any, g: GlobalOpts) -> Any:
    if g.sdb_endpoint:
        endpoint = g.sdb_endpoint if "://" in g.sdb_endpoint else f"https://{g.sdb_endpoint}"
        return session.client("sdb", endpoint_url=endpoint)
    return session.client("sdb")


def build_admin_context(g: GlobalOpts) -> AdminContext:
    session = _account_session()
    store = IdentityStore(_sdb_client(session, g))
    users_domain, devices_domain = domain_names(g.domain_prefix, g.app_name)
    log = _stderr_log(g)
    return AdminContext(
        session=session,
        store=store,
        users=UserDirectory(store, domain=users_domain, app_name=g.app_name, log=log),
        devices=DeviceDirectory(store, domain=devices_domain, log=log),
    )


def _required_arg(args: argparse.Namespace, name: str) -> str:
    v = str(getattr(args, name, "") or "").strip()
    if not v:
        raise UsageError(f"{name} cannot be empty")
    return v


def cmd_domains(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    try:
        if args.create:
            ctx.users.ensure_domain()
            ctx.devices.ensure_domain()
        existing = set(ctx.store.list_domains())
    except _AWS_ERRORS as e:
        raise OpError(f"sdb list-domains failed: {e}") from e
    _print_json(
        {
            "users": {"domain": ctx.users.domain, "exists": ctx.users.domain in existing},
            "devices": {"domain": ctx.devices.domain, "exists": ctx.devices.domain in existing},
        },
        pretty=g.pretty,
    )
    return 0


def cmd_list_users(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    try:
        names = ctx.users.list(next_token=str(args.next_token or ""))
    except _AWS_ERRORS as e:
        raise OpError(f"sdb select on {ctx.users.domain} failed: {e}") from e
    _print_json({"domain": ctx.users.domain, "usernames": names}, pretty=g.pretty)
    return 0


def cmd_describe_user(args: argparse.Namespace, g: GlobalOpts) -> int:
    username = _required_arg(args, "username")
    ctx = build_admin_context(g)
    try:
        user = ctx.users.describe(username)
        devices = ctx.store.find_item_names(ctx.devices.domain, "userid", user["userid"]) if user else []
    except _AWS_ERRORS as e:
        raise OpError(f"sdb lookup of user {username!r} failed: {e}") from e
    if not user:
        raise OpError(f"user not found: {username}")
    _print_json({**user, "devices": devices}, pretty=g.pretty)
    return 0


def cmd_delete_user(args: argparse.Namespace, g: GlobalOpts) -> int:
    username = _required_arg(args, "username")
    ctx = build_admin_context(g)
    removed_devices: list[str] = []
    try:
        userid = ctx.users.get_userid(username)
        if userid is None:
            raise OpError(f"user not found: {username}")
        if args.with_devices:
            removed_devices = ctx.store.find_item_names(ctx.devices.domain, "userid", userid)
            for uid in removed_devices:
                ctx.devices.delete(uid)
        ctx.users.delete(username)
    except _AWS_ERRORS as e:
        raise OpError(f"sdb delete of user {username!r} failed: {e}") from e
    _print_json({"username": username, "removed": True, "removedDevices": removed_devices}, pretty=g.pretty)
    return 0


def cmd_count_users(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    ctx = build_admin_context(g)
    try:
        count = ctx.users.count()
    except _AWS_ERRORS as e:
        raise OpError(f"sdb count on {ctx.users.domain} failed: {e}") from e
    _print_json({"domain": ctx.users.domain, "count": count}, pretty=g.pretty)
    return 0


def cmd_list_devices(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    try:
        uids = ctx.devices.list(next_token=str(args.next_token or ""))
    except _AWS_ERRORS as e:
        raise OpError(f"sdb select on {ctx.devices.domain} failed: {e}") from e
    _print_json({"domain": ctx.devices.domain, "uids": uids}, pretty=g.pretty)
    return 0


def cmd_describe_device(args: argparse.Namespace, g: GlobalOpts) -> int:
    uid = _required_arg(args, "uid")
    ctx = build_admin_context(g)
    try:
        device = ctx.devices.describe(uid)
        owner = ctx.users.username_for_userid(device.get("userid", "")) if device else None
    except _AWS_ERRORS as e:
        raise OpError(f"sdb lookup of device {uid!r} failed: {e}") from e
    if not device:
        raise OpError(f"device not found: {uid}")
    # The device key is a secret shared with the device; never print it.
    _print_json({**device, "username": owner or ""}, pretty=g.pretty)
    return 0


def cmd_delete_device(args: argparse.Namespace, g: GlobalOpts) -> int:
    uid = _required_arg(args, "uid")
    ctx = build_admin_context(g)
    try:
        if not ctx.devices.get_device(uid):
            raise OpError(f"device not found: {uid}")
        ctx.devices.delete(uid)
    except _AWS_ERRORS as e:
        raise OpError(f"sdb delete of device {uid!r} failed: {e}") from e
    _print_json({"uid": uid, "removed": True}, pretty=g.pretty)
    return 0


def cmd_count_devices(args: argparse.Namespace, g: GlobalOpts) -> int:
    del args
    ctx = build_admin_context(g)
    try:
        count = ctx.devices.count()
    except _AWS_ERRORS as e:
        raise OpError(f"sdb count on {ctx.devices.domain} failed: {e}") from e
    _print_json({"domain": ctx.devices.domain, "count": count}, pretty=g.pretty)
    return 0
