from __future__ import annotations

import argparse
import contextlib
import io
import os
import sys
from typing import Any

import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from .. import __version__
from ..admin_commands import (
    cmd_count_devices,
    cmd_count_users,
    cmd_delete_device,
    cmd_delete_user,
    cmd_describe_device,
    cmd_describe_user,
    cmd_domains,
    cmd_list_devices,
    cmd_list_users,
)
from ..cli_shared import (
    DEFAULT_APP_NAME,
    DEFAULT_DOMAIN_PREFIX,
    TVM_APP_NAME,
    TVM_DOMAIN_PREFIX,
    TVM_ENDPOINT,
    TVM_KEY_CACHE,
    TVM_PASSWORD,
    TVM_USERNAME,
    GlobalOpts,
    OpError,
    UsageError,
    _eprint,
    _env_or_none,
)
from ..client_commands import (
    cmd_decrypt,
    cmd_login,
    cmd_password_hash,
    cmd_register,
    cmd_sign,
    cmd_token,
)


class _InsertionOrderTyperGroup(typer.core.TyperGroup):
    def list_commands(self, ctx: click.Context) -> list[str]:
        names = list(self.commands)
        lead = [n for n in ("domains",) if n in names]
        head = [n for n in names if n not in set(lead)]
        return lead + head


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _root_help_text(*, root_app: typer.Typer, prog_name: str) -> str:
    buf = io.StringIO()
    try:
        with contextlib.redirect_stdout(buf):
            try:
                root_app(args=["--help"], prog_name=prog_name, standalone_mode=False)
            except (typer.Exit, click.ClickException):
                pass
    except Exception:
        return ""
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: click.Context | None = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, click.Context):
        try:
            help_text = str(ctx.get_help() or "").strip()
        except Exception:
            help_text = ""
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tvm {__version__}")
        raise typer.Exit(code=0)


def _apply_global_env(args: argparse.Namespace) -> GlobalOpts:
    if getattr(args, "profile", None):
        os.environ["AWS_PROFILE"] = str(args.profile).strip()
    if getattr(args, "region", None):
        os.environ["AWS_REGION"] = str(args.region).strip()
    app_name = (getattr(args, "app_name", None) or _env_or_none(TVM_APP_NAME) or DEFAULT_APP_NAME).strip().lower()
    if not all(c.isalnum() or c in "_-." for c in app_name):
        raise UsageError(f"invalid app name: {app_name!r}")
    domain_prefix = (
        getattr(args, "domain_prefix", None) or _env_or_none(TVM_DOMAIN_PREFIX) or DEFAULT_DOMAIN_PREFIX
    ).strip()
    return GlobalOpts(
        app_name=app_name,
        domain_prefix=domain_prefix,
        pretty=not bool(getattr(args, "plain_json", False)),
        quiet=bool(getattr(args, "quiet", False)),
        sdb_endpoint=str(getattr(args, "sdb_endpoint", None) or _env_or_none("TVM_SDB_ENDPOINT") or "").strip(),
    )


app = typer.Typer(
    name="tvm",
    help="Token vending machine client: register, log in a device, fetch credentials.",
    no_args_is_help=True,
    add_completion=False,
)

admin_app = typer.Typer(
    name="tvm-admin",
    help="Token vending machine operator commands over the users and devices domains.",
    no_args_is_help=True,
    add_completion=False,
    cls=_InsertionOrderTyperGroup,
)


@app.callback()
def app_callback_client(
    ctx: typer.Context,
    app_name: str | None = typer.Option(
        None, "--app-name", help=f"Application name folded into password hashes (or env {TVM_APP_NAME})"
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    try:
        g = _apply_global_env(_namespace(app_name=app_name, plain_json=plain_json, quiet=quiet))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    ctx.obj = {"g": g}


@admin_app.callback()
def app_callback_admin(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="AWS CLI profile name (sets AWS_PROFILE)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    app_name: str | None = typer.Option(None, "--app-name", help=f"Application name (or env {TVM_APP_NAME})"),
    domain_prefix: str | None = typer.Option(
        None, "--domain-prefix", help=f"SimpleDB domain prefix (or env {TVM_DOMAIN_PREFIX})"
    ),
    sdb_endpoint: str | None = typer.Option(None, "--sdb-endpoint", help="SimpleDB endpoint override"),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    ns = _namespace(
        profile=profile,
        region=region,
        app_name=app_name,
        domain_prefix=domain_prefix,
        sdb_endpoint=sdb_endpoint,
        plain_json=plain_json,
        quiet=quiet,
    )
    try:
        g = _apply_global_env(ns)
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    ctx.obj = {"g": g}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    if isinstance(ctx.obj, dict) and isinstance(ctx.obj.get("g"), GlobalOpts):
        return ctx.obj["g"]
    try:
        return _apply_global_env(_namespace())
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


def _invoke_from_locals(
    ctx: typer.Context,
    func: Any,
    local_vars: dict[str, Any],
    *,
    drop: tuple[str, ...] = ("ctx",),
) -> None:
    _invoke(ctx, func, **{k: v for k, v in local_vars.items() if k not in drop})


_ENDPOINT_HELP = f"TVM base URL, e.g. https://abc.execute-api.us-east-1.amazonaws.com/prod (or env {TVM_ENDPOINT})"
_SALT_HOST_HELP = "Host folded into the password hash (default: the endpoint host)"


@admin_app.command("domains", help="Show the users/devices domain names and whether they exist.")
def admin_domains(
    ctx: typer.Context,
    create: bool = typer.Option(False, "--create", help="Create missing domains"),
) -> None:
    _invoke_from_locals(ctx, cmd_domains, locals())


@admin_app.command("list-users", help="List registered usernames (one page).")
def admin_list_users(
    ctx: typer.Context,
    next_token: str | None = typer.Option(None, "--next-token", help="Resume an earlier listing"),
) -> None:
    _invoke_from_locals(ctx, cmd_list_users, locals())


@admin_app.command("describe-user", help="Show a user's id, enabled flag and bound devices (never the hash).")
def admin_describe_user(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Username"),
) -> None:
    _invoke_from_locals(ctx, cmd_describe_user, locals())


@admin_app.command("delete-user", help="Delete a user item.")
def admin_delete_user(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Username"),
    with_devices: bool = typer.Option(False, "--with-devices", help="Also delete devices bound to the user"),
) -> None:
    _invoke_from_locals(ctx, cmd_delete_user, locals())


@admin_app.command("count-users", help="Count items in the users domain.")
def admin_count_users(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_count_users)


@admin_app.command("list-devices", help="List registered device uids.")
def admin_list_devices(
    ctx: typer.Context,
    next_token: str | None = typer.Option(None, "--next-token", help="Resume an earlier listing"),
) -> None:
    _invoke_from_locals(ctx, cmd_list_devices, locals())


@admin_app.command("describe-device", help="Show a device's owner (never the key).")
def admin_describe_device(
    ctx: typer.Context,
    uid: str = typer.Argument(..., help="Device uid"),
) -> None:
    _invoke_from_locals(ctx, cmd_describe_device, locals())


@admin_app.command("delete-device", help="Delete a device item; the next login re-binds it.")
def admin_delete_device(
    ctx: typer.Context,
    uid: str = typer.Argument(..., help="Device uid"),
) -> None:
    _invoke_from_locals(ctx, cmd_delete_device, locals())


@admin_app.command("count-devices", help="Count items in the devices domain.")
def admin_count_devices(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_count_devices)


@app.command("sign", help="HMAC-SHA256 sign content (default: the current UTC timestamp).")
def client_sign(
    ctx: typer.Context,
    key: str = typer.Option(..., "--key", help="Signing key (device key or password hash)"),
    content: str | None = typer.Option(None, "--content", help="Content to sign"),
) -> None:
    _invoke_from_locals(ctx, cmd_sign, locals())


@app.command("password-hash", help="Compute the salted password hash the server stores.")
def client_password_hash(
    ctx: typer.Context,
    username: str | None = typer.Option(None, "--username", help=f"Username (or env {TVM_USERNAME})"),
    password: str | None = typer.Option(None, "--password", help=f"Password (or env {TVM_PASSWORD})"),
    endpoint: str | None = typer.Option(None, "--endpoint", help=_ENDPOINT_HELP),
    salt_host: str | None = typer.Option(None, "--salt-host", help=_SALT_HOST_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_password_hash, locals())


@app.command("register", help="Register a new user.")
def client_register(
    ctx: typer.Context,
    username: str | None = typer.Option(None, "--username", help=f"Username (or env {TVM_USERNAME})"),
    password: str | None = typer.Option(None, "--password", help=f"Password (or env {TVM_PASSWORD})"),
    endpoint: str | None = typer.Option(None, "--endpoint", help=_ENDPOINT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_register, locals())


@app.command("login", help="Log in, bind this device and cache its key.")
def client_login(
    ctx: typer.Context,
    username: str | None = typer.Option(None, "--username", help=f"Username (or env {TVM_USERNAME})"),
    password: str | None = typer.Option(None, "--password", help=f"Password (or env {TVM_PASSWORD})"),
    uid: str | None = typer.Option(None, "--uid", help="Device uid (default: env TVM_DEVICE_UID or a new random id)"),
    endpoint: str | None = typer.Option(None, "--endpoint", help=_ENDPOINT_HELP),
    salt_host: str | None = typer.Option(None, "--salt-host", help=_SALT_HOST_HELP),
    key_cache: str | None = typer.Option(
        None, "--key-cache", help=f"Where to store the device key (default: .tvm/device.json; env {TVM_KEY_CACHE})"
    ),
    show_key: bool = typer.Option(False, "--show-key", help="Also print the device key"),
) -> None:
    _invoke_from_locals(ctx, cmd_login, locals())


@app.command("token", help="Fetch temporary AWS credentials for a logged-in device.")
def client_token(
    ctx: typer.Context,
    uid: str | None = typer.Option(None, "--uid", help="Device uid (default: from the key cache)"),
    key: str | None = typer.Option(None, "--key", help="Device key (default: from the key cache)"),
    endpoint: str | None = typer.Option(None, "--endpoint", help=_ENDPOINT_HELP),
    key_cache: str | None = typer.Option(None, "--key-cache", help=f"Device key cache path (env {TVM_KEY_CACHE})"),
    credential_process: bool = typer.Option(
        False, "--credential-process", help="Print AWS credential_process JSON instead"
    ),
) -> None:
    _invoke_from_locals(ctx, cmd_token, locals())


@app.command("decrypt", help="Decrypt a wrapped response body with a key.")
def client_decrypt(
    ctx: typer.Context,
    payload: str = typer.Argument(..., help="Base64 IV+ciphertext"),
    key: str = typer.Option(..., "--key", help="Device key or password hash"),
) -> None:
    _invoke_from_locals(ctx, cmd_decrypt, locals())


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    # Discover and load .env without overriding already-exported values.
    load_dotenv()
    try:
        result = root_app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        if isinstance(e, click.UsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(
            message=str(e),
            fallback_help=_root_help_text(root_app=root_app, prog_name=prog_name),
        )
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


def main_client(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=app, prog_name="tvm", argv=argv)


def main_admin(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=admin_app, prog_name="tvm-admin", argv=argv)