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
    cmd_cognito_create_user,
    cmd_cognito_id_token,
    cmd_cognito_remove_user,
    cmd_stack_output,
)
from ..api_commands import (
    cmd_tasks_comment,
    cmd_tasks_create,
    cmd_tasks_delete,
    cmd_tasks_link,
    cmd_tasks_list,
    cmd_tasks_show,
    cmd_tasks_unlink,
    cmd_tasks_update,
    cmd_tickets_create,
    cmd_tickets_delete,
    cmd_tickets_list,
    cmd_tickets_show,
    cmd_tickets_update,
    cmd_users_create,
    cmd_users_delete,
    cmd_users_list,
    cmd_users_update,
    cmd_whoami,
)
from ..cli_shared import DEFAULT_STACK
from ..cli_shared import PM_API_URL
from ..cli_shared import PM_COGNITO_PASSWORD
from ..cli_shared import PM_COGNITO_USERNAME
from ..cli_shared import PM_ID_TOKEN
from ..cli_shared import PM_STACK
from ..cli_shared import GlobalOpts
from ..cli_shared import OpError
from ..cli_shared import UsageError
from ..cli_shared import _eprint
from ..cli_shared import _env_or_none

TASK_STATUS_HELP = "backlog|in-progress|completed"
TICKET_STATUS_HELP = "new|in-progress|done"


def _bootstrap_env() -> None:
    # Discover and load .env without overriding already-exported values.
    load_dotenv()


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
        typer.echo(f"pm {__version__}")
        raise typer.Exit(code=0)


def _apply_api_global_env(args: argparse.Namespace) -> GlobalOpts:
    return GlobalOpts(
        stack=(_env_or_none(PM_STACK) or DEFAULT_STACK),
        pretty=not bool(getattr(args, "plain_json", False)),
        quiet=bool(getattr(args, "quiet", False)),
        endpoint=str(getattr(args, "endpoint", None) or _env_or_none(PM_API_URL) or "").strip(),
        id_token=str(getattr(args, "id_token", None) or _env_or_none(PM_ID_TOKEN) or "").strip(),
    )


def _apply_admin_global_env(args: argparse.Namespace) -> GlobalOpts:
    if getattr(args, "profile", None):
        os.environ["AWS_PROFILE"] = str(args.profile).strip()
    if getattr(args, "region", None):
        os.environ["AWS_REGION"] = str(args.region).strip()
    # If the user didn't explicitly pass --stack, defer to env.
    stack = (getattr(args, "stack", None) or _env_or_none(PM_STACK) or DEFAULT_STACK).strip()
    return GlobalOpts(
        stack=stack,
        pretty=not bool(getattr(args, "plain_json", False)),
        quiet=bool(getattr(args, "quiet", False)),
    )


app = typer.Typer(
    name="pm",
    help="Project management API client (tasks, tickets, users).",
    no_args_is_help=True,
    add_completion=False,
)

admin_app = typer.Typer(
    name="pm-admin",
    help="Project management control plane (stack outputs, Cognito users).",
    no_args_is_help=True,
    add_completion=False,
)

tasks_app = typer.Typer(help="Tasks and their activity log", no_args_is_help=True)
tickets_app = typer.Typer(help="Bug and feature tickets", no_args_is_help=True)
users_app = typer.Typer(help="Workspace user profiles", no_args_is_help=True)
cognito_app = typer.Typer(help="Cognito user management", no_args_is_help=True)

# API CLI surface.
app.add_typer(tasks_app, name="tasks")
app.add_typer(tickets_app, name="tickets")
app.add_typer(users_app, name="users")

# Admin CLI surface.
admin_app.add_typer(cognito_app, name="cognito")


@app.callback()
def app_callback_api(
    ctx: typer.Context,
    endpoint: str | None = typer.Option(None, "--endpoint", help=f"API base URL (or env {PM_API_URL})"),
    id_token: str | None = typer.Option(None, "--id-token", help=f"Cognito ID token (or env {PM_ID_TOKEN})"),
    json_output: bool = typer.Option(False, "--json", help="Emit raw JSON API responses"),
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
    g = _apply_api_global_env(
        _namespace(endpoint=endpoint, id_token=id_token, plain_json=plain_json, quiet=quiet)
    )
    ctx.obj = {"g": g, "json_output": bool(json_output)}


@admin_app.callback()
def app_callback_admin(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="AWS CLI profile name (sets AWS_PROFILE)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    stack: str | None = typer.Option(
        None,
        "--stack",
        help=f"CloudFormation stack name (default: env {PM_STACK} or {DEFAULT_STACK})",
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
    g = _apply_admin_global_env(
        _namespace(profile=profile, region=region, stack=stack, plain_json=plain_json, quiet=quiet)
    )
    ctx.obj = {"g": g}


def _ctx_obj(ctx: typer.Context) -> dict[str, Any]:
    root = ctx.find_root()
    if isinstance(root.obj, dict):
        return root.obj
    return {}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    g = _ctx_obj(ctx).get("g")
    if isinstance(g, GlobalOpts):
        return g
    return _apply_api_global_env(_namespace())


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


def _invoke_api(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    _invoke(ctx, func, json_output=bool(_ctx_obj(ctx).get("json_output", False)), **kwargs)


# ---------------------------------------------------------------------------
# pm
# ---------------------------------------------------------------------------


@app.command("whoami", help="Show the identity and workspace domain carried by the ID token.")
def whoami(ctx: typer.Context) -> None:
    _invoke(ctx, cmd_whoami)


@tasks_app.command("list", help="List tasks in your workspace. Use 'pm --json' for raw API response.")
def tasks_list(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", help=f"Filter locally by {TASK_STATUS_HELP}"),
) -> None:
    _invoke_api(ctx, cmd_tasks_list, status=status)


@tasks_app.command("show", help="Show one task with its activity log.")
def tasks_show(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    _invoke_api(ctx, cmd_tasks_show, task_id=task_id)


@tasks_app.command("create", help="Create a task.")
def tasks_create(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Task title"),
    description: str | None = typer.Option(None, "--description", help="Task description"),
    status: str | None = typer.Option(None, "--status", help=TASK_STATUS_HELP),
    hours_expected: float | None = typer.Option(None, "--hours-expected", min=0, help="Estimated hours"),
    assigned_to: str | None = typer.Option(None, "--assign", help="Assignee"),
    due_date: str | None = typer.Option(None, "--due", help="Due date (ISO-8601)"),
) -> None:
    _invoke_api(
        ctx,
        cmd_tasks_create,
        title=title,
        description=description,
        status=status,
        hours_expected=hours_expected,
        assigned_to=assigned_to,
        due_date=due_date,
    )


@tasks_app.command("update", help="Update task fields; tracked changes are recorded as activities.")
def tasks_update(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    title: str | None = typer.Option(None, "--title", help="New title"),
    description: str | None = typer.Option(None, "--description", help="New description"),
    status: str | None = typer.Option(None, "--status", help=TASK_STATUS_HELP),
    hours_spent: float | None = typer.Option(None, "--hours-spent", min=0, help="Hours spent so far"),
    hours_expected: float | None = typer.Option(None, "--hours-expected", min=0, help="Estimated hours"),
    assigned_to: str | None = typer.Option(None, "--assign", help="Assignee (empty string to unassign)"),
    due_date: str | None = typer.Option(None, "--due", help="Due date (ISO-8601)"),
    start_date: str | None = typer.Option(None, "--start", help="Start date (ISO-8601)"),
    patch: str | None = typer.Option(None, "--patch", help="Extra fields as a JSON object"),
) -> None:
    _invoke_api(
        ctx,
        cmd_tasks_update,
        task_id=task_id,
        title=title,
        description=description,
        status=status,
        hours_spent=hours_spent,
        hours_expected=hours_expected,
        assigned_to=assigned_to,
        due_date=due_date,
        start_date=start_date,
        patch=patch,
    )


@tasks_app.command("delete", help="Delete a task.")
def tasks_delete(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    _invoke_api(ctx, cmd_tasks_delete, task_id=task_id)


@tasks_app.command("comment", help="Add a comment to a task's activity log.")
def tasks_comment(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    text: str = typer.Argument(..., help="Comment text"),
) -> None:
    _invoke_api(ctx, cmd_tasks_comment, task_id=task_id, text=text)


@tasks_app.command("link", help="Link another task to this one.")
def tasks_link(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    linked_task_id: str = typer.Argument(..., help="Task ID to link"),
) -> None:
    _invoke_api(ctx, cmd_tasks_link, task_id=task_id, linked_task_id=linked_task_id)


@tasks_app.command("unlink", help="Remove a linked task.")
def tasks_unlink(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    linked_task_id: str = typer.Argument(..., help="Linked task ID to remove"),
) -> None:
    _invoke_api(ctx, cmd_tasks_unlink, task_id=task_id, linked_task_id=linked_task_id)


@tickets_app.command("list", help="List tickets in your workspace.")
def tickets_list(ctx: typer.Context) -> None:
    _invoke_api(ctx, cmd_tickets_list)


@tickets_app.command("show", help="Show one ticket.")
def tickets_show(
    ctx: typer.Context,
    ticket_id: str = typer.Argument(..., help="Ticket ID"),
) -> None:
    _invoke_api(ctx, cmd_tickets_show, ticket_id=ticket_id)


@tickets_app.command("create", help="Create a ticket.")
def tickets_create(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Ticket title"),
    description: str | None = typer.Option(None, "--description", help="Ticket description"),
    status: str | None = typer.Option(None, "--status", help=TICKET_STATUS_HELP),
    ticket_type: str | None = typer.Option(None, "--type", help="bug|feature (default feature)"),
    assigned_to: str | None = typer.Option(None, "--assign", help="Assignee"),
) -> None:
    _invoke_api(
        ctx,
        cmd_tickets_create,
        title=title,
        description=description,
        status=status,
        ticket_type=ticket_type,
        assigned_to=assigned_to,
    )


@tickets_app.command("update", help="Update ticket fields.")
def tickets_update(
    ctx: typer.Context,
    ticket_id: str = typer.Argument(..., help="Ticket ID"),
    title: str | None = typer.Option(None, "--title", help="New title"),
    description: str | None = typer.Option(None, "--description", help="New description"),
    status: str | None = typer.Option(None, "--status", help=TICKET_STATUS_HELP),
    ticket_type: str | None = typer.Option(None, "--type", help="bug|feature"),
    assigned_to: str | None = typer.Option(None, "--assign", help="Assignee"),
    patch: str | None = typer.Option(None, "--patch", help="Extra fields as a JSON object"),
) -> None:
    _invoke_api(
        ctx,
        cmd_tickets_update,
        ticket_id=ticket_id,
        title=title,
        description=description,
        status=status,
        ticket_type=ticket_type,
        assigned_to=assigned_to,
        patch=patch,
    )


@tickets_app.command("delete", help="Delete a ticket.")
def tickets_delete(
    ctx: typer.Context,
    ticket_id: str = typer.Argument(..., help="Ticket ID"),
) -> None:
    _invoke_api(ctx, cmd_tickets_delete, ticket_id=ticket_id)


@users_app.command("list", help="List user profiles in your workspace.")
def users_list(ctx: typer.Context) -> None:
    _invoke_api(ctx, cmd_users_list)


@users_app.command("create", help="Create a user profile.")
def users_create(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="Email address (unique per workspace)"),
    name: str = typer.Option(..., "--name", help="Display name"),
    role: str | None = typer.Option(None, "--role", help="admin|member (default member)"),
) -> None:
    _invoke_api(ctx, cmd_users_create, email=email, name=name, role=role)


@users_app.command("update", help="Update a user's name or role.")
def users_update(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User ID"),
    name: str | None = typer.Option(None, "--name", help="Display name"),
    role: str | None = typer.Option(None, "--role", help="admin|member"),
) -> None:
    _invoke_api(ctx, cmd_users_update, user_id=user_id, name=name, role=role)


@users_app.command("delete", help="Delete a user profile.")
def users_delete(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User ID"),
) -> None:
    _invoke_api(ctx, cmd_users_delete, user_id=user_id)


# ---------------------------------------------------------------------------
# pm-admin
# ---------------------------------------------------------------------------


@admin_app.command("stack-output", help="Print CloudFormation stack outputs or a single output value.")
def stack_output(
    ctx: typer.Context,
    output_key: str | None = typer.Argument(None, help="Optional CloudFormation output key"),
) -> None:
    _invoke(ctx, cmd_stack_output, output_key=output_key)


@cognito_app.command("create-user", help="Create (or reset the password of) a confirmed Cognito user.")
def cognito_create_user(
    ctx: typer.Context,
    username: str | None = typer.Option(None, "--username", help=f"Email address (or env {PM_COGNITO_USERNAME})"),
    password: str | None = typer.Option(None, "--password", help=f"Permanent password (or env {PM_COGNITO_PASSWORD})"),
    domain: str | None = typer.Option(None, "--domain", help="Workspace domain stored as custom:domain"),
    user_pool_id: str | None = typer.Option(None, "--user-pool-id", help="Override user pool id (otherwise stack output UserPoolId)"),
) -> None:
    _invoke(
        ctx,
        cmd_cognito_create_user,
        username=username,
        password=password,
        domain=domain,
        user_pool_id=user_pool_id,
    )


@cognito_app.command("remove-user", help="Remove a Cognito user.")
def cognito_remove_user(
    ctx: typer.Context,
    username: str = typer.Argument(...),
    user_pool_id: str | None = typer.Option(None, "--user-pool-id", help="Override user pool id (otherwise stack output UserPoolId)"),
) -> None:
    _invoke(ctx, cmd_cognito_remove_user, username=username, user_pool_id=user_pool_id)


@cognito_app.command("id-token", help="Authenticate a Cognito user and print the ID token.")
def cognito_id_token(
    ctx: typer.Context,
    username: str | None = typer.Option(None, "--username", help=f"Email address (or env {PM_COGNITO_USERNAME})"),
    password: str | None = typer.Option(None, "--password", help=f"Password (or env {PM_COGNITO_PASSWORD})"),
    client_id: str | None = typer.Option(None, "--client-id", help="Override client id (otherwise stack output UserPoolClientId)"),
    json_out: bool = typer.Option(False, "--json", help="Print compact JSON with token fields"),
) -> None:
    _invoke(
        ctx,
        cmd_cognito_id_token,
        username=username,
        password=password,
        client_id=client_id,
        json=json_out,
    )


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    _bootstrap_env()
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


def main(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=app, prog_name="pm", argv=argv)


def main_admin(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=admin_app, prog_name="pm-admin", argv=argv)


if __name__ == "__main__":
    raise SystemExit(main())
