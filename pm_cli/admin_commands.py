from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from typing import Any

from .cli_shared import (
    PM_COGNITO_PASSWORD,
    PM_COGNITO_USERNAME,
    GlobalOpts,
    OpError,
    UsageError,
    _account_session,
    _cf_outputs,
    _env_or_none,
    _print_json,
    _require_str,
    _stack_output_value,
)


@dataclass
class AdminContext:
    session: Any
    stack: str
    _outputs: dict[str, str] = field(default_factory=dict)

    def outputs(self) -> dict[str, str]:
        if self._outputs:
            return self._outputs
        self._outputs = {
            str(o.get("OutputKey", "")).strip(): str(o.get("OutputValue", "")).strip()
            for o in _cf_outputs(self.session, stack=self.stack)
        }
        return self._outputs

    def require_output(self, key: str) -> str:
        v = self.outputs().get(key)
        if v is None:
            raise OpError(f"missing CloudFormation output {key!r} on stack {self.stack!r}")
        return v

    def resolve_user_pool_id(self, override: str | None) -> str:
        if override:
            return override.strip()
        return self.require_output("UserPoolId")

    def resolve_user_pool_client_id(self, override: str | None) -> str:
        if override:
            return override.strip()
        return self.require_output("UserPoolClientId")


def build_admin_context(g: GlobalOpts) -> AdminContext:
    return AdminContext(session=_account_session(), stack=g.stack)


def _resolve_credentials(*, username: str | None, password: str | None) -> tuple[str, str]:
    resolved_username = _require_str(
        username or _env_or_none(PM_COGNITO_USERNAME),
        "username",
        hint=f"--username or env {PM_COGNITO_USERNAME}",
    )
    resolved_password = _require_str(
        password or _env_or_none(PM_COGNITO_PASSWORD),
        "password",
        hint=f"--password or env {PM_COGNITO_PASSWORD}",
    )
    return resolved_username, resolved_password


def cmd_stack_output(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    key = str(getattr(args, "output_key", "") or "").strip()
    if not key:
        outputs = _cf_outputs(ctx.session, stack=g.stack)
        _print_json(outputs, pretty=g.pretty)
        return 0
    v = _stack_output_value(ctx.session, stack=g.stack, key=key)
    if v is None:
        raise OpError(f"output key not found: {key}")
    sys.stdout.write(v + "\n")
    return 0


def cmd_cognito_create_user(args: argparse.Namespace, g: GlobalOpts) -> int:
    """Create a confirmed user with a permanent password.

    Admin-created users skip the pre-sign-up trigger, so the workspace domain
    is set explicitly through ``custom:domain`` when ``--domain`` is given.
    """
    username, password = _resolve_credentials(username=args.username, password=args.password)
    if "@" not in username:
        raise UsageError("username must be an email address")
    ctx = build_admin_context(g)
    user_pool_id = ctx.resolve_user_pool_id(args.user_pool_id)
    c = ctx.session.client("cognito-idp")

    attributes = [
        {"Name": "email", "Value": username},
        {"Name": "email_verified", "Value": "true"},
    ]
    domain = str(getattr(args, "domain", "") or "").strip().lower()
    if domain:
        attributes.append({"Name": "custom:domain", "Value": domain})

    created = True
    try:
        c.admin_create_user(
            UserPoolId=user_pool_id,
            Username=username,
            UserAttributes=attributes,
            MessageAction="SUPPRESS",
        )
    except Exception as e:
        if type(e).__name__ != "UsernameExistsException":
            raise OpError(f"cognito admin-create-user failed: {e}") from e
        created = False

    try:
        c.admin_set_user_password(
            UserPoolId=user_pool_id,
            Username=username,
            Password=password,
            Permanent=True,
        )
    except Exception as e:
        raise OpError(f"cognito admin-set-user-password failed: {e}") from e

    out: dict[str, Any] = {"username": username, "userPoolId": user_pool_id, "created": created}
    if domain:
        out["domain"] = domain
    _print_json(out, pretty=g.pretty)
    return 0


def cmd_cognito_remove_user(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    user_pool_id = ctx.resolve_user_pool_id(args.user_pool_id)
    username = str(args.username or "").strip()
    if not username:
        raise UsageError("username cannot be empty")
    c = ctx.session.client("cognito-idp")
    try:
        c.admin_delete_user(UserPoolId=user_pool_id, Username=username)
    except Exception as e:
        raise OpError(f"cognito admin-delete-user failed: {e}") from e
    _print_json({"username": username, "userPoolId": user_pool_id, "removed": True}, pretty=g.pretty)
    return 0


def cmd_cognito_id_token(args: argparse.Namespace, g: GlobalOpts) -> int:
    username, password = _resolve_credentials(username=args.username, password=args.password)
    ctx = build_admin_context(g)
    client_id = ctx.resolve_user_pool_client_id(args.client_id)
    c = ctx.session.client("cognito-idp")
    try:
        resp = c.initiate_auth(
            ClientId=client_id,
            AuthFlow="USER_PASSWORD_AUTH",
            AuthParameters={"USERNAME": username, "PASSWORD": password},
        )
    except Exception as e:
        raise OpError(f"cognito initiate-auth failed: {e}") from e
    auth = resp.get("AuthenticationResult")
    auth = auth if isinstance(auth, dict) else {}

    if args.json:
        out = {
            "idToken": auth.get("IdToken"),
            "accessToken": auth.get("AccessToken"),
            "refreshToken": auth.get("RefreshToken"),
            "expiresIn": auth.get("ExpiresIn"),
            "tokenType": auth.get("TokenType"),
        }
        _print_json(out, pretty=g.pretty)
        return 0

    tok = str(auth.get("IdToken") or "").strip()
    if not tok:
        raise OpError("missing IdToken in Cognito response")
    sys.stdout.write(tok + "\n")
    return 0
