"""Cognito PRE_SIGN_UP trigger: only allow sign-up from configured email domains.

Raising from the trigger makes Cognito reject the sign-up and surface the
exception message to the client.
"""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Any


ALLOWED_EMAIL_DOMAINS = [
    d.strip().lower() for d in os.environ.get("ALLOWED_EMAIL_DOMAINS", "").split(",") if d.strip()
]


class SignupRejected(Exception):
    pass


def _email_domain(email: str | None) -> str:
    if not email:
        raise SignupRejected("Email address is required for registration.")
    at = email.rfind("@")
    if at == -1 or at == len(email) - 1:
        raise SignupRejected("A valid business email address is required.")
    return email[at + 1:].lower()


def check_email(email: str | None) -> str:
    if not ALLOWED_EMAIL_DOMAINS:
        raise SignupRejected(
            "No allowed email domains configured for pre-signup validation. "
            "Set ALLOWED_EMAIL_DOMAINS env variable."
        )
    domain = _email_domain(email)
    if domain not in ALLOWED_EMAIL_DOMAINS:
        raise SignupRejected(
            f'The email domain "{domain}" is not enabled for this workspace. '
            "Please contact your administrator."
        )
    return domain


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    attrs = ((event.get("request") or {}).get("userAttributes") or {})
    log: dict[str, Any] = {
        "event": "pm_pre_signup",
        "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "trigger_source": str(event.get("triggerSource") or ""),
        "user_pool_id": str(event.get("userPoolId") or ""),
    }
    try:
        log["email_domain"] = check_email(attrs.get("email"))
        log["outcome"] = "allowed"
        return event
    except SignupRejected as e:
        log["outcome"] = "rejected"
        log["error"] = {"type": type(e).__name__, "message": str(e)}
        raise
    finally:
        log["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(log, separators=(",", ":"), sort_keys=True))
