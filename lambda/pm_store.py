"""Single-table data access for tasks, tickets and user profiles.

Every entity is one item addressed by (domain, entity type, id); see keys.py
for the layout. Updates are whole-item read-modify-write with shallow-merge
semantics: a field present in the patch replaces the stored field, so callers
that want to append to ``linkedTasks`` must send the full new list. A field
whose patch value is None is left as stored.

Writes are unguarded by default. Two concurrent updates of the same entity can
interleave and the second write wins. Passing ``conditional_writes=True``
makes creates fail if the item already exists and makes updates fail if the
stored ``updatedAt`` moved since the read; both surface as ConflictError.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from id58 import entity_id
from item_codec import from_ddb
from item_codec import to_ddb
from keys import ENTITY_TASK
from keys import ENTITY_TICKET
from keys import ENTITY_USER
from keys import GSI1_INDEX
from keys import META_SK
from keys import domain_type_gsi1pk
from keys import entity_pk
from keys import item_key

TASK_STATUSES = ("backlog", "in-progress", "completed")
TICKET_STATUSES = ("new", "in-progress", "done")
TICKET_TYPES = ("bug", "feature")
ACTIVITY_TYPES = ("comment", "status_change", "assignment", "hours_update", "created")
USER_ROLES = ("admin", "member")

DEFAULT_TASK_STATUS = "backlog"
DEFAULT_TICKET_STATUS = "new"
DEFAULT_TICKET_TYPE = "feature"
DEFAULT_USER_ROLE = "member"
UNASSIGNED = "Unassigned"

_ID_PREFIX = {ENTITY_TASK: "task", ENTITY_TICKET: "ticket", ENTITY_USER: "user"}


class StoreError(Exception):
    pass


class NotFoundError(StoreError):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.lower()} not found: {entity_id}")


class DuplicateEmailError(StoreError):
    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"user with this email already exists: {email}")


class ConflictError(StoreError):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.lower()} changed concurrently: {entity_id}")


class AlreadyLinkedError(StoreError):
    def __init__(self, task_id: str, linked_task_id: str) -> None:
        self.task_id = task_id
        self.linked_task_id = linked_task_id
        super().__init__(f"task {task_id} is already linked to {linked_task_id}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(dt: datetime) -> str:
    # Fixed-format UTC timestamp for lexicographic ordering.
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _millis(dt: datetime) -> int:
    return int(dt.timestamp()) * 1000 + dt.microsecond // 1000


def _num_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _present(updates: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in (updates or {}).items() if v is not None}


def normalize_ticket(ticket: dict[str, Any]) -> dict[str, Any]:
    # Tickets written before "type" existed read back as features.
    out = dict(ticket)
    if not out.get("type"):
        out["type"] = DEFAULT_TICKET_TYPE
    return out


class SingleTableStore:
    def __init__(
        self,
        table: Any,
        *,
        conditional_writes: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if table is None:
            raise ValueError("SingleTableStore requires a table")
        self.table = table
        self.conditional_writes = bool(conditional_writes)
        self._clock = clock

    # ------------------------------------------------------------------
    # Item-level primitives
    # ------------------------------------------------------------------

    def _get_data(self, entity_type: str, domain: str, eid: str) -> dict[str, Any] | None:
        resp = self.table.get_item(Key=item_key(domain, entity_type, eid))
        item = resp.get("Item") if isinstance(resp, dict) else None
        if not item:
            return None
        data = item.get("data")
        return from_ddb(data) if isinstance(data, dict) else None

    def _query_data(self, entity_type: str, domain: str) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {
                "IndexName": GSI1_INDEX,
                "KeyConditionExpression": Key("GSI1PK").eq(domain_type_gsi1pk(domain, entity_type)),
            }
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            page = self.table.query(**kwargs)
            for item in page.get("Items", []) or []:
                if not isinstance(item, dict) or not isinstance(item.get("data"), dict):
                    continue
                out.append(from_ddb(item["data"]))
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return out

    def _put_data(
        self,
        entity_type: str,
        domain: str,
        eid: str,
        data: dict[str, Any],
        *,
        expected_updated_at: str | None = None,
    ) -> dict[str, Any]:
        item = {
            "PK": entity_pk(domain, entity_type, eid),
            "SK": META_SK,
            "GSI1PK": domain_type_gsi1pk(domain, entity_type),
            "GSI1SK": data["createdAt"],
            "entityType": entity_type,
            "domain": domain,
            "data": to_ddb(data),
            "createdAt": data["createdAt"],
            "updatedAt": data["updatedAt"],
        }
        kwargs: dict[str, Any] = {"Item": item}
        if self.conditional_writes:
            if expected_updated_at is None:
                kwargs["ConditionExpression"] = Attr("PK").not_exists()
            else:
                kwargs["ConditionExpression"] = Attr("updatedAt").eq(expected_updated_at)
        try:
            self.table.put_item(**kwargs)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code") or "")
            if self.conditional_writes and code == "ConditionalCheckFailedException":
                raise ConflictError(entity_type, eid) from e
            raise
        return from_ddb(item["data"])

    def _delete(self, entity_type: str, domain: str, eid: str) -> None:
        self.table.delete_item(Key=item_key(domain, entity_type, eid))

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def list_tasks(self, domain: str) -> list[dict[str, Any]]:
        return self._query_data(ENTITY_TASK, domain)

    def get_task(self, domain: str, task_id: str) -> dict[str, Any] | None:
        return self._get_data(ENTITY_TASK, domain, task_id)

    def create_task(self, domain: str, fields: dict[str, Any], created_by: str) -> dict[str, Any]:
        task_id = entity_id(_ID_PREFIX[ENTITY_TASK])
        now = iso_timestamp(self._now())
        task: dict[str, Any] = {
            "id": task_id,
            "title": fields.get("title") or "",
            "description": fields.get("description") or "",
            "status": fields.get("status") or DEFAULT_TASK_STATUS,
            "activities": [
                {
                    "id": f"{task_id}-created",
                    "type": "created",
                    "text": "Task created",
                    "author": created_by,
                    "timestamp": now,
                }
            ],
            "hoursSpent": fields.get("hoursSpent") or 0,
            "hoursExpected": fields.get("hoursExpected") or 0,
            "assignedTo": fields.get("assignedTo") or "",
            "linkedTasks": list(fields.get("linkedTasks") or []),
            "domain": domain,
            "createdAt": now,
            "updatedAt": now,
            "createdBy": created_by,
        }
        for optional in ("dueDate", "startDate"):
            if fields.get(optional):
                task[optional] = fields[optional]
        return self._put_data(ENTITY_TASK, domain, task_id, task)

    def update_task(
        self,
        domain: str,
        task_id: str,
        updates: dict[str, Any],
        updated_by: str,
    ) -> dict[str, Any]:
        existing = self.get_task(domain, task_id)
        if existing is None:
            raise NotFoundError(ENTITY_TASK, task_id)

        updates = _present(updates)
        moment = self._now()
        now = iso_timestamp(moment)
        new_activities = diff_task_activities(
            task_id=task_id,
            existing=existing,
            updates=updates,
            author=updated_by,
            timestamp=now,
            millis=_millis(moment),
        )

        updated = {
            **existing,
            **updates,
            "id": task_id,
            "domain": domain,
            "createdAt": existing["createdAt"],
            "createdBy": existing.get("createdBy", ""),
            "activities": list(existing.get("activities") or []) + new_activities,
            "updatedAt": now,
        }
        return self._put_data(
            ENTITY_TASK,
            domain,
            task_id,
            updated,
            expected_updated_at=existing.get("updatedAt", ""),
        )

    def delete_task(self, domain: str, task_id: str) -> None:
        self._delete(ENTITY_TASK, domain, task_id)

    def add_activity(self, domain: str, task_id: str, activity: dict[str, Any]) -> dict[str, Any]:
        """Append one activity to a task's log and return the updated task.

        ``activity`` carries ``type``, ``text``, ``author`` and optionally
        ``metadata``; the id and timestamp are always assigned here.
        """
        task = self.get_task(domain, task_id)
        if task is None:
            raise NotFoundError(ENTITY_TASK, task_id)

        moment = self._now()
        now = iso_timestamp(moment)
        new_activity = {
            **activity,
            "id": f"{task_id}-{_millis(moment)}",
            "timestamp": now,
        }
        updated = {
            **task,
            "activities": list(task.get("activities") or []) + [new_activity],
            "updatedAt": now,
        }
        return self._put_data(
            ENTITY_TASK,
            domain,
            task_id,
            updated,
            expected_updated_at=task.get("updatedAt", ""),
        )

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    def list_tickets(self, domain: str) -> list[dict[str, Any]]:
        return [normalize_ticket(t) for t in self._query_data(ENTITY_TICKET, domain)]

    def get_ticket(self, domain: str, ticket_id: str) -> dict[str, Any] | None:
        ticket = self._get_data(ENTITY_TICKET, domain, ticket_id)
        return normalize_ticket(ticket) if ticket is not None else None

    def create_ticket(self, domain: str, fields: dict[str, Any], created_by: str) -> dict[str, Any]:
        ticket_id = entity_id(_ID_PREFIX[ENTITY_TICKET])
        now = iso_timestamp(self._now())
        ticket: dict[str, Any] = {
            "id": ticket_id,
            "title": fields.get("title") or "",
            "description": fields.get("description") or "",
            "status": fields.get("status") or DEFAULT_TICKET_STATUS,
            "type": fields.get("type") or DEFAULT_TICKET_TYPE,
            "domain": domain,
            "createdAt": now,
            "updatedAt": now,
            "createdBy": created_by,
        }
        if fields.get("assignedTo") is not None:
            ticket["assignedTo"] = fields["assignedTo"]
        return self._put_data(ENTITY_TICKET, domain, ticket_id, ticket)

    def update_ticket(
        self,
        domain: str,
        ticket_id: str,
        updates: dict[str, Any],
        updated_by: str,
    ) -> dict[str, Any]:
        existing = self.get_ticket(domain, ticket_id)
        if existing is None:
            raise NotFoundError(ENTITY_TICKET, ticket_id)

        updates = _present(updates)
        now = iso_timestamp(self._now())
        updated = {
            **existing,
            **updates,
            "id": ticket_id,
            "domain": domain,
            "type": updates.get("type") or existing.get("type") or DEFAULT_TICKET_TYPE,
            "createdAt": existing["createdAt"],
            "createdBy": existing.get("createdBy", ""),
            "updatedAt": now,
        }
        return self._put_data(
            ENTITY_TICKET,
            domain,
            ticket_id,
            updated,
            expected_updated_at=existing.get("updatedAt", ""),
        )

    def delete_ticket(self, domain: str, ticket_id: str) -> None:
        self._delete(ENTITY_TICKET, domain, ticket_id)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def list_users(self, domain: str) -> list[dict[str, Any]]:
        return self._query_data(ENTITY_USER, domain)

    def get_user(self, domain: str, user_id: str) -> dict[str, Any] | None:
        return self._get_data(ENTITY_USER, domain, user_id)

    def get_user_by_email(self, domain: str, email: str) -> dict[str, Any] | None:
        needle = str(email or "").lower()
        for user in self.list_users(domain):
            if str(user.get("email") or "").lower() == needle:
                return user
        return None

    def create_user(self, domain: str, fields: dict[str, Any]) -> dict[str, Any]:
        # Check-then-act: two concurrent creates for one email can both pass.
        email = str(fields.get("email") or "")
        if self.get_user_by_email(domain, email) is not None:
            raise DuplicateEmailError(email.lower())

        user_id = entity_id(_ID_PREFIX[ENTITY_USER])
        now = iso_timestamp(self._now())
        user = {
            "userId": user_id,
            "email": email.lower(),
            "name": fields.get("name") or "",
            "domain": domain,
            "role": fields.get("role") or DEFAULT_USER_ROLE,
            "createdAt": now,
            "updatedAt": now,
        }
        return self._put_data(ENTITY_USER, domain, user_id, user)

    def update_user(self, domain: str, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        existing = self.get_user(domain, user_id)
        if existing is None:
            raise NotFoundError(ENTITY_USER, user_id)

        allowed = {k: v for k, v in _present(updates).items() if k in ("name", "role")}
        updated = {
            **existing,
            **allowed,
            "userId": user_id,
            "email": existing.get("email", ""),
            "domain": domain,
            "createdAt": existing["createdAt"],
            "updatedAt": iso_timestamp(self._now()),
        }
        return self._put_data(
            ENTITY_USER,
            domain,
            user_id,
            updated,
            expected_updated_at=existing.get("updatedAt", ""),
        )

    def delete_user(self, domain: str, user_id: str) -> None:
        self._delete(ENTITY_USER, domain, user_id)


def diff_task_activities(
    *,
    task_id: str,
    existing: dict[str, Any],
    updates: dict[str, Any],
    author: str,
    timestamp: str,
    millis: int,
) -> list[dict[str, Any]]:
    """Synthesize activity entries for tracked fields that really changed.

    Old values always come from ``existing`` (the stored task). A field that
    is present in ``updates`` with its current value, or with None, produces
    nothing.
    """
    out: list[dict[str, Any]] = []

    def _entry(suffix: str, kind: str, text: str, field: str, old: str, new: str) -> dict[str, Any]:
        return {
            "id": f"{task_id}-{millis}-{suffix}",
            "type": kind,
            "text": text,
            "author": author,
            "timestamp": timestamp,
            "metadata": {"oldValue": old, "newValue": new, "fieldName": field},
        }

    new_status = updates.get("status")
    old_status = existing.get("status")
    if new_status and new_status != old_status:
        out.append(
            _entry(
                "status",
                "status_change",
                f"Status changed from {old_status} to {new_status}",
                "status",
                str(old_status),
                str(new_status),
            )
        )

    if updates.get("assignedTo") is not None and updates["assignedTo"] != existing.get("assignedTo"):
        old_assignee = existing.get("assignedTo") or UNASSIGNED
        new_assignee = updates["assignedTo"] or UNASSIGNED
        out.append(
            _entry(
                "assignment",
                "assignment",
                f"Assigned to {new_assignee}",
                "assignedTo",
                str(old_assignee),
                str(new_assignee),
            )
        )

    for field, suffix, label in (
        ("hoursSpent", "hours-spent", "Hours spent"),
        ("hoursExpected", "hours-expected", "Expected hours"),
    ):
        if field not in updates or updates[field] is None:
            continue
        old = existing.get(field, 0)
        new = updates[field]
        if new == old:
            continue
        out.append(
            _entry(
                suffix,
                "hours_update",
                f"{label} updated from {_num_text(old)} to {_num_text(new)}",
                field,
                _num_text(old),
                _num_text(new),
            )
        )
    return out
