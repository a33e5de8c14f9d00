"""Key construction for the single-table layout.

Every entity's current state lives at one item::

    PK     = DOMAIN#{domain}#{ENTITY}#{id}
    SK     = META
    GSI1PK = DOMAIN#{domain}#TYPE#{ENTITY}
    GSI1SK = createdAt (ISO-8601, sorts as a string)

GSI1 answers "all entities of type X in domain Y" with one query.
"""

from __future__ import annotations

from typing import Any

ENTITY_TASK = "TASK"
ENTITY_TICKET = "TICKET"
ENTITY_SPRINT = "SPRINT"
ENTITY_USER = "USER"
ENTITY_TYPES = {ENTITY_TASK, ENTITY_TICKET, ENTITY_SPRINT, ENTITY_USER}

META_SK = "META"
GSI1_INDEX = "GSI1"
DOMAIN_INDEX = "DomainIndex"


def _require_entity_type(entity_type: str) -> str:
    et = str(entity_type or "").strip().upper()
    if et not in ENTITY_TYPES:
        raise ValueError(f"unknown entity type: {entity_type!r}")
    return et


def entity_pk(domain: str, entity_type: str, entity_id: str) -> str:
    return f"DOMAIN#{domain}#{_require_entity_type(entity_type)}#{entity_id}"


def task_pk(domain: str, task_id: str) -> str:
    return entity_pk(domain, ENTITY_TASK, task_id)


def ticket_pk(domain: str, ticket_id: str) -> str:
    return entity_pk(domain, ENTITY_TICKET, ticket_id)


def sprint_pk(domain: str, sprint_id: str) -> str:
    return entity_pk(domain, ENTITY_SPRINT, sprint_id)


def user_pk(domain: str, user_id: str) -> str:
    return entity_pk(domain, ENTITY_USER, user_id)


def meta_sk() -> str:
    return META_SK


def domain_type_gsi1pk(domain: str, entity_type: str) -> str:
    return f"DOMAIN#{domain}#TYPE#{_require_entity_type(entity_type)}"


def item_key(domain: str, entity_type: str, entity_id: str) -> dict[str, Any]:
    return {"PK": entity_pk(domain, entity_type, entity_id), "SK": META_SK}


def email_host(email: str) -> str:
    # Exactly one "@" is required; anything else yields no domain.
    parts = str(email or "").split("@")
    return parts[1].lower() if len(parts) == 2 else ""
