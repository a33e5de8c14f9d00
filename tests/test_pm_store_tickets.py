import pytest

from keys import ticket_pk
from pm_store import NotFoundError


def test_create_ticket_defaults(store):
    ticket = store.create_ticket("acme", {"title": "Login broken"}, "alice")
    assert ticket["id"].startswith("ticket-")
    assert ticket["status"] == "new"
    assert ticket["type"] == "feature"
    assert ticket["description"] == ""
    assert ticket["createdBy"] == "alice"
    assert "assignedTo" not in ticket


def test_create_ticket_with_type_and_assignee(store):
    ticket = store.create_ticket(
        "acme", {"title": "Crash", "type": "bug", "assignedTo": "bob", "status": "in-progress"}, "alice"
    )
    assert ticket["type"] == "bug"
    assert ticket["assignedTo"] == "bob"
    assert ticket["status"] == "in-progress"


def test_ticket_without_type_reads_back_as_feature(store, table):
    ticket = store.create_ticket("acme", {"title": "legacy"}, "alice")
    del table.items[(ticket_pk("acme", ticket["id"]), "META")]["data"]["type"]

    assert store.get_ticket("acme", ticket["id"])["type"] == "feature"
    assert store.list_tickets("acme")[0]["type"] == "feature"


def test_update_ticket_merges_and_keeps_identity(store):
    ticket = store.create_ticket("acme", {"title": "t", "type": "bug"}, "alice")
    updated = store.update_ticket(
        "acme", ticket["id"], {"status": "done", "id": "ticket-x", "createdBy": "mallory"}, "bob"
    )
    assert updated["status"] == "done"
    assert updated["type"] == "bug"
    assert updated["id"] == ticket["id"]
    assert updated["createdBy"] == "alice"
    assert updated["updatedAt"] > ticket["updatedAt"]


def test_update_ticket_missing_raises(store):
    with pytest.raises(NotFoundError, match="ticket not found"):
        store.update_ticket("acme", "ticket-missing", {"status": "done"}, "bob")


def test_list_and_delete_tickets(store):
    a = store.create_ticket("acme", {"title": "a"}, "u")
    b = store.create_ticket("acme", {"title": "b"}, "u")
    store.create_ticket("globex", {"title": "other"}, "u")

    assert [t["id"] for t in store.list_tickets("acme")] == [a["id"], b["id"]]

    store.delete_ticket("acme", a["id"])
    store.delete_ticket("acme", a["id"])
    assert [t["id"] for t in store.list_tickets("acme")] == [b["id"]]


def test_null_patch_values_leave_ticket_fields_alone(store):
    ticket = store.create_ticket("acme", {"title": "t", "type": "bug", "assignedTo": "bob"}, "alice")
    updated = store.update_ticket(
        "acme", ticket["id"], {"status": None, "title": None, "assignedTo": None, "type": None}, "bob"
    )

    stored = store.get_ticket("acme", ticket["id"])
    assert stored == updated
    assert stored["status"] == "new"
    assert stored["title"] == "t"
    assert stored["type"] == "bug"
    assert stored["assignedTo"] == "bob"
