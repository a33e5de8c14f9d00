import pytest
from botocore.exceptions import ClientError

from conftest import FakeTable
from keys import task_pk
from pm_store import ConflictError
from pm_store import SingleTableStore


def _store(clock, table=None):
    return SingleTableStore(table or FakeTable(), conditional_writes=True, clock=clock)


def test_unguarded_store_sends_no_condition(store, table):
    store.create_task("acme", {"title": "t"}, "alice")
    assert table.put_calls[-1]["ConditionExpression"] is None


def test_create_uses_attribute_not_exists(clock):
    table = FakeTable()
    store = _store(clock, table)
    store.create_task("acme", {"title": "t"}, "alice")

    expr = table.put_calls[-1]["ConditionExpression"].get_expression()
    assert expr["operator"] == "attribute_not_exists"
    assert expr["values"][0].name == "PK"


def test_update_is_guarded_by_updated_at(clock):
    table = FakeTable()
    store = _store(clock, table)
    task = store.create_task("acme", {"title": "t"}, "alice")
    store.update_task("acme", task["id"], {"status": "completed"}, "alice")

    expr = table.put_calls[-1]["ConditionExpression"].get_expression()
    assert expr["operator"] == "="
    assert expr["values"][0].name == "updatedAt"
    assert expr["values"][1] == task["updatedAt"]


def test_stale_update_raises_conflict(clock, monkeypatch):
    table = FakeTable()
    store = _store(clock, table)
    task = store.create_task("acme", {"title": "t"}, "alice")
    stale = store.get_task("acme", task["id"])

    # Another writer lands between this writer's read and its put.
    store.update_task("acme", task["id"], {"title": "theirs"}, "bob")
    monkeypatch.setattr(store, "get_task", lambda domain, task_id: stale)

    with pytest.raises(ConflictError):
        store.update_task("acme", task["id"], {"title": "mine"}, "alice")
    assert table.data(task_pk("acme", task["id"]))["title"] == "theirs"


def test_other_client_errors_propagate(clock):
    class FailingTable(FakeTable):
        def put_item(self, *, Item, ConditionExpression=None):
            raise ClientError(
                {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
                "PutItem",
            )

    store = _store(clock, FailingTable())
    with pytest.raises(ClientError):
        store.create_task("acme", {"title": "t"}, "alice")
