import importlib
import json
import sys

from botocore.exceptions import ClientError

from conftest import FakeTable
from conftest import StepClock
from pm_store import SingleTableStore


def _load_handler(monkeypatch, *, table_name="ProjectManagementTable"):
    if table_name:
        monkeypatch.setenv("TABLE_NAME", table_name)
    else:
        monkeypatch.delenv("TABLE_NAME", raising=False)
    monkeypatch.setenv("SCHEMA_VERSION", "2026-10-01")
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import tasks_handler as mod

    return importlib.reload(mod)


def _with_store(monkeypatch, mod):
    store = SingleTableStore(FakeTable(), clock=StepClock())
    monkeypatch.setattr(mod, "_store", lambda: store)
    return store


def _event(*, method, path, body=None, claims=None):
    if claims is None:
        claims = {"sub": "sub-1", "email": "alice@acme.com"}
    return {
        "httpMethod": method,
        "path": path,
        "body": json.dumps(body) if body is not None else None,
        "requestContext": {"requestId": "req-1", "authorizer": {"claims": claims}},
    }


def _call(mod, **kwargs):
    out = mod.handler(_event(**kwargs), None)
    return out["statusCode"], json.loads(out["body"])


def test_create_and_get_task(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)

    status, body = _call(mod, method="POST", path="/tasks", body={"title": "Ship it", "hoursExpected": 4})
    assert status == 201
    task = body["task"]
    assert task["title"] == "Ship it"
    assert task["createdBy"] == "alice@acme.com"
    assert task["domain"] == "acme"
    assert body["requestId"] == "req-1"
    assert body["schemaVersion"] == "2026-10-01"
    assert store.get_task("acme", task["id"]) is not None

    status, body = _call(mod, method="GET", path=f"/tasks/{task['id']}")
    assert status == 200
    assert body["task"]["id"] == task["id"]


def test_create_ignores_unknown_and_server_owned_fields(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    status, body = _call(
        mod,
        method="POST",
        path="/tasks",
        body={"title": "t", "id": "task-mine", "createdBy": "mallory", "evil": 1},
    )
    assert status == 201
    assert body["task"]["id"] != "task-mine"
    assert body["task"]["createdBy"] == "alice@acme.com"
    assert "evil" not in body["task"]


def test_list_tasks_is_scoped_to_caller_domain(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    store.create_task("acme", {"title": "ours"}, "alice@acme.com")
    store.create_task("globex", {"title": "theirs"}, "bob@globex.com")

    status, body = _call(mod, method="GET", path="/tasks")
    assert status == 200
    assert [t["title"] for t in body["tasks"]] == ["ours"]


def test_validation_errors(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    status, body = _call(mod, method="POST", path="/tasks", body={"description": "no title"})
    assert status == 400
    assert body["errorCode"] == "INVALID_BODY"
    assert body["message"] == "title is required"

    status, body = _call(mod, method="POST", path="/tasks", body={"title": "t", "status": "done"})
    assert status == 400
    assert body["message"] == "status must be one of: backlog, in-progress, completed"

    status, body = _call(mod, method="POST", path="/tasks", body={"title": "t", "hoursExpected": -1})
    assert status == 400

    out = mod.handler({**_event(method="POST", path="/tasks"), "body": "{not json"}, None)
    assert out["statusCode"] == 400
    assert json.loads(out["body"])["errorCode"] == "INVALID_BODY"


def test_update_task_records_activity(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    task = store.create_task("acme", {"title": "t"}, "alice@acme.com")

    status, body = _call(mod, method="PUT", path=f"/tasks/{task['id']}", body={"status": "in-progress"})
    assert status == 200
    assert body["task"]["status"] == "in-progress"
    assert body["task"]["activities"][-1]["type"] == "status_change"
    assert body["task"]["activities"][-1]["author"] == "alice@acme.com"

    status, body = _call(mod, method="PUT", path=f"/tasks/{task['id']}", body={"linkedTasks": "task-x"})
    assert status == 400


def test_missing_task_returns_404(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    status, body = _call(mod, method="GET", path="/tasks/task-missing")
    assert status == 404
    assert body["errorCode"] == "TASK_NOT_FOUND"

    status, body = _call(mod, method="PUT", path="/tasks/task-missing", body={"title": "x"})
    assert status == 404
    assert body["errorCode"] == "TASK_NOT_FOUND"


def test_delete_task(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    task = store.create_task("acme", {"title": "t"}, "alice@acme.com")

    status, body = _call(mod, method="DELETE", path=f"/tasks/{task['id']}")
    assert status == 200
    assert body["success"] is True
    assert store.get_task("acme", task["id"]) is None


def test_comment_route(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    task = store.create_task("acme", {"title": "t"}, "alice@acme.com")

    status, body = _call(mod, method="POST", path=f"/tasks/{task['id']}/comments", body={"comment": "looks good"})
    assert status == 200
    entry = body["task"]["activities"][-1]
    assert entry["type"] == "comment"
    assert entry["text"] == "looks good"
    assert entry["author"] == "alice@acme.com"

    status, body = _call(mod, method="POST", path=f"/tasks/{task['id']}/comments", body={"comment": "  "})
    assert status == 400


def test_link_and_unlink_routes(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    a = store.create_task("acme", {"title": "A"}, "alice@acme.com")
    b = store.create_task("acme", {"title": "B"}, "alice@acme.com")

    status, body = _call(mod, method="POST", path=f"/tasks/{a['id']}/link", body={"linkedTaskId": b["id"]})
    assert status == 200
    assert body["task"]["linkedTasks"] == [b["id"]]

    status, body = _call(mod, method="POST", path=f"/tasks/{a['id']}/link", body={"linkedTaskId": b["id"]})
    assert status == 400
    assert body["errorCode"] == "ALREADY_LINKED"

    status, body = _call(mod, method="POST", path=f"/tasks/{a['id']}/link", body={"linkedTaskId": a["id"]})
    assert status == 400
    assert body["errorCode"] == "INVALID_BODY"

    status, body = _call(mod, method="DELETE", path=f"/tasks/{a['id']}/link/{b['id']}")
    assert status == 200
    assert body["task"]["linkedTasks"] == []
    assert body["task"]["activities"][-1]["text"] == "Unlinked from task: B"


def test_unknown_route_is_404(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)
    status, body = _call(mod, method="PATCH", path="/tasks")
    assert status == 404
    assert body["errorCode"] == "NOT_FOUND"


def test_missing_claims_is_401(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)
    status, body = _call(mod, method="GET", path="/tasks", claims={})
    assert status == 401
    assert body["errorCode"] == "UNAUTHORIZED"


def test_missing_table_name_is_misconfigured(monkeypatch):
    mod = _load_handler(monkeypatch, table_name="")
    status, body = _call(mod, method="GET", path="/tasks")
    assert status == 500
    assert body["errorCode"] == "MISCONFIGURED"


def test_dynamodb_failure_maps_to_ddb_error(monkeypatch, capsys):
    mod = _load_handler(monkeypatch)

    class BrokenStore:
        def list_tasks(self, domain):
            raise ClientError({"Error": {"Code": "InternalServerError", "Message": "down"}}, "Query")

    monkeypatch.setattr(mod, "_store", lambda: BrokenStore())
    status, body = _call(mod, method="GET", path="/tasks")
    assert status == 500
    assert body["errorCode"] == "DDB_ERROR"

    line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert line["outcome"] == "error"
    assert line["error"]["type"] == "ClientError"


def test_one_wide_event_per_request(monkeypatch, capsys):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)
    capsys.readouterr()

    _call(mod, method="POST", path="/tasks", body={"title": "secret plan"})
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    event = json.loads(lines[0])
    assert event["event"] == "pm_tasks_request"
    assert event["route"] == "POST /tasks"
    assert event["domain"] == "acme"
    assert event["status_code"] == 201
    assert event["outcome"] == "success"
    assert event["request_id"] == "req-1"
    assert "secret plan" not in lines[0]


def test_update_rejects_null_for_required_fields(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    task = store.create_task("acme", {"title": "t"}, "alice@acme.com")

    for field in ("status", "title", "assignedTo", "hoursSpent"):
        status, body = _call(mod, method="PUT", path=f"/tasks/{task['id']}", body={field: None})
        assert status == 400
        assert body["errorCode"] == "INVALID_BODY"
        assert body["message"] == f"{field} cannot be null"

    stored = store.get_task("acme", task["id"])
    assert stored == task


def test_update_with_null_optional_field_keeps_stored_value(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    task = store.create_task("acme", {"title": "t", "description": "keep me"}, "alice@acme.com")

    status, body = _call(mod, method="PUT", path=f"/tasks/{task['id']}", body={"description": None})
    assert status == 200
    assert body["task"]["description"] == "keep me"
    assert body["task"]["status"] == "backlog"
    assert len(body["task"]["activities"]) == 1
