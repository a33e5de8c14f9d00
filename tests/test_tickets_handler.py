import importlib
import json
import sys

from conftest import FakeTable
from conftest import StepClock
from pm_store import SingleTableStore


def _load_handler(monkeypatch):
    monkeypatch.setenv("TABLE_NAME", "ProjectManagementTable")
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import tickets_handler as mod

    return importlib.reload(mod)


def _with_store(monkeypatch, mod):
    store = SingleTableStore(FakeTable(), clock=StepClock())
    monkeypatch.setattr(mod, "_store", lambda: store)
    return store


def _call(mod, *, method, path, body=None, claims=None):
    event = {
        "httpMethod": method,
        "path": path,
        "body": json.dumps(body) if body is not None else None,
        "requestContext": {
            "requestId": "req-7",
            "authorizer": {"claims": claims if claims is not None else {"sub": "sub-1", "email": "dev@acme.com"}},
        },
    }
    out = mod.handler(event, None)
    return out["statusCode"], json.loads(out["body"])


def test_ticket_lifecycle(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)

    status, body = _call(mod, method="POST", path="/tickets", body={"title": "Crash on save", "type": "bug"})
    assert status == 201
    ticket = body["ticket"]
    assert ticket["type"] == "bug"
    assert ticket["status"] == "new"
    assert ticket["createdBy"] == "dev@acme.com"

    status, body = _call(mod, method="GET", path="/tickets")
    assert status == 200
    assert [t["id"] for t in body["tickets"]] == [ticket["id"]]

    status, body = _call(mod, method="PUT", path=f"/tickets/{ticket['id']}", body={"status": "done"})
    assert status == 200
    assert body["ticket"]["status"] == "done"
    assert body["ticket"]["type"] == "bug"

    status, body = _call(mod, method="DELETE", path=f"/tickets/{ticket['id']}")
    assert status == 200
    assert body["success"] is True
    assert store.get_ticket("acme", ticket["id"]) is None


def test_ticket_defaults_to_feature(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)
    status, body = _call(mod, method="POST", path="/tickets", body={"title": "Dark mode"})
    assert status == 201
    assert body["ticket"]["type"] == "feature"


def test_ticket_enum_validation(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    status, body = _call(mod, method="POST", path="/tickets", body={"title": "x", "type": "epic"})
    assert status == 400
    assert body["message"] == "type must be one of: bug, feature"

    status, body = _call(mod, method="POST", path="/tickets", body={"title": "x", "status": "backlog"})
    assert status == 400
    assert body["message"] == "status must be one of: new, in-progress, done"

    status, body = _call(mod, method="POST", path="/tickets", body={})
    assert status == 400
    assert body["message"] == "title is required"


def test_missing_ticket_is_404(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    status, body = _call(mod, method="GET", path="/tickets/ticket-missing")
    assert status == 404
    assert body["errorCode"] == "TICKET_NOT_FOUND"

    status, body = _call(mod, method="PUT", path="/tickets/ticket-missing", body={"status": "done"})
    assert status == 404
    assert body["errorCode"] == "TICKET_NOT_FOUND"


def test_tickets_require_identity(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)
    status, body = _call(mod, method="GET", path="/tickets", claims={})
    assert status == 401


def test_ticket_wide_event(monkeypatch, capsys):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)
    capsys.readouterr()

    _call(mod, method="GET", path="/tickets/ticket-missing")
    event = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert event["event"] == "pm_tickets_request"
    assert event["route"] == "GET /tickets/{id}"
    assert event["outcome"] == "rejected"
    assert event["error_code"] == "TICKET_NOT_FOUND"


def test_ticket_update_rejects_null_status(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    ticket = store.create_ticket("acme", {"title": "t"}, "dev@acme.com")

    status, body = _call(mod, method="PUT", path=f"/tickets/{ticket['id']}", body={"status": None})
    assert status == 400
    assert body["message"] == "status cannot be null"
    assert store.get_ticket("acme", ticket["id"])["status"] == "new"
