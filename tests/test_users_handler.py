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
    import users_handler as mod

    return importlib.reload(mod)


def _with_store(monkeypatch, mod):
    store = SingleTableStore(FakeTable(), clock=StepClock())
    monkeypatch.setattr(mod, "_store", lambda: store)
    return store


def _call(mod, *, method, path, body=None):
    event = {
        "httpMethod": method,
        "path": path,
        "body": json.dumps(body) if body is not None else None,
        "requestContext": {
            "requestId": "req-3",
            "authorizer": {"claims": {"sub": "sub-1", "email": "admin@acme.com", "custom:domain": "acme"}},
        },
    }
    out = mod.handler(event, None)
    return out["statusCode"], json.loads(out["body"])


def test_create_and_list_users(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    status, body = _call(mod, method="POST", path="/users", body={"email": " Carol@Acme.com ", "name": "Carol"})
    assert status == 201
    user = body["user"]
    assert user["email"] == "carol@acme.com"
    assert user["role"] == "member"
    assert user["domain"] == "acme"

    status, body = _call(mod, method="GET", path="/users")
    assert status == 200
    assert [u["userId"] for u in body["users"]] == [user["userId"]]

    status, body = _call(mod, method="GET", path=f"/users/{user['userId']}")
    assert status == 200
    assert body["user"]["name"] == "Carol"


def test_duplicate_email_is_409(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    _call(mod, method="POST", path="/users", body={"email": "dan@acme.com", "name": "Dan"})
    status, body = _call(mod, method="POST", path="/users", body={"email": "DAN@acme.com", "name": "Dan 2"})
    assert status == 409
    assert body["errorCode"] == "DUPLICATE_EMAIL"


def test_user_validation(monkeypatch):
    mod = _load_handler(monkeypatch)
    _with_store(monkeypatch, mod)

    status, body = _call(mod, method="POST", path="/users", body={"email": "not-an-email", "name": "X"})
    assert status == 400
    assert body["message"] == "a valid email is required"

    status, body = _call(mod, method="POST", path="/users", body={"email": "x@acme.com"})
    assert status == 400
    assert body["message"] == "name is required"

    status, body = _call(mod, method="POST", path="/users", body={"email": "x@acme.com", "name": "X", "role": "owner"})
    assert status == 400
    assert body["message"] == "role must be one of: admin, member"


def test_update_user_ignores_email_changes(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    user = store.create_user("acme", {"email": "erin@acme.com", "name": "Erin"})

    status, body = _call(
        mod,
        method="PUT",
        path=f"/users/{user['userId']}",
        body={"role": "admin", "email": "other@acme.com"},
    )
    assert status == 200
    assert body["user"]["role"] == "admin"
    assert body["user"]["email"] == "erin@acme.com"


def test_missing_user_is_404_and_delete_succeeds(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)

    status, body = _call(mod, method="GET", path="/users/user-missing")
    assert status == 404
    assert body["errorCode"] == "USER_NOT_FOUND"

    status, body = _call(mod, method="PUT", path="/users/user-missing", body={"name": "x"})
    assert status == 404
    assert body["errorCode"] == "USER_NOT_FOUND"

    user = store.create_user("acme", {"email": "f@acme.com", "name": "F"})
    status, body = _call(mod, method="DELETE", path=f"/users/{user['userId']}")
    assert status == 200
    assert body["success"] is True
    assert store.get_user("acme", user["userId"]) is None


def test_update_user_rejects_null_role(monkeypatch):
    mod = _load_handler(monkeypatch)
    store = _with_store(monkeypatch, mod)
    user = store.create_user("acme", {"email": "gil@acme.com", "name": "Gil"})

    status, body = _call(mod, method="PUT", path=f"/users/{user['userId']}", body={"role": None})
    assert status == 400
    assert body["message"] == "role must be one of: admin, member"
    assert store.get_user("acme", user["userId"])["role"] == "member"
