import copy
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
LAMBDA_DIR = str(ROOT / "lambda")
if LAMBDA_DIR not in sys.path:
    sys.path.insert(0, LAMBDA_DIR)

from pm_store import SingleTableStore  # noqa: E402


def _reject_floats(value, path="Item"):
    # Same contract as boto3's TypeSerializer.
    if isinstance(value, float):
        raise TypeError(f"Float types are not supported. Use Decimal types instead. ({path})")
    if isinstance(value, dict):
        for k, v in value.items():
            _reject_floats(v, f"{path}.{k}")
    if isinstance(value, list):
        for i, v in enumerate(value):
            _reject_floats(v, f"{path}[{i}]")


def _condition_failed():
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        "PutItem",
    )


class FakeTable:
    """In-memory stand-in for a boto3 DynamoDB Table resource.

    Supports the subset the store uses: get/put/delete by (PK, SK), simple put
    conditions, and GSI1 equality queries with optional paging.
    """

    def __init__(self, page_size=None):
        self.items = {}
        self.page_size = page_size
        self.put_calls = []
        self.query_calls = []

    def get_item(self, *, Key):
        item = self.items.get((Key["PK"], Key["SK"]))
        if item is None:
            return {}
        return {"Item": copy.deepcopy(item)}

    def put_item(self, *, Item, ConditionExpression=None):
        _reject_floats(Item)
        self.put_calls.append({"Item": copy.deepcopy(Item), "ConditionExpression": ConditionExpression})
        key = (Item["PK"], Item["SK"])
        if ConditionExpression is not None and not self._condition_holds(ConditionExpression, self.items.get(key)):
            raise _condition_failed()
        self.items[key] = copy.deepcopy(Item)
        return {}

    def delete_item(self, *, Key):
        self.items.pop((Key["PK"], Key["SK"]), None)
        return {}

    def query(self, *, IndexName, KeyConditionExpression, ExclusiveStartKey=None):
        self.query_calls.append({"IndexName": IndexName, "ExclusiveStartKey": ExclusiveStartKey})
        expr = KeyConditionExpression.get_expression()
        assert expr["operator"] == "="
        key_name = expr["values"][0].name
        key_value = expr["values"][1]
        assert IndexName == "GSI1" and key_name == "GSI1PK"

        matches = sorted(
            (i for i in self.items.values() if i.get(key_name) == key_value),
            key=lambda i: (i["GSI1SK"], i["PK"]),
        )
        start = 0
        if ExclusiveStartKey:
            for idx, item in enumerate(matches):
                if item["PK"] == ExclusiveStartKey["PK"]:
                    start = idx + 1
                    break
        end = start + self.page_size if self.page_size else len(matches)
        page = matches[start:end]
        out = {"Items": copy.deepcopy(page), "Count": len(page)}
        if end < len(matches):
            last = page[-1]
            out["LastEvaluatedKey"] = {
                "PK": last["PK"],
                "SK": last["SK"],
                "GSI1PK": last["GSI1PK"],
                "GSI1SK": last["GSI1SK"],
            }
        return out

    @staticmethod
    def _condition_holds(condition, existing):
        expr = condition.get_expression()
        name = expr["values"][0].name
        if expr["operator"] == "attribute_not_exists":
            return existing is None or name not in existing
        if expr["operator"] == "=":
            return existing is not None and existing.get(name) == expr["values"][1]
        raise AssertionError(f"unsupported condition: {expr}")

    def data(self, pk):
        return self.items[(pk, "META")]["data"]


class StepClock:
    """Deterministic clock; every call advances by one millisecond."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        current = self.now
        self.now = self.now + timedelta(milliseconds=1)
        return current


@pytest.fixture
def table():
    return FakeTable()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(table, clock):
    return SingleTableStore(table, clock=clock)
