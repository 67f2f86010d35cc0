"""test_support.py — In-memory stand-ins for the AWS clients used in tests.

``FakeDynamoDB`` understands exactly the expressions the registry issues;
anything else raises so a new query shape cannot pass silently.
"""
from __future__ import annotations

import os
import re
import sys
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, HERE)
sys.path.insert(0, os.path.join(HERE, "..", "shared_layer", "python"))

from botocore.exceptions import ClientError  # noqa: E402

from branchbox_shared.serialization import _deserialize  # noqa: E402

_EQ = re.compile(r"^\s*([#\w]+)\s*=\s*(:\w+)\s*$")


def conditional_failure(operation: str = "PutItem") -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


class FakeDynamoDB:
    def __init__(self, page_size: int = 0):
        self.items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.page_size = page_size
        self.calls: List[str] = []

    @staticmethod
    def _key_of(key: Dict[str, Any]) -> Tuple[str, str]:
        return key["RepoName"]["S"], key["BranchName"]["S"]

    def add(self, item: Dict[str, Any]) -> None:
        self.items[self._key_of(item)] = item

    def plain(self, repo: str, branch: str) -> Optional[Dict[str, Any]]:
        raw = self.items.get((repo, branch))
        return _deserialize(raw) if raw else None

    # -- client API --------------------------------------------------------

    def get_item(self, TableName, Key, ConsistentRead=False):
        self.calls.append("get_item")
        raw = self.items.get(self._key_of(Key))
        return {"Item": raw} if raw else {}

    def put_item(self, TableName, Item, ConditionExpression=None,
                 ExpressionAttributeNames=None, ExpressionAttributeValues=None):
        self.calls.append("put_item")
        if ConditionExpression:
            if ConditionExpression != "attribute_not_exists(RepoName) OR #s = :archived":
                raise AssertionError(f"unsupported condition {ConditionExpression}")
            current = self.items.get(self._key_of(Item))
            status = ExpressionAttributeNames["#s"]
            if current is not None and current.get(status) != ExpressionAttributeValues[":archived"]:
                raise conditional_failure()
        self.add(Item)
        return {}

    def delete_item(self, TableName, Key):
        self.calls.append("delete_item")
        self.items.pop(self._key_of(Key), None)
        return {}

    def update_item(self, TableName, Key, UpdateExpression, ConditionExpression,
                    ExpressionAttributeNames, ExpressionAttributeValues):
        self.calls.append("update_item")
        if UpdateExpression != "SET #s = :new, UpdatedAt = :now":
            raise AssertionError(f"unsupported update {UpdateExpression}")
        raw = self.items.get(self._key_of(Key))
        if raw is None or raw.get("Status") != ExpressionAttributeValues[":current"]:
            raise conditional_failure("UpdateItem")
        raw["Status"] = ExpressionAttributeValues[":new"]
        raw["UpdatedAt"] = ExpressionAttributeValues[":now"]
        return {}

    def scan(self, TableName, FilterExpression=None, ExpressionAttributeNames=None,
             ExpressionAttributeValues=None, ExclusiveStartKey=None):
        self.calls.append("scan")
        rows = [raw for _, raw in sorted(self.items.items())]
        if FilterExpression:
            match = _EQ.match(FilterExpression)
            if not match:
                raise AssertionError(f"unsupported filter {FilterExpression}")
            name, placeholder = match.groups()
            name = (ExpressionAttributeNames or {}).get(name, name)
            wanted = ExpressionAttributeValues[placeholder]
            rows = [raw for raw in rows if raw.get(name) == wanted]
        start = int(ExclusiveStartKey["offset"]["N"]) if ExclusiveStartKey else 0
        if not self.page_size:
            return {"Items": rows[start:]}
        end = start + self.page_size
        resp: Dict[str, Any] = {"Items": rows[start:end]}
        if end < len(rows):
            resp["LastEvaluatedKey"] = {"offset": {"N": str(end)}}
        return resp


class FakeCloudFormation:
    """Records stacks; ``complete`` flips a stack to CREATE_COMPLETE with outputs."""

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.stacks: Dict[str, Dict[str, Any]] = {}

    def create_stack(self, **kwargs):
        self.created.append(kwargs)
        stack_id = f"arn:aws:cloudformation:ap-northeast-2:123456789012:stack/{kwargs['StackName']}/abc"
        self.stacks[kwargs["StackName"]] = {
            "StackId": stack_id,
            "StackName": kwargs["StackName"],
            "StackStatus": "CREATE_IN_PROGRESS",
            "Outputs": [],
        }
        return {"StackId": stack_id}

    def complete(self, stack_name: str, outputs: Dict[str, str]) -> None:
        stack = self.stacks[stack_name]
        stack["StackStatus"] = "CREATE_COMPLETE"
        stack["Outputs"] = [{"OutputKey": k, "OutputValue": v} for k, v in outputs.items()]

    def describe_stacks(self, StackName):
        stack = self.stacks.get(StackName)
        if stack is None:
            raise ClientError(
                {"Error": {"Code": "ValidationError", "Message": f"Stack with id {StackName} does not exist"}},
                "DescribeStacks",
            )
        return {"Stacks": [stack]}

    def delete_stack(self, StackName):
        self.deleted.append(StackName)
        return {}


def fake_s3() -> MagicMock:
    s3 = MagicMock()
    s3.put_object.return_value = {}
    return s3
