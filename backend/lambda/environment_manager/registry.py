"""registry.py — DynamoDB environment registry and lifecycle state machine.

Table layout: hash key ``RepoName``, range key ``BranchName``: the repo and
branch of an environment's first service (see ``models.identity_of``).

Every status change is one conditional ``UpdateItem`` guarded on the key
existing and on the status the caller observed, so concurrent requests on
the same environment serialize here instead of overwriting each other.
"""
from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

from botocore.exceptions import ClientError

from branchbox_shared.aws_clients import _get_ddb
from branchbox_shared.serialization import (
    _deserialize,
    _emit_structured_observability,
    _now_z,
    _serialize,
    _serialize_item,
)
from config import TABLE_NAME, logger
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    STATUS_ARCHIVED,
    STATUS_CREATING,
    STATUS_RUNNING,
    STATUS_STOPPED,
    Environment,
    EnvironmentKey,
)

__all__ = [
    "EnvironmentRegistry",
    "TRANSITIONS",
    "can_transition",
]

# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

TRANSITIONS: Dict[str, frozenset] = {
    STATUS_CREATING: frozenset({STATUS_RUNNING}),
    STATUS_RUNNING: frozenset({STATUS_STOPPED, STATUS_ARCHIVED}),
    STATUS_STOPPED: frozenset({STATUS_RUNNING, STATUS_ARCHIVED}),
    STATUS_ARCHIVED: frozenset(),
}


def can_transition(current: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(current, frozenset())


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class EnvironmentRegistry:
    """Keyed store of Environment records."""

    def __init__(self, table_name: str = TABLE_NAME, ddb: Any = None):
        self.table_name = table_name
        self._ddb = ddb

    @property
    def ddb(self):
        if self._ddb is None:
            self._ddb = _get_ddb()
        return self._ddb

    @staticmethod
    def _key(key: EnvironmentKey) -> Dict[str, Any]:
        repo, branch = key
        return {"RepoName": _serialize(repo), "BranchName": _serialize(branch)}

    # -- reads -------------------------------------------------------------

    def _scan(self, **kwargs: Any) -> Iterator[Environment]:
        params: Dict[str, Any] = {"TableName": self.table_name, **kwargs}
        while True:
            resp = self.ddb.scan(**params)
            for raw in resp.get("Items", []):
                try:
                    yield Environment.from_item(_deserialize(raw))
                except (TypeError, ValueError) as exc:
                    logger.warning("[WARNING] Skipping unreadable environment item: %s", exc)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return
            params["ExclusiveStartKey"] = last_key

    def list_all(self) -> List[Environment]:
        return list(self._scan())

    def get(self, key: EnvironmentKey) -> Optional[Environment]:
        resp = self.ddb.get_item(TableName=self.table_name, Key=self._key(key), ConsistentRead=True)
        raw = resp.get("Item")
        if not raw:
            return None
        return Environment.from_item(_deserialize(raw))

    def require(self, key: EnvironmentKey) -> Environment:
        env = self.get(key)
        if env is None:
            raise NotFoundError(f"Environment {key[0]}@{key[1]} not found")
        return env

    def find_by_status(self, status: str) -> List[Environment]:
        return list(self._scan(
            FilterExpression="#s = :status",
            ExpressionAttributeNames={"#s": "Status"},
            ExpressionAttributeValues={":status": _serialize(status)},
        ))

    def find_by_service_ref(self, repo: str, branch: str) -> Optional[Environment]:
        """Environment owning (repo, branch) at ANY position of its service list.

        ARCHIVED records are skipped: their stack has been torn down.

        DynamoDB cannot filter inside a list of maps, so this is a full scan
        matched client-side.
        """
        for env in self._scan():
            if env.status != STATUS_ARCHIVED and env.owns_service(repo, branch):
                return env
        return None

    def find_by_external_id(self, stack_id: str) -> Optional[Environment]:
        for env in self._scan(
            FilterExpression="StackId = :sid",
            ExpressionAttributeValues={":sid": _serialize(stack_id)},
        ):
            return env
        return None

    def find_by_stack_name(self, stack_name: str) -> Optional[Environment]:
        for env in self._scan(
            FilterExpression="StackName = :name",
            ExpressionAttributeValues={":name": _serialize(stack_name)},
        ):
            return env
        return None

    # -- writes ------------------------------------------------------------

    def put(self, environment: Environment) -> Environment:
        """Insert a new record.

        An existing live record for the key is a conflict; an ARCHIVED one is
        replaced.
        """
        if not environment.created_at:
            environment.created_at = _now_z()
        try:
            self.ddb.put_item(
                TableName=self.table_name,
                Item=_serialize_item(environment.to_item()),
                ConditionExpression="attribute_not_exists(RepoName) OR #s = :archived",
                ExpressionAttributeNames={"#s": "Status"},
                ExpressionAttributeValues={":archived": _serialize(STATUS_ARCHIVED)},
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                repo, branch = environment.key
                raise ConflictError(f"Environment {repo}@{branch} already exists") from exc
            raise
        return environment

    def delete(self, key: EnvironmentKey) -> None:
        self.ddb.delete_item(TableName=self.table_name, Key=self._key(key))

    def transition(
        self,
        key: EnvironmentKey,
        new_status: str,
        *,
        expected_status: Optional[str] = None,
        reason: str = "",
    ) -> Environment:
        """Move an environment to ``new_status``.

        Raises NotFoundError for an unknown key, ValidationError for a move the
        state machine forbids and ConflictError when another writer changed
        the status between our read and the conditional write. A transition to
        the current status is a no-op.
        """
        if new_status not in TRANSITIONS:
            raise ValidationError(f"Unknown status {new_status!r}")

        env = self.require(key)
        current = env.status
        if expected_status is not None and current != expected_status:
            raise ConflictError(
                f"Environment {key[0]}@{key[1]} is {current}, expected {expected_status}"
            )
        if current == new_status:
            return env
        if not can_transition(current, new_status):
            raise ValidationError(f"Invalid status transition {current} -> {new_status}")

        now = _now_z()
        try:
            self.ddb.update_item(
                TableName=self.table_name,
                Key=self._key(key),
                UpdateExpression="SET #s = :new, UpdatedAt = :now",
                ConditionExpression="attribute_exists(RepoName) AND #s = :current",
                ExpressionAttributeNames={"#s": "Status"},
                ExpressionAttributeValues={
                    ":new": _serialize(new_status),
                    ":current": _serialize(current),
                    ":now": _serialize(now),
                },
            )
        except ClientError as exc:
            if not _is_conditional_failure(exc):
                raise
            if self.get(key) is None:
                raise NotFoundError(f"Environment {key[0]}@{key[1]} not found") from exc
            raise ConflictError(
                f"Environment {key[0]}@{key[1]} changed status concurrently; retry"
            ) from exc

        _emit_structured_observability(
            component="environment_registry",
            event="state_transition",
            environment=env.stack_name,
            extra={"from_state": current, "to_state": new_status, "reason": reason},
        )
        env.status = new_status
        env.updated_at = now
        return env

    def archive(self, key: EnvironmentKey, reason: str = "deleted") -> Environment:
        return self.transition(key, STATUS_ARCHIVED, reason=reason)
