"""models.py — Service descriptors, environment records and identity helpers.

Environment records keep the DynamoDB attribute names (RepoName, BranchName,
StackId, ...) so items written by earlier releases stay readable.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import DEFAULT_APPSPEC, DEFAULT_BUILDSPEC, SOURCE_KEY_PREFIX

__all__ = [
    "EnvironmentKey",
    "Environment",
    "ServiceDescriptor",
    "STATUS_ARCHIVED",
    "STATUS_CREATING",
    "STATUS_RUNNING",
    "STATUS_STOPPED",
    "clean_name",
    "identity_of",
    "is_valid_hour",
    "parse_hour",
    "service_unique_id",
    "services_from_payload",
    "source_object_key",
]

STATUS_CREATING = "CREATING"
STATUS_RUNNING = "RUNNING"
STATUS_STOPPED = "STOPPED"
STATUS_ARCHIVED = "ARCHIVED"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_HOUR_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

EnvironmentKey = Tuple[str, str]


def clean_name(value: str) -> str:
    """Strip every non-alphanumeric character (CloudFormation logical ids)."""
    return _NON_ALNUM.sub("", value or "")


def service_unique_id(repo: str, branch: str, index: int) -> str:
    """Pipeline resource suffix and artifact key stem for service ``index``.

    The index suffix keeps ids distinct when two services share both the
    repository and the branch.
    """
    return f"{clean_name(repo)}{clean_name(branch)}{index}"


def source_object_key(unique_id: str) -> str:
    return f"{SOURCE_KEY_PREFIX}/{unique_id}.zip"


def is_valid_hour(value: str) -> bool:
    return bool(_HOUR_RE.match(value or ""))


def parse_hour(value: Optional[str]) -> Optional[int]:
    """Hour component of an ``HH:MM`` schedule string; None when disabled.

    Raises ValueError for a non-empty value that is not ``HH:MM``.
    """
    if not value:
        return None
    if not is_valid_hour(value):
        raise ValueError(f"Invalid schedule time {value!r}; expected HH:MM")
    return int(value.split(":", 1)[0])


@dataclass(frozen=True)
class ServiceDescriptor:
    repo: str
    branch: str
    buildspec: str = DEFAULT_BUILDSPEC
    appspec: str = DEFAULT_APPSPEC

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ServiceDescriptor":
        return cls(
            repo=str(raw.get("repo") or "").strip(),
            branch=str(raw.get("branch") or "").strip(),
            buildspec=str(raw.get("buildspec") or "").strip() or DEFAULT_BUILDSPEC,
            appspec=str(raw.get("appspec") or "").strip() or DEFAULT_APPSPEC,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "repo": self.repo,
            "branch": self.branch,
            "buildspec": self.buildspec,
            "appspec": self.appspec,
        }

    @property
    def owner_and_name(self) -> Tuple[str, str]:
        owner, _, name = self.repo.partition("/")
        return owner, name

    def unique_id(self, index: int) -> str:
        return service_unique_id(self.repo, self.branch, index)

    def matches(self, repo: str, branch: str) -> bool:
        return self.repo == repo and self.branch == branch


@dataclass
class Environment:
    stack_id: str
    stack_name: str
    services: List[ServiceDescriptor]
    alias: str = ""
    stop_time: str = ""
    start_time: str = ""
    status: str = STATUS_CREATING
    created_at: str = ""
    updated_at: str = ""
    owner: str = "user"
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> EnvironmentKey:
        return identity_of(self)

    def owns_service(self, repo: str, branch: str) -> bool:
        return any(svc.matches(repo, branch) for svc in self.services)

    def to_item(self) -> Dict[str, Any]:
        repo, branch = identity_of(self)
        item: Dict[str, Any] = dict(self.extra)
        item.update({
            "RepoName": repo,
            "BranchName": branch,
            "StackId": self.stack_id,
            "StackName": self.stack_name,
            "Alias": self.alias,
            "StopTime": self.stop_time,
            "StartTime": self.start_time,
            "Status": self.status,
            "CreatedAt": self.created_at,
            "Services": [svc.to_dict() for svc in self.services],
            "Owner": self.owner,
        })
        if self.updated_at:
            item["UpdatedAt"] = self.updated_at
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Environment":
        known = {
            "RepoName", "BranchName", "StackId", "StackName", "Alias", "StopTime",
            "StartTime", "Status", "CreatedAt", "UpdatedAt", "Services", "Owner",
        }
        services = [ServiceDescriptor.from_dict(raw) for raw in item.get("Services") or []]
        if not services and item.get("RepoName"):
            # Items written before multi-service support carry only the key.
            services = [ServiceDescriptor(repo=item["RepoName"], branch=item.get("BranchName", ""))]
        return cls(
            stack_id=str(item.get("StackId") or ""),
            stack_name=str(item.get("StackName") or ""),
            services=services,
            alias=str(item.get("Alias") or ""),
            stop_time=str(item.get("StopTime") or ""),
            start_time=str(item.get("StartTime") or ""),
            status=str(item.get("Status") or STATUS_CREATING),
            created_at=str(item.get("CreatedAt") or ""),
            updated_at=str(item.get("UpdatedAt") or ""),
            owner=str(item.get("Owner") or "user"),
            extra={k: v for k, v in item.items() if k not in known},
        )


def identity_of(environment: Environment) -> EnvironmentKey:
    """Registry key of an environment: (repo, branch) of its first service."""
    if not environment.services:
        raise ValueError("Environment has no services")
    first = environment.services[0]
    return first.repo, first.branch


def services_from_payload(raw_services: Optional[Sequence[Any]]) -> List[ServiceDescriptor]:
    """Coerce request/registry service entries into descriptors.

    Raises ValueError when an entry is neither a mapping nor a descriptor.
    """
    services: List[ServiceDescriptor] = []
    for index, raw in enumerate(raw_services or []):
        if isinstance(raw, ServiceDescriptor):
            services.append(raw)
        elif isinstance(raw, dict):
            services.append(ServiceDescriptor.from_dict(raw))
        else:
            raise ValueError(f"Service at index {index} must be an object")
    return services
