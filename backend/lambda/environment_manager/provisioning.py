"""provisioning.py — Environment creation, readiness and teardown.

``create`` validates the request, renders the CloudFormation template,
submits it and records the environment as CREATING. It never waits for the
stack: readiness is recorded later through ``mark_ready``/``refresh_status``.
"""
from __future__ import annotations

from typing import Any, List, Optional, Sequence

from branchbox_shared.serialization import _emit_structured_observability, _now_z
from config import ARCHIVE_ON_DELETE, DEFAULT_START_TIME, DEFAULT_STOP_TIME, logger
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    STATUS_ARCHIVED,
    STATUS_CREATING,
    STATUS_RUNNING,
    Environment,
    EnvironmentKey,
    ServiceDescriptor,
    is_valid_hour,
    services_from_payload,
)
from registry import EnvironmentRegistry, can_transition
from stacks import StackBackend
from templates import new_stack_name, render_template

__all__ = [
    "OMITTED",
    "ProvisioningController",
    "resolve_schedule_time",
    "validate_services",
]


class _Omitted:
    """Marker for a request field that was not sent at all."""

    def __repr__(self) -> str:
        return "OMITTED"


OMITTED: Any = _Omitted()


def resolve_schedule_time(value: Any, default: str, field_name: str) -> str:
    """Stored schedule time for a request field.

    An omitted field takes ``default``; an explicit ``""`` or ``None``
    disables the schedule. The two must never collapse into each other.
    """
    if value is OMITTED:
        return default
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string in HH:MM format")
    value = value.strip()
    if value and not is_valid_hour(value):
        raise ValidationError(f"{field_name} must be HH:MM (00:00-23:59) or empty, got {value!r}")
    return value


def validate_services(raw_services: Optional[Sequence[Any]]) -> List[ServiceDescriptor]:
    try:
        services = services_from_payload(raw_services)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if not services:
        raise ValidationError("Missing services")
    for index, svc in enumerate(services):
        if not svc.repo or not svc.branch:
            raise ValidationError(f"Service at index {index} requires repo and branch")
        owner, name = svc.owner_and_name
        if not owner or not name:
            raise ValidationError(f"Service at index {index} repo must be 'owner/name', got {svc.repo!r}")
    return services


class ProvisioningController:
    def __init__(self, registry: EnvironmentRegistry, stacks: Optional[StackBackend] = None,
                 archive_on_delete: bool = ARCHIVE_ON_DELETE):
        self.registry = registry
        self.stacks = stacks or StackBackend()
        self.archive_on_delete = archive_on_delete

    def create(
        self,
        services: Sequence[Any],
        alias: str = "",
        stop_time: Any = OMITTED,
        start_time: Any = OMITTED,
        owner: str = "user",
    ) -> Environment:
        descriptors = validate_services(services)
        stop = resolve_schedule_time(stop_time, DEFAULT_STOP_TIME, "stopTime")
        start = resolve_schedule_time(start_time, DEFAULT_START_TIME, "startTime")

        key = (descriptors[0].repo, descriptors[0].branch)
        existing = self.registry.get(key)
        if existing is not None and existing.status != STATUS_ARCHIVED:
            raise ConflictError(f"Environment {key[0]}@{key[1]} already exists")

        stack_name = new_stack_name()
        submitted = self.stacks.submit(stack_name, render_template(stack_name, descriptors))

        env = Environment(
            stack_id=submitted.stack_id,
            stack_name=submitted.stack_name,
            services=descriptors,
            alias=str(alias or ""),
            stop_time=stop,
            start_time=start,
            status=STATUS_CREATING,
            created_at=_now_z(),
            owner=owner,
        )
        try:
            self.registry.put(env)
        except ConflictError:
            # Lost a race with a concurrent create for the same key.
            logger.warning("[WARNING] Registry conflict for %s; tearing down stack %s", key, stack_name)
            self.stacks.delete(submitted.stack_id)
            raise

        _emit_structured_observability(
            component="provisioning_controller",
            event="environment_created",
            environment=stack_name,
            extra={"services": len(descriptors), "stop_time": stop, "start_time": start},
        )
        return env

    def resolve(self, key: Optional[EnvironmentKey] = None, stack_id: Optional[str] = None) -> Environment:
        if stack_id:
            env = self.registry.find_by_external_id(stack_id)
        elif key and key[0] and key[1]:
            env = self.registry.get(key)
        else:
            raise ValidationError("Provide stackId or repo and branch")
        if env is None:
            raise NotFoundError("Environment not found")
        return env

    def delete(self, key: Optional[EnvironmentKey] = None, stack_id: Optional[str] = None) -> Environment:
        """Tear down the stack, then archive or remove the record.

        Deletion is accepted from any status. Archiving only applies where
        the state machine allows it; otherwise the record is removed.
        """
        env = self.resolve(key, stack_id)
        self.stacks.delete(env.stack_id or env.stack_name)

        if self.archive_on_delete and can_transition(env.status, STATUS_ARCHIVED):
            env = self.registry.archive(env.key)
        else:
            self.registry.delete(env.key)

        _emit_structured_observability(
            component="provisioning_controller",
            event="environment_deleted",
            environment=env.stack_name,
            extra={"archived": env.status == STATUS_ARCHIVED},
        )
        return env

    def mark_ready(self, key: EnvironmentKey) -> Environment:
        """Record the external readiness signal (CREATING -> RUNNING)."""
        env = self.registry.require(key)
        if env.status == STATUS_RUNNING:
            return env
        return self.registry.transition(key, STATUS_RUNNING, expected_status=STATUS_CREATING,
                                        reason="stack ready")

    def refresh_status(self, key: EnvironmentKey) -> Environment:
        """Record readiness if the stack has finished provisioning."""
        env = self.registry.require(key)
        if env.status != STATUS_CREATING:
            return env
        description = self.stacks.describe(env.stack_name)
        if description is not None and description.ready:
            return self.mark_ready(key)
        return env
