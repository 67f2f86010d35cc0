"""scheduler.py — Scheduled auto-stop / auto-start sweep.

Runs hourly from an EventBridge schedule. Hours are evaluated in a single
fixed UTC offset (KST, +9 by default); only the hour of ``HH:MM`` matters.

Policy for real compute: a sweep always records the logical status change.
When ``suspend_compute`` is on it also stops/starts the EC2 host named by the
stack's InstanceId output; a failure there is logged and reported but does
not revert the recorded status.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from branchbox_shared.serialization import _emit_structured_observability
from compute import ComputeHost
from config import SCHEDULE_UTC_OFFSET_HOURS, SUSPEND_COMPUTE_ON_SCHEDULE, logger
from errors import BranchBoxError
from models import STATUS_RUNNING, STATUS_STOPPED, Environment, parse_hour
from registry import EnvironmentRegistry
from stacks import StackBackend
from templates import OUTPUT_INSTANCE_ID

__all__ = ["ScheduleReconciler", "SweepReport", "current_schedule_hour"]

_HOST_DOWN = frozenset({"stopping", "stopped"})
_HOST_UP = frozenset({"pending", "running"})


def current_schedule_hour(now: Optional[dt.datetime] = None, offset_hours: int = SCHEDULE_UTC_OFFSET_HOURS) -> int:
    """Wall-clock hour at the fixed schedule offset, from UTC time."""
    now = now or dt.datetime.now(dt.timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(dt.timezone.utc)
    return (now.hour + offset_hours) % 24


@dataclass
class SweepReport:
    hour: int
    stopped: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hour": self.hour,
            "stopped": self.stopped,
            "started": self.started,
            "errors": self.errors,
        }


class ScheduleReconciler:
    def __init__(
        self,
        registry: EnvironmentRegistry,
        *,
        suspend_compute: bool = SUSPEND_COMPUTE_ON_SCHEDULE,
        compute: Optional[ComputeHost] = None,
        stacks: Optional[StackBackend] = None,
    ):
        self.registry = registry
        self.suspend_compute = suspend_compute
        self.compute = compute
        self.stacks = stacks
        if suspend_compute:
            self.compute = compute or ComputeHost()
            self.stacks = stacks or StackBackend()

    def sweep(self, current_hour: int) -> SweepReport:
        """Stop pass, then start pass; each is a full independent scan."""
        report = SweepReport(hour=current_hour)
        logger.info("Scheduler running. Current schedule hour: %d", current_hour)
        self._pass(report, STATUS_RUNNING, STATUS_STOPPED, "StopTime", report.stopped)
        self._pass(report, STATUS_STOPPED, STATUS_RUNNING, "StartTime", report.started)
        _emit_structured_observability(
            component="schedule_reconciler",
            event="sweep_finished",
            error_code="sweep_errors" if report.errors else "",
            extra={"hour": current_hour, "stopped": len(report.stopped),
                   "started": len(report.started), "errors": len(report.errors)},
        )
        return report

    def _pass(self, report: SweepReport, from_status: str, to_status: str,
              time_field: str, done: List[str]) -> None:
        try:
            candidates = self.registry.find_by_status(from_status)
        except Exception as exc:
            logger.exception("[ERROR] Scan for %s environments failed", from_status)
            report.errors.append({"environment": "", "phase": from_status, "error": str(exc)})
            return

        for env in candidates:
            scheduled = env.stop_time if time_field == "StopTime" else env.start_time
            try:
                hour = parse_hour(scheduled)
                if hour is None or hour != report.hour:
                    continue
                logger.info("%s %s (Scheduled: %s)", "Stopping" if to_status == STATUS_STOPPED else "Starting",
                            env.stack_name, scheduled)
                self.registry.transition(env.key, to_status, expected_status=from_status,
                                         reason=f"schedule {time_field} {scheduled}")
            except (BranchBoxError, ValueError) as exc:
                logger.warning("[WARNING] Skipping %s during %s pass: %s", env.stack_name, from_status, exc)
                report.errors.append({"environment": env.stack_name, "phase": from_status, "error": str(exc)})
                continue
            except Exception as exc:
                logger.exception("[ERROR] Unexpected failure reconciling %s", env.stack_name)
                report.errors.append({"environment": env.stack_name, "phase": from_status, "error": str(exc)})
                continue
            done.append(env.stack_name)
            if self.suspend_compute:
                self._apply_compute(env, to_status, report)

    def _apply_compute(self, env: Environment, to_status: str, report: SweepReport) -> None:
        try:
            instance_id = self.stacks.outputs(env.stack_name).get(OUTPUT_INSTANCE_ID, "")
            state = self.compute.state(instance_id)
            if to_status == STATUS_STOPPED:
                if state in _HOST_DOWN:
                    logger.info("[INFO] Instance %s already %s", instance_id, state)
                    return
                self.compute.stop(instance_id)
            else:
                if state in _HOST_UP:
                    logger.info("[INFO] Instance %s already %s", instance_id, state)
                    return
                self.compute.start(instance_id)
        except Exception as exc:
            logger.warning("[WARNING] Compute %s for %s failed: %s", to_status, env.stack_name, exc)
            report.errors.append({"environment": env.stack_name, "phase": "compute", "error": str(exc)})
