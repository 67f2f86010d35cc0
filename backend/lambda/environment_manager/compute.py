"""compute.py — EC2 host suspension for scheduled stop/start.

Used by the schedule reconciler only when SUSPEND_COMPUTE_ON_SCHEDULE is on;
otherwise schedule transitions change the registry status alone.
"""
from __future__ import annotations

from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from branchbox_shared.aws_clients import _get_ec2
from config import logger

__all__ = ["ComputeHost"]


class ComputeHost:
    def __init__(self, ec2: Any = None):
        self._ec2 = ec2

    @property
    def ec2(self):
        if self._ec2 is None:
            self._ec2 = _get_ec2()
        return self._ec2

    def stop(self, instance_id: str) -> None:
        if not instance_id:
            return
        self.ec2.stop_instances(InstanceIds=[instance_id])
        logger.info("[INFO] Stopped instance %s", instance_id)

    def start(self, instance_id: str) -> None:
        if not instance_id:
            return
        self.ec2.start_instances(InstanceIds=[instance_id])
        logger.info("[INFO] Started instance %s", instance_id)

    def state(self, instance_id: str) -> str:
        if not instance_id:
            return "UNKNOWN"
        try:
            resp = self.ec2.describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as exc:
            logger.warning("[WARNING] describe_instances %s failed: %s", instance_id, exc)
            return "UNKNOWN"
        for reservation in resp.get("Reservations") or []:
            for instance in reservation.get("Instances") or []:
                return str((instance.get("State") or {}).get("Name") or "UNKNOWN")
        return "UNKNOWN"
