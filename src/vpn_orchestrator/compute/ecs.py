"""ECS Fargate compute provisioner.

One WireGuard task per session. Tasks are started with ``startedBy`` set to
the session id, so a task whose ARN was lost (timeout, crash) can still be
found and stopped.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from vpn_orchestrator.aws_client import client_error_code, get_client, to_provider_error
from vpn_orchestrator.compute.base import ComputeInstance, ComputeSpec, ComputeStatus
from vpn_orchestrator.config import Settings
from vpn_orchestrator.errors import ProviderError
from vpn_orchestrator.utils.aio import run_blocking

logger = logging.getLogger(__name__)

SESSION_TAG = "vpn-session-id"
USER_TAG = "vpn-user-id"

_STATUS_MAP = {
    "PROVISIONING": ComputeStatus.PENDING,
    "PENDING": ComputeStatus.PENDING,
    "ACTIVATING": ComputeStatus.PENDING,
    "RUNNING": ComputeStatus.RUNNING,
    "DEACTIVATING": ComputeStatus.STOPPED,
    "STOPPING": ComputeStatus.STOPPED,
    "DEPROVISIONING": ComputeStatus.STOPPED,
    "STOPPED": ComputeStatus.STOPPED,
}

_NOT_FOUND_CODES = frozenset({"InvalidParameterException", "ResourceNotFoundException"})


def task_id_from_arn(task_arn: str) -> str:
    return task_arn.rsplit("/", 1)[-1]


class EcsComputeProvisioner:
    def __init__(
        self,
        settings: Settings,
        *,
        ecs_client: Any = None,
        logs_client: Any = None,
        ec2_client: Any = None,
        poll_interval_seconds: float = 5.0,
        wait_seconds: float = 110.0,
    ) -> None:
        self._settings = settings
        self._compute = settings.compute
        self._ecs = ecs_client
        self._logs = logs_client
        self._ec2 = ec2_client
        self._poll_interval = poll_interval_seconds
        self._wait_seconds = wait_seconds

    def _client(self, service: str) -> Any:
        attr = {"ecs": "_ecs", "logs": "_logs", "ec2": "_ec2"}[service]
        client = getattr(self, attr)
        if client is None:
            client = get_client(service, self._settings)
            setattr(self, attr, client)
        return client

    # -- protocol ---------------------------------------------------------

    async def create(self, spec: ComputeSpec) -> ComputeInstance:
        return await run_blocking(self._create_sync, spec)

    async def delete(self, instance_ref: str) -> None:
        await run_blocking(self._delete_sync, instance_ref)

    async def find_instance(self, session_id: str) -> str | None:
        return await run_blocking(self._find_sync, session_id)

    async def get_logs(self, instance_ref: str) -> str:
        return await run_blocking(self._get_logs_sync, instance_ref)

    async def get_status(self, instance_ref: str) -> ComputeStatus:
        return await run_blocking(self._get_status_sync, instance_ref)

    # -- blocking implementations ----------------------------------------

    def _run_task_params(self, spec: ComputeSpec) -> dict[str, Any]:
        environment = {
            "SESSION_ID": spec.session_id,
            "SERVER_PUBLIC_KEY": spec.server_public_key,
            "CLIENT_PUBLIC_KEY": spec.client_public_key,
            "CLIENT_ADDRESS": spec.client_address,
            "SERVER_PRIVATE_KEY_SECRET": spec.server_key_secret_id,
            "VPN_PORT": str(spec.vpn_port),
            **spec.environment,
        }
        return {
            "cluster": self._compute.cluster,
            "taskDefinition": self._compute.task_definition,
            "launchType": "FARGATE",
            "count": 1,
            "startedBy": spec.session_id[:36],
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": list(self._compute.subnets),
                    "securityGroups": list(self._compute.security_groups),
                    "assignPublicIp": "ENABLED" if self._compute.assign_public_ip else "DISABLED",
                }
            },
            "overrides": {
                "containerOverrides": [
                    {
                        "name": self._compute.container_name,
                        "environment": [
                            {"name": key, "value": value} for key, value in environment.items()
                        ],
                    }
                ]
            },
            "tags": [
                {"key": SESSION_TAG, "value": spec.session_id},
                {"key": USER_TAG, "value": spec.user_id},
            ],
        }

    def _create_sync(self, spec: ComputeSpec) -> ComputeInstance:
        ecs = self._client("ecs")
        try:
            response = ecs.run_task(**self._run_task_params(spec))
        except (ClientError, BotoCoreError) as exc:
            raise to_provider_error(exc, "ecs.run_task") from exc

        tasks = response.get("tasks") or []
        if not tasks:
            failures = response.get("failures") or []
            reason = failures[0].get("reason", "unknown") if failures else "no task started"
            # RESOURCE:* reasons are capacity shortfalls that clear up on their own.
            raise ProviderError(
                f"ecs.run_task started no task: {reason}",
                code="RunTaskFailure",
                transient=reason.startswith("RESOURCE"),
            )

        task_arn = tasks[0]["taskArn"]
        logger.info("Started task %s for session %s", task_arn, spec.session_id)
        task = self._wait_running(task_arn)
        return ComputeInstance(
            instance_ref=task_arn,
            public_ip=self._public_ip(task),
            port=spec.vpn_port,
        )

    def _describe(self, task_arn: str) -> dict[str, Any] | None:
        response = self._client("ecs").describe_tasks(
            cluster=self._compute.cluster, tasks=[task_arn]
        )
        tasks = response.get("tasks") or []
        return tasks[0] if tasks else None

    def _wait_running(self, task_arn: str) -> dict[str, Any]:
        deadline = time.monotonic() + self._wait_seconds
        while True:
            try:
                task = self._describe(task_arn)
            except (ClientError, BotoCoreError) as exc:
                raise to_provider_error(exc, "ecs.describe_tasks", instance_ref=task_arn) from exc
            if task is not None:
                status = task.get("lastStatus", "")
                if status == "RUNNING":
                    return task
                if _STATUS_MAP.get(status) is ComputeStatus.STOPPED:
                    raise ProviderError(
                        f"Task stopped before running: {task.get('stoppedReason', status)}",
                        code="TaskStopped",
                        instance_ref=task_arn,
                    )
            if time.monotonic() >= deadline:
                raise ProviderError(
                    f"Task {task_arn} not running after {self._wait_seconds:g}s",
                    code=ProviderError.TIMEOUT,
                    instance_ref=task_arn,
                )
            time.sleep(self._poll_interval)

    def _public_ip(self, task: dict[str, Any]) -> str | None:
        details: dict[str, str] = {}
        for attachment in task.get("attachments") or []:
            if attachment.get("type") != "ElasticNetworkInterface":
                continue
            details = {d["name"]: d["value"] for d in attachment.get("details") or []}
            break
        eni_id = details.get("networkInterfaceId")
        if eni_id:
            try:
                response = self._client("ec2").describe_network_interfaces(
                    NetworkInterfaceIds=[eni_id]
                )
            except (ClientError, BotoCoreError) as exc:
                logger.warning("Could not resolve public IP for %s: %s", eni_id, exc)
            else:
                interfaces = response.get("NetworkInterfaces") or []
                if interfaces:
                    public_ip = interfaces[0].get("Association", {}).get("PublicIp")
                    if public_ip:
                        return public_ip
        return details.get("privateIPv4Address")

    def _delete_sync(self, instance_ref: str) -> None:
        try:
            self._client("ecs").stop_task(
                cluster=self._compute.cluster,
                task=instance_ref,
                reason="VPN session terminated",
            )
        except ClientError as exc:
            message = exc.response.get("Error", {}).get("Message", "")
            if client_error_code(exc) in _NOT_FOUND_CODES and "not found" in message.lower():
                logger.info("Task %s already gone", instance_ref)
                return
            raise to_provider_error(exc, "ecs.stop_task", instance_ref=instance_ref) from exc
        except BotoCoreError as exc:
            raise to_provider_error(exc, "ecs.stop_task", instance_ref=instance_ref) from exc
        logger.info("Stopped task %s", instance_ref)

    def _find_sync(self, session_id: str) -> str | None:
        try:
            response = self._client("ecs").list_tasks(
                cluster=self._compute.cluster, startedBy=session_id[:36]
            )
        except (ClientError, BotoCoreError) as exc:
            raise to_provider_error(exc, "ecs.list_tasks") from exc
        arns = response.get("taskArns") or []
        return arns[0] if arns else None

    def _get_logs_sync(self, instance_ref: str) -> str:
        stream = (
            f"{self._compute.log_stream_prefix}/{self._compute.container_name}/"
            f"{task_id_from_arn(instance_ref)}"
        )
        try:
            response = self._client("logs").get_log_events(
                logGroupName=self._compute.log_group,
                logStreamName=stream,
                startFromHead=False,
                limit=200,
            )
        except ClientError as exc:
            if client_error_code(exc) == "ResourceNotFoundException":
                return ""
            raise to_provider_error(exc, "logs.get_log_events", instance_ref=instance_ref) from exc
        except BotoCoreError as exc:
            raise to_provider_error(exc, "logs.get_log_events", instance_ref=instance_ref) from exc
        return "\n".join(event.get("message", "") for event in response.get("events") or [])

    def _get_status_sync(self, instance_ref: str) -> ComputeStatus:
        try:
            task = self._describe(instance_ref)
        except (ClientError, BotoCoreError) as exc:
            raise to_provider_error(exc, "ecs.describe_tasks", instance_ref=instance_ref) from exc
        if task is None:
            return ComputeStatus.NOT_FOUND
        return _STATUS_MAP.get(task.get("lastStatus", ""), ComputeStatus.UNKNOWN)
