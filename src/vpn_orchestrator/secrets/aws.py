"""AWS Secrets Manager adapter for per-session key material."""

from __future__ import annotations

import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from vpn_orchestrator.aws_client import client_error_code, get_client, to_provider_error
from vpn_orchestrator.config import Settings
from vpn_orchestrator.utils.aio import run_blocking

logger = logging.getLogger(__name__)

SESSION_TAG = "vpn-session-id"


class AwsSecretManager:
    def __init__(self, settings: Settings, *, client: Any = None) -> None:
        self._settings = settings
        self._prefix = settings.compute.secret_prefix.strip("/")
        self._client_override = client

    def _client(self) -> Any:
        if self._client_override is not None:
            return self._client_override
        return get_client("secretsmanager", self._settings)

    def secret_name(self, session_id: str, name: str) -> str:
        return f"{self._prefix}/{session_id}/{name}"

    async def store_session_secret(self, session_id: str, name: str, value: str) -> str:
        return await run_blocking(self._store_sync, session_id, name, value)

    async def cleanup_session_secrets(self, session_id: str) -> int:
        return await run_blocking(self._cleanup_sync, session_id)

    def _store_sync(self, session_id: str, name: str, value: str) -> str:
        client = self._client()
        secret_name = self.secret_name(session_id, name)
        try:
            response = client.create_secret(
                Name=secret_name,
                SecretString=value,
                Tags=[{"Key": SESSION_TAG, "Value": session_id}],
            )
        except ClientError as exc:
            if client_error_code(exc) != "ResourceExistsException":
                raise to_provider_error(exc, "secretsmanager.create_secret") from exc
            try:
                response = client.put_secret_value(SecretId=secret_name, SecretString=value)
            except (ClientError, BotoCoreError) as put_exc:
                raise to_provider_error(put_exc, "secretsmanager.put_secret_value") from put_exc
        except BotoCoreError as exc:
            raise to_provider_error(exc, "secretsmanager.create_secret") from exc
        logger.info("Stored secret %s", secret_name)
        return response.get("ARN", secret_name)

    def _cleanup_sync(self, session_id: str) -> int:
        client = self._client()
        filters = [
            {"Key": "tag-key", "Values": [SESSION_TAG]},
            {"Key": "tag-value", "Values": [session_id]},
        ]
        deleted = 0
        try:
            for page in client.get_paginator("list_secrets").paginate(Filters=filters):
                for secret in page.get("SecretList") or []:
                    if self._delete_one(client, secret["ARN"]):
                        deleted += 1
        except (ClientError, BotoCoreError) as exc:
            raise to_provider_error(exc, "secretsmanager.list_secrets") from exc
        logger.info("Deleted %d secret(s) for session %s", deleted, session_id)
        return deleted

    def _delete_one(self, client: Any, secret_id: str) -> bool:
        try:
            client.delete_secret(SecretId=secret_id, ForceDeleteWithoutRecovery=True)
        except ClientError as exc:
            if client_error_code(exc) == "ResourceNotFoundException":
                return False
            raise
        return True
