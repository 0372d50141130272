from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from vpn_orchestrator.errors import ProviderError
from vpn_orchestrator.secrets.aws import AwsSecretManager

from conftest import make_settings

SESSION_ID = "6f1c2a4e-8d0b-4f55-9a51-2b7d3c1e9f00"


def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.create_secret.return_value = {"ARN": "arn:aws:secretsmanager:secret:vpn/x", "Name": "x"}
    return client


@pytest.fixture
def manager(tmp_path, client) -> AwsSecretManager:
    return AwsSecretManager(make_settings(tmp_path), client=client)


def _paginate(client: MagicMock, pages: list[dict]) -> MagicMock:
    paginator = MagicMock()
    paginator.paginate.return_value = pages
    client.get_paginator.return_value = paginator
    return paginator


@pytest.mark.asyncio
async def test_store_creates_tagged_secret(manager, client) -> None:
    arn = await manager.store_session_secret(SESSION_ID, "server-private-key", "c2VjcmV0")

    assert arn == "arn:aws:secretsmanager:secret:vpn/x"
    client.create_secret.assert_called_once_with(
        Name=f"vpn/{SESSION_ID}/server-private-key",
        SecretString="c2VjcmV0",
        Tags=[{"Key": "vpn-session-id", "Value": SESSION_ID}],
    )


@pytest.mark.asyncio
async def test_store_overwrites_existing_secret(manager, client) -> None:
    client.create_secret.side_effect = _client_error("ResourceExistsException", "CreateSecret")
    client.put_secret_value.return_value = {"ARN": "arn:existing"}

    arn = await manager.store_session_secret(SESSION_ID, "client-private-key", "v")

    assert arn == "arn:existing"
    client.put_secret_value.assert_called_once_with(
        SecretId=f"vpn/{SESSION_ID}/client-private-key", SecretString="v"
    )


@pytest.mark.asyncio
async def test_store_failure_is_provider_error(manager, client) -> None:
    client.create_secret.side_effect = _client_error("AccessDeniedException", "CreateSecret")

    with pytest.raises(ProviderError) as exc_info:
        await manager.store_session_secret(SESSION_ID, "server-private-key", "v")

    assert exc_info.value.code == "AccessDeniedException"


@pytest.mark.asyncio
async def test_cleanup_deletes_every_tagged_secret(manager, client) -> None:
    paginator = _paginate(
        client,
        [
            {"SecretList": [{"ARN": "arn:1"}, {"ARN": "arn:2"}]},
            {"SecretList": [{"ARN": "arn:3"}]},
        ],
    )
    client.delete_secret.side_effect = [
        {},
        _client_error("ResourceNotFoundException", "DeleteSecret"),
        {},
    ]

    deleted = await manager.cleanup_session_secrets(SESSION_ID)

    assert deleted == 2
    paginator.paginate.assert_called_once_with(
        Filters=[
            {"Key": "tag-key", "Values": ["vpn-session-id"]},
            {"Key": "tag-value", "Values": [SESSION_ID]},
        ]
    )
    client.delete_secret.assert_any_call(SecretId="arn:1", ForceDeleteWithoutRecovery=True)


@pytest.mark.asyncio
async def test_cleanup_with_nothing_tagged(manager, client) -> None:
    _paginate(client, [{"SecretList": []}])

    assert await manager.cleanup_session_secrets(SESSION_ID) == 0
    client.delete_secret.assert_not_called()


@pytest.mark.asyncio
async def test_cleanup_list_failure_is_provider_error(manager, client) -> None:
    paginator = _paginate(client, [])
    paginator.paginate.side_effect = _client_error("ThrottlingException", "ListSecrets")

    with pytest.raises(ProviderError) as exc_info:
        await manager.cleanup_session_secrets(SESSION_ID)

    assert exc_info.value.transient is True


def test_secret_name_strips_prefix_slashes(tmp_path) -> None:
    manager = AwsSecretManager(
        make_settings(tmp_path, compute={"secret_prefix": "/vpn/sessions/"}), client=MagicMock()
    )

    assert manager.secret_name("abc", "key") == "vpn/sessions/abc/key"
