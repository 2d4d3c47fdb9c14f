"""Shared fixtures for proxy tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from codeartifact_proxy.config import EnvironmentRegistry, ProxyConfig
from codeartifact_proxy.errors import AuthError
from codeartifact_proxy.models import Credential, EnvironmentConfig, EnvironmentId
from codeartifact_proxy.provider import CredentialProvider

ENDPOINT = "https://cart.example.com/npm/repo/"

DEV_TOKEN = "bf9d88e0-e97e-45e9-a492-766155ae69ac"
STAGE_TOKEN = "fce9ba15-7ce0-42db-8c9b-40eaf96e9b2c"
PROD_TOKEN = "1cd67aa3-76a2-45dd-ab86-c27a6da0591c"


def make_credential(
    minutes_old: float = 0,
    endpoint: str = ENDPOINT,
    token: str = "svc-token",
    now: datetime | None = None,
) -> Credential:
    now = now or datetime.now(timezone.utc)
    return Credential(
        endpoint_url=endpoint,
        authorization_token=token,
        issued_at=now - timedelta(minutes=minutes_old),
    )


class FakeProvider(CredentialProvider):
    """Hands out credentials from a script; records every call."""

    def __init__(self, endpoint: str = ENDPOINT, fail: bool = False) -> None:
        self.endpoint = endpoint
        self.fail = fail
        self.calls: list[EnvironmentConfig] = []

    async def authenticate(self, config: EnvironmentConfig) -> Credential:
        self.calls.append(config)
        if self.fail:
            raise AuthError("provider unavailable")
        return Credential(
            endpoint_url=self.endpoint,
            authorization_token=f"svc-token-{config.repository}",
        )


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return ProxyConfig(
        region="us-east-1",
        environments={
            EnvironmentId.DEV: EnvironmentConfig(
                region="us-east-1", owner="111111111111", domain="acme", repository="acme-dev"
            ),
            EnvironmentId.STAGE: EnvironmentConfig(
                region="us-east-1", owner="111111111111", domain="acme", repository="acme-stage"
            ),
            EnvironmentId.PROD: EnvironmentConfig(
                region="us-east-1", owner="111111111111", domain="acme", repository="acme-prod"
            ),
        },
        routes={
            DEV_TOKEN: EnvironmentId.DEV,
            STAGE_TOKEN: EnvironmentId.STAGE,
            PROD_TOKEN: EnvironmentId.PROD,
        },
    )


@pytest.fixture
def registry(proxy_config: ProxyConfig) -> EnvironmentRegistry:
    return EnvironmentRegistry.from_config(proxy_config)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
