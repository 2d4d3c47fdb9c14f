"""Credential providers — issue a service token and resolve the repository endpoint.

``CodeArtifactProvider`` talks to AWS CodeArtifact through boto3.  boto3 is
synchronous, so each call runs in a worker thread via ``asyncio.to_thread``
and never blocks request handling on the event loop.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from codeartifact_proxy.errors import AuthError
from codeartifact_proxy.models import CREDENTIAL_LIFETIME, Credential, EnvironmentConfig

logger = logging.getLogger(__name__)


class CredentialProvider(abc.ABC):
    """Obtains a fresh Credential for an environment."""

    @abc.abstractmethod
    async def authenticate(self, config: EnvironmentConfig) -> Credential:
        """Return a new credential, or raise AuthError."""


class CodeArtifactProvider(CredentialProvider):
    """AWS CodeArtifact: ``GetAuthorizationToken`` + ``GetRepositoryEndpoint``.

    AWS credentials come from the default boto3 chain (env vars, shared
    config, instance/task role).  One client is kept per region.
    """

    def __init__(self, session: Any | None = None) -> None:
        self._session = session
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._duration_seconds = int(CREDENTIAL_LIFETIME.total_seconds())

    def _client(self, region: str) -> Any:
        with self._lock:
            client = self._clients.get(region)
            if client is None:
                session = self._session or boto3.session.Session()
                client = session.client("codeartifact", region_name=region)
                self._clients[region] = client
            return client

    def _fetch(self, config: EnvironmentConfig) -> Credential:
        client = self._client(config.region)
        issued_at = datetime.now(timezone.utc)

        auth = client.get_authorization_token(
            domain=config.domain,
            domainOwner=config.owner,
            durationSeconds=self._duration_seconds,
        )
        token = auth.get("authorizationToken")
        if not token:
            raise AuthError(f"CodeArtifact returned no authorization token for {config.domain}")

        endpoint = client.get_repository_endpoint(
            domain=config.domain,
            domainOwner=config.owner,
            repository=config.repository,
            format=config.package_format.value,
        )
        url = endpoint.get("repositoryEndpoint")
        if not url:
            raise AuthError(
                f"CodeArtifact returned no {config.package_format.value} endpoint "
                f"for {config.domain}/{config.repository}"
            )

        return Credential(endpoint_url=url, authorization_token=token, issued_at=issued_at)

    async def authenticate(self, config: EnvironmentConfig) -> Credential:
        logger.info(
            "Authenticating against CodeArtifact %s/%s (%s)",
            config.domain,
            config.repository,
            config.region,
        )
        try:
            credential = await asyncio.to_thread(self._fetch, config)
        except (BotoCoreError, ClientError) as exc:
            raise AuthError(f"CodeArtifact authentication failed: {exc}") from exc
        logger.info("Authorization successful for %s/%s", config.domain, config.repository)
        return credential
