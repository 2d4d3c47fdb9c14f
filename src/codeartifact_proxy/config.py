"""Configuration loading for the proxy.

Reads an optional YAML file and layers the deployment environment variables
on top of it.  Pydantic models validate the result; any problem surfaces as
``ConfigError`` so the process refuses to start.

Recognised environment variables::

    AWS_REGION                          default region for every environment
    BE_CODEARTIFACT_TYPE                npm | pypi | maven | nuget (default npm)
    BE_CODEARTIFACT_<ENV>_OWNER         domain owner (AWS account ID)
    BE_CODEARTIFACT_<ENV>_DOMAIN
    BE_CODEARTIFACT_<ENV>_REPOSITORY
    BE_PROXY_<ENV>_TOKEN                route token bound to <ENV>

where ``<ENV>`` is ``DEV``, ``STAGE`` or ``PROD``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from codeartifact_proxy.errors import ConfigError
from codeartifact_proxy.models import EnvironmentConfig, EnvironmentId, PackageFormat

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class ListenConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)


class ReauthConfig(BaseModel):
    interval: float = Field(default=15.0, gt=0)  # seconds between checks
    refresh_after_minutes: float = 45.0
    max_age_minutes: float = 60.0

    @model_validator(mode="after")
    def _ordered(self) -> ReauthConfig:
        if self.refresh_after_minutes >= self.max_age_minutes:
            raise ValueError("refresh_after_minutes must be below max_age_minutes")
        return self


class RewriteConfig(BaseModel):
    """Which responses get their upstream URLs rewritten."""

    user_agents: list[str] = Field(default_factory=lambda: ["npm"])
    content_types: list[str] = Field(
        default_factory=lambda: ["application/json", "application/vnd.npm.install-v1+json"]
    )


class ProxyConfig(BaseModel):
    listen: ListenConfig = Field(default_factory=ListenConfig)
    region: str = ""
    package_format: PackageFormat = PackageFormat.NPM
    environments: dict[EnvironmentId, EnvironmentConfig] = Field(default_factory=dict)
    routes: dict[str, EnvironmentId] = Field(default_factory=dict)
    reauth: ReauthConfig = Field(default_factory=ReauthConfig)
    rewrite: RewriteConfig = Field(default_factory=RewriteConfig)
    basic_auth_username: str = "aws"
    correlation_ttl: float = Field(default=300.0, gt=0)  # seconds
    upstream_timeout: float = Field(default=300.0, gt=0)  # seconds

    @model_validator(mode="before")
    @classmethod
    def _inherit_defaults(cls, data: Any) -> Any:
        """Fill per-environment region/package_format from the top level."""
        if not isinstance(data, dict):
            return data
        envs = data.get("environments")
        if not isinstance(envs, dict):
            return data
        for env in envs.values():
            if not isinstance(env, dict):
                continue
            if data.get("region"):
                env.setdefault("region", data["region"])
            if data.get("package_format"):
                env.setdefault("package_format", data["package_format"])
        return data

    @model_validator(mode="after")
    def _check_routes(self) -> ProxyConfig:
        for token, env in self.routes.items():
            if not token.strip():
                raise ValueError(f"empty route token bound to {env.value}")
            if token != token.strip() or " " in token:
                # Clients send the token as a single Bearer credential.
                raise ValueError(f"route token bound to {env.value} contains whitespace")
            if env not in self.environments:
                raise ValueError(f"route token bound to unconfigured environment {env.value!r}")
        return self


# ── Environment Registry ─────────────────────────────────────────────────────


class EnvironmentRegistry(Mapping[EnvironmentId, EnvironmentConfig]):
    """Read-only table of environment → repository coordinates."""

    def __init__(self, environments: Mapping[EnvironmentId, EnvironmentConfig]) -> None:
        self._environments = MappingProxyType(dict(environments))

    def __getitem__(self, env: EnvironmentId) -> EnvironmentConfig:
        return self._environments[env]

    def __iter__(self) -> Iterator[EnvironmentId]:
        return iter(self._environments)

    def __len__(self) -> int:
        return len(self._environments)

    @classmethod
    def from_config(cls, config: ProxyConfig) -> EnvironmentRegistry:
        return cls(config.environments)


# ── Loading ──────────────────────────────────────────────────────────────────


def _apply_env_overrides(raw: dict[str, Any], environ: Mapping[str, str]) -> None:
    region = environ.get("AWS_REGION", "").strip()
    if region:
        raw["region"] = region

    package_format = environ.get("BE_CODEARTIFACT_TYPE", "").strip()
    if package_format:
        raw["package_format"] = package_format.lower()

    envs = raw.get("environments") or {}
    routes = raw.get("routes") or {}
    if not isinstance(envs, dict) or not isinstance(routes, dict):
        # Leave malformed sections for model validation to report.
        return
    raw["environments"] = envs
    raw["routes"] = routes

    for env in EnvironmentId:
        prefix = f"BE_CODEARTIFACT_{env.name}_"
        for field in ("owner", "domain", "repository"):
            value = environ.get(prefix + field.upper(), "").strip()
            if value:
                envs.setdefault(env.value, {})[field] = value

        token = environ.get(f"BE_PROXY_{env.name}_TOKEN", "").strip()
        if token:
            bound = routes.get(token)
            if bound is not None and EnvironmentId.parse(str(bound)) is not env:
                raise ConfigError(
                    f"Route token from BE_PROXY_{env.name}_TOKEN is already bound to {bound}"
                )
            routes[token] = env.value


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProxyConfig:
    """Load proxy configuration from an optional YAML file plus the environment.

    Args:
        config_path: Path to a YAML config file, or None to rely on env vars only.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated ProxyConfig with every environment configured.

    Raises:
        ConfigError: If the file is missing/unreadable or validation fails.
    """
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Proxy config not found: {config_path}")
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Proxy config must be a mapping: {config_path}")

    _apply_env_overrides(raw, environ)

    try:
        config = ProxyConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid proxy configuration:\n{exc}") from exc

    missing = [env.value for env in EnvironmentId if env not in config.environments]
    if missing:
        raise ConfigError(f"Missing configuration for environment(s): {', '.join(missing)}")
    if not config.routes:
        raise ConfigError("No route tokens configured; every request would be rejected")

    logger.info(
        "Loaded proxy config: %d environment(s), %d route token(s), listen=%s:%d",
        len(config.environments),
        len(config.routes),
        config.listen.host,
        config.listen.port,
    )
    return config
