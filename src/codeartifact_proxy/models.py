"""Core data models for the proxy."""

from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from codeartifact_proxy.errors import ConfigError

# A CodeArtifact authorization token is requested with a one-hour lifetime.
CREDENTIAL_LIFETIME = timedelta(minutes=60)


# ── Environments ─────────────────────────────────────────────────────────────


class EnvironmentId(str, enum.Enum):
    """Backing repository environments multiplexed behind one listener."""

    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"

    @classmethod
    def parse(cls, value: str) -> EnvironmentId:
        """Validate a raw environment name at the config boundary."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            allowed = ", ".join(e.value for e in cls)
            raise ConfigError(
                f"Unknown environment {value!r} (expected one of: {allowed})"
            ) from None


class PackageFormat(str, enum.Enum):
    """Repository endpoint formats CodeArtifact can hand out."""

    NPM = "npm"
    PYPI = "pypi"
    MAVEN = "maven"
    NUGET = "nuget"


class EnvironmentConfig(BaseModel):
    """Repository coordinates for one environment. Never mutated after startup."""

    model_config = ConfigDict(frozen=True)

    region: str
    owner: str = Field(description="AWS account ID that owns the CodeArtifact domain")
    domain: str
    repository: str
    package_format: PackageFormat = PackageFormat.NPM

    @field_validator("region", "owner", "domain", "repository")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


# ── Credentials ──────────────────────────────────────────────────────────────


class Credential(BaseModel):
    """A service token plus the repository endpoint it was issued for.

    Instances are immutable; a refresh replaces the whole credential.
    """

    model_config = ConfigDict(frozen=True)

    endpoint_url: str
    authorization_token: str = Field(repr=False)
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("endpoint_url")
    @classmethod
    def _trailing_slash(cls, v: str) -> str:
        parts = urlsplit(v)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"endpoint_url must be absolute, got {v!r}")
        return v if v.endswith("/") else v + "/"

    @field_validator("issued_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def endpoint_host(self) -> str:
        return urlsplit(self.endpoint_url).netloc

    @property
    def endpoint_with_port(self) -> str:
        """The endpoint URL with an explicit ``:443`` appended to its host.

        CodeArtifact sometimes echoes this form back in package metadata.
        """
        parts = urlsplit(self.endpoint_url)
        if parts.port is not None:
            return self.endpoint_url
        return urlunsplit(parts._replace(netloc=f"{parts.netloc}:443"))

    def age(self, now: datetime | None = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return now - self.issued_at

    def age_minutes(self, now: datetime | None = None) -> float:
        return self.age(now).total_seconds() / 60

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.age(now) > CREDENTIAL_LIFETIME
