from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from pydantic import SecretStr


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    app_name: str = os.getenv("SGP_APP_NAME", "sgp")
    db_path: str = os.getenv("SGP_DB_PATH", "sgp.db")
    poll_interval_s: int = _env_int("SGP_POLL_INTERVAL_S", 5)
    docker_network: str = os.getenv("SGP_DOCKER_NETWORK", "sgp")
    gateway_timeout_s: int = _env_int("SGP_GATEWAY_TIMEOUT_S", 10)
    reconciler_enabled: bool = _env_bool("SGP_RECONCILER_ENABLED", True)

    # Images
    registry_host: str = os.getenv("SGP_REGISTRY_HOST", "{region}-docker.pkg.dev")
    proxy_tag: str = os.getenv("SGP_PROXY_TAG", "latest")
    build_root: str = os.getenv("SGP_BUILD_ROOT", ".")

    # Startup probe defaults
    probe_timeout_s: int = _env_int("SGP_PROBE_TIMEOUT_S", 2)
    probe_period_s: int = _env_int("SGP_PROBE_PERIOD_S", 3)
    probe_failure_threshold: int = _env_int("SGP_PROBE_FAILURE_THRESHOLD", 10)

    # Sources treated as the platform load balancer for ingress classification.
    lb_source_ranges: tuple[str, ...] = field(
        default_factory=lambda: _env_list("SGP_LB_SOURCE_RANGES", "35.191.0.0/16,130.211.0.0/22")
    )

    # Email alerting (optional)
    enable_email: bool = _env_bool("SGP_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("SGP_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("SGP_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("SGP_SMTP_USER")
    smtp_password: str | None = os.getenv("SGP_SMTP_PASSWORD")
    email_from: str | None = os.getenv("SGP_EMAIL_FROM")
    email_to: str | None = os.getenv("SGP_EMAIL_TO")


settings = Settings()


TAG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]{0,127}$")
DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")

REDACTED = "****"


def validate_version(version: str) -> None:
    """A version is either an image tag or a sha256 digest."""
    if TAG_RE.match(version) or DIGEST_RE.match(version):
        return
    raise ValueError("Invalid version. Use an image tag ([A-Za-z0-9._-], max 128 chars) or a sha256 digest.")


@dataclass(frozen=True)
class DeployConfig:
    """Everything a single deploy needs, resolved once and passed explicitly.

    Secret material lives in ``secret_key`` as a ``SecretStr`` so that
    ``repr()`` and accidental formatting never show it.
    """

    project: str
    region: str
    version: str = "latest"
    mode: str = "production"
    log_level: str = "info"
    cors_allow_origins: str = "*"
    secret_key: SecretStr = field(default_factory=lambda: SecretStr(""))

    def __post_init__(self) -> None:
        if not self.project:
            raise ValueError("project is required")
        if not self.region:
            raise ValueError("region is required")
        validate_version(self.version)

    @classmethod
    def from_env(cls, project: str, region: str, version: str = "latest") -> "DeployConfig":
        return cls(
            project=project,
            region=region,
            version=version,
            mode=os.getenv("SGP_MODE", "production"),
            log_level=os.getenv("SGP_LOG_LEVEL", "info"),
            cors_allow_origins=os.getenv("SGP_CORS_ALLOW_ORIGINS", "*"),
            secret_key=SecretStr(os.getenv("SGP_SECRET_KEY", "")),
        )

    def secrets(self) -> list[str]:
        value = self.secret_key.get_secret_value()
        return [value] if value else []

    def redact(self, text: str) -> str:
        for value in self.secrets():
            text = text.replace(value, REDACTED)
        return text
