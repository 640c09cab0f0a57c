"""Configuration module for the consent lifecycle engine.

This module provides the ConsentConfig class for configuring request
lifetimes, the public link format, webhook signing and delivery, the durable
store backend, the request cache and the expiration sweeper.

Example:
    Basic usage with defaults:

        >>> config = ConsentConfig()
        >>> config.default_ttl_minutes
        60

    Custom configuration:

        >>> config = ConsentConfig(
        ...     default_ttl_minutes=15,
        ...     public_base_url="https://consent.example.com",
        ...     webhook_secret="s3cr3t",
        ...     storage_adapter="file",
        ...     file_storage_path="/var/lib/consent",
        ... )

    Loading from environment:

        >>> import os
        >>> os.environ['CONSENT_WEBHOOK_SECRET'] = 's3cr3t'
        >>> os.environ['CONSENT_DEFAULT_TTL_MINUTES'] = '30'
        >>> config = ConsentConfig.from_env()
"""

import os
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from consent_lifecycle.exceptions import ConfigurationError
from consent_lifecycle.observability.logging import get_logger

logger = get_logger(__name__)

# Used only when allow_default_webhook_secret is set
DEFAULT_WEBHOOK_SECRET = "default_secret"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConsentConfig(BaseModel):
    """Configuration for the consent lifecycle engine.

    Attributes:
        default_ttl_minutes: Lifetime applied when a creation call does not
            supply a positive ttl. Must be between 1 and 10080 (7 days).
        default_channel: Channel label applied when none is supplied.
        public_base_url: Scheme and host used to build the link sent to the
            subject. A trailing slash is stripped.
        consent_path: Path prefix of the consent page; the link is
            ``{public_base_url}{consent_path}/{token}``.
        webhook_secret: Shared secret for signing webhook payloads.
        allow_default_webhook_secret: When True and no secret is configured,
            sign with a fixed well-known secret instead of refusing to start.
            Intended for local development only.
        webhook_timeout_seconds: Send timeout for one webhook delivery.
        webhook_workers: Number of concurrent webhook delivery workers.
        internal_api_secret: Secret expected in the X-Internal-Secret header
            of internal endpoints (the sweep trigger).
        storage_adapter: Durable store backend: "memory" or "file".
        file_storage_path: Directory for the "file" backend.
        cache_max_entries: Upper bound on cached requests. 0 means unbounded.
        sweep_scope: "cache" sweeps the requests resident in this process's
            cache; "store" asks the durable store for every expirable request.
        log_level: Log level for configure_logging().
        json_logs: Emit JSON logs (True) or console logs (False).

    Note:
        This class is immutable (frozen=True). Create a new instance if you
        need different settings.
    """

    default_ttl_minutes: int = Field(
        default=60,
        description="Default request lifetime in minutes (1-10080)",
    )
    default_channel: str = Field(
        default="WHATSAPP",
        min_length=1,
        description="Channel label used when the caller supplies none",
    )
    public_base_url: str = Field(
        default="http://localhost:3002",
        description="Base URL of the public consent page",
    )
    consent_path: str = Field(
        default="/consent",
        description="Path prefix of the public consent page",
    )
    webhook_secret: str | None = Field(
        default=None,
        description="Shared secret used to sign webhook payloads",
    )
    allow_default_webhook_secret: bool = Field(
        default=False,
        description="Fall back to a fixed secret when none is configured",
    )
    webhook_timeout_seconds: float = Field(
        default=5.0,
        description="Webhook send timeout in seconds (0-60]",
    )
    webhook_workers: int = Field(
        default=1,
        description="Concurrent webhook delivery workers (1-32)",
    )
    internal_api_secret: str | None = Field(
        default=None,
        description="Secret for internal endpoints (X-Internal-Secret)",
    )
    storage_adapter: Literal["memory", "file"] = Field(
        default="memory",
        description="Durable store backend",
    )
    file_storage_path: str = Field(
        default="/tmp/consent-requests",
        description="Directory for the file store backend",
    )
    cache_max_entries: int = Field(
        default=0,
        description="Maximum cached requests (0=unbounded)",
    )
    sweep_scope: Literal["cache", "store"] = Field(
        default="cache",
        description="Which requests the expiration sweeper scans",
    )
    log_level: str = Field(default="INFO", description="Log level")
    json_logs: bool = Field(default=True, description="Emit JSON logs")

    model_config = {"frozen": True}

    @field_validator("default_ttl_minutes")
    @classmethod
    def validate_default_ttl_minutes(cls, v: int) -> int:
        """Validate TTL is within acceptable range.

        Raises:
            ValueError: If TTL is not between 1 and 10080 (7 days).
        """
        if not (1 <= v <= 10080):
            raise ValueError(f"default_ttl_minutes must be between 1 and 10080 (7 days), got {v}")
        return v

    @field_validator("public_base_url")
    @classmethod
    def validate_public_base_url(cls, v: str) -> str:
        """Strip trailing slashes and require an http(s) URL.

        Example:
            >>> ConsentConfig(public_base_url="https://c.example.com/").public_base_url
            'https://c.example.com'
        """
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"public_base_url must start with http:// or https://, got {v!r}")
        return v

    @field_validator("consent_path")
    @classmethod
    def validate_consent_path(cls, v: str) -> str:
        v = "/" + v.strip().strip("/")
        if v == "/":
            raise ValueError("consent_path must not be empty")
        return v

    @field_validator("webhook_secret", "internal_api_secret", mode="before")
    @classmethod
    def blank_secret_is_unset(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("webhook_timeout_seconds")
    @classmethod
    def validate_webhook_timeout_seconds(cls, v: float) -> float:
        if not (0 < v <= 60):
            raise ValueError(f"webhook_timeout_seconds must be in (0, 60], got {v}")
        return v

    @field_validator("webhook_workers")
    @classmethod
    def validate_webhook_workers(cls, v: int) -> int:
        if not (1 <= v <= 32):
            raise ValueError(f"webhook_workers must be between 1 and 32, got {v}")
        return v

    @field_validator("cache_max_entries")
    @classmethod
    def validate_cache_max_entries(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"cache_max_entries must be >= 0, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level: {v}. Valid levels are: {', '.join(sorted(VALID_LOG_LEVELS))}"
            )
        return v

    def build_consent_url(self, token: str) -> str:
        """Return the public link for a token."""
        return f"{self.public_base_url}{self.consent_path}/{token}"

    def resolve_webhook_secret(self) -> str:
        """Return the secret used to sign webhook payloads.

        Returns:
            The configured secret, or the fixed development default when
            allow_default_webhook_secret is set.

        Raises:
            ConfigurationError: If no secret is configured and the default
                fallback is not allowed.
        """
        if self.webhook_secret is not None:
            return self.webhook_secret
        if not self.allow_default_webhook_secret:
            raise ConfigurationError(
                "No webhook secret configured; set CONSENT_WEBHOOK_SECRET "
                "or enable allow_default_webhook_secret for development"
            )
        logger.warning(
            "config.default_webhook_secret",
            message="Signing webhooks with the built-in default secret",
        )
        return DEFAULT_WEBHOOK_SECRET

    @classmethod
    def from_env(cls, prefix: str = "CONSENT_") -> "ConsentConfig":
        """Create configuration from environment variables.

        Variable names are uppercase field names with the prefix, e.g.
        ``CONSENT_WEBHOOK_SECRET``. Missing variables keep their defaults.

        Args:
            prefix: Prefix for environment variable names.

        Returns:
            ConsentConfig instance populated from environment variables.
        """
        config_dict: dict[str, Any] = {}

        field_types = {
            "default_ttl_minutes": int,
            "default_channel": str,
            "public_base_url": str,
            "consent_path": str,
            "webhook_secret": str,
            "allow_default_webhook_secret": bool,
            "webhook_timeout_seconds": float,
            "webhook_workers": int,
            "internal_api_secret": str,
            "storage_adapter": str,
            "file_storage_path": str,
            "cache_max_entries": int,
            "sweep_scope": str,
            "log_level": str,
            "json_logs": bool,
        }

        for field_name, field_type in field_types.items():
            env_var = f"{prefix}{field_name.upper()}"
            env_value = os.environ.get(env_var)

            if env_value is not None:
                if field_type is int:
                    config_dict[field_name] = int(env_value)
                elif field_type is float:
                    config_dict[field_name] = float(env_value)
                elif field_type is bool:
                    config_dict[field_name] = env_value.strip().lower() in ("1", "true", "yes", "on")
                else:
                    config_dict[field_name] = env_value

        return cls(**config_dict)

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "ConsentConfig":
        """Create configuration from a dictionary.

        Raises:
            ValidationError: If the dictionary contains invalid values.
        """
        return cls(**config_dict)
