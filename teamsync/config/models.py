"""Configuration models for entra-grafana-sync."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogFormat(str, Enum):
    """Log output formats."""
    JSON = "json"
    TEXT = "text"


class OrgRole(str, Enum):
    """Grafana organization roles, weakest first."""
    VIEWER = "Viewer"
    EDITOR = "Editor"
    ADMIN = "Admin"


class GrafanaConfig(BaseModel):
    """Grafana API configuration."""

    url: str = Field(
        "http://grafana:3000",
        description="Grafana base URL",
        min_length=1,
    )
    admin_user: str = Field(
        "admin",
        description="Admin login used for basic auth when no token is set",
    )
    admin_password: Optional[SecretStr] = Field(
        None,
        description="Admin password used for basic auth",
    )
    admin_token: Optional[SecretStr] = Field(
        None,
        description="Service account token (preferred over basic auth)",
    )
    insecure_tls: bool = Field(
        False,
        description="Skip TLS certificate verification",
    )
    timeout_seconds: int = Field(
        30,
        description="Timeout for Grafana API calls in seconds",
        ge=1,
    )
    rate_limit_per_minute: int = Field(
        1200,
        description="Rate limit for Grafana API calls per minute",
        ge=1,
    )
    max_retries: int = Field(
        3,
        description="Maximum number of retry attempts for idempotent calls",
        ge=0,
    )
    retry_delay_seconds: float = Field(
        1.0,
        description="Initial delay between retries in seconds",
        ge=0.1,
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require an http(s) URL and drop the trailing slash."""
        v = v.strip().rstrip("/")
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("Grafana URL must start with http:// or https://")
        return v


class EntraConfig(BaseModel):
    """Microsoft Entra ID (Graph API) configuration."""

    tenant_id: str = Field(..., description="Directory (tenant) ID", min_length=1)
    client_id: str = Field(..., description="Application (client) ID", min_length=1)
    client_secret: SecretStr = Field(..., description="Application client secret")
    authority_base_url: str = Field(
        "https://login.microsoftonline.com",
        description="OAuth2 authority base URL",
    )
    graph_api_base_url: str = Field(
        "https://graph.microsoft.com/v1.0",
        description="Microsoft Graph base URL",
    )
    managed_group_pattern: str = Field(
        "gapp_*_grf_*",
        description="Glob (case-insensitive) on group display names considered managed by this service",
    )
    timeout_seconds: int = Field(30, ge=1)
    rate_limit_per_minute: int = Field(600, ge=1)
    max_retries: int = Field(3, ge=0)
    retry_delay_seconds: float = Field(1.0, ge=0.1)

    @field_validator("authority_base_url", "graph_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")


class SyncPolicyConfig(BaseModel):
    """Reconciliation policy."""

    default_user_role: OrgRole = Field(
        OrgRole.VIEWER,
        description="Org role used when neither mapping nor org sets one",
    )
    allow_create_users: bool = Field(
        True,
        description="Create platform accounts for directory members that have none",
    )
    allow_remove_team_members: bool = Field(
        True,
        description="Remove team members no longer present in any mapped group",
    )

    @field_validator("default_user_role", mode="before")
    @classmethod
    def normalize_role(cls, v):
        if isinstance(v, str):
            for role in OrgRole:
                if role.value.lower() == v.strip().lower():
                    return role
        return v


class ScheduleConfig(BaseModel):
    """Background scheduling and run-slot settings."""

    interval_seconds: int = Field(
        900,
        description="Seconds between scheduled build+apply cycles (0 disables the timer)",
        ge=0,
    )
    cycle_timeout_seconds: int = Field(
        600,
        description="Upper bound on one build+apply cycle",
        ge=1,
    )
    lock_ttl_seconds: int = Field(
        900,
        description="Expiry of the cross-process run lease",
        ge=1,
    )
    cache_ttl_seconds: int = Field(
        30,
        description="Freshness of the advisory external-state cache",
        ge=0,
    )

    @model_validator(mode="after")
    def validate_lease(self) -> "ScheduleConfig":
        """The run lease must outlive a cycle."""
        if self.lock_ttl_seconds <= self.cycle_timeout_seconds:
            raise ValueError("lock_ttl_seconds must be greater than cycle_timeout_seconds")
        return self


class StoreConfig(BaseModel):
    """Mapping store location."""

    data_dir: Path = Field(Path("./data"), description="Directory holding sync.db")
    database_name: str = Field("sync.db", min_length=1)

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_name


class LoggingConfig(BaseModel):
    """Logging output settings."""

    log_level: LogLevel = LogLevel.INFO
    log_format: LogFormat = LogFormat.TEXT

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("log_format", mode="before")
    @classmethod
    def lower_format(cls, v):
        return v.lower() if isinstance(v, str) else v


class SyncConfig(BaseModel):
    """Root configuration."""

    grafana: GrafanaConfig = Field(default_factory=GrafanaConfig)
    entra: EntraConfig
    sync: SyncPolicyConfig = Field(default_factory=SyncPolicyConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_grafana_auth(self) -> "SyncConfig":
        """Either a token or a password must be available for Grafana."""
        token = self.grafana.admin_token.get_secret_value() if self.grafana.admin_token else ""
        password = self.grafana.admin_password.get_secret_value() if self.grafana.admin_password else ""
        if not token and not password:
            raise ValueError("grafana.admin_token or grafana.admin_password must be set")
        return self
