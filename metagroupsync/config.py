"""Configuration management for metagroupsync.

This module provides centralized configuration using Pydantic Settings.
Every synchronisation policy (unenrol action, lost-link disposition, role
filtering, group naming) is read from here so the engine, the incremental
handler and the CLI always agree.

Environment Profiles:
    - DEVELOPMENT: Verbose logging, human-readable output, tracing off
    - PRODUCTION: JSON logs, tracing enabled, optimized for stability
    - TESTING: In-memory database, minimal logging, fast execution

Example:
    >>> from metagroupsync.config import settings, UnenrolAction
    >>> settings.unenrol_action
    <UnenrolAction.SUSPEND_NOROLES: 'suspendnoroles'>
    >>> if settings.lost_link_action_is_destructive:
    ...     print("Lost links will unenrol users")
"""

from enum import StrEnum
from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from metagroupsync.utils import parse_id_list


class UnenrolAction(StrEnum):
    """What happens to a derived enrolment whose source enrolment is gone."""

    UNENROL = "unenrol"
    SUSPEND = "suspend"
    SUSPEND_NOROLES = "suspendnoroles"


class LostLinkAction(StrEnum):
    """Disposition applied to links whose source course or group was deleted."""

    KEEP = "keep"
    SUSPEND_NOROLES = "suspendnoroles"
    UNENROL = "unenrol"


class Environment(StrEnum):
    """Runtime environment with specific behavior profiles.

    Attributes:
        DEVELOPMENT: Verbose logging, safe defaults
        PRODUCTION: Structured logs, tracing enabled
        TESTING: In-memory database, minimal logging, fast execution
        STAGING: Pre-production validation environment
    """

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


DEFAULT_ENABLED_METHODS = ["manual", "self", "cohort", "meta", "metagroup"]


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Attributes:
        sync_enabled: Master switch for every synchronisation path
        enabled_methods: Enrolment methods whose enrolments qualify as sources
        nosync_role_ids: Roles that are never mirrored into target courses
        sync_all: Mirror every source member, not only those holding a synced role
        unenrol_action: Policy for derived enrolments that lost their source
        lost_link_action: Policy for links whose source course/group disappeared
        delete_empty_groups: Delete target groups left empty by moves or lost links
        add_group_suffix: Name created target groups "<name> (linked)"
        database_path: Path to SQLite database file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment Configuration
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Runtime environment (development, production, testing, staging)",
    )

    # Data Directory Configuration
    data_dir: Path = Field(
        Path("./data"),
        description="Base directory for all data files (database, logs)",
    )

    # Database Configuration
    database_path: Path = Field(
        Path("metagroupsync.db"),  # Will be updated to data_dir/metagroupsync.db by validator
        description="Path to SQLite database file (defaults to data_dir/metagroupsync.db)",
    )

    # Synchronisation Policy
    sync_enabled: bool = Field(
        default=True,
        description="When disabled, runs return status 2 and revoke every role granted by links",
    )
    enabled_methods: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ENABLED_METHODS),
        description="Enrolment methods whose enrolments count as source enrolments",
    )
    nosync_role_ids: Annotated[list[int], NoDecode] = Field(
        default_factory=list,
        description="Role ids that are never synchronised",
    )
    sync_all: bool = Field(
        default=True,
        description="Mirror all source members; when false only users with a synced role",
    )
    unenrol_action: UnenrolAction = Field(
        default=UnenrolAction.SUSPEND_NOROLES,
        description="Action for derived enrolments whose source enrolment disappeared",
    )
    lost_link_action: LostLinkAction = Field(
        default=LostLinkAction.SUSPEND_NOROLES,
        description=(
            "Action when a link's source course or group is deleted. "
            "'unenrol' is destructive: it purges the users' course data"
        ),
    )
    delete_empty_groups: bool = Field(
        default=False,
        description="Delete target groups that become empty",
    )
    add_group_suffix: bool = Field(
        default=True,
        description='Add the "(linked)" suffix to automatically created group names',
    )
    sync_on_create: bool = Field(
        default=True,
        description="Synchronise a link's target course right after creating it",
    )
    source_courses_batch_size: int = Field(
        50,
        ge=1,
        le=1000,
        description="Links whose source-course list is initialised per reconciliation run",
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_to_file: bool = Field(
        default=True,
        description="Enable file logging in addition to console",
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (recommended for production)",
    )

    # Observability (OpenTelemetry)
    enable_tracing: bool = Field(
        default=False,
        description="Enable OpenTelemetry distributed tracing",
    )
    otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry OTLP endpoint for traces (e.g., http://localhost:4317)",
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand and resolve data directory path."""
        path = Path(v).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("enabled_methods", mode="before")
    @classmethod
    def split_methods(cls, v: str | list[str]) -> list[str]:
        """Accept a comma-separated list from the environment."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("nosync_role_ids", mode="before")
    @classmethod
    def split_role_ids(cls, v: str | list[int]) -> list[int]:
        """Accept a comma-separated list of role ids from the environment."""
        if isinstance(v, str):
            return parse_id_list(v)
        return v

    @model_validator(mode="after")
    def set_database_path_default(self) -> "Settings":
        """Set database_path to data_dir/metagroupsync.db if not explicitly provided."""
        if self.database_path == Path("metagroupsync.db"):
            self.database_path = self.data_dir / "metagroupsync.db"
        if not self.is_memory_database:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
        return self

    @model_validator(mode="after")
    def apply_environment_profile(self) -> "Settings":
        """Apply environment-specific defaults.

        Profiles:
            - PRODUCTION: INFO logging, JSON logs, tracing enabled
            - DEVELOPMENT: DEBUG logging, human-readable logs, tracing disabled
            - TESTING: In-memory database, ERROR logging, no file logging, no tracing
            - STAGING: Production-like with INFO logging

        Returns:
            Modified settings instance with environment-specific adjustments
        """
        if self.environment == Environment.PRODUCTION:
            if self.log_level == "DEBUG":
                self.log_level = "INFO"
            self.log_json = True
            self.enable_tracing = True

        elif self.environment == Environment.DEVELOPMENT:
            self.log_level = "DEBUG"
            self.log_json = False
            self.enable_tracing = False

        elif self.environment == Environment.TESTING:
            self.database_path = Path(":memory:")
            self.log_level = "ERROR"
            self.log_to_file = False
            self.log_json = False
            self.enable_tracing = False

        elif self.environment == Environment.STAGING:
            self.log_level = "INFO"
            self.log_json = True
            self.enable_tracing = True

        return self

    @property
    def is_memory_database(self) -> bool:
        """Check if the database lives in memory."""
        return str(self.database_path) == ":memory:"

    @property
    def database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        return f"sqlite:///{self.database_path}"

    @property
    def lost_link_action_is_destructive(self) -> bool:
        """Check if lost links will fully unenrol their users."""
        return self.lost_link_action == LostLinkAction.UNENROL

    @property
    def keeps_roles_on_unenrol(self) -> bool:
        """Check if derived roles survive a missing source enrolment."""
        return self.unenrol_action == UnenrolAction.SUSPEND

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment == Environment.TESTING


def get_settings() -> Settings:
    """Get a fresh settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
