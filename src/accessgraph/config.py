"""Configuration for the access-control engine.

Pydantic-validated settings shared by every component. Construct an
``AccessControlConfig`` directly, or call ``load_config_from_env()``;
nothing else in the package reads the environment.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Standard log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RestrictionStrategy(str, Enum):
    """How collection restriction predicates are computed.

    - EFFECTIVE: look up the materialized effective assignments directly
    - TRAVERSAL: walk the graph down from the nodes holding real assignments
    """

    EFFECTIVE = "effective"
    TRAVERSAL = "traversal"


_DATABASE_SCHEMES = ("sqlite", "postgresql", "mysql")


class AccessControlConfig(BaseModel):
    """Settings for the access-control engine.

    Environment variables:
        LOG_LEVEL                     logging level
        LOG_JSON                      JSON log output (true/false)
        DATABASE_URL                  SQLAlchemy URL; unset = in-memory store
        AC_DEFAULT_QUERY_PERMISSIONS  comma-separated, default "query"
        AC_DEFAULT_VIEW_PERMISSIONS   comma-separated, default "view"
        AC_DEFAULT_ROLES_ON_CREATE    comma-separated role names
        AC_USE_ANONYMOUS              anonymous principal when no subject
        AC_RESTRICT_ASSIGNMENT        check granter permissions on grant/revoke
        AC_RESTRICTION_STRATEGY       effective | traversal
    """

    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
    )
    log_json: bool = Field(
        default=False,
        description="Use JSON log format (default: plain text)",
    )

    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy database URL (None selects the in-memory store)",
    )

    default_query_permissions: list[str] = Field(
        default_factory=lambda: ["query"],
        description="Permissions required to list an entity type with no declaration",
    )
    default_view_permissions: list[str] = Field(
        default_factory=lambda: ["view"],
        description="Permissions required to read one record with no declaration",
    )
    default_roles_on_create: list[str] = Field(
        default_factory=list,
        description="Role names granted to the creating principals on every new node",
    )

    use_anonymous: bool = Field(
        default=True,
        description="Use the anonymous principal when a context has no subjects "
        "(False falls back to the unrestrictable principal)",
    )
    restrict_assignment: bool = Field(
        default=True,
        description="Require grant_roles/share_own_roles to grant or revoke",
    )
    restriction_strategy: RestrictionStrategy = Field(
        default=RestrictionStrategy.EFFECTIVE,
        description="Algorithm used to build restriction predicates",
    )

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate database URL scheme."""
        if v is None:
            return v
        scheme = v.split("://", 1)[0].split("+", 1)[0]
        if "://" not in v or scheme not in _DATABASE_SCHEMES:
            raise ValueError(f"Database URL must use one of {list(_DATABASE_SCHEMES)}")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str | LogLevel) -> LogLevel:
        """Convert string to LogLevel enum."""
        if isinstance(v, LogLevel):
            return v
        if isinstance(v, str):
            try:
                return LogLevel[v.upper()]
            except KeyError:
                raise ValueError(f"Invalid log level: {v}. Must be one of {[e.value for e in LogLevel]}")
        raise ValueError(f"Log level must be string or LogLevel enum, got {type(v)}")

    model_config = {
        "extra": "forbid",
    }


def _split(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_config_from_env() -> AccessControlConfig:
    """Load configuration from environment variables.

    This is the ONLY place where os.getenv is allowed.

    Returns:
        AccessControlConfig with values from environment or defaults.
    """
    import os

    truthy = ("true", "1", "yes", "on")

    return AccessControlConfig(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=os.getenv("LOG_JSON", "false").lower() in truthy,
        database_url=os.getenv("DATABASE_URL") or None,
        default_query_permissions=_split(os.getenv("AC_DEFAULT_QUERY_PERMISSIONS", "query")),
        default_view_permissions=_split(os.getenv("AC_DEFAULT_VIEW_PERMISSIONS", "view")),
        default_roles_on_create=_split(os.getenv("AC_DEFAULT_ROLES_ON_CREATE", "")),
        use_anonymous=os.getenv("AC_USE_ANONYMOUS", "true").lower() in truthy,
        restrict_assignment=os.getenv("AC_RESTRICT_ASSIGNMENT", "true").lower() in truthy,
        restriction_strategy=os.getenv("AC_RESTRICTION_STRATEGY", "effective").lower(),
    )


__all__ = [
    "AccessControlConfig",
    "LogLevel",
    "RestrictionStrategy",
    "load_config_from_env",
]
