"""Base configuration management for the analysis pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

T = TypeVar("T", bound="BaseConfiguration")


class Environment(str, Enum):
    """Environments the pipeline can run in."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class ConfigurationAuditLog(BaseModel):
    """Record of a single configuration override."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    environment: Environment
    key: str
    old_value: Any = None
    new_value: Any
    source: str
    reason: str | None = None


class BaseConfiguration(BaseSettings):
    """Settings base class read from the environment and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Current run environment",
    )
    version: str = Field(default="1.0.0", description="Configuration version")
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last configuration update timestamp",
    )

    audit_enabled: bool = Field(
        default=True, description="Keep an audit trail of configuration overrides"
    )

    def to_dict(self, exclude_sensitive: bool = True) -> dict[str, Any]:
        """Convert configuration to dictionary, optionally redacting sensitive data."""
        data = self.model_dump(mode="json")

        if exclude_sensitive:
            sensitive_patterns = ["password", "token", "secret", "credential"]
            filtered_data = {}
            for k, v in data.items():
                if not any(pattern in k.lower() for pattern in sensitive_patterns):
                    filtered_data[k] = v
                else:
                    filtered_data[k] = "***REDACTED***"
            return filtered_data

        return data

    def with_overrides(
        self: T, source: str = "code", reason: str | None = None, **overrides: Any
    ) -> tuple[T, list[ConfigurationAuditLog]]:
        """Return a validated copy with ``overrides`` applied plus an audit trail."""
        current = self.model_dump()
        audit: list[ConfigurationAuditLog] = []
        for key, value in overrides.items():
            if key not in current:
                raise ValueError(f"Unknown configuration key: {key}")
            if self.audit_enabled:
                audit.append(
                    ConfigurationAuditLog(
                        environment=self.environment,
                        key=key,
                        old_value=current[key],
                        new_value=value,
                        source=source,
                        reason=reason,
                    )
                )
            current[key] = value
        return type(self).model_validate(current), audit

    def validate_configuration(self) -> list[str]:
        """Validate the current configuration and return any issues."""
        return []


class ConfigurationManager:
    """Registry of named configuration objects."""

    def __init__(self):
        self._configurations: dict[str, BaseConfiguration] = {}

    def register_configuration(self, name: str, config: BaseConfiguration) -> None:
        """Register a configuration instance."""
        self._configurations[name] = config

    def get_configuration(self, name: str) -> BaseConfiguration | None:
        """Get a registered configuration by name."""
        return self._configurations.get(name)

    def get_all_configurations(self) -> dict[str, dict[str, Any]]:
        """Get all configurations as dictionaries."""
        return {
            name: config.to_dict(exclude_sensitive=True)
            for name, config in self._configurations.items()
        }

    def validate_all_configurations(self) -> dict[str, list[str]]:
        """Validate all registered configurations."""
        validation_results = {}
        for name, config in self._configurations.items():
            issues = config.validate_configuration()
            if issues:
                validation_results[name] = issues
        return validation_results


# Global configuration manager instance
config_manager = ConfigurationManager()
