#!/usr/bin/env python3
"""
Configuration Management for the Transaction Feed

Handles environment-based configuration with secure defaults and validation.
Supports multiple environments (development, test, production).
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Environment(Enum):
    """Application environment types."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


@dataclass
class ApiConfig:
    """Remote API configuration."""

    base_url: str = "http://localhost:3000/api/v1"
    timeout: float = 30.0  # Seconds; a timed-out mutation is rolled back
    access_token: str | None = None
    refresh_token: str | None = None


@dataclass
class FeedConfig:
    """Feed engine tuning."""

    page_limit: int = 30
    settle_window_seconds: float = 1.5  # Delay before the reconciliation refetch
    stale_time_seconds: float = 30.0  # Age after which observe() refetches
    mutation_history: int = 100  # Settled mutations kept for diagnostics


@dataclass
class Config:
    """
    Main configuration class for the transaction feed.

    Loads configuration from environment variables with secure defaults
    and validation for each environment type.
    """

    environment: Environment
    api: ApiConfig
    feed: FeedConfig

    # Application settings
    debug: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_environment(cls) -> "Config":
        """Create configuration from environment variables."""
        env = Environment(os.getenv("TXFEED_ENV", "development"))

        api = ApiConfig(
            base_url=os.getenv("TXFEED_API_URL", "http://localhost:3000/api/v1").rstrip("/"),
            timeout=float(os.getenv("TXFEED_API_TIMEOUT", "30")),
            access_token=os.getenv("TXFEED_ACCESS_TOKEN"),
            refresh_token=os.getenv("TXFEED_REFRESH_TOKEN"),
        )

        feed = FeedConfig(
            page_limit=int(os.getenv("FEED_PAGE_LIMIT", "30")),
            settle_window_seconds=float(os.getenv("FEED_SETTLE_WINDOW_SECONDS", "1.5")),
            stale_time_seconds=float(os.getenv("FEED_STALE_TIME_SECONDS", "30")),
            mutation_history=int(os.getenv("FEED_MUTATION_HISTORY", "100")),
        )

        return cls(
            environment=env,
            api=api,
            feed=feed,
            debug=os.getenv("DEBUG", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> list:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.api.base_url.startswith(("http://", "https://")):
            errors.append(f"TXFEED_API_URL must be an http(s) URL: {self.api.base_url}")

        if self.environment == Environment.PRODUCTION and not self.api.base_url.startswith("https://"):
            errors.append("TXFEED_API_URL must use https in production")

        if self.api.timeout <= 0:
            errors.append("API timeout must be positive")
        if self.feed.page_limit <= 0:
            errors.append("Feed page limit must be positive")
        if self.feed.settle_window_seconds < 0:
            errors.append("Settle window must be non-negative")
        if self.feed.stale_time_seconds < 0:
            errors.append("Stale time must be non-negative")
        if self.feed.mutation_history < 0:
            errors.append("Mutation history size must be non-negative")

        return errors

    def setup_logging(self) -> None:
        """Configure logging based on configuration."""
        level = getattr(logging, self.log_level, logging.INFO)

        # Configure format based on environment
        if self.environment == Environment.DEVELOPMENT:
            format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            format_str = "%(asctime)s - %(levelname)s - %(message)s"

        logging.basicConfig(level=level, format=format_str, datefmt="%Y-%m-%d %H:%M:%S")

        # Reduce noise from external libraries in production
        if self.environment == Environment.PRODUCTION:
            logging.getLogger("urllib3").setLevel(logging.WARNING)
            logging.getLogger("requests").setLevel(logging.WARNING)

    def get_sensitive_fields(self) -> list:
        """Get list of field names that contain sensitive data."""
        return [
            "api.access_token",
            "api.refresh_token",
        ]

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Convert configuration to dictionary, optionally excluding sensitive data."""
        result: dict[str, Any] = {}

        for field_name, field_value in self.__dict__.items():
            if hasattr(field_value, "__dict__") and not isinstance(field_value, Enum):
                nested_dict: dict[str, Any] = {}
                for nested_name, nested_value in field_value.__dict__.items():
                    full_field_name = f"{field_name}.{nested_name}"

                    if (
                        not include_sensitive
                        and full_field_name in self.get_sensitive_fields()
                        and nested_value is not None
                    ):
                        nested_dict[nested_name] = "***REDACTED***"
                    else:
                        nested_dict[nested_name] = nested_value

                result[field_name] = nested_dict
            elif isinstance(field_value, Enum):
                result[field_name] = field_value.value
            else:
                result[field_name] = field_value

        return result


# Global configuration instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_environment()

        errors = _config.validate()
        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        _config.setup_logging()

    return _config


def reload_config() -> Config:
    """Reload configuration from environment (useful for testing)."""
    global _config
    _config = None
    return get_config()


def is_development() -> bool:
    """Check if running in development environment."""
    return get_config().environment == Environment.DEVELOPMENT


def is_test() -> bool:
    """Check if running in test environment."""
    return get_config().environment == Environment.TEST


def is_production() -> bool:
    """Check if running in production environment."""
    return get_config().environment == Environment.PRODUCTION
