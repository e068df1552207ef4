"""
Configuration management for firedoc library.

This module handles environment variables, Firestore credentials, and default
settings for the document store.
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

BACKENDS = ("firestore", "memory")


class FiredocConfig(BaseSettings):
    """Configuration settings for firedoc library."""

    model_config = SettingsConfigDict(
        env_prefix="FIREDOC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Firestore Configuration
    project: Optional[str] = None
    database: Optional[str] = None
    credentials_file: Optional[str] = None
    credentials_json: Optional[str] = None
    access_token_file: Optional[str] = None
    backend: str = "firestore"
    request_timeout: Optional[float] = Field(default=None, gt=0)

    # Transaction Configuration
    transaction_max_attempts: int = Field(default=5, ge=1)
    transaction_base_delay: float = Field(default=0.05, ge=0)
    transaction_max_delay: float = Field(default=2.0, ge=0)

    # Code Allocation Configuration
    code_length: int = Field(default=6, ge=1)
    code_max_attempts: int = Field(default=20, ge=1)

    # Logging Configuration
    log_level: str = "INFO"
    log_format: str = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"

    # Environment
    environment: str = "dev"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v):
        """Validate backend name."""
        if v.lower() not in BACKENDS:
            raise ValueError(f"Backend must be one of: {list(BACKENDS)}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment."""
        valid_envs = ["dev", "test", "staging", "prod"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of: {valid_envs}")
        return v.lower()

    def get_credentials(self) -> Dict[str, Optional[str]]:
        """Get Firestore credential sources as a dictionary."""
        return {
            "file": self.credentials_file,
            "json": self.credentials_json,
            "access_token_file": self.access_token_file,
        }

    def transaction_options(self) -> Dict[str, Any]:
        return {
            "transaction_max_attempts": self.transaction_max_attempts,
            "transaction_base_delay": self.transaction_base_delay,
            "transaction_max_delay": self.transaction_max_delay,
        }

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "prod"

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "dev"


def load_config(config_file: Optional[str] = None, **overrides) -> FiredocConfig:
    """
    Load configuration from environment variables and optional config file.

    Args:
        config_file: Optional path to .env file
        **overrides: Field values taking precedence over the environment

    Returns:
        FiredocConfig instance

    Raises:
        ConfigurationError: If required configuration is missing or invalid
    """
    if config_file:
        if not Path(config_file).exists():
            raise ConfigurationError(f"Config file not found: {config_file}", config_key="config_file")
        load_dotenv(config_file)
    elif Path(".env").exists():
        load_dotenv(".env")

    try:
        config = FiredocConfig(**overrides)
    except ValueError as e:
        raise ConfigurationError(f"Failed to load configuration: {str(e)}") from e

    logger.info(f"Configuration loaded successfully for environment: {config.environment}")
    return config


def setup_logging(config: FiredocConfig) -> None:
    """
    Setup logging configuration based on config settings.

    Args:
        config: FiredocConfig instance
    """
    logger.remove()

    logger.add(
        sink=sys.stderr,
        format=config.log_format,
        level=config.log_level,
        colorize=True,
    )

    # Add file logging in production
    if config.is_production():
        logger.add(
            sink="logs/firedoc.log",
            format=config.log_format,
            level=config.log_level,
            rotation="10 MB",
            retention="30 days",
            compression="gz",
        )


# Global configuration instance
_config: Optional[FiredocConfig] = None


def get_config() -> FiredocConfig:
    """
    Get the global configuration instance.

    Returns:
        FiredocConfig: Global configuration instance
    """
    global _config
    if _config is None:
        _config = load_config()
        setup_logging(_config)
    return _config


def set_config(config: FiredocConfig) -> None:
    """
    Set the global configuration instance.

    Args:
        config: FiredocConfig instance to set as global
    """
    global _config
    _config = config
    setup_logging(config)
