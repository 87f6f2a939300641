"""Configuration models."""

from .config import Config, LoggingConfig, MigrationConfig, PSAInstanceConfig

__all__ = ['Config', 'LoggingConfig', 'MigrationConfig', 'PSAInstanceConfig']
