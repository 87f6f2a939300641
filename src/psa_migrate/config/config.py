"""Configuration management for the PSA migration tool."""

from typing import Optional, Dict, Any
from pathlib import Path
import os

from pydantic import BaseModel, ConfigDict, Field, field_validator
import yaml
from dotenv import load_dotenv

from ..models.request import (
    MaskedFieldPolicy,
    OversizePolicy,
    PartialFailureStrategy,
    RetryPolicy,
    ThrottlePolicy,
)


class PSAInstanceConfig(BaseModel):
    """Connection settings for one PSA tenant."""

    url: str = Field(..., description='Zone URL, e.g. https://webservices5.autotask.net')
    username: str = Field(..., description='API user name')
    secret: str = Field(..., description='API user secret')
    integration_code: str = Field(..., description='Tracking identifier')
    impersonation_resource_id: Optional[int] = Field(
        default=None, description='Resource to impersonate on writes'
    )
    timeout: int = Field(default=30, description='Request timeout in seconds')
    rate_limit_per_second: float = Field(
        default=5.0, description='API requests per second limit'
    )
    web_url: Optional[str] = Field(
        default=None, description='Web UI host override for deep links'
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Validate zone URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('username', 'secret', 'integration_code')
    @classmethod
    def validate_credentials(cls, v, info):
        """Validate credentials are not blank."""
        if not v or not v.strip():
            raise ValueError(f'{info.field_name} must be provided')
        return v.strip()

    @field_validator('rate_limit_per_second')
    @classmethod
    def validate_rate_limit(cls, v):
        """Validate rate limit is positive."""
        if v <= 0:
            raise ValueError('Rate limit must be positive')
        return v

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, v):
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError('Timeout must be positive')
        return v


class MigrationConfig(BaseModel):
    """Default policies applied to migration requests."""

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    throttle: ThrottlePolicy = Field(default_factory=ThrottlePolicy)
    oversize_policy: OversizePolicy = Field(default=OversizePolicy.SKIP_AND_NOTE)
    masked_field_policy: MaskedFieldPolicy = Field(default=MaskedFieldPolicy.OMIT)
    partial_failure_strategy: PartialFailureStrategy = Field(
        default=PartialFailureStrategy.DEACTIVATE_DESTINATION
    )

    max_items_per_entity: int = Field(
        default=500, description='Ownership transfer ceiling per entity type'
    )
    max_companies: int = Field(
        default=200, description='Ownership transfer ceiling for companies'
    )
    note_truncate_length: int = Field(
        default=32000, description='Maximum length of copied note text'
    )

    @field_validator('max_items_per_entity', 'max_companies')
    @classmethod
    def validate_ceilings(cls, v):
        """Validate ceilings are positive."""
        if v <= 0:
            raise ValueError('Ceilings must be positive')
        return v

    @field_validator('note_truncate_length')
    @classmethod
    def validate_truncate_length(cls, v):
        """Leave room for the ellipsis."""
        if v < 16:
            raise ValueError('note_truncate_length must be at least 16')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: str = Field(
        default='{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}',
        description='Log format',
    )

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Main configuration class for the PSA migration tool."""

    model_config = ConfigDict(extra='forbid')

    api: PSAInstanceConfig = Field(..., description='PSA tenant connection')
    migration: MigrationConfig = Field(
        default_factory=MigrationConfig, description='Migration defaults'
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description='Logging settings'
    )

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        impersonation = os.getenv('PSA_IMPERSONATION_RESOURCE_ID')
        config_data = {
            'api': {
                'url': os.getenv('PSA_URL'),
                'username': os.getenv('PSA_USERNAME'),
                'secret': os.getenv('PSA_SECRET'),
                'integration_code': os.getenv('PSA_INTEGRATION_CODE'),
                'impersonation_resource_id': int(impersonation)
                if impersonation
                else None,
                'web_url': os.getenv('PSA_WEB_URL'),
            },
            'migration': {
                'retry': {
                    'max_retries': int(os.getenv('MIGRATION_MAX_RETRIES', 3)),
                    'base_delay_ms': int(os.getenv('MIGRATION_BASE_DELAY_MS', 500)),
                },
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                self.model_dump(mode='json'),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'api': {
                'url': 'https://webservices5.autotask.net',
                'username': 'api-user@example.com',
                'secret': 'your-api-secret',
                'integration_code': 'your-integration-code',
                'timeout': 30,
                'rate_limit_per_second': 5.0,
            },
            'migration': {
                'retry': {'max_retries': 3, 'base_delay_ms': 500, 'jitter': True},
                'throttle': {
                    'max_bytes_per_window': 10000000,
                    'max_single_item_bytes': 6291456,
                    'window_seconds': 300,
                },
                'oversize_policy': 'skip+note',
                'masked_field_policy': 'omit',
                'partial_failure_strategy': 'deactivateDestination',
                'max_items_per_entity': 500,
                'max_companies': 200,
                'note_truncate_length': 32000,
            },
            'logging': {
                'level': 'INFO',
                'file': 'migration.log',
                'format': '{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )
