"""
Configuration management for the consent ledger
Approval token TTL, deployment mode, storage and logging settings
"""

import logging
from typing import Optional

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings


class LedgerConfig(BaseSettings):
    """Consent ledger configuration settings"""

    # Approval workflow
    approval_token_ttl_hours: int = Field(default=24, ge=1, description="Approval token lifetime")
    auto_approve: bool = Field(
        default=False,
        description="Create consents directly ACTIVE instead of REQUESTED"
    )

    # Storage
    database_url: str = Field(default="sqlite:///consent_ledger.db")
    max_transaction_retries: int = Field(
        default=5,
        ge=0,
        description="Retries for transactions aborted by a uniqueness or serialization conflict"
    )
    transaction_retry_backoff_seconds: float = Field(
        default=0.02,
        ge=0,
        description="Base delay before a retried transaction; doubled per attempt and jittered"
    )
    sqlite_busy_timeout_seconds: float = Field(default=15.0, gt=0)

    # Background sweep
    sweep_enabled: bool = Field(default=False)
    sweep_interval_minutes: int = Field(default=5, ge=1)

    # Admin surface
    admin_api_key: Optional[str] = Field(default=None, description="Key guarding audit endpoints")

    # Environment-specific overrides
    debug_mode: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    model_config = {"env_prefix": "CONSENT_LEDGER_", "case_sensitive": False}


# Global configuration instance
ledger_config = LedgerConfig()


def get_ledger_config() -> LedgerConfig:
    """Get the global ledger configuration instance"""
    return ledger_config


def update_ledger_config(**kwargs) -> LedgerConfig:
    """Update ledger configuration with new values"""
    global ledger_config
    for key, value in kwargs.items():
        if hasattr(ledger_config, key):
            setattr(ledger_config, key, value)
    return ledger_config


def configure_logging(log_level: Optional[str] = None) -> None:
    """Install the structured logging pipeline used by the service and CLI"""
    level = (log_level or ledger_config.log_level).upper()
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
