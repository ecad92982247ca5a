"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class ChainConfig(BaseSettings):
    """Account chain configuration"""

    # Storage configuration
    database_url: str = "sqlite:///account_chain.db"  # "memory" for InMemoryStorage

    # Kafka configuration
    kafka_bootstrap_servers: str = ""  # Empty = in-memory bus
    kafka_client_id: str = "account-chain"
    kafka_auto_offset_reset: str = "earliest"
    kafka_poll_timeout_seconds: float = 1.0
    kafka_partitions: int = Field(default=3, ge=1)  # Partition count for the in-memory bus

    # Consumer delivery policy
    max_delivery_attempts: int = Field(default=3, ge=1)
    dead_letter_suffix: str = ".DLT"

    # Transactional outbox
    outbox_enabled: bool = True
    outbox_max_attempts: int = Field(default=5, ge=1)
    outbox_batch_size: int = Field(default=100, ge=1)

    # Branch assignment
    branch_candidates: List[str] = Field(default_factory=lambda: ["BR001", "BR002", "BR003", "BR004", "BR005"])
    branch_directory_url: str = ""  # Empty = in-memory directory
    branch_directory_timeout: float = 2.0

    # Notification gateways
    email_gateway_url: str = ""  # Empty = log notifier
    sms_gateway_url: str = ""
    notifier_timeout: int = 10

    # Sequence starting values
    sequence_starts: Dict[str, int] = Field(default_factory=lambda: {
        "application_id": 1001,
        "customer_id": 5001,
        "account_number": 100001,
        "transaction_id": 1,
    })

    # Ledger
    ledger_max_append_retries: int = Field(default=5, ge=1)

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    @field_validator("branch_candidates")
    @classmethod
    def validate_branch_candidates(cls, v):
        codes = [code.strip().upper() for code in v if code and code.strip()]
        if not codes:
            raise ValueError("At least one branch candidate is required")
        return codes

    class Config:
        env_prefix = "CHAIN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ChainConfig()


def get_config() -> ChainConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ChainConfig:
    """Reload configuration from environment"""
    global config
    config = ChainConfig()
    return config
