"""
FlightSurety Oracles Configuration Module

Central configuration management with environment variable support.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from enum import Enum


class Environment(Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class OraclePoolConfig:
    """Oracle pool provisioning configuration."""
    pool_size: int = 20
    index_space_size: int = 10

    # Accounts below the offset are reserved for owner, airlines and passengers
    account_offset: int = 20

    # Registration
    registration_fee_wei: int = 10 ** 18  # 1 ether
    registration_timeout_seconds: float = 10.0

    # Responses
    submission_timeout_seconds: float = 10.0
    gas: int = 4_500_000

    @classmethod
    def from_env(cls) -> "OraclePoolConfig":
        """Load configuration from environment variables."""
        return cls(
            pool_size=int(os.getenv("ORACLE_POOL_SIZE", "20")),
            index_space_size=int(os.getenv("ORACLE_INDEX_SPACE_SIZE", "10")),
            account_offset=int(os.getenv("ORACLE_ACCOUNT_OFFSET", "20")),
            registration_fee_wei=int(os.getenv("ORACLE_REGISTRATION_FEE_WEI", str(10 ** 18))),
            registration_timeout_seconds=float(os.getenv("ORACLE_REGISTRATION_TIMEOUT_SECONDS", "10")),
            submission_timeout_seconds=float(os.getenv("ORACLE_SUBMISSION_TIMEOUT_SECONDS", "10")),
            gas=int(os.getenv("ORACLE_GAS", "4500000")),
        )


@dataclass
class TrackerConfig:
    """Request tracking configuration."""
    request_timeout_seconds: int = 300
    retention_window_seconds: int = 3600
    max_retained_records: int = 1000

    # Reports that arrive before their request are held this long
    report_grace_seconds: float = 5.0

    sweep_interval_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        """Load configuration from environment variables."""
        return cls(
            request_timeout_seconds=int(os.getenv("TRACKER_REQUEST_TIMEOUT_SECONDS", "300")),
            retention_window_seconds=int(os.getenv("TRACKER_RETENTION_WINDOW_SECONDS", "3600")),
            max_retained_records=int(os.getenv("TRACKER_MAX_RETAINED_RECORDS", "1000")),
            report_grace_seconds=float(os.getenv("TRACKER_REPORT_GRACE_SECONDS", "5")),
            sweep_interval_seconds=float(os.getenv("TRACKER_SWEEP_INTERVAL_SECONDS", "5")),
        )


@dataclass
class LedgerConfig:
    """Ledger gateway configuration."""
    # Empty URL selects the in-memory simulated ledger
    rpc_url: str = ""
    contract_address: str = ""
    from_block: int = 0

    poll_interval_seconds: float = 1.0
    request_timeout_seconds: float = 10.0

    # Simulated ledger only
    min_responses: int = 3

    @property
    def simulated(self) -> bool:
        return not self.rpc_url

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            rpc_url=os.getenv("LEDGER_RPC_URL", ""),
            contract_address=os.getenv("LEDGER_CONTRACT_ADDRESS", ""),
            from_block=int(os.getenv("LEDGER_FROM_BLOCK", "0")),
            poll_interval_seconds=float(os.getenv("LEDGER_POLL_INTERVAL_SECONDS", "1.0")),
            request_timeout_seconds=float(os.getenv("LEDGER_REQUEST_TIMEOUT_SECONDS", "10")),
            min_responses=int(os.getenv("LEDGER_MIN_RESPONSES", "3")),
        )


@dataclass
class ApiConfig:
    """HTTP query endpoint configuration."""
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "ApiConfig":
        """Load configuration from environment variables."""
        origins = os.getenv("API_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "3000")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Log destinations
    console: bool = True
    file_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load configuration from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            console=os.getenv("LOG_CONSOLE", "true").lower() == "true",
            file_path=os.getenv("LOG_FILE_PATH"),
        )


@dataclass
class OracleServiceConfig:
    """Master configuration for the oracle service."""
    environment: Environment = Environment.DEVELOPMENT

    # Sub-configurations
    pool: OraclePoolConfig = field(default_factory=OraclePoolConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "OracleServiceConfig":
        """Load all configuration from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            pool=OraclePoolConfig.from_env(),
            tracker=TrackerConfig.from_env(),
            ledger=LedgerConfig.from_env(),
            api=ApiConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration and return any warnings/errors.

        Returns:
            Dictionary with 'valid' boolean and 'messages' list
        """
        messages = []
        valid = True

        if self.pool.pool_size <= 0:
            messages.append("ERROR: Oracle pool size must be positive")
            valid = False
        if not 3 <= self.pool.index_space_size <= 256:
            messages.append("ERROR: Index space must hold between 3 and 256 values")
            valid = False
        elif self.pool.pool_size < self.pool.index_space_size:
            messages.append(
                "WARNING: Pool smaller than index space; some requests will have no eligible oracle"
            )

        if self.tracker.request_timeout_seconds <= 0:
            messages.append("ERROR: Request timeout must be positive")
            valid = False
        if self.tracker.retention_window_seconds < 0:
            messages.append("ERROR: Retention window cannot be negative")
            valid = False
        if self.tracker.sweep_interval_seconds <= 0:
            messages.append("ERROR: Sweep interval must be positive")
            valid = False

        if self.environment == Environment.PRODUCTION and self.ledger.simulated:
            messages.append("WARNING: Using the simulated ledger in production")

        return {"valid": valid, "messages": messages}


def configure_logging(config: LoggingConfig) -> None:
    """Apply logging configuration to the root logger."""
    handlers: List[logging.Handler] = []
    if config.console:
        handlers.append(logging.StreamHandler())
    if config.file_path:
        handlers.append(logging.FileHandler(config.file_path))

    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=config.format,
        handlers=handlers or [logging.NullHandler()],
        force=True,
    )


# Global configuration instance
_config: Optional[OracleServiceConfig] = None


def get_config() -> OracleServiceConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = OracleServiceConfig.from_env()
    return _config


def set_config(config: OracleServiceConfig) -> None:
    """Set the global configuration instance (for testing)."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
