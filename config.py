"""
Configuration management module for the escrow service.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings:
database, risk assessment, admin notifications, limits and logging.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ('true', '1', 'yes')


class Config:
    """
    Configuration class that loads and validates all application settings.

    Nothing is strictly required: without DATABASE_URL the service keeps
    transactions in memory, without a Telegram token admin notifications are
    only logged, and without RISK_SERVICE_URL the built-in rule-based risk
    assessor is used.

    Attributes:
        database_url: PostgreSQL connection string (optional)
        use_marketplace_tables: Whether products/users tables are available
        telegram_bot_token: Telegram bot API token for admin notifications
        admin_chat_id: Chat ID receiving admin notifications
        risk_service_url: External AI risk service endpoint (optional)
        risk_assessment_timeout: Seconds to wait for a risk assessment
        stalled_assessment_minutes: Age after which a processing assessment
            falls back to manual review
        risk_low_threshold / risk_high_threshold / risk_review_threshold:
            Risk band boundaries
        min_amount / max_amount: Escrow amount limits
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If configuration is invalid
        """
        # Load environment variables
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database Configuration
        self.database_url: Optional[str] = os.getenv('DATABASE_URL') or os.getenv('SUPABASE_DB_URL')
        self.use_marketplace_tables: bool = _env_bool('USE_MARKETPLACE_TABLES', 'True')

        # Telegram Configuration (admin notifications)
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')

        # Risk Assessment
        self.risk_service_url: Optional[str] = os.getenv('RISK_SERVICE_URL')
        self.risk_service_api_key: Optional[str] = os.getenv('RISK_SERVICE_API_KEY')
        self.risk_assessment_timeout: float = self._get_float('RISK_ASSESSMENT_TIMEOUT', '30')
        self.stalled_assessment_minutes: int = self._get_int('STALLED_ASSESSMENT_MINUTES', '10')
        self.review_report_hours: int = self._get_int('REVIEW_REPORT_HOURS', '12')
        self.risk_low_threshold: int = self._get_int('RISK_LOW_THRESHOLD', '30')
        self.risk_high_threshold: int = self._get_int('RISK_HIGH_THRESHOLD', '70')
        self.risk_review_threshold: int = self._get_int('RISK_REVIEW_THRESHOLD', '40')

        # Amount Limits
        self.min_amount: Decimal = self._get_decimal('MIN_ESCROW_AMOUNT', '1')
        self.max_amount: Decimal = self._get_decimal('MAX_ESCROW_AMOUNT', '1000000000')
        self.currency: str = os.getenv('CURRENCY', 'IDR')

        # Text Limits
        self.max_note_length: int = self._get_int('MAX_NOTE_LENGTH', '500')
        self.max_dispute_reason_length: int = self._get_int('MAX_DISPUTE_REASON_LENGTH', '1000')

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_name: str = os.getenv('APP_NAME', 'ESCROW_SERVICE')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE')
        self.log_max_size: int = self._get_int('LOG_MAX_SIZE', '10485760')  # 10MB
        self.log_backup_count: int = self._get_int('LOG_BACKUP_COUNT', '5')

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = self._get_int('API_PORT', '8000')

        # Validate configuration
        self._validate_config()

    def _get_int(self, key: str, default: str) -> int:
        value = os.getenv(key, default)
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got '{value}'")

    def _get_float(self, key: str, default: str) -> float:
        value = os.getenv(key, default)
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"{key} must be a number, got '{value}'")

    def _get_decimal(self, key: str, default: str) -> Decimal:
        value = os.getenv(key, default)
        try:
            return Decimal(value)
        except InvalidOperation:
            raise ConfigError(f"{key} must be a decimal amount, got '{value}'")

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        # Validate amount limits
        if self.min_amount <= 0:
            raise ConfigError(f"MIN_ESCROW_AMOUNT must be positive, got {self.min_amount}")

        if self.max_amount < self.min_amount:
            raise ConfigError(
                f"MAX_ESCROW_AMOUNT ({self.max_amount}) must be greater than "
                f"MIN_ESCROW_AMOUNT ({self.min_amount})"
            )

        # Validate risk bands
        if not 0 < self.risk_low_threshold <= self.risk_review_threshold <= self.risk_high_threshold <= 100:
            raise ConfigError(
                "Risk thresholds must satisfy 0 < RISK_LOW_THRESHOLD <= "
                "RISK_REVIEW_THRESHOLD <= RISK_HIGH_THRESHOLD <= 100"
            )

        if self.risk_assessment_timeout <= 0:
            raise ConfigError(
                f"RISK_ASSESSMENT_TIMEOUT must be positive, got {self.risk_assessment_timeout}"
            )

        if self.stalled_assessment_minutes < 1:
            raise ConfigError(
                f"STALLED_ASSESSMENT_MINUTES must be at least 1, got {self.stalled_assessment_minutes}"
            )

        # Validate log level
        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        # Validate admin chat ID format
        if self.admin_chat_id and not self.admin_chat_id.lstrip('-').isdigit():
            raise ConfigError(
                f"ADMIN_CHAT_ID must be numeric (can start with -), "
                f"got '{self.admin_chat_id}'"
            )

        # Production must not lose transactions on restart
        if self.is_production and not self.has_database_config:
            raise ConfigError("DATABASE_URL is required when APP_ENV is production")

        # Validate port range
        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

    @property
    def has_database_config(self) -> bool:
        """Check if a PostgreSQL database is configured."""
        return bool(self.database_url)

    @property
    def has_telegram_config(self) -> bool:
        """Check if admin notifications can be delivered."""
        return bool(self.telegram_bot_token and self.admin_chat_id)

    @property
    def has_risk_service(self) -> bool:
        """Check if an external risk service is configured."""
        return bool(self.risk_service_url)

    @property
    def is_production(self) -> bool:
        """Check if running in production, where a database is mandatory."""
        return self.app_env == 'production'

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(app_env={self.app_env}, "
            f"has_db={self.has_database_config}, "
            f"has_telegram={self.has_telegram_config}, "
            f"has_risk_service={self.has_risk_service})"
        )


# Singleton instance for easy access
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get or create the global Config instance.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid

    Example:
        >>> config = get_config()
        >>> print(config.risk_high_threshold)
        70
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
