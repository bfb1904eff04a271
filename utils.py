"""
Utilities module for the escrow service.

Provides helper functions for logging, validation and formatting.
"""

import re
import logging
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Any, Tuple
from logging.handlers import RotatingFileHandler
from pathlib import Path


# ANSI color codes for console output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to console output."""

    COLORS = {
        'DEBUG': Colors.GRAY,
        'INFO': Colors.BLUE,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': f"{Colors.BOLD}{Colors.RED}",
    }

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record with colors.

        The record is copied first so other handlers sharing it (e.g. the
        rotating file handler) still see plain text.
        """
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)

        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"

        return super().format(record)


def setup_logger(
    name: Optional[str] = None,
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Set up a logger with both console and file handlers.

    Module loggers (``logging.getLogger(__name__)``) propagate to the root
    logger, so configuring the root (``name=None``) covers the whole service.

    Args:
        name: Logger name (None configures the root logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger(log_level='DEBUG', log_file='logs/escrow.log')
        >>> logger.info('Application started')
    """
    logger = logging.getLogger(name)
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    # Define log format
    if log_format == 'json':
        formatter_str = '{"time": "%(asctime)s", "name": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}'
    else:
        formatter_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if colorful_console and log_format != 'json':
        console_formatter = ColoredFormatter(formatter_str)
    else:
        console_formatter = logging.Formatter(formatter_str)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler with rotation (if log file is specified)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(formatter_str))
        logger.addHandler(file_handler)

    return logger


def validate_amount(
    amount: Any,
    min_amount: Decimal = Decimal('1'),
    max_amount: Decimal = Decimal('1000000000')
) -> Tuple[bool, Optional[Decimal], Optional[str]]:
    """
    Validate an escrow amount and normalise it to two decimal places.

    Args:
        amount: Amount to validate (str, int, float or Decimal)
        min_amount: Minimum allowed amount
        max_amount: Maximum allowed amount

    Returns:
        Tuple of (is_valid, amount_as_decimal, error_message)

    Example:
        >>> is_valid, amt, error = validate_amount('1,500.5')
        >>> print(amt)
        1500.50
    """
    try:
        if isinstance(amount, str):
            amount = amount.replace(',', '').strip()
        elif isinstance(amount, float):
            amount = str(amount)

        amount_dec = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        return False, None, f"Invalid amount format: '{amount}'"

    if not amount_dec.is_finite():
        return False, None, f"Invalid amount format: '{amount}'"

    amount_dec = amount_dec.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    if amount_dec <= 0:
        return False, None, "Amount must be positive"

    if amount_dec < min_amount:
        return False, None, f"Amount must be at least {min_amount:,}"

    if amount_dec > max_amount:
        return False, None, f"Amount must not exceed {max_amount:,}"

    return True, amount_dec, None


def format_currency(amount: Decimal, currency: str = 'IDR') -> str:
    """
    Format amount as currency string.

    Rupiah amounts use the Indonesian convention (dot thousands separator,
    no decimals); other currencies use comma separators and two decimals.

    Example:
        >>> format_currency(Decimal('1250000'))
        'Rp 1.250.000'
        >>> format_currency(Decimal('99.5'), 'USD')
        'USD 99.50'
    """
    if currency == 'IDR':
        rounded = int(Decimal(amount).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
        return f"Rp {rounded:,}".replace(',', '.')
    return f"{currency} {Decimal(amount):,.2f}"


def format_datetime(value: Optional[datetime]) -> str:
    """Format a timestamp for notifications, 'N/A' when unset."""
    if value is None:
        return 'N/A'
    return value.strftime('%Y-%m-%d %H:%M:%S %Z').strip()


def sanitize_input(text: Optional[str], max_length: int = 200) -> str:
    """
    Sanitize user input to prevent injection attacks.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text

    Example:
        >>> sanitize_input('<b>late delivery</b>')
        'blate delivery/b'
    """
    if not text:
        return ''

    # Truncate to max length
    text = text[:max_length]

    # Remove potentially dangerous characters
    text = re.sub(r'[<>"\';`]', '', text)

    # Remove control characters
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()
