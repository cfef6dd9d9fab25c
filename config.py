"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates all required configuration at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable, stripped, or default."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None, minimum: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set
        minimum: Smallest accepted value

    Returns:
        Integer value or None

    Raises:
        ConfigurationError: If value is not a valid integer or is too small
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        parsed = int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )

    if minimum is not None and parsed < minimum:
        raise ConfigurationError(
            f"{key} must be >= {minimum}: {parsed}"
        )

    return parsed


def _require_e164(key: str, number: str):
    if not number.startswith("+"):
        raise ConfigurationError(
            f"{key} must be in E.164 format (start with +): {number}"
        )


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        self.key = _get_required_env(
            "SUPABASE_KEY",
            "Supabase anon or service role key"
        )

        # Validate URL format
        if not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        # Connection settings
        self.connection_timeout = _get_int_env("SUPABASE_TIMEOUT", 30, minimum=1)

        # Table names
        self.orders_table = _get_optional_env("ORDERS_TABLE", "custom_orders")
        self.transactions_table = _get_optional_env("TRANSACTIONS_TABLE", "transactions")
        self.users_table = _get_optional_env("USERS_TABLE", "users")


# ============================================================================
# TWILIO CONFIGURATION
# ============================================================================

class TwilioConfig:
    """Twilio SMS configuration for admin notifications."""

    def __init__(self):
        self.account_sid = _get_required_env(
            "TWILIO_ACCOUNT_SID",
            "Twilio Account SID"
        )

        self.auth_token = _get_required_env(
            "TWILIO_AUTH_TOKEN",
            "Twilio Auth Token"
        )

        self.phone_number = _get_required_env(
            "TWILIO_PHONE_NUMBER",
            "Twilio phone number (E.164 format)"
        )
        _require_e164("TWILIO_PHONE_NUMBER", self.phone_number)

        raw_numbers = _get_required_env(
            "ADMIN_NOTIFY_NUMBERS",
            "Comma separated admin phone numbers (E.164 format)"
        )
        self.admin_numbers = [n.strip() for n in raw_numbers.split(",") if n.strip()]

        if not self.admin_numbers:
            raise ConfigurationError("ADMIN_NOTIFY_NUMBERS contains no numbers")

        for number in self.admin_numbers:
            _require_e164("ADMIN_NOTIFY_NUMBERS", number)


# ============================================================================
# CACHE CONFIGURATION
# ============================================================================

class CacheConfig:
    """Response cache TTL tiers and housekeeping."""

    def __init__(self):
        self.ttl_short = _get_int_env("CACHE_TTL_SHORT", 120, minimum=1)
        self.ttl_long = _get_int_env("CACHE_TTL_LONG", 900, minimum=1)
        self.check_period = _get_int_env("CACHE_CHECK_PERIOD", 600, minimum=1)
        self.max_entries = _get_int_env("CACHE_MAX_ENTRIES", 5000, minimum=1)


# ============================================================================
# API CONFIGURATION
# ============================================================================

class ApiConfig:
    """List pagination limits."""

    def __init__(self):
        self.default_page_size = _get_int_env("DEFAULT_PAGE_SIZE", 25, minimum=1)
        self.max_page_size = _get_int_env("MAX_PAGE_SIZE", 100, minimum=1)

        if self.default_page_size > self.max_page_size:
            raise ConfigurationError(
                f"DEFAULT_PAGE_SIZE ({self.default_page_size}) exceeds "
                f"MAX_PAGE_SIZE ({self.max_page_size})"
            )


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class FeatureFlags:
    """Feature flags for optional functionality."""

    def __init__(self):
        self.enable_admin_notifications = _get_bool_env("ENABLE_ADMIN_NOTIFICATIONS", False)
        self.enable_cache = _get_bool_env("ENABLE_CACHE", True)

        # Development/debug features
        self.debug_mode = _get_bool_env("DEBUG_MODE", False)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000, minimum=1)

        # CORS settings
        self.cors_origins = _get_optional_env("CORS_ORIGINS", "*").split(",")

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.features = FeatureFlags()
            self.supabase = SupabaseConfig()
            self.twilio = (
                TwilioConfig() if self.features.enable_admin_notifications else None
            )
            self.cache = CacheConfig()
            self.api = ApiConfig()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "tables": {
                "orders": self.supabase.orders_table,
                "transactions": self.supabase.transactions_table,
                "users": self.supabase.users_table,
            },
            "features": {
                "admin_notifications": self.features.enable_admin_notifications,
                "cache": self.features.enable_cache,
                "debug": self.features.debug_mode,
            },
            "cache": {
                "ttl_short": self.cache.ttl_short,
                "ttl_long": self.cache.ttl_long,
                "check_period": self.cache.check_period,
                "max_entries": self.cache.max_entries,
            },
            "api": {
                "default_page_size": self.api.default_page_size,
                "max_page_size": self.api.max_page_size,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
            "admin_numbers": len(self.twilio.admin_numbers) if self.twilio else 0,
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Check settings that are legal but probably unintended.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if self.cache.ttl_long < self.cache.ttl_short:
            warnings.append(
                f"CACHE_TTL_LONG ({self.cache.ttl_long}) is shorter than "
                f"CACHE_TTL_SHORT ({self.cache.ttl_short})"
            )

        if self.features.debug_mode and self.server.log_level != "DEBUG":
            warnings.append("DEBUG_MODE is on but LOG_LEVEL is not DEBUG")

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


def validate_configuration():
    """
    Validate configuration and log a summary.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")
    logger.info(f"  Log Level: {summary['server']['log_level']}")
    logger.info(f"  Page size: {summary['api']['default_page_size']} (max {summary['api']['max_page_size']})")

    logger.info("Feature Flags:")
    for feature, enabled in summary['features'].items():
        status = "enabled" if enabled else "disabled"
        logger.info(f"  {feature}: {status}")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")
