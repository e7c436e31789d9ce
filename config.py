"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates all required configuration at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from decimal import Decimal, InvalidOperation
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


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_decimal_env(key: str, default: str) -> Decimal:
    """
    Get decimal environment variable (money and rates).

    Raises:
        ConfigurationError: If value is not a valid decimal
    """
    value = os.getenv(key) or default

    try:
        return Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        raise ConfigurationError(
            f"Invalid decimal value for {key}: {value}"
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
        self.read_timeout = _get_int_env("SUPABASE_TIMEOUT", 10)
        self.rpc_timeout = _get_int_env("SUPABASE_RPC_TIMEOUT", 30)


# ============================================================================
# STRIPE CONFIGURATION
# ============================================================================

class StripeConfig:
    """Stripe payment processor configuration."""

    def __init__(self):
        self.secret_key = _get_required_env(
            "STRIPE_SECRET_KEY",
            "Stripe secret API key"
        )

        if not self.secret_key.startswith(("sk_", "rk_")):
            raise ConfigurationError(
                "STRIPE_SECRET_KEY must be a secret or restricted key (sk_/rk_)"
            )

        # Optional: webhook signature verification
        self.webhook_secret = _get_optional_env("STRIPE_WEBHOOK_SECRET")

        self.request_timeout = _get_int_env("STRIPE_TIMEOUT", 20)


# ============================================================================
# TWILIO CONFIGURATION
# ============================================================================

class TwilioConfig:
    """
    Twilio SMS configuration.

    Optional: SMS confirmations are disabled when credentials are absent.
    """

    def __init__(self):
        self.account_sid = _get_optional_env("TWILIO_ACCOUNT_SID")
        self.auth_token = _get_optional_env("TWILIO_AUTH_TOKEN")
        self.phone_number = _get_optional_env("TWILIO_PHONE_NUMBER")

        self.enabled = bool(
            self.account_sid and self.auth_token and self.phone_number
        )

        # Validate phone number format
        if self.enabled and not self.phone_number.startswith("+"):
            raise ConfigurationError(
                f"TWILIO_PHONE_NUMBER must be in E.164 format (start with +): "
                f"{self.phone_number}"
            )


# ============================================================================
# CHECKOUT CONFIGURATION
# ============================================================================

class CheckoutConfig:
    """Pricing constants and storefront settings used during checkout."""

    def __init__(self):
        self.currency_code = _get_optional_env("CURRENCY_CODE", "BDT").upper()

        if len(self.currency_code) != 3 or not self.currency_code.isalpha():
            raise ConfigurationError(
                f"CURRENCY_CODE must be a 3-letter ISO code: {self.currency_code}"
            )

        self.delivery_threshold = _get_decimal_env("DELIVERY_THRESHOLD", "500")
        self.delivery_fee = _get_decimal_env("DELIVERY_FEE", "50")
        self.tax_rate = _get_decimal_env("TAX_RATE", "0.08")

        if self.delivery_threshold < 0 or self.delivery_fee < 0:
            raise ConfigurationError(
                "DELIVERY_THRESHOLD and DELIVERY_FEE must not be negative"
            )

        if not Decimal("0") <= self.tax_rate < Decimal("1"):
            raise ConfigurationError(
                f"TAX_RATE must be a fraction between 0 and 1: {self.tax_rate}"
            )

        # Guest carts live on local disk, one JSON file per guest session
        self.guest_cart_dir = Path(
            _get_optional_env("GUEST_CART_DIR", ".guest_carts")
        )

        self.restaurant_name = _get_optional_env(
            "RESTAURANT_NAME",
            "Star Cafe"
        )

        # Where the shopper lands after closing the confirmation
        self.success_redirect_path = _get_optional_env(
            "CHECKOUT_SUCCESS_PATH",
            "/order"
        )


# ============================================================================
# REALTIME CONFIGURATION
# ============================================================================

class RealtimeConfig:
    """Realtime change-feed settings."""

    def __init__(self):
        self.debounce_seconds = float(
            _get_optional_env("REALTIME_DEBOUNCE_SECONDS", "0.5")
        )
        self.subscribe_retry_delay = float(
            _get_optional_env("REALTIME_RETRY_DELAY", "2.0")
        )
        self.max_subscribe_retries = _get_int_env("REALTIME_MAX_RETRIES", 5)

        if self.debounce_seconds < 0:
            raise ConfigurationError(
                f"REALTIME_DEBOUNCE_SECONDS must not be negative: "
                f"{self.debounce_seconds}"
            )


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class FeatureFlags:
    """Feature flags for optional functionality."""

    def __init__(self):
        self.enable_realtime = _get_bool_env("ENABLE_REALTIME", True)
        self.enable_sms_confirmation = _get_bool_env(
            "ENABLE_SMS_CONFIRMATION",
            True
        )
        self.enable_email_confirmation = _get_bool_env(
            "ENABLE_EMAIL_CONFIRMATION",
            True
        )
        self.enable_discount_codes = _get_bool_env("ENABLE_DISCOUNT_CODES", True)

        # Development/debug features
        self.debug_mode = _get_bool_env("DEBUG_MODE", False)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)
        self.base_url = _get_optional_env(
            "BASE_URL",
            f"http://{self.host}:{self.port}"
        )

        # Validate base URL
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"BASE_URL must start with http:// or https://: {self.base_url}"
            )

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
            self.supabase = SupabaseConfig()
            self.stripe = StripeConfig()
            self.twilio = TwilioConfig()
            self.checkout = CheckoutConfig()
            self.realtime = RealtimeConfig()
            self.features = FeatureFlags()
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
            "restaurant": self.checkout.restaurant_name,
            "currency": self.checkout.currency_code,
            "pricing": {
                "delivery_threshold": str(self.checkout.delivery_threshold),
                "delivery_fee": str(self.checkout.delivery_fee),
                "tax_rate": str(self.checkout.tax_rate),
            },
            "features": {
                "realtime": self.features.enable_realtime,
                "sms_confirmation": (
                    self.features.enable_sms_confirmation and self.twilio.enabled
                ),
                "email_confirmation": self.features.enable_email_confirmation,
                "discount_codes": self.features.enable_discount_codes,
            },
            "stripe_webhook_verification": bool(self.stripe.webhook_secret),
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Validate that runtime dependencies are accessible.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if not self.stripe.webhook_secret:
            warnings.append(
                "STRIPE_WEBHOOK_SECRET not set, webhook signatures are not verified"
            )

        if self.features.enable_sms_confirmation and not self.twilio.enabled:
            warnings.append(
                "SMS confirmation enabled but Twilio credentials are missing"
            )

        guest_dir = self.checkout.guest_cart_dir
        if guest_dir.exists() and not guest_dir.is_dir():
            warnings.append(f"GUEST_CART_DIR is not a directory: {guest_dir}")

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


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Validate configuration and log summary.
    Useful for startup checks.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()

    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Restaurant: {summary['restaurant']}")
    logger.info(f"  Currency: {summary['currency']}")
    logger.info(
        f"  Delivery: free above {summary['pricing']['delivery_threshold']}, "
        f"otherwise {summary['pricing']['delivery_fee']}"
    )
    logger.info(f"  Tax rate: {summary['pricing']['tax_rate']}")
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")

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
