import os
from datetime import timedelta


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


def _env_int(name, default):
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # Flask
    DEBUG = False
    TESTING = False
    ENVIRONMENT = "base"
    SECRET_KEY = os.getenv("SECRET_KEY")

    # Application
    APP_NAME = "MiniCRM"
    APP_URL = os.getenv("APP_URL", "http://localhost:3000")

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///minicrm.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Auth
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=15)
    JWT_TOKEN_LOCATION = ["headers"]

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_REQUESTS = os.getenv("LOG_REQUESTS", "false").lower() == "true"

    # Billing
    BILLING_PROVIDER = os.getenv("BILLING_PROVIDER", "razorpay").lower()
    GATEWAY_TIMEOUT_SECONDS = _env_int("GATEWAY_TIMEOUT_SECONDS", 10)
    SUBSCRIPTION_TOTAL_CYCLES = _env_int("SUBSCRIPTION_TOTAL_CYCLES", 12)
    BILLING_CURRENCY = "INR"

    RAZORPAY_API_BASE = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1")
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
    RAZORPAY_PLAN_IDS = {
        "starter": os.getenv("RAZORPAY_STARTER_PLAN_ID", ""),
        "pro": os.getenv("RAZORPAY_PRO_PLAN_ID", ""),
        "business": os.getenv("RAZORPAY_BUSINESS_PLAN_ID", ""),
    }

    CASHFREE_ENVIRONMENT = os.getenv("CASHFREE_ENVIRONMENT", "sandbox").lower()
    CASHFREE_API_BASE = os.getenv("CASHFREE_API_BASE")
    CASHFREE_API_VERSION = os.getenv("CASHFREE_API_VERSION", "2023-08-01")
    CASHFREE_APP_ID = os.getenv("CASHFREE_APP_ID")
    CASHFREE_SECRET_KEY = os.getenv("CASHFREE_SECRET_KEY")
    CASHFREE_WEBHOOK_SECRET = os.getenv("CASHFREE_WEBHOOK_SECRET")
    CASHFREE_PLAN_IDS = {
        "starter": os.getenv("CASHFREE_STARTER_PLAN_ID", ""),
        "pro": os.getenv("CASHFREE_PRO_PLAN_ID", ""),
        "business": os.getenv("CASHFREE_BUSINESS_PLAN_ID", ""),
    }

    @classmethod
    def validate(cls):
        if cls.BILLING_PROVIDER not in ("razorpay", "cashfree"):
            raise ConfigurationError(
                f"BILLING_PROVIDER must be 'razorpay' or 'cashfree', got {cls.BILLING_PROVIDER!r}"
            )
