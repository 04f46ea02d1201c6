from .base import BaseConfig


class TestingConfig(BaseConfig):
    """
    Test configuration: in-memory database and fixed gateway credentials.
    """

    TESTING = True
    ENVIRONMENT = "testing"

    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "test-jwt-secret-key-with-enough-length"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"

    BILLING_PROVIDER = "razorpay"
    RAZORPAY_API_BASE = "https://api.razorpay.test/v1"
    RAZORPAY_KEY_ID = "rzp_test_key"
    RAZORPAY_KEY_SECRET = "rzp_test_secret"
    RAZORPAY_WEBHOOK_SECRET = "whsec_test"
    RAZORPAY_PLAN_IDS = {
        "starter": "plan_starter_test",
        "pro": "plan_pro_test",
        "business": "plan_business_test",
    }

    CASHFREE_APP_ID = "cf_test_app"
    CASHFREE_SECRET_KEY = "cf_test_secret"
    CASHFREE_WEBHOOK_SECRET = "cf_whsec_test"
    CASHFREE_PLAN_IDS = {
        "starter": "cf_plan_starter",
        "pro": "cf_plan_pro",
        "business": "cf_plan_business",
    }
