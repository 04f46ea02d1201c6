from .base import BaseConfig, ConfigurationError


class ProductionConfig(BaseConfig):
    """
    Production configuration.
    """

    DEBUG = False
    ENVIRONMENT = "production"

    @classmethod
    def validate(cls):
        super().validate()
        if not cls.SECRET_KEY or not cls.JWT_SECRET_KEY:
            raise ConfigurationError("SECRET_KEY and JWT_SECRET_KEY must be set in production")
        if cls.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            raise ConfigurationError("DATABASE_URL must point at a server database in production")
