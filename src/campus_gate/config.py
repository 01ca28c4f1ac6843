# src/campus_gate/config.py
import os


class Config:
    FLASK_ENV = os.getenv("FLASK_ENV", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "/tmp/logs")
    PORT = int(os.getenv("PORT", "5000"))

    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///campus_gate.db")
    # When set, DB credentials are read from AWS Secrets Manager instead of DATABASE_URL
    DB_SECRET_NAME = os.getenv("DB_SECRET_NAME")
    AWS_DEFAULT_REGION = os.getenv("AWS_DEFAULT_REGION", "us-east-2")

    # Wall-clock zone used for the per-day verification counters
    GATE_TIMEZONE = os.getenv("GATE_TIMEZONE", "Africa/Nairobi")
    CODE_THRESHOLD = int(os.getenv("CODE_THRESHOLD", "3"))
    DEDUP_WINDOW_SECONDS = float(os.getenv("DEDUP_WINDOW_SECONDS", "10"))
    VERIFY_MAX_RETRIES = max(1, int(os.getenv("VERIFY_MAX_RETRIES", "5")))
    VERIFY_RETRY_DELAY = float(os.getenv("VERIFY_RETRY_DELAY", "0.05"))

    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_TIMEOUT = int(os.getenv("NOTIFICATION_TIMEOUT", "10"))

    EXPIRY_NOTICE_DAYS = int(os.getenv("EXPIRY_NOTICE_DAYS", "3"))
    EXPIRY_NOTICE_HOUR = int(os.getenv("EXPIRY_NOTICE_HOUR", "7"))

    STUDENT_LEVELS = ("Level 1", "Level 2", "Level 3", "Level 4", "Level 5", "Level 6")

    # Length of the numeric login code per staff role
    STAFF_CODE_LENGTHS = {
        "teacher": 6,
        "gate": 5,
        "finance": 7,
        "enrollment": 4,
        "admin": 8,
    }


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration."""
    DEBUG = True
    TESTING = True
    DEDUP_WINDOW_SECONDS = 0


def get_config():
    """Return config based on environment."""
    env = os.getenv("FLASK_ENV", "development")
    if env == "production":
        return ProductionConfig()
    if env == "testing":
        return TestingConfig()
    return DevelopmentConfig()
