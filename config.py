"""Configuration module for RollSync."""
import os
from datetime import timedelta


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False
    AUTO_CREATE_TABLES = False

    # JWT Configuration
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=2)
    JWT_ALGORITHM = 'HS256'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]

    # Rate Limiting
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'
    SCAN_RATE_LIMIT = "120 per minute"

    # Attendance engine
    ATTENDANCE_STORE = 'sqlalchemy'  # or 'memory'
    ATTENDANCE_TIMERS_ENABLED = True
    CREDENTIAL_INTERVAL = 5  # seconds between credential rotations
    CREDENTIAL_GRACE_RATIO = 0.4  # credential stays valid interval * (1 + ratio)
    CREDENTIAL_RETENTION = 60  # seconds an expired credential is still recognised
    CREDENTIAL_QR_ENABLED = True
    SNAPSHOT_INTERVAL = 4  # seconds between authoritative snapshots
    SUBSCRIPTION_QUEUE_SIZE = 100
    SUBSCRIPTION_IDLE_TIMEOUT = 120  # seconds
    SESSION_RETENTION = 24 * 60 * 60  # seconds an ended session is kept before archiving
    SESSION_SWEEP_INTERVAL = 5 * 60  # seconds between background sweeps
    SSE_HEARTBEAT = 15  # seconds

    # Logging
    LOG_LEVEL = 'INFO'
    LOG_FILE = 'logs/app.log'


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or \
        'sqlite:///rollsync_dev.db'
    AUTO_CREATE_TABLES = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')

    # Enhanced security
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    LOG_FILE = os.environ.get('LOG_FILE') or '/app/logs/app.log'


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    JWT_SECRET_KEY = 'test-jwt-secret-key-of-sufficient-length'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=5)
    RATELIMIT_ENABLED = False

    # Tests drive rotation and resync by hand
    ATTENDANCE_TIMERS_ENABLED = False
    CREDENTIAL_QR_ENABLED = False
    LOG_LEVEL = 'WARNING'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Get configuration by name."""
    return config.get(config_name or os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)
