"""
Centralized configuration for the Milestone Multisig Payout Service.

This module provides a single source of truth for all configuration settings,
with environment variable support and validation.
"""

import os
from pathlib import Path
from typing import Optional


KNOWN_NETWORKS = {'polkadot', 'kusama', 'paseo', 'substrate'}


class Config:
    """Base configuration class with common settings."""

    # Application
    APP_NAME = "Milestone Multisig Payout Service"
    APP_VERSION = "1.0.0"

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or os.urandom(32).hex()
    TESTING = os.environ.get('TESTING', 'false').lower() == 'true'
    DEBUG = os.environ.get('DEBUG', 'false').lower() == 'true'
    PORT = int(os.environ.get('PORT', 5555))
    HOST = os.environ.get('HOST', '0.0.0.0')
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')

    # Database
    DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///multisig_approvals.db')
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }

    # Rate Limiting
    RATE_LIMIT_ENABLED = not TESTING  # Disable in tests
    RATE_LIMIT_API_REQUESTS = int(os.environ.get('RATE_LIMIT_API_REQUESTS', 30))  # per minute
    RATE_LIMIT_API_WINDOW = int(os.environ.get('RATE_LIMIT_API_WINDOW', 60))  # seconds

    # Security Headers
    SECURITY_HEADERS_ENABLED = os.environ.get('SECURITY_HEADERS_ENABLED', 'true').lower() == 'true'
    HSTS_MAX_AGE = int(os.environ.get('HSTS_MAX_AGE', 31536000))  # 1 year
    CSP_POLICY = os.environ.get('CSP_POLICY', "default-src 'none'; frame-ancestors 'none'")

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.environ.get('LOG_FORMAT', 'json')  # 'json' or 'text'
    AUDIT_LOG_FILE = os.environ.get('AUDIT_LOG_FILE') or None  # None = stdout only

    # Chain
    CHAIN_RPC_URL = os.environ.get('CHAIN_RPC_URL') or None
    CHAIN_NETWORK = os.environ.get('CHAIN_NETWORK', 'polkadot')
    SS58_PREFIX = int(os.environ.get('SS58_PREFIX', 0))  # 0 = Polkadot / Paseo
    DISCOVERY_CACHE_TTL = int(os.environ.get('DISCOVERY_CACHE_TTL', 30))  # seconds

    # Approvals
    EXECUTION_TIMEOUT_SECONDS = int(os.environ.get('EXECUTION_TIMEOUT_SECONDS', 60))
    APPROVAL_EXPIRY_HOURS = int(os.environ.get('APPROVAL_EXPIRY_HOURS', 0))  # 0 = never expire

    @classmethod
    def validate(cls):
        """Validate configuration values."""
        errors = []

        # Validate rate limits
        if cls.RATE_LIMIT_API_REQUESTS < 1:
            errors.append("RATE_LIMIT_API_REQUESTS must be >= 1")
        if cls.RATE_LIMIT_API_WINDOW < 1:
            errors.append("RATE_LIMIT_API_WINDOW must be >= 1")

        # Validate chain settings
        if cls.CHAIN_NETWORK not in KNOWN_NETWORKS:
            errors.append(f"CHAIN_NETWORK must be one of {', '.join(sorted(KNOWN_NETWORKS))}")
        if not 0 <= cls.SS58_PREFIX <= 16383 or cls.SS58_PREFIX in (46, 47):
            errors.append("SS58_PREFIX must be in 0..16383 and not reserved (46, 47)")
        if cls.DISCOVERY_CACHE_TTL < 0:
            errors.append("DISCOVERY_CACHE_TTL must be >= 0")

        # Validate approval settings
        if cls.EXECUTION_TIMEOUT_SECONDS < 1:
            errors.append("EXECUTION_TIMEOUT_SECONDS must be >= 1")
        if cls.APPROVAL_EXPIRY_HOURS < 0:
            errors.append("APPROVAL_EXPIRY_HOURS must be >= 0")

        if errors:
            raise ValueError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

        return True

    @classmethod
    def ensure_directories(cls):
        """Ensure required directories exist."""
        if cls.AUDIT_LOG_FILE:
            Path(cls.AUDIT_LOG_FILE).parent.mkdir(parents=True, exist_ok=True)


class DevelopmentConfig(Config):
    """Development environment configuration."""
    DEBUG = True
    TESTING = False


class TestingConfig(Config):
    """Testing environment configuration."""
    TESTING = True
    DATABASE_URL = 'sqlite:///:memory:'  # In-memory database for tests
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATE_LIMIT_ENABLED = False  # Disable rate limiting in tests
    SECURITY_HEADERS_ENABLED = True  # Still test headers
    CHAIN_RPC_URL = None  # Tests inject fake chain collaborators
    DISCOVERY_CACHE_TTL = 0
    EXECUTION_TIMEOUT_SECONDS = 5
    APPROVAL_EXPIRY_HOURS = 0


class ProductionConfig(Config):
    """Production environment configuration."""
    DEBUG = False
    TESTING = False

    # Production should use strong secret key from environment
    @classmethod
    def validate(cls):
        """Additional validation for production."""
        super().validate()
        if not os.environ.get('SECRET_KEY'):
            raise ValueError("SECRET_KEY environment variable must be set in production")
        if not cls.CHAIN_RPC_URL:
            raise ValueError("CHAIN_RPC_URL environment variable must be set in production")
        if cls.DATABASE_URL.startswith('sqlite:///'):
            import warnings
            warnings.warn("SQLite is not recommended for production. Use PostgreSQL for row-level locking.")


# Configuration dictionary for easy access
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(env: Optional[str] = None) -> type[Config]:
    """
    Get configuration class for specified environment.

    Args:
        env: Environment name ('development', 'testing', 'production')
             If None, uses FLASK_ENV environment variable

    Returns:
        Configuration class for the environment
    """
    if env is None:
        env = os.environ.get('FLASK_ENV', 'development')

    config_class = config.get(env, config['default'])
    config_class.validate()
    config_class.ensure_directories()

    return config_class
