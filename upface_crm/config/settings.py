"""
Application Configuration

Environment-specific configuration classes for the Flask application
factory. Values come from environment variables, loaded from a ``.env`` file
through python-dotenv when one is present.

Key Features:
- ``BaseConfig`` with development, testing and production overrides
- Typed environment lookups through ``EnvironmentManager``
- Rate-limit operation classes overridable per environment
- Production refuses to start without ``SECRET_KEY`` and ``JWT_SECRET_KEY``
"""

import os
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from dotenv import find_dotenv, load_dotenv

from upface_crm.auth.rate_limit import DEFAULT_RATE_LIMITS
from upface_crm.auth.security import DEFAULT_CSP, DEFAULT_HSTS_MAX_AGE

logger = structlog.get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class EnvironmentManager:
    """Typed access to environment variables after loading ``.env``."""

    def __init__(self, env_file: Optional[str] = None):
        self.env_file = env_file or find_dotenv(usecwd=True)
        if self.env_file:
            load_dotenv(self.env_file, override=False)

    def get(self, key: str, default: Any = None, var_type: type = str) -> Any:
        value = os.getenv(key)
        if value is None or value == '':
            return default
        try:
            if var_type is bool:
                return value.strip().lower() in ('true', '1', 'yes', 'on')
            if var_type is list:
                return [item.strip() for item in value.split(',') if item.strip()]
            return var_type(value)
        except (TypeError, ValueError):
            logger.warning("Invalid environment value, using default", key=key)
            return default


class BaseConfig:
    """Settings shared by every environment."""

    ENV_NAME = 'base'

    def __init__(self, env_file: Optional[str] = None):
        self.env = EnvironmentManager(env_file)
        self._configure_base_settings()
        self._configure_auth_settings()
        self._configure_security_settings()
        self._configure_storage_settings()
        self._configure_audit_settings()
        self._configure_logging_settings()

    def _configure_base_settings(self) -> None:
        self.SECRET_KEY = self.env.get('SECRET_KEY')
        self.DEBUG = self.env.get('FLASK_DEBUG', False, bool)
        self.TESTING = False
        self.APP_NAME = self.env.get('APP_NAME', 'UpFace CRM')
        self.MAX_CONTENT_LENGTH = self.env.get('MAX_CONTENT_LENGTH', 16 * 1024 * 1024, int)

        self.SESSION_COOKIE_SECURE = True
        self.SESSION_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = 'Lax'
        self.PERMANENT_SESSION_LIFETIME = timedelta(hours=8)

        # Number of trusted proxies in front of the app; 0 disables ProxyFix
        self.PROXY_FIX_X_FOR = self.env.get('PROXY_FIX_X_FOR', 1, int)

    def _configure_auth_settings(self) -> None:
        self.JWT_SECRET_KEY = self.env.get('JWT_SECRET_KEY')
        self.JWT_ALGORITHM = self.env.get('JWT_ALGORITHM', 'HS256')
        self.JWT_EXPIRATION_SECONDS = self.env.get('JWT_EXPIRATION_SECONDS', 8 * 60 * 60, int)
        self.JWT_ISSUER = self.env.get('JWT_ISSUER', 'upface-crm')

    def _configure_security_settings(self) -> None:
        self.CORS_ALLOWED_ORIGINS: List[str] = self.env.get(
            'CORS_ALLOWED_ORIGINS', ['https://upface.dev', 'https://www.upface.dev'], list
        )
        self.ANONYMOUS_PATHS: List[str] = self.env.get(
            'ANONYMOUS_PATHS', ['/api/public', '/api/health', '/api/contact'], list
        )
        self.SECURITY_LOG_LEVEL = self.env.get('SECURITY_LOG_LEVEL', 'standard')
        self.CONTENT_SECURITY_POLICY = self.env.get('CONTENT_SECURITY_POLICY', DEFAULT_CSP)
        self.HSTS_MAX_AGE = self.env.get('HSTS_MAX_AGE', DEFAULT_HSTS_MAX_AGE, int)
        self.FORCE_HTTPS = self.env.get('FORCE_HTTPS', False, bool)

        self.RATE_LIMIT_STORAGE = self.env.get('RATE_LIMIT_STORAGE', 'memory')
        self.REDIS_URL = self.env.get('REDIS_URL', 'redis://localhost:6379/0')
        self.RATE_LIMITS: Dict[str, Tuple[float, int]] = {
            name: (config.window_seconds, config.max_requests)
            for name, config in DEFAULT_RATE_LIMITS.items()
        }

    def _configure_storage_settings(self) -> None:
        self.DOCUMENT_STORE = self.env.get('DOCUMENT_STORE', 'mongodb')
        self.MONGODB_URI = self.env.get('MONGODB_URI', 'mongodb://localhost:27017')
        self.MONGODB_DATABASE = self.env.get('MONGODB_DATABASE', 'upface_crm')

    def _configure_audit_settings(self) -> None:
        self.AUDIT_RETENTION_DAYS = self.env.get('AUDIT_RETENTION_DAYS', 90, int)
        self.AUDIT_ASYNC_WRITES = self.env.get('AUDIT_ASYNC_WRITES', False, bool)
        self.AUDIT_WORKERS = self.env.get('AUDIT_WORKERS', 2, int)

    def _configure_logging_settings(self) -> None:
        self.LOG_LEVEL = self.env.get('LOG_LEVEL', 'INFO')
        self.LOG_FORMAT = self.env.get('LOG_FORMAT', 'json')
        self.METRICS_ENABLED = self.env.get('METRICS_ENABLED', True, bool)

    def validate(self) -> None:
        """Check cross-field constraints shared by every environment."""
        errors = []
        if self.SECURITY_LOG_LEVEL not in ('minimal', 'standard', 'detailed'):
            errors.append(f'Unknown SECURITY_LOG_LEVEL {self.SECURITY_LOG_LEVEL!r}')
        if self.DOCUMENT_STORE not in ('mongodb', 'memory'):
            errors.append(f'Unknown DOCUMENT_STORE {self.DOCUMENT_STORE!r}')
        if self.RATE_LIMIT_STORAGE not in ('memory', 'redis'):
            errors.append(f'Unknown RATE_LIMIT_STORAGE {self.RATE_LIMIT_STORAGE!r}')
        if self.RATE_LIMIT_STORAGE == 'redis' and not self.REDIS_URL:
            errors.append('REDIS_URL is required for redis rate limit storage')
        if errors:
            raise ConfigurationError(
                'Configuration validation failed:\n' + '\n'.join(f'- {e}' for e in errors)
            )

    def to_dict(self) -> Dict[str, Any]:
        """Uppercase settings with secrets masked."""
        masked = {'SECRET_KEY', 'JWT_SECRET_KEY'}
        return {
            key: '***MASKED***' if key in masked and value else value
            for key, value in vars(self).items()
            if key.isupper()
        }


class DevelopmentConfig(BaseConfig):
    ENV_NAME = 'development'

    def __init__(self, env_file: Optional[str] = None):
        super().__init__(env_file)
        self.DEBUG = True
        self.SESSION_COOKIE_SECURE = False
        self.LOG_LEVEL = self.env.get('LOG_LEVEL', 'DEBUG')
        self.LOG_FORMAT = self.env.get('LOG_FORMAT', 'console')
        self.PROXY_FIX_X_FOR = self.env.get('PROXY_FIX_X_FOR', 0, int)
        self.CORS_ALLOWED_ORIGINS = self.CORS_ALLOWED_ORIGINS + [
            'http://localhost:3000',
            'http://127.0.0.1:3000',
        ]

        if not self.SECRET_KEY:
            logger.warning("Generating temporary SECRET_KEY for development")
            self.SECRET_KEY = secrets.token_urlsafe(32)
        if not self.JWT_SECRET_KEY:
            logger.warning("Generating temporary JWT_SECRET_KEY for development")
            self.JWT_SECRET_KEY = secrets.token_urlsafe(32)


class TestingConfig(BaseConfig):
    """In-memory stores and fixed keys for the test suite."""

    ENV_NAME = 'testing'

    def __init__(self, env_file: Optional[str] = None):
        super().__init__(env_file)
        self.TESTING = True
        self.SECRET_KEY = 'testing-secret-key-with-at-least-32-chars'
        self.JWT_SECRET_KEY = 'testing-jwt-signing-key-with-32-plus-chars'
        self.SESSION_COOKIE_SECURE = False
        self.DOCUMENT_STORE = 'memory'
        self.RATE_LIMIT_STORAGE = 'memory'
        self.AUDIT_ASYNC_WRITES = False
        self.PROXY_FIX_X_FOR = 0
        self.LOG_FORMAT = 'console'
        self.LOG_LEVEL = 'WARNING'
        self.SECURITY_LOG_LEVEL = 'standard'


class ProductionConfig(BaseConfig):
    ENV_NAME = 'production'

    def __init__(self, env_file: Optional[str] = None):
        super().__init__(env_file)
        self.DEBUG = False
        self.SESSION_COOKIE_SAMESITE = 'Strict'
        self.FORCE_HTTPS = self.env.get('FORCE_HTTPS', True, bool)
        self.LOG_FORMAT = 'json'
        self._validate_production_requirements()

    def _validate_production_requirements(self) -> None:
        missing = [key for key in ('SECRET_KEY', 'JWT_SECRET_KEY') if not getattr(self, key)]
        if missing:
            raise ConfigurationError(
                f"Production deployment requires these environment variables: {', '.join(missing)}"
            )
        for key in ('SECRET_KEY', 'JWT_SECRET_KEY'):
            if len(getattr(self, key)) < 32:
                raise ConfigurationError(f'{key} must be at least 32 characters')


config_map = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(config_name: Optional[str] = None, env_file: Optional[str] = None) -> BaseConfig:
    """
    Build the configuration for an environment.

    Args:
        config_name: Environment name, defaults to ``FLASK_ENV`` or ``development``
        env_file: Optional ``.env`` path

    Raises:
        ConfigurationError: For an unknown name or invalid settings
    """
    config_name = (config_name or os.getenv('FLASK_ENV') or 'development').lower()
    config_class = config_map.get(config_name)
    if config_class is None:
        raise ConfigurationError(
            f"Invalid configuration name '{config_name}'. "
            f"Available configurations: {', '.join(config_map)}"
        )
    instance = config_class(env_file)
    instance.validate()
    logger.info("Configuration loaded", environment=config_name)
    return instance
