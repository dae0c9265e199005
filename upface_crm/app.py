"""
Flask application factory.

``create_app`` wires configuration, structured logging, the document store,
the audit logger, rate limiters, bearer authentication, the security
middleware, the secure CRM services and the blueprints, then registers the
error handlers and the ``flask security`` CLI group.

Components are published on ``app.extensions``:

- ``document_store``, ``repositories``
- ``audit_logger``, ``rate_limiters``
- ``token_manager``, ``authenticator``
- ``security_middleware``, ``crm_services``
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import click
import structlog
from flask import Flask, current_app, jsonify
from flask.cli import AppGroup
from limits.storage import Storage
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from upface_crm.auth.audit import AuditEventType, AuditLogger
from upface_crm.auth.authentication import Authenticator, TokenManager
from upface_crm.auth.exceptions import (
    RateLimitException,
    SecurityException,
    SystemException,
    create_safe_error_response,
)
from upface_crm.auth.rate_limit import (
    DEFAULT_RATE_LIMITS,
    RateLimiterRegistry,
    build_rate_limit_storage,
    parse_rate_limits,
)
from upface_crm.auth.security import (
    SecurityMiddleware,
    configure_cors,
    configure_security_headers,
)
from upface_crm.blueprints import register_blueprints
from upface_crm.business.services import SecureCRMServices
from upface_crm.config.settings import get_config
from upface_crm.data.repositories import Repositories
from upface_crm.data.store import (
    DataStoreError,
    DocumentStore,
    MongoDocumentStore,
    build_document_store,
)
from upface_crm.monitoring.logging import init_logging

logger = structlog.get_logger(__name__)

MONGO_INDEXES = {
    'audit_logs': ('timestamp', 'user_id', 'event_type', 'severity'),
    'clients': ('assigned_to', 'created_at'),
    'tasks': ('assigned_to', 'due_date'),
    'task_comments': ('task_id',),
    'interactions': ('client_id',),
    'inquiries': ('status',),
    'users': ('email', 'role'),
}
MONGO_UNIQUE_INDEXES = {
    'users': ('email',),
}

security_cli = AppGroup('security', help='Security maintenance commands.')


@security_cli.command('cleanup-rate-limits')
def cleanup_rate_limits():
    """Clear idle rate-limit buckets for every operation class."""
    results = current_app.extensions['rate_limiters'].cleanup_all()
    for operation, evicted in sorted(results.items()):
        click.echo(f'{operation}: {evicted} evicted')
    click.echo(f'total: {sum(results.values())} evicted')


def create_app(
    config_name: Optional[str] = None,
    document_store: Optional[DocumentStore] = None,
    rate_limit_storage: Optional[Storage] = None,
    **config_overrides
) -> Flask:
    """
    Create the application.

    Args:
        config_name: ``development``, ``testing`` or ``production``;
            defaults to ``FLASK_ENV``
        document_store: Store override, otherwise built from ``DOCUMENT_STORE``
        rate_limit_storage: ``limits`` storage override, otherwise built from
            ``RATE_LIMIT_STORAGE``
        **config_overrides: Values applied on top of the configuration class

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    app.config.update(config_overrides)
    init_logging(app)

    if app.config.get('PROXY_FIX_X_FOR'):
        app.wsgi_app = ProxyFix(
            app.wsgi_app, x_for=int(app.config['PROXY_FIX_X_FOR']), x_proto=1
        )

    store = document_store or build_document_store(
        app.config['DOCUMENT_STORE'],
        app.config.get('MONGODB_URI'),
        app.config.get('MONGODB_DATABASE'),
    )
    if isinstance(store, MongoDocumentStore):
        store.ensure_indexes(MONGO_INDEXES, unique=MONGO_UNIQUE_INDEXES)
    repos = Repositories(store)

    executor = None
    if app.config.get('AUDIT_ASYNC_WRITES'):
        executor = ThreadPoolExecutor(
            max_workers=app.config.get('AUDIT_WORKERS', 2), thread_name_prefix='audit'
        )
    audit = AuditLogger(store, executor=executor)
    audit.init_app(app)

    operation_limits = dict(DEFAULT_RATE_LIMITS)
    operation_limits.update(parse_rate_limits(app.config.get('RATE_LIMITS', {})))
    if rate_limit_storage is None:
        rate_limit_storage = build_rate_limit_storage(
            app.config['RATE_LIMIT_STORAGE'], app.config.get('REDIS_URL')
        )
    rate_limiters = RateLimiterRegistry(operation_limits, rate_limit_storage)

    token_manager = TokenManager(
        app.config['JWT_SECRET_KEY'],
        algorithm=app.config['JWT_ALGORITHM'],
        expiration_seconds=app.config['JWT_EXPIRATION_SECONDS'],
        issuer=app.config['JWT_ISSUER'],
    )
    authenticator = Authenticator(token_manager, repos.users)

    configure_security_headers(app)
    configure_cors(app)

    SecurityMiddleware(
        audit,
        rate_limiters,
        authenticator,
        allowed_origins=app.config['CORS_ALLOWED_ORIGINS'],
        anonymous_paths=app.config['ANONYMOUS_PATHS'],
        log_level=app.config['SECURITY_LOG_LEVEL'],
    ).init_app(app)
    SecureCRMServices(repos, audit, rate_limiters).init_app(app)

    app.extensions.update(
        document_store=store,
        repositories=repos,
        rate_limiters=rate_limiters,
        token_manager=token_manager,
        authenticator=authenticator,
        audit_executor=executor,
    )

    register_blueprints(app)
    register_error_handlers(app)
    app.cli.add_command(security_cli)

    logger.info(
        "Application created",
        document_store=type(store).__name__,
        rate_limit_storage=app.config['RATE_LIMIT_STORAGE'],
        security_log_level=app.config['SECURITY_LOG_LEVEL'],
    )
    return app


def _error_response(exception: SecurityException):
    response = jsonify(create_safe_error_response(exception))
    response.status_code = exception.http_status
    if isinstance(exception, RateLimitException) and exception.retry_after is not None:
        response.headers['Retry-After'] = str(exception.retry_after)
    return response


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(SecurityException)
    def handle_security_exception(error: SecurityException):
        logger.warning(
            "Request rejected",
            error_code=error.error_code.value,
            error_id=error.error_id,
            message=error.message,
        )
        return _error_response(error)

    @app.errorhandler(DataStoreError)
    def handle_data_store_error(error: DataStoreError):
        logger.error(
            "Document store failure",
            operation=error.operation,
            collection=error.collection,
            error=str(error),
        )
        current_app.extensions['audit_logger'].log_system_event(
            AuditEventType.SYSTEM_ERROR,
            'Document store failure',
            success=False,
            details={'operation': error.operation, 'collection': error.collection},
            error_message=str(error),
        )
        return _error_response(SystemException(
            str(error), http_status=503, user_message='Service temporarily unavailable'
        ))

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return jsonify({
            'error': True,
            'message': error.description,
            'status_code': error.code,
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.exception("Unexpected error", error_type=type(error).__name__)
        current_app.extensions['audit_logger'].log_system_event(
            AuditEventType.SYSTEM_ERROR,
            'Unhandled application error',
            success=False,
            details={'error_type': type(error).__name__},
            error_message=str(error),
        )
        return _error_response(SystemException(f'Unhandled error: {error}'))


def create_wsgi_application() -> Flask:
    """Application for WSGI servers, configured from ``FLASK_ENV``."""
    return create_app(os.getenv('FLASK_ENV', 'production'))
