"""Session establishment, CSRF token issue and logout."""

import structlog
from flask import Blueprint, current_app, session

from upface_crm.auth.audit import AuditEventType, get_audit_logger
from upface_crm.auth.authentication import get_or_create_csrf_token
from upface_crm.auth.exceptions import AuthenticationException, ValidationException
from upface_crm.auth.permissions import get_role_permissions
from upface_crm.auth.security import public_policy, require_actor, security_policy
from upface_crm.blueprints import api_response, json_body
from upface_crm.utils.validators import validate

logger = structlog.get_logger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')


def _profile(actor):
    return {
        'user': actor.to_dict(),
        'permissions': [p.to_dict() for p in get_role_permissions(actor.role)],
    }


@auth_bp.route('/session', methods=['POST'])
@security_policy(public_policy(rate_limit='login', csrf=False))
def create_session():
    """
    Exchange email and password for a bearer token.

    The signed session is reset and receives a fresh CSRF token, which is
    returned alongside the token and the actor's permissions.
    """
    result = validate('login', json_body())
    if not result.ok:
        raise ValidationException('LoginSchema validation failed', field_errors=result.errors)
    email = result.data['email']
    audit = get_audit_logger()
    authenticator = current_app.extensions['authenticator']

    try:
        actor = authenticator.authenticate_credentials(email, result.data['password'])
    except AuthenticationException as e:
        audit.log_auth(
            AuditEventType.LOGIN_FAILED,
            success=False,
            user_id=e.metadata.get('user_id'),
            details={'email': email, 'reason': e.error_code.value},
            error_message=e.message,
        )
        raise

    token_manager = authenticator.token_manager
    session.clear()
    csrf_token = get_or_create_csrf_token(session)
    audit.log_auth(AuditEventType.LOGIN_SUCCESS, actor=actor)
    logger.info("Session established", user_id=actor.id, role=actor.role.value)

    data = _profile(actor)
    data.update(
        token=token_manager.issue(actor),
        token_type='Bearer',
        expires_in=token_manager.expiration_seconds,
        csrf_token=csrf_token,
    )
    return api_response(data, 'Session established', 201)


@auth_bp.route('/csrf-token', methods=['GET'])
@security_policy(public_policy())
def csrf_token():
    return api_response({'csrf_token': get_or_create_csrf_token(session)})


@auth_bp.route('/me', methods=['GET'])
@security_policy()
def current_profile():
    return api_response(_profile(require_actor()))


@auth_bp.route('/logout', methods=['POST'])
@security_policy()
def logout():
    actor = require_actor()
    session.clear()
    get_audit_logger().log_auth(AuditEventType.LOGOUT, actor=actor)
    return api_response(message='Logged out')
