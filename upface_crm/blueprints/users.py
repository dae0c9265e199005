"""User management routes."""

from flask import Blueprint

from upface_crm.auth.exceptions import ValidationException
from upface_crm.auth.security import require_actor, security_policy
from upface_crm.blueprints import api_response, json_body
from upface_crm.business.services import get_services

users_bp = Blueprint('users', __name__, url_prefix='/api/users')


@users_bp.route('', methods=['GET'])
@security_policy(required_permission='users.view')
def list_users():
    users = get_services().users.list(require_actor())
    return api_response({'users': users, 'count': len(users)})


@users_bp.route('', methods=['POST'])
@security_policy(required_permission='users.create', rate_limit='api_sensitive')
def register_user():
    payload = json_body()
    role = payload.pop('role', None)
    user = get_services().users.register(payload, role, require_actor())
    return api_response(user, 'User created', 201)


@users_bp.route('/<user_id>', methods=['GET'])
@security_policy()
def get_user(user_id):
    return api_response(get_services().users.get(user_id, require_actor()))


@users_bp.route('/<user_id>', methods=['PUT', 'PATCH'])
@security_policy()
def update_user(user_id):
    user = get_services().users.update_profile(user_id, json_body(), require_actor())
    return api_response(user, 'Profile updated')


@users_bp.route('/<user_id>/role', methods=['PUT'])
@security_policy(required_permission='users.permissions', rate_limit='api_sensitive')
def change_role(user_id):
    user = get_services().users.change_role(user_id, json_body().get('role'), require_actor())
    return api_response(user, 'Role changed')


@users_bp.route('/<user_id>/status', methods=['PUT'])
@security_policy(required_permission='users.edit', rate_limit='api_sensitive')
def set_status(user_id):
    active = json_body().get('active')
    if not isinstance(active, bool):
        raise ValidationException(
            'Invalid status payload', field_errors=[('active', 'active must be a boolean.')]
        )
    user = get_services().users.set_active(user_id, active, require_actor())
    return api_response(user, 'Status updated')


@users_bp.route('/<user_id>/permissions', methods=['GET'])
@security_policy()
def user_permissions(user_id):
    permissions = get_services().users.get_permissions(user_id, require_actor())
    return api_response({'user_id': user_id, 'permissions': permissions})
