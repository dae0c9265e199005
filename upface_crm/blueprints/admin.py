"""
Admin routes: audit trail queries, security reporting and the permission
catalog. All routes require the ``system.security`` permission.
"""

from datetime import datetime, timezone
from typing import Optional

from flask import Blueprint, request

from upface_crm.auth.audit import AuditConfig, AuditEventType, get_audit_logger
from upface_crm.auth.exceptions import ValidationException
from upface_crm.auth.permissions import (
    ROLE_HIERARCHY,
    ROLE_PERMISSIONS,
    get_permissions_by_category,
    sorted_roles,
)
from upface_crm.auth.security import admin_policy, require_actor, security_policy
from upface_crm.blueprints import api_response, int_arg
from upface_crm.utils.validators import validate_id

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

ADMIN_POLICY = admin_policy(required_permission='system.security')


def _date_arg(name: str) -> Optional[datetime]:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw[:-1] + '+00:00' if raw.endswith('Z') else raw)
    except ValueError:
        raise ValidationException(
            f'Invalid {name}', field_errors=[(name, f'{name} must be an ISO-8601 date.')]
        )
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _list_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    return [item.strip() for item in raw.split(',') if item.strip()]


def _bool_arg(name: str) -> Optional[bool]:
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in ('true', '1', 'yes')


def _record_access(action: str, **details) -> None:
    get_audit_logger().log(
        AuditEventType.ADMIN_PANEL_ACCESS, action,
        actor=require_actor(), resource='audit_logs', details=details or None,
    )


@admin_bp.route('/audit/logs', methods=['GET'])
@security_policy(ADMIN_POLICY)
def audit_logs():
    """
    Filtered audit entries, newest first.

    Query parameters: ``user_id``, ``event_type`` and ``severity`` (comma
    separated), ``resource``, ``success``, ``start_date``/``end_date``
    (ISO-8601) and ``limit``.
    """
    entries = get_audit_logger().query_logs(
        user_id=request.args.get('user_id'),
        event_type=_list_arg('event_type'),
        severity=_list_arg('severity'),
        resource=request.args.get('resource'),
        success=_bool_arg('success'),
        start_date=_date_arg('start_date'),
        end_date=_date_arg('end_date'),
        limit=int_arg('limit', AuditConfig.DEFAULT_QUERY_LIMIT,
                      maximum=AuditConfig.MAX_QUERY_LIMIT),
    )
    _record_access('Queried audit logs', returned=len(entries))
    return api_response({'logs': [e.to_dict() for e in entries], 'count': len(entries)})


@admin_bp.route('/audit/alerts', methods=['GET'])
@security_policy(ADMIN_POLICY)
def security_alerts():
    alerts = get_audit_logger().get_security_alerts(limit=int_arg('limit', 50, maximum=1000))
    _record_access('Viewed security alerts')
    return api_response({'alerts': [a.to_dict() for a in alerts], 'count': len(alerts)})


@admin_bp.route('/audit/users/<user_id>/activity', methods=['GET'])
@security_policy(ADMIN_POLICY)
def user_activity(user_id):
    validate_id(user_id, 'user_id')
    activity = get_audit_logger().get_user_activity(user_id, days=int_arg('days', 30, maximum=365))
    _record_access('Viewed user activity', target_user_id=user_id)
    return api_response(activity)


@admin_bp.route('/audit/report', methods=['GET'])
@security_policy(ADMIN_POLICY)
def security_report():
    report = get_audit_logger().generate_security_report(days=int_arg('days', 7, maximum=365))
    _record_access('Generated security report')
    return api_response(report)


@admin_bp.route('/permissions', methods=['GET'])
@security_policy(ADMIN_POLICY)
def permission_catalog():
    """The permission catalog by category and the role matrix."""
    actor = require_actor()
    roles = [
        {
            'role': role.value,
            'level': ROLE_HIERARCHY[role],
            'permissions': sorted(ROLE_PERMISSIONS[role].permissions),
            'accessible_roles': [r.value for r in sorted_roles(ROLE_PERMISSIONS[role].accessible_roles)],
        }
        for role in sorted_roles(ROLE_HIERARCHY)
    ]
    get_audit_logger().log(
        AuditEventType.PERMISSIONS_VIEWED, 'Viewed permission catalog',
        actor=actor, resource='permissions',
    )
    return api_response({
        'categories': {
            category: [p.to_dict() for p in permissions]
            for category, permissions in get_permissions_by_category().items()
        },
        'roles': roles,
    })
