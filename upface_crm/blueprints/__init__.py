"""
HTTP surface of the CRM.

Every route declares its security policy with ``security_policy``; the
middleware enforces it before the view runs. Views delegate to the secure
services and return the common ``api_response`` envelope. Security
exceptions raised by services are turned into safe error bodies by the
application error handlers.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from flask import Flask, jsonify, request

from upface_crm.auth.exceptions import ValidationException


def api_response(data: Any = None, message: str = 'Operation completed successfully',
                 status_code: int = 200):
    return jsonify({
        'success': True,
        'message': message,
        'data': data,
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }), status_code


def json_body() -> Dict[str, Any]:
    """
    The request's JSON object.

    Raises:
        ValidationException: If the body is present but not a JSON object
    """
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationException(
            'Request body must be a JSON object',
            field_errors=[('body', 'Request body must be a JSON object.')],
        )
    return payload


def int_arg(name: str, default: int, minimum: int = 1, maximum: int = 10000) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationException(
            f'Invalid {name}', field_errors=[(name, f'{name} must be an integer.')]
        )
    return max(minimum, min(value, maximum))


def register_blueprints(app: Flask) -> None:
    from upface_crm.blueprints.admin import admin_bp
    from upface_crm.blueprints.auth import auth_bp
    from upface_crm.blueprints.crm import crm_bp
    from upface_crm.blueprints.public import public_bp
    from upface_crm.blueprints.users import users_bp

    for blueprint in (public_bp, auth_bp, crm_bp, users_bp, admin_bp):
        app.register_blueprint(blueprint)
