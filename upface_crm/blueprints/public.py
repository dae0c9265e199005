"""Anonymous routes: health, contact form, public info and metrics."""

import structlog
from flask import Blueprint, Response, current_app, jsonify, request

from upface_crm import __version__
from upface_crm.auth.security import public_policy, security_policy
from upface_crm.blueprints import api_response, json_body
from upface_crm.business.models import InquiryStatus, enum_values
from upface_crm.business.services import get_services
from upface_crm.monitoring.metrics import generate_metrics_output

logger = structlog.get_logger(__name__)

public_bp = Blueprint('public', __name__)


@public_bp.route('/api/health', methods=['GET'])
@security_policy(public_policy())
def health():
    """Liveness plus document store reachability; 503 when the store is down."""
    store_ok = current_app.extensions['document_store'].ping()
    if not store_ok:
        logger.warning("Document store health check failed")

    status = 'healthy' if store_ok else 'degraded'
    body = {
        'status': status,
        'version': __version__,
        'checks': {'document_store': 'ok' if store_ok else 'unavailable'},
    }
    return jsonify(body), 200 if store_ok else 503


@public_bp.route('/api/contact', methods=['POST'])
@security_policy(public_policy(csrf=False))
def submit_inquiry():
    """Website contact form. Rate limited per client IP by the inquiry service."""
    inquiry = get_services().inquiries.submit(json_body(), request.remote_addr)
    return api_response(
        {'id': inquiry['id'], 'status': inquiry['status']},
        'Thank you, we will be in touch shortly',
        201,
    )


@public_bp.route('/api/public/info', methods=['GET'])
@security_policy(public_policy())
def public_info():
    return api_response({
        'name': current_app.config.get('APP_NAME'),
        'version': __version__,
        'inquiry_statuses': enum_values(InquiryStatus),
    })


@public_bp.route('/metrics', methods=['GET'])
@security_policy(public_policy(rate_limit=None))
def metrics():
    if not current_app.config.get('METRICS_ENABLED', True):
        return jsonify({'error': True, 'message': 'Not found'}), 404
    payload, content_type = generate_metrics_output()
    return Response(payload, content_type=content_type)
