"""
CRM routes: clients, interactions, tasks and inquiries.

Route policies gate coarse access (CRM access, deletion permission,
manager-only inquiry handling); the secure services apply the per-record
rules such as "agents only see their assigned clients".
"""

import os

import structlog
from flask import Blueprint, request

from upface_crm.auth.exceptions import ValidationException
from upface_crm.auth.permissions import Role
from upface_crm.auth.security import auth_policy, require_actor, security_policy
from upface_crm.blueprints import api_response, json_body
from upface_crm.business.services import get_services

logger = structlog.get_logger(__name__)

crm_bp = Blueprint('crm', __name__, url_prefix='/api/crm')

CRM_POLICY = auth_policy(required_permission='crm.access', rate_limit='crm_operations')


@crm_bp.route('/clients', methods=['GET'])
@security_policy(CRM_POLICY)
def list_clients():
    clients = get_services().clients.list(require_actor())
    return api_response({'clients': clients, 'count': len(clients)})


@crm_bp.route('/clients', methods=['POST'])
@security_policy(CRM_POLICY)
def create_client():
    client = get_services().clients.create(json_body(), require_actor())
    return api_response(client, 'Client created', 201)


@crm_bp.route('/clients/<client_id>', methods=['GET'])
@security_policy(CRM_POLICY)
def get_client(client_id):
    return api_response(get_services().clients.get(client_id, require_actor()))


@crm_bp.route('/clients/<client_id>', methods=['PUT', 'PATCH'])
@security_policy(CRM_POLICY)
def update_client(client_id):
    client = get_services().clients.update(client_id, json_body(), require_actor())
    return api_response(client, 'Client updated')


@crm_bp.route('/clients/<client_id>', methods=['DELETE'])
@security_policy(required_permission='crm.clients.delete', rate_limit='api_sensitive')
def delete_client(client_id):
    get_services().clients.delete(client_id, require_actor())
    return api_response({'id': client_id}, 'Client deleted')


@crm_bp.route('/clients/<client_id>/assign', methods=['POST'])
@security_policy(required_permission='crm.clients.assign', rate_limit='crm_operations')
def assign_client(client_id):
    payload = json_body()
    client = get_services().clients.assign(
        client_id, payload.get('assigned_to'), require_actor()
    )
    return api_response(client, 'Client assigned')


@crm_bp.route('/clients/<client_id>/interactions', methods=['GET'])
@security_policy(CRM_POLICY)
def list_interactions(client_id):
    interactions = get_services().interactions.list_for_client(client_id, require_actor())
    return api_response({'interactions': interactions, 'count': len(interactions)})


@crm_bp.route('/clients/<client_id>/interactions', methods=['POST'])
@security_policy(CRM_POLICY)
def create_interaction(client_id):
    payload = dict(json_body(), client_id=client_id)
    interaction = get_services().interactions.create(payload, require_actor())
    return api_response(interaction, 'Interaction recorded', 201)


@crm_bp.route('/tasks', methods=['GET'])
@security_policy(CRM_POLICY)
def list_tasks():
    """Tasks assigned to ``user_id``, the caller by default."""
    actor = require_actor()
    user_id = request.args.get('user_id', actor.id)
    tasks = get_services().tasks.list_for_user(user_id, actor)
    return api_response({'tasks': tasks, 'count': len(tasks)})


@crm_bp.route('/tasks', methods=['POST'])
@security_policy(CRM_POLICY)
def create_task():
    task = get_services().tasks.create(json_body(), require_actor())
    return api_response(task, 'Task created', 201)


@crm_bp.route('/tasks/<task_id>', methods=['GET'])
@security_policy(CRM_POLICY)
def get_task(task_id):
    return api_response(get_services().tasks.get(task_id, require_actor()))


@crm_bp.route('/tasks/<task_id>', methods=['PUT', 'PATCH'])
@security_policy(CRM_POLICY)
def update_task(task_id):
    task = get_services().tasks.update(task_id, json_body(), require_actor())
    return api_response(task, 'Task updated')


@crm_bp.route('/tasks/<task_id>', methods=['DELETE'])
@security_policy(required_role=Role.MANAGER, rate_limit='api_sensitive')
def delete_task(task_id):
    get_services().tasks.delete(task_id, require_actor())
    return api_response({'id': task_id}, 'Task deleted')


@crm_bp.route('/tasks/<task_id>/comments', methods=['GET'])
@security_policy(CRM_POLICY)
def list_comments(task_id):
    comments = get_services().tasks.list_comments(task_id, require_actor())
    return api_response({'comments': comments, 'count': len(comments)})


@crm_bp.route('/tasks/<task_id>/comments', methods=['POST'])
@security_policy(CRM_POLICY)
def add_comment(task_id):
    comment = get_services().tasks.add_comment(task_id, json_body(), require_actor())
    return api_response(comment, 'Comment added', 201)


@crm_bp.route('/tasks/<task_id>/attachments', methods=['POST'])
@security_policy(CRM_POLICY)
def add_attachment(task_id):
    upload = request.files.get('file')
    if upload is None:
        raise ValidationException(
            'Missing file', field_errors=[('file', 'A file is required.')]
        )
    upload.stream.seek(0, os.SEEK_END)
    size = upload.stream.tell()
    upload.stream.seek(0)

    attachment = get_services().tasks.add_attachment(
        task_id, upload.filename, size, upload.mimetype, require_actor()
    )
    return api_response(attachment, 'Attachment added', 201)


@crm_bp.route('/inquiries', methods=['GET'])
@security_policy(required_role=Role.MANAGER, rate_limit='crm_operations')
def list_inquiries():
    inquiries = get_services().inquiries.list_new(require_actor())
    return api_response({'inquiries': inquiries, 'count': len(inquiries)})


@crm_bp.route('/inquiries/<inquiry_id>/convert', methods=['POST'])
@security_policy(required_role=Role.MANAGER, required_permission='crm.clients.create',
                 rate_limit='crm_operations')
def convert_inquiry(inquiry_id):
    client = get_services().inquiries.convert_to_client(
        inquiry_id, require_actor(), json_body()
    )
    return api_response(client, 'Inquiry converted', 201)
