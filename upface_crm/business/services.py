"""
Secure CRM Services

Per-entity facades over the raw repositories. Before any storage call each
service rate-limits creation flows, scans/validates/sanitizes payloads and
applies an entity-specific authorization rule through the authorization
engine predicates. Every change of role, status or assignment is mirrored to
the audit log with its old and new values.

Services raise ``SecurityException`` subclasses; the Flask error handlers
convert them into caller-safe responses. Authorization denials are always
recorded as HIGH ``unauthorized_access_attempt`` entries before raising.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from flask import current_app

from upface_crm.auth.audit import AuditEventType, AuditLogger, AuditSeverity
from upface_crm.auth.authentication import Actor, hash_password
from upface_crm.auth.exceptions import (
    AttackPatternException,
    AuthorizationException,
    RateLimitException,
    ResourceNotFoundException,
    SecurityErrorCode,
    ValidationException,
)
from upface_crm.auth.permissions import (
    Role,
    can_access_role_content,
    can_manage_user,
    get_role_permissions,
    has_permission,
    max_accessible_roles,
    resolve_role,
    sorted_roles,
)
from upface_crm.auth.rate_limit import RateLimiterRegistry
from upface_crm.business.models import ClientStatus, InquiryStatus, TaskStatus, UserStatus
from upface_crm.data.repositories import Repositories
from upface_crm.utils.validators import (
    secure_input,
    validate_file_upload,
    validate_id,
)

logger = structlog.get_logger(__name__)

PUBLIC_USER_FIELDS = (
    'id', 'name', 'email', 'phone', 'bio', 'role', 'status', 'created_at', 'updated_at'
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def public_user(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: record.get(key) for key in PUBLIC_USER_FIELDS}


class SecureService:
    """Shared authorization, rate limiting and input handling."""

    resource = 'resource'

    def __init__(self, repos: Repositories, audit: AuditLogger,
                 rate_limiters: RateLimiterRegistry):
        self.repos = repos
        self.audit = audit
        self.rate_limiters = rate_limiters

    def _deny(
        self,
        actor: Optional[Actor],
        message: str,
        resource_id: Optional[str] = None,
        error_code: SecurityErrorCode = SecurityErrorCode.AUTHZ_RESOURCE_ACCESS_DENIED,
        required_role: Optional[Role] = None,
        required_permission: Optional[str] = None
    ):
        role = actor.role.value if actor else None
        self.audit.log_security_event(
            AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
            AuditSeverity.HIGH,
            message,
            actor=actor,
            resource=self.resource,
            resource_id=resource_id,
            details={
                'user_role': role,
                'required_role': required_role.value if required_role else None,
                'required_permission': required_permission,
            },
        )
        raise AuthorizationException(
            message,
            error_code=error_code,
            user_id=actor.id if actor else None,
            user_role=role,
            required_role=required_role.value if required_role else None,
            required_permission=required_permission,
            resource_type=self.resource,
            resource_id=resource_id,
        )

    def _require_permission(self, actor: Actor, permission_id: str,
                            resource_id: Optional[str] = None) -> None:
        if not has_permission(actor.role, permission_id):
            self._deny(
                actor, f'Missing permission {permission_id}', resource_id,
                error_code=SecurityErrorCode.AUTHZ_PERMISSION_DENIED,
                required_permission=permission_id,
            )

    def _require_minimum_role(self, actor: Actor, role: Role,
                              resource_id: Optional[str] = None) -> None:
        if not can_access_role_content(actor.role, role):
            self._deny(
                actor, f'Requires {role.value} role or above', resource_id,
                error_code=SecurityErrorCode.AUTHZ_ROLE_INSUFFICIENT,
                required_role=role,
            )

    def _rate_limit(self, operation: str, bucket: str, actor: Optional[Actor] = None,
                    ip_address: Optional[str] = None) -> None:
        limiter = self.rate_limiters.get(operation)
        if limiter.is_allowed(bucket):
            return
        status = limiter.status(bucket)
        self.audit.log_security_event(
            AuditEventType.RATE_LIMIT_EXCEEDED,
            AuditSeverity.HIGH,
            f'Rate limit exceeded for {operation}',
            actor=actor,
            ip_address=ip_address,
            resource=self.resource,
            details={'operation': operation, 'limit': limiter.max_requests,
                     'window_seconds': limiter.window_seconds},
        )
        raise RateLimitException(
            f'Rate limit exceeded for {operation}',
            operation=operation,
            limit=limiter.max_requests,
            retry_after=status.retry_after,
        )

    def _clean(self, schema: str, data: Any, actor: Optional[Actor] = None,
               partial: bool = False, ip_address: Optional[str] = None) -> Dict[str, Any]:
        try:
            return secure_input(schema, data, partial=partial)
        except AttackPatternException as e:
            self.audit.log_security_event(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                AuditSeverity.HIGH,
                f'Attack pattern detected in {schema} input',
                actor=actor,
                ip_address=ip_address,
                resource=self.resource,
                details={'categories': e.categories, 'fields': e.fields},
            )
            raise
        except ValidationException as e:
            self.audit.log_security_event(
                AuditEventType.INPUT_VALIDATION_FAILED,
                AuditSeverity.MEDIUM,
                f'Invalid {schema} input',
                actor=actor,
                ip_address=ip_address,
                resource=self.resource,
                details={'fields': sorted({name for name, _ in e.field_errors})},
            )
            raise


class SecureClientService(SecureService):
    resource = 'client'

    def _load(self, client_id: str, actor: Actor) -> Dict[str, Any]:
        """Fetch a client the actor may see; agents only see their own."""
        validate_id(client_id, 'client_id')
        client = self.repos.clients.get(client_id)
        if client is None:
            raise ResourceNotFoundException('client', client_id)
        if (not has_permission(actor.role, 'crm.clients.viewAll')
                and client.get('assigned_to') != actor.id):
            self._deny(actor, 'Client is not assigned to this user', client_id,
                       required_permission='crm.clients.viewAll')
        return client

    def create(self, data: Any, actor: Actor) -> Dict[str, Any]:
        self._rate_limit('client_creation', actor.id, actor=actor)
        self._require_permission(actor, 'crm.clients.create')
        clean = self._clean('client', data, actor)
        clean.setdefault('status', ClientStatus.LEAD.value)
        client = self.repos.clients.create(dict(
            clean, assigned_to=actor.id, created_by=actor.id
        ))
        self.audit.log_data_access(
            AuditEventType.CLIENT_CREATED, actor, 'client', client['id'],
            'Created client', details={'fields': sorted(clean)},
        )
        return client

    def get(self, client_id: str, actor: Actor) -> Dict[str, Any]:
        self._require_permission(actor, 'crm.clients.view', client_id)
        client = self._load(client_id, actor)
        self.audit.log_data_access(
            AuditEventType.CLIENT_VIEWED, actor, 'client', client_id, 'Viewed client'
        )
        return client

    def list(self, actor: Actor) -> List[Dict[str, Any]]:
        self._require_permission(actor, 'crm.clients.view')
        if has_permission(actor.role, 'crm.clients.viewAll'):
            return self.repos.clients.find()
        return self.repos.clients.list_assigned_to(actor.id)

    def update(self, client_id: str, changes: Any, actor: Actor) -> Dict[str, Any]:
        self._require_permission(actor, 'crm.clients.edit', client_id)
        existing = self._load(client_id, actor)
        clean = self._clean('client', changes, actor, partial=True)
        if not clean:
            return existing
        updated = self.repos.clients.update(client_id, clean)

        details: Dict[str, Any] = {'fields': sorted(clean)}
        if 'status' in clean and clean['status'] != existing.get('status'):
            details.update(old_status=existing.get('status'), new_status=clean['status'])
        self.audit.log_data_access(
            AuditEventType.CLIENT_UPDATED, actor, 'client', client_id,
            'Updated client', details=details,
        )
        return updated

    def delete(self, client_id: str, actor: Actor) -> bool:
        self._require_minimum_role(actor, Role.MANAGER, client_id)
        existing = self._load(client_id, actor)
        deleted = self.repos.clients.delete(client_id)
        self.audit.log_data_access(
            AuditEventType.CLIENT_DELETED, actor, 'client', client_id,
            'Deleted client', success=deleted,
            details={'assigned_to': existing.get('assigned_to')},
        )
        return deleted

    def assign(self, client_id: str, assignee_id: str, actor: Actor) -> Dict[str, Any]:
        """Reassign a client; the assignee must be active and visible to the actor."""
        self._require_permission(actor, 'crm.clients.assign', client_id)
        client = self._load(client_id, actor)
        validate_id(assignee_id, 'assigned_to')
        assignee = self.repos.users.get(assignee_id)
        if assignee is None:
            raise ResourceNotFoundException('user', assignee_id)
        if assignee.get('status') != UserStatus.ACTIVE.value:
            raise ValidationException(
                'Assignee is inactive',
                field_errors=[('assigned_to', 'Assignee is not an active user.')],
            )
        if not can_access_role_content(actor.role, assignee.get('role')):
            self._deny(actor, 'Cannot assign clients to a higher role', client_id,
                       required_role=resolve_role(assignee.get('role')))

        previous = client.get('assigned_to')
        updated = self.repos.clients.update(client_id, {'assigned_to': assignee_id})
        self.audit.log_data_access(
            AuditEventType.CLIENT_ASSIGNED, actor, 'client', client_id,
            'Reassigned client',
            details={'old_value': previous, 'new_value': assignee_id},
        )
        return updated


class SecureTaskService(SecureService):
    resource = 'task'

    def __init__(self, repos, audit, rate_limiters, clients: SecureClientService):
        super().__init__(repos, audit, rate_limiters)
        self.clients = clients

    def _is_manager(self, actor: Actor) -> bool:
        return can_access_role_content(actor.role, Role.MANAGER)

    def _load(self, task_id: str, actor: Actor) -> Dict[str, Any]:
        """Fetch a task the actor may see: the assignee or manager-or-above."""
        validate_id(task_id, 'task_id')
        task = self.repos.tasks.get(task_id)
        if task is None:
            raise ResourceNotFoundException('task', task_id)
        if task.get('assigned_to') != actor.id and not self._is_manager(actor):
            self._deny(actor, 'Task is not assigned to this user', task_id,
                       required_role=Role.MANAGER)
        return task

    def _check_assignee(self, assignee_id: str, actor: Actor) -> None:
        assignee = self.repos.users.get(assignee_id)
        if assignee is None or assignee.get('status') != UserStatus.ACTIVE.value:
            raise ValidationException(
                'Assignee not available',
                field_errors=[('assigned_to', 'Assignee is not an active user.')],
            )
        if not can_access_role_content(actor.role, assignee.get('role')):
            self._deny(actor, 'Cannot assign tasks to a higher role',
                       required_role=resolve_role(assignee.get('role')))

    def create(self, data: Any, actor: Actor) -> Dict[str, Any]:
        self._require_permission(actor, 'crm.access')
        clean = self._clean('task', data, actor)
        assignee = clean.get('assigned_to') or actor.id
        if assignee != actor.id:
            self._require_minimum_role(actor, Role.MANAGER)
            self._check_assignee(assignee, actor)
        if clean.get('client_id'):
            self.clients._load(clean['client_id'], actor)

        task = self.repos.tasks.create(dict(
            clean,
            assigned_to=assignee,
            assigned_by=actor.id,
            status=clean.get('status', TaskStatus.TODO.value),
        ))
        self.audit.log_data_access(
            AuditEventType.TASK_CREATED, actor, 'task', task['id'], 'Created task',
            details={'assigned_to': assignee, 'priority': clean.get('priority')},
        )
        return task

    def get(self, task_id: str, actor: Actor) -> Dict[str, Any]:
        task = self._load(task_id, actor)
        self.audit.log_data_access(
            AuditEventType.TASK_VIEWED, actor, 'task', task_id, 'Viewed task'
        )
        return task

    def update(self, task_id: str, changes: Any, actor: Actor) -> Dict[str, Any]:
        existing = self._load(task_id, actor)
        clean = self._clean('task', changes, actor, partial=True)
        if not clean:
            return existing

        details: Dict[str, Any] = {'fields': sorted(clean)}
        new_assignee = clean.get('assigned_to')
        if new_assignee and new_assignee != existing.get('assigned_to'):
            self._require_minimum_role(actor, Role.MANAGER, task_id)
            self._check_assignee(new_assignee, actor)
            details.update(old_assignee=existing.get('assigned_to'), new_assignee=new_assignee)

        new_client = clean.get('client_id')
        if new_client and new_client != existing.get('client_id'):
            self.clients._load(new_client, actor)
            details.update(old_client_id=existing.get('client_id'), new_client_id=new_client)

        new_status = clean.get('status')
        if new_status and new_status != existing.get('status'):
            details.update(old_status=existing.get('status'), new_status=new_status)
            if new_status == TaskStatus.COMPLETED.value:
                clean['completed_at'] = _now()

        updated = self.repos.tasks.update(task_id, clean)
        self.audit.log_data_access(
            AuditEventType.TASK_UPDATED, actor, 'task', task_id, 'Updated task',
            details=details,
        )
        return updated

    def delete(self, task_id: str, actor: Actor) -> bool:
        self._require_minimum_role(actor, Role.MANAGER, task_id)
        self._load(task_id, actor)
        deleted = self.repos.tasks.delete(task_id)
        self.audit.log_data_access(
            AuditEventType.TASK_DELETED, actor, 'task', task_id, 'Deleted task',
            success=deleted,
        )
        return deleted

    def list_for_user(self, user_id: str, actor: Actor) -> List[Dict[str, Any]]:
        validate_id(user_id, 'user_id')
        if user_id != actor.id and not self._is_manager(actor):
            self._deny(actor, "Cannot list another user's tasks", user_id,
                       required_role=Role.MANAGER)
        return self.repos.tasks.list_for_assignee(user_id)

    def add_comment(self, task_id: str, data: Any, actor: Actor) -> Dict[str, Any]:
        self._load(task_id, actor)
        clean = self._clean('comment', data, actor)
        comment = self.repos.task_comments.create({
            'task_id': task_id,
            'user_id': actor.id,
            'user_email': actor.email,
            'content': clean['content'],
            'is_private': clean.get('is_private', False),
        })
        self.audit.log_data_access(
            AuditEventType.TASK_COMMENTED, actor, 'task', task_id, 'Commented on task',
            details={'comment_id': comment['id'], 'is_private': comment['is_private']},
        )
        return comment

    def list_comments(self, task_id: str, actor: Actor) -> List[Dict[str, Any]]:
        """Private comments are only visible to their author and managers."""
        self._load(task_id, actor)
        comments = self.repos.task_comments.list_for_task(task_id)
        if self._is_manager(actor):
            return comments
        return [c for c in comments if not c.get('is_private') or c.get('user_id') == actor.id]

    def add_attachment(self, task_id: str, filename: str, size: int,
                       content_type: Optional[str], actor: Actor) -> Dict[str, Any]:
        """Record attachment metadata. File content is stored elsewhere."""
        self._load(task_id, actor)
        result = validate_file_upload(filename, size, content_type)
        if not result.ok:
            raise ValidationException('Invalid attachment', field_errors=result.errors)
        attachment = self.repos.task_attachments.create(dict(
            result.data, task_id=task_id, uploaded_by=actor.id
        ))
        self.audit.log_data_access(
            AuditEventType.TASK_UPDATED, actor, 'task', task_id, 'Attached file to task',
            details={'attachment_id': attachment['id'], 'filename': result.data['filename']},
        )
        return attachment


class SecureInquiryService(SecureService):
    resource = 'inquiry'

    def submit(self, data: Any, client_ip: Optional[str]) -> Dict[str, Any]:
        """Anonymous contact-form submission, rate limited per client IP."""
        ip = client_ip or 'anonymous'
        self._rate_limit('inquiry_submission', ip, ip_address=client_ip)
        clean = self._clean('inquiry', data, ip_address=client_ip)
        inquiry = self.repos.inquiries.create(dict(
            clean, status=InquiryStatus.NEW.value, source='website', ip_address=client_ip
        ))
        self.audit.log(
            AuditEventType.INQUIRY_SUBMITTED,
            'Inquiry submitted',
            severity=AuditSeverity.LOW,
            ip_address=client_ip,
            resource='inquiry',
            resource_id=inquiry['id'],
        )
        return inquiry

    def list_new(self, actor: Actor) -> List[Dict[str, Any]]:
        self._require_minimum_role(actor, Role.MANAGER)
        return self.repos.inquiries.list_by_status(InquiryStatus.NEW.value)

    def convert_to_client(self, inquiry_id: str, actor: Actor,
                          overrides: Any = None) -> Dict[str, Any]:
        """
        Turn an inquiry into a client assigned to the actor.

        Inquiry fields were sanitized on submission and are copied as they
        are; only ``overrides`` goes through client validation.
        """
        self._require_minimum_role(actor, Role.MANAGER, inquiry_id)
        self._require_permission(actor, 'crm.clients.create', inquiry_id)
        validate_id(inquiry_id, 'inquiry_id')
        inquiry = self.repos.inquiries.get(inquiry_id)
        if inquiry is None:
            raise ResourceNotFoundException('inquiry', inquiry_id)
        if inquiry.get('status') == InquiryStatus.CONVERTED.value:
            raise ValidationException(
                'Inquiry already converted',
                field_errors=[('status', 'Inquiry has already been converted.')],
            )

        clean_overrides = self._clean('client', overrides or {}, actor, partial=True)
        client_data = {
            'name': inquiry.get('name'),
            'email': inquiry.get('email'),
            'phone': inquiry.get('phone'),
            'company': inquiry.get('company'),
            'notes': inquiry.get('message'),
            'status': ClientStatus.LEAD.value,
            'acquisition_source': 'website',
            'inquiry_id': inquiry_id,
        }
        client_data.update(clean_overrides)
        client = self.repos.clients.create(dict(
            client_data, assigned_to=actor.id, created_by=actor.id
        ))
        self.repos.inquiries.update(inquiry_id, {
            'status': InquiryStatus.CONVERTED.value,
            'converted_client_id': client['id'],
        })
        self.audit.log_data_access(
            AuditEventType.INQUIRY_CONVERTED, actor, 'inquiry', inquiry_id,
            'Converted inquiry to client',
            details={
                'client_id': client['id'],
                'old_status': inquiry.get('status'),
                'new_status': InquiryStatus.CONVERTED.value,
            },
        )
        return client


class SecureInteractionService(SecureService):
    resource = 'interaction'

    def __init__(self, repos, audit, rate_limiters, clients: SecureClientService):
        super().__init__(repos, audit, rate_limiters)
        self.clients = clients

    def create(self, data: Any, actor: Actor) -> Dict[str, Any]:
        self._rate_limit('interaction_creation', actor.id, actor=actor)
        self._require_permission(actor, 'crm.clients.edit')
        clean = self._clean('interaction', data, actor)
        self.clients._load(clean['client_id'], actor)
        interaction = self.repos.interactions.create(dict(
            clean,
            user_id=actor.id,
            date=_now(),
            follow_up_required=clean.get('follow_up_required', False),
        ))
        self.audit.log_data_access(
            AuditEventType.INTERACTION_CREATED, actor, 'client', clean['client_id'],
            'Logged client interaction',
            details={'interaction_id': interaction['id'], 'type': clean['type']},
        )
        return interaction

    def list_for_client(self, client_id: str, actor: Actor) -> List[Dict[str, Any]]:
        self._require_permission(actor, 'crm.clients.view', client_id)
        self.clients._load(client_id, actor)
        return self.repos.interactions.list_for_client(client_id)


class SecureUserService(SecureService):
    resource = 'user'

    def _load(self, user_id: str) -> Dict[str, Any]:
        validate_id(user_id, 'user_id')
        user = self.repos.users.get(user_id)
        if user is None:
            raise ResourceNotFoundException('user', user_id)
        return user

    def _can_view(self, actor: Actor, target: Dict[str, Any]) -> bool:
        return target['id'] == actor.id or (
            has_permission(actor.role, 'users.view')
            and can_access_role_content(actor.role, target.get('role'))
        )

    def get(self, user_id: str, actor: Actor) -> Dict[str, Any]:
        target = self._load(user_id)
        if not self._can_view(actor, target):
            self._deny(actor, 'Cannot view this user', user_id,
                       required_permission='users.view')
        if target['id'] != actor.id:
            self.audit.log(
                AuditEventType.USER_MANAGEMENT_ACCESS, 'Viewed user profile',
                actor=actor, resource='user', resource_id=user_id,
            )
        return public_user(target)

    def list(self, actor: Actor) -> List[Dict[str, Any]]:
        """Users whose role is at or below the actor's."""
        self._require_permission(actor, 'users.view')
        roles = [role.value for role in sorted_roles(max_accessible_roles(actor.role))]
        self.audit.log(
            AuditEventType.USER_MANAGEMENT_ACCESS, 'Listed users',
            actor=actor, resource='user', details={'roles': roles},
        )
        return [public_user(user) for user in self.repos.users.list_by_roles(roles)]

    def register(self, data: Any, role: Any, actor: Actor) -> Dict[str, Any]:
        """Create an active user with a role strictly below the actor's."""
        self._require_permission(actor, 'users.create')
        new_role = resolve_role(role)
        if new_role is None:
            raise ValidationException(
                'Unknown role', field_errors=[('role', 'Unknown role.')]
            )
        if not can_manage_user(actor.role, new_role):
            self._deny(actor, 'Cannot create a user at or above own role',
                       error_code=SecurityErrorCode.AUTHZ_MANAGEMENT_DENIED,
                       required_role=new_role)

        clean = self._clean('user_registration', data, actor)
        if self.repos.users.find_by_email(clean['email']) is not None:
            raise ValidationException(
                'Email already registered',
                field_errors=[('email', 'A user with this email already exists.')],
            )
        password = clean.pop('password')
        user = self.repos.users.create(dict(
            clean,
            role=new_role.value,
            status=UserStatus.ACTIVE.value,
            password_hash=hash_password(password),
            created_by=actor.id,
        ))
        self.audit.log_permission_change(
            AuditEventType.PERMISSION_GRANTED, actor, user['id'], new_value=new_role,
            details={'reason': 'user_created'},
        )
        return public_user(user)

    def update_profile(self, user_id: str, data: Any, actor: Actor) -> Dict[str, Any]:
        target = self._load(user_id)
        is_self = target['id'] == actor.id
        if not is_self and not (
            has_permission(actor.role, 'users.edit')
            and can_manage_user(actor.role, target.get('role'))
        ):
            self._deny(actor, 'Cannot edit this user', user_id,
                       error_code=SecurityErrorCode.AUTHZ_MANAGEMENT_DENIED,
                       required_permission='users.edit')
        clean = self._clean('user_profile', data, actor, partial=True)
        if not clean:
            return public_user(target)
        if 'email' in clean:
            holder = self.repos.users.find_by_email(clean['email'])
            if holder is not None and holder['id'] != target['id']:
                raise ValidationException(
                    'Email already registered',
                    field_errors=[('email', 'A user with this email already exists.')],
                )
        updated = self.repos.users.update(user_id, clean)
        self.audit.log_data_access(
            AuditEventType.USER_UPDATED, actor, 'user', user_id, 'Updated user profile',
            details={'fields': sorted(clean), 'self_service': is_self},
        )
        return public_user(updated)

    def change_role(self, user_id: str, new_role: Any, actor: Actor) -> Dict[str, Any]:
        """
        Change a user's role.

        The actor must outrank both the current and the new role, so roles
        are never granted at or above the actor's own level and peers never
        change each other.
        """
        self._require_permission(actor, 'users.permissions', user_id)
        target = self._load(user_id)
        role = resolve_role(new_role)
        if role is None:
            raise ValidationException(
                'Unknown role', field_errors=[('role', 'Unknown role.')]
            )
        if target['id'] == actor.id:
            self._deny(actor, 'Cannot change own role', user_id,
                       error_code=SecurityErrorCode.AUTHZ_MANAGEMENT_DENIED)
        if not can_manage_user(actor.role, target.get('role')):
            self._deny(actor, 'Cannot manage a user at or above own role', user_id,
                       error_code=SecurityErrorCode.AUTHZ_MANAGEMENT_DENIED,
                       required_role=resolve_role(target.get('role')))
        if not can_manage_user(actor.role, role):
            self._deny(actor, 'Cannot grant a role at or above own role', user_id,
                       error_code=SecurityErrorCode.AUTHZ_MANAGEMENT_DENIED,
                       required_role=role)

        old_role = target.get('role')
        if old_role == role.value:
            return public_user(target)
        updated = self.repos.users.update(user_id, {'role': role.value})
        self.audit.log_permission_change(
            AuditEventType.ROLE_CHANGED, actor, user_id, old_value=old_role, new_value=role
        )
        return public_user(updated)

    def set_active(self, user_id: str, active: bool, actor: Actor) -> Dict[str, Any]:
        """Activate or deactivate a user of a strictly lower role."""
        self._require_permission(actor, 'users.edit', user_id)
        target = self._load(user_id)
        if target['id'] == actor.id or not can_manage_user(actor.role, target.get('role')):
            self._deny(actor, 'Cannot change the status of this user', user_id,
                       error_code=SecurityErrorCode.AUTHZ_MANAGEMENT_DENIED,
                       required_role=resolve_role(target.get('role')))

        new_status = UserStatus.ACTIVE.value if active else UserStatus.INACTIVE.value
        old_status = target.get('status')
        if old_status == new_status:
            return public_user(target)
        updated = self.repos.users.update(user_id, {'status': new_status})
        self.audit.log_permission_change(
            AuditEventType.USER_ACTIVATED if active else AuditEventType.USER_DEACTIVATED,
            actor, user_id, old_value=old_status, new_value=new_status,
        )
        return public_user(updated)

    def get_permissions(self, user_id: str, actor: Actor) -> List[Dict[str, str]]:
        """Catalog entries held by a user; inactive users hold none."""
        target = self._load(user_id)
        if not self._can_view(actor, target):
            self._deny(actor, 'Cannot view permissions of this user', user_id,
                       required_permission='users.view')
        self.audit.log(
            AuditEventType.PERMISSIONS_VIEWED, 'Viewed user permissions',
            actor=actor, resource='user', resource_id=user_id,
        )
        if target.get('status') != UserStatus.ACTIVE.value:
            return []
        return [permission.to_dict() for permission in get_role_permissions(target.get('role'))]


class SecureCRMServices:
    """All secure services over one set of repositories."""

    def __init__(self, repos: Repositories, audit: AuditLogger,
                 rate_limiters: RateLimiterRegistry):
        self.clients = SecureClientService(repos, audit, rate_limiters)
        self.tasks = SecureTaskService(repos, audit, rate_limiters, self.clients)
        self.inquiries = SecureInquiryService(repos, audit, rate_limiters)
        self.interactions = SecureInteractionService(repos, audit, rate_limiters, self.clients)
        self.users = SecureUserService(repos, audit, rate_limiters)

    def init_app(self, app) -> None:
        app.extensions['crm_services'] = self


def get_services() -> SecureCRMServices:
    return current_app.extensions['crm_services']
