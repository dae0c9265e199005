"""
Schema Validation for CRM Input

Structural validation of every payload the CRM accepts, built on marshmallow
schemas, plus the ``secure_input`` pipeline that the secure services call
before any write reaches storage.

Key Features:
- One schema per entity kind: client, lead, task, user profile, user
  registration, inquiry, comment and interaction
- Length bounds and format patterns (email, phone, URL, safe names)
- ``validate`` never raises for bad input; it returns a ``ValidationResult``
  whose errors are ``(field, message)`` pairs describing the literal submission
- ``secure_input`` rejects attack patterns first, then validates, then
  sanitizes the validated data field by field
- Unknown fields are excluded, so callers cannot smuggle server-managed
  attributes (role, status, assignment) through a profile or form payload
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type, Union

import structlog
from email_validator import EmailNotValidError, validate_email
from marshmallow import EXCLUDE, Schema, ValidationError, fields, validate, validates_schema

from upface_crm.auth.exceptions import AttackPatternException, ValidationException
from upface_crm.business.models import (
    AcquisitionSource,
    ClientStatus,
    InteractionType,
    LeadStatus,
    TaskPriority,
    TaskStatus,
    enum_values,
)
from upface_crm.utils.sanitizers import (
    AttackPatternDetector,
    attack_detector,
    sanitize_fields,
    sanitize_filename,
)

logger = structlog.get_logger(__name__)

SAFE_NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-'.]+$")
COMPANY_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-&.,']+$")
PHONE_PATTERN = re.compile(r'^\+?[1-9]\d{0,15}$')
URL_PATTERN = re.compile(
    r'^https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b'
    r'([-a-zA-Z0-9()@:%_+.~#?&/=]*)$'
)
ID_PATTERN = re.compile(r'^[A-Za-z0-9_\-]+$')

MIN_ID_LENGTH = 10
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ALLOWED_UPLOAD_TYPES = frozenset({
    'image/jpeg',
    'image/png',
    'image/gif',
    'application/pdf',
    'text/plain',
})


def _email(value: str) -> None:
    if len(value) > 100:
        raise ValidationError('Email must be at most 100 characters.')
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        raise ValidationError('Invalid email address.')


def _phone(value: str) -> None:
    if not value:
        return
    if not PHONE_PATTERN.match(re.sub(r'[\s\-()]', '', value)):
        raise ValidationError('Invalid phone number format.')


def _url(value: str) -> None:
    if value and not URL_PATTERN.match(value):
        raise ValidationError('Invalid URL format.')


def _optional_pattern(pattern, message):
    def _check(value: str) -> None:
        if value and not pattern.match(value):
            raise ValidationError(message)
    return _check


_safe_name = validate.Regexp(SAFE_NAME_PATTERN, error='Name contains invalid characters.')
_company = _optional_pattern(COMPANY_PATTERN, 'Company name contains invalid characters.')


class BaseInputSchema(Schema):
    """
    Base schema for CRM input.

    ``sanitize_rules`` maps field names to sanitizer kinds applied by
    ``secure_input`` after validation succeeds.
    """

    sanitize_rules: Dict[str, str] = {}

    class Meta:
        unknown = EXCLUDE


class ClientSchema(BaseInputSchema):
    name = fields.String(required=True, validate=[validate.Length(min=2, max=100), _safe_name])
    email = fields.String(required=True, validate=_email)
    phone = fields.String(allow_none=True, validate=_phone)
    company = fields.String(allow_none=True, validate=[validate.Length(max=100), _company])
    website = fields.String(allow_none=True, validate=_url)
    notes = fields.String(allow_none=True, validate=validate.Length(max=2000))
    status = fields.String(validate=validate.OneOf(enum_values(ClientStatus)))
    acquisition_source = fields.String(validate=validate.OneOf(enum_values(AcquisitionSource)))

    sanitize_rules = {
        'name': 'text',
        'email': 'email',
        'phone': 'phone',
        'company': 'text',
        'website': 'url',
        'notes': 'html',
    }


class LeadSchema(BaseInputSchema):
    name = fields.String(required=True, validate=[validate.Length(min=2, max=100), _safe_name])
    email = fields.String(required=True, validate=_email)
    phone = fields.String(allow_none=True, validate=_phone)
    company = fields.String(allow_none=True, validate=[validate.Length(max=100), _company])
    website = fields.String(allow_none=True, validate=_url)
    source = fields.String(validate=validate.Length(max=50))
    status = fields.String(validate=validate.OneOf(enum_values(LeadStatus)))
    priority = fields.String(validate=validate.OneOf(enum_values(TaskPriority)))
    budget = fields.String(allow_none=True, validate=validate.Length(max=50))
    timeline = fields.String(allow_none=True, validate=validate.Length(max=100))
    notes = fields.String(allow_none=True, validate=validate.Length(max=2000))
    tags = fields.List(fields.String(validate=validate.Length(min=1, max=30)),
                       validate=validate.Length(max=20))

    sanitize_rules = {
        'name': 'text',
        'email': 'email',
        'phone': 'phone',
        'company': 'text',
        'website': 'url',
        'source': 'text',
        'budget': 'text',
        'timeline': 'text',
        'notes': 'html',
        'tags': 'text',
    }


class TaskSchema(BaseInputSchema):
    title = fields.String(required=True, validate=validate.Length(min=3, max=200))
    description = fields.String(allow_none=True, validate=validate.Length(max=2000))
    priority = fields.String(
        required=True, validate=validate.OneOf(enum_values(TaskPriority))
    )
    status = fields.String(validate=validate.OneOf(enum_values(TaskStatus)))
    due_date = fields.DateTime(allow_none=True)
    estimated_hours = fields.Float(allow_none=True, validate=validate.Range(min=0.1, max=1000))
    assigned_to = fields.String(validate=validate.Length(min=MIN_ID_LENGTH, max=128))
    client_id = fields.String(allow_none=True, validate=validate.Length(min=MIN_ID_LENGTH, max=128))
    tags = fields.List(fields.String(validate=validate.Length(min=1, max=30)),
                       validate=validate.Length(max=20))

    sanitize_rules = {
        'title': 'text',
        'description': 'html',
        'tags': 'text',
    }


class UserProfileSchema(BaseInputSchema):
    name = fields.String(required=True, validate=[validate.Length(min=2, max=50), _safe_name])
    email = fields.String(required=True, validate=_email)
    phone = fields.String(allow_none=True, validate=_phone)
    bio = fields.String(allow_none=True, validate=validate.Length(max=500))

    sanitize_rules = {
        'name': 'text',
        'email': 'email',
        'phone': 'phone',
        'bio': 'text',
    }


class UserRegistrationSchema(UserProfileSchema):
    password = fields.String(required=True, load_only=True,
                             validate=validate.Length(min=8, max=128))

    @validates_schema
    def validate_password_policy(self, data, **kwargs):
        password = data.get('password')
        if password is None:
            return
        missing = []
        if not re.search(r'[a-z]', password):
            missing.append('a lowercase letter')
        if not re.search(r'[A-Z]', password):
            missing.append('an uppercase letter')
        if not re.search(r'\d', password):
            missing.append('a digit')
        if missing:
            raise ValidationError(
                'Password must contain ' + ', '.join(missing) + '.', field_name='password'
            )


class LoginSchema(BaseInputSchema):
    email = fields.String(required=True, validate=validate.Length(min=1, max=254))
    password = fields.String(required=True, load_only=True,
                             validate=validate.Length(min=1, max=128))


class InquirySchema(BaseInputSchema):
    name = fields.String(required=True, validate=[validate.Length(min=2, max=50), _safe_name])
    email = fields.String(required=True, validate=_email)
    phone = fields.String(allow_none=True, validate=_phone)
    company = fields.String(allow_none=True, validate=[validate.Length(max=100), _company])
    service = fields.String(allow_none=True, validate=validate.Length(max=100))
    message = fields.String(required=True, validate=validate.Length(min=10, max=2000))
    budget = fields.String(allow_none=True, validate=validate.Length(max=50))
    timeline = fields.String(allow_none=True, validate=validate.Length(max=100))

    sanitize_rules = {
        'name': 'text',
        'email': 'email',
        'phone': 'phone',
        'company': 'text',
        'service': 'text',
        'message': 'text',
        'budget': 'text',
        'timeline': 'text',
    }


class CommentSchema(BaseInputSchema):
    content = fields.String(required=True, validate=validate.Length(min=1, max=1000))
    is_private = fields.Boolean()

    sanitize_rules = {'content': 'text'}


class InteractionSchema(BaseInputSchema):
    client_id = fields.String(required=True, validate=validate.Length(min=MIN_ID_LENGTH, max=128))
    type = fields.String(required=True, validate=validate.OneOf(enum_values(InteractionType)))
    description = fields.String(required=True, validate=validate.Length(min=1, max=2000))
    follow_up_required = fields.Boolean()
    follow_up_date = fields.DateTime(allow_none=True)

    sanitize_rules = {'description': 'html'}


SCHEMAS: Dict[str, Type[BaseInputSchema]] = {
    'client': ClientSchema,
    'lead': LeadSchema,
    'task': TaskSchema,
    'user_profile': UserProfileSchema,
    'user_registration': UserRegistrationSchema,
    'login': LoginSchema,
    'inquiry': InquirySchema,
    'comment': CommentSchema,
    'interaction': InteractionSchema,
}

SchemaRef = Union[str, BaseInputSchema, Type[BaseInputSchema]]


@dataclass
class ValidationResult:
    """Outcome of ``validate``: either ``data`` or a list of ``(field, message)``."""

    ok: bool
    data: Optional[Dict[str, Any]] = None
    errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def fields(self) -> List[str]:
        return [name for name, _ in self.errors]


def get_schema(schema: SchemaRef, partial: bool = False) -> BaseInputSchema:
    """
    Resolve a schema name, class or instance to a schema instance.

    Raises:
        KeyError: For an unknown schema name. This is a programmer error,
            never a consequence of user input.
    """
    if isinstance(schema, str):
        return SCHEMAS[schema](partial=partial)
    if isinstance(schema, type):
        return schema(partial=partial)
    return schema


def _flatten(messages: Any, prefix: str = '') -> List[Tuple[str, str]]:
    if isinstance(messages, dict):
        flattened = []
        for key, value in messages.items():
            name = f'{prefix}.{key}' if prefix else str(key)
            flattened.extend(_flatten(value, name))
        return flattened
    if isinstance(messages, (list, tuple)):
        flattened = []
        for item in messages:
            flattened.extend(_flatten(item, prefix))
        return flattened
    return [(prefix or '_schema', str(messages))]


def validate(schema: SchemaRef, raw: Any, partial: bool = False) -> ValidationResult:
    """
    Validate ``raw`` against a schema.

    Args:
        schema: Schema name (``'client'``, ``'task'`` ...), class or instance
        raw: Untrusted input, normally a decoded JSON object
        partial: Skip required-field checks (used for updates)

    Returns:
        ValidationResult with the loaded data or the field errors
    """
    instance = get_schema(schema, partial=partial)
    try:
        data = instance.load(raw if raw is not None else {}, partial=partial)
    except ValidationError as err:
        errors = _flatten(err.messages)
        logger.info(
            "Input validation failed",
            schema=type(instance).__name__,
            fields=sorted({name for name, _ in errors}),
        )
        return ValidationResult(ok=False, errors=errors)
    return ValidationResult(ok=True, data=data)


def secure_input(
    schema: SchemaRef,
    raw: Any,
    partial: bool = False,
    detector: Optional[AttackPatternDetector] = None
) -> Dict[str, Any]:
    """
    Scan, validate and sanitize an untrusted payload.

    Args:
        schema: Schema reference accepted by ``validate``
        raw: Untrusted input
        partial: Validate as a partial update
        detector: Attack detector override, defaults to the shared detector

    Returns:
        Sanitized data ready for storage

    Raises:
        AttackPatternException: If any key or value matches an attack signature
        ValidationException: If structural validation fails
    """
    instance = get_schema(schema, partial=partial)
    matches = (detector or attack_detector).scan_payload(raw)
    if matches:
        categories = sorted({match.category for match in matches})
        fields_hit = sorted({match.field for match in matches})
        logger.warning(
            "Attack pattern detected in input",
            schema=type(instance).__name__,
            categories=categories,
            fields=fields_hit,
        )
        raise AttackPatternException(
            f'Attack pattern detected in {type(instance).__name__}',
            categories=categories,
            fields=fields_hit,
        )

    result = validate(instance, raw, partial=partial)
    if not result.ok:
        raise ValidationException(
            f'{type(instance).__name__} validation failed',
            field_errors=result.errors,
        )
    return sanitize_fields(result.data, instance.sanitize_rules)


def validate_id(value: Any, field_name: str = 'id') -> str:
    """
    Check an entity identifier before it is used against the store.

    Raises:
        ValidationException: If the id is missing, shorter than the minimum
            length or contains characters outside ``[A-Za-z0-9_-]``
    """
    if not isinstance(value, str) or len(value) < MIN_ID_LENGTH or not ID_PATTERN.match(value):
        raise ValidationException(
            f'Invalid {field_name}',
            field_errors=[(field_name, f'Invalid {field_name.replace("_", " ")}.')],
        )
    return value


def validate_file_upload(filename: str, size: int, content_type: Optional[str]) -> ValidationResult:
    """
    Validate upload metadata and return the sanitized filename.

    Files are limited to ``MAX_UPLOAD_BYTES`` and the types in
    ``ALLOWED_UPLOAD_TYPES``.
    """
    errors = []
    if not filename:
        errors.append(('file', 'File must have a filename.'))
    if size is None or size < 0:
        errors.append(('file', 'File size is unknown.'))
    elif size > MAX_UPLOAD_BYTES:
        errors.append(('file', 'File size must be less than 10MB.'))
    if content_type not in ALLOWED_UPLOAD_TYPES:
        errors.append(('file', 'File type not allowed.'))
    if attack_detector.scan(filename or ''):
        errors.append(('file', 'Filename is not allowed.'))

    if errors:
        logger.warning("File upload rejected", content_type=content_type, size=size)
        return ValidationResult(ok=False, errors=errors)

    return ValidationResult(ok=True, data={
        'filename': sanitize_filename(filename),
        'size': size,
        'content_type': content_type,
    })
