"""
Bearer token authentication and CSRF token handling.

Bearer tokens are HS256 JWTs issued by ``TokenManager`` carrying the user id,
email and role. ``Authenticator`` turns a token into an ``Actor``; when a
user repository is available the stored user record is authoritative, so a
deactivated user or a user whose role changed since the token was issued is
rejected.

CSRF tokens are random, bound to the signed Flask session and compared in
constant time.
"""

import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, MutableMapping, Optional

import jwt
import structlog
from werkzeug.security import check_password_hash, generate_password_hash

from upface_crm.auth.exceptions import AuthenticationException, SecurityErrorCode
from upface_crm.auth.permissions import Role, resolve_role
from upface_crm.business.models import UserStatus

logger = structlog.get_logger(__name__)

CSRF_SESSION_KEY = 'csrf_token'
CSRF_HEADER = 'X-CSRF-Token'


@dataclass(frozen=True)
class Actor:
    """Authenticated principal: one id, exactly one role."""

    id: str
    role: Role
    email: Optional[str] = None
    name: Optional[str] = None
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'role': self.role.value,
            'email': self.email,
            'name': self.name,
            'active': self.active,
        }


class TokenManager:
    """
    Issue and verify bearer tokens.

    Args:
        secret_key: HMAC signing key
        algorithm: JWT algorithm, HS256 by default
        expiration_seconds: Token lifetime (the session timeout)
        issuer: ``iss`` claim written and required on decode
        leeway: Clock skew tolerated on ``exp`` and ``iat``
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = 'HS256',
        expiration_seconds: int = 8 * 60 * 60,
        issuer: str = 'upface-crm',
        leeway: int = 10
    ):
        if not secret_key:
            raise ValueError('A JWT secret key is required')
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expiration_seconds = expiration_seconds
        self.issuer = issuer
        self.leeway = leeway

    def issue(self, actor: Actor, expires_in: Optional[int] = None) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            'sub': actor.id,
            'email': actor.email,
            'role': actor.role.value,
            'iss': self.issuer,
            'iat': now,
            'exp': now + timedelta(seconds=expires_in or self.expiration_seconds),
            'jti': uuid.uuid4().hex,
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        """
        Verify signature, issuer and expiry.

        Raises:
            AuthenticationException: ``AUTH_TOKEN_EXPIRED`` for an expired
                token, ``AUTH_TOKEN_INVALID`` for anything else
        """
        try:
            return jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                leeway=self.leeway,
                options={'require': ['sub', 'role', 'exp', 'iat']},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationException(
                f'Token expired: {e}',
                error_code=SecurityErrorCode.AUTH_TOKEN_EXPIRED,
                user_message='Session expired, please sign in again',
            )
        except jwt.InvalidTokenError as e:
            raise AuthenticationException(
                f'Token validation failed: {e}',
                error_code=SecurityErrorCode.AUTH_TOKEN_INVALID,
                user_message='Invalid authentication token',
            )


class Authenticator:
    """Resolve bearer tokens to actors."""

    def __init__(self, token_manager: TokenManager, users=None):
        self.token_manager = token_manager
        self.users = users

    def authenticate(self, token: Optional[str]) -> Actor:
        """
        Args:
            token: Raw bearer token, without the ``Bearer`` prefix

        Returns:
            The authenticated actor

        Raises:
            AuthenticationException: If the token is missing or invalid, the
                user is unknown or inactive, or the token role is stale
        """
        if not token:
            raise AuthenticationException('Bearer token missing')

        claims = self.token_manager.decode(token)
        user_id = str(claims['sub'])
        role = resolve_role(claims.get('role'))
        if role is None:
            raise AuthenticationException(
                'Token carries an unknown role',
                error_code=SecurityErrorCode.AUTH_TOKEN_INVALID,
                user_id=user_id,
            )

        if self.users is None:
            return Actor(id=user_id, role=role, email=claims.get('email'))

        record = self.users.get(user_id)
        if record is None:
            raise AuthenticationException(
                'Token subject does not exist',
                error_code=SecurityErrorCode.AUTH_USER_NOT_FOUND,
                user_id=user_id,
            )
        if record.get('status', UserStatus.ACTIVE.value) != UserStatus.ACTIVE.value:
            raise AuthenticationException(
                'User account is inactive',
                error_code=SecurityErrorCode.AUTH_USER_INACTIVE,
                user_id=user_id,
                user_message='Account is inactive',
            )
        if resolve_role(record.get('role')) is not role:
            raise AuthenticationException(
                'Token role no longer matches the stored role',
                error_code=SecurityErrorCode.AUTH_TOKEN_INVALID,
                user_id=user_id,
                user_message='Session expired, please sign in again',
            )

        return Actor(
            id=user_id,
            role=role,
            email=record.get('email'),
            name=record.get('name'),
        )

    def authenticate_credentials(self, email: Optional[str], password: Optional[str]) -> Actor:
        """
        Verify an email and password against the stored user record.

        Unknown emails, wrong passwords and inactive accounts all raise the
        same caller-facing error.

        Raises:
            AuthenticationException: ``AUTH_TOKEN_INVALID`` or ``AUTH_USER_INACTIVE``
        """
        record = None
        if self.users is not None and isinstance(email, str) and email:
            record = self.users.find_by_email(email)
        if record is None or not isinstance(password, str) or not verify_password(
            record.get('password_hash'), password
        ):
            raise AuthenticationException(
                'Invalid credentials',
                error_code=SecurityErrorCode.AUTH_TOKEN_INVALID,
                user_id=record.get('id') if record else None,
                user_message='Invalid email or password',
            )
        role = resolve_role(record.get('role'))
        if record.get('status') != UserStatus.ACTIVE.value or role is None:
            raise AuthenticationException(
                'User account is inactive',
                error_code=SecurityErrorCode.AUTH_USER_INACTIVE,
                user_id=record['id'],
                user_message='Invalid email or password',
            )
        return Actor(id=record['id'], role=role, email=record.get('email'),
                     name=record.get('name'))


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def get_or_create_csrf_token(session: MutableMapping[str, Any]) -> str:
    """Return the session's CSRF token, creating one on first use."""
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = generate_csrf_token()
        session[CSRF_SESSION_KEY] = token
    return token


def validate_csrf_token(submitted: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; missing values on either side fail."""
    if not submitted or not expected:
        return False
    return hmac.compare_digest(str(submitted), str(expected))


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: Optional[str], password: Optional[str]) -> bool:
    """Check a password against a stored hash; missing values fail."""
    if not password_hash or not password:
        return False
    return check_password_hash(password_hash, password)
