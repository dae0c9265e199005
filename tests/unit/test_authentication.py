"""Bearer tokens, credential checks and CSRF helpers."""

import jwt
import pytest
from freezegun import freeze_time

from upface_crm.auth.authentication import (
    Actor,
    Authenticator,
    TokenManager,
    extract_bearer_token,
    get_or_create_csrf_token,
    hash_password,
    validate_csrf_token,
    verify_password,
)
from upface_crm.auth.exceptions import AuthenticationException, SecurityErrorCode
from upface_crm.auth.permissions import Role
from upface_crm.data.repositories import UserRepository
from upface_crm.data.store import InMemoryDocumentStore

pytestmark = pytest.mark.unit

SECRET = 'unit-test-signing-key-0123456789abcdef'


@pytest.fixture
def tokens():
    return TokenManager(SECRET, expiration_seconds=3600)


@pytest.fixture
def user_repo():
    return UserRepository(InMemoryDocumentStore())


@pytest.fixture
def agent(user_repo):
    return user_repo.create({
        'name': 'Ana Agent',
        'email': 'ana@upface.dev',
        'role': 'agent',
        'status': 'active',
        'password_hash': hash_password('Corr3ctHorse'),
    })


@pytest.fixture
def authenticator(tokens, user_repo):
    return Authenticator(tokens, users=user_repo)


def actor_of(record):
    return Actor(id=record['id'], role=Role(record['role']), email=record['email'])


class TestTokenManager:

    def test_round_trip_claims(self, tokens):
        token = tokens.issue(Actor(id='user-000001', role=Role.ADMIN, email='a@upface.dev'))
        claims = tokens.decode(token)
        assert claims['sub'] == 'user-000001'
        assert claims['role'] == 'admin'
        assert claims['iss'] == 'upface-crm'
        assert claims['exp'] - claims['iat'] == 3600

    def test_expired_token(self, tokens):
        with freeze_time('2026-04-01 08:00:00') as frozen:
            token = tokens.issue(Actor(id='user-000001', role=Role.AGENT))
            frozen.tick(3600 + tokens.leeway + 1)
            with pytest.raises(AuthenticationException) as exc_info:
                tokens.decode(token)
        assert exc_info.value.error_code is SecurityErrorCode.AUTH_TOKEN_EXPIRED
        assert exc_info.value.http_status == 401

    def test_leeway_absorbs_small_skew(self, tokens):
        with freeze_time('2026-04-01 08:00:00') as frozen:
            token = tokens.issue(Actor(id='user-000001', role=Role.AGENT))
            frozen.tick(3600 + 5)
            assert tokens.decode(token)['sub'] == 'user-000001'

    def test_wrong_signature(self, tokens):
        forged = TokenManager('another-signing-key-0123456789abcdef').issue(
            Actor(id='user-000001', role=Role.OWNER)
        )
        with pytest.raises(AuthenticationException) as exc_info:
            tokens.decode(forged)
        assert exc_info.value.error_code is SecurityErrorCode.AUTH_TOKEN_INVALID

    def test_unsigned_token_is_rejected(self, tokens):
        token = jwt.encode({'sub': 'x', 'role': 'owner', 'iss': 'upface-crm'}, None,
                           algorithm='none')
        with pytest.raises(AuthenticationException):
            tokens.decode(token)

    def test_garbage(self, tokens):
        with pytest.raises(AuthenticationException):
            tokens.decode('not.a.jwt')

    def test_secret_is_required(self):
        with pytest.raises(ValueError):
            TokenManager('')


class TestAuthenticator:

    def test_valid_token(self, authenticator, tokens, agent):
        actor = authenticator.authenticate(tokens.issue(actor_of(agent)))
        assert actor.id == agent['id']
        assert actor.role is Role.AGENT
        assert actor.name == 'Ana Agent'

    def test_missing_token(self, authenticator):
        with pytest.raises(AuthenticationException) as exc_info:
            authenticator.authenticate(None)
        assert exc_info.value.error_code is SecurityErrorCode.AUTH_TOKEN_MISSING

    def test_unknown_subject(self, authenticator, tokens):
        token = tokens.issue(Actor(id='ghost-000001', role=Role.AGENT))
        with pytest.raises(AuthenticationException) as exc_info:
            authenticator.authenticate(token)
        assert exc_info.value.error_code is SecurityErrorCode.AUTH_USER_NOT_FOUND

    def test_deactivated_user(self, authenticator, tokens, agent, user_repo):
        token = tokens.issue(actor_of(agent))
        user_repo.update(agent['id'], {'status': 'inactive'})
        with pytest.raises(AuthenticationException) as exc_info:
            authenticator.authenticate(token)
        assert exc_info.value.error_code is SecurityErrorCode.AUTH_USER_INACTIVE

    def test_role_changed_since_issue(self, authenticator, tokens, agent, user_repo):
        """A token minted before a promotion or demotion stops working."""
        token = tokens.issue(actor_of(agent))
        user_repo.update(agent['id'], {'role': 'manager'})
        with pytest.raises(AuthenticationException) as exc_info:
            authenticator.authenticate(token)
        assert exc_info.value.error_code is SecurityErrorCode.AUTH_TOKEN_INVALID

    def test_forged_role_claim(self, authenticator, tokens, agent):
        token = tokens.issue(Actor(id=agent['id'], role=Role.OWNER))
        with pytest.raises(AuthenticationException):
            authenticator.authenticate(token)

    def test_without_repository_claims_are_trusted(self, tokens):
        actor = Authenticator(tokens).authenticate(
            tokens.issue(Actor(id='svc-0000001', role=Role.MANAGER, email='svc@upface.dev'))
        )
        assert (actor.id, actor.role) == ('svc-0000001', Role.MANAGER)


class TestCredentials:

    def test_correct_password(self, authenticator, agent):
        actor = authenticator.authenticate_credentials(' ANA@upface.dev ', 'Corr3ctHorse')
        assert actor.id == agent['id']

    @pytest.mark.parametrize('email,password', [
        ('ana@upface.dev', 'wrong-password'),
        ('nobody@upface.dev', 'Corr3ctHorse'),
        ('ana@upface.dev', ''),
        (None, None),
    ])
    def test_bad_credentials_share_one_message(self, authenticator, agent, email, password):
        with pytest.raises(AuthenticationException) as exc_info:
            authenticator.authenticate_credentials(email, password)
        assert exc_info.value.user_message == 'Invalid email or password'

    def test_inactive_user_cannot_sign_in(self, authenticator, agent, user_repo):
        user_repo.update(agent['id'], {'status': 'inactive'})
        with pytest.raises(AuthenticationException) as exc_info:
            authenticator.authenticate_credentials('ana@upface.dev', 'Corr3ctHorse')
        assert exc_info.value.error_code is SecurityErrorCode.AUTH_USER_INACTIVE
        assert exc_info.value.user_message == 'Invalid email or password'

    def test_password_hashing(self):
        hashed = hash_password('S3cretValue')
        assert hashed != 'S3cretValue'
        assert verify_password(hashed, 'S3cretValue') is True
        assert verify_password(hashed, 's3cretvalue') is False
        assert verify_password(None, 'S3cretValue') is False


class TestHeadersAndCsrf:

    @pytest.mark.parametrize('header,expected', [
        ('Bearer abc.def.ghi', 'abc.def.ghi'),
        ('bearer   abc ', 'abc'),
        ('Basic dXNlcjpwYXNz', None),
        ('Bearer ', None),
        (None, None),
    ])
    def test_extract_bearer_token(self, header, expected):
        assert extract_bearer_token(header) == expected

    def test_csrf_token_is_stable_per_session(self):
        session = {}
        first = get_or_create_csrf_token(session)
        assert get_or_create_csrf_token(session) == first
        assert len(first) >= 32
        assert get_or_create_csrf_token({}) != first

    @pytest.mark.parametrize('submitted,expected,result', [
        ('abc', 'abc', True),
        ('abc', 'abd', False),
        (None, 'abc', False),
        ('abc', None, False),
        ('', '', False),
    ])
    def test_validate_csrf_token(self, submitted, expected, result):
        assert validate_csrf_token(submitted, expected) is result
