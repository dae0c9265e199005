"""
Shared fixtures.

Every test runs against the in-memory document and bucket stores; no Mongo
or Redis instance is needed. Users are seeded straight through the
repositories and bearer tokens are issued with the application's token
manager.
"""

import pytest
from limits.storage import MemoryStorage

from upface_crm.app import create_app
from upface_crm.auth.audit import AuditConfig
from upface_crm.auth.authentication import Actor, hash_password
from upface_crm.auth.permissions import Role
from upface_crm.data.store import InMemoryDocumentStore

PASSWORD = 'Str0ngPassword'


def actor_for(user) -> Actor:
    return Actor(id=user['id'], role=Role(user['role']), email=user['email'],
                 name=user.get('name'))


def audit_entries(store, **filters):
    """Audit documents matching ``filters``, oldest first."""
    return store.query(AuditConfig.COLLECTION, filters=filters,
                       order_by='timestamp', descending=False)


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def rate_limit_storage():
    return MemoryStorage()


@pytest.fixture
def app(document_store, rate_limit_storage):
    return create_app('testing', document_store=document_store,
                      rate_limit_storage=rate_limit_storage)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def repos(app):
    return app.extensions['repositories']


@pytest.fixture
def services(app):
    return app.extensions['crm_services']


@pytest.fixture
def audit_logger(app):
    return app.extensions['audit_logger']


@pytest.fixture
def audit_trail(document_store):
    """Query the stored audit entries by field, oldest first."""
    def _entries(**filters):
        return audit_entries(document_store, **filters)
    return _entries


@pytest.fixture
def password():
    """Password shared by every seeded user."""
    return PASSWORD


@pytest.fixture
def make_user(repos):
    """Factory creating an active user with a known password."""
    counter = {'n': 0}

    def _make(role, status='active', name=None):
        counter['n'] += 1
        role_value = role.value if isinstance(role, Role) else role
        return repos.users.create({
            'name': name or f'{role_value.capitalize()} User',
            'email': f'{role_value}{counter["n"]}@upface.dev',
            'role': role_value,
            'status': status,
            'password_hash': hash_password(PASSWORD),
        })
    return _make


@pytest.fixture
def users(make_user):
    """One active user per role, keyed by role name."""
    return {role.value: make_user(role) for role in Role}


@pytest.fixture
def actors(users):
    return {role: actor_for(user) for role, user in users.items()}


@pytest.fixture
def actor_of():
    return actor_for


@pytest.fixture
def auth_headers(app, client):
    """
    Build request headers for a user: a bearer token and, unless disabled,
    a CSRF token bound to the test client's session.
    """
    def _headers(user, csrf=True):
        token = app.extensions['token_manager'].issue(actor_for(user))
        headers = {'Authorization': f'Bearer {token}'}
        if csrf:
            response = client.get('/api/auth/csrf-token')
            headers['X-CSRF-Token'] = response.get_json()['data']['csrf_token']
        return headers
    return _headers
