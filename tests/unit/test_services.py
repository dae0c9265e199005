"""Secure CRM services: authorization, input handling and audit trail."""

import pytest

from upface_crm.auth.exceptions import (
    AttackPatternException,
    AuthorizationException,
    RateLimitException,
    ResourceNotFoundException,
    SecurityErrorCode,
    ValidationException,
)
from upface_crm.auth.permissions import Role, get_role_permissions

pytestmark = pytest.mark.unit


def client_data(**overrides):
    data = {
        'name': 'Harbor Coffee',
        'email': 'owner@harborcoffee.io',
        'phone': '+1 555 010 2000',
        'company': 'Harbor Coffee LLC',
    }
    data.update(overrides)
    return data


def inquiry_data(**overrides):
    data = {
        'name': "Sean O'Neil",
        'email': 'sean@oneil.io',
        'message': 'Looking for help with a new storefront website.',
        'budget': '5k-10k',
    }
    data.update(overrides)
    return data


@pytest.fixture
def agent(actors):
    return actors['agent']


@pytest.fixture
def manager(actors):
    return actors['manager']


@pytest.fixture
def admin(actors):
    return actors['admin']


@pytest.fixture
def other_agent(make_user, actor_of):
    return actor_of(make_user(Role.AGENT, name='Other Agent'))


@pytest.fixture
def agent_client(services, agent):
    return services.clients.create(client_data(), agent)


class TestClientService:

    def test_create_assigns_to_creator(self, services, agent, audit_trail):
        client = services.clients.create(client_data(status='qualified', assigned_to='x' * 12),
                                         agent)
        assert client['assigned_to'] == agent.id
        assert client['status'] == 'qualified'

        [entry] = audit_trail(event_type='client_created')
        assert (entry['user_id'], entry['resource_id']) == (agent.id, client['id'])

    def test_status_defaults_to_lead(self, agent_client):
        assert agent_client['status'] == 'lead'

    def test_agent_cannot_read_foreign_client(self, services, agent_client, other_agent,
                                              audit_trail):
        with pytest.raises(AuthorizationException) as exc_info:
            services.clients.get(agent_client['id'], other_agent)
        assert exc_info.value.http_status == 403

        [entry] = audit_trail(event_type='unauthorized_access_attempt')
        assert entry['severity'] == 'high'
        assert entry['user_id'] == other_agent.id
        assert entry['resource_id'] == agent_client['id']

    def test_manager_reads_any_client(self, services, agent_client, manager, audit_trail):
        assert services.clients.get(agent_client['id'], manager)['id'] == agent_client['id']
        assert len(audit_trail(event_type='client_viewed')) == 1

    def test_list_scoping(self, services, agent, other_agent, manager):
        services.clients.create(client_data(), agent)
        services.clients.create(client_data(name='Pier Bakery'), other_agent)

        assert [c['name'] for c in services.clients.list(agent)] == ['Harbor Coffee']
        assert len(services.clients.list(manager)) == 2

    def test_agent_cannot_delete(self, services, agent_client, agent, repos):
        with pytest.raises(AuthorizationException) as exc_info:
            services.clients.delete(agent_client['id'], agent)
        assert exc_info.value.error_code is SecurityErrorCode.AUTHZ_ROLE_INSUFFICIENT
        assert repos.clients.get(agent_client['id']) is not None

    def test_admin_delete_is_audited_medium(self, services, agent_client, admin, audit_trail,
                                            repos):
        assert services.clients.delete(agent_client['id'], admin) is True
        assert repos.clients.get(agent_client['id']) is None
        [entry] = audit_trail(event_type='client_deleted')
        assert entry['severity'] == 'medium'

    def test_status_change_records_old_and_new(self, services, agent_client, agent,
                                               audit_trail):
        services.clients.update(agent_client['id'], {'status': 'contacted'}, agent)
        [entry] = audit_trail(event_type='client_updated')
        assert entry['details']['old_status'] == 'lead'
        assert entry['details']['new_status'] == 'contacted'

    def test_update_cannot_reassign(self, services, agent_client, agent, other_agent):
        updated = services.clients.update(
            agent_client['id'], {'notes': 'Call back Tuesday', 'assigned_to': other_agent.id},
            agent,
        )
        assert updated['assigned_to'] == agent.id

    def test_attack_payload_is_rejected_and_audited(self, services, agent, repos, audit_trail):
        with pytest.raises(AttackPatternException):
            services.clients.create(client_data(notes='<script>alert(1)</script>'), agent)
        assert repos.clients.find() == []
        [entry] = audit_trail(event_type='suspicious_activity')
        assert entry['severity'] == 'high'
        assert entry['details']['categories'] == ['xss']

    def test_invalid_payload_is_audited_medium(self, services, agent, audit_trail):
        with pytest.raises(ValidationException):
            services.clients.create({'name': 'X'}, agent)
        [entry] = audit_trail(event_type='input_validation_failed')
        assert entry['severity'] == 'medium'
        assert entry['details']['fields'] == ['email', 'name']

    def test_creation_is_rate_limited_per_user(self, services, agent, other_agent, audit_trail):
        for n in range(5):
            services.clients.create(client_data(name=f'Client {chr(65 + n)}'), agent)
        with pytest.raises(RateLimitException) as exc_info:
            services.clients.create(client_data(), agent)
        assert exc_info.value.retry_after >= 1
        assert exc_info.value.http_status == 429
        assert audit_trail(event_type='rate_limit_exceeded')[0]['user_id'] == agent.id

        services.clients.create(client_data(), other_agent)

    def test_malformed_and_missing_ids(self, services, manager):
        with pytest.raises(ValidationException):
            services.clients.get('../etc', manager)
        with pytest.raises(ResourceNotFoundException):
            services.clients.get('f' * 32, manager)


class TestClientAssignment:

    def test_manager_reassigns(self, services, agent_client, manager, other_agent,
                               agent, audit_trail):
        updated = services.clients.assign(agent_client['id'], other_agent.id, manager)
        assert updated['assigned_to'] == other_agent.id

        [entry] = audit_trail(event_type='client_assigned')
        assert entry['details'] == {'old_value': agent.id, 'new_value': other_agent.id}

    def test_agent_lacks_assign_permission(self, services, agent_client, agent, other_agent):
        with pytest.raises(AuthorizationException) as exc_info:
            services.clients.assign(agent_client['id'], other_agent.id, agent)
        assert exc_info.value.error_code is SecurityErrorCode.AUTHZ_PERMISSION_DENIED

    def test_cannot_assign_upward(self, services, agent_client, manager, admin):
        with pytest.raises(AuthorizationException):
            services.clients.assign(agent_client['id'], admin.id, manager)

    def test_inactive_assignee(self, services, agent_client, manager, make_user):
        inactive = make_user(Role.AGENT, status='inactive')
        with pytest.raises(ValidationException) as exc_info:
            services.clients.assign(agent_client['id'], inactive['id'], manager)
        assert exc_info.value.field_errors[0][0] == 'assigned_to'


class TestTaskService:

    @pytest.fixture
    def agent_task(self, services, manager, agent):
        return services.tasks.create(
            {'title': 'Prepare proposal', 'priority': 'high', 'assigned_to': agent.id}, manager
        )

    def test_agent_creates_own_task(self, services, agent):
        task = services.tasks.create({'title': 'Call back', 'priority': 'low'}, agent)
        assert task['assigned_to'] == agent.id
        assert task['assigned_by'] == agent.id
        assert task['status'] == 'todo'

    def test_agent_cannot_assign_to_others(self, services, agent, other_agent):
        with pytest.raises(AuthorizationException):
            services.tasks.create(
                {'title': 'Call back', 'priority': 'low', 'assigned_to': other_agent.id}, agent
            )

    def test_manager_cannot_assign_to_admin(self, services, manager, admin):
        with pytest.raises(AuthorizationException):
            services.tasks.create(
                {'title': 'Review budget', 'priority': 'low', 'assigned_to': admin.id}, manager
            )

    def test_task_visibility(self, services, agent_task, agent, other_agent, admin):
        assert services.tasks.get(agent_task['id'], agent)['title'] == 'Prepare proposal'
        assert services.tasks.get(agent_task['id'], admin)['id'] == agent_task['id']
        with pytest.raises(AuthorizationException):
            services.tasks.get(agent_task['id'], other_agent)

    def test_task_for_invisible_client(self, services, agent_client, other_agent):
        with pytest.raises(AuthorizationException):
            services.tasks.create(
                {'title': 'Follow up', 'priority': 'medium', 'client_id': agent_client['id']},
                other_agent,
            )

    def test_completion_sets_timestamp(self, services, agent_task, agent, audit_trail):
        updated = services.tasks.update(agent_task['id'], {'status': 'completed'}, agent)
        assert updated['status'] == 'completed'
        assert updated['completed_at'] is not None

        [entry] = audit_trail(event_type='task_updated')
        assert (entry['details']['old_status'], entry['details']['new_status']) == (
            'todo', 'completed'
        )

    def test_agent_cannot_reassign(self, services, agent_task, agent, other_agent):
        with pytest.raises(AuthorizationException):
            services.tasks.update(agent_task['id'], {'assigned_to': other_agent.id}, agent)

    def test_cannot_move_task_to_invisible_client(self, services, agent, other_agent):
        foreign = services.clients.create(client_data(), other_agent)
        task = services.tasks.create({'title': 'Call back', 'priority': 'low'}, agent)
        with pytest.raises(AuthorizationException):
            services.tasks.update(task['id'], {'client_id': foreign['id']}, agent)
        assert services.tasks.get(task['id'], agent).get('client_id') is None

    def test_client_change_is_audited(self, services, agent, agent_client, audit_trail):
        task = services.tasks.create({'title': 'Call back', 'priority': 'low'}, agent)
        services.tasks.update(task['id'], {'client_id': agent_client['id']}, agent)

        [entry] = audit_trail(event_type='task_updated')
        assert entry['details']['old_client_id'] is None
        assert entry['details']['new_client_id'] == agent_client['id']

    def test_delete_requires_manager(self, services, agent_task, agent, manager):
        with pytest.raises(AuthorizationException):
            services.tasks.delete(agent_task['id'], agent)
        assert services.tasks.delete(agent_task['id'], manager) is True

    def test_list_for_user(self, services, agent_task, agent, other_agent, manager):
        assert [t['id'] for t in services.tasks.list_for_user(agent.id, manager)] == [
            agent_task['id']
        ]
        assert len(services.tasks.list_for_user(agent.id, agent)) == 1
        with pytest.raises(AuthorizationException):
            services.tasks.list_for_user(agent.id, other_agent)

    def test_private_comments(self, services, agent_task, agent, manager):
        services.tasks.add_comment(agent_task['id'],
                                   {'content': 'Pricing is flexible', 'is_private': True},
                                   manager)
        services.tasks.add_comment(agent_task['id'], {'content': 'Draft sent'}, agent)

        assert [c['content'] for c in services.tasks.list_comments(agent_task['id'], agent)] == [
            'Draft sent'
        ]
        assert len(services.tasks.list_comments(agent_task['id'], manager)) == 2

    def test_attachment_metadata(self, services, agent_task, agent):
        attachment = services.tasks.add_attachment(
            agent_task['id'], 'draft v2.pdf', 5120, 'application/pdf', agent
        )
        assert attachment['filename'] == 'draft_v2.pdf'
        assert attachment['uploaded_by'] == agent.id

        with pytest.raises(ValidationException):
            services.tasks.add_attachment(agent_task['id'], 'run.sh', 10,
                                          'application/x-sh', agent)


class TestInquiryService:

    def test_anonymous_submission(self, services, audit_trail):
        inquiry = services.inquiries.submit(inquiry_data(), '203.0.113.7')
        assert inquiry['status'] == 'new'
        assert inquiry['source'] == 'website'
        assert inquiry['name'] == 'Sean O&#x27;Neil'

        [entry] = audit_trail(event_type='inquiry_submitted')
        assert entry['ip_address'] == '203.0.113.7'
        assert entry['user_id'] is None

    def test_submission_is_rate_limited_per_ip(self, services):
        for _ in range(3):
            services.inquiries.submit(inquiry_data(), '203.0.113.7')
        with pytest.raises(RateLimitException):
            services.inquiries.submit(inquiry_data(), '203.0.113.7')
        services.inquiries.submit(inquiry_data(), '198.51.100.4')

    def test_server_fields_cannot_be_injected(self, services):
        inquiry = services.inquiries.submit(
            inquiry_data(status='converted', source='admin'), '203.0.113.7'
        )
        assert (inquiry['status'], inquiry['source']) == ('new', 'website')

    def test_listing_requires_manager(self, services, agent, manager):
        services.inquiries.submit(inquiry_data(), '203.0.113.7')
        with pytest.raises(AuthorizationException):
            services.inquiries.list_new(agent)
        assert len(services.inquiries.list_new(manager)) == 1

    def test_conversion(self, services, manager, repos, audit_trail):
        inquiry = services.inquiries.submit(inquiry_data(), '203.0.113.7')
        client = services.inquiries.convert_to_client(inquiry['id'], manager,
                                                      {'status': 'contacted'})

        assert client['name'] == 'Sean O&#x27;Neil'
        assert client['assigned_to'] == manager.id
        assert client['status'] == 'contacted'
        assert client['inquiry_id'] == inquiry['id']
        assert repos.inquiries.get(inquiry['id'])['status'] == 'converted'

        [entry] = audit_trail(event_type='inquiry_converted')
        assert entry['details']['client_id'] == client['id']

        with pytest.raises(ValidationException):
            services.inquiries.convert_to_client(inquiry['id'], manager)

    def test_agent_cannot_convert(self, services, agent):
        inquiry = services.inquiries.submit(inquiry_data(), '203.0.113.7')
        with pytest.raises(AuthorizationException):
            services.inquiries.convert_to_client(inquiry['id'], agent)


class TestInteractionService:

    def test_log_interaction_on_own_client(self, services, agent_client, agent):
        interaction = services.interactions.create(
            {'client_id': agent_client['id'], 'type': 'call', 'description': 'Intro call'},
            agent,
        )
        assert interaction['user_id'] == agent.id
        assert interaction['follow_up_required'] is False
        assert len(services.interactions.list_for_client(agent_client['id'], agent)) == 1

    def test_foreign_client_is_denied(self, services, agent_client, other_agent):
        with pytest.raises(AuthorizationException):
            services.interactions.create(
                {'client_id': agent_client['id'], 'type': 'note', 'description': 'Peek'},
                other_agent,
            )
        with pytest.raises(AuthorizationException):
            services.interactions.list_for_client(agent_client['id'], other_agent)


class TestUserService:

    def registration(self, email='new.hire@upface.dev'):
        return {'name': 'New Hire', 'email': email, 'password': 'Welc0meAboard'}

    def test_admin_registers_manager(self, services, admin, repos, audit_trail):
        user = services.users.register(self.registration(), 'manager', admin)
        assert user['role'] == 'manager'
        assert user['status'] == 'active'
        assert 'password_hash' not in user
        assert repos.users.get(user['id'])['password_hash'] != 'Welc0meAboard'

        [entry] = audit_trail(event_type='permission_granted')
        assert entry['details']['new_value'] == 'manager'

    def test_cannot_register_peer_role(self, services, admin):
        with pytest.raises(AuthorizationException) as exc_info:
            services.users.register(self.registration(), 'admin', admin)
        assert exc_info.value.error_code is SecurityErrorCode.AUTHZ_MANAGEMENT_DENIED

    def test_manager_cannot_register(self, services, manager):
        with pytest.raises(AuthorizationException):
            services.users.register(self.registration(), 'agent', manager)

    def test_duplicate_email(self, services, admin):
        services.users.register(self.registration(), 'agent', admin)
        with pytest.raises(ValidationException):
            services.users.register(self.registration('NEW.HIRE@upface.dev'), 'agent', admin)

    def test_unknown_role(self, services, admin):
        with pytest.raises(ValidationException):
            services.users.register(self.registration(), 'superuser', admin)

    def test_role_change(self, services, admin, users, audit_trail):
        agent_id = users['agent']['id']
        updated = services.users.change_role(agent_id, 'manager', admin)
        assert updated['role'] == 'manager'

        [entry] = audit_trail(event_type='role_changed')
        assert entry['severity'] == 'high'
        assert (entry['details']['old_value'], entry['details']['new_value']) == (
            'agent', 'manager'
        )

    @pytest.mark.parametrize('target,new_role', [
        ('agent', 'admin'),
        ('admin', 'agent'),
        ('owner', 'agent'),
    ])
    def test_role_change_limits(self, services, admin, users, target, new_role, audit_trail):
        with pytest.raises(AuthorizationException):
            services.users.change_role(users[target]['id'], new_role, admin)
        assert audit_trail(event_type='role_changed') == []
        assert len(audit_trail(event_type='unauthorized_access_attempt')) == 1

    def test_owner_demotes_admin(self, services, actors, users):
        updated = services.users.change_role(users['admin']['id'], 'manager', actors['owner'])
        assert updated['role'] == 'manager'

    def test_deactivation(self, services, manager, users, audit_trail):
        updated = services.users.set_active(users['agent']['id'], False, manager)
        assert updated['status'] == 'inactive'
        [entry] = audit_trail(event_type='user_deactivated')
        assert entry['details']['new_value'] == 'inactive'

    def test_peer_deactivation_is_denied(self, services, manager, make_user):
        peer = make_user(Role.MANAGER)
        with pytest.raises(AuthorizationException):
            services.users.set_active(peer['id'], False, manager)

    def test_view_rules(self, services, agent, manager, users, audit_trail):
        assert services.users.get(agent.id, agent)['id'] == agent.id
        assert audit_trail(event_type='user_management_access') == []

        with pytest.raises(AuthorizationException):
            services.users.get(users['manager']['id'], agent)

        assert services.users.get(agent.id, manager)['role'] == 'agent'
        assert len(audit_trail(event_type='user_management_access')) == 1

    def test_list_is_limited_to_accessible_roles(self, services, manager):
        roles = {user['role'] for user in services.users.list(manager)}
        assert roles == {'agent', 'manager'}

    def test_profile_update_ignores_role(self, services, agent):
        updated = services.users.update_profile(
            agent.id, {'bio': 'Ten years in retail', 'role': 'owner'}, agent
        )
        assert updated['bio'] == 'Ten years in retail'
        assert updated['role'] == 'agent'

    def test_profile_email_must_be_unique(self, services, agent, users, repos):
        admin_email = users['admin']['email']
        with pytest.raises(ValidationException) as exc:
            services.users.update_profile(agent.id, {'email': admin_email}, agent)
        assert exc.value.field_errors[0][0] == 'email'
        assert repos.users.find_by_email(admin_email)['id'] == users['admin']['id']

    def test_profile_may_keep_its_own_email(self, services, agent, users):
        updated = services.users.update_profile(
            agent.id, {'email': users['agent']['email'], 'bio': 'Closer'}, agent
        )
        assert updated['email'] == users['agent']['email']

    def test_permissions_of_active_and_inactive_users(self, services, manager, users, repos):
        agent_id = users['agent']['id']
        ids = [p['id'] for p in services.users.get_permissions(agent_id, manager)]
        assert ids == [p.id for p in get_role_permissions(Role.AGENT)]

        repos.users.update(agent_id, {'status': 'inactive'})
        assert services.users.get_permissions(agent_id, manager) == []
