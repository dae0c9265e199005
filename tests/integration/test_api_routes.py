"""End-to-end flows over the JSON API."""

import io

import pytest

from upface_crm.data.store import DataStoreError

pytestmark = pytest.mark.integration

CONTACT = {
    'name': 'Priya Shah',
    'email': 'priya@shahdesign.io',
    'message': 'We need a booking system for our studio.',
}


def login(client, email, password):
    return client.post('/api/auth/session', json={'email': email, 'password': password})


class TestSessionFlow:

    def test_login_me_logout(self, client, users, password, audit_trail):
        response = login(client, users['manager']['email'], password)
        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['token_type'] == 'Bearer'
        assert data['user']['role'] == 'manager'
        assert 'crm.clients.assign' in {p['id'] for p in data['permissions']}

        bearer = {'Authorization': f"Bearer {data['token']}"}
        me = client.get('/api/auth/me', headers=bearer)
        assert me.get_json()['data']['user']['id'] == users['manager']['id']

        response = client.post('/api/auth/logout',
                               headers=dict(bearer, **{'X-CSRF-Token': data['csrf_token']}))
        assert response.status_code == 200
        assert [e['event_type'] for e in audit_trail(resource='auth')] == [
            'login_success', 'logout',
        ]

    def test_wrong_password(self, client, users, audit_trail):
        response = login(client, users['agent']['email'], 'Wr0ngPassword')
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid email or password'

        [entry] = audit_trail(event_type='login_failed')
        assert entry['severity'] == 'medium'
        assert entry['user_id'] == users['agent']['id']

    def test_inactive_user(self, client, make_user, password):
        user = make_user('agent', status='inactive')
        response = login(client, user['email'], password)
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid email or password'

    def test_login_is_rate_limited(self, client, users):
        for _ in range(5):
            login(client, users['agent']['email'], 'Wr0ngPassword')
        response = login(client, users['agent']['email'], 'Wr0ngPassword')
        assert response.status_code == 429
        assert 'Retry-After' in response.headers

    def test_non_object_body(self, client):
        response = client.post('/api/auth/session', json=['a', 'b'])
        assert response.status_code == 400
        assert response.get_json()['field_errors'][0]['field'] == 'body'

    @pytest.mark.parametrize('payload,field', [
        ({'email': 123, 'password': 'x'}, 'email'),
        ({'email': 'agent1@upface.dev', 'password': ['x']}, 'password'),
        ({'password': 'x'}, 'email'),
    ])
    def test_malformed_credentials(self, client, audit_trail, payload, field):
        response = client.post('/api/auth/session', json=payload)
        assert response.status_code == 400
        assert field in {e['field'] for e in response.get_json()['field_errors']}
        assert audit_trail(event_type='system_error') == []


class TestPublicRoutes:

    def test_health(self, client):
        body = client.get('/api/health').get_json()
        assert body['status'] == 'healthy'
        assert body['checks'] == {'document_store': 'ok'}

    def test_degraded_health(self, client, document_store, monkeypatch):
        monkeypatch.setattr(document_store, 'ping', lambda: False)
        response = client.get('/api/health')
        assert response.status_code == 503
        assert response.get_json()['status'] == 'degraded'

    def test_public_info(self, client):
        data = client.get('/api/public/info').get_json()['data']
        assert data['name'] == 'UpFace CRM'
        assert 'new' in data['inquiry_statuses']

    def test_contact_form(self, client, repos):
        response = client.post('/api/contact', json=CONTACT)
        assert response.status_code == 201
        inquiry_id = response.get_json()['data']['id']
        assert repos.inquiries.get(inquiry_id)['ip_address'] == '127.0.0.1'

    def test_contact_form_limit(self, client):
        for _ in range(3):
            assert client.post('/api/contact', json=CONTACT).status_code == 201
        response = client.post('/api/contact', json=CONTACT)
        assert response.status_code == 429
        assert int(response.headers['Retry-After']) >= 1
        assert response.get_json()['retry_after'] >= 1

    def test_contact_form_validation(self, client):
        response = client.post('/api/contact', json={'name': 'P', 'email': 'nope'})
        assert response.status_code == 400
        fields = {e['field'] for e in response.get_json()['field_errors']}
        assert fields == {'name', 'email', 'message'}

    def test_metrics(self, client):
        client.get('/api/health')
        response = client.get('/metrics')
        assert response.status_code == 200
        assert b'crm_security_requests_total' in response.data
        assert b'crm_authz_decisions_total' in response.data

    def test_metrics_can_be_disabled(self, app, client):
        app.config['METRICS_ENABLED'] = False
        assert client.get('/metrics').status_code == 404


class TestCrmRoutes:

    def test_client_lifecycle(self, client, users, auth_headers):
        headers = auth_headers(users['agent'])
        created = client.post('/api/crm/clients', headers=headers, json={
            'name': 'Harbor Coffee', 'email': 'owner@harborcoffee.io',
        })
        assert created.status_code == 201
        client_id = created.get_json()['data']['id']

        response = client.patch(f'/api/crm/clients/{client_id}', headers=headers,
                                json={'status': 'contacted'})
        assert response.get_json()['data']['status'] == 'contacted'

        response = client.post(f'/api/crm/clients/{client_id}/interactions', headers=headers,
                               json={'type': 'call', 'description': 'Intro call'})
        assert response.status_code == 201

        listing = client.get('/api/crm/clients', headers=headers).get_json()['data']
        assert listing['count'] == 1

    def test_foreign_client_is_forbidden(self, client, users, make_user, services,
                                         auth_headers, actor_of):
        other = make_user('agent')
        record = services.clients.create(
            {'name': 'Pier Bakery', 'email': 'hello@pierbakery.io'}, actor_of(other)
        )
        response = client.get(f"/api/crm/clients/{record['id']}",
                              headers=auth_headers(users['agent']))
        assert response.status_code == 403

    def test_missing_client(self, client, users, auth_headers):
        response = client.get('/api/crm/clients/' + 'f' * 32,
                              headers=auth_headers(users['manager']))
        assert response.status_code == 404
        assert response.get_json()['error_code'] == 'VAL_5002'

    def test_task_with_attachment(self, client, users, auth_headers):
        headers = auth_headers(users['agent'])
        task = client.post('/api/crm/tasks', headers=headers,
                           json={'title': 'Send proposal', 'priority': 'high'})
        assert task.status_code == 201
        task_id = task.get_json()['data']['id']

        response = client.post(
            f'/api/crm/tasks/{task_id}/attachments',
            headers=headers,
            data={'file': (io.BytesIO(b'hello world'), 'notes.txt', 'text/plain')},
            content_type='multipart/form-data',
        )
        assert response.status_code == 201
        assert response.get_json()['data']['size'] == 11

        tasks = client.get('/api/crm/tasks', headers=headers).get_json()['data']
        assert tasks['count'] == 1

    def test_attachment_requires_file(self, client, users, auth_headers, services, actors):
        task = services.tasks.create({'title': 'Send proposal', 'priority': 'low'},
                                     actors['agent'])
        response = client.post(f"/api/crm/tasks/{task['id']}/attachments",
                               headers=auth_headers(users['agent']), data={})
        assert response.status_code == 400

    def test_inquiry_conversion(self, client, users, auth_headers):
        inquiry_id = client.post('/api/contact', json=CONTACT).get_json()['data']['id']
        headers = auth_headers(users['manager'])

        pending = client.get('/api/crm/inquiries', headers=headers).get_json()['data']
        assert pending['count'] == 1

        response = client.post(f'/api/crm/inquiries/{inquiry_id}/convert', headers=headers,
                               json={})
        assert response.status_code == 201
        assert response.get_json()['data']['assigned_to'] == users['manager']['id']

        again = client.post(f'/api/crm/inquiries/{inquiry_id}/convert', headers=headers,
                            json={})
        assert again.status_code == 400

    def test_store_failure_is_a_503(self, client, users, auth_headers, repos, monkeypatch,
                                    audit_trail):
        def broken(*args, **kwargs):
            raise DataStoreError('connection reset', 'query', 'clients')

        monkeypatch.setattr(repos.clients, 'find', broken)
        response = client.get('/api/crm/clients', headers=auth_headers(users['manager']))
        assert response.status_code == 503
        assert response.get_json()['error_code'] == 'SYS_9001'
        assert len(audit_trail(event_type='system_error')) == 1


class TestUserRoutes:

    def test_admin_registers_and_promotes(self, client, users, auth_headers):
        headers = auth_headers(users['admin'])
        response = client.post('/api/users', headers=headers, json={
            'name': 'New Hire', 'email': 'new.hire@upface.dev',
            'password': 'Welc0meAboard', 'role': 'agent',
        })
        assert response.status_code == 201
        user_id = response.get_json()['data']['id']

        response = client.put(f'/api/users/{user_id}/role', headers=headers,
                              json={'role': 'manager'})
        assert response.get_json()['data']['role'] == 'manager'

        response = client.put(f'/api/users/{user_id}/status', headers=headers,
                              json={'active': False})
        assert response.get_json()['data']['status'] == 'inactive'

    def test_registered_user_can_sign_in(self, client, users, auth_headers):
        client.post('/api/users', headers=auth_headers(users['admin']), json={
            'name': 'New Hire', 'email': 'new.hire@upface.dev',
            'password': 'Welc0meAboard', 'role': 'agent',
        })
        assert login(client, 'new.hire@upface.dev', 'Welc0meAboard').status_code == 201

    def test_cannot_take_another_users_email(self, client, users, auth_headers, password):
        agent, admin = users['agent'], users['admin']
        response = client.put(f"/api/users/{agent['id']}", headers=auth_headers(agent),
                              json={'email': admin['email'].upper()})
        assert response.status_code == 400
        assert response.get_json()['field_errors'][0]['field'] == 'email'

        response = login(client, admin['email'], password)
        assert response.get_json()['data']['user']['id'] == admin['id']

    def test_status_payload_must_be_boolean(self, client, users, auth_headers):
        response = client.put(f"/api/users/{users['agent']['id']}/status",
                              headers=auth_headers(users['manager']), json={'active': 'no'})
        assert response.status_code == 400

    def test_agent_cannot_list_users(self, client, users, auth_headers):
        response = client.get('/api/users', headers=auth_headers(users['agent'], csrf=False))
        assert response.status_code == 403

    def test_permissions_route(self, client, users, auth_headers):
        response = client.get(f"/api/users/{users['agent']['id']}/permissions",
                              headers=auth_headers(users['agent'], csrf=False))
        ids = {p['id'] for p in response.get_json()['data']['permissions']}
        assert 'crm.clients.create' in ids
        assert 'crm.clients.delete' not in ids


class TestAdminRoutes:

    def test_audit_log_filters(self, client, users, auth_headers):
        client.get('/api/crm/clients')
        headers = auth_headers(users['admin'], csrf=False)

        response = client.get('/api/admin/audit/logs?event_type=unauthorized_access_attempt',
                              headers=headers)
        logs = response.get_json()['data']['logs']
        assert len(logs) == 1
        assert logs[0]['event_type'] == 'unauthorized_access_attempt'

    def test_audit_access_is_itself_audited(self, client, users, auth_headers, audit_trail):
        client.get('/api/admin/audit/alerts', headers=auth_headers(users['admin'], csrf=False))
        [entry] = audit_trail(event_type='admin_panel_access')
        assert entry['user_id'] == users['admin']['id']

    def test_invalid_date(self, client, users, auth_headers):
        response = client.get('/api/admin/audit/logs?start_date=yesterday',
                              headers=auth_headers(users['admin'], csrf=False))
        assert response.status_code == 400

    def test_utc_designator_date(self, client, users, auth_headers):
        response = client.get('/api/admin/audit/logs?start_date=2026-01-01T00:00:00Z',
                              headers=auth_headers(users['admin'], csrf=False))
        assert response.status_code == 200

    def test_report_and_activity(self, client, users, auth_headers):
        headers = auth_headers(users['owner'], csrf=False)
        report = client.get('/api/admin/audit/report?days=1', headers=headers).get_json()['data']
        assert report['period']['days'] == 1

        activity = client.get(f"/api/admin/audit/users/{users['agent']['id']}/activity",
                              headers=headers).get_json()['data']
        assert activity['user_id'] == users['agent']['id']

    def test_permission_catalog(self, client, users, auth_headers):
        data = client.get('/api/admin/permissions',
                          headers=auth_headers(users['admin'], csrf=False)).get_json()['data']
        assert [r['role'] for r in data['roles']] == ['agent', 'manager', 'admin', 'owner']
        assert 'System' in data['categories']


class TestCli:

    def test_cleanup_rate_limits(self, app, client):
        client.get('/api/public/info')
        result = app.test_cli_runner().invoke(args=['security', 'cleanup-rate-limits'])
        assert result.exit_code == 0
        assert 'public: 0 evicted' in result.output
        assert 'total:' in result.output
