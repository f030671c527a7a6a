import pytest

from presence.local_server import create_app


@pytest.fixture
def client():
    app = create_app('sqlite://')
    app.config['TESTING'] = True
    return app.test_client()


def test_health(client):
    res = client.get('/api/health')
    assert res.status_code == 200
    assert res.get_json() == {'status': 'ok'}


def test_config_is_seeded_and_writable(client):
    assert client.get('/api/config').get_json() == {'latitude': -6.2, 'longitude': 106.81, 'maxDistance': 100.0}

    client.post('/api/config', json={'latitude': 1.5, 'longitude': 2.5, 'maxDistance': 75})
    assert client.get('/api/config').get_json() == {'latitude': 1.5, 'longitude': 2.5, 'maxDistance': 75}


def test_post_users_replaces_the_list(client):
    client.post('/api/users', json=[{'id': 'u1', 'name': 'A'}, {'id': 'u2', 'name': 'B'}])
    client.post('/api/users', json=[{'id': 'u2', 'name': 'B2'}])

    assert client.get('/api/users').get_json() == [{'id': 'u2', 'name': 'B2'}]


def test_append_puts_newest_log_first(client):
    client.post('/api/logs', json={'id': 'l1', 'timestamp': 1})
    client.post('/api/logs', json={'id': 'l2', 'timestamp': 2})

    assert [r['id'] for r in client.get('/api/logs').get_json()] == ['l2', 'l1']


def test_logs_update_reconciles_by_id(client):
    client.post('/api/logs/update', json=[{'id': 'a'}, {'id': 'b'}])
    res = client.post('/api/logs/update', json=[{'id': 'b', 'status': 'SUCCESS'}])

    assert res.get_json() == {'success': True, 'upserted': 1, 'inserted': 0, 'deleted': 1}
    assert client.get('/api/logs').get_json() == [{'id': 'b', 'status': 'SUCCESS'}]


def test_leaves_update_and_feed_append(client):
    client.post('/api/leaves/update', json=[{'id': 'lv1', 'status': 'PENDING'}])
    client.post('/api/feeds', json={'id': 'f1', 'content': 'hi'})
    assert client.get('/api/leaves').get_json() == [{'id': 'lv1', 'status': 'PENDING'}]
    assert client.get('/api/feeds').get_json() == [{'id': 'f1', 'content': 'hi'}]


def test_leaves_cannot_be_appended(client):
    assert client.post('/api/leaves', json={'id': 'lv1'}).status_code == 405


def test_unknown_collection(client):
    assert client.get('/api/payroll').status_code == 404
    assert client.post('/api/payroll/update', json=[]).status_code == 404


def test_bad_bodies_are_rejected(client):
    assert client.post('/api/logs/update', json={'id': 'a'}).status_code == 400
    assert client.post('/api/logs/update', json=[{'name': 'no id'}]).status_code == 400
    assert client.post('/api/logs', json=[{'id': 'a'}]).status_code == 400
    assert client.post('/api/config', json=[1, 2]).status_code == 400
    assert client.get('/api/logs').get_json() == []
