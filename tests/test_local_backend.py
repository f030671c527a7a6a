from urllib.parse import urlparse

import pytest
import requests

from presence.backends.base import LOGS, USERS
from presence.backends.local import LocalBackend
from presence.errors import BackendUnreachable, WriteFailed
from presence.local_server import create_app


class FlaskResponse:
    def __init__(self, res):
        self.status_code = res.status_code
        self._data = res.get_json(silent=True)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._data

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f'{self.status_code} Error', response=self)


class FlaskSession:
    """Routes requests calls into a Flask test client."""

    def __init__(self, client):
        self.client = client
        self.requests = []

    def get(self, url, headers=None, timeout=None):
        self.requests.append(('GET', urlparse(url).path, timeout))
        return FlaskResponse(self.client.get(urlparse(url).path))

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append(('POST', urlparse(url).path, timeout))
        return FlaskResponse(self.client.post(urlparse(url).path, json=json))


class DownSession:
    def get(self, url, **kwargs):
        raise requests.ConnectionError('connection refused')

    def post(self, url, **kwargs):
        raise requests.ConnectionError('connection refused')


@pytest.fixture
def session():
    return FlaskSession(create_app('sqlite://').test_client())


@pytest.fixture
def backend(session):
    return LocalBackend('http://office-server:3000/api/', session=session, timeout=5)


def test_replace_logs_against_server_honors_deletions(backend, session):
    backend.replace_records(LOGS, [{'id': 'a'}, {'id': 'b'}])
    backend.replace_records(LOGS, [{'id': 'b'}])

    assert backend.list_records(LOGS) == [{'id': 'b'}]
    assert ('POST', '/api/logs/update', 5) in session.requests


def test_users_replace_uses_collection_path(backend, session):
    backend.replace_records(USERS, [{'id': 'u1'}])
    assert session.requests[-1] == ('POST', '/api/users', 5)
    assert backend.list_records(USERS) == [{'id': 'u1'}]


def test_add_log_and_config(backend):
    backend.add_record(LOGS, {'id': 'l1'})
    backend.save_config({'latitude': 1, 'longitude': 2, 'maxDistance': 30})

    assert backend.list_records(LOGS) == [{'id': 'l1'}]
    assert backend.get_config() == {'latitude': 1, 'longitude': 2, 'maxDistance': 30}


def test_ping_uses_probe_timeout(backend, session):
    assert backend.ping(timeout=3) is True
    assert session.requests[-1] == ('GET', '/api/health', 3)


def test_http_error_on_write_is_write_failed(backend):
    with pytest.raises(WriteFailed):
        backend.replace_records('payroll', [])


def test_http_error_on_read_is_unreachable(backend):
    with pytest.raises(BackendUnreachable):
        backend.list_records('payroll')


def test_connection_errors():
    backend = LocalBackend('http://office-server:3000/api', session=DownSession())
    assert backend.ping(timeout=3) is False
    with pytest.raises(BackendUnreachable) as exc:
        backend.list_records(USERS)
    assert isinstance(exc.value.__cause__, requests.ConnectionError)
    with pytest.raises(WriteFailed):
        backend.add_record(LOGS, {'id': 'x'})


def test_endpoint_can_change_at_runtime(session):
    endpoints = ['http://first:3000/api']
    backend = LocalBackend(lambda: endpoints[0], session=session)
    assert backend.base_url == 'http://first:3000/api'
    endpoints[0] = 'http://second:3000/api/'
    assert backend.base_url == 'http://second:3000/api'
