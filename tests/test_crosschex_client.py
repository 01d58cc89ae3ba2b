import datetime

import pytest
import requests

from crosschex_client import CrossChexClient, HostThrottle, TokenSession, record_to_punch
from errors import UpstreamAuthError, UpstreamTransportError

BEGIN = datetime.datetime(2024, 3, 1, 0, 0)
END = datetime.datetime(2024, 3, 2, 0, 0)


class FakeResponse:

    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code

    def json(self):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class FakeSession:
    """Answers token requests and serves attendance records page by page."""

    def __init__(self, records=(), per_page=3, token='tok-1', expires=None):
        self.records = list(records)
        self.per_page = per_page
        self.token = token
        self.expires = expires or (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=2)).isoformat()
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append(json)
        if json['header']['nameSpace'] == 'authorize.token':
            return FakeResponse({'payload': {'token': self.token, 'expires': self.expires}})
        page = json['payload']['page']
        start = (page - 1) * self.per_page
        return FakeResponse({'payload': {'list': self.records[start:start + self.per_page]}})

    def record_requests(self):
        return [r for r in self.requests if r['header']['nameSpace'] == 'attendance.record']

    def token_requests(self):
        return [r for r in self.requests if r['header']['nameSpace'] == 'authorize.token']


class FakeClock:

    def __init__(self):
        self.now = 1000.0
        self.slept = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.slept.append(seconds)
        self.now += seconds


def make_record(n, workno='7'):
    return {'uuid': 'u%d' % n, 'checktime': '2024-03-01T09:%02d:00+00:00' % n, 'employee': {'workno': workno}}


def make_client(session, per_page=3, throttle=None):
    return CrossChexClient('https://api.eu.crosschexcloud.com/', 'key', 'secret', per_page=per_page,
                           throttle=throttle or HostThrottle(cooldown=0), session=session)


def test_pagination_stops_on_short_page():
    session = FakeSession([make_record(n) for n in range(8)], per_page=3)

    punches = make_client(session).fetch_punches(BEGIN, END)

    assert len(punches) == 8
    assert len(session.record_requests()) == 3
    assert [r['payload']['page'] for r in session.record_requests()] == [1, 2, 3]


def test_pagination_with_exact_multiple_needs_an_empty_page():
    session = FakeSession([make_record(n) for n in range(6)], per_page=3)

    punches = make_client(session).fetch_punches(BEGIN, END)

    assert len(punches) == 6
    assert len(session.record_requests()) == 3


def test_request_envelope_carries_token_and_window():
    session = FakeSession([make_record(1)])

    make_client(session).fetch_punches(BEGIN, END)

    auth, fetch = session.requests
    assert auth['header']['nameAction'] == 'token'
    assert auth['payload'] == {'api_key': 'key', 'api_secret': 'secret'}
    assert fetch['header']['nameAction'] == 'getrecord'
    assert fetch['authorize'] == {'type': 'token', 'token': 'tok-1'}
    assert fetch['payload']['begin_time'] == '2024-03-01T00:00:00+00:00'
    assert fetch['payload']['end_time'] == '2024-03-02T00:00:00+00:00'
    assert fetch['payload']['per_page'] == 3


def test_token_is_cached_until_it_expires():
    session = FakeSession([make_record(1)])
    client = make_client(session)

    client.fetch_punches(BEGIN, END)
    client.fetch_punches(BEGIN, END)
    assert len(session.token_requests()) == 1

    client.token_session.expires_at = datetime.datetime(2000, 1, 1)
    client.fetch_punches(BEGIN, END)
    assert len(session.token_requests()) == 2


def test_missing_token_is_an_auth_error():
    session = FakeSession(token=None)

    with pytest.raises(UpstreamAuthError):
        make_client(session).fetch_punches(BEGIN, END)
    assert session.record_requests() == []


def test_token_nested_under_data_is_accepted():
    session = FakeSession()
    session.post = lambda url, json=None, timeout=None: FakeResponse(
        {'data': {'payload': {'token': 'nested', 'expires': 3600}}})

    assert make_client(session).get_token() == 'nested'


def test_network_failure_is_a_transport_error():
    session = FakeSession()

    def broken(url, json=None, timeout=None):
        raise requests.exceptions.ConnectionError('connection refused')
    session.post = broken

    with pytest.raises(UpstreamTransportError):
        make_client(session).fetch_punches(BEGIN, END)


def test_http_error_and_bad_json_are_transport_errors():
    session = FakeSession()
    session.post = lambda url, json=None, timeout=None: FakeResponse({}, status_code=503)
    with pytest.raises(UpstreamTransportError):
        make_client(session).get_token()

    session.post = lambda url, json=None, timeout=None: FakeResponse(ValueError('no json'))
    with pytest.raises(UpstreamTransportError):
        make_client(session).get_token()


def test_rejected_token_is_dropped():
    session = FakeSession()
    client = make_client(session)
    client.get_token()
    session.post = lambda url, json=None, timeout=None: FakeResponse({'payload': {'error': 'Token expired'}})

    with pytest.raises(UpstreamAuthError):
        client.fetch_page(BEGIN, END, 1)
    assert client.token_session is None


def test_throttle_waits_out_the_cooldown_per_host():
    clock = FakeClock()
    throttle = HostThrottle(cooldown=30, clock=clock, sleep=clock.sleep)

    throttle.wait('api.eu.crosschexcloud.com')
    clock.now += 10
    throttle.wait('api.eu.crosschexcloud.com')
    throttle.wait('other.example.com')

    assert clock.slept == [20]


def test_throttle_applies_across_fetches_and_token_requests():
    clock = FakeClock()
    throttle = HostThrottle(cooldown=30, clock=clock, sleep=clock.sleep)
    session = FakeSession([make_record(1)])

    make_client(session, throttle=throttle).fetch_punches(BEGIN, END)
    make_client(FakeSession([make_record(2)]), throttle=throttle).fetch_punches(BEGIN, END)

    # token + page for the first client, then token + page for the second
    assert clock.slept == [30, 30, 30]


def test_incomplete_records_are_skipped():
    assert record_to_punch({'uuid': 'a', 'checktime': '2024-03-01T09:00:00Z'}) is None
    assert record_to_punch({'checktime': '2024-03-01T09:00:00Z', 'employee': {'workno': 7}}) is None

    punch = record_to_punch({'uuid': 'a', 'checktime': '2024-03-01T10:00:00+01:00', 'employee': {'workno': 7}})
    assert punch.id == 'a'
    assert punch.employee_device_id == '7'
    assert punch.timestamp == datetime.datetime(2024, 3, 1, 9, 0)


def test_token_session_expiry_margin():
    now = datetime.datetime(2024, 3, 1, 9, 0)

    assert TokenSession('t', now + datetime.timedelta(minutes=5)).is_valid(now)
    assert not TokenSession('t', now + datetime.timedelta(seconds=30)).is_valid(now)
    assert not TokenSession(None, now + datetime.timedelta(hours=1)).is_valid(now)
