import datetime
import logging
import threading
import time
import uuid
from collections import namedtuple
from urllib.parse import urlparse

import requests

from errors import UpstreamAuthError, UpstreamTransportError
from utils import parse_device_timestamp, to_device_timestamp, utcnow

info_logger = logging.getLogger('info_logger')
error_logger = logging.getLogger('error_logger')

Punch = namedtuple('Punch', ['id', 'employee_device_id', 'timestamp'])

TOKEN_EXPIRY_MARGIN = datetime.timedelta(seconds=60)
DEFAULT_TOKEN_LIFETIME = datetime.timedelta(hours=1)
AUTH_ERROR_HINTS = ('token', 'authoriz', 'unauthori', 'expired')


class HostThrottle(object):
    """Minimum gap between two requests to the same host, shared process wide."""

    def __init__(self, cooldown=30, clock=time.monotonic, sleep=time.sleep):
        self.cooldown = cooldown
        self.clock = clock
        self.sleep = sleep
        self._last_request_at = {}
        self._lock = threading.Lock()

    def wait(self, host):
        with self._lock:
            last = self._last_request_at.get(host)
            if last is not None:
                remaining = self.cooldown - (self.clock() - last)
                if remaining > 0:
                    info_logger.info("\t".join((host, "Rate limit cooldown, sleeping seconds:", "%.1f" % remaining)))
                    self.sleep(remaining)
            self._last_request_at[host] = self.clock()


DEFAULT_THROTTLE = HostThrottle()


class TokenSession(object):

    def __init__(self, token, expires_at):
        self.token = token
        self.expires_at = expires_at

    def is_valid(self, now=None):
        now = now or utcnow()
        return bool(self.token) and now < self.expires_at - TOKEN_EXPIRY_MARGIN


def _parse_expiry(expires, now):
    if expires in (None, ''):
        return now + DEFAULT_TOKEN_LIFETIME
    if isinstance(expires, (int, float)) or str(expires).isdigit():
        seconds = float(expires)
        # large values are epoch timestamps, small ones a lifetime in seconds
        if seconds > 10 ** 9:
            return datetime.datetime.fromtimestamp(seconds, datetime.timezone.utc).replace(tzinfo=None)
        return now + datetime.timedelta(seconds=seconds)
    try:
        return parse_device_timestamp(expires)
    except ValueError:
        return now + DEFAULT_TOKEN_LIFETIME


class CrossChexClient(object):
    """Pulls attendance records from the CrossChex Cloud API.

    Every request goes through the host throttle, token requests included.
    Nothing is retried here: a failed fetch fails the run and the next run
    covers the same window again.
    """

    def __init__(self, base_url, api_key, api_secret, per_page=100, timeout=30,
                 throttle=None, session=None):
        self.base_url = base_url
        self.host = urlparse(base_url).netloc or base_url
        self.api_key = api_key
        self.api_secret = api_secret
        self.per_page = per_page
        self.timeout = timeout
        self.throttle = throttle or DEFAULT_THROTTLE
        self.http = session or requests.Session()
        self.token_session = None

    def _envelope(self, name_space, name_action):
        return {
            'header': {
                'nameSpace': name_space,
                'nameAction': name_action,
                'version': '1.0',
                'requestId': str(uuid.uuid4()),
                'timestamp': to_device_timestamp(utcnow()),
            }
        }

    def _post(self, body):
        self.throttle.wait(self.host)
        try:
            response = self.http.post(self.base_url, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise UpstreamTransportError('CrossChex request failed: %s' % e) from e
        if response.status_code in (401, 403):
            raise UpstreamAuthError('CrossChex rejected the request with status %s' % response.status_code)
        if response.status_code >= 400:
            raise UpstreamTransportError('CrossChex returned HTTP %s' % response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamTransportError('CrossChex returned a non JSON body') from e

    def authenticate(self):
        body = self._envelope('authorize.token', 'token')
        body['payload'] = {'api_key': self.api_key, 'api_secret': self.api_secret}
        data = self._post(body)
        payload = (data or {}).get('payload') or ((data or {}).get('data') or {}).get('payload') or {}
        token = payload.get('token')
        if not token:
            raise UpstreamAuthError('CrossChex did not return a token')
        now = utcnow()
        self.token_session = TokenSession(token, _parse_expiry(payload.get('expires'), now))
        info_logger.info("\t".join((self.host, "Token acquired, expires:", str(self.token_session.expires_at))))
        return self.token_session

    def get_token(self):
        if self.token_session is None or not self.token_session.is_valid():
            self.authenticate()
        return self.token_session.token

    def fetch_page(self, begin_time, end_time, page):
        body = self._envelope('attendance.record', 'getrecord')
        body['authorize'] = {'type': 'token', 'token': self.get_token()}
        body['payload'] = {
            'begin_time': to_device_timestamp(begin_time),
            'end_time': to_device_timestamp(end_time),
            'page': page,
            'per_page': self.per_page,
        }
        data = self._post(body) or {}
        payload = data.get('payload') or {}
        error = payload.get('error') or data.get('error')
        if error:
            message = str(error)
            if any(hint in message.lower() for hint in AUTH_ERROR_HINTS):
                self.token_session = None
                raise UpstreamAuthError('CrossChex refused the token: %s' % message)
            raise UpstreamTransportError('CrossChex returned an error: %s' % message)
        records = payload.get('list')
        if records is None:
            records = []
        return records

    def fetch_punches(self, begin_time, end_time):
        """All punches between begin_time and end_time, across every page.

        Paging stops at the first page holding fewer than per_page records.
        """
        punches = []
        page = 1
        while True:
            records = self.fetch_page(begin_time, end_time, page)
            for record in records:
                punch = record_to_punch(record)
                if punch is not None:
                    punches.append(punch)
            if len(records) < self.per_page:
                break
            page += 1
        info_logger.info("\t".join((self.host, "Punches Fetched:", str(len(punches)), "Pages:", str(page))))
        return punches


def record_to_punch(record):
    try:
        workno = (record.get('employee') or {}).get('workno')
        if not record.get('uuid') or workno in (None, '') or not record.get('checktime'):
            raise ValueError('incomplete record')
        return Punch(str(record['uuid']), str(workno), parse_device_timestamp(record['checktime']))
    except (AttributeError, TypeError, ValueError):
        error_logger.error("\t".join(("Skipping unreadable CrossChex record", repr(record))))
        return None
