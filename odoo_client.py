import datetime
import http.client
import logging
import socket
import xmlrpc.client

from errors import UpstreamAuthError, UpstreamRpcError, UpstreamTransportError

info_logger = logging.getLogger('info_logger')
error_logger = logging.getLogger('error_logger')

SESSION_INVALID_HINTS = ('accessdenied', 'access denied', 'session expired', 'sessionexpired', 'invalid session')


class TimeoutTransport(xmlrpc.client.Transport):

    def __init__(self, timeout, use_datetime=False):
        super().__init__(use_datetime=use_datetime)
        self.timeout = timeout

    def make_connection(self, host):
        conn = super().make_connection(host)
        conn.timeout = self.timeout
        return conn


class TimeoutSafeTransport(xmlrpc.client.SafeTransport):

    def __init__(self, timeout, use_datetime=False):
        super().__init__(use_datetime=use_datetime)
        self.timeout = timeout

    def make_connection(self, host):
        conn = super().make_connection(host)
        conn.timeout = self.timeout
        return conn


class OdooSession(object):

    def __init__(self, uid, established_at=None):
        self.uid = uid
        self.established_at = established_at or datetime.datetime.now()


def _fault_message(fault):
    lines = [line.strip() for line in str(fault.faultString).splitlines() if line.strip()]
    return lines[-1] if lines else 'Odoo fault %s' % fault.faultCode


def _is_session_invalid(fault):
    text = str(fault.faultString).lower()
    return any(hint in text for hint in SESSION_INVALID_HINTS)


class OdooClient(object):
    """External API client for Odoo over XML-RPC.

    Examples:
        client.search('hr.attendance', [('employee_id', '=', 7), ('check_out', '=', False)], ['id', 'check_in'])
        client.create('hr.attendance', {'employee_id': 7, 'check_in': '2024-03-01 09:00:00'})
        client.write('hr.attendance', [42], {'check_out': '2024-03-01 13:00:00'})
    """

    def __init__(self, url, db, login, password, timeout=30):
        self.url = url.rstrip('/')
        self.db = db
        self.login_name = login
        self.password = password
        self.timeout = timeout
        self.session = None

    def _proxy(self, service):
        endpoint = '%s/xmlrpc/2/%s' % (self.url, service)
        if endpoint.startswith('https'):
            transport = TimeoutSafeTransport(self.timeout)
        else:
            transport = TimeoutTransport(self.timeout)
        return xmlrpc.client.ServerProxy(endpoint, transport=transport, allow_none=True)

    def _rpc(self, service, method, *args):
        try:
            return getattr(self._proxy(service), method)(*args)
        except xmlrpc.client.Fault:
            raise
        except (xmlrpc.client.ProtocolError, http.client.HTTPException, socket.timeout, OSError) as e:
            raise UpstreamTransportError('Odoo %s.%s failed: %s' % (service, method, e)) from e

    def login(self):
        try:
            uid = self._rpc('common', 'authenticate', self.db, self.login_name, self.password, {})
        except xmlrpc.client.Fault as e:
            raise UpstreamAuthError('Odoo login failed: %s' % _fault_message(e)) from e
        if not uid:
            raise UpstreamAuthError('Odoo login failed for %s on %s' % (self.login_name, self.db))
        self.session = OdooSession(uid)
        info_logger.info("\t".join(("Odoo session established", self.db, "uid:", str(uid))))
        return self.session

    def ensure_session(self):
        if self.session is None:
            self.login()
        return self.session

    def call(self, model, method, args, options=None):
        """One execute_kw round trip.

        A fault saying the session is no longer valid drops the session, logs
        in again and repeats the call once.
        """
        for attempt in (1, 2):
            session = self.ensure_session()
            try:
                return self._rpc('object', 'execute_kw', self.db, session.uid, self.password,
                                 model, method, args, options or {})
            except xmlrpc.client.Fault as e:
                if _is_session_invalid(e):
                    self.session = None
                    if attempt == 1:
                        info_logger.info("\t".join(("Odoo session rejected, logging in again", model, method)))
                        continue
                    raise UpstreamAuthError('Odoo rejected the session: %s' % _fault_message(e)) from e
                message = _fault_message(e)
                error_logger.error("\t".join(("Error during Odoo API Call.", model, method, message)))
                raise UpstreamRpcError(message) from e

    def search(self, model, domain, fields=None, order=None, limit=None):
        options = {}
        if fields:
            options['fields'] = fields
        if order:
            options['order'] = order
        if limit:
            options['limit'] = limit
        return self.call(model, 'search_read', [domain], options)

    def create(self, model, fields):
        result = self.call(model, 'create', [fields])
        # newer Odoo versions answer with a list of ids
        if isinstance(result, list):
            result = result[0] if result else None
        return result

    def write(self, model, ids, fields):
        return self.call(model, 'write', [list(ids), fields])
