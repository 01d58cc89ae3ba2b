import json
import os
from collections import namedtuple

from dotenv import load_dotenv

from errors import ConfigError
from utils import safe_convert_date

Employee = namedtuple('Employee', ['device_id', 'erp_id', 'display_name'])

REQUIRED_SETTINGS = [
    'ODOO_URL',
    'ODOO_DB',
    'ODOO_EMAIL',
    'ODOO_PASSWORD',
    'CX_API_KEY',
    'CX_API_SECRET',
    'SYNC_SECRET',
]

SYNC_MODES = ('timer', 'trigger', 'once')

DEFAULT_CX_API_URL = 'https://api.eu.crosschexcloud.com/'


class Settings(object):
    """Validated runtime settings. Built once at start up by load_settings()."""

    def __init__(self, **values):
        self.__dict__.update(values)

    def __repr__(self):
        # secrets stay out of logs and tracebacks
        shown = {k: v for k, v in self.__dict__.items()
                 if k not in ('odoo_password', 'cx_api_secret', 'sync_secret', 'employees')}
        return 'Settings(%r)' % shown


def parse_employee_map(raw):
    """Accepts {device_id: erp_id} or {device_id: {"erp_id": .., "name": ..}}."""
    data = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict):
        raise ValueError('employee map must be a JSON object keyed by device id')
    employees = {}
    for device_id, entry in data.items():
        if isinstance(entry, dict):
            erp_id = entry.get('erp_id')
            name = entry.get('name') or str(device_id)
        else:
            erp_id = entry
            name = str(device_id)
        if erp_id is None or isinstance(erp_id, bool):
            raise ValueError('employee %s has no erp_id' % device_id)
        employees[str(device_id)] = Employee(str(device_id), int(erp_id), name)
    return employees


def _read_employee_map(env, problems):
    raw = env.get('EMPLOYEE_MAP')
    path = env.get('EMPLOYEE_MAP_FILE')
    try:
        if raw:
            return parse_employee_map(raw)
        if path:
            with open(path, 'r') as f:
                return parse_employee_map(f.read())
    except (OSError, ValueError, TypeError) as e:
        problems.append('EMPLOYEE_MAP is invalid: %s' % e)
    return None


def _int_setting(env, name, default, problems):
    value = env.get(name)
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError:
        problems.append('%s must be an integer, got %r' % (name, value))
        return default


def load_settings(environ=None, dotenv_path=None):
    """Reads and validates settings, raising ConfigError listing every problem."""
    if environ is None:
        load_dotenv(dotenv_path)
        environ = os.environ
    env = dict(environ)

    missing = [name for name in REQUIRED_SETTINGS if not env.get(name)]
    problems = []

    employees = None
    if not env.get('EMPLOYEE_MAP') and not env.get('EMPLOYEE_MAP_FILE'):
        missing.append('EMPLOYEE_MAP')
    else:
        employees = _read_employee_map(env, problems)
        if employees == {}:
            problems.append('EMPLOYEE_MAP does not list any employee')

    import_start_date = None
    if env.get('IMPORT_START_DATE'):
        import_start_date = safe_convert_date(env['IMPORT_START_DATE'], '%Y%m%d')
        if import_start_date is None:
            problems.append('IMPORT_START_DATE must use the YYYYMMDD format')

    sync_mode = (env.get('SYNC_MODE') or 'timer').lower()
    if sync_mode not in SYNC_MODES:
        problems.append('SYNC_MODE must be one of %s' % ', '.join(SYNC_MODES))

    settings = Settings(
        odoo_url=(env.get('ODOO_URL') or '').rstrip('/'),
        odoo_db=env.get('ODOO_DB'),
        odoo_email=env.get('ODOO_EMAIL'),
        odoo_password=env.get('ODOO_PASSWORD'),
        cx_api_url=env.get('CX_API_URL') or DEFAULT_CX_API_URL,
        cx_api_key=env.get('CX_API_KEY'),
        cx_api_secret=env.get('CX_API_SECRET'),
        cx_per_page=_int_setting(env, 'CX_PER_PAGE', 100, problems),
        cx_cooldown_seconds=_int_setting(env, 'CX_COOLDOWN_SECONDS', 30, problems),
        http_timeout=_int_setting(env, 'HTTP_TIMEOUT', 30, problems),
        sync_secret=env.get('SYNC_SECRET'),
        sync_mode=sync_mode,
        pull_frequency=_int_setting(env, 'PULL_FREQUENCY', 60, problems),
        window_hours=_int_setting(env, 'WINDOW_HOURS', 24, problems),
        import_start_date=import_start_date,
        timestamp_offset_minutes=_int_setting(env, 'TIMESTAMP_OFFSET_MINUTES', 0, problems),
        logs_directory=env.get('LOGS_DIRECTORY') or 'logs',
        trigger_host=env.get('TRIGGER_HOST') or '0.0.0.0',
        trigger_port=_int_setting(env, 'TRIGGER_PORT', 3000, problems),
        employees=employees or {},
    )
    settings.status_file = env.get('STATUS_FILE') or os.path.join(settings.logs_directory, 'status.json')

    if settings.cx_per_page < 1:
        problems.append('CX_PER_PAGE must be at least 1')
    if settings.window_hours < 1:
        problems.append('WINDOW_HOURS must be at least 1')

    if missing or problems:
        raise ConfigError(missing, problems)
    return settings
