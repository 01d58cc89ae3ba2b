import json

import pytest

from config import Employee, load_settings, parse_employee_map
from errors import ConfigError

BASE_ENV = {
    'ODOO_URL': 'https://odoo.example.com/',
    'ODOO_DB': 'prod',
    'ODOO_EMAIL': 'admin@example.com',
    'ODOO_PASSWORD': 'pw',
    'CX_API_KEY': 'key',
    'CX_API_SECRET': 'secret',
    'SYNC_SECRET': 's3cret',
    'EMPLOYEE_MAP': '{"7": {"erp_id": 107, "name": "Alice"}}',
}


def test_valid_environment():
    settings = load_settings(dict(BASE_ENV, PULL_FREQUENCY='15', IMPORT_START_DATE='20240301'))

    assert settings.odoo_url == 'https://odoo.example.com'
    assert settings.pull_frequency == 15
    assert settings.cx_cooldown_seconds == 30
    assert settings.import_start_date.day == 1
    assert settings.status_file.endswith('status.json')
    assert settings.employees == {'7': Employee('7', 107, 'Alice')}
    assert 'pw' not in repr(settings)


def test_every_missing_setting_is_listed():
    with pytest.raises(ConfigError) as excinfo:
        load_settings({})

    assert set(excinfo.value.missing) == {'ODOO_URL', 'ODOO_DB', 'ODOO_EMAIL', 'ODOO_PASSWORD', 'CX_API_KEY',
                                          'CX_API_SECRET', 'SYNC_SECRET', 'EMPLOYEE_MAP'}


def test_malformed_values_are_reported_together():
    env = dict(BASE_ENV, CX_PER_PAGE='many', SYNC_MODE='cron', IMPORT_START_DATE='2024-03-01')

    with pytest.raises(ConfigError) as excinfo:
        load_settings(env)

    assert len(excinfo.value.problems) == 3
    assert excinfo.value.missing == []


def test_bad_employee_map_is_a_config_error():
    with pytest.raises(ConfigError):
        load_settings(dict(BASE_ENV, EMPLOYEE_MAP='not json'))
    with pytest.raises(ConfigError):
        load_settings(dict(BASE_ENV, EMPLOYEE_MAP='{}'))


def test_employee_map_from_file(tmp_path):
    path = tmp_path / 'employees.json'
    path.write_text(json.dumps({'7': 107}))
    env = dict(BASE_ENV, EMPLOYEE_MAP_FILE=str(path))
    del env['EMPLOYEE_MAP']

    settings = load_settings(env)

    assert settings.employees['7'] == Employee('7', 107, '7')


def test_parse_employee_map_requires_erp_id():
    with pytest.raises(ValueError):
        parse_employee_map({'7': {'name': 'Alice'}})
