import pytest

from config import Employee, Settings
from fakes import FakeOdoo
from status_store import StatusStore


@pytest.fixture
def employees():
    return {
        '7': Employee('7', 107, 'Alice'),
        '8': Employee('8', 108, 'Bob'),
    }


@pytest.fixture
def store(tmp_path):
    return StatusStore(str(tmp_path / 'status.json'))


@pytest.fixture
def erp():
    return FakeOdoo()


@pytest.fixture
def settings(employees):
    return Settings(
        window_hours=24,
        import_start_date=None,
        timestamp_offset_minutes=0,
        employees=employees,
    )
