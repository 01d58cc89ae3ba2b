import datetime
import os

from pickledb import PickleDB

from utils import ODOO_DATETIME_FORMAT, STATUS_DATETIME_FORMAT, safe_convert_date

# Status keys in status.json
#  - lift_off_timestamp
#  - mission_accomplished_timestamp
#  - pull_timestamp
#  - push_timestamp
#  - records:<employee_device_id>  ({punch id: punch time} already applied to Odoo)
RUN_STATUS_KEYS = ['lift_off_timestamp', 'mission_accomplished_timestamp', 'pull_timestamp', 'push_timestamp']
PROCESSED_PREFIX = 'records:'


def processed_key(device_id):
    return PROCESSED_PREFIX + str(device_id)


class StatusStore(object):
    """Durable set-of-strings store on top of a pickledb JSON file.

    An id passed to add() is on disk by the time add() returns; the engine
    relies on that to never re-apply a punch Odoo already confirmed.
    """

    def __init__(self, location):
        directory = os.path.dirname(os.path.abspath(location))
        if not os.path.exists(directory):
            os.makedirs(directory)
        self.location = location
        self.db = PickleDB(location)
        self.db.load()

    def members(self, key):
        return set(self.db.get(key) or {})

    def add(self, key, value, timestamp=None):
        current = dict(self.db.get(key) or {})
        value = str(value)
        if value in current:
            return
        current[value] = timestamp.strftime(ODOO_DATETIME_FORMAT) if timestamp else None
        self.db.set(key, current)
        self.db.save()

    def prune(self, before):
        """Forgets processed ids of punches older than before; returns how many."""
        removed = 0
        for key in self.db.all():
            if not key.startswith(PROCESSED_PREFIX):
                continue
            current = dict(self.db.get(key) or {})
            kept = {}
            for punch_id, stamp in current.items():
                punch_time = safe_convert_date(stamp, ODOO_DATETIME_FORMAT)
                # ids stored without a time are kept
                if punch_time is None or punch_time >= before:
                    kept[punch_id] = stamp
            if len(kept) != len(current):
                removed += len(current) - len(kept)
                self.db.set(key, kept)
        if removed:
            self.db.save()
        return removed

    def get_timestamp(self, key):
        return safe_convert_date(self.db.get(key), STATUS_DATETIME_FORMAT)

    def set_timestamp(self, key, value=None):
        if value is None:
            value = datetime.datetime.now()
        self.db.set(key, value.strftime(STATUS_DATETIME_FORMAT))
        self.db.save()

    def run_status(self):
        return {key: self.db.get(key) for key in RUN_STATUS_KEYS}
