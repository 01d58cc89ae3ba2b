import datetime
import logging
from collections import OrderedDict

from crosschex_client import DEFAULT_THROTTLE, CrossChexClient
from errors import SequencingError, SyncError
from odoo_client import OdooClient
from status_store import StatusStore, processed_key
from utils import from_odoo_datetime, to_odoo_datetime, utcnow

info_logger = logging.getLogger('info_logger')
error_logger = logging.getLogger('error_logger')
attendance_success_logger = logging.getLogger('attendance_success_log')
attendance_failed_logger = logging.getLogger('attendance_failed_log')

ATTENDANCE_MODEL = 'hr.attendance'
# processed ids are kept this long past the start of the fetch window
LEDGER_RETENTION_MARGIN = datetime.timedelta(hours=24)


class RunSummary(object):

    def __init__(self, window_start=None, window_end=None):
        self.window_start = window_start
        self.window_end = window_end
        self.fetched = 0
        self.already_processed = 0
        self.created = 0
        self.closed = 0
        self.unmapped = 0
        self.failed_employees = []

    @property
    def ok(self):
        return not self.failed_employees

    @property
    def message(self):
        text = ('Fetched %d punches: %d check-ins created, %d check-outs recorded, '
                '%d already processed, %d unmapped.' % (
                    self.fetched, self.created, self.closed, self.already_processed, self.unmapped))
        if self.failed_employees:
            text += ' Failed employees: %s (will retry next run).' % ', '.join(self.failed_employees)
        return text


def fetch_window(now, window_hours, import_start_date=None):
    """Trailing window ending at now, never starting before import_start_date."""
    start = now - datetime.timedelta(hours=window_hours)
    if import_start_date and import_start_date > start:
        start = import_start_date
    return start, now


def adjust_punches(punches, offset_minutes):
    if not offset_minutes:
        return list(punches)
    offset = datetime.timedelta(minutes=offset_minutes)
    return [punch._replace(timestamp=punch.timestamp + offset) for punch in punches]


def group_punches(punches, employees, summary=None):
    """Buckets punches per mapped employee, each bucket in timestamp order.

    Repeated ids within one batch are kept once. Punches from unmapped device
    ids are left out and stay unprocessed.
    """
    seen = set()
    grouped = OrderedDict()
    for punch in punches:
        if punch.id in seen:
            continue
        seen.add(punch.id)
        if punch.employee_device_id not in employees:
            info_logger.info("\t".join(("No employee mapping for device id", punch.employee_device_id, punch.id)))
            if summary is not None:
                summary.unmapped += 1
            continue
        grouped.setdefault(punch.employee_device_id, []).append(punch)
    for device_id in grouped:
        grouped[device_id].sort(key=lambda p: (p.timestamp, p.id))
    return OrderedDict(sorted(grouped.items()))


def _read_datetime(record, field):
    try:
        return from_odoo_datetime(record[field])
    except (KeyError, TypeError, ValueError) as e:
        raise SequencingError('Attendance %s has an unreadable %s: %r' % (
            record.get('id'), field, record.get(field))) from e


def find_open_interval(erp, employee):
    """(record id, check_in) of the employee's open attendance in Odoo, or None."""
    records = erp.search(ATTENDANCE_MODEL,
                         [('employee_id', '=', employee.erp_id), ('check_out', '=', False)],
                         fields=['id', 'check_in'], order='check_in desc')
    if not records:
        return None
    if len(records) > 1:
        raise SequencingError('Employee %s has %d open attendances in Odoo' % (employee.erp_id, len(records)))
    return records[0]['id'], _read_datetime(records[0], 'check_in')


def find_last_closed_interval(erp, employee):
    """(record id, check_out) of the employee's latest attendance, or None."""
    records = erp.search(ATTENDANCE_MODEL, [('employee_id', '=', employee.erp_id)],
                         fields=['id', 'check_in', 'check_out'], order='check_in desc', limit=1)
    if not records or not records[0].get('check_out'):
        return None
    return records[0]['id'], _read_datetime(records[0], 'check_out')


def apply_punch(erp, employee, punch, open_interval, last_closed=None):
    """Moves the employee's state machine one punch forward.

    Returns (action, record id, new open interval). Nothing is written when the
    punch is the one that opened the current interval or closed the last one.
    """
    if open_interval is None:
        if last_closed is not None:
            closed_id, check_out = last_closed
            if punch.timestamp == check_out:
                return 'already_applied', closed_id, None
            if punch.timestamp < check_out:
                raise SequencingError('Punch %s at %s is earlier than attendance %s checked out at %s' % (
                    punch.id, punch.timestamp, closed_id, check_out))
        record_id = erp.create(ATTENDANCE_MODEL, {
            'employee_id': employee.erp_id,
            'check_in': to_odoo_datetime(punch.timestamp),
        })
        if not record_id:
            raise SequencingError('Odoo returned no id for the check-in of punch %s' % punch.id)
        return 'check_in', record_id, (record_id, punch.timestamp)

    record_id, check_in = open_interval
    if punch.timestamp == check_in:
        return 'already_applied', record_id, open_interval
    if punch.timestamp < check_in:
        raise SequencingError('Punch %s at %s is earlier than open attendance %s checked in at %s' % (
            punch.id, punch.timestamp, record_id, check_in))
    written = erp.write(ATTENDANCE_MODEL, [record_id], {'check_out': to_odoo_datetime(punch.timestamp)})
    if not written:
        raise SequencingError('Odoo did not close attendance %s for punch %s' % (record_id, punch.id))
    return 'check_out', record_id, None


def process_employee(employee, punches, erp, store, summary=None):
    """Applies one employee's punches in order, marking each after Odoo confirms it.

    The first failure stops this employee for the run; the punches after it
    are still unmarked and get retried by the next run.
    """
    key = processed_key(employee.device_id)
    processed = store.members(key)
    pending = sorted((punch for punch in punches if punch.id not in processed), key=lambda p: (p.timestamp, p.id))
    if summary is not None:
        summary.already_processed += len(punches) - len(pending)
    if not pending:
        return

    open_interval = find_open_interval(erp, employee)
    last_closed = None
    if open_interval is None:
        last_closed = find_last_closed_interval(erp, employee)
    for punch in pending:
        try:
            action, record_id, new_open_interval = apply_punch(erp, employee, punch, open_interval, last_closed)
        except SyncError as e:
            attendance_failed_logger.error("\t".join((type(e).__name__, punch.id, employee.device_id,
                str(employee.erp_id), to_odoo_datetime(punch.timestamp), str(e))))
            raise
        if action == 'check_out':
            last_closed = (record_id, punch.timestamp)
        open_interval = new_open_interval
        store.add(key, punch.id, punch.timestamp)
        attendance_success_logger.info("\t".join((action, str(record_id), punch.id, employee.device_id,
            str(employee.erp_id), to_odoo_datetime(punch.timestamp))))
        if summary is not None:
            if action == 'check_in':
                summary.created += 1
            elif action == 'check_out':
                summary.closed += 1


def reconcile(punches, employees, erp, store, summary=None):
    """Turns a batch of punches into Odoo attendances, one employee at a time."""
    summary = summary or RunSummary()
    summary.fetched += len(punches)
    for device_id, employee_punches in group_punches(punches, employees, summary).items():
        employee = employees[device_id]
        try:
            process_employee(employee, employee_punches, erp, store, summary)
        except SyncError as e:
            summary.failed_employees.append(employee.display_name)
            error_logger.error("\t".join(("Error while processing employee", employee.device_id,
                str(employee.erp_id), employee.display_name, type(e).__name__, str(e))))
    return summary


def run_once(settings, device, erp, store, now=None):
    """Fetches the trailing window and reconciles it.

    A failure to fetch the window propagates and fails the whole run; errors
    of single employees are only counted in the returned summary.
    """
    now = now or utcnow()
    store.set_timestamp('lift_off_timestamp')
    info_logger.info("Cleared for lift off!")

    start, end = fetch_window(now, settings.window_hours, settings.import_start_date)
    summary = RunSummary(start, end)
    punches = device.fetch_punches(start, end)
    store.set_timestamp('pull_timestamp')
    punches = adjust_punches(punches, settings.timestamp_offset_minutes)

    reconcile(punches, settings.employees, erp, store, summary)
    pruned = store.prune(start - LEDGER_RETENTION_MARGIN)
    if pruned:
        info_logger.info("\t".join(("Forgot processed punch ids older than the window:", str(pruned))))
    if summary.ok:
        store.set_timestamp('push_timestamp')
    store.set_timestamp('mission_accomplished_timestamp')
    info_logger.info("Mission Accomplished! " + summary.message)
    return summary


def build_clients(settings):
    DEFAULT_THROTTLE.cooldown = settings.cx_cooldown_seconds
    device = CrossChexClient(settings.cx_api_url, settings.cx_api_key, settings.cx_api_secret,
                             per_page=settings.cx_per_page, timeout=settings.http_timeout)
    erp = OdooClient(settings.odoo_url, settings.odoo_db, settings.odoo_email, settings.odoo_password,
                     timeout=settings.http_timeout)
    store = StatusStore(settings.status_file)
    return device, erp, store
