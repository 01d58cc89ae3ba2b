import datetime
import logging
import os
from logging.handlers import RotatingFileHandler

ODOO_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
STATUS_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def setup_logger(name, log_file, level=logging.INFO, formatter=None):

    if not formatter:
        formatter = logging.Formatter('%(asctime)s\t%(levelname)s\t%(message)s')

    handler = RotatingFileHandler(log_file, maxBytes=10000000, backupCount=50)
    handler.setFormatter(formatter)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        logger.addHandler(handler)

    return logger


def init_logging(logs_directory):
    """Attaches rotating file handlers to the sync loggers.

    Only entry points call this; modules look their loggers up by name so that
    importing them never touches the filesystem.
    """
    if not os.path.exists(logs_directory):
        os.makedirs(logs_directory)
    setup_logger('error_logger', os.path.join(logs_directory, 'error.log'), logging.ERROR)
    setup_logger('info_logger', os.path.join(logs_directory, 'logs.log'))
    setup_logger('attendance_success_log', os.path.join(logs_directory, 'attendance_success_log.log'))
    setup_logger('attendance_failed_log', os.path.join(logs_directory, 'attendance_failed_log.log'))


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_utc_naive(value):
    """Aware datetimes are converted to UTC, naive ones are taken as UTC already."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


def parse_device_timestamp(value):
    # checktime arrives as ISO 8601, e.g. '2024-03-01T09:00:00+00:00' or '...Z'
    if isinstance(value, datetime.datetime):
        return to_utc_naive(value)
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        parsed = datetime.datetime.strptime(text, ODOO_DATETIME_FORMAT)
    return to_utc_naive(parsed)


def to_device_timestamp(value):
    return to_utc_naive(value).strftime('%Y-%m-%dT%H:%M:%S+00:00')


def to_odoo_datetime(value):
    return to_utc_naive(value).strftime(ODOO_DATETIME_FORMAT)


def from_odoo_datetime(value):
    if isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.strptime(value, ODOO_DATETIME_FORMAT)


def safe_convert_date(datestring, pattern):
    try:
        return datetime.datetime.strptime(datestring, pattern)
    except (TypeError, ValueError):
        return None
