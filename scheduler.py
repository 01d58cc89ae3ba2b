import argparse
import datetime
import logging
import sys
import threading
import time

import uvicorn

from attendance_sync import build_clients, run_once
from config import load_settings
from errors import ConfigError, SyncError
from trigger_server import create_app
from utils import init_logging

info_logger = logging.getLogger('info_logger')
error_logger = logging.getLogger('error_logger')


class RunResult(object):

    def __init__(self, status, message, summary=None):
        self.status = status
        self.message = message
        self.summary = summary

    @property
    def success(self):
        return self.status == 'success'

    def __repr__(self):
        return 'RunResult(%r, %r)' % (self.status, self.message)


class SyncRunner(object):
    """Runs the sync for the timer loop and the manual trigger alike.

    At most one run is in flight; a call arriving meanwhile is skipped, not
    queued.
    """

    def __init__(self, run_fn, store=None, pull_frequency=60):
        self.run_fn = run_fn
        self.store = store
        self.pull_frequency = pull_frequency
        self._lock = threading.Lock()

    @property
    def running(self):
        return self._lock.locked()

    def run_once(self, trigger='manual'):
        if not self._lock.acquire(blocking=False):
            info_logger.info("\t".join(("Sync already running, skipped", trigger)))
            return RunResult('skipped', 'A sync run is already in progress.')
        try:
            info_logger.info("\t".join(("Sync started", trigger)))
            summary = self.run_fn()
        except SyncError as e:
            error_logger.error("\t".join(("Sync run failed", trigger, type(e).__name__, str(e))))
            return RunResult('failed', 'Sync failed: %s' % describe_failure(e))
        except Exception:
            error_logger.exception('exception has occurred in the sync run...')
            return RunResult('failed', 'Sync failed with an unexpected error; see error.log.')
        finally:
            self._lock.release()
        if summary.ok:
            return RunResult('success', summary.message, summary)
        return RunResult('failed', summary.message, summary)

    def is_due(self, now=None):
        if self.store is None:
            return True
        last_lift_off = self.store.get_timestamp('lift_off_timestamp')
        now = now or datetime.datetime.now()
        return not last_lift_off or last_lift_off < now - datetime.timedelta(minutes=self.pull_frequency)

    def run_if_due(self):
        if not self.is_due():
            return None
        return self.run_once('timer')


def describe_failure(error):
    """Short text for the trigger response; never carries credentials."""
    names = {
        'UpstreamAuthError': 'authentication with an upstream service failed',
        'UpstreamTransportError': 'an upstream service could not be reached',
        'UpstreamRpcError': 'Odoo rejected a request',
        'SequencingError': 'attendance sequence is inconsistent',
    }
    return names.get(type(error).__name__, 'unexpected sync error')


def infinite_loop(runner, sleep_time=15, sleep=time.sleep):
    print("Service Running...")
    while True:
        try:
            runner.run_if_due()
            sleep(sleep_time)
        except Exception as e:
            print(e)


def build_runner(settings):
    device, erp, store = build_clients(settings)
    return SyncRunner(lambda: run_once(settings, device, erp, store), store, settings.pull_frequency)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Sync CrossChex punches into Odoo attendances.')
    parser.add_argument('--mode', choices=['timer', 'trigger', 'once'],
                        help='timer loop, HTTP trigger server, or a single run (default: SYNC_MODE)')
    parser.add_argument('--env-file', default=None, help='path of a .env file to load')
    args = parser.parse_args(argv)

    try:
        settings = load_settings(dotenv_path=args.env_file)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 2

    init_logging(settings.logs_directory)
    runner = build_runner(settings)
    mode = args.mode or settings.sync_mode
    info_logger.info("\t".join(("Starting sync service, mode:", mode)))

    if mode == 'once':
        result = runner.run_once('cli')
        print(result.message)
        return 0 if result.success else 1
    if mode == 'trigger':
        uvicorn.run(create_app(runner, settings.sync_secret), host=settings.trigger_host, port=settings.trigger_port)
        return 0
    infinite_loop(runner)
    return 0


if __name__ == "__main__":
    sys.exit(main())
