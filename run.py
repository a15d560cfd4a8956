#!/usr/bin/env python3
"""Sentinel runner: one-off backup or scheduler with status API"""
import os
import sys
import signal
import argparse

from sentinel import create_app
from sentinel.config import ConfigError, load_settings


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Scheduled multi-source backups to S3')
    parser.add_argument('--config-file', default=os.environ.get('SENTINEL_CONFIG', 'config.toml'),
                        help='Path to the TOML settings file')
    parser.add_argument('--run-now', action='store_true',
                        help='Run a backup immediately, bypassing the schedule')
    parser.add_argument('--env', default=os.environ.get('FLASK_ENV', 'production'),
                        help='Configuration environment (development/production)')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    try:
        settings = load_settings(args.config_file)
    except ConfigError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 2

    # Without a schedule the backup runs once, like --run-now
    if args.run_now or not settings.schedule:
        from sentinel.scheduler import run_backup

        app = create_app(args.env, settings=settings, start_scheduler=False)
        result = run_backup(settings, timeout=app.config.get('BACKUP_TIMEOUT'))
        if not result.succeeded:
            app.logger.error(f"Backup failed during {result.failed_phase.value}: {result.error}")
            return 1
        return 0

    app = create_app(args.env, settings=settings)

    # Turn SIGTERM into a normal exit so atexit stops the scheduler
    signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))

    port = int(os.environ.get('PORT', 5000))
    app.run(host=os.environ.get('HOST', '127.0.0.1'), port=port, use_reloader=False)
    return 0


if __name__ == '__main__':
    sys.exit(main())
