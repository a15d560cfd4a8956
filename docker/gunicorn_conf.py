# Gunicorn configuration for Sentinel
# Run with: gunicorn -c docker/gunicorn_conf.py "sentinel:create_app()"

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))

# Backups run in-process; keep the app from being loaded in the master
preload_app = False


def post_fork(server, worker):
    """
    Called in each worker right after fork, before the app is loaded.

    Designates the first worker (worker.age == 0) as the scheduler owner so
    only one process runs backups and the one-job-in-flight lock holds.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Status API worker (scheduler disabled)")
