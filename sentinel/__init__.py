import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    settings = app.config.get('BACKUP_SETTINGS')
    debug = app.config.get('DEBUG', False) or (settings is not None and settings.debug)

    # Set log level based on environment
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'sentinel.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # boto3 is chatty at DEBUG
    for noisy in ('boto3', 'botocore', 's3transfer', 'urllib3', 'paramiko'):
        logging.getLogger(noisy).setLevel(logging.INFO)

    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, settings=None, start_scheduler=None):
    """
    Flask application factory

    Args:
        config_name: Key of sentinel.config.config (default: $FLASK_ENV or production)
        settings: BackupSettings; loaded from SENTINEL_CONFIG when omitted
        start_scheduler: Override SCHEDULER_ENABLED
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from sentinel.config import config, load_settings
    app.config.from_object(config[config_name])

    # Backup settings are loaded once and handed to every component
    if settings is None:
        settings = load_settings(app.config['SENTINEL_CONFIG'])
    app.config['BACKUP_SETTINGS'] = settings

    # Configure logging
    configure_logging(app)

    from sentinel.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    if start_scheduler is None:
        start_scheduler = app.config.get('SCHEDULER_ENABLED', True)

    # Only the designated worker runs the scheduler (see docker/gunicorn_conf.py)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if start_scheduler and is_scheduler_worker:
        from sentinel import scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        scheduler.init_scheduler(app)
        scheduler.start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(scheduler.stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
