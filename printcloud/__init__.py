"""
Flask application factory and main application
"""
import atexit
import logging
import os
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask
from flask_limiter import Limiter

from config.config import (
    SECRET_KEY,
    DATABASE_PATH,
    LOG_DIR,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_SIZE_MB,
    LOG_BACKUP_COUNT,
    LOG_LEVEL_DEFAULT,
    LOG_LEVEL_POLLING,
    LOG_STRUCTURED,
    POLLING_AUTO_START,
    WEBHOOK_SECRET,
)
from printcloud.utils.rate_limiting import RATE_LIMITS, get_ip_for_ratelimit


limiter = Limiter(
    key_func=get_ip_for_ratelimit,
    default_limits=[RATE_LIMITS['api_default'], "1000 per hour"],
    storage_uri="memory://",
    strategy="fixed-window"
)


def create_app(test_config: Optional[Dict[str, Any]] = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        test_config: Overrides for DATABASE_PATH, LOG_DIR, POLLING_AUTO_START,
            RATELIMIT_ENABLED and WEBHOOK_SECRET
    """
    from printcloud.version import __version__, VERSION_STRING
    from printcloud.services import CaptureEngine, IntegrationStore, PollingScheduler, WebhookIngress

    app = Flask('printcloud')

    # Configuration
    app.config['SECRET_KEY'] = SECRET_KEY
    app.config['DATABASE_PATH'] = DATABASE_PATH
    app.config['LOG_DIR'] = LOG_DIR
    app.config['POLLING_AUTO_START'] = POLLING_AUTO_START
    app.config['WEBHOOK_SECRET'] = WEBHOOK_SECRET
    app.config['RATELIMIT_ENABLED'] = True
    app.config['VERSION'] = __version__
    app.config['VERSION_STRING'] = VERSION_STRING
    if test_config:
        app.config.update(test_config)

    # Setup logging
    setup_logging(app)

    # Initialize extensions
    limiter.init_app(app)

    # Initialize database and services
    store = IntegrationStore(Path(app.config['DATABASE_PATH']))
    store.init_schema()
    engine = CaptureEngine(store)
    scheduler = PollingScheduler(store, engine)
    webhook = WebhookIngress(store, engine, default_secret=app.config['WEBHOOK_SECRET'])

    app.extensions['printcloud'] = {
        'store': store,
        'engine': engine,
        'scheduler': scheduler,
        'webhook': webhook,
    }

    # Start background polling (only in production, not in reloader)
    if app.config['POLLING_AUTO_START'] and (not app.debug or os.environ.get('WERKZEUG_RUN_MAIN') == 'true'):
        scheduler.start()
        atexit.register(scheduler.stop)

    # Register API blueprint
    from printcloud.routes import printer_integration_bp
    app.register_blueprint(printer_integration_bp)

    # Error handlers
    register_error_handlers(app)

    app.logger.info(f"{VERSION_STRING} started")

    return app


def setup_logging(app: Flask):
    """Configure application logging with JSON structured format for syslog/Splunk."""
    from pythonjsonlogger import jsonlogger

    # pysnmp leaves transport tasks pending when its private event loop closes
    warnings.filterwarnings('ignore', message='.*Task was destroyed but it is pending.*')
    warnings.filterwarnings('ignore', category=ResourceWarning, message='.*unclosed.*')

    log_dir = Path(app.config['LOG_DIR'])
    log_dir.mkdir(parents=True, exist_ok=True)

    # JSON formatter for structured logging (syslog/Splunk compatible)
    json_formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(message)s',
        rename_fields={'asctime': 'timestamp', 'name': 'logger', 'levelname': 'level'}
    )

    # Human-readable formatter for console
    console_formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Choose formatter based on configuration
    file_formatter = json_formatter if LOG_STRUCTURED else console_formatter

    # File handler for application logs
    file_handler = RotatingFileHandler(
        log_dir / 'app.log',
        maxBytes=LOG_MAX_SIZE_MB * 1024 * 1024,
        backupCount=LOG_BACKUP_COUNT
    )
    file_handler.setFormatter(file_formatter)
    file_handler.setLevel(logging.INFO)

    # Console handler for visibility (always human-readable)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(logging.INFO)

    # Audit log handler (always structured JSON for parsing)
    audit_handler = RotatingFileHandler(
        log_dir / 'audit.log',
        maxBytes=LOG_MAX_SIZE_MB * 1024 * 1024,
        backupCount=LOG_BACKUP_COUNT
    )
    audit_handler.setFormatter(json_formatter)
    audit_handler.setLevel(logging.INFO)

    # Replace handlers from a previous create_app() in the same process
    for name in ('printcloud', 'audit'):
        existing = logging.getLogger(name)
        for handler in list(existing.handlers):
            existing.removeHandler(handler)
            handler.close()

    # The Flask app logger is the 'printcloud' logger, so this covers app.logger
    # and every printcloud.* module logger
    app_logger = logging.getLogger('printcloud')
    app_logger.addHandler(file_handler)
    app_logger.addHandler(console_handler)
    app_logger.setLevel(LOG_LEVEL_DEFAULT)

    logging.getLogger('printcloud.services.schedulers').setLevel(LOG_LEVEL_POLLING)
    logging.getLogger('printcloud.services.connectors').setLevel(LOG_LEVEL_POLLING)

    # Create audit logger
    audit_logger = logging.getLogger('audit')
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)

    # Silence noisy third-party loggers
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('pysnmp').setLevel(logging.WARNING)

    app.logger.info("Logging configured", extra={
        'format': 'json' if LOG_STRUCTURED else 'text',
        'log_dir': str(log_dir)
    })


def register_error_handlers(app: Flask):
    """Register error handlers that return JSON for API errors."""
    from flask import jsonify
    from werkzeug.exceptions import TooManyRequests
    from printcloud.utils.rate_limiting import handle_rate_limit_exceeded

    # Rate limit error handler
    app.errorhandler(429)(handle_rate_limit_exceeded)
    app.errorhandler(TooManyRequests)(handle_rate_limit_exceeded)

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        return jsonify({'error': 'Method not allowed'}), 405

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}")
        return jsonify({'error': 'Internal server error'}), 500
