"""
Flask application factory for the provisioning gateway.

    app = create_app()                      # settings from env / .env
    app = create_app(settings=load_settings("config.yaml"))

Tests inject the lock store client and the process runner.
"""

import logging
import time

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from core.errors import register_error_handlers, short_id

load_dotenv()

logger = logging.getLogger(__name__)

# Register/unregister bodies are tiny JSON objects
MAX_CONTENT_LENGTH = 1 << 20

# Health checks are polled constantly; keep them out of the INFO log
QUIET_PATHS = ('/health', '/readyz')


def create_app(config=None, settings=None, redis_client=None, runner=None):
    """Create and configure the gateway app.

    Args:
        config: Optional dict of Flask config overrides (e.g. {'TESTING': True}).
        settings: AppSettings (default: config.settings.get_settings()).
        redis_client: Lock store client override.
        runner: StreamRunner override.

    Returns:
        Configured Flask app instance.
    """
    from config.settings import get_settings
    from gateway.extensions import init_extensions
    from gateway.logging_config import configure_logging
    from gateway.routes import health_bp, hosts_bp

    settings = settings or get_settings()

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH
    if config:
        app.config.update(config)

    configure_logging(settings, app)
    init_extensions(app, settings, redis_client=redis_client, runner=runner)

    app.register_blueprint(health_bp)
    app.register_blueprint(hosts_bp)

    _install_request_hooks(app)
    register_error_handlers(app)
    _install_fallback_handlers(app)

    return app


def _install_request_hooks(app):
    """Request id in, request id and access log line out."""

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID') or short_id()
        g.started = time.monotonic()

    @app.after_request
    def log_request(response):
        # For a streamed registration this runs when streaming starts; the
        # stream's terminal line carries the outcome.
        elapsed_ms = (time.monotonic() - g.started) * 1000 if 'started' in g else 0.0
        request_id = g.get('request_id', 'unknown')

        response.headers['X-Request-ID'] = request_id
        response.headers['X-Content-Type-Options'] = 'nosniff'

        if request.path in QUIET_PATHS:
            level = logging.DEBUG
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            f"{request.method} {request.path} {response.status_code} {elapsed_ms:.1f}ms",
            extra={
                'request_id': request_id,
                'method': request.method,
                'endpoint': request.path,
                'status_code': response.status_code,
                'duration_ms': round(elapsed_ms, 2),
                'remote_addr': request.remote_addr,
            },
        )
        return response


def _install_fallback_handlers(app):
    """JSON bodies for routing errors and unexpected exceptions."""

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return jsonify({'error': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        request_id = g.get('request_id', 'unknown')
        logger.exception(
            f"Unhandled {type(e).__name__} on {request.method} {request.path}",
            extra={'request_id': request_id, 'endpoint': request.path},
        )
        return jsonify({'error': 'internal server error', 'request_id': request_id}), 500
