"""
Application-scoped collaborators.

The lock manager, process runner and registrar are built once per app in
init_extensions(app) and looked up by blueprints through get_registrar().
"""

import logging
from typing import Optional

import redis
from flask import current_app

from config.redis_client import get_redis
from config.settings import AppSettings
from core.host_lock import HostLockManager
from core.registration import HostRegistrar
from core.stream_runner import StreamRunner

logger = logging.getLogger(__name__)

REGISTRAR_KEY = 'host_registrar'
REDIS_KEY = 'host_lock_redis'


def init_extensions(
    app,
    settings: AppSettings,
    redis_client: Optional[redis.Redis] = None,
    runner: Optional[StreamRunner] = None,
):
    """Build the registration collaborators for this app.

    Args:
        app: Flask application instance
        settings: Application settings
        redis_client: Lock store client (default: config.redis_client.get_redis())
        runner: Process runner (default: StreamRunner from ansible settings)
    """
    client = redis_client if redis_client is not None else get_redis(settings.redis)
    registrar = HostRegistrar(
        settings.ansible,
        HostLockManager(client),
        runner=runner,
    )

    app.extensions[REDIS_KEY] = client
    app.extensions[REGISTRAR_KEY] = registrar
    logger.info(
        f"Registrar ready: playbooks={registrar.playbook_dir} artifacts={registrar.log_dir}"
    )


def get_registrar() -> HostRegistrar:
    return current_app.extensions[REGISTRAR_KEY]


def get_lock_store() -> redis.Redis:
    return current_app.extensions[REDIS_KEY]
