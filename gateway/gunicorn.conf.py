"""
Gunicorn settings for running the gateway in production.

    gunicorn -c gateway/gunicorn.conf.py "gateway.wsgi:app"

A registration streams for as long as its playbook runs, so workers are
threaded and the worker timeout follows server.write_timeout (0 = none).
Set GATEWAY_CONFIG to load the same YAML file as `python -m gateway`.
"""

import os

from config.settings import load_settings

_server = load_settings(os.getenv("GATEWAY_CONFIG")).server

bind = _server.addr
worker_class = "gthread"
workers = int(os.getenv("GUNICORN_WORKERS", "2"))
# Each in-flight registration holds one thread until its stream ends
threads = int(os.getenv("GUNICORN_THREADS", "16"))

timeout = int(_server.write_timeout)
keepalive = max(int(_server.idle_timeout), 1)
graceful_timeout = 30

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")

proc_name = "ansible-gateway"
pidfile = os.getenv("GATEWAY_PIDFILE") or None
