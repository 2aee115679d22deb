"""WSGI entry point: gunicorn -c gateway/gunicorn.conf.py gateway.wsgi:app"""

import os

from config.settings import load_settings
from gateway.app import create_app

app = create_app(settings=load_settings(os.getenv("GATEWAY_CONFIG")))
