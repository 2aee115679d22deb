"""
Run the provisioning gateway.

    python -m gateway --config /etc/ansible-gateway/config.yaml \
        --logfile /var/log/ansible-gateway/gateway.log \
        --pidfile /run/ansible-gateway.pid

For production use gunicorn with gateway/gunicorn.conf.py instead.
"""

import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger('gateway')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="HTTP gateway for Ansible host provisioning")
    parser.add_argument("--config", default=None, help="path to YAML config file")
    parser.add_argument("--logfile", default="", help="path to log file (empty=stderr)")
    parser.add_argument("--pidfile", default="", help="path to pid file")
    return parser.parse_args(argv)


def write_pidfile(path: str) -> None:
    pidfile = Path(path)
    pidfile.parent.mkdir(parents=True, exist_ok=True)
    pidfile.write_text(f"{os.getpid()}\n")

    def _remove():
        try:
            if pidfile.read_text().strip() == str(os.getpid()):
                pidfile.unlink()
        except OSError:
            pass

    atexit.register(_remove)


def main(argv=None) -> int:
    args = parse_args(argv)

    from config.settings import load_settings
    from gateway.app import create_app
    from gateway.logging_config import configure_logging

    settings = load_settings(args.config)
    if args.logfile:
        settings.log_file = args.logfile
    configure_logging(settings)

    if args.pidfile:
        write_pidfile(args.pidfile)

    app = create_app(settings=settings)

    logger.info(f"ansible-gateway listening on {settings.server.addr}")
    app.run(
        host=settings.server.host,
        port=settings.server.port,
        threaded=True,
        use_reloader=False,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
