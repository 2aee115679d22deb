"""Shared pytest fixtures for gateway tests."""
import os
import sys
import threading

import pytest
import redis

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

from config.settings import AnsibleSettings, AppSettings  # noqa: E402
from core.host_lock import HostLockManager  # noqa: E402
from core.registration import HostRegistrar  # noqa: E402
from core.stream_runner import RunResult  # noqa: E402


# =============================================================================
# Test Doubles
# =============================================================================

class FakeRedis:
    """In-memory lock store with the Redis commands HostLockManager uses.

    Every command runs under one lock, mirroring Redis executing commands
    one at a time. Set `fail = True` to make every command raise
    redis.ConnectionError.
    """

    def __init__(self):
        self.hashes = {}
        self.fail = False
        self._lock = threading.Lock()

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def ping(self):
        self._check()
        return True

    def hsetnx(self, key, field, value):
        with self._lock:
            self._check()
            fields = self.hashes.setdefault(key, {})
            if field in fields:
                return 0
            fields[field] = value
            return 1

    def hget(self, key, field):
        with self._lock:
            self._check()
            return self.hashes.get(key, {}).get(field)

    def register_script(self, script):
        return self._compare_and_delete

    def _compare_and_delete(self, keys, args):
        """Same contract as core.host_lock.RELEASE_SCRIPT."""
        key, (field, expected) = keys[0], args
        with self._lock:
            self._check()
            stored = self.hashes.get(key, {}).get(field)
            if stored is None:
                return [-1, ""]
            if expected and stored != expected:
                return [0, stored]
            del self.hashes[key]
            return [1, stored]


class FakeRunner:
    """Records commands instead of running them.

    Emits `output` lines for every command. When `error` is set it is raised
    for commands containing `fail_on` (or for every command).
    """

    def __init__(self, output=("ok",), error=None, fail_on=None):
        self.output = list(output)
        self.error = error
        self.fail_on = fail_on
        self.calls = []

    @property
    def commands(self):
        return [command for command, _ in self.calls]

    def run(self, command, sink, deadline=None, cancel=None):
        self.calls.append((command, deadline))
        for line in self.output:
            sink(f"[OUT] {line}")
        if self.error is not None and (self.fail_on is None or self.fail_on in command):
            raise self.error
        return RunResult(command=command, return_code=0, stdout_lines=len(self.output))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_runner():
    return FakeRunner(output=["PLAY [all]", "ok: [10.1.2.3]"])


@pytest.fixture
def playbook_root(tmp_path):
    """Playbook directory holding only default.yml."""
    root = tmp_path / "ansible"
    root.mkdir()
    (root / "default.yml").write_text("- hosts: all\n  tasks: []\n")
    return root


@pytest.fixture
def ansible_settings(tmp_path, playbook_root):
    return AnsibleSettings(
        dir=playbook_root,
        log_dir=tmp_path / "logs",
        user="deploy",
        register_timeout=0,
        hostname_timeout=120,
        playbook_timeout=0,
    )


@pytest.fixture
def lock_manager(fake_redis):
    return HostLockManager(fake_redis)


@pytest.fixture
def registrar(ansible_settings, lock_manager, fake_runner):
    return HostRegistrar(ansible_settings, lock_manager, runner=fake_runner)


@pytest.fixture
def app(ansible_settings, fake_redis, fake_runner):
    from gateway.app import create_app
    settings = AppSettings(ansible=ansible_settings, log_format="text", log_level="WARNING")
    return create_app(
        config={'TESTING': True},
        settings=settings,
        redis_client=fake_redis,
        runner=fake_runner,
    )


@pytest.fixture
def client(app):
    return app.test_client()
