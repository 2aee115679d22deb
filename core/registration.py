"""
Host registration orchestration.

Drives one registration through its stages:

    validating -> locking -> selecting_playbook -> writing_inventory
        -> renaming_host -> applying_playbook -> done

Any stage can end in failed(stage, reason). Every step reports progress as
timestamped lines on a ProgressStream, which the HTTP layer forwards to the
caller as it happens; the streamed response is the audit log of the run.

The work is split in two so the HTTP layer can still pick a status code:
prepare() covers everything up to the inventory file and raises APIError
subclasses; provision() runs the two automation stages while the response
is already streaming.

Usage:
    registrar = HostRegistrar(settings.ansible, HostLockManager(get_redis()))
    progress = ProgressStream(print)
    plan = registrar.prepare(parse_host_request(body), progress)
    registrar.provision(plan, progress)
"""

import logging
import shlex
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from config.settings import AnsibleSettings
from core.deadline import Deadline
from core.errors import (
    APIError,
    ArtifactError,
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    ProvisionTimeoutError,
    RunCancelledError,
)
from core.host_lock import HostLockManager, LockAttempt, ReleaseResult, ReleaseStatus
from core.host_validation import HostRequest, validate_host_request, validate_unregister_request
from core.playbook_selector import PlaybookChoice, select_playbook
from core.stream_runner import StreamRunner

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S.%f"
PLAYBOOK_LOG_TIMESTAMP_FORMAT = "%Y-%m-%d_%H:%M:%S.%f"


class RegistrationStage(Enum):
    """Stages of a registration, in order."""

    VALIDATING = "validating"
    LOCKING = "locking"
    SELECTING_PLAYBOOK = "selecting_playbook"
    WRITING_INVENTORY = "writing_inventory"
    RENAMING_HOST = "renaming_host"
    APPLYING_PLAYBOOK = "applying_playbook"
    DONE = "done"
    FAILED = "failed"


class ProgressStream:
    """
    Per-request progress writer.

    Lines go to the sink (the HTTP response) and to the process log. Output
    of the automation subprocess is passed through untouched via raw().
    """

    def __init__(
        self,
        sink: Callable[[str], None],
        hostname: str = "",
        request_id: str = "",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.sink = sink
        self.hostname = hostname
        self.request_id = request_id
        self.clock = clock
        self._lock = threading.Lock()

    def _emit(self, level: int, tag: str, message: str) -> None:
        line = f"{self.clock().strftime(TIMESTAMP_FORMAT)} [{tag}] {message}"
        with self._lock:
            self.sink(line)
        logger.log(
            level, message,
            extra={'request_id': self.request_id, 'hostname': self.hostname},
        )

    def info(self, message: str) -> None:
        self._emit(logging.INFO, "INFO", message)

    def warn(self, message: str) -> None:
        self._emit(logging.WARNING, "WARN", message)

    def error(self, message: str) -> None:
        self._emit(logging.ERROR, "ERROR", message)

    def raw(self, line: str) -> None:
        with self._lock:
            self.sink(line)

    def done(self, message: str) -> None:
        """Terminal line of a successful run."""
        self._emit(logging.INFO, "DONE", message)

    def fail(self, error: APIError) -> None:
        """Terminal line of a failed run, naming the stage it failed in."""
        # Errors raised before the orchestrator runs come from request parsing
        stage = error.stage or RegistrationStage.VALIDATING.value
        self._emit(logging.ERROR, "FAILED", f"{stage}: {error}")


@dataclass
class RegistrationPlan:
    """Everything prepare() resolved, handed to provision()."""
    request: HostRequest
    lock: LockAttempt
    playbook: PlaybookChoice
    inventory_path: Path
    deadline: Deadline
    stage: RegistrationStage = RegistrationStage.WRITING_INVENTORY

    @property
    def group(self) -> str:
        return self.request.group

    @property
    def idempotent_retry(self) -> bool:
        return not self.lock.acquired


class HostRegistrar:
    """
    Registers hosts: lock, playbook selection, inventory, automation.

    A failure after the lock is taken leaves the lock in place. The same
    owner can retry (idempotent re-entry), anyone else needs an explicit
    unregistration first.
    """

    HOSTNAME_COMMAND = "ansible -u {user} {address} -i {inventory} -m shell -a {module_args}"
    PLAYBOOK_COMMAND = (
        "set -o pipefail; cd {playbook_dir} && "
        "ansible-playbook {playbook} -i {inventory} -e hosts={group} 2>&1 | tee {log_file}"
    )

    def __init__(
        self,
        settings: AnsibleSettings,
        locks: HostLockManager,
        runner: Optional[StreamRunner] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.locks = locks
        self.runner = runner or StreamRunner(shell=settings.shell, kill_grace=settings.kill_grace)
        self.clock = clock

    @property
    def playbook_dir(self) -> Path:
        return Path(self.settings.dir).resolve()

    @property
    def log_dir(self) -> Path:
        return Path(self.settings.log_dir).resolve()

    @contextmanager
    def _stage(self, stage: RegistrationStage, plan: Optional[RegistrationPlan] = None):
        """Tag errors raised inside the block with the stage they belong to."""
        if plan is not None:
            plan.stage = stage
        try:
            yield
        except APIError as e:
            if e.stage is None:
                e.stage = stage.value
            if plan is not None:
                plan.stage = RegistrationStage.FAILED
            raise

    # =========================================================================
    # Registration
    # =========================================================================

    def prepare(self, req: HostRequest, progress: ProgressStream) -> RegistrationPlan:
        """
        Validate, lock, select the playbook and write the inventory.

        Raises:
            ValidationError: malformed request, nothing touched
            ConflictError: hostname locked by another owner, nothing touched
            StoreError: lock store unreachable
            NotFoundError: no playbook for the group (lock stays held)
            ArtifactError: inventory could not be written (lock stays held)
            ProvisionTimeoutError: registration deadline expired
        """
        with self._stage(RegistrationStage.VALIDATING):
            validate_host_request(req)
        progress.hostname = req.hostname

        with self._stage(RegistrationStage.LOCKING):
            lock = self._lock_host(req, progress)

        # The overall deadline covers everything from playbook selection on
        deadline = Deadline.after(self.settings.register_timeout, "registration")

        with self._stage(RegistrationStage.SELECTING_PLAYBOOK):
            playbook = select_playbook(self.playbook_dir, req.group)
            for warning in playbook.warnings:
                progress.warn(warning)
            progress.info(f"use playbook: {playbook.path}")
            self._check_deadline(deadline)

        plan = RegistrationPlan(
            request=req,
            lock=lock,
            playbook=playbook,
            inventory_path=self.inventory_path(req),
            deadline=deadline,
        )
        with self._stage(RegistrationStage.WRITING_INVENTORY, plan):
            self._write_inventory(plan)
            progress.info(f"inventory written: {plan.inventory_path}")
            self._check_deadline(deadline)
        return plan

    def provision(
        self,
        plan: RegistrationPlan,
        progress: ProgressStream,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        """
        Run stage 1 (set hostname) and stage 2 (apply playbook).

        Each stage gets its own deadline derived from the registration
        deadline. Writes the terminal [DONE] line on success.

        Returns:
            Path of the playbook log file

        Raises:
            ExecutionError: a stage exited non-zero
            ProvisionTimeoutError: a stage or the registration timed out
            RunCancelledError: cancel was set (caller went away)
        """
        req = plan.request

        with self._stage(RegistrationStage.RENAMING_HOST, plan):
            command = self.HOSTNAME_COMMAND.format(
                user=shlex.quote(self.settings.user),
                address=shlex.quote(req.address),
                inventory=shlex.quote(str(plan.inventory_path)),
                module_args=shlex.quote(f"hostnamectl set-hostname {req.hostname}"),
            )
            self._run_stage(
                command, progress, cancel,
                plan.deadline.child(self.settings.hostname_timeout, "hostname step"),
            )
            progress.info("hostname step done")

        log_file = self.playbook_log_path(plan)
        with self._stage(RegistrationStage.APPLYING_PLAYBOOK, plan):
            command = self.PLAYBOOK_COMMAND.format(
                playbook_dir=shlex.quote(str(self.playbook_dir)),
                playbook=shlex.quote(str(plan.playbook.path)),
                inventory=shlex.quote(str(plan.inventory_path)),
                group=shlex.quote(plan.group),
                log_file=shlex.quote(str(log_file)),
            )
            self._run_stage(
                command, progress, cancel,
                plan.deadline.child(self.settings.playbook_timeout, "playbook step"),
            )
            progress.info("playbook step done")

        plan.stage = RegistrationStage.DONE
        progress.done(f"initialize host done. log={log_file}")
        return log_file

    def register(
        self,
        req: HostRequest,
        progress: ProgressStream,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[Path]:
        """
        Full registration without an HTTP layer in between.

        Failures are reported as the terminal [FAILED] line and re-raised.
        """
        try:
            plan = self.prepare(req, progress)
            return self.provision(plan, progress, cancel)
        except APIError as e:
            progress.fail(e)
            raise

    def _lock_host(self, req: HostRequest, progress: ProgressStream) -> LockAttempt:
        owner = req.owner_token
        progress.info(f"trying to register: {req.hostname}")

        attempt = self.locks.try_acquire(req.hostname, owner)
        if attempt.acquired:
            progress.info(f"registered: {attempt.key}")
            return attempt

        if not self.locks.is_idempotent_retry(attempt.stored_owner, owner):
            progress.error(
                f"registration conflict: stored={attempt.stored_owner!r}, incoming={owner!r}"
            )
            raise ConflictError(
                f"already registered by {attempt.stored_owner!r}, incoming={owner!r}",
                stored_owner=attempt.stored_owner,
                incoming_owner=owner,
            )

        progress.warn(f"already registered (idempotent), stored={attempt.stored_owner!r}")
        return attempt

    def _run_stage(
        self,
        command: str,
        progress: ProgressStream,
        cancel: Optional[threading.Event],
        deadline: Deadline,
    ) -> None:
        self._check_deadline(deadline)
        if cancel is not None and cancel.is_set():
            raise RunCancelledError(f"{deadline.label or 'command'} cancelled before start")
        progress.info(f"run: {command}")
        result = self.runner.run(command, progress.raw, deadline=deadline, cancel=cancel)
        logger.debug(
            f"command finished in {result.elapsed_time:.1f}s "
            f"({result.stdout_lines} stdout / {result.stderr_lines} stderr lines)"
        )

    @staticmethod
    def _check_deadline(deadline: Deadline) -> None:
        if deadline.expired():
            raise ProvisionTimeoutError(f"{deadline.label or 'registration'} timeout")

    # =========================================================================
    # Artifacts
    # =========================================================================

    def inventory_path(self, req: HostRequest) -> Path:
        """<log_dir>/<id>__<hostname>__<address>.txt"""
        return self.log_dir / f"{req.id}__{req.hostname}__{req.address}.txt"

    def playbook_log_path(self, plan: RegistrationPlan) -> Path:
        """Inventory path without .txt, plus a timestamp and .log"""
        stamp = self.clock().strftime(PLAYBOOK_LOG_TIMESTAMP_FORMAT)
        base = plan.inventory_path.with_suffix("")
        return base.with_name(f"{base.name}__{stamp}.log")

    def _write_inventory(self, plan: RegistrationPlan) -> None:
        try:
            plan.inventory_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactError(f"mkdir log_dir: {e}") from e
        try:
            plan.inventory_path.write_text(f"[{plan.group}]\n{plan.request.address}\n")
        except OSError as e:
            raise ArtifactError(f"write inventory: {e}") from e

    # =========================================================================
    # Unregistration
    # =========================================================================

    def unregister(self, req: HostRequest) -> ReleaseResult:
        """
        Release the host lock. No automation runs.

        With id and address the stored owner must match; without them the
        lock is deleted unconditionally.

        Raises:
            ValidationError: malformed request
            PreconditionFailedError: owner mismatch, lock unchanged
            NotFoundError: hostname not locked
            StoreError: lock store unreachable
        """
        validate_unregister_request(req)
        expected = req.owner_token if req.has_owner else None

        result = self.locks.release(req.hostname, expected)
        if result.status is ReleaseStatus.MISMATCH:
            raise PreconditionFailedError(
                f"mismatch: stored={result.stored_owner!r} incoming={expected!r}"
            )
        if result.status is ReleaseStatus.NOT_FOUND:
            raise NotFoundError(f"not registered: {result.key}")
        return result
