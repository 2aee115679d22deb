"""
Core of the provisioning gateway.

- host_validation: request shape and host group derivation
- host_lock: per-hostname distributed lock on Redis
- playbook_selector: group playbook with default fallback
- stream_runner: shell commands with live line output and deadlines
- registration: the register/unregister flow built from the above
"""

from .errors import (
    APIError,
    ArtifactError,
    ConflictError,
    ExecutionError,
    NotFoundError,
    PreconditionFailedError,
    ProvisionTimeoutError,
    RunCancelledError,
    StoreError,
    ValidationError,
)
from .host_validation import HostRequest, host_group, parse_host_request, validate_host_request
from .host_lock import HostLockManager, LockStatus, ReleaseStatus
from .playbook_selector import PlaybookChoice, select_playbook
from .stream_runner import RunResult, StreamRunner
from .registration import HostRegistrar, ProgressStream, RegistrationStage

__all__ = [
    # Errors
    "APIError",
    "ArtifactError",
    "ConflictError",
    "ExecutionError",
    "NotFoundError",
    "PreconditionFailedError",
    "ProvisionTimeoutError",
    "RunCancelledError",
    "StoreError",
    "ValidationError",
    # Validation
    "HostRequest",
    "host_group",
    "parse_host_request",
    "validate_host_request",
    # Locking
    "HostLockManager",
    "LockStatus",
    "ReleaseStatus",
    # Playbooks
    "PlaybookChoice",
    "select_playbook",
    # Execution
    "RunResult",
    "StreamRunner",
    # Orchestration
    "HostRegistrar",
    "ProgressStream",
    "RegistrationStage",
]
