"""
Error types of the provisioning gateway.

Every expected failure is an APIError subclass carrying the HTTP status it
maps to; the message is safe to show to the caller. Anything else is a bug
and is rendered as a generic 500 by the app factory.

Errors raised while a registration runs are tagged with the stage they
happened in (see core.registration.RegistrationStage), so the terminal
[FAILED] line of the progress stream can name it.

Usage:
    from core.errors import ConflictError, register_error_handlers

    raise ConflictError("already registered", stored_owner=stored, incoming_owner=owner)

    register_error_handlers(app)
"""

import logging
import uuid
from typing import Optional

from flask import jsonify

logger = logging.getLogger(__name__)


# =============================================================================
# Exception Classes
# =============================================================================

class APIError(Exception):
    """
    Base class for expected gateway errors.
    Messages are safe to expose to clients.
    """
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        # Set by the orchestrator, e.g. "renaming_host"
        self.stage: Optional[str] = None


class ValidationError(APIError):
    """Malformed request body or field (400)."""
    status_code = 400


class NotFoundError(APIError):
    """No playbook resolvable, or lock not held (404)."""
    status_code = 404


class ConflictError(APIError):
    """Host lock held by a different owner (409)."""
    status_code = 409

    def __init__(self, message: str, stored_owner: str = "", incoming_owner: str = ""):
        super().__init__(message)
        self.stored_owner = stored_owner
        self.incoming_owner = incoming_owner


class PreconditionFailedError(APIError):
    """Supplied owner does not match the stored lock owner (412)."""
    status_code = 412


class ExecutionError(APIError):
    """Automation subprocess failed to start or exited non-zero (500)."""
    status_code = 500

    def __init__(self, message: str, return_code: Optional[int] = None):
        super().__init__(message)
        self.return_code = return_code


class RunCancelledError(ExecutionError):
    """Subprocess terminated because the caller went away (500)."""


class ArtifactError(APIError):
    """Inventory or log artifact could not be written (500)."""
    status_code = 500


class StoreError(APIError):
    """Lock store unreachable or failing (503)."""
    status_code = 503


class ProvisionTimeoutError(APIError):
    """A registration or stage deadline expired (504)."""
    status_code = 504


# =============================================================================
# Flask Integration
# =============================================================================

def short_id() -> str:
    """8 hex chars, used for request and error ids."""
    return uuid.uuid4().hex[:8]


def register_error_handlers(app):
    """
    Render APIError subclasses raised by JSON endpoints.

    The body is {"error": <message>, "error_id": <id>} with the error's
    status code. The register endpoint streams text and handles its own
    errors; this covers unregister and anything added later.
    """

    @app.errorhandler(APIError)
    def handle_api_error(e):
        error_id = short_id()
        logger.warning(
            f"{type(e).__name__} ({e.status_code}): {e}",
            extra={'error_id': error_id},
        )
        return jsonify({"error": str(e), "error_id": error_id}), e.status_code
