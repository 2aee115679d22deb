"""
Host registration API routes.

POST /v1/host/register
    Streams text/plain progress, one event per line, ending with a
    [DONE] or [FAILED] line. Failures found before automation starts
    (bad request, lock conflict, missing playbook, store or inventory
    errors) are answered immediately with their own status code; once
    automation runs the status is 200 and the terminal line tells the
    outcome.

POST /v1/host/unregister
    Releases the host lock. JSON response.
"""

import logging
import queue
import threading

from flask import Blueprint, Response, g, jsonify, request

from core.errors import APIError
from core.host_validation import parse_host_request
from core.registration import HostRegistrar, ProgressStream, RegistrationPlan
from gateway.extensions import get_registrar

logger = logging.getLogger(__name__)

hosts_bp = Blueprint("hosts", __name__, url_prefix="/v1/host")

STREAM_HEADERS = {
    "Content-Type": "text/plain; charset=utf-8",
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-cache",
    # Disable proxy buffering so lines reach the caller as they happen
    "X-Accel-Buffering": "no",
}

# Marks the end of the line queue
_END = object()


def _drain(lines: queue.Queue) -> str:
    out = []
    while True:
        try:
            line = lines.get_nowait()
        except queue.Empty:
            break
        if line is not _END:
            out.append(line + "\n")
    return "".join(out)


def _provision_worker(
    registrar: HostRegistrar,
    plan: RegistrationPlan,
    progress: ProgressStream,
    lines: queue.Queue,
    cancel: threading.Event,
) -> None:
    """Run the automation stages, then close the line queue."""
    try:
        registrar.provision(plan, progress, cancel)
    except APIError as e:
        progress.fail(e)
    except Exception:
        logger.exception(
            f"Provisioning {plan.request.hostname} crashed",
            extra={'request_id': progress.request_id, 'hostname': plan.request.hostname},
        )
        error = APIError("internal error", status_code=500)
        error.stage = plan.stage.value
        progress.fail(error)
    finally:
        lines.put(_END)


def _stream(lines: queue.Queue, cancel: threading.Event):
    """Yield queued lines until the worker is done.

    Closing the generator early (caller disconnected) sets cancel, which
    terminates the running automation subprocess.
    """
    try:
        while True:
            line = lines.get()
            if line is _END:
                return
            yield line + "\n"
    finally:
        cancel.set()


@hosts_bp.route("/register", methods=["POST"])
def register_host():
    """Lock the hostname, pick a playbook, rename the host and apply the playbook."""
    registrar = get_registrar()
    lines: queue.Queue = queue.Queue()
    progress = ProgressStream(lines.put, request_id=getattr(g, 'request_id', ''))

    try:
        req = parse_host_request(request.get_json(force=True, silent=True))
        plan = registrar.prepare(req, progress)
    except APIError as e:
        progress.fail(e)
        return Response(_drain(lines), status=e.status_code, headers=STREAM_HEADERS)

    cancel = threading.Event()
    worker = threading.Thread(
        target=_provision_worker,
        args=(registrar, plan, progress, lines, cancel),
        name=f"register-{req.hostname}",
        daemon=True,
    )
    worker.start()

    return Response(_stream(lines, cancel), status=200, headers=STREAM_HEADERS)


@hosts_bp.route("/unregister", methods=["POST"])
def unregister_host():
    """Release the hostname lock so the host can be registered again.

    id and address guard the release and must match the stored owner;
    leaving both out forces the release.
    """
    req = parse_host_request(request.get_json(force=True, silent=True))
    result = get_registrar().unregister(req)
    return jsonify({
        "ok": True,
        "deleted": result.key,
    })
