import logging
import uuid

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from ...extensions import db
from ...errors import TrustworkError
from . import errors_bp

log = logging.getLogger(__name__)

_HTTP_KINDS = {
    400: "VALIDATION",
    401: "AUTHN",
    403: "AUTHZ",
    404: "NOT_FOUND",
    405: "VALIDATION",
    409: "CONFLICT",
    413: "VALIDATION",
    415: "VALIDATION",
    429: "QUOTA",
}


def _envelope(kind, code, message, details=None, status=500):
    return jsonify({"error": {"kind": kind, "code": code, "message": message, "details": details or {}}}), status


def _rollback():
    # leave the session usable for the next request
    try:
        db.session.rollback()
    except Exception:
        log.exception("session rollback failed")


# Domain errors carry their own kind/code/status
@errors_bp.app_errorhandler(TrustworkError)
def err_domain(e: TrustworkError):
    _rollback()
    if e.http_status >= 500:
        log.warning("%s %s -> %s %s: %s", request.method, request.path, e.kind, e.code, e.message)
    elif e.kind == "INTEGRITY":
        log.warning("integrity failure on %s: %s", request.path, e.message)
    return jsonify({"error": e.to_dict()}), e.http_status


# 413 – Payload Too Large (uploads over MAX_CONTENT_LENGTH)
@errors_bp.app_errorhandler(413)
def err_413(e):
    return _envelope("VALIDATION", "PAYLOAD_TOO_LARGE", "Upload exceeds the size limit", status=413)


# Fallback for uncaught HTTPException
@errors_bp.app_errorhandler(HTTPException)
def err_http(e: HTTPException):
    kind = _HTTP_KINDS.get(e.code, "INTERNAL" if (e.code or 500) >= 500 else "VALIDATION")
    return _envelope(kind, kind, e.description or e.name, status=e.code or 500)


# Last-resort: any other Exception
@errors_bp.app_errorhandler(Exception)
def err_unexpected(e):
    _rollback()
    correlation_id = uuid.uuid4().hex
    log.exception("internal error %s on %s %s", correlation_id, request.method, request.path)
    # Don’t leak internals, just a correlation id to quote
    return _envelope("INTERNAL", "INTERNAL", "Something went wrong on our side",
                     {"correlation_id": correlation_id}, status=500)
