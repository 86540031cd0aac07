# trustwork/services/webhooks.py
"""Payment-provider notification intake.

Signature first, then the ledger: a provider event id already in
``webhook_event`` is a duplicate and is acknowledged without touching state.
"""
import logging

from sqlalchemy import select

from ..extensions import db
from ..errors import NotFoundError, SignatureError, ValidationError
from ..models.webhook import WebhookEvent
from ..utils import utcnow, money
from . import escrow as escrow_svc
from . import payment_service as gateway
from .tx import serialized

log = logging.getLogger(__name__)

PAYMENT_STATUSES = ("COMPLETE", "FAILED", "PENDING", "CANCELLED")
PAYOUT_STATUSES = {"PROCESSING": "processing", "COMPLETED": "completed", "COMPLETE": "completed", "FAILED": "failed"}


def parse(fields: dict) -> dict:
    """Pull (provider_event_id, correlation_id, event_type, status, amount) out of a notification."""
    provider_event_id = (fields.get("pf_payment_id") or "").strip()
    correlation_id = (fields.get("m_payment_id") or "").strip()
    if not provider_event_id or not correlation_id:
        raise ValidationError("Notification is missing its references",
                              details={"fields": {"pf_payment_id": "required", "m_payment_id": "required"}})
    event_type = (fields.get("event_type") or "payment").strip().lower()
    if event_type == "payout":
        status = (fields.get("payout_status") or "").strip().upper()
        if status not in PAYOUT_STATUSES:
            raise ValidationError.field("payout_status", "invalid", f"Unknown payout status {status!r}")
    else:
        event_type = "payment"
        status = (fields.get("payment_status") or "").strip().upper()
        if status not in PAYMENT_STATUSES:
            raise ValidationError.field("payment_status", "invalid", f"Unknown payment status {status!r}")
    amount = None
    if fields.get("amount_gross") not in (None, ""):
        try:
            amount = money(fields["amount_gross"])
        except ValueError:
            raise ValidationError.field("amount_gross", "invalid", "amount_gross must be a number")
    return {
        "provider_event_id": provider_event_id,
        "correlation_id": correlation_id,
        "event_type": event_type,
        "status": status,
        "amount": amount,
    }


def verify(fields: dict):
    if not gateway.verify_signature(fields):
        log.warning("webhook rejected: bad signature (ref=%s, event=%s)",
                    fields.get("m_payment_id"), fields.get("pf_payment_id"))
        raise SignatureError("Invalid notification signature")


@serialized
def handle_notification(fields: dict, *, now=None):
    """Apply one signed notification. Returns {"processed", "duplicate", "result"}."""
    verify(fields)
    note = parse(fields)
    now = now or utcnow()

    seen = db.session.execute(
        select(WebhookEvent).where(WebhookEvent.provider_event_id == note["provider_event_id"])
    ).scalar_one_or_none()
    if seen is not None:
        log.info("duplicate webhook %s ignored", note["provider_event_id"])
        return {"processed": True, "duplicate": True, "result": seen.result}

    try:
        result = _apply(note, fields, now)
    except NotFoundError:
        log.warning("webhook %s references unknown %s", note["provider_event_id"], note["correlation_id"])
        result = "unknown_reference"

    db.session.add(WebhookEvent(
        provider_event_id=note["provider_event_id"],
        correlation_id=note["correlation_id"],
        event_type=note["event_type"],
        provider_status=note["status"],
        payload={k: v for k, v in fields.items() if k != "signature"},
        result=result,
        received_at=now,
    ))
    return {"processed": result != "unknown_reference", "duplicate": False, "result": result}


def _apply(note, fields, now):
    if note["event_type"] == "payout":
        _, changed = escrow_svc.on_payout_webhook(note["correlation_id"], PAYOUT_STATUSES[note["status"]], now=now)
        return f"payout_{PAYOUT_STATUSES[note['status']]}" if changed else "no_change"

    if note["status"] == "COMPLETE":
        escrow = escrow_svc.by_correlation(note["correlation_id"])
        if escrow is None:
            raise NotFoundError("Unknown payment reference")
        if note["amount"] is not None and note["amount"] != escrow.gross_amount:
            log.error("webhook %s amount mismatch: got %s expected %s (escrow %s)",
                      note["provider_event_id"], note["amount"], escrow.gross_amount, escrow.id)
            raise SignatureError("Notification amount does not match the escrow",
                                 details={"expected": str(escrow.gross_amount), "got": str(note["amount"])})
        _, changed = escrow_svc.on_gateway_authorized(note["correlation_id"], fields, now=now)
        return "held" if changed else "no_change"

    _, changed = escrow_svc.on_gateway_failed(note["correlation_id"], fields)
    return f"payment_{note['status'].lower()}" if changed else "no_change"
