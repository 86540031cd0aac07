# trustwork/services/email_service.py
"""Notification adapter: turns dispatched outbox events into plain-text mail."""
from flask import current_app
from flask_mail import Message
from sqlalchemy import select
from ..extensions import db, mail
from ..models.outbox import DomainEvent
from ..models.user import User
from ..utils import utcnow
import logging

log = logging.getLogger(__name__)


def send_email(*, to, subject, body) -> bool:
    try:
        if not to:
            log.warning("send_email: missing recipient")
            return False
        recipients = [to] if isinstance(to, str) else list(to)

        sender = current_app.config.get("MAIL_DEFAULT_SENDER") or current_app.config.get("MAIL_USERNAME")
        if not sender:
            log.error("send_email: no sender configured")
            return False

        msg = Message(subject=subject, recipients=recipients, sender=sender, body=body)

        if current_app.config.get("MAIL_SUPPRESS_SEND"):
            log.info("[MAIL_SUPPRESS_SEND=1] would send: %s | %s", recipients, subject)
            return True

        mail.send(msg)
        log.info("Email sent to %s | subject=%s", recipients, subject)
        return True
    except Exception as e:
        log.exception("send_email failed: %s", e)
        return False


def _emails(*user_ids):
    ids = [u for u in user_ids if u is not None]
    if not ids:
        return []
    return [u.email for u in db.session.execute(select(User).where(User.id.in_(ids))).scalars() if u.email]


def _admins():
    return list(current_app.config.get("ADMIN_ALERT_EMAILS") or [])


def render(event):
    """(recipients, subject, body) for an event, or None when nobody is told."""
    p = event.payload or {}
    kind = event.event_type
    if kind == "ApplicationSubmitted":
        return (_emails(p.get("owner_id")), "New application received",
                f"A freelancer applied to assignment {p.get('assignment_id')}.")
    if kind == "ApplicationAccepted":
        return (_emails(p.get("freelancer_id")), "Your application was accepted",
                f"You were awarded assignment {p.get('assignment_id')}. Work starts once funds are in escrow.")
    if kind == "EscrowHeld":
        return (_emails(p.get("payer_id"), p.get("recipient_id")), "Funds secured in escrow",
                f"{p.get('gross')} is now held in escrow for assignment {p.get('assignment_id')}.")
    if kind == "MilestoneApproved":
        return (_emails(p.get("freelancer_id")), "Milestone approved",
                f"A milestone on gig {p.get('gig_id')} was approved; {p.get('released')} released.")
    if kind == "PayoutCompleted":
        return (_emails(p.get("recipient_id")), "Payout completed",
                f"Your payout of {p.get('amount')} has been completed.")
    if kind == "DisputeOpened":
        return (_emails(p.get("respondent_id")), "A dispute was opened",
                f"A dispute ({p.get('reason')}) was opened on assignment {p.get('assignment_id')}. "
                "Please respond before the deadline.")
    if kind == "DisputeOverdue":
        return (_admins(), "Dispute response overdue",
                f"Dispute {event.aggregate_id} passed its response deadline ({p.get('response_deadline')}).")
    if kind == "DisputeResolved":
        return (_emails(p.get("initiator_id"), p.get("respondent_id")), "Dispute resolved",
                f"The dispute on assignment {p.get('assignment_id')} was resolved: {p.get('decision')}.")
    if kind in ("OperatorAlert", "PayoutFailed"):
        return (_admins(), f"[TrustWork] {p.get('message') or kind}",
                "\n".join(f"{k}: {v}" for k, v in sorted(p.items())))
    return None


def dispatch_pending(limit=100):
    """Hand undispatched outbox events to the mailer and stamp them. Mail errors never block."""
    rows = db.session.execute(
        select(DomainEvent).where(DomainEvent.dispatched_at.is_(None))
        .order_by(DomainEvent.id).limit(limit)
    ).scalars().all()
    sent = 0
    for ev in rows:
        rendered = render(ev)
        if rendered:
            to, subject, body = rendered
            if to and send_email(to=to, subject=subject, body=body):
                sent += 1
        ev.dispatched_at = utcnow()
    db.session.commit()
    log.info("dispatched %s events (%s emails)", len(rows), sent)
    return len(rows), sent
