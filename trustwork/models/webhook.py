# trustwork/models/webhook.py
from ..extensions import db
from ..utils import utcnow


class WebhookEvent(db.Model):
    """Ledger of provider notifications; provider_event_id is the dedupe key."""
    __tablename__ = "webhook_event"

    id = db.Column(db.Integer, primary_key=True)
    provider_event_id = db.Column(db.String(128), unique=True, nullable=False)
    correlation_id = db.Column(db.String(64), index=True)
    event_type = db.Column(db.String(32), nullable=False)
    provider_status = db.Column(db.String(32))
    payload = db.Column(db.JSON)
    result = db.Column(db.String(64))
    received_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
