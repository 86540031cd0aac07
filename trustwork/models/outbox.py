# trustwork/models/outbox.py
from ..extensions import db
from ..utils import utcnow, iso


class DomainEvent(db.Model):
    """Outbox row written in the same transaction as the change it describes."""
    __tablename__ = "domain_event"

    id = db.Column(db.Integer, primary_key=True)
    aggregate_type = db.Column(db.String(40), nullable=False)
    aggregate_id = db.Column(db.String(64), nullable=False, index=True)
    event_type = db.Column(db.String(60), nullable=False, index=True)
    payload = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    dispatched_at = db.Column(db.DateTime, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "event_type": self.event_type,
            "payload": self.payload or {},
            "created_at": iso(self.created_at),
        }
