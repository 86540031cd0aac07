# trustwork/models/status_history.py
from ..extensions import db
from ..utils import utcnow, iso


class StatusHistory(db.Model):
    """Append-only log of assignment status changes."""
    __tablename__ = "status_history"

    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(db.String(32), db.ForeignKey("assignment.id"), nullable=False, index=True)
    from_status = db.Column(db.String(20))
    to_status = db.Column(db.String(20), nullable=False)
    by_principal_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    reason = db.Column(db.Text)
    at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "from": self.from_status,
            "to": self.to_status,
            "by": self.by_principal_id,
            "reason": self.reason,
            "at": iso(self.at),
        }
