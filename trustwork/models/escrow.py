# trustwork/models/escrow.py
from ..extensions import db
from ..utils import utcnow, new_id, iso, money_str

# pending|held|released|refunded|disputed
STATUSES = ("pending", "held", "released", "refunded", "disputed")
# pending|processing|completed|failed
PAYOUT_STATUSES = ("pending", "processing", "completed", "failed")


class EscrowPayment(db.Model):
    __tablename__ = "escrow_payment"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    assignment_id = db.Column(db.String(32), db.ForeignKey("assignment.id"), nullable=False, index=True)
    payer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)

    gross_amount = db.Column(db.Numeric(12, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False)
    released_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    refunded_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    currency = db.Column(db.String(10), default="ZAR")

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    payout_status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    payout_attempts = db.Column(db.Integer, default=0, nullable=False)
    payout_error = db.Column(db.Text)

    # our merchant reference sent to the gateway, echoed back on notifications
    correlation_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    payout_correlation_id = db.Column(db.String(64), unique=True, index=True)
    gateway_payment_id = db.Column(db.String(64))
    gateway_status = db.Column(db.String(32))
    gateway_meta = db.Column(db.JSON)

    held_at = db.Column(db.DateTime)
    released_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)
    disputed_at = db.Column(db.DateTime)
    payout_initiated_at = db.Column(db.DateTime)
    payout_completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    @property
    def released_any(self) -> bool:
        return self.released_amount > 0

    def to_dict(self):
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "payer_id": self.payer_id,
            "recipient_id": self.recipient_id,
            "gross_amount": money_str(self.gross_amount),
            "platform_fee": money_str(self.platform_fee),
            "net_amount": money_str(self.net_amount),
            "released_amount": money_str(self.released_amount),
            "refunded_amount": money_str(self.refunded_amount),
            "currency": self.currency,
            "status": self.status,
            "payout_status": self.payout_status,
            "payout_attempts": self.payout_attempts,
            "correlation_id": self.correlation_id,
            "gateway_status": self.gateway_status,
            "held_at": iso(self.held_at),
            "released_at": iso(self.released_at),
            "refunded_at": iso(self.refunded_at),
            "payout_initiated_at": iso(self.payout_initiated_at),
            "payout_completed_at": iso(self.payout_completed_at),
            "created_at": iso(self.created_at),
        }
