# trustwork/models/dispute.py
from ..extensions import db
from ..utils import utcnow, new_id, iso, money_str

REASONS = (
    "quality_issue", "non_delivery", "scope_change", "payment_issue",
    "communication_breakdown", "deadline_missed", "unauthorized_use", "other",
)
# open|under_review|awaiting_response|resolved|escalated|closed
STATUSES = ("open", "under_review", "awaiting_response", "resolved", "escalated", "closed")
ACTIVE = ("open", "under_review", "awaiting_response", "escalated")
DECISIONS = ("favor_freelancer", "favor_client", "split_payment", "no_fault", "mutual_agreement")


class Dispute(db.Model):
    __tablename__ = "dispute"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    assignment_id = db.Column(db.String(32), db.ForeignKey("assignment.id"), nullable=False, index=True)
    escrow_payment_id = db.Column(db.String(32), db.ForeignKey("escrow_payment.id"), index=True)
    initiator_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    respondent_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)

    reason = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    evidence_files = db.Column(db.JSON, default=list)
    initiator_evidence = db.Column(db.Text)
    respondent_evidence = db.Column(db.Text)

    status = db.Column(db.String(20), nullable=False, default="open", index=True)
    # assignment status to return to when the dispute resolves without settlement
    prior_assignment_status = db.Column(db.String(20), nullable=False)
    response_deadline = db.Column(db.DateTime, nullable=False, index=True)
    overdue_flagged_at = db.Column(db.DateTime)

    proposed_by_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    proposed_split_ratio = db.Column(db.Numeric(5, 4))
    proposal_text = db.Column(db.Text)

    resolution_decision = db.Column(db.String(30))
    resolution_summary = db.Column(db.Text)
    split_ratio = db.Column(db.Numeric(5, 4))
    payment_adjustment = db.Column(db.Numeric(12, 2))
    resolved_by_id = db.Column(db.Integer, db.ForeignKey("user.id"))

    reviewed_at = db.Column(db.DateTime)
    resolved_at = db.Column(db.DateTime)
    closed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    events = db.relationship(
        "DisputeEvent",
        backref="dispute",
        lazy="selectin",
        order_by="DisputeEvent.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE

    def party_ids(self):
        return {self.initiator_id, self.respondent_id}

    def to_dict(self, with_events=False):
        d = {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "escrow_payment_id": self.escrow_payment_id,
            "initiator_id": self.initiator_id,
            "respondent_id": self.respondent_id,
            "reason": self.reason,
            "title": self.title,
            "description": self.description,
            "evidence_files": list(self.evidence_files or []),
            "initiator_evidence": self.initiator_evidence,
            "respondent_evidence": self.respondent_evidence,
            "status": self.status,
            "response_deadline": iso(self.response_deadline),
            "overdue": self.overdue_flagged_at is not None,
            "proposed_by_id": self.proposed_by_id,
            "proposed_split_ratio": str(self.proposed_split_ratio) if self.proposed_split_ratio is not None else None,
            "resolution_decision": self.resolution_decision,
            "resolution_summary": self.resolution_summary,
            "split_ratio": str(self.split_ratio) if self.split_ratio is not None else None,
            "payment_adjustment": money_str(self.payment_adjustment),
            "reviewed_at": iso(self.reviewed_at),
            "resolved_at": iso(self.resolved_at),
            "created_at": iso(self.created_at),
        }
        if with_events:
            d["events"] = [e.to_dict() for e in self.events]
        return d


class DisputeEvent(db.Model):
    __tablename__ = "dispute_event"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.String(32), db.ForeignKey("dispute.id"), nullable=False, index=True)
    actor_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    action = db.Column(db.String(40), nullable=False)  # opened|responded|evidence_added|...
    note = db.Column(db.Text)
    at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "dispute_id": self.dispute_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "note": self.note,
            "at": iso(self.at),
        }
