# trustwork/models/milestone.py
from ..extensions import db
from ..utils import utcnow, new_id, iso, money_str

# pending|in_progress|submitted|approved|rejected|revision_requested
STATUSES = ("pending", "in_progress", "submitted", "approved", "rejected", "revision_requested")


class Milestone(db.Model):
    __tablename__ = "milestone"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    gig_id = db.Column(db.String(32), db.ForeignKey("assignment.id"), nullable=False, index=True)
    order_index = db.Column(db.Integer, nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    due_date = db.Column(db.DateTime)

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    deliverable_files = db.Column(db.JSON, default=list)
    deliverable_links = db.Column(db.JSON, default=list)
    submission_notes = db.Column(db.Text)
    client_notes = db.Column(db.Text)
    revision_count = db.Column(db.Integer, default=0, nullable=False)
    max_revisions = db.Column(db.Integer, default=3, nullable=False)

    payment_released = db.Column(db.Boolean, default=False, nullable=False)
    payment_released_at = db.Column(db.DateTime)
    released_amount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    escrow_payment_id = db.Column(db.String(32), db.ForeignKey("escrow_payment.id"), index=True)

    started_at = db.Column(db.DateTime)
    submitted_at = db.Column(db.DateTime)
    approved_at = db.Column(db.DateTime)
    rejected_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("gig_id", "order_index", name="uq_milestone_order"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "gig_id": self.gig_id,
            "order_index": self.order_index,
            "freelancer_id": self.freelancer_id,
            "title": self.title,
            "description": self.description,
            "percentage": str(self.percentage),
            "amount": money_str(self.amount),
            "due_date": iso(self.due_date),
            "status": self.status,
            "deliverable_files": list(self.deliverable_files or []),
            "deliverable_links": list(self.deliverable_links or []),
            "submission_notes": self.submission_notes,
            "client_notes": self.client_notes,
            "revision_count": self.revision_count,
            "max_revisions": self.max_revisions,
            "payment_released": self.payment_released,
            "payment_released_at": iso(self.payment_released_at),
            "released_amount": money_str(self.released_amount),
            "escrow_payment_id": self.escrow_payment_id,
            "started_at": iso(self.started_at),
            "submitted_at": iso(self.submitted_at),
            "approved_at": iso(self.approved_at),
        }
