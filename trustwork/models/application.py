# trustwork/models/application.py
from ..extensions import db
from ..utils import utcnow, new_id, iso, money_str

# pending|shortlisted|accepted|rejected|withdrawn
STATUSES = ("pending", "shortlisted", "accepted", "rejected", "withdrawn")
OPEN_STATUSES = ("pending", "shortlisted")


class Application(db.Model):
    __tablename__ = "application"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    assignment_id = db.Column(db.String(32), db.ForeignKey("assignment.id"), nullable=False, index=True)
    freelancer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)

    cover_letter = db.Column(db.Text)
    proposed_rate = db.Column(db.Numeric(12, 2))
    proposed_timeline = db.Column(db.String(120))
    portfolio_links = db.Column(db.JSON, default=list)
    attachments = db.Column(db.JSON, default=list)  # object store keys

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    employer_message = db.Column(db.Text)
    withdraw_reason = db.Column(db.Text)
    viewed_by_employer = db.Column(db.Boolean, default=False, nullable=False)
    viewed_at = db.Column(db.DateTime)

    skill_test_attempt_id = db.Column(db.String(32), db.ForeignKey("skill_test_attempt.id"))

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # the pair key is unique forever, withdrawn rows included
        db.UniqueConstraint("assignment_id", "freelancer_id", name="uq_application_pair"),
    )

    assignment = db.relationship("Assignment", backref=db.backref("applications", lazy="selectin"))
    freelancer = db.relationship("User", foreign_keys=[freelancer_id])

    def to_dict(self):
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "freelancer_id": self.freelancer_id,
            "cover_letter": self.cover_letter,
            "proposed_rate": money_str(self.proposed_rate),
            "proposed_timeline": self.proposed_timeline,
            "portfolio_links": list(self.portfolio_links or []),
            "attachments": list(self.attachments or []),
            "status": self.status,
            "employer_message": self.employer_message,
            "viewed_by_employer": self.viewed_by_employer,
            "viewed_at": iso(self.viewed_at),
            "skill_test_attempt_id": self.skill_test_attempt_id,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
