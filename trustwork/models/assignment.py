# trustwork/models/assignment.py
from ..extensions import db
from ..utils import utcnow, new_id, iso, money_str

KINDS = ("job", "gig")
BUDGET_UNITS = ("fixed", "hourly", "negotiable")

# draft|open|assigned|in_progress|pending_review|completed|cancelled|closed|disputed
STATUSES = (
    "draft", "open", "assigned", "in_progress", "pending_review",
    "completed", "cancelled", "closed", "disputed",
)
TERMINAL = ("completed", "cancelled", "closed")
EDITABLE = ("draft", "open")


class Assignment(db.Model):
    __tablename__ = "assignment"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    owner_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)

    kind = db.Column(db.String(10), nullable=False, default="job", index=True)
    title = db.Column(db.String(200), nullable=False, index=True)
    description = db.Column(db.Text)

    budget_min = db.Column(db.Numeric(12, 2))
    budget_max = db.Column(db.Numeric(12, 2))
    budget_unit = db.Column(db.String(20), default="fixed")
    currency = db.Column(db.String(10))

    deadline_at = db.Column(db.DateTime, index=True)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    required_skills = db.Column(db.JSON, default=list)
    experience_level = db.Column(db.String(20))
    location = db.Column(db.String(120))
    remote_allowed = db.Column(db.Boolean, default=True, nullable=False)

    # Optional skill-test gate
    skill_test_template_id = db.Column(db.String(32), db.ForeignKey("skill_test_template.id"))
    skill_test_difficulty = db.Column(db.String(10))
    skill_test_passing_score = db.Column(db.Integer)

    applications_count = db.Column(db.Integer, default=0, nullable=False)
    views_count = db.Column(db.Integer, default=0, nullable=False)

    cancel_reason = db.Column(db.Text)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    owner = db.relationship("User", foreign_keys=[owner_id], lazy="joined")

    @property
    def is_gig(self) -> bool:
        return self.kind == "gig"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def skill_test_requirement(self):
        if not self.skill_test_template_id:
            return None
        return {
            "template_id": self.skill_test_template_id,
            "difficulty": self.skill_test_difficulty,
            "passing_score": self.skill_test_passing_score,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "budget_min": money_str(self.budget_min),
            "budget_max": money_str(self.budget_max),
            "budget_unit": self.budget_unit,
            "currency": self.currency,
            "deadline_at": iso(self.deadline_at),
            "status": self.status,
            "required_skills": list(self.required_skills or []),
            "experience_level": self.experience_level,
            "location": self.location,
            "remote_allowed": self.remote_allowed,
            "skill_test_requirement": self.skill_test_requirement,
            "applications_count": self.applications_count,
            "views_count": self.views_count,
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
