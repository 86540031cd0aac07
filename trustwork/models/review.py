# trustwork/models/review.py
from ..extensions import db
from ..utils import utcnow, new_id, iso

REVIEWER_TYPES = ("employee", "employer", "client", "freelancer")

SUB_RATINGS = {
    "employee": ("work_environment", "management", "compensation", "career_growth"),
    "employer": ("technical_skills", "communication", "work_quality", "professionalism"),
    "client": ("quality", "communication", "timeliness", "professionalism"),
    "freelancer": ("clarity", "communication", "payment", "professionalism"),
}

# pending|approved|rejected|removed
MODERATION_STATUSES = ("pending", "approved", "rejected", "removed")


class Review(db.Model):
    __tablename__ = "review"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    application_id = db.Column(db.String(32), db.ForeignKey("application.id"), nullable=False, index=True)
    assignment_id = db.Column(db.String(32), db.ForeignKey("assignment.id"), nullable=False, index=True)
    reviewer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    reviewee_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    reviewer_type = db.Column(db.String(20), nullable=False)

    overall_rating = db.Column(db.Numeric(2, 1), nullable=False)
    sub_ratings = db.Column(db.JSON, default=dict)
    review_text = db.Column(db.Text, nullable=False)

    moderation_status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    moderation_notes = db.Column(db.Text)
    moderated_at = db.Column(db.DateTime)

    review_window_end = db.Column(db.DateTime, nullable=False)
    is_flagged = db.Column(db.Boolean, default=False, nullable=False)
    flag_reason = db.Column(db.Text)
    flagged_by_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    flagged_at = db.Column(db.DateTime)
    helpful_count = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint("application_id", "reviewer_id", name="uq_review_per_reviewer"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "assignment_id": self.assignment_id,
            "reviewer_id": self.reviewer_id,
            "reviewee_id": self.reviewee_id,
            "reviewer_type": self.reviewer_type,
            "overall_rating": float(self.overall_rating),
            "sub_ratings": dict(self.sub_ratings or {}),
            "review_text": self.review_text,
            "moderation_status": self.moderation_status,
            "review_window_end": iso(self.review_window_end),
            "flagged": self.is_flagged,
            "helpful_count": self.helpful_count,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class ReviewHelpfulVote(db.Model):
    """One helpful vote per principal per review."""
    __tablename__ = "review_helpful_vote"

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(db.String(32), db.ForeignKey("review.id"), nullable=False, index=True)
    voter_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("review_id", "voter_id", name="uq_helpful_vote"),
    )
