# trustwork/models/user.py
from flask_login import UserMixin
from ..extensions import db
from ..utils import utcnow

ROLES = ("client", "freelancer", "admin")


class User(UserMixin, db.Model):
    """A verified principal. Identity is issued upstream; we only keep the role."""
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)

    # client|freelancer|admin
    role = db.Column(db.String(20), nullable=False, default="client", index=True)

    # active|suspended
    status = db.Column(db.String(20), default="active", index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # --- Convenience flags ---
    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_client(self) -> bool:
        return self.role == "client"

    @property
    def is_freelancer(self) -> bool:
        return self.role == "freelancer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self):
        return {"id": self.id, "name": self.name, "email": self.email, "role": self.role}
