"""
Matter Workflow Engine
Identity model: the minimal user record the engine needs for approvals.

Authentication and firm isolation live outside this service; the engine only
needs a stable id, a display name for audit snapshots, and a role for the
default ``RoleChecker``.
"""

from datetime import datetime, timezone

from matterflow.models import db

# Ordered lowest → highest authority.
USER_ROLES = ("secretary", "paralegal", "fee_earner", "supervisor")

ROLE_RANK = {role: rank for rank, role in enumerate(USER_ROLES, start=1)}


class User(db.Model):
    """Fee earner, supervisor or support staff member."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(255), nullable=False, default="")
    role = db.Column(
        db.String(30), nullable=False, default="fee_earner",
        comment="secretary | paralegal | fee_earner | supervisor",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def outranks_or_equals(self, required_role: str) -> bool:
        """True when this user's role carries at least ``required_role`` authority."""
        required = ROLE_RANK.get(required_role)
        if required is None:
            return False
        return ROLE_RANK.get(self.role, 0) >= required

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id} {self.email} ({self.role})>"
