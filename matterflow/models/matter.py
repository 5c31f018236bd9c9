"""
Matter Workflow Engine
Matter model: the client engagement a workflow is pinned to.

Only the fields the stage-gating engine reads are modelled here; billing,
parties and documents belong to other services.

``MATTER_ATTRIBUTE_TYPES`` is the closed set of attribute keys that
applicability and selection conditions may reference, with the Python type
each value must carry.
"""

from datetime import datetime, timezone

from matterflow.models import db

PRACTICE_AREAS = frozenset({
    "conveyancing", "litigation", "family", "probate", "employment",
    "immigration", "personal_injury", "commercial", "criminal", "ip",
    "insolvency", "other",
})

MATTER_ATTRIBUTE_TYPES = {
    "has_mortgage": bool,
    "is_leasehold": bool,
    "is_new_build": bool,
    "has_chain": bool,
    "is_first_time_buyer": bool,
    "has_lender_requirements": bool,
    "property_value": float,
    "buyer_count": float,
    "tenure": str,
    "funding_source": str,
    "jurisdiction": str,
    "practice_area": str,
    "sub_type": str,
}


class Matter(db.Model):
    """A client engagement tracked through its lifecycle."""

    __tablename__ = "matters"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(50), nullable=False, unique=True)
    title = db.Column(db.String(255), nullable=False)
    practice_area = db.Column(db.String(30), nullable=False, index=True)
    sub_type = db.Column(db.String(60), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="open")
    attributes = db.Column(
        db.JSON, nullable=True,
        comment="Typed matter facts used by applicability conditions, e.g. {'has_mortgage': true}",
    )
    opened_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    workflow = db.relationship(
        "MatterWorkflow", back_populates="matter", uselist=False,
    )

    def attribute_snapshot(self) -> dict:
        """Attributes merged with the matter's classification fields."""
        snapshot = dict(self.attributes or {})
        snapshot["practice_area"] = self.practice_area
        if self.sub_type is not None:
            snapshot["sub_type"] = self.sub_type
        return snapshot

    def to_dict(self):
        return {
            "id": self.id,
            "reference": self.reference,
            "title": self.title,
            "practice_area": self.practice_area,
            "sub_type": self.sub_type,
            "status": self.status,
            "attributes": self.attributes or {},
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Matter {self.reference}>"
