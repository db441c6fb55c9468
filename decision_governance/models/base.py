"""
OrgModel — Abstract base class for organisation-scoped models.

Every engine entity lives in exactly one organisation's namespace and
inherits from OrgModel instead of db.Model directly. This adds:
  - organization_id FK column with index
  - query_for_org(organization_id) classmethod
  - get_in_org(organization_id, pk) lookup that hides other organisations' rows
"""

from decision_governance.models import db


class OrgModel(db.Model):
    """Abstract base for organisation-scoped tables."""
    __abstract__ = True

    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_org(cls, organization_id):
        """Return a query filtered by organization_id."""
        return cls.query.filter_by(organization_id=organization_id)

    @classmethod
    def get_in_org(cls, organization_id, pk):
        """Fetch by primary key, returning None for rows of another organisation."""
        obj = db.session.get(cls, pk)
        if obj is None or obj.organization_id != organization_id:
            return None
        return obj
