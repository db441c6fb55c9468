"""Shared utility functions for services and blueprints.

atomic:        one transaction per public service operation
get_or_404:    organisation-scoped lookup raising NotFoundError
parse_bool:    lenient truthiness for query-string flags
"""
import logging
from contextlib import contextmanager

from decision_governance.core.exceptions import NotFoundError
from decision_governance.models import db

logger = logging.getLogger(__name__)


@contextmanager
def atomic():
    """Commit the session on success, roll back and re-raise on any exception.

    Usage::

        with atomic():
            decision.title = "..."
            write_event(decision, ...)

    Nested calls join the outermost block: only the outermost one commits.
    """
    depth = db.session.info.get("atomic_depth", 0)
    db.session.info["atomic_depth"] = depth + 1
    try:
        yield db.session
        if depth == 0:
            db.session.commit()
    except Exception:
        if depth == 0:
            db.session.rollback()
        raise
    finally:
        db.session.info["atomic_depth"] = depth


def get_or_404(model, organization_id, pk, label=None):
    """Fetch an organisation-scoped row by primary key or raise NotFoundError.

    Rows of another organisation are reported as missing.
    """
    obj = model.get_in_org(organization_id, pk)
    if obj is None:
        raise NotFoundError(
            resource=label or model.__name__,
            resource_id=pk,
            organization_id=organization_id,
        )
    return obj


def parse_bool(value, default=False):
    """Interpret "1", "true", "yes" (any case) as True; None gives ``default``."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
