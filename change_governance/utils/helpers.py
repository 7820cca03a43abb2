"""Shared helpers used across the governance services.

get_or_raise:   primary-key lookup that raises NotFoundError
lock_change:    row-locked reload of a ChangeRequest for a mutating operation
as_utc / utcnow: timezone normalisation (SQLite hands back naive datetimes)
transactional:  commit-or-rollback context manager
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import select

from change_governance.core.exceptions import NotFoundError
from change_governance.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    Comparisons against utcnow() must go through this helper so the same code
    works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def lock_change(change):
    """Re-read a change with a row lock held until the surrounding commit.

    Accepts a ChangeRequest instance or its primary key. On PostgreSQL this
    issues SELECT ... FOR UPDATE so concurrent votes or transitions on the
    same change serialise; SQLite ignores the clause (single writer).
    """
    from change_governance.models.change import ChangeRequest

    change_pk = change.id if isinstance(change, ChangeRequest) else change
    locked = db.session.execute(
        select(ChangeRequest)
        .where(ChangeRequest.id == change_pk)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if locked is None:
        raise NotFoundError(resource="ChangeRequest", resource_id=change_pk)
    return locked


@contextmanager
def transactional():
    """Commit the session on success, roll back and re-raise on any error.

    Usage::

        with transactional():
            change.status = "approved"
            publish_workflow_event(...)

    Keeps multi-record side effects (status write, approval resolution,
    workflow event) in one atomic unit.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def display_name(user, fallback: str = "system") -> str:
    """Name used in generated reasons, e.g. "Rejected by Jane Doe"."""
    if user is None:
        return fallback
    return getattr(user, "full_name", None) or getattr(user, "name", None) or getattr(user, "email", None) or fallback
