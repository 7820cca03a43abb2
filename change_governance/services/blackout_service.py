"""
Blackout window conflict checker.

Pure read: reports active windows (global or scoped to the client) that
overlap a proposed implementation window. Overlap is half-open, so a change
ending exactly when a blackout starts does not conflict.
"""

import logging
from datetime import datetime

from sqlalchemy import or_, select

from change_governance.core.exceptions import ValidationError
from change_governance.models import db
from change_governance.models.governance import BlackoutWindow

logger = logging.getLogger(__name__)


def find_conflicts(client_id: int | None, start: datetime, end: datetime) -> list[BlackoutWindow]:
    """Active blackout windows overlapping [start, end), ordered by start."""
    if start is None or end is None:
        raise ValidationError("Both start and end are required")

    scope = BlackoutWindow.client_id.is_(None)
    if client_id is not None:
        scope = or_(scope, BlackoutWindow.client_id == client_id)

    stmt = (
        select(BlackoutWindow)
        .where(
            BlackoutWindow.is_active.is_(True),
            scope,
            BlackoutWindow.starts_at < end,
            BlackoutWindow.ends_at > start,
        )
        .order_by(BlackoutWindow.starts_at, BlackoutWindow.id)
    )
    windows = list(db.session.execute(stmt).scalars())
    if windows:
        logger.debug("Blackout conflicts for client=%s: %s", client_id, [w.name for w in windows])
    return windows
